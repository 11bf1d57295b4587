"""Host resource sampling for confidence scoring and operator warnings."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import psutil

from . import store as keys
from .events import EventEmitter, EventType
from .store import StateStore

logger = logging.getLogger(__name__)

Sampler = Callable[[], tuple[float, float]]


def psutil_sampler(cpu_interval: float = 1.0) -> Sampler:
    def sample() -> tuple[float, float]:
        cpu = float(psutil.cpu_percent(interval=cpu_interval))
        memory = float(psutil.virtual_memory().percent)
        return cpu, memory

    return sample


@dataclass
class MetricReading:
    usage_percent: float
    threshold_percent: float

    @property
    def status(self) -> str:
        return "high" if self.usage_percent >= self.threshold_percent else "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "usage_percent": round(self.usage_percent, 1),
            "threshold_percent": self.threshold_percent,
            "status": self.status,
        }


@dataclass
class ResourceSnapshot:
    """Point-in-time CPU/memory reading."""

    cpu: MetricReading
    memory: MetricReading
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def overall_status(self) -> str:
        if self.cpu.status == "high" or self.memory.status == "high":
            return "warning"
        return "ok"

    @property
    def warning_message(self) -> str:
        message = ""
        if self.cpu.status == "high":
            message += (
                f"CPU usage is {self.cpu.usage_percent:.0f}% "
                f"(threshold: {self.cpu.threshold_percent:.0f}%). "
            )
        if self.memory.status == "high":
            message += (
                f"Memory usage is {self.memory.usage_percent:.0f}% "
                f"(threshold: {self.memory.threshold_percent:.0f}%). "
            )
        if self.cpu.status == "high":
            message += "Consider reducing parallel agent count or pausing non-critical tasks."
        elif self.memory.status == "high":
            message += "Consider reducing parallel agent count or cleaning up resources."
        return message

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "cpu": self.cpu.to_dict(),
            "memory": self.memory.to_dict(),
            "overall_status": self.overall_status,
            "warning_message": self.warning_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceSnapshot | None:
        """Rebuild a snapshot from its document; None when the document is empty."""
        cpu = data.get("cpu")
        memory = data.get("memory")
        if not isinstance(cpu, dict) or not isinstance(memory, dict):
            return None
        try:
            return cls(
                cpu=MetricReading(float(cpu["usage_percent"]), float(cpu["threshold_percent"])),
                memory=MetricReading(
                    float(memory["usage_percent"]), float(memory["threshold_percent"])
                ),
                timestamp=str(data.get("timestamp") or ""),
            )
        except (KeyError, TypeError, ValueError):
            return None


class ResourceMonitor:
    """Samples CPU and memory on a fixed interval and writes the resources document."""

    def __init__(
        self,
        store: StateStore,
        *,
        cpu_threshold: float = 80,
        memory_threshold: float = 80,
        interval: float = 300,
        sampler: Sampler | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self._store = store
        self.cpu_threshold = cpu_threshold
        self.memory_threshold = memory_threshold
        self.interval = interval
        self._sampler = sampler or psutil_sampler()
        self._events = events

    async def sample(self) -> ResourceSnapshot:
        try:
            cpu, memory = await asyncio.to_thread(self._sampler)
        except Exception as exc:
            logger.debug("Resource sampling failed: %s", exc)
            cpu, memory = 0.0, 0.0
        return ResourceSnapshot(
            cpu=MetricReading(cpu, self.cpu_threshold),
            memory=MetricReading(memory, self.memory_threshold),
        )

    async def tick(self) -> ResourceSnapshot:
        snapshot = await self.sample()
        try:
            await self._store.write(keys.RESOURCES, snapshot.to_dict())
        except Exception as exc:
            logger.warning("Could not persist resource snapshot: %s", exc)
        if snapshot.overall_status == "warning":
            logger.warning("RESOURCE WARNING: %s", snapshot.warning_message)
            if self._events is not None:
                await self._events.emit_type(
                    EventType.RESOURCE_WARNING, snapshot.warning_message, data=snapshot.to_dict()
                )
        return snapshot

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except TimeoutError:
                continue


async def load_snapshot(store: StateStore) -> ResourceSnapshot | None:
    return ResourceSnapshot.from_dict(await store.read(keys.RESOURCES))
