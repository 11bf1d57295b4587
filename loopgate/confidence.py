"""
Multi-factor confidence scoring and supervision-tier routing.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .resources import ResourceSnapshot
from .task_queue import DEFAULT_PRIORITY, DEFAULT_TIMEOUT, Task

WEIGHTS: dict[str, float] = {
    "requirement_clarity": 0.35,
    "historical_success": 0.25,
    "complexity": 0.25,
    "resources": 0.15,
}


class Tier(str, Enum):
    AUTO_APPROVE = "auto-approve"
    DIRECT_REVIEW = "direct-review"
    SUPERVISOR = "supervisor"
    ESCALATE = "escalate"


TIER_THRESHOLDS: list[tuple[float, Tier]] = [
    (0.95, Tier.AUTO_APPROVE),
    (0.70, Tier.DIRECT_REVIEW),
    (0.40, Tier.SUPERVISOR),
]

ROUTES: dict[Tier, str] = {
    Tier.AUTO_APPROVE: "execute_direct",
    Tier.DIRECT_REVIEW: "execute_with_review",
    Tier.SUPERVISOR: "supervisor_mode",
    Tier.ESCALATE: "escalate",
}

TIER_DESCRIPTIONS: dict[Tier, str] = {
    Tier.AUTO_APPROVE: "Execute immediately without review (very high confidence)",
    Tier.DIRECT_REVIEW: "Execute then run automated review (high confidence)",
    Tier.SUPERVISOR: "Use full supervisor orchestration (moderate confidence)",
    Tier.ESCALATE: "Seek clarification before proceeding (low confidence)",
}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def tier_for(confidence: float) -> Tier:
    for threshold, tier in TIER_THRESHOLDS:
        if confidence >= threshold:
            return tier
    return Tier.ESCALATE


def route_for(tier: Tier) -> str:
    return ROUTES[tier]


def describe_tier(tier: Tier) -> str:
    return TIER_DESCRIPTIONS[tier]


@dataclass
class ConfidenceBreakdown:
    """Per-factor scores, each in [0, 1]."""

    requirement_clarity: float
    historical_success: float
    complexity: float
    resources: float

    @property
    def weighted_total(self) -> float:
        return (
            WEIGHTS["requirement_clarity"] * self.requirement_clarity
            + WEIGHTS["historical_success"] * self.historical_success
            + WEIGHTS["complexity"] * self.complexity
            + WEIGHTS["resources"] * self.resources
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "requirement_clarity": round(self.requirement_clarity, 3),
            "historical_success": round(self.historical_success, 3),
            "complexity": round(self.complexity, 3),
            "resources": round(self.resources, 3),
        }


@dataclass
class ConfidenceResult:
    confidence: float
    tier: Tier
    factors: ConfidenceBreakdown
    task_id: str
    task_type: str
    calculated_at: str = field(
        default_factory=lambda: datetime.now(UTC).isoformat(), compare=False
    )

    @property
    def route(self) -> str:
        return route_for(self.tier)

    def to_dict(self) -> dict[str, Any]:
        return {
            "confidence": round(self.confidence, 3),
            "tier": self.tier.value,
            "route": self.route,
            "factors": self.factors.to_dict(),
            "weights": dict(WEIGHTS),
            "task_id": self.task_id,
            "task_type": self.task_type,
            "calculated_at": self.calculated_at,
        }


class ScoringStrategy(ABC):
    """Turns a task's text and payload into a requirement-clarity factor."""

    @abstractmethod
    def score(self, task: Task) -> float:
        pass


class KeywordClarityStrategy(ScoringStrategy):
    """Penalizes hedging language, rewards structured payload fields."""

    AMBIGUITY_MARKERS = (
        "maybe",
        "perhaps",
        "might",
        "probably",
        "unclear",
        "not sure",
        "possibly",
        "could be",
    )

    PAYLOAD_FIELDS = ("goal", "constraints", "target", "action")

    MARKER_PENALTY = 0.15
    MAX_PENALTY = 0.6
    FIELD_BONUS = 0.1

    def score(self, task: Task) -> float:
        text = task.description.lower()
        occurrences = sum(text.count(marker) for marker in self.AMBIGUITY_MARKERS)
        penalty = min(self.MAX_PENALTY, occurrences * self.MARKER_PENALTY)

        bonus = sum(self.FIELD_BONUS for name in self.PAYLOAD_FIELDS if task.payload.get(name))
        return _clamp(1.0 - penalty + bonus)


class ConfidenceScorer:
    """Deterministic confidence estimate for one task."""

    NEUTRAL_HISTORY = 0.6
    NO_SNAPSHOT_RESOURCES = 0.8

    def __init__(
        self,
        strategy: ScoringStrategy | None = None,
        *,
        max_parallel_agents: int = 10,
    ) -> None:
        self._strategy = strategy or KeywordClarityStrategy()
        self._max_agents = max_parallel_agents

    def calculate(
        self,
        task: Task,
        snapshot: ResourceSnapshot | None,
        history: Sequence[Task],
        active_agents: int = 0,
    ) -> ConfidenceResult:
        breakdown = ConfidenceBreakdown(
            requirement_clarity=_clamp(self._strategy.score(task)),
            historical_success=self._historical_success(task, history),
            complexity=self._complexity(task),
            resources=self._resources(snapshot, active_agents),
        )
        # Six places strips float noise without moving any tier boundary.
        confidence = _clamp(round(breakdown.weighted_total, 6))
        return ConfidenceResult(
            confidence=confidence,
            tier=tier_for(confidence),
            factors=breakdown,
            task_id=task.id,
            task_type=task.type,
        )

    def _historical_success(self, task: Task, history: Sequence[Task]) -> float:
        same_type = [t for t in history if t.type == task.type]
        if not same_type:
            return self.NEUTRAL_HISTORY
        successes = sum(1 for t in same_type if (t.result or {}).get("status") == "success")
        return _clamp(successes / len(same_type))

    def _complexity(self, task: Task) -> float:
        priority = task.priority if task.priority is not None else DEFAULT_PRIORITY
        timeout = task.timeout if task.timeout is not None else DEFAULT_TIMEOUT

        score = 0.8
        score -= 0.03 * (10 - priority)
        score -= 0.1 * len(task.dependencies)
        if timeout > 3600:
            score -= 0.1
        elif timeout < 300:
            score += 0.1
        return _clamp(score)

    def _resources(self, snapshot: ResourceSnapshot | None, active_agents: int) -> float:
        if snapshot is None:
            return self.NO_SNAPSHOT_RESOURCES

        score = 1.0
        for usage in (snapshot.cpu.usage_percent, snapshot.memory.usage_percent):
            if usage > 80:
                score -= 0.3
            elif usage > 60:
                score -= 0.1

        if active_agents >= self._max_agents:
            score -= 0.4
        elif active_agents >= 0.7 * self._max_agents:
            score -= 0.2
        return _clamp(score)


def recommendation(result: ConfidenceResult) -> dict[str, Any]:
    """Operator-facing summary with per-factor contributions."""
    factors = result.factors.to_dict()
    return {
        "confidence": round(result.confidence, 3),
        "tier": result.tier.value,
        "route": result.route,
        "recommendation": describe_tier(result.tier),
        "contributions": {
            name: round(score * WEIGHTS[name], 3) for name, score in factors.items()
        },
    }
