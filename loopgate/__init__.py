"""
Confidence-gated autonomous execution loop

This package runs a coding agent repeatedly against a priority task queue,
scoring each task and verifying risky ones through a structured debate before
it executes, with persistent SQLite-backed state so the loop can resume.
"""

__version__ = "0.1.0"

# Configuration
from loopgate.config import Settings

# Confidence scoring
from loopgate.confidence import ConfidenceResult, ConfidenceScorer, Tier

# Debate verification
from loopgate.debate import DebateLog, DebateVerdict, DebateVerifier

# Retry control
from loopgate.backoff import LoopExitReason, RetryController, RunState

# Orchestration
from loopgate.orchestrate import Orchestrator

# Resources
from loopgate.resources import ResourceMonitor, ResourceSnapshot

# State and queue
from loopgate.store import StateStore
from loopgate.task_queue import Task, TaskQueue, TaskStatus

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Confidence
    "ConfidenceScorer",
    "ConfidenceResult",
    "Tier",
    # Debate
    "DebateVerifier",
    "DebateLog",
    "DebateVerdict",
    # Retry
    "RetryController",
    "RunState",
    "LoopExitReason",
    # Orchestration
    "Orchestrator",
    # Resources
    "ResourceMonitor",
    "ResourceSnapshot",
    # State
    "StateStore",
    "Task",
    "TaskQueue",
    "TaskStatus",
]
