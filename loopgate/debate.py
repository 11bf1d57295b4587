"""
Bounded adversarial verification of proposals before they execute.

Each round a defense scores how well the proposal argues for itself and a challenge
looks for missing elements. The debate ends verified as soon as a round has no valid
flaw, and rejected once the round cap is reached with flaws outstanding.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .confidence import Tier

logger = logging.getLogger(__name__)

ACTION_WORDS = ("implement", "add", "fix", "update", "create")
CAUSAL_WORDS = ("because", "since", "therefore", "in order to")
NORMATIVE_WORDS = ("must", "should", "requirement", "constraint")

CRITICAL_TYPES = ("security", "deployment", "database", "infrastructure", "auth")


def _timestamp() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class DebateVerdict(str, Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"
    ESCALATE = "escalate"


@dataclass
class Proposal:
    type: str
    content: str
    context: str = ""
    id: str = field(default_factory=lambda: "debate-" + datetime.now(UTC).strftime("%Y%m%d%H%M%S%f"))
    created_at: str = field(default_factory=_timestamp)
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "context": self.context,
            "created_at": self.created_at,
            "status": self.status,
        }


@dataclass
class Flaw:
    point: str
    severity: str
    valid: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"point": self.point, "severity": self.severity, "valid": self.valid}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class Defense:
    strength_score: float
    arguments: list[str]
    addressed_challenges: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strength_score": self.strength_score,
            "arguments": list(self.arguments),
            "addressed_challenges": list(self.addressed_challenges),
        }


@dataclass
class Challenge:
    flaws: list[Flaw]

    @property
    def valid_flaws(self) -> list[Flaw]:
        return [f for f in self.flaws if f.valid]

    @property
    def has_valid_flaw(self) -> bool:
        return bool(self.valid_flaws)

    @property
    def critical_flaw_count(self) -> int:
        return sum(1 for f in self.valid_flaws if f.severity == "high")

    def to_dict(self) -> dict[str, Any]:
        return {
            "flaws": [f.to_dict() for f in self.flaws],
            "has_valid_flaw": self.has_valid_flaw,
            "critical_flaw_count": self.critical_flaw_count,
        }


@dataclass
class DebateRound:
    round: int
    defense: Defense
    challenge: Challenge
    timestamp: str = field(default_factory=_timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "round": self.round,
            "timestamp": self.timestamp,
            "defense": self.defense.to_dict(),
            "challenge": self.challenge.to_dict(),
        }


@dataclass
class DebateOutcome:
    verified: bool
    reason: str
    rounds_completed: int
    final_defense_score: float | None = None
    unresolved_flaws: list[Flaw] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "verified": self.verified,
            "reason": self.reason,
            "rounds_completed": self.rounds_completed,
        }
        if self.verified:
            data["final_defense_score"] = self.final_defense_score
        else:
            data["unresolved_flaws"] = [f.to_dict() for f in self.unresolved_flaws]
        return data


@dataclass
class DebateLog:
    proposal: Proposal
    rounds: list[DebateRound] = field(default_factory=list)
    outcome: DebateOutcome | None = None
    started_at: str = field(default_factory=_timestamp)

    @property
    def verdict(self) -> DebateVerdict:
        if self.outcome is None:
            return DebateVerdict.ESCALATE
        return DebateVerdict.VERIFIED if self.outcome.verified else DebateVerdict.REJECTED

    def previous_flaws(self) -> list[Flaw]:
        return [flaw for r in self.rounds for flaw in r.challenge.flaws]

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal.id,
            "proposal_type": self.proposal.type,
            "proposal": self.proposal.to_dict(),
            "rounds": [r.to_dict() for r in self.rounds],
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "verdict": self.verdict.value,
            "started_at": self.started_at,
            "last_updated": _timestamp(),
        }


def _mentions(text: str, words: tuple[str, ...]) -> bool:
    return any(word in text for word in words)


def build_defense(proposal: Proposal, previous_flaws: list[Flaw]) -> Defense:
    content = proposal.content.lower()
    strength = 0.5
    if _mentions(content, ACTION_WORDS):
        strength += 0.15
    if _mentions(content, CAUSAL_WORDS):
        strength += 0.15
    if _mentions(content, NORMATIVE_WORDS):
        strength += 0.1
    if len(proposal.content) > 100:
        strength += 0.1

    addressed = [
        {"challenge": flaw.point, "response": f"This is addressed by: {proposal.type} scope"}
        for flaw in previous_flaws
        if flaw.valid
    ]
    return Defense(
        strength_score=round(max(0.0, min(1.0, strength)), 2),
        arguments=[
            f"The proposal is clear and actionable: {proposal.type}",
            "Implementation follows established patterns",
            "Risk is mitigated by existing tests",
        ],
        addressed_challenges=addressed,
    )


def build_challenge(proposal: Proposal, defense: Defense) -> Challenge:
    content = proposal.content.lower()
    flaws: list[Flaw] = []

    if "test" not in content and "verify" not in content:
        flaws.append(Flaw("No testing strategy mentioned", "medium", True))
    if "rollback" not in content and "revert" not in content:
        flaws.append(Flaw("No rollback plan specified", "low", defense.strength_score < 0.7))
    if len(proposal.content) < 50:
        flaws.append(Flaw("Proposal lacks sufficient detail", "high", True))

    if defense.strength_score >= 0.8:
        for flaw in flaws:
            flaw.valid = False
            flaw.reason = "Defense adequately addressed this concern"

    return Challenge(flaws=flaws)


class DebateVerifier:
    """Runs defense/challenge rounds until a verdict or the round cap."""

    def __init__(self, max_rounds: int = 2) -> None:
        self.max_rounds = max_rounds

    def run_round(
        self, log: DebateLog, round_number: int, max_rounds: int | None = None
    ) -> DebateRound:
        limit = self.max_rounds if max_rounds is None else max_rounds
        defense = build_defense(log.proposal, log.previous_flaws())
        challenge = build_challenge(log.proposal, defense)
        debate_round = DebateRound(round=round_number, defense=defense, challenge=challenge)
        log.rounds.append(debate_round)

        if not challenge.has_valid_flaw:
            log.outcome = DebateOutcome(
                verified=True,
                reason="Opponent could not find valid flaws",
                rounds_completed=round_number,
                final_defense_score=defense.strength_score,
            )
        elif round_number >= limit:
            log.outcome = DebateOutcome(
                verified=False,
                reason=f"Unresolved flaws after {round_number} rounds",
                rounds_completed=round_number,
                unresolved_flaws=challenge.valid_flaws,
            )
        return debate_round

    def verify(
        self,
        proposal_type: str,
        content: str,
        context: str = "",
        max_rounds: int | None = None,
    ) -> DebateLog:
        rounds = self.max_rounds if max_rounds is None else max_rounds
        log = DebateLog(proposal=Proposal(type=proposal_type, content=content, context=context))

        for round_number in range(1, rounds + 1):
            logger.info("Debate round %d of %d", round_number, rounds)
            self.run_round(log, round_number, rounds)
            if log.outcome is not None:
                break

        log.proposal.status = log.verdict.value
        if log.verdict == DebateVerdict.VERIFIED:
            logger.info("Proposal verified (no valid flaws found)")
        elif log.verdict == DebateVerdict.REJECTED:
            logger.warning("Proposal rejected (unresolved flaws)")
        else:
            logger.warning("Debate inconclusive after %d rounds", rounds)
        return log


def should_debate(
    confidence: float,
    tier: Tier,
    task_type: str,
    threshold: float = 0.70,
) -> tuple[bool, str]:
    """Trigger policy: low confidence, a supervised tier, or a critical task type."""
    is_critical = any(ct in task_type.lower() for ct in CRITICAL_TYPES)
    required = confidence < threshold or tier in (Tier.SUPERVISOR, Tier.ESCALATE) or is_critical
    if required:
        reason = f"confidence={confidence:.2f},tier={tier.value},critical={is_critical}"
    else:
        reason = f"confidence={confidence:.2f} above threshold"
    return required, reason


def evaluate_outcome(log: DebateLog) -> dict[str, Any]:
    outcome = log.outcome
    verified = bool(outcome and outcome.verified)
    return {
        "proposal_id": log.proposal.id,
        "verdict": log.verdict.value,
        "verified": verified,
        "reason": outcome.reason if outcome else "Debate inconclusive",
        "rounds_completed": len(log.rounds),
        "final_defense_score": outcome.final_defense_score if outcome else 0,
        "unresolved_flaws": [f.to_dict() for f in outcome.unresolved_flaws] if outcome else [],
        "recommendation": "proceed" if verified else "revise",
    }
