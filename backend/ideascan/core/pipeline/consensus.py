# backend/ideascan/core/pipeline/consensus.py
"""
Dual-model consensus decision logic.

Pure functions only: no I/O, no logging, no exceptions. The live
classification worker and the dry-run command both call resolve() so
they produce identical decisions for identical inputs.

Decision rules:
    1. Shortcut: both verdicts agree and both confidences exceed the
       shortcut confidence -> keep (1.0) or discard (0.0).
    2. Otherwise score = (conf_a * keep_a + conf_b * keep_b) / 2.
    3. score >= keep threshold -> keep; score < discard threshold ->
       discard; anything between -> borderline.

Provider outcomes are modelled as a tagged union so each failure
combination is resolved in exactly one place:

    BothSucceeded        -> decide()
    OnlyFirstSucceeded   -> partial-failure path (confidence penalty)
    OnlySecondSucceeded  -> partial-failure path (confidence penalty)
    BothFailed           -> discard, 0.0
    SingleProvider       -> single-provider path (no penalty)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from ...config import settings
from ..database.models import DECISION_BORDERLINE, DECISION_DISCARD, DECISION_KEEP


@dataclass(frozen=True)
class ConsensusThresholds:
    keep: float = 0.6
    discard: float = 0.4
    shortcut: float = 0.8
    partial_failure_penalty: float = 0.5

    @classmethod
    def from_settings(cls) -> "ConsensusThresholds":
        return cls(
            keep=settings.consensus_keep_threshold,
            discard=settings.consensus_discard_threshold,
            shortcut=settings.consensus_shortcut_confidence,
            partial_failure_penalty=settings.consensus_partial_failure_penalty,
        )


DEFAULT_THRESHOLDS = ConsensusThresholds()


@dataclass(frozen=True)
class Vote:
    """One model's usable verdict."""
    verdict: str
    confidence: float

    @property
    def keep_flag(self) -> int:
        return 1 if normalize_verdict(self.verdict) == "keep" else 0


# ============================================================================
# Provider outcome union
# ============================================================================


@dataclass(frozen=True)
class BothSucceeded:
    first: Vote
    second: Vote


@dataclass(frozen=True)
class BothFailed:
    pass


@dataclass(frozen=True)
class OnlyFirstSucceeded:
    vote: Vote


@dataclass(frozen=True)
class OnlySecondSucceeded:
    vote: Vote


@dataclass(frozen=True)
class SingleProvider:
    """Only one model was requested; vote is None if its call failed."""
    vote: Optional[Vote]


ProviderOutcome = Union[BothSucceeded, BothFailed, OnlyFirstSucceeded, OnlySecondSucceeded, SingleProvider]


@dataclass(frozen=True)
class ConsensusResult:
    score: float
    decision: str
    path: str

    def as_tuple(self) -> Tuple[float, str]:
        return self.score, self.decision


# ============================================================================
# Helpers
# ============================================================================


def normalize_verdict(verdict: Any) -> str:
    if isinstance(verdict, str) and verdict.strip().lower() == "keep":
        return "keep"
    return "skip"


def clamp_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(confidence):
        return 0.0
    return min(1.0, max(0.0, confidence))


def apply_thresholds(score: float, thresholds: ConsensusThresholds = DEFAULT_THRESHOLDS) -> str:
    if score >= thresholds.keep:
        return DECISION_KEEP
    if score < thresholds.discard:
        return DECISION_DISCARD
    return DECISION_BORDERLINE


# ============================================================================
# Decision functions
# ============================================================================


def decide(
    verdict_a: Any,
    conf_a: Any,
    verdict_b: Any,
    conf_b: Any,
    thresholds: ConsensusThresholds = DEFAULT_THRESHOLDS,
) -> Tuple[float, str]:
    """
    Combine two successful model verdicts into (score, decision).

    >>> decide("keep", 0.7, "keep", 0.8)
    (0.75, 'keep')
    """
    verdict_a, verdict_b = normalize_verdict(verdict_a), normalize_verdict(verdict_b)
    conf_a, conf_b = clamp_confidence(conf_a), clamp_confidence(conf_b)

    if verdict_a == verdict_b and conf_a > thresholds.shortcut and conf_b > thresholds.shortcut:
        if verdict_a == "keep":
            return 1.0, DECISION_KEEP
        return 0.0, DECISION_DISCARD

    keep_a = 1 if verdict_a == "keep" else 0
    keep_b = 1 if verdict_b == "keep" else 0
    score = (conf_a * keep_a + conf_b * keep_b) / 2
    return score, apply_thresholds(score, thresholds)


def decide_single(vote: Vote, thresholds: ConsensusThresholds = DEFAULT_THRESHOLDS) -> Tuple[float, str]:
    """Single-provider mode: thresholds applied to confidence x keep flag."""
    score = clamp_confidence(vote.confidence) * vote.keep_flag
    return score, apply_thresholds(score, thresholds)


def decide_partial(vote: Vote, thresholds: ConsensusThresholds = DEFAULT_THRESHOLDS) -> Tuple[float, str]:
    """Two providers requested, one failed: surviving confidence is penalized."""
    if vote.keep_flag == 0:
        return 0.0, DECISION_DISCARD
    score = clamp_confidence(vote.confidence) * thresholds.partial_failure_penalty
    return score, apply_thresholds(score, thresholds)


def resolve(outcome: ProviderOutcome, thresholds: ConsensusThresholds = DEFAULT_THRESHOLDS) -> ConsensusResult:
    """Resolve any provider outcome to a terminal decision."""
    if isinstance(outcome, BothSucceeded):
        score, decision = decide(
            outcome.first.verdict, outcome.first.confidence,
            outcome.second.verdict, outcome.second.confidence,
            thresholds,
        )
        return ConsensusResult(score, decision, "consensus")

    if isinstance(outcome, (OnlyFirstSucceeded, OnlySecondSucceeded)):
        score, decision = decide_partial(outcome.vote, thresholds)
        return ConsensusResult(score, decision, "partial-failure")

    if isinstance(outcome, SingleProvider) and outcome.vote is not None:
        score, decision = decide_single(outcome.vote, thresholds)
        return ConsensusResult(score, decision, "single-provider")

    return ConsensusResult(0.0, DECISION_DISCARD, "all-failed")


def outcome_from_votes(
    first: Optional[Vote],
    second: Optional[Vote],
    providers_requested: int = 2,
) -> ProviderOutcome:
    """Build the outcome union from per-slot votes (None = that call failed)."""
    if providers_requested <= 1:
        return SingleProvider(first if first is not None else second)
    if first is not None and second is not None:
        return BothSucceeded(first, second)
    if first is not None:
        return OnlyFirstSucceeded(first)
    if second is not None:
        return OnlySecondSucceeded(second)
    return BothFailed()
