"""Health scoring engine: reduce check-ins, feedback and risks to a 0-100 score.

Policies
--------
Two scoring policies read the same canonical record fields:

- **absolute** — weighted sum of client satisfaction (40%), team confidence
  (40%) and average completion (20%), minus 5 points per flagged feedback.
  Used for the on-demand, persisted project health.
- **multiplicative** — starts from 100, subtracts 10 per open high-severity
  risk, then scales by average confidence and satisfaction (each out of 5).
  Used for the admin dashboard annotation.

Both clamp to ``[0, 100]`` after rounding half-up, and the status is a pure
function of the score (see :func:`classify`).

Empty inputs never raise: the mean of an empty sequence is the policy default
(``DEFAULT_SATISFACTION``, ``DEFAULT_CONFIDENCE``, ``DEFAULT_COMPLETION``).
Malformed numbers raise :class:`~pulse.errors.ValidationError` before any
arithmetic happens.
"""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from numbers import Real
from typing import Iterable, Protocol, Sequence

from pulse.errors import ValidationError
from pulse.models import ProjectStatus, RiskStatus, Severity

DEFAULT_SATISFACTION = 5.0
DEFAULT_CONFIDENCE = 5.0
DEFAULT_COMPLETION = 0.0

RATING_RANGE = (1.0, 5.0)
COMPLETION_RANGE = (0.0, 100.0)

CRITICAL_BELOW = 60
AT_RISK_BELOW = 80

FLAG_PENALTY = 5
HIGH_RISK_PENALTY = 10

MIN_SCORE = 0
MAX_SCORE = 100


class HealthPolicy(str, enum.Enum):
    ABSOLUTE = "absolute"
    MULTIPLICATIVE = "multiplicative"


# ---------------------------------------------------------------------------
# Record shapes the engine reads (ORM rows satisfy these)
# ---------------------------------------------------------------------------


class CheckinSignal(Protocol):
    confidence_level: float
    completion_percentage: float


class FeedbackSignal(Protocol):
    satisfaction_rating: float
    flagged_issue: bool


class RiskSignal(Protocol):
    severity: Severity | str
    status: RiskStatus | str


@dataclass(frozen=True)
class HealthResult:
    score: int
    status: ProjectStatus


# ---------------------------------------------------------------------------
# Aggregation helpers
# ---------------------------------------------------------------------------


def _numeric(value: object, kind: str, field: str, bounds: tuple[float, float]) -> float:
    """Return *value* as a float, or raise ValidationError if it is unusable."""
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ValidationError(f"{kind}.{field} must be a number, got {value!r}", field=field)
    number = float(value)
    if not math.isfinite(number):
        raise ValidationError(f"{kind}.{field} must be finite, got {value!r}", field=field)
    lo, hi = bounds
    if not lo <= number <= hi:
        raise ValidationError(f"{kind}.{field} must be between {lo:g} and {hi:g}, got {number:g}", field=field)
    return number


def mean_or_default(values: Iterable[float], default: float) -> float:
    """Arithmetic mean of *values*, or *default* when there are none."""
    values = list(values)
    if not values:
        return default
    return sum(values) / len(values)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def clamp_score(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def classify(score: int) -> ProjectStatus:
    if score < CRITICAL_BELOW:
        return ProjectStatus.CRITICAL
    if score < AT_RISK_BELOW:
        return ProjectStatus.AT_RISK
    return ProjectStatus.ON_TRACK


def average_satisfaction(feedback: Sequence[FeedbackSignal]) -> float:
    return mean_or_default(
        (_numeric(f.satisfaction_rating, "feedback", "satisfaction_rating", RATING_RANGE) for f in feedback),
        DEFAULT_SATISFACTION,
    )


def average_confidence(checkins: Sequence[CheckinSignal]) -> float:
    return mean_or_default(
        (_numeric(c.confidence_level, "checkin", "confidence_level", RATING_RANGE) for c in checkins),
        DEFAULT_CONFIDENCE,
    )


def average_completion(checkins: Sequence[CheckinSignal]) -> float:
    return mean_or_default(
        (_numeric(c.completion_percentage, "checkin", "completion_percentage", COMPLETION_RANGE)
         for c in checkins),
        DEFAULT_COMPLETION,
    )


def flagged_count(feedback: Sequence[FeedbackSignal]) -> int:
    return sum(1 for f in feedback if f.flagged_issue)


def is_open_high(risk: RiskSignal) -> bool:
    return risk.severity == Severity.HIGH and risk.status == RiskStatus.OPEN


def is_open(risk: RiskSignal) -> bool:
    return risk.status == RiskStatus.OPEN


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


def absolute_score(
    checkins: Sequence[CheckinSignal], feedback: Sequence[FeedbackSignal],
) -> int:
    raw = (
        average_satisfaction(feedback) * 20 * 0.4
        + average_confidence(checkins) * 20 * 0.4
        + average_completion(checkins) * 0.2
        - flagged_count(feedback) * FLAG_PENALTY
    )
    return clamp_score(round_half_up(raw))


def multiplicative_score(
    checkins: Sequence[CheckinSignal], feedback: Sequence[FeedbackSignal],
    risks: Sequence[RiskSignal],
) -> int:
    raw = 100.0 - HIGH_RISK_PENALTY * sum(1 for r in risks if is_open_high(r))
    raw *= average_confidence(checkins) / 5
    raw *= average_satisfaction(feedback) / 5
    return clamp_score(round_half_up(raw))


def score_for(
    policy: HealthPolicy,
    checkins: Sequence[CheckinSignal], feedback: Sequence[FeedbackSignal],
    risks: Sequence[RiskSignal] = (),
) -> int:
    if policy is HealthPolicy.ABSOLUTE:
        return absolute_score(checkins, feedback)
    return multiplicative_score(checkins, feedback, risks)


def evaluate(
    checkins: Sequence[CheckinSignal], feedback: Sequence[FeedbackSignal],
    risks: Sequence[RiskSignal] = (), policy: HealthPolicy = HealthPolicy.ABSOLUTE,
) -> HealthResult:
    score = score_for(policy, checkins, feedback, risks)
    return HealthResult(score=score, status=classify(score))
