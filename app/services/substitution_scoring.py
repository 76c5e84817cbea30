from __future__ import annotations

"""Pure scoring functions for substitute therapist candidates.

All functions take primitive inputs and return values clamped to 0..100 so
the weighting constants can be tuned and tested in isolation.
"""

from typing import Protocol


COMPATIBILITY_BASE = 50.0
SPECIALTY_MATCH_BONUS = 30.0
OVERLAP_BONUS_PER_SPECIALTY = 5.0
OVERLAP_BONUS_CAP = 20.0

DISRUPTION_UNASSIGNED_WEIGHT = 0.7
DISRUPTION_IMPACT_WEIGHT = 0.3


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def availability_score(utilization_percentage: float) -> float:
    """``100 - utilization``; a therapist over capacity scores 0."""
    return round(_clamp(100.0 - utilization_percentage), 2)


def compatibility_score(overlap_count: int, specialties_match: bool) -> float:
    """Base score, a bonus for any shared specialty and a per-overlap bonus."""
    score = COMPATIBILITY_BASE
    if specialties_match:
        score += SPECIALTY_MATCH_BONUS
    score += min(max(overlap_count, 0) * OVERLAP_BONUS_PER_SPECIALTY, OVERLAP_BONUS_CAP)
    return round(_clamp(score), 2)


def workload_impact_score(required_hours: float, remaining_hours: float) -> float:
    """Strain of taking ``required_hours`` with ``remaining_hours`` left.

    Grows with the square of the consumed share of remaining capacity, so a
    candidate close to its limit is penalized disproportionately. No
    remaining capacity is the maximum impact.
    """

    if required_hours <= 0:
        return 0.0
    if remaining_hours <= 0:
        return 100.0
    share = required_hours / remaining_hours
    return round(_clamp(100.0 * share * share), 2)


def disruption_score(unassigned_fraction: float, average_impact: float) -> float:
    """Weighted mix of uncovered sessions and substitute strain (0..100)."""
    fraction = max(0.0, min(1.0, unassigned_fraction))
    score = 100.0 * (
        DISRUPTION_UNASSIGNED_WEIGHT * fraction
        + DISRUPTION_IMPACT_WEIGHT * _clamp(average_impact) / 100.0
    )
    return round(_clamp(score), 2)


class ScoredCandidate(Protocol):
    therapist_id: int
    compatibility_score: float
    availability_score: float
    workload_impact: float


def candidate_sort_key(candidate: ScoredCandidate) -> tuple[float, float, float, int]:
    """Compatibility first, then availability, then lowest workload impact."""
    return (
        -candidate.compatibility_score,
        -candidate.availability_score,
        candidate.workload_impact,
        candidate.therapist_id,
    )
