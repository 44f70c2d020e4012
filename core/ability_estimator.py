"""
Ability Estimator - Session-wide skill estimate.

    ability    = clamp(correct_rate + (mean_difficulty - 0.5) * 0.2, 0, 1)
    confidence = min(1, answered / 10)

A pure function of the session's answered items; update_session_ability
writes the result onto the session and appends it to ability_history.
"""

from datetime import datetime
from typing import Iterable, Optional, Tuple

from .session import AbilityPoint, AssessmentSession, SessionItem
from .timeutil import utcnow


DIFFICULTY_WEIGHT = 0.2
CONFIDENCE_HORIZON = 10  # answered items needed for full confidence


def confidence_for(answered_questions: int) -> float:
    return min(1.0, answered_questions / CONFIDENCE_HORIZON)


def estimate_ability(items: Iterable[SessionItem]) -> Optional[Tuple[float, float]]:
    """(ability, confidence) over answered items, or None when nothing is answered."""
    answered = [item for item in items if item.is_answered]
    if not answered:
        return None

    correct_rate = sum(1 for item in answered if item.is_correct) / len(answered)
    average_difficulty = sum(
        0.5 if item.difficulty is None else item.difficulty for item in answered
    ) / len(answered)

    ability = correct_rate + (average_difficulty - 0.5) * DIFFICULTY_WEIGHT
    return max(0.0, min(1.0, ability)), confidence_for(len(answered))


def update_session_ability(session: AssessmentSession,
                           now: Optional[datetime] = None) -> Optional[AbilityPoint]:
    estimate = estimate_ability(session.items)
    if estimate is None:
        return None

    ability, confidence = estimate
    session.estimated_ability = ability
    point = AbilityPoint(timestamp=now or utcnow(), ability=ability, confidence=confidence)
    session.ability_history.append(point)
    return point
