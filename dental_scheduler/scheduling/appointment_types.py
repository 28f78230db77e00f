"""Match a caller's free-text service request to a configured appointment type.

Scoring (highest wins, ties go to the first configured type):

* exact name match ............................ 100
* any alias of the type appears in the request ..  80
* the type name appears in the request .........  70
* otherwise, per request word: +20 for each type-name word it overlaps,
  +15 for each alias it overlaps

A best score under ``MIN_MATCH_SCORE`` is no match: the caller gets the list
of bookable types to clarify with instead of a guess.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from dental_scheduler.practice import AppointmentType, Practice
from dental_scheduler.results import ErrorCode, ToolResult
from dental_scheduler.state import ConversationState, evolve

logger = logging.getLogger(__name__)

MIN_MATCH_SCORE = 10
MAX_TYPES_TO_OFFER = 5

APPOINTMENT_TYPE_ALIASES: dict[str, list[str]] = {
    "cleaning": ["clean", "hygiene", "prophy", "prophylaxis", "dental cleaning", "teeth cleaning"],
    "checkup": ["check", "exam", "examination", "visit", "routine"],
    "consultation": ["consult", "new patient", "initial"],
    "filling": ["cavity", "restoration", "tooth repair"],
    "crown": ["cap", "tooth cap"],
    "root canal": ["endodontic", "nerve", "tooth infection"],
    "extraction": ["pull", "remove", "tooth removal"],
    "emergency": ["urgent", "pain", "broken", "asap"],
}


@dataclass
class AppointmentTypeMatch:
    appointment_type: AppointmentType | None
    score: int
    user_request: str
    candidates: list[AppointmentType] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.appointment_type is not None


def aliases_for(appointment_type: AppointmentType) -> list[str]:
    """Static aliases whose key appears in the type name, plus the type's own keywords."""
    name = appointment_type.name.lower()
    aliases: list[str] = []
    for key, words in APPOINTMENT_TYPE_ALIASES.items():
        if key in name:
            aliases.extend(words)
    aliases.extend(k.lower().strip() for k in appointment_type.keywords if k.strip())
    return aliases


def score_appointment_type(request: str, appointment_type: AppointmentType) -> int:
    name = appointment_type.name.lower().strip()
    aliases = aliases_for(appointment_type)

    if name == request:
        return 100
    if any(alias in request for alias in aliases):
        return 80
    if name and name in request:
        return 70

    score = 0
    type_words = name.split()
    for word in request.split():
        if len(word) <= 2:
            continue
        for type_word in type_words:
            if type_word in word or word in type_word:
                score += 20
        for alias in aliases:
            if alias in word or word in alias:
                score += 15
    return score


def resolve_appointment_type(practice: Practice, user_request: str) -> AppointmentTypeMatch:
    """Pure scoring pass over the practice's online-bookable types."""
    request = user_request.lower().strip()
    candidates = [t for t in practice.appointment_types if t.bookable_online]

    best: AppointmentType | None = None
    best_score = 0
    for appointment_type in candidates:
        score = score_appointment_type(request, appointment_type)
        logger.debug("Type %r scored %d for %r", appointment_type.name, score, request)
        if score > best_score:
            best, best_score = appointment_type, score

    if best is None or best_score < MIN_MATCH_SCORE:
        return AppointmentTypeMatch(None, best_score, request, candidates)
    return AppointmentTypeMatch(best, best_score, request, candidates)


def accept_appointment_type(
    state: ConversationState,
    appointment_type: AppointmentType,
) -> ConversationState:
    """Record *appointment_type* on the state.

    Switching to a different type invalidates any slots fetched for the old
    one (their length was the old duration).
    """
    changes: dict = {
        "appointment_type_id": appointment_type.nexhealth_appointment_type_id,
        "appointment_type_name": appointment_type.name,
        "duration_minutes": appointment_type.duration,
    }
    if state.appointment_type_id != appointment_type.nexhealth_appointment_type_id:
        changes.update(available_slots=None, selected_slot=None, confirmation_presented=False)
    return evolve(state, **changes)


def _type_summary(appointment_type: AppointmentType) -> dict:
    return {
        "id": appointment_type.nexhealth_appointment_type_id,
        "name": appointment_type.name,
        "duration": appointment_type.duration,
    }


def find_appointment_type(
    state: ConversationState,
    practice: Practice,
    user_request: str,
    *,
    accept_match: bool = True,
) -> tuple[ToolResult, ConversationState]:
    """Tool operation: resolve a service request, optionally accepting the match."""
    if not [t for t in practice.appointment_types if t.bookable_online]:
        return ToolResult.fail(
            ErrorCode.NO_APPOINTMENT_TYPES,
            f"Practice {practice.id} has no online-bookable appointment types",
        ), state

    match = resolve_appointment_type(practice, user_request)

    if not match.matched:
        logger.info("No appointment type matched %r (best score %d)", match.user_request, match.score)
        return ToolResult.ok(
            matched=False,
            user_request=match.user_request,
            available_types=[_type_summary(t) for t in match.candidates[:MAX_TYPES_TO_OFFER]],
        ), state

    chosen = match.appointment_type
    logger.info("Matched %r to appointment type %s (score %d)", match.user_request, chosen.name, match.score)
    new_state = accept_appointment_type(state, chosen) if accept_match else state
    return ToolResult.ok(
        matched=True,
        accepted=accept_match,
        appointment_type_id=chosen.nexhealth_appointment_type_id,
        appointment_type_name=chosen.name,
        duration_minutes=chosen.duration,
        match_score=match.score,
        user_request=match.user_request,
    ), new_state
