"""Availability Engine: fetch, filter, format and offer open slots.

Pipeline for one ``check_available_slots`` call:

1. resolve eligible providers/operatories for the appointment type;
2. ``GET /appointment_slots`` (no appointment type id, ``slot_length``
   carries the duration);
3. flatten the per-provider groups into one list;
4. drop slots that start in the lunch window (unparsable times are kept);
5. format display strings in practice-local time and attach names;
6. sort by start time, unparsable last;
7. persist the full list on the conversation state;
8. offer at most ``MAX_OFFERED_TIMES`` distinct display times.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta, tzinfo
from typing import Any

from dental_scheduler.practice import Practice
from dental_scheduler.results import ErrorCode, ToolResult
from dental_scheduler.scheduling.appointment_types import accept_appointment_type
from dental_scheduler.scheduling.eligibility import (
    EligibilityError,
    EligibilityResult,
    resolve_eligibility,
)
from dental_scheduler.scheduling.timeutils import (
    TIME_BUCKETS,
    format_display_time,
    format_friendly_date,
    in_time_bucket,
    is_during_lunch,
    parse_instant,
    parse_iso_date,
)
from dental_scheduler.services.debug_log import DebugLogStore
from dental_scheduler.services.nexhealth_client import NexHealthAPIError, NexHealthClient
from dental_scheduler.state import ConversationState, Slot, evolve

logger = logging.getLogger(__name__)

MAX_OFFERED_TIMES = 3
MIN_DAYS_TO_SEARCH = 1
MAX_DAYS_TO_SEARCH = 7


# ── Pipeline stages ──────────────────────────────────────────────────


def flatten_slot_groups(groups: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """``[{"pid", "lid", "slots": [...]}, ...]`` → one flat list of raw slots.

    Each raw slot gets its group's provider/location id when it has none of
    its own.  Entries without a ``time`` are dropped.
    """
    flat: list[dict[str, Any]] = []
    for group in groups:
        if not isinstance(group, dict):
            continue
        for raw in group.get("slots") or []:
            if not isinstance(raw, dict) or not raw.get("time"):
                continue
            flat.append(
                {
                    "time": raw["time"],
                    "end_time": raw.get("end_time"),
                    "provider_id": raw.get("provider_id", group.get("pid")),
                    "operatory_id": raw.get("operatory_id"),
                    "location_id": raw.get("location_id", group.get("lid")),
                }
            )
    return flat


def filter_lunch_break(raw_slots: list[dict[str, Any]], tz: tzinfo) -> tuple[list[dict[str, Any]], int]:
    """Remove slots starting in the lunch window.  Returns ``(kept, removed_count)``."""
    kept = [s for s in raw_slots if not is_during_lunch(parse_instant(s["time"], tz), tz)]
    return kept, len(raw_slots) - len(kept)


def build_slot(
    raw: dict[str, Any],
    tz: tzinfo,
    provider_names: dict[str, str],
    operatory_names: dict[str, str],
) -> Slot:
    start = parse_instant(raw["time"], tz)
    end = parse_instant(raw.get("end_time"), tz)

    provider_id = str(raw["provider_id"]) if raw.get("provider_id") is not None else ""
    operatory_id = str(raw["operatory_id"]) if raw.get("operatory_id") is not None else None

    display_time = format_display_time(start, tz) if start else str(raw["time"])
    display_end = format_display_time(end, tz) if end else None

    return Slot(
        time=str(raw["time"]),
        end_time=raw.get("end_time"),
        start_utc=start,
        provider_id=provider_id,
        operatory_id=operatory_id,
        location_id=str(raw["location_id"]) if raw.get("location_id") is not None else None,
        display_time=display_time,
        display_end_time=display_end,
        display_range=f"{display_time} - {display_end}" if display_end else None,
        local_date=start.astimezone(tz).date() if start else None,
        provider_name=provider_names.get(provider_id) or f"Provider {provider_id}",
        operatory_name=(
            operatory_names.get(operatory_id) or f"Operatory {operatory_id}" if operatory_id else None
        ),
    )


def sort_slots(slots: list[Slot]) -> list[Slot]:
    """Ascending by start instant; slots whose time could not be parsed go last."""
    return sorted(
        slots,
        key=lambda s: (s.start_utc is None, s.start_utc.timestamp() if s.start_utc else 0.0),
    )


def offer_slots(slots: list[Slot], limit: int = MAX_OFFERED_TIMES) -> tuple[list[Slot], bool]:
    """First *limit* slots with distinct display times, plus whether more exist."""
    offered: list[Slot] = []
    seen: set[str] = set()
    for slot in slots:
        if slot.display_time in seen:
            continue
        seen.add(slot.display_time)
        offered.append(slot)
    return offered[:limit], len(offered) > limit


def _offered_summary(slot: Slot) -> dict[str, Any]:
    return {
        "display_time": slot.display_time,
        "display_range": slot.display_range,
        "date": slot.local_date.isoformat() if slot.local_date else None,
        "provider_name": slot.provider_name,
        "operatory_name": slot.operatory_name,
    }


# ── Tool operation ───────────────────────────────────────────────────


def check_available_slots(
    state: ConversationState,
    practice: Practice,
    client: NexHealthClient,
    *,
    requested_date: str,
    appointment_type_id: str | None = None,
    days_to_search: int = 1,
    time_preference: str | None = None,
    provider_ids: Sequence[str] | None = None,
    operatory_ids: Sequence[str] | None = None,
    debug_log: DebugLogStore | None = None,
) -> tuple[ToolResult, ConversationState]:
    """Query NexHealth for open slots on *requested_date* and offer a few.

    The appointment type comes from the conversation state; *appointment_type_id*
    is only used when the state has none yet.  Local failures leave the state
    untouched.
    """
    day = parse_iso_date(requested_date)
    if day is None:
        return ToolResult.fail(
            ErrorCode.INVALID_DATE_FORMAT,
            f"requested_date must be YYYY-MM-DD, got {requested_date!r}",
        ), state

    if not practice.has_scheduling_config:
        return ToolResult.fail(
            ErrorCode.PRACTICE_CONFIG_MISSING,
            f"Practice {practice.id} has no NexHealth subdomain/location configured",
        ), state

    type_id = state.appointment_type_id
    if type_id and appointment_type_id and appointment_type_id != type_id:
        logger.warning(
            "Call %s: appointment_type_id argument %s differs from state %s; using state",
            state.call_id, appointment_type_id, type_id,
        )
    type_id = type_id or appointment_type_id
    if not type_id:
        return ToolResult.fail(
            ErrorCode.INCOMPLETE_BOOKING_CONTEXT,
            "No appointment type has been determined for this call",
        ), state

    appointment_type = practice.find_appointment_type(type_id)
    if appointment_type is None:
        return ToolResult.fail(
            ErrorCode.INVALID_APPOINTMENT_TYPE,
            f"Appointment type {type_id} is not configured for practice {practice.id}",
        ), state

    try:
        eligibility = resolve_eligibility(
            practice,
            appointment_type,
            provider_filter=provider_ids,
            operatory_filter=operatory_ids,
        )
    except EligibilityError as exc:
        logger.info("Call %s: no eligible providers (%s)", state.call_id, exc.code.value)
        return ToolResult.fail(exc.code, str(exc)), state

    days = max(MIN_DAYS_TO_SEARCH, min(MAX_DAYS_TO_SEARCH, days_to_search))
    slot_length = state.duration_minutes or appointment_type.duration
    tz = practice.tz

    try:
        groups = client.get_appointment_slots(
            practice.nexhealth_subdomain,
            start_date=day.isoformat(),
            days=days,
            location_id=practice.nexhealth_location_id,
            provider_ids=eligibility.nexhealth_provider_ids,
            operatory_ids=eligibility.nexhealth_operatory_ids,
            slot_length=slot_length,
        )
    except NexHealthAPIError as exc:
        logger.error("Call %s: slot query failed: %s", state.call_id, exc)
        return ToolResult.fail(ErrorCode.NEXHEALTH_API_ERROR, str(exc)), state

    raw_slots = flatten_slot_groups(groups)
    kept, lunch_filtered = filter_lunch_break(raw_slots, tz)

    operatory_names = {o.nexhealth_operatory_id: o.name for o in practice.saved_operatories}
    operatory_names.update(eligibility.operatory_names())
    slots = sort_slots(
        [build_slot(raw, tz, eligibility.provider_names(), operatory_names) for raw in kept]
    )

    if debug_log is not None:
        debug_log.record(
            state.call_id,
            "availability_checked",
            requested_date=day.isoformat(),
            days=days,
            slot_length=slot_length,
            raw_slot_count=len(raw_slots),
            lunch_break_slots_filtered=lunch_filtered,
            slot_count=len(slots),
        )

    # Persist the full list; a fresh query invalidates any earlier selection.
    new_state = state if state.appointment_type_id else accept_appointment_type(state, appointment_type)
    new_state = evolve(
        new_state,
        requested_date=day,
        available_slots=slots,
        selected_slot=None,
        confirmation_presented=False,
    )

    candidates = slots
    preference_matched: bool | None = None
    if time_preference:
        if time_preference not in TIME_BUCKETS:
            logger.warning("Ignoring unknown time preference %r", time_preference)
        else:
            bucketed = [s for s in slots if in_time_bucket(s.start_utc, tz, time_preference)]
            preference_matched = bool(bucketed)
            candidates = bucketed or slots

    offered, has_more = offer_slots(candidates)
    logger.info(
        "Call %s: %d slot(s) on %s (%d lunch filtered), offering %s",
        state.call_id, len(slots), day, lunch_filtered, [s.display_time for s in offered],
    )

    data: dict[str, Any] = {
        "has_availability": bool(slots),
        "requested_date": day.isoformat(),
        "friendly_date": format_friendly_date(day),
        "days_searched": days,
        "search_end_date": (day + timedelta(days=days - 1)).isoformat(),
        "appointment_type_name": appointment_type.name,
        "duration_minutes": slot_length,
        "offered_times": [s.display_time for s in offered],
        "offered_slots": [_offered_summary(s) for s in offered],
        "has_more_slots": has_more,
        "total_slots_found": len(slots),
        "lunch_break_slots_filtered": lunch_filtered,
        "debug_info": _debug_info(eligibility, len(raw_slots), lunch_filtered),
    }
    if preference_matched is not None:
        data["time_preference"] = time_preference
        data["time_preference_matched"] = preference_matched
    return ToolResult.ok(**data), new_state


def _debug_info(eligibility: EligibilityResult, raw_count: int, lunch_filtered: int) -> dict[str, Any]:
    return {
        **eligibility.stats,
        "provider_ids_queried": eligibility.nexhealth_provider_ids,
        "operatory_ids_queried": eligibility.nexhealth_operatory_ids,
        "raw_slot_count": raw_count,
        "lunch_break_slots_filtered": lunch_filtered,
    }

