"""Confirm-then-book state machine and the booking executor.

::

    NO_SELECTION ──select time──▶ DETAILS_PRESENTED ──confirmed──▶ CONFIRMED ──▶ BOOKED
         ▲                               │
         └──── not confirmed ────────────┘  (CORRECTION_REQUESTED, slot kept)

After a correction the retained slot can be confirmed directly without
being read back again.

No external write happens before ``CONFIRMED``.  The write itself is a single
``POST /appointments`` that is never retried: on failure the confirmation
flag is reset and the classified error is returned so the caller can
re-check availability and try again.
"""

from __future__ import annotations

import logging
from datetime import date
from enum import Enum
from typing import Any

from dental_scheduler.practice import Practice
from dental_scheduler.results import ErrorCode, ToolResult
from dental_scheduler.scheduling.eligibility import (
    EligibilityError,
    resolve_eligibility,
    select_booking_assignment,
)
from dental_scheduler.scheduling.timeutils import (
    format_friendly_date,
    format_utc_iso,
    local_display_time_to_utc,
    normalize_display_time,
)
from dental_scheduler.services import call_log
from dental_scheduler.services.call_log import CallLogStore
from dental_scheduler.services.debug_log import DebugLogStore
from dental_scheduler.services.nexhealth_client import (
    NexHealthAPIError,
    NexHealthClient,
    extract_appointment_id,
)
from dental_scheduler.state import BookingRecord, BookingStage, ConversationState, Slot, evolve

logger = logging.getLogger(__name__)

NOTE_MAX_LENGTH = 250
NOTE_SOURCE = "voice assistant"
PLACEHOLDER_PATIENT_IDS = frozenset({"null", "undefined", "none", "new_patient", "new", "unknown"})
_NEGATIVE_SUMMARY_MARKERS = ("failed", "not available")
_SLOT_TAKEN_MARKERS = ("slot is not available", "already booked")


class BookingTransition(str, Enum):
    DETAILS_PRESENTED = "DETAILS_PRESENTED"
    CONFIRMED = "CONFIRMED"
    CORRECTION_REQUESTED = "CORRECTION_REQUESTED"
    BOOKED = "BOOKED"
    ALREADY_BOOKED = "ALREADY_BOOKED"


# ── Helpers ──────────────────────────────────────────────────────────


def classify_booking_error(exc: Exception) -> ErrorCode:
    """Map a failed booking write to an error code."""
    if not isinstance(exc, NexHealthAPIError):
        return ErrorCode.BOOKING_ERROR
    text = f"{exc} {exc.body or ''}".lower()
    if exc.status_code == 409 or any(marker in text for marker in _SLOT_TAKEN_MARKERS):
        return ErrorCode.SLOT_UNAVAILABLE
    if exc.status_code == 400:
        return ErrorCode.VALIDATION_ERROR
    if exc.status_code == 401:
        return ErrorCode.AUTH_ERROR
    return ErrorCode.NEXHEALTH_API_ERROR


def build_booking_note(call_summary: str | None, appointment_type_name: str | None) -> str:
    """Appointment note for the practice's EHR, at most ``NOTE_MAX_LENGTH`` chars.

    A usable call summary leads; a summary describing a failure is kept only
    as a parenthetical after the standard line.
    """
    type_name = appointment_type_name or "Appointment"
    summary = (call_summary or "").strip()
    standard = f"{type_name} - Scheduled via {NOTE_SOURCE}."

    if summary and not any(m in summary.lower() for m in _NEGATIVE_SUMMARY_MARKERS):
        note = f"{summary} (Booked via {NOTE_SOURCE})"
    elif summary:
        note = f"{standard} ({summary})"
    else:
        note = standard

    if len(note) > NOTE_MAX_LENGTH:
        note = note[: NOTE_MAX_LENGTH - 3] + "..."
    return note


def _slot_details(state: ConversationState, slot: Slot) -> dict[str, Any]:
    day = slot.local_date or state.requested_date
    return {
        "appointment_type_name": state.appointment_type_name,
        "duration_minutes": state.duration_minutes,
        "provider_name": slot.provider_name,
        "operatory_name": slot.operatory_name,
        "date": day.isoformat() if day else None,
        "friendly_date": format_friendly_date(day) if day else None,
        "time": slot.display_time,
        "display_range": slot.display_range,
    }


def _find_slot(state: ConversationState, display_time: str) -> Slot | None:
    return next((s for s in state.available_slots or [] if s.display_time == display_time), None)


def _alternative_times(state: ConversationState, exclude: str | None, limit: int = 3) -> list[str]:
    times: list[str] = []
    for slot in state.available_slots or []:
        if slot.display_time != exclude and slot.display_time not in times:
            times.append(slot.display_time)
    return times[:limit]


# ── State machine ────────────────────────────────────────────────────


def book_appointment(
    state: ConversationState,
    practice: Practice,
    client: NexHealthClient,
    call_logs: CallLogStore,
    *,
    selected_time: str | None = None,
    confirmed: bool | None = None,
    patient_id: str | None = None,
    appointment_type_id: str | None = None,
    debug_log: DebugLogStore | None = None,
) -> tuple[ToolResult, ConversationState]:
    """Advance the booking flow by one turn."""
    stage = state.booking_stage

    if stage is BookingStage.BOOKED:
        record = state.booked_appointment
        logger.info("Call %s already booked (%s); no new write", state.call_id, record.nexhealth_appointment_id)
        return ToolResult.ok(
            transition=BookingTransition.ALREADY_BOOKED.value,
            booked=True,
            appointment_id=record.nexhealth_appointment_id,
            date=record.appointment_date.isoformat(),
            friendly_date=format_friendly_date(record.appointment_date),
            time=record.display_time,
            provider_name=record.provider_name,
            appointment_type_name=record.appointment_type_name,
        ), state

    canonical_time: str | None = None
    if selected_time:
        canonical_time = normalize_display_time(selected_time)
        if canonical_time is None:
            return ToolResult.fail(
                ErrorCode.INVALID_TIME_FORMAT,
                f"selected_time must look like '2:05 PM', got {selected_time!r}",
            ), state

    if stage is BookingStage.DETAILS_PRESENTED:
        current = state.selected_slot.display_time
        if canonical_time and canonical_time != current:
            logger.info("Call %s: caller switched from %s to %s", state.call_id, current, canonical_time)
            return _present(state, canonical_time, debug_log)
        if confirmed:
            return _confirm(
                state, practice, client, call_logs,
                patient_id=patient_id,
                appointment_type_id=appointment_type_id,
                debug_log=debug_log,
            )
        return _request_correction(state, debug_log)

    # NO_SELECTION.  A slot retained after a correction was already read back,
    # so an explicit confirmation of that same slot books it directly.
    retained = state.selected_slot
    if retained is not None and confirmed and canonical_time in (None, retained.display_time):
        return _confirm(
            state, practice, client, call_logs,
            patient_id=patient_id,
            appointment_type_id=appointment_type_id,
            debug_log=debug_log,
        )
    if canonical_time:
        return _present(state, canonical_time, debug_log)
    if retained is not None:
        return _present(state, retained.display_time, debug_log)
    return ToolResult.fail(
        ErrorCode.INCOMPLETE_BOOKING_CONTEXT,
        "No time slot has been selected for this call",
    ), state


def _present(
    state: ConversationState,
    display_time: str,
    debug_log: DebugLogStore | None,
) -> tuple[ToolResult, ConversationState]:
    slot = _find_slot(state, display_time)
    if slot is None:
        logger.info("Call %s: %s is not among the offered slots", state.call_id, display_time)
        return ToolResult.fail(
            ErrorCode.SLOT_NOT_RECOGNIZED_OR_EXPIRED,
            f"{display_time} is not in the current list of available slots",
            available_times=_alternative_times(state, None),
        ), state

    requested = state.requested_date or slot.local_date
    new_state = evolve(state, selected_slot=slot, requested_date=requested, confirmation_presented=True)
    if debug_log is not None:
        debug_log.record(state.call_id, "booking_details_presented", time=display_time)
    return ToolResult.ok(
        transition=BookingTransition.DETAILS_PRESENTED.value,
        requires_confirmation=True,
        **_slot_details(new_state, slot),
    ), new_state


def _request_correction(
    state: ConversationState,
    debug_log: DebugLogStore | None,
) -> tuple[ToolResult, ConversationState]:
    slot = state.selected_slot
    new_state = evolve(state, confirmation_presented=False)
    if debug_log is not None:
        debug_log.record(state.call_id, "booking_correction_requested", time=slot.display_time)
    return ToolResult.ok(
        transition=BookingTransition.CORRECTION_REQUESTED.value,
        requires_clarification=True,
        selected_time=slot.display_time,
        alternative_times=_alternative_times(state, slot.display_time),
        **{k: v for k, v in _slot_details(state, slot).items() if k != "time"},
    ), new_state


# ── Executor ─────────────────────────────────────────────────────────


def _validate_patient_id(patient_id: str) -> ErrorCode | None:
    if patient_id.strip().lower() in PLACEHOLDER_PATIENT_IDS:
        return ErrorCode.INVALID_PATIENT_ID
    if not patient_id.strip().isdigit():
        return ErrorCode.INVALID_PATIENT_ID_FORMAT
    return None


def _prefer_state(call_id: str, name: str, from_state: Any, from_args: Any) -> Any:
    if from_state and from_args and str(from_state) != str(from_args):
        logger.warning("Call %s: %s argument %r differs from state %r; using state", call_id, name, from_args, from_state)
    return from_state or from_args


def _confirm(
    state: ConversationState,
    practice: Practice,
    client: NexHealthClient,
    call_logs: CallLogStore,
    *,
    patient_id: str | None,
    appointment_type_id: str | None,
    debug_log: DebugLogStore | None,
) -> tuple[ToolResult, ConversationState]:
    # Failures below return this state: flag cleared, slot retained.
    confirmed_state = evolve(state, confirmation_presented=False)
    slot = state.selected_slot

    def fail(code: ErrorCode, details: str, *, log_failure: bool = False) -> tuple[ToolResult, ConversationState]:
        logger.warning("Call %s: booking failed with %s: %s", state.call_id, code.value, details)
        rolled_back = evolve(confirmed_state, booked_appointment=None)
        if code is ErrorCode.SLOT_UNAVAILABLE:
            # The slot is gone; drop it so it cannot be offered or re-confirmed
            remaining = [s for s in state.available_slots or [] if s != slot]
            rolled_back = evolve(rolled_back, selected_slot=None, available_slots=remaining)
        if log_failure:
            call_logs.upsert(
                state.call_id, state.practice_id,
                call_status=call_log.BOOKING_FAILED,
                booking_error_code=code.value,
            )
        if debug_log is not None:
            debug_log.record(state.call_id, "booking_failed", error_code=code.value, details=details)
        return ToolResult.fail(code, details, transition=BookingTransition.CONFIRMED.value), rolled_back

    pid = _prefer_state(state.call_id, "patient_id", state.patient_id, patient_id)
    type_id = _prefer_state(state.call_id, "appointment_type_id", state.appointment_type_id, appointment_type_id)
    missing = [
        name for name, value in (
            ("patient_id", pid),
            ("appointment_type_id", type_id),
            ("requested_date", state.requested_date),
            ("duration_minutes", state.duration_minutes),
        ) if not value
    ]
    if missing:
        return fail(ErrorCode.INCOMPLETE_BOOKING_CONTEXT, f"Missing booking context: {', '.join(missing)}")

    if not practice.has_scheduling_config:
        return fail(ErrorCode.PRACTICE_CONFIG_MISSING, f"Practice {practice.id} has no NexHealth configuration")
    if not practice.saved_providers:
        return fail(ErrorCode.NO_SAVED_PROVIDERS, f"Practice {practice.id} has no saved providers")

    patient_error = _validate_patient_id(str(pid))
    if patient_error is not None:
        return fail(patient_error, f"Patient id {pid!r} cannot be booked")

    appointment_type = practice.find_appointment_type(type_id)
    if appointment_type is None:
        return fail(ErrorCode.INVALID_APPOINTMENT_TYPE, f"Appointment type {type_id} is not configured")

    try:
        eligibility = resolve_eligibility(practice, appointment_type)
    except EligibilityError as exc:
        return fail(exc.code, str(exc))

    provider, operatory = select_booking_assignment(
        eligibility,
        slot_provider_id=slot.provider_id,
        slot_operatory_id=slot.operatory_id,
    )
    provider_id = provider.provider.nexhealth_provider_id
    reassigned = slot.provider_id != provider_id
    if reassigned:
        logger.warning(
            "Call %s: slot provider %s is no longer eligible; assigning %s",
            state.call_id, slot.provider_id, provider_id,
        )
    operatory_id = operatory.nexhealth_operatory_id if operatory else None
    if not reassigned and slot.operatory_id:
        operatory_id = slot.operatory_id

    day: date = slot.local_date or state.requested_date
    try:
        start = local_display_time_to_utc(day, slot.display_time, practice.tz)
    except ValueError:
        if slot.start_utc is None:
            return fail(ErrorCode.INVALID_TIME_FORMAT, f"Selected slot time {slot.display_time!r} is unusable")
        start = slot.start_utc

    note = build_booking_note(state.call_summary, appointment_type.name)
    appointment: dict[str, Any] = {
        "patient_id": int(pid),
        "provider_id": int(provider_id) if provider_id.isdigit() else provider_id,
        "appointment_type_id": (
            int(appointment_type.nexhealth_appointment_type_id)
            if appointment_type.nexhealth_appointment_type_id.isdigit()
            else appointment_type.nexhealth_appointment_type_id
        ),
        "start_time": format_utc_iso(start),
        "note": note,
    }
    if operatory_id:
        appointment["operatory_id"] = int(operatory_id) if operatory_id.isdigit() else operatory_id

    logger.info("Call %s: booking %s", state.call_id, appointment)
    try:
        response = client.create_appointment(
            practice.nexhealth_subdomain,
            location_id=practice.nexhealth_location_id,
            appointment=appointment,
        )
    except Exception as exc:
        logger.exception("Call %s: appointment creation failed", state.call_id)
        return fail(classify_booking_error(exc), str(exc), log_failure=True)

    appointment_id = extract_appointment_id(response)
    if appointment_id is None:
        return fail(ErrorCode.BOOKING_ERROR, "NexHealth response did not include an appointment id", log_failure=True)

    record = BookingRecord(
        nexhealth_appointment_id=appointment_id,
        patient_id=str(pid),
        provider_id=provider_id,
        provider_name=provider.provider.display_name if reassigned else (slot.provider_name or provider.provider.display_name),
        operatory_id=operatory_id,
        appointment_date=day,
        display_time=slot.display_time,
        appointment_type_name=appointment_type.name,
        note=note,
    )
    booked_state = evolve(confirmed_state, booked_appointment=record)

    call_logs.upsert(
        state.call_id, state.practice_id,
        call_status=call_log.APPOINTMENT_BOOKED,
        booked_appointment_nexhealth_id=appointment_id,
        nexhealth_patient_id=str(pid),
    )
    if debug_log is not None:
        debug_log.record(state.call_id, "appointment_booked", appointment_id=appointment_id, start_time=appointment["start_time"])

    details = _slot_details(booked_state, slot)
    if reassigned:
        details["provider_name"] = record.provider_name
        details["operatory_name"] = operatory.name if operatory else None

    logger.info("Call %s: booked NexHealth appointment %s", state.call_id, appointment_id)
    return ToolResult.ok(
        transition=BookingTransition.BOOKED.value,
        booked=True,
        appointment_id=appointment_id,
        patient_id=str(pid),
        start_time_utc=appointment["start_time"],
        **details,
    ), booked_state
