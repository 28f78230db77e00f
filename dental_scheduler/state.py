"""Per-call conversation state that crosses the network boundary every turn.

The voice layer sends a serialized snapshot with each tool call and receives
an updated one back; nothing is kept in server memory between turns.  Hence:

* ``ConversationState`` is a **frozen** pydantic model.  Each operation
  returns a new instance built with :func:`evolve`; invariants are checked
  on every construction.
* :func:`restore_state` never raises.  It migrates legacy field names,
  drops fields that fail validation (logging each one), repairs broken
  invariants and falls back to safe defaults.
* :func:`snapshot` is the inverse: a camelCase JSON-ready dict.

Wire format version 2.  Version 1 snapshots (no ``schemaVersion``) used the
older field names listed in ``_LEGACY_FIELD_ALIASES``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_IDENTITY_FIELDS = ("call_id", "practice_id", "assistant_id")

# Version-1 key → version-2 key.  First legacy key present wins.
_LEGACY_FIELD_ALIASES: dict[str, str] = {
    "vapiCallId": "callId",
    "nexhealthPatientId": "patientId",
    "identifiedPatientId": "patientId",
    "matchedNexhealthAppointmentTypeId": "appointmentTypeId",
    "determinedAppointmentTypeId": "appointmentTypeId",
    "matchedAppointmentName": "appointmentTypeName",
    "determinedAppointmentTypeName": "appointmentTypeName",
    "matchedAppointmentDuration": "durationMinutes",
    "determinedDurationMinutes": "durationMinutes",
    "availableSlotsForDate": "availableSlots",
    "selectedTimeSlot": "selectedSlot",
    "bookingDetailsPresentedForConfirmation": "confirmationPresented",
    "bookedAppointmentDetails": "bookedAppointment",
    "callSummaryForNote": "callSummary",
}


class PatientStatus(str, Enum):
    NEW = "new"
    EXISTING = "existing"
    UNKNOWN = "unknown"


class BookingStage(str, Enum):
    """Where the confirm-then-book flow currently stands."""

    NO_SELECTION = "NO_SELECTION"
    DETAILS_PRESENTED = "DETAILS_PRESENTED"
    BOOKED = "BOOKED"


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        coerce_numbers_to_str=True,
    )


class Slot(_WireModel):
    """One bookable window, as returned by NexHealth and formatted for speech."""

    time: str
    end_time: str | None = None
    start_utc: datetime | None = None
    provider_id: str
    operatory_id: str | None = None
    location_id: str | None = None
    display_time: str
    display_end_time: str | None = None
    display_range: str | None = None
    local_date: date | None = None
    provider_name: str | None = None
    operatory_name: str | None = None


class BookingRecord(_WireModel):
    nexhealth_appointment_id: str
    patient_id: str
    provider_id: str
    provider_name: str | None = None
    operatory_id: str | None = None
    appointment_date: date
    display_time: str
    appointment_type_name: str | None = None
    note: str = ""


class _StateFields(_WireModel):
    """Every state field with a safe default and no cross-field checks.

    Used on its own as the lenient parser inside :func:`restore_state`.
    """

    schema_version: int = SCHEMA_VERSION
    call_id: str = ""
    practice_id: str = ""
    assistant_id: str = ""

    patient_id: str | None = None
    patient_status: PatientStatus = PatientStatus.UNKNOWN
    appointment_type_id: str | None = None
    appointment_type_name: str | None = None
    duration_minutes: int | None = None
    requested_date: date | None = None
    available_slots: list[Slot] | None = None
    selected_slot: Slot | None = None
    confirmation_presented: bool = False
    booked_appointment: BookingRecord | None = None
    call_summary: str = ""


class ConversationState(_StateFields):
    """Everything learned so far in one call."""

    @model_validator(mode="after")
    def _check_invariants(self) -> ConversationState:
        if self.selected_slot is not None and self.requested_date is None:
            raise ValueError("selected_slot requires requested_date")
        if self.confirmation_presented and self.selected_slot is None:
            raise ValueError("confirmation_presented requires selected_slot")
        if (self.appointment_type_id is None) != (self.appointment_type_name is None):
            raise ValueError("appointment_type_id and appointment_type_name must be set together")
        if self.duration_minutes is not None and self.duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        return self

    @property
    def booking_stage(self) -> BookingStage:
        if self.booked_appointment is not None:
            return BookingStage.BOOKED
        if self.confirmation_presented:
            return BookingStage.DETAILS_PRESENTED
        return BookingStage.NO_SELECTION


# ── Construction / transitions ───────────────────────────────────────


def new_state(call_id: str, practice_id: str, assistant_id: str = "") -> ConversationState:
    """Create the state for a brand-new call."""
    logger.info("Initialised conversation state for call %s", call_id)
    return ConversationState(call_id=call_id, practice_id=practice_id, assistant_id=assistant_id)


def evolve(state: ConversationState, **changes: Any) -> ConversationState:
    """Return a copy of *state* with *changes* applied and invariants re-checked.

    Identity fields cannot be changed once the state exists.
    """
    forbidden = set(changes) & set(_IDENTITY_FIELDS)
    if forbidden:
        raise ValueError(f"Identity fields are immutable: {sorted(forbidden)}")
    data = {name: getattr(state, name) for name in ConversationState.model_fields}
    data.update(changes)
    return ConversationState.model_validate(data)


def snapshot(state: ConversationState) -> dict[str, Any]:
    """Serialize *state* for the next turn (camelCase, JSON-ready)."""
    return state.model_dump(mode="json", by_alias=True)


# ── Defensive restore ────────────────────────────────────────────────


def _coerce_mapping(raw: Any) -> dict[str, Any]:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Conversation state snapshot is not valid JSON; starting fresh")
            return {}
    if not isinstance(raw, Mapping):
        if raw is not None:
            logger.warning("Conversation state snapshot is a %s, not an object; starting fresh", type(raw).__name__)
        return {}
    return dict(raw)


def _migrate(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a snapshot up to the current key names (camelCase, version 2)."""
    known_aliases = {f.alias or n: n for n, f in _StateFields.model_fields.items()}
    migrated: dict[str, Any] = {}

    # Accept snake_case keys for current fields
    for key, value in data.items():
        if key in known_aliases:
            migrated[key] = value
        elif key in _StateFields.model_fields:
            migrated.setdefault(_StateFields.model_fields[key].alias or key, value)

    version = data.get("schemaVersion")
    if not isinstance(version, int) or version < SCHEMA_VERSION:
        for legacy, current in _LEGACY_FIELD_ALIASES.items():
            if legacy in data and current not in migrated:
                migrated[current] = data[legacy]
                logger.debug("Migrated legacy state field %s → %s", legacy, current)

    ignored = set(data) - set(migrated) - set(_LEGACY_FIELD_ALIASES) - set(_StateFields.model_fields)
    if ignored:
        logger.debug("Ignoring unknown state fields: %s", sorted(ignored))

    migrated["schemaVersion"] = SCHEMA_VERSION
    return migrated


def _clean_slot_list(raw: Any) -> list[dict[str, Any]] | None:
    if raw is None:
        return None
    if not isinstance(raw, list):
        logger.warning("availableSlots is not a list; dropping it")
        return None
    kept = []
    for item in raw:
        try:
            Slot.model_validate(item)
        except ValidationError:
            logger.warning("Dropping malformed slot from snapshot: %r", item)
            continue
        kept.append(item)
    return kept


def _lenient_parse(data: dict[str, Any]) -> _StateFields:
    """Validate, dropping each top-level field that fails until the rest passes."""
    for _ in range(len(_StateFields.model_fields) + 1):
        try:
            return _StateFields.model_validate(data)
        except ValidationError as exc:
            bad_keys = {err["loc"][0] for err in exc.errors() if err.get("loc")}
            if not bad_keys & set(data):
                break
            for key in bad_keys:
                logger.warning("Discarding malformed state field %s=%r", key, data.get(key))
                data.pop(key, None)
    return _StateFields()


def _repair(fields: dict[str, Any]) -> dict[str, Any]:
    """Fix cross-field invariants that a stale or hand-edited snapshot may break."""
    if (fields["appointment_type_id"] is None) != (fields["appointment_type_name"] is None):
        logger.warning("Snapshot has an unpaired appointment type id/name; clearing both")
        fields["appointment_type_id"] = None
        fields["appointment_type_name"] = None

    if fields["duration_minutes"] is not None and fields["duration_minutes"] <= 0:
        fields["duration_minutes"] = None

    slot = fields["selected_slot"]
    if slot is not None and fields["requested_date"] is None:
        if slot.local_date is not None:
            fields["requested_date"] = slot.local_date
        else:
            logger.warning("Snapshot has a selected slot but no requested date; clearing selection")
            fields["selected_slot"] = None

    if fields["confirmation_presented"] and fields["selected_slot"] is None:
        logger.warning("Snapshot claims confirmation was presented without a selected slot; resetting")
        fields["confirmation_presented"] = False
    return fields


def restore_state(
    raw: Any,
    *,
    call_id: str | None = None,
    practice_id: str | None = None,
    assistant_id: str | None = None,
) -> ConversationState:
    """Rebuild a :class:`ConversationState` from an untrusted snapshot.

    Identity passed by the caller (from the transport envelope) wins over
    identity found in the snapshot; a mismatch is logged.
    """
    data = _migrate(_coerce_mapping(raw))
    if "availableSlots" in data:
        data["availableSlots"] = _clean_slot_list(data["availableSlots"])

    parsed = _lenient_parse(data)
    fields = {name: getattr(parsed, name) for name in _StateFields.model_fields}

    for name, override in (
        ("call_id", call_id),
        ("practice_id", practice_id),
        ("assistant_id", assistant_id),
    ):
        if override is None:
            continue
        if fields[name] and fields[name] != override:
            logger.warning(
                "Snapshot %s (%s) differs from envelope (%s); using envelope value",
                name, fields[name], override,
            )
        fields[name] = override

    if not fields["call_id"]:
        logger.warning("Restored conversation state has no call id")

    return ConversationState.model_validate(_repair(fields))
