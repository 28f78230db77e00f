"""Patient identification and registration against the practice's EHR."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any

from dental_scheduler.practice import Practice
from dental_scheduler.results import ErrorCode, ToolResult
from dental_scheduler.scheduling.timeutils import parse_iso_date
from dental_scheduler.services import call_log
from dental_scheduler.services.call_log import CallLogStore
from dental_scheduler.services.debug_log import DebugLogStore
from dental_scheduler.services.nexhealth_client import NexHealthAPIError, NexHealthClient, extract_patient_id
from dental_scheduler.state import ConversationState, PatientStatus, evolve

logger = logging.getLogger(__name__)


def _friendly_dob(day: date) -> str:
    return f"{day:%B} {day.day}, {day.year}"


def _patient_dob(patient: dict[str, Any]) -> str | None:
    bio = patient.get("bio")
    if isinstance(bio, dict) and bio.get("date_of_birth"):
        return bio["date_of_birth"]
    return patient.get("date_of_birth")


def find_patient(
    state: ConversationState,
    practice: Practice,
    client: NexHealthClient,
    call_logs: CallLogStore,
    *,
    first_name: str,
    last_name: str,
    date_of_birth: str,
    debug_log: DebugLogStore | None = None,
) -> tuple[ToolResult, ConversationState]:
    """Look up an existing patient by full name and date of birth.

    The first match is taken.  Callers already declared new are not searched.
    """
    if state.patient_status is PatientStatus.NEW:
        return ToolResult.ok(
            patient_exists=False,
            skipped_search_reason="Caller is a new patient",
        ), state

    dob = parse_iso_date(date_of_birth)
    if dob is None:
        return ToolResult.fail(
            ErrorCode.INVALID_DATE_FORMAT,
            f"date_of_birth must be YYYY-MM-DD, got {date_of_birth!r}",
        ), state

    if not practice.has_scheduling_config:
        return ToolResult.fail(
            ErrorCode.PRACTICE_CONFIG_MISSING,
            f"Practice {practice.id} has no NexHealth subdomain/location configured",
        ), state

    name = f"{first_name.strip()} {last_name.strip()}"
    try:
        patients = client.search_patients(
            practice.nexhealth_subdomain,
            location_id=practice.nexhealth_location_id,
            name=name,
            date_of_birth=dob.isoformat(),
        )
    except NexHealthAPIError as exc:
        logger.error("Call %s: patient search failed: %s", state.call_id, exc)
        return ToolResult.fail(ErrorCode.NEXHEALTH_API_ERROR, str(exc)), state

    if debug_log is not None:
        debug_log.record(state.call_id, "patient_search", matches=len(patients))

    if not patients:
        logger.info("Call %s: no patient matched %s / %s", state.call_id, name, dob)
        return ToolResult.ok(
            patient_exists=False,
            searched_name=name,
            searched_dob=dob.isoformat(),
            searched_dob_friendly=_friendly_dob(dob),
        ), state

    patient = patients[0]
    patient_id = str(patient["id"])
    new_state = evolve(state, patient_id=patient_id, patient_status=PatientStatus.EXISTING)
    call_logs.upsert(
        state.call_id, state.practice_id,
        call_status=call_log.TOOL_IN_PROGRESS,
        nexhealth_patient_id=patient_id,
    )

    found_dob = parse_iso_date(_patient_dob(patient)) or dob
    logger.info("Call %s: identified patient %s (%d match(es))", state.call_id, patient_id, len(patients))
    return ToolResult.ok(
        patient_exists=True,
        patient_id=patient_id,
        confirmed_patient_name=f"{patient.get('first_name') or first_name} {patient.get('last_name') or last_name}",
        confirmed_patient_dob=found_dob.isoformat(),
        confirmed_patient_dob_friendly=_friendly_dob(found_dob),
        match_count=len(patients),
    ), new_state


def set_patient_status(state: ConversationState, status: str) -> tuple[ToolResult, ConversationState]:
    """Record whether the caller says they are a new or existing patient.

    Declaring a new patient drops any previously identified patient id.
    """
    try:
        patient_status = PatientStatus(status.strip().lower())
    except ValueError:
        return ToolResult.fail(
            ErrorCode.INVALID_ARGUMENTS,
            f"status must be one of {[s.value for s in PatientStatus]}, got {status!r}",
        ), state

    changes: dict[str, Any] = {"patient_status": patient_status}
    if patient_status is PatientStatus.NEW:
        changes["patient_id"] = None
    new_state = evolve(state, **changes)
    return ToolResult.ok(patient_status=patient_status.value, patient_id=new_state.patient_id), new_state


# ── Registration ─────────────────────────────────────────────────────

_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)
MIN_PHONE_DIGITS = 10


def validate_email(email: str) -> str | None:
    """Return an error message if *email* looks invalid, else ``None``."""
    if not email or not email.strip():
        return "email is required"
    if not _EMAIL_RE.match(email.strip()):
        return f"{email.strip()!r} does not look like a valid email address"
    return None


def normalize_phone(phone: str) -> str | None:
    """Digits of *phone*, or ``None`` when there are fewer than ten."""
    digits = re.sub(r"\D", "", phone or "")
    return digits if len(digits) >= MIN_PHONE_DIGITS else None


def format_phone(digits: str) -> str:
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return digits


def classify_registration_error(exc: NexHealthAPIError) -> ErrorCode:
    text = f"{exc} {exc.body or ''}".lower()
    if exc.status_code == 409 or "duplicate" in text:
        return ErrorCode.DUPLICATE_PATIENT
    if exc.status_code == 400:
        return ErrorCode.VALIDATION_ERROR
    if exc.status_code == 401:
        return ErrorCode.AUTH_ERROR
    return ErrorCode.NEXHEALTH_API_ERROR


def create_patient(
    state: ConversationState,
    practice: Practice,
    client: NexHealthClient,
    call_logs: CallLogStore,
    *,
    first_name: str,
    last_name: str,
    date_of_birth: str,
    phone: str,
    email: str,
    insurance_name: str | None = None,
    debug_log: DebugLogStore | None = None,
) -> tuple[ToolResult, ConversationState]:
    """Register a new patient in the EHR and make them the caller for this call.

    The patient is assigned to the first active saved provider.  The
    ``POST /patients`` write is sent once; on failure state is unchanged.
    """
    if not practice.has_scheduling_config:
        return ToolResult.fail(
            ErrorCode.PRACTICE_CONFIG_MISSING,
            f"Practice {practice.id} has no NexHealth subdomain/location configured",
        ), state
    if not practice.saved_providers:
        return ToolResult.fail(
            ErrorCode.NO_SAVED_PROVIDERS,
            f"Practice {practice.id} has no saved providers",
        ), state

    first, last = first_name.strip(), last_name.strip()
    if not first or not last:
        return ToolResult.fail(ErrorCode.INVALID_ARGUMENTS, "first_name and last_name are required"), state

    dob = parse_iso_date(date_of_birth)
    if dob is None:
        return ToolResult.fail(
            ErrorCode.INVALID_DATE_FORMAT,
            f"date_of_birth must be YYYY-MM-DD, got {date_of_birth!r}",
        ), state

    digits = normalize_phone(phone)
    if digits is None:
        return ToolResult.fail(
            ErrorCode.INVALID_ARGUMENTS,
            f"phone must contain at least {MIN_PHONE_DIGITS} digits",
        ), state

    email_error = validate_email(email)
    if email_error:
        return ToolResult.fail(ErrorCode.INVALID_ARGUMENTS, email_error), state

    provider = next((sp for sp in practice.saved_providers if sp.is_active), None)
    if provider is None:
        return ToolResult.fail(
            ErrorCode.NO_ACTIVE_PROVIDERS,
            f"Practice {practice.id} has no active providers to register a patient with",
        ), state

    insurance = (insurance_name or "").strip() or None
    bio: dict[str, Any] = {"date_of_birth": dob.isoformat(), "phone_number": digits}
    if insurance:
        bio["insurance_name"] = insurance
    patient = {"first_name": first, "last_name": last, "email": email.strip(), "bio": bio}

    try:
        response = client.create_patient(
            practice.nexhealth_subdomain,
            location_id=practice.nexhealth_location_id,
            provider_id=provider.provider.nexhealth_provider_id,
            patient=patient,
        )
    except NexHealthAPIError as exc:
        code = classify_registration_error(exc)
        logger.error("Call %s: patient registration failed with %s: %s", state.call_id, code.value, exc)
        return ToolResult.fail(code, str(exc)), state

    patient_id = extract_patient_id(response)
    if patient_id is None:
        logger.error("Call %s: patient registration response had no id", state.call_id)
        return ToolResult.fail(
            ErrorCode.PATIENT_CREATION_FAILED,
            "NexHealth response did not include a patient id",
        ), state

    new_state = evolve(state, patient_id=patient_id, patient_status=PatientStatus.NEW)
    call_logs.upsert(
        state.call_id, state.practice_id,
        call_status=call_log.TOOL_IN_PROGRESS,
        nexhealth_patient_id=patient_id,
    )
    if debug_log is not None:
        debug_log.record(state.call_id, "patient_created", patient_id=patient_id)

    logger.info("Call %s: registered new patient %s", state.call_id, patient_id)
    return ToolResult.ok(
        created=True,
        patient_id=patient_id,
        patient_name=f"{first} {last}",
        date_of_birth=dob.isoformat(),
        date_of_birth_friendly=_friendly_dob(dob),
        phone=format_phone(digits),
        email=email.strip(),
        insurance_name=insurance,
    ), new_state
