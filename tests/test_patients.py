"""Tests for patient identification and registration."""

from __future__ import annotations

import pytest

from dental_scheduler.results import ErrorCode
from dental_scheduler.scheduling.patients import (
    create_patient,
    find_patient,
    normalize_phone,
    set_patient_status,
    validate_email,
)
from dental_scheduler.services import call_log
from dental_scheduler.services.nexhealth_client import NexHealthAPIError
from dental_scheduler.state import PatientStatus, evolve


def _find(state, practice, nexhealth, call_logs, **kwargs):
    kwargs.setdefault("first_name", "Bob")
    kwargs.setdefault("last_name", "Ross")
    kwargs.setdefault("date_of_birth", "1998-10-30")
    return find_patient(state, practice, nexhealth, call_logs, **kwargs)


class TestFindPatient:
    def test_first_match_is_recorded(self, state, practice, nexhealth, call_logs):
        nexhealth.search_patients.return_value = [
            {"id": 4242, "first_name": "Bob", "last_name": "Ross", "bio": {"date_of_birth": "1998-10-30"}},
            {"id": 5555, "first_name": "Bob", "last_name": "Ross"},
        ]

        result, new_state = _find(state, practice, nexhealth, call_logs)

        assert result.success
        assert result.data["patient_exists"] is True
        assert result.data["patient_id"] == "4242"
        assert result.data["confirmed_patient_dob_friendly"] == "October 30, 1998"
        assert new_state.patient_id == "4242"
        assert new_state.patient_status is PatientStatus.EXISTING
        assert call_logs.get("call-1")["call_status"] == call_log.TOOL_IN_PROGRESS
        assert call_logs.get("call-1")["nexhealth_patient_id"] == "4242"

    def test_search_parameters(self, state, practice, nexhealth, call_logs):
        nexhealth.search_patients.return_value = []

        _find(state, practice, nexhealth, call_logs, first_name=" Bob ", last_name="Ross ")

        nexhealth.search_patients.assert_called_once_with(
            "acme-dental",
            location_id="4001",
            name="Bob Ross",
            date_of_birth="1998-10-30",
        )

    def test_no_match(self, state, practice, nexhealth, call_logs):
        nexhealth.search_patients.return_value = []

        result, new_state = _find(state, practice, nexhealth, call_logs)

        assert result.success
        assert result.data["patient_exists"] is False
        assert result.data["searched_dob_friendly"] == "October 30, 1998"
        assert new_state is state
        assert call_logs.get("call-1") is None

    def test_new_patient_skips_search(self, state, practice, nexhealth, call_logs):
        new_caller = evolve(state, patient_status=PatientStatus.NEW)

        result, _ = _find(new_caller, practice, nexhealth, call_logs)

        assert result.data["patient_exists"] is False
        assert "skipped_search_reason" in result.data
        nexhealth.search_patients.assert_not_called()

    def test_bad_date_of_birth(self, state, practice, nexhealth, call_logs):
        result, _ = _find(state, practice, nexhealth, call_logs, date_of_birth="10/30/98")
        assert result.error_code is ErrorCode.INVALID_DATE_FORMAT
        nexhealth.search_patients.assert_not_called()

    def test_remote_failure(self, state, practice, nexhealth, call_logs):
        nexhealth.search_patients.side_effect = NexHealthAPIError("Server error 502", status_code=502)

        result, new_state = _find(state, practice, nexhealth, call_logs)

        assert result.error_code is ErrorCode.NEXHEALTH_API_ERROR
        assert new_state is state


class TestSetPatientStatus:
    def test_existing(self, state):
        result, new_state = set_patient_status(state, "existing")
        assert result.success
        assert new_state.patient_status is PatientStatus.EXISTING

    def test_new_clears_patient_id(self, state):
        identified = evolve(state, patient_id="4242", patient_status=PatientStatus.EXISTING)

        result, new_state = set_patient_status(identified, "New")

        assert result.data == {"patient_status": "new", "patient_id": None}
        assert new_state.patient_id is None

    def test_rejects_unknown_status(self, state):
        result, new_state = set_patient_status(state, "maybe")
        assert result.error_code is ErrorCode.INVALID_ARGUMENTS
        assert new_state is state


# ── Registration ─────────────────────────────────────────────────────


def _register(state, practice, nexhealth, call_logs, **kwargs):
    kwargs.setdefault("first_name", "Ada")
    kwargs.setdefault("last_name", "Park")
    kwargs.setdefault("date_of_birth", "1990-04-02")
    kwargs.setdefault("phone", "(313) 555-1200")
    kwargs.setdefault("email", "ada@example.com")
    return create_patient(state, practice, nexhealth, call_logs, **kwargs)


class TestCreatePatient:
    def test_new_patient_becomes_the_caller(self, state, practice, nexhealth, call_logs, debug_log):
        nexhealth.create_patient.return_value = {"code": True, "data": {"user": {"id": 8080}}}
        state = evolve(state, patient_status="new")

        result, new_state = _register(
            state, practice, nexhealth, call_logs, insurance_name=" Delta Dental ", debug_log=debug_log,
        )

        assert result.success
        assert result.data["created"] is True
        assert result.data["patient_id"] == "8080"
        assert result.data["patient_name"] == "Ada Park"
        assert result.data["date_of_birth_friendly"] == "April 2, 1990"
        assert result.data["phone"] == "(313) 555-1200"
        assert new_state.patient_id == "8080"
        assert new_state.patient_status is PatientStatus.NEW
        assert call_logs.get("call-1")["call_status"] == call_log.TOOL_IN_PROGRESS
        assert call_logs.get("call-1")["nexhealth_patient_id"] == "8080"
        assert debug_log.entries("call-1")[-1]["event"] == "patient_created"

    def test_request_shape(self, state, practice, nexhealth, call_logs):
        nexhealth.create_patient.return_value = {"data": {"id": 8080}}

        _register(state, practice, nexhealth, call_logs, first_name=" Ada ", insurance_name="Delta Dental")

        args, kwargs = nexhealth.create_patient.call_args
        assert args == ("acme-dental",)
        assert kwargs["location_id"] == "4001"
        assert kwargs["provider_id"] == "301"
        assert kwargs["patient"] == {
            "first_name": "Ada",
            "last_name": "Park",
            "email": "ada@example.com",
            "bio": {
                "date_of_birth": "1990-04-02",
                "phone_number": "3135551200",
                "insurance_name": "Delta Dental",
            },
        }

    def test_first_active_provider_is_assigned(self, state, practice, nexhealth, call_logs):
        nexhealth.create_patient.return_value = {"data": {"id": 1}}
        lee, ortiz = practice.saved_providers
        inactive_lee = practice.model_copy(
            update={"saved_providers": [lee.model_copy(update={"is_active": False}), ortiz]}
        )

        _register(state, inactive_lee, nexhealth, call_logs)

        assert nexhealth.create_patient.call_args.kwargs["provider_id"] == "302"

    @pytest.mark.parametrize(
        ("overrides", "code"),
        [
            ({"first_name": "  "}, ErrorCode.INVALID_ARGUMENTS),
            ({"date_of_birth": "04/02/1990"}, ErrorCode.INVALID_DATE_FORMAT),
            ({"phone": "555-1200"}, ErrorCode.INVALID_ARGUMENTS),
            ({"email": "ada-at-example"}, ErrorCode.INVALID_ARGUMENTS),
        ],
    )
    def test_invalid_details_skip_the_write(self, state, practice, nexhealth, call_logs, overrides, code):
        result, new_state = _register(state, practice, nexhealth, call_logs, **overrides)

        assert result.error_code is code
        assert new_state is state
        nexhealth.create_patient.assert_not_called()

    def test_practice_config_missing(self, state, practice, nexhealth, call_logs):
        unconfigured = practice.model_copy(update={"nexhealth_location_id": None})

        result, _ = _register(state, unconfigured, nexhealth, call_logs)

        assert result.error_code is ErrorCode.PRACTICE_CONFIG_MISSING
        assert result.retryable is False
        nexhealth.create_patient.assert_not_called()

    def test_no_active_providers(self, state, practice, nexhealth, call_logs):
        dormant = practice.model_copy(
            update={"saved_providers": [sp.model_copy(update={"is_active": False}) for sp in practice.saved_providers]}
        )

        result, _ = _register(state, dormant, nexhealth, call_logs)

        assert result.error_code is ErrorCode.NO_ACTIVE_PROVIDERS

    @pytest.mark.parametrize(
        ("exc", "code"),
        [
            (NexHealthAPIError("Client error 409: conflict", status_code=409), ErrorCode.DUPLICATE_PATIENT),
            (NexHealthAPIError("Client error 422", status_code=422, body="duplicate patient"), ErrorCode.DUPLICATE_PATIENT),
            (NexHealthAPIError("Client error 400: bad bio", status_code=400), ErrorCode.VALIDATION_ERROR),
            (NexHealthAPIError("Client error 401", status_code=401), ErrorCode.AUTH_ERROR),
            (NexHealthAPIError("NexHealth POST /patients failed: RemoteProtocolError"), ErrorCode.NEXHEALTH_API_ERROR),
        ],
    )
    def test_remote_failure_leaves_state_unchanged(self, state, practice, nexhealth, call_logs, exc, code):
        nexhealth.create_patient.side_effect = exc

        result, new_state = _register(state, practice, nexhealth, call_logs)

        assert result.error_code is code
        assert new_state is state
        assert call_logs.get("call-1") is None

    def test_response_without_id(self, state, practice, nexhealth, call_logs):
        nexhealth.create_patient.return_value = {"code": True, "data": {}}

        result, new_state = _register(state, practice, nexhealth, call_logs)

        assert result.error_code is ErrorCode.PATIENT_CREATION_FAILED
        assert new_state is state


class TestContactValidation:
    @pytest.mark.parametrize(
        "email",
        ["alice@example.com", "bob.jones@clinic.co.uk", "jane+tag@gmail.com", "UPPER@CASE.COM"],
    )
    def test_accepts_valid_emails(self, email):
        assert validate_email(email) is None

    @pytest.mark.parametrize(
        "email",
        ["", "   ", "not-an-email", "missing@", "@no-local.com", "double@@at.com", "no-tld@localhost"],
    )
    def test_rejects_invalid_emails(self, email):
        assert validate_email(email) is not None

    @pytest.mark.parametrize(
        ("phone", "expected"),
        [
            ("(313) 555-1200", "3135551200"),
            ("+1 313 555 1200", "13135551200"),
            ("555-1200", None),
            ("", None),
        ],
    )
    def test_normalize_phone(self, phone, expected):
        assert normalize_phone(phone) == expected
