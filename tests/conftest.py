"""Shared test fixtures for the dental scheduler test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("NEXHEALTH_API_KEY", "test-nexhealth-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")


# Practice used throughout: Chicago, Cleaning accepted by Dr. Lee only,
# Whitening accepted by nobody.
CLEANING_ID = "9001"
EXAM_ID = "9002"
WHITENING_ID = "9003"
PROVIDER_LEE = "301"
PROVIDER_ORTIZ = "302"


@pytest.fixture
def practice():
    from dental_scheduler.practice import (
        AppointmentType,
        Practice,
        Provider,
        SavedOperatory,
        SavedProvider,
    )

    return Practice(
        id="acme",
        name="Acme Family Dental",
        nexhealth_subdomain="acme-dental",
        nexhealth_location_id="4001",
        timezone="America/Chicago",
        appointment_types=[
            AppointmentType(id="at-clean", nexhealth_appointment_type_id=CLEANING_ID, name="Cleaning", duration=30),
            AppointmentType(id="at-exam", nexhealth_appointment_type_id=EXAM_ID, name="Comprehensive Exam", duration=60),
            AppointmentType(id="at-white", nexhealth_appointment_type_id=WHITENING_ID, name="Whitening", duration=90),
        ],
        saved_operatories=[
            SavedOperatory(id="op-1", nexhealth_operatory_id="501", name="Room 1"),
            SavedOperatory(id="op-2", nexhealth_operatory_id="502", name="Room 2"),
        ],
        saved_providers=[
            SavedProvider(
                id="sp-lee",
                provider=Provider(id="p-lee", nexhealth_provider_id=PROVIDER_LEE, first_name="Dana", last_name="Lee"),
                accepted_appointment_type_ids=["at-clean"],
                assigned_operatory_ids=["op-1"],
            ),
            SavedProvider(
                id="sp-ortiz",
                provider=Provider(id="p-ortiz", nexhealth_provider_id=PROVIDER_ORTIZ, first_name="Sam", last_name="Ortiz"),
                accepted_appointment_type_ids=["at-exam"],
                assigned_operatory_ids=["op-2"],
            ),
        ],
    )


@pytest.fixture
def state():
    from dental_scheduler.state import new_state

    return new_state("call-1", "acme", "assistant-1")


@pytest.fixture
def cleaning_state(state):
    from dental_scheduler.state import evolve

    return evolve(
        state,
        patient_id="12345",
        patient_status="existing",
        appointment_type_id=CLEANING_ID,
        appointment_type_name="Cleaning",
        duration_minutes=30,
    )


@pytest.fixture
def nexhealth():
    """A NexHealthClient stand-in; configure return values per test."""
    from dental_scheduler.services.nexhealth_client import NexHealthClient

    return MagicMock(spec=NexHealthClient)


@pytest.fixture
def call_logs():
    from dental_scheduler.services.call_log import InMemoryCallLogStore

    return InMemoryCallLogStore()


@pytest.fixture
def debug_log():
    from dental_scheduler.services.debug_log import DebugLogStore

    return DebugLogStore(max_calls=5, max_entries_per_call=20)


@pytest.fixture
def slot_groups():
    """Factory for a ``GET /appointment_slots`` ``data`` list from local HH:MM strings."""

    def _make(times: list[str], day: str = "2025-07-15", provider_id: str = PROVIDER_LEE, operatory_id: str = "501"):
        slots = []
        for hhmm in times:
            hour, minute = hhmm.split(":")
            end_minute = int(minute) + 30
            end = f"{int(hour) + end_minute // 60:02d}:{end_minute % 60:02d}"
            slots.append(
                {
                    "time": f"{day}T{hhmm}:00.000-05:00",
                    "end_time": f"{day}T{end}:00.000-05:00",
                    "operatory_id": int(operatory_id),
                }
            )
        return [{"lid": 4001, "pid": int(provider_id), "slots": slots}]

    return _make


