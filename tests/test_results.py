"""Tests for ToolResult and the error-code taxonomy."""

from __future__ import annotations

import pytest

from dental_scheduler.results import (
    ErrorCategory,
    ErrorCode,
    ToolResult,
    category_of,
    is_retryable,
)


@pytest.mark.parametrize(
    ("code", "category", "retryable"),
    [
        (ErrorCode.PRACTICE_CONFIG_MISSING, ErrorCategory.CONFIGURATION, False),
        (ErrorCode.NO_SAVED_PROVIDERS, ErrorCategory.CONFIGURATION, False),
        (ErrorCode.NO_PROVIDERS_FOR_TYPE, ErrorCategory.ELIGIBILITY, True),
        (ErrorCode.INVALID_TIME_FORMAT, ErrorCategory.INPUT, True),
        (ErrorCode.INCOMPLETE_BOOKING_CONTEXT, ErrorCategory.STATE, True),
        (ErrorCode.SLOT_UNAVAILABLE, ErrorCategory.REMOTE, True),
        (ErrorCode.DUPLICATE_PATIENT, ErrorCategory.REMOTE, True),
        (ErrorCode.INTERNAL_ERROR, ErrorCategory.INTERNAL, True),
    ],
)
def test_fail_carries_category_and_retryability(code, category, retryable):
    result = ToolResult.fail(code, "details")

    assert result.success is False
    assert result.error_code is code
    assert result.error_category is category
    assert result.retryable is retryable
    assert category_of(code) is category
    assert is_retryable(code) is retryable


def test_every_code_has_a_category():
    for code in ErrorCode:
        assert isinstance(category_of(code), ErrorCategory)


def test_ok_has_no_error_fields():
    result = ToolResult.ok(booked=True)

    assert result.success is True
    assert result.error_category is None
    assert result.retryable is None
    assert result.to_payload() == {
        "success": True,
        "data": {"booked": True},
        "message_to_patient": "",
    }


def test_failure_payload_is_plain_json():
    payload = ToolResult.fail(ErrorCode.NO_APPOINTMENT_TYPES, "none configured").to_payload()

    assert payload["error_code"] == "NO_APPOINTMENT_TYPES"
    assert payload["error_category"] == "configuration"
    assert payload["retryable"] is False
    assert "data" not in payload
