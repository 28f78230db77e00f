"""Tool results and the error-code taxonomy shared by every scheduling operation.

Every operation returns a :class:`ToolResult` instead of raising past the
tool boundary.  ``message_to_patient`` is intentionally left blank: the
voice layer composes the utterance from ``data`` / ``error_code``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Machine-readable failure codes returned in ``ToolResult.error_code``."""

    # Configuration: the practice needs administrative setup
    PRACTICE_CONFIG_MISSING = "PRACTICE_CONFIG_MISSING"
    NO_SAVED_PROVIDERS = "NO_SAVED_PROVIDERS"
    NO_APPOINTMENT_TYPES = "NO_APPOINTMENT_TYPES"

    # Eligibility: recoverable by choosing another type / date
    NO_ACTIVE_PROVIDERS = "NO_ACTIVE_PROVIDERS"
    NO_PROVIDERS_FOR_TYPE = "NO_PROVIDERS_FOR_TYPE"
    NO_ASSIGNED_OPERATORIES = "NO_ASSIGNED_OPERATORIES"

    # Input: recoverable by re-prompting
    INVALID_APPOINTMENT_TYPE = "INVALID_APPOINTMENT_TYPE"
    INVALID_TIME_FORMAT = "INVALID_TIME_FORMAT"
    INVALID_DATE_FORMAT = "INVALID_DATE_FORMAT"
    INVALID_PATIENT_ID = "INVALID_PATIENT_ID"
    INVALID_PATIENT_ID_FORMAT = "INVALID_PATIENT_ID_FORMAT"
    SLOT_NOT_RECOGNIZED_OR_EXPIRED = "SLOT_NOT_RECOGNIZED_OR_EXPIRED"
    INVALID_ARGUMENTS = "INVALID_ARGUMENTS"
    UNKNOWN_TOOL = "UNKNOWN_TOOL"

    # State: the multi-turn flow was entered out of order
    INCOMPLETE_BOOKING_CONTEXT = "INCOMPLETE_BOOKING_CONTEXT"

    # Transport / remote
    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    NEXHEALTH_API_ERROR = "NEXHEALTH_API_ERROR"
    BOOKING_ERROR = "BOOKING_ERROR"
    DUPLICATE_PATIENT = "DUPLICATE_PATIENT"
    PATIENT_CREATION_FAILED = "PATIENT_CREATION_FAILED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorCategory(str, Enum):
    CONFIGURATION = "configuration"
    ELIGIBILITY = "eligibility"
    INPUT = "input"
    STATE = "state"
    REMOTE = "remote"
    INTERNAL = "internal"


_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.PRACTICE_CONFIG_MISSING: ErrorCategory.CONFIGURATION,
    ErrorCode.NO_SAVED_PROVIDERS: ErrorCategory.CONFIGURATION,
    ErrorCode.NO_APPOINTMENT_TYPES: ErrorCategory.CONFIGURATION,
    ErrorCode.NO_ACTIVE_PROVIDERS: ErrorCategory.ELIGIBILITY,
    ErrorCode.NO_PROVIDERS_FOR_TYPE: ErrorCategory.ELIGIBILITY,
    ErrorCode.NO_ASSIGNED_OPERATORIES: ErrorCategory.ELIGIBILITY,
    ErrorCode.INVALID_APPOINTMENT_TYPE: ErrorCategory.INPUT,
    ErrorCode.INVALID_TIME_FORMAT: ErrorCategory.INPUT,
    ErrorCode.INVALID_DATE_FORMAT: ErrorCategory.INPUT,
    ErrorCode.INVALID_PATIENT_ID: ErrorCategory.INPUT,
    ErrorCode.INVALID_PATIENT_ID_FORMAT: ErrorCategory.INPUT,
    ErrorCode.SLOT_NOT_RECOGNIZED_OR_EXPIRED: ErrorCategory.INPUT,
    ErrorCode.INVALID_ARGUMENTS: ErrorCategory.INPUT,
    ErrorCode.UNKNOWN_TOOL: ErrorCategory.INPUT,
    ErrorCode.INCOMPLETE_BOOKING_CONTEXT: ErrorCategory.STATE,
    ErrorCode.SLOT_UNAVAILABLE: ErrorCategory.REMOTE,
    ErrorCode.VALIDATION_ERROR: ErrorCategory.REMOTE,
    ErrorCode.AUTH_ERROR: ErrorCategory.REMOTE,
    ErrorCode.NEXHEALTH_API_ERROR: ErrorCategory.REMOTE,
    ErrorCode.BOOKING_ERROR: ErrorCategory.REMOTE,
    ErrorCode.DUPLICATE_PATIENT: ErrorCategory.REMOTE,
    ErrorCode.PATIENT_CREATION_FAILED: ErrorCategory.REMOTE,
    ErrorCode.INTERNAL_ERROR: ErrorCategory.INTERNAL,
}


def category_of(code: ErrorCode) -> ErrorCategory:
    """Return the taxonomy bucket for *code*."""
    return _CATEGORIES[code]


def is_retryable(code: ErrorCode) -> bool:
    """Configuration errors need an administrator; everything else can be re-tried
    by the caller (different input, different date, or a fresh availability check)."""
    return category_of(code) is not ErrorCategory.CONFIGURATION


class ToolResult(BaseModel):
    """Uniform result returned across the tool-call boundary.

    Failures also carry the taxonomy bucket of their ``error_code`` and
    whether the caller can recover without an administrator.
    """

    success: bool
    data: dict[str, Any] | None = None
    error_code: ErrorCode | None = None
    error_category: ErrorCategory | None = None
    retryable: bool | None = None
    message_to_patient: str = ""
    details: str | None = None

    @classmethod
    def ok(cls, **data: Any) -> ToolResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        code: ErrorCode,
        details: str | None = None,
        **data: Any,
    ) -> ToolResult:
        return cls(
            success=False,
            error_code=code,
            error_category=category_of(code),
            retryable=is_retryable(code),
            details=details,
            data=data or None,
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict (enum values flattened to plain strings)."""
        return self.model_dump(mode="json", exclude_none=True)


class ToolCallOutcome(BaseModel):
    """A tool result plus the state snapshot to carry into the next turn."""

    result: ToolResult
    conversation_state: dict[str, Any] = Field(default_factory=dict)
