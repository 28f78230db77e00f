"""LangChain tools for the scheduling flow, plus the turn dispatcher.

Each tool wraps one scheduling operation.  Tools are built per turn as
closures over a :class:`ToolSession`, which holds the conversation state
restored from the caller's snapshot; a tool that succeeds replaces
``session.state`` with the operation's new state.

:func:`execute_tool` is the single entry point used by the HTTP layer and
the CLI: snapshot in, ``ToolCallOutcome`` (result + new snapshot) out.  It
never raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from langchain_core.tools import BaseTool, tool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, Field, ValidationError

from dental_scheduler.practice import Practice
from dental_scheduler.results import ErrorCode, ToolCallOutcome, ToolResult
from dental_scheduler.scheduling.appointment_types import find_appointment_type
from dental_scheduler.scheduling.availability import check_available_slots
from dental_scheduler.scheduling.booking import book_appointment
from dental_scheduler.scheduling.patients import create_patient, find_patient, set_patient_status
from dental_scheduler.services.call_log import CallLogStore
from dental_scheduler.services.debug_log import DebugLogStore
from dental_scheduler.services.metrics import metrics
from dental_scheduler.services.nexhealth_client import NexHealthClient
from dental_scheduler.state import ConversationState, evolve, restore_state, snapshot

logger = logging.getLogger(__name__)

TimePreference = Literal["Early", "Morning", "Midday", "Afternoon", "Evening", "Late", "AllDay"]


@dataclass
class SchedulingContext:
    """Per-practice collaborators a tool call runs against."""

    practice: Practice
    client: NexHealthClient
    call_logs: CallLogStore
    debug_log: DebugLogStore | None = None


@dataclass
class ToolSession:
    state: ConversationState
    context: SchedulingContext


# ── Argument schemas ────────────────────────────────────────────────


class FindAppointmentTypeArgs(BaseModel):
    user_request: str = Field(..., min_length=1, description="What the caller asked for, e.g. 'a cleaning'")
    accept_match: bool = Field(True, description="Record the matched type on the call")


class CheckAvailableSlotsArgs(BaseModel):
    requested_date: str = Field(..., description="Date to search, YYYY-MM-DD")
    appointment_type_id: str | None = Field(
        None, description="Only used when no appointment type has been determined yet"
    )
    days_to_search: int = Field(1, ge=1, le=7, description="Number of days to search from requested_date")
    time_preference: TimePreference | None = Field(None, description="Preferred part of the day")
    provider_ids: list[str] | None = Field(None, description="Restrict to these providers")
    operatory_ids: list[str] | None = Field(None, description="Restrict to these operatories")


class BookAppointmentArgs(BaseModel):
    selected_time: str | None = Field(None, description="Time the caller picked, e.g. '2:05 PM'")
    confirmed: bool | None = Field(None, description="True only after the caller confirmed the read-back details")
    patient_id: str | None = Field(None, description="Fallback when no patient has been identified on the call")
    appointment_type_id: str | None = Field(None, description="Fallback when no type has been determined")


class FindPatientArgs(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    date_of_birth: str = Field(..., description="YYYY-MM-DD")


class CreatePatientRecordArgs(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    date_of_birth: str = Field(..., description="YYYY-MM-DD")
    phone: str = Field(..., description="Phone number, digits only, e.g. '3135551200'")
    email: str = Field(..., description="Email address, e.g. 'john@gmail.com'")
    insurance_name: str | None = Field(None, description="Dental insurance carrier, if the caller named one")


class SetPatientStatusArgs(BaseModel):
    status: Literal["new", "existing"]


# ── Tool factory ────────────────────────────────────────────────────


def build_scheduling_tools(session: ToolSession) -> dict[str, BaseTool]:
    """Build the tools for one turn, keyed by name."""
    ctx = session.context

    def _apply(outcome: tuple[ToolResult, ConversationState]) -> ToolResult:
        result, new_state = outcome
        session.state = new_state
        return result

    @tool("find_appointment_type", args_schema=FindAppointmentTypeArgs)
    def find_appointment_type_tool(user_request: str, accept_match: bool = True) -> ToolResult:
        """Match the caller's description of the visit to one of the practice's
        appointment types. Returns the matched type and its duration, or the
        list of bookable types when nothing matches."""
        return _apply(
            find_appointment_type(session.state, ctx.practice, user_request, accept_match=accept_match)
        )

    @tool("check_available_slots", args_schema=CheckAvailableSlotsArgs)
    def check_available_slots_tool(
        requested_date: str,
        appointment_type_id: str | None = None,
        days_to_search: int = 1,
        time_preference: str | None = None,
        provider_ids: list[str] | None = None,
        operatory_ids: list[str] | None = None,
    ) -> ToolResult:
        """Look up open appointment times for the determined appointment type.
        Offers at most three times; lunch-hour slots are never offered."""
        return _apply(
            check_available_slots(
                session.state,
                ctx.practice,
                ctx.client,
                requested_date=requested_date,
                appointment_type_id=appointment_type_id,
                days_to_search=days_to_search,
                time_preference=time_preference,
                provider_ids=provider_ids,
                operatory_ids=operatory_ids,
                debug_log=ctx.debug_log,
            )
        )

    @tool("book_appointment", args_schema=BookAppointmentArgs)
    def book_appointment_tool(
        selected_time: str | None = None,
        confirmed: bool | None = None,
        patient_id: str | None = None,
        appointment_type_id: str | None = None,
    ) -> ToolResult:
        """Select a time and book it. Call once with selected_time to get the
        details to read back, then again with confirmed=true once the caller
        agrees. Nothing is booked until confirmed."""
        return _apply(
            book_appointment(
                session.state,
                ctx.practice,
                ctx.client,
                ctx.call_logs,
                selected_time=selected_time,
                confirmed=confirmed,
                patient_id=patient_id,
                appointment_type_id=appointment_type_id,
                debug_log=ctx.debug_log,
            )
        )

    @tool("find_patient", args_schema=FindPatientArgs)
    def find_patient_tool(first_name: str, last_name: str, date_of_birth: str) -> ToolResult:
        """Verify an existing patient by first name, last name and date of birth."""
        return _apply(
            find_patient(
                session.state,
                ctx.practice,
                ctx.client,
                ctx.call_logs,
                first_name=first_name,
                last_name=last_name,
                date_of_birth=date_of_birth,
                debug_log=ctx.debug_log,
            )
        )

    @tool("create_patient_record", args_schema=CreatePatientRecordArgs)
    def create_patient_record_tool(
        first_name: str,
        last_name: str,
        date_of_birth: str,
        phone: str,
        email: str,
        insurance_name: str | None = None,
    ) -> ToolResult:
        """Register a new patient once their first and last name, date of birth,
        phone number and email have all been collected."""
        return _apply(
            create_patient(
                session.state,
                ctx.practice,
                ctx.client,
                ctx.call_logs,
                first_name=first_name,
                last_name=last_name,
                date_of_birth=date_of_birth,
                phone=phone,
                email=email,
                insurance_name=insurance_name,
                debug_log=ctx.debug_log,
            )
        )

    @tool("set_patient_status", args_schema=SetPatientStatusArgs)
    def set_patient_status_tool(status: str) -> ToolResult:
        """Record whether the caller says they are a new or an existing patient."""
        return _apply(set_patient_status(session.state, status))

    tools = [
        find_appointment_type_tool,
        check_available_slots_tool,
        book_appointment_tool,
        find_patient_tool,
        set_patient_status_tool,
        create_patient_record_tool,
    ]
    return {t.name: t for t in tools}


TOOL_NAMES = (
    "find_appointment_type",
    "check_available_slots",
    "book_appointment",
    "find_patient",
    "set_patient_status",
    "create_patient_record",
)


def tool_schemas() -> list[dict[str, Any]]:
    """OpenAI-style function schemas for every tool, for the voice layer."""
    placeholder = ToolSession(state=None, context=None)  # type: ignore[arg-type]
    return [convert_to_openai_tool(t) for t in build_scheduling_tools(placeholder).values()]


# ── Dispatcher ──────────────────────────────────────────────────────


def _summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def execute_tool(
    name: str,
    arguments: dict[str, Any] | None,
    conversation_state: Any,
    context: SchedulingContext,
    *,
    call_id: str | None = None,
    assistant_id: str | None = None,
    call_summary: str | None = None,
) -> ToolCallOutcome:
    """Run one tool call against a restored snapshot.

    Unknown tools, bad arguments and unexpected exceptions all come back as
    a failed ``ToolResult`` with the original snapshot state.
    """
    state = restore_state(
        conversation_state,
        call_id=call_id,
        practice_id=context.practice.id,
        assistant_id=assistant_id,
    )
    if call_summary:
        state = evolve(state, call_summary=call_summary)

    session = ToolSession(state=state, context=context)
    tools = build_scheduling_tools(session)
    selected = tools.get(name)

    if selected is None:
        result = ToolResult.fail(ErrorCode.UNKNOWN_TOOL, f"Unknown tool {name!r}; expected one of {list(tools)}")
    else:
        result = _invoke(selected, arguments or {}, session)

    outcome = result.error_code.value if result.error_code else "success"
    metrics.record_tool_outcome(name, outcome)
    if context.debug_log is not None:
        context.debug_log.record(
            state.call_id,
            "tool_call",
            tool=name,
            success=result.success,
            error_code=result.error_code.value if result.error_code else None,
        )
    logger.info("Call %s: tool %s → %s", state.call_id, name, outcome)
    return ToolCallOutcome(result=result, conversation_state=snapshot(session.state))


def _invoke(selected: BaseTool, arguments: dict[str, Any], session: ToolSession) -> ToolResult:
    try:
        validated = selected.args_schema.model_validate(arguments)
    except ValidationError as exc:
        return ToolResult.fail(ErrorCode.INVALID_ARGUMENTS, _summarize_validation_error(exc))

    before = session.state
    try:
        return selected.invoke(validated.model_dump(exclude_unset=True))
    except Exception:
        logger.exception("Tool %s raised", selected.name)
        session.state = before
        return ToolResult.fail(ErrorCode.INTERNAL_ERROR, "The tool failed unexpectedly")
