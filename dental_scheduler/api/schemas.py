"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from dental_scheduler.results import ToolResult


class ToolCallRequest(BaseModel):
    """One tool invocation from the voice layer."""

    call_id: str = Field(..., min_length=1, max_length=100, description="Voice-platform call identifier")
    practice_id: str = Field(..., min_length=1, max_length=100)
    assistant_id: str = Field("", max_length=100)
    arguments: dict[str, Any] = Field(default_factory=dict, description="Tool arguments")
    conversation_state: dict[str, Any] | str | None = Field(
        None,
        description="Snapshot returned by the previous turn (object or JSON string); omit on the first turn",
    )
    call_summary: str | None = Field(None, max_length=2000, description="Running summary used for the booking note")


class ToolCallResponse(BaseModel):
    result: ToolResult
    conversation_state: dict[str, Any] = Field(..., description="Pass this back on the next turn")


class ToolListResponse(BaseModel):
    tools: list[dict[str, Any]]


class DebugLogResponse(BaseModel):
    call_id: str
    entries: list[dict[str, Any]]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "dental-scheduler"
