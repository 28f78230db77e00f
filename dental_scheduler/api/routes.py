"""FastAPI route definitions for the scheduling tool API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from dental_scheduler.api.schemas import (
    DebugLogResponse,
    HealthResponse,
    ToolCallRequest,
    ToolCallResponse,
    ToolListResponse,
)
from dental_scheduler.tools.scheduling import TOOL_NAMES, SchedulingContext, execute_tool, tool_schemas

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_service(request: Request, name: str):
    """Fetch a shared resource created by the lifespan (see ``server.py``)."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return service


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/tools", response_model=ToolListResponse)
async def list_tools():
    """Function schemas for every tool, ready to register with the voice platform."""
    return ToolListResponse(tools=tool_schemas())


@router.post("/tools/{tool_name}", response_model=ToolCallResponse)
async def call_tool(tool_name: str, request: ToolCallRequest, http_request: Request):
    """Run one tool turn.

    The response always carries the conversation state to send back on the
    next turn, including when the tool itself failed (``result.success`` is
    ``false``).  Only an unknown practice or tool is an HTTP error.

    ``execute_tool`` makes blocking NexHealth calls, so it runs on a worker
    thread to keep the event loop free.
    """
    request_id = getattr(http_request.state, "request_id", "?")
    if tool_name not in TOOL_NAMES:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")

    practice = _get_service(http_request, "practices").get(request.practice_id)
    if practice is None:
        raise HTTPException(status_code=404, detail=f"Unknown practice: {request.practice_id}")

    context = SchedulingContext(
        practice=practice,
        client=_get_service(http_request, "nexhealth_client"),
        call_logs=_get_service(http_request, "call_logs"),
        debug_log=getattr(http_request.app.state, "debug_log", None),
    )

    try:
        outcome = await asyncio.to_thread(
            execute_tool,
            tool_name,
            request.arguments,
            request.conversation_state,
            context,
            call_id=request.call_id,
            assistant_id=request.assistant_id,
            call_summary=request.call_summary,
        )
    except Exception as e:
        logger.exception("[%s] Error running tool %s", request_id, tool_name)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ToolCallResponse(result=outcome.result, conversation_state=outcome.conversation_state)


@router.get("/debug/calls/{call_id}/logs", response_model=DebugLogResponse)
async def call_debug_logs(call_id: str, http_request: Request):
    """Structured debug events recorded for one call (most recent calls only)."""
    debug_log = _get_service(http_request, "debug_log")
    return DebugLogResponse(call_id=call_id, entries=debug_log.entries(call_id))
