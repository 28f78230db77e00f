"""FastAPI server exposing the scheduling tools to the voice platform.

Run with:
    uv run uvicorn dental_scheduler.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from dental_scheduler.api.routes import router
from dental_scheduler.config import CORS_ORIGINS, PRACTICE_CONFIG_PATH, SERVER_HOST, SERVER_PORT
from dental_scheduler.practice import JsonPracticeRepository
from dental_scheduler.services.call_log import InMemoryCallLogStore
from dental_scheduler.services.debug_log import DebugLogStore
from dental_scheduler.services.metrics import metrics
from dental_scheduler.services.nexhealth_client import get_nexhealth_client

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Create the shared collaborators once and store them in app state.

    Conversation state is not among them: it travels with every request.
    """
    application.state.practices = JsonPracticeRepository(PRACTICE_CONFIG_PATH)
    application.state.nexhealth_client = get_nexhealth_client()
    application.state.call_logs = InMemoryCallLogStore()
    application.state.debug_log = DebugLogStore()
    logger.info("Scheduling services ready (practices from %s).", PRACTICE_CONFIG_PATH)
    yield
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Dental Scheduler",
    description=(
        "Voice-assistant scheduling tools: appointment-type matching, "
        "availability, patient lookup and confirm-then-book via NexHealth."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Dental Scheduler",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "tools": "/api/tools",
    }


if __name__ == "__main__":
    logger.info("Starting Dental Scheduler API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "dental_scheduler.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
