"""Call-record collaborator.

The production call log lives in the practice platform's database, which is
not part of this engine.  ``CallLogStore`` is the write interface the engine
depends on; ``InMemoryCallLogStore`` backs the dev server, the CLI and tests.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# Call statuses written by the engine
TOOL_IN_PROGRESS = "TOOL_IN_PROGRESS"
APPOINTMENT_BOOKED = "APPOINTMENT_BOOKED"
BOOKING_FAILED = "BOOKING_FAILED"


class CallLogStore(Protocol):
    def upsert(self, call_id: str, practice_id: str, **fields: Any) -> None:
        """Create the record for *call_id* or merge *fields* into it."""
        ...


class InMemoryCallLogStore:
    """Thread-safe dict-backed call log."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def upsert(self, call_id: str, practice_id: str, **fields: Any) -> None:
        now = datetime.now(UTC).isoformat()
        with self._lock:
            record = self._records.get(call_id)
            if record is None:
                record = {"call_id": call_id, "practice_id": practice_id, "created_at": now}
                self._records[call_id] = record
            record.update(fields)
            record["updated_at"] = now
        logger.debug("Call log %s upserted: %s", call_id, sorted(fields))

    def get(self, call_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(call_id)
            return dict(record) if record is not None else None

    def __len__(self) -> int:
        return len(self._records)
