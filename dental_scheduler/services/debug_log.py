"""Per-call debug event ring buffer, bounded in both directions.

Design decisions
────────────────
• **OrderedDict** of ``call_id → deque`` for O(1) LRU eviction of whole
  calls once ``max_calls`` is reached.
• **deque(maxlen=...)** per call so a chatty call drops its oldest events
  instead of growing without bound.
• **threading.Lock** for thread safety (FastAPI runs sync routes on a
  thread pool).
• Passed around by handle (``app.state.debug_log``, ``SchedulingContext``),
  never a module global, so tests get a fresh buffer each time.
• Purely ephemeral: data is lost on process restart.

>>> log = DebugLogStore(max_calls=10, max_entries_per_call=100)
>>> log.record("call-1", "slots_fetched", raw_count=4, after_lunch_filter=3)
>>> log.entries("call-1")[0]["event"]
'slots_fetched'
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict, deque
from datetime import UTC, datetime
from typing import Any

from dental_scheduler.config import DEBUG_LOG_MAX_CALLS, DEBUG_LOG_MAX_ENTRIES_PER_CALL

logger = logging.getLogger(__name__)


class DebugLogStore:
    """Bounded, call-scoped store of structured debug events."""

    def __init__(
        self,
        max_calls: int = DEBUG_LOG_MAX_CALLS,
        max_entries_per_call: int = DEBUG_LOG_MAX_ENTRIES_PER_CALL,
    ) -> None:
        if max_calls < 1 or max_entries_per_call < 1:
            raise ValueError("Debug log bounds must be positive")
        self._max_calls = max_calls
        self._max_entries = max_entries_per_call
        self._calls: OrderedDict[str, deque[dict[str, Any]]] = OrderedDict()
        self._lock = threading.Lock()

    # ── Core operations ──────────────────────────────────────────────

    def record(self, call_id: str, event: str, **data: Any) -> None:
        """Append *event* for *call_id*, evicting the least recent call if full."""
        if not call_id:
            return
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event": event,
            "data": data,
        }
        with self._lock:
            buffer = self._calls.get(call_id)
            if buffer is None:
                while len(self._calls) >= self._max_calls:
                    evicted, _ = self._calls.popitem(last=False)
                    logger.debug("Debug log: evicted call %s", evicted)
                buffer = deque(maxlen=self._max_entries)
                self._calls[call_id] = buffer
            else:
                self._calls.move_to_end(call_id)
            buffer.append(entry)

    def entries(self, call_id: str) -> list[dict[str, Any]]:
        """Events for *call_id*, oldest first (empty list when unknown)."""
        with self._lock:
            buffer = self._calls.get(call_id)
            return list(buffer) if buffer is not None else []

    def clear(self, call_id: str | None = None) -> None:
        """Drop one call's events, or everything when *call_id* is ``None``."""
        with self._lock:
            if call_id is None:
                self._calls.clear()
            else:
                self._calls.pop(call_id, None)

    # ── Introspection ────────────────────────────────────────────────

    def call_ids(self) -> list[str]:
        """Known call ids, least recently written first."""
        with self._lock:
            return list(self._calls)

    @property
    def call_count(self) -> int:
        return len(self._calls)
