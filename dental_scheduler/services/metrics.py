"""CloudWatch custom metrics emitter with background batching.

Two families of data points are published:

* ``ExternalAPI/*``: count, latency and errors for every NexHealth call;
* ``Tool/*``: one count per tool invocation, dimensioned by tool name and
  outcome (``success`` or the error code).

Metrics are buffered in memory under a lock.  When ``METRICS_ENABLED`` is
``"true"`` a daemon thread flushes the buffer every
``FLUSH_INTERVAL_SECONDS``; otherwise data points are only logged at DEBUG
level and discarded on flush.

Usage
-----
>>> from dental_scheduler.services.metrics import metrics
>>> metrics.record_success("nexhealth", "GET /appointment_slots", latency_ms=123.4)
>>> metrics.record_tool_outcome("book_appointment", "SLOT_UNAVAILABLE")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "DentalScheduler"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── External API calls ────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}
        self._append(_datum("ExternalAPI/RequestCount", [service_dim, _dim("Status", "success")], now))
        self._append(
            _datum(
                "ExternalAPI/Latency",
                [service_dim, _dim("Operation", operation)],
                now,
                value=latency_ms,
                unit="Milliseconds",
            )
        )
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}
        self._append(_datum("ExternalAPI/RequestCount", [service_dim, _dim("Status", "failure")], now))
        self._append(_datum("ExternalAPI/ErrorCount", [service_dim, _dim("ErrorType", error_type)], now))
        if latency_ms > 0:
            self._append(
                _datum(
                    "ExternalAPI/Latency",
                    [service_dim, _dim("Operation", operation)],
                    now,
                    value=latency_ms,
                    unit="Milliseconds",
                )
            )
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    # ── Tool invocations ──────────────────────────────────────────────

    def record_tool_outcome(self, tool_name: str, outcome: str) -> None:
        """Count one tool call.  *outcome* is ``"success"`` or an error code."""
        self._append(
            _datum(
                "Tool/InvocationCount",
                [_dim("Tool", tool_name), _dim("Outcome", outcome)],
                datetime.now(UTC),
            )
        )
        logger.debug("Metric: tool %s outcome=%s", tool_name, outcome)

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


def _dim(name: str, value: str) -> dict[str, str]:
    return {"Name": name, "Value": value}


def _datum(
    name: str,
    dimensions: list[dict[str, str]],
    timestamp: datetime,
    *,
    value: float = 1,
    unit: str = "Count",
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": dimensions,
        "Timestamp": timestamp,
        "Value": value,
        "Unit": unit,
    }


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
