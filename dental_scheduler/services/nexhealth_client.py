"""HTTP client for the NexHealth Synchronizer API with retry logic and
timeout handling.

NexHealth docs: https://docs.nexhealth.com/reference
Every request carries the global API key as a Bearer token and the
practice's ``subdomain`` as a query parameter.

**Retry contract**

Reads (``GET``) are idempotent and are retried with exponential backoff on
transport errors (timeouts, dropped connections) and 5xx responses.  Writes
(``POST`` of appointments and patients) are sent exactly once: retrying a
creation risks a duplicate record, so the failure is surfaced and the caller
decides.  Every failure reaches the caller as :class:`NexHealthAPIError`.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from dental_scheduler.config import NEXHEALTH_API_BASE_URL, NEXHEALTH_API_KEY
from dental_scheduler.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

NEXHEALTH_ACCEPT_HEADER = "application/vnd.Nexhealth+json;version=2"


class NexHealthAPIError(Exception):
    """Raised when a NexHealth API call fails (after retries, for reads)."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class NexHealthClient:
    """Thin wrapper around the NexHealth REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self._api_key = api_key or NEXHEALTH_API_KEY
        self._base_url = base_url or NEXHEALTH_API_BASE_URL
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "Accept": NEXHEALTH_ACCEPT_HEADER,
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _send_once(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        json_body: dict[str, Any] | None,
    ) -> dict[str, Any]:
        operation = f"{method} {path}"
        t0 = time.perf_counter()
        try:
            response = self._client.request(method, path, params=params, json=json_body)
        except httpx.HTTPError as exc:
            metrics.record_failure(
                "nexhealth", operation,
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000

        if response.status_code >= 400:
            kind = "Server" if response.status_code >= 500 else "Client"
            metrics.record_failure(
                "nexhealth", operation,
                error_type=f"{response.status_code // 100}xx",
                latency_ms=elapsed,
            )
            raise NexHealthAPIError(
                f"{kind} error {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        metrics.record_success("nexhealth", operation, latency_ms=elapsed)
        try:
            return response.json()
        except ValueError as exc:
            raise NexHealthAPIError(
                f"NexHealth {operation} returned a non-JSON body",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    def _request(
        self,
        method: str,
        path: str,
        *,
        subdomain: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute a request; ``GET`` gets exponential-backoff retries.

        Every failure leaves this method as :class:`NexHealthAPIError`.
        """
        query = {"subdomain": subdomain, **(params or {})}
        logger.debug("NexHealth %s %s params=%s", method, path, query)

        if method != "GET":
            try:
                return self._send_once(method, path, query, json_body)
            except httpx.HTTPError as exc:
                raise NexHealthAPIError(
                    f"NexHealth {method} {path} failed: {type(exc).__name__}: {exc}"
                ) from exc

        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
            try:
                return self._send_once(method, path, query, json_body)

            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "NexHealth API attempt %d/%d failed (%s).",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                )
            except httpx.HTTPError as exc:
                raise NexHealthAPIError(
                    f"NexHealth {method} {path} failed: {type(exc).__name__}: {exc}"
                ) from exc
            except NexHealthAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "NexHealth API server error on attempt %d/%d.",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                logger.info("Retrying NexHealth %s %s in %.1fs…", method, path, backoff)
                time.sleep(backoff)

        status = last_error.status_code if isinstance(last_error, NexHealthAPIError) else None
        raise NexHealthAPIError(
            f"NexHealth API request failed after {MAX_RETRIES} retries: {last_error}",
            status_code=status,
        ) from last_error

    # ── Public API methods ───────────────────────────────────────────

    def get_appointment_slots(
        self,
        subdomain: str,
        *,
        start_date: str,
        days: int,
        location_id: str,
        provider_ids: list[str],
        slot_length: int,
        operatory_ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Query open slots.

        **Not cached**: availability changes in real time.  The appointment
        type is deliberately not sent: ``slot_length`` stands in for it.

        Returns the per-provider groups, each ``{"lid", "pid", "slots": [...]}``.
        """
        params: dict[str, Any] = {
            "start_date": start_date,
            "days": days,
            "lids[]": [location_id],
            "pids[]": list(provider_ids),
            "slot_length": slot_length,
            "overlapping_operatory_slots": "false",
        }
        if operatory_ids:
            params["operatory_ids[]"] = list(operatory_ids)

        data = self._request("GET", "/appointment_slots", subdomain=subdomain, params=params)
        groups = data.get("data", [])
        return groups if isinstance(groups, list) else []

    def create_appointment(
        self,
        subdomain: str,
        *,
        location_id: str,
        appointment: dict[str, Any],
        notify_patient: bool = False,
    ) -> dict[str, Any]:
        """Create an appointment.  Sent once, never retried.

        Returns the full response body; the new id is under ``data.id`` (or
        ``data.appointment.id`` on some API versions).
        """
        return self._request(
            "POST",
            "/appointments",
            subdomain=subdomain,
            params={
                "location_id": location_id,
                "notify_patient": str(notify_patient).lower(),
            },
            json_body={"appt": appointment},
        )

    def create_patient(
        self,
        subdomain: str,
        *,
        location_id: str,
        provider_id: str,
        patient: dict[str, Any],
    ) -> dict[str, Any]:
        """Register a new patient under *provider_id*.  Sent once, never retried.

        The new id is under ``data.user.id`` (or ``data.id``).
        """
        return self._request(
            "POST",
            "/patients",
            subdomain=subdomain,
            params={"location_id": location_id},
            json_body={
                "provider": {"provider_id": int(provider_id) if provider_id.isdigit() else provider_id},
                "patient": patient,
            },
        )

    def search_patients(
        self,
        subdomain: str,
        *,
        location_id: str,
        name: str,
        date_of_birth: str,
    ) -> list[dict[str, Any]]:
        """Find active patients by full name and date of birth."""
        data = self._request(
            "GET",
            "/patients",
            subdomain=subdomain,
            params={
                "location_id": location_id,
                "name": name,
                "date_of_birth": date_of_birth,
                "inactive": "false",
                "non_patient": "false",
                "page": 1,
                "per_page": 300,
            },
        )
        payload = data.get("data", data)
        if isinstance(payload, dict):
            payload = payload.get("patients", [])
        return payload if isinstance(payload, list) else []


def extract_appointment_id(response: dict[str, Any]) -> str | None:
    """Pull the created appointment id out of a ``POST /appointments`` body."""
    data = response.get("data") if isinstance(response, dict) else None
    if not isinstance(data, dict):
        return None
    appointment_id = data.get("id")
    if appointment_id is None and isinstance(data.get("appointment"), dict):
        appointment_id = data["appointment"].get("id")
    return str(appointment_id) if appointment_id is not None else None


def extract_patient_id(response: dict[str, Any]) -> str | None:
    """Pull the new patient id out of a ``POST /patients`` body."""
    data = response.get("data") if isinstance(response, dict) else None
    if not isinstance(data, dict):
        return None
    user = data.get("user")
    patient_id = user.get("id") if isinstance(user, dict) else None
    if patient_id is None:
        patient_id = data.get("id")
    return str(patient_id) if patient_id is not None else None


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: NexHealthClient | None = None
_client_lock = threading.Lock()


def get_nexhealth_client() -> NexHealthClient:
    """Return a module-level NexHealthClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = NexHealthClient()
    return _client
