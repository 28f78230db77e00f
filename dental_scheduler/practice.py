"""Practice Snapshot: the read-only configuration a practice exposes to the engine.

The snapshot is owned by the configuration collaborator (the admin UI and its
database are out of scope here).  This module defines its shape plus a
``PracticeRepository`` interface and a JSON-file implementation used by the
server and the CLI.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError

from dental_scheduler.config import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)


class AppointmentType(BaseModel):
    id: str
    nexhealth_appointment_type_id: str
    name: str
    duration: int = Field(..., gt=0, description="Default duration in minutes")
    bookable_online: bool = True
    group_code: str | None = None
    keywords: list[str] = Field(default_factory=list)


class Provider(BaseModel):
    id: str
    nexhealth_provider_id: str
    first_name: str | None = None
    last_name: str = ""

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name}".strip()
        return name or f"Provider {self.nexhealth_provider_id}"


class SavedOperatory(BaseModel):
    id: str
    nexhealth_operatory_id: str
    name: str
    is_active: bool = True


class SavedProvider(BaseModel):
    """A provider as activated for one practice.

    ``accepted_appointment_type_ids`` holds :class:`AppointmentType` ids; an
    empty list means the provider accepts every type (older configurations
    never set it).  ``assigned_operatory_ids`` holds :class:`SavedOperatory` ids.
    """

    id: str
    provider: Provider
    is_active: bool = True
    accepted_appointment_type_ids: list[str] = Field(default_factory=list)
    assigned_operatory_ids: list[str] = Field(default_factory=list)

    def accepts(self, appointment_type: AppointmentType) -> bool:
        if not self.accepted_appointment_type_ids:
            return True
        return appointment_type.id in self.accepted_appointment_type_ids


class Practice(BaseModel):
    id: str
    name: str = ""
    nexhealth_subdomain: str | None = None
    nexhealth_location_id: str | None = None
    timezone: str | None = None
    appointment_types: list[AppointmentType] = Field(default_factory=list)
    saved_providers: list[SavedProvider] = Field(default_factory=list)
    saved_operatories: list[SavedOperatory] = Field(default_factory=list)

    @property
    def has_scheduling_config(self) -> bool:
        return bool(self.nexhealth_subdomain and self.nexhealth_location_id)

    @property
    def tz_name(self) -> str:
        return self.timezone or DEFAULT_TIMEZONE

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "Practice %s has unknown timezone %r, falling back to %s",
                self.id, self.tz_name, DEFAULT_TIMEZONE,
            )
            return ZoneInfo(DEFAULT_TIMEZONE)

    def find_appointment_type(self, type_id: str | None) -> AppointmentType | None:
        """Look up a type by NexHealth id first, then by internal id."""
        if not type_id:
            return None
        for appointment_type in self.appointment_types:
            if appointment_type.nexhealth_appointment_type_id == type_id:
                return appointment_type
        for appointment_type in self.appointment_types:
            if appointment_type.id == type_id:
                return appointment_type
        return None

    def operatory_by_id(self, operatory_id: str) -> SavedOperatory | None:
        return next((o for o in self.saved_operatories if o.id == operatory_id), None)


# ── Repository ───────────────────────────────────────────────────────


class PracticeRepository(Protocol):
    """Read interface of the configuration collaborator."""

    def get(self, practice_id: str) -> Practice | None: ...


class JsonPracticeRepository:
    """Loads practices from a JSON file (a list of practice objects, or
    ``{"practices": [...]}``) on first access and serves them from memory.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._practices: dict[str, Practice] | None = None
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Practice]:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.error("Practice config file not found at %s", self._path)
            return {}
        except json.JSONDecodeError:
            logger.exception("Practice config file %s is not valid JSON", self._path)
            return {}

        items = raw.get("practices", []) if isinstance(raw, dict) else raw
        practices: dict[str, Practice] = {}
        for item in items if isinstance(items, list) else []:
            try:
                practice = Practice.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid practice entry: %s", exc)
                continue
            practices[practice.id] = practice
        logger.info("Loaded %d practice(s) from %s", len(practices), self._path)
        return practices

    def get(self, practice_id: str) -> Practice | None:
        if self._practices is None:
            with self._lock:
                if self._practices is None:
                    self._practices = self._load()
        return self._practices.get(practice_id)

    def reload(self) -> None:
        with self._lock:
            self._practices = self._load()


class InMemoryPracticeRepository:
    def __init__(self, practices: list[Practice] | None = None) -> None:
        self._practices = {p.id: p for p in practices or []}

    def add(self, practice: Practice) -> None:
        self._practices[practice.id] = practice

    def get(self, practice_id: str) -> Practice | None:
        return self._practices.get(practice_id)
