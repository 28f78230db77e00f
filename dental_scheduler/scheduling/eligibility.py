"""Which providers can see this appointment type, and in which operatories.

A provider is eligible iff it is active and either accepts every type (no
accepted types configured) or lists the requested type.  The operatory
candidates are the active operatories assigned to eligible providers.

Operatory filtering has two distinct "empty" outcomes:

* nothing assigned and no filter given: not an error, the slot query simply
  omits ``operatory_ids[]`` and NexHealth searches every operatory;
* a non-empty filter that leaves nothing: ``NO_ASSIGNED_OPERATORIES``, since
  silently widening the search would ignore the caller's restriction.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from dental_scheduler.practice import AppointmentType, Practice, SavedOperatory, SavedProvider
from dental_scheduler.results import ErrorCode

logger = logging.getLogger(__name__)


class EligibilityError(Exception):
    """Raised when no provider/operatory combination can serve the request."""

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        super().__init__(message)


class AssignmentPolicy(str, Enum):
    """How a single provider/operatory is chosen for the booking write.

    Only one policy exists today.  Round-robin or load-based selection would
    be added here as new members.
    """

    FIRST_BY_STABLE_ORDER = "first_by_stable_order"


@dataclass
class EligibilityResult:
    providers: list[SavedProvider]
    operatories: list[SavedOperatory]
    operatory_filter_applied: bool = False
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def nexhealth_provider_ids(self) -> list[str]:
        return [sp.provider.nexhealth_provider_id for sp in self.providers]

    @property
    def nexhealth_operatory_ids(self) -> list[str]:
        return [o.nexhealth_operatory_id for o in self.operatories]

    def provider_names(self) -> dict[str, str]:
        """NexHealth provider id → display name."""
        return {sp.provider.nexhealth_provider_id: sp.provider.display_name for sp in self.providers}

    def operatory_names(self) -> dict[str, str]:
        return {o.nexhealth_operatory_id: o.name for o in self.operatories}


def _matches_filter(ids: Sequence[str], *candidates: str) -> bool:
    return any(c in ids for c in candidates)


def resolve_eligibility(
    practice: Practice,
    appointment_type: AppointmentType,
    *,
    provider_filter: Sequence[str] | None = None,
    operatory_filter: Sequence[str] | None = None,
) -> EligibilityResult:
    """Compute eligible providers and reachable operatories.

    Filters accept internal ids or NexHealth ids.  ``None`` and ``[]`` both
    mean "no filter".
    """
    if not practice.saved_providers:
        raise EligibilityError(ErrorCode.NO_SAVED_PROVIDERS, "Practice has no saved providers")

    active = [sp for sp in practice.saved_providers if sp.is_active]
    if not active:
        raise EligibilityError(ErrorCode.NO_ACTIVE_PROVIDERS, "Practice has no active providers")

    accepting = [sp for sp in active if sp.accepts(appointment_type)]

    eligible = accepting
    if provider_filter:
        eligible = [
            sp for sp in accepting
            if _matches_filter(provider_filter, sp.id, sp.provider.id, sp.provider.nexhealth_provider_id)
        ]

    if not eligible:
        raise EligibilityError(
            ErrorCode.NO_PROVIDERS_FOR_TYPE,
            f"No active provider accepts appointment type {appointment_type.name!r}",
        )

    operatories: list[SavedOperatory] = []
    seen: set[str] = set()
    for saved_provider in eligible:
        for operatory_id in saved_provider.assigned_operatory_ids:
            operatory = practice.operatory_by_id(operatory_id)
            if operatory is None or not operatory.is_active or operatory.id in seen:
                continue
            seen.add(operatory.id)
            operatories.append(operatory)

    derived_count = len(operatories)
    if operatory_filter:
        operatories = [
            o for o in operatories
            if _matches_filter(operatory_filter, o.id, o.nexhealth_operatory_id)
        ]
        if not operatories:
            raise EligibilityError(
                ErrorCode.NO_ASSIGNED_OPERATORIES,
                "None of the requested operatories is assigned to an eligible provider",
            )

    result = EligibilityResult(
        providers=eligible,
        operatories=operatories,
        operatory_filter_applied=bool(operatory_filter),
        stats={
            "total_saved_providers": len(practice.saved_providers),
            "total_active_providers": len(active),
            "providers_who_accept_type": len(accepting),
            "eligible_providers_after_filter": len(eligible),
            "assigned_operatories": derived_count,
            "operatories_used": len(operatories),
        },
    )
    logger.debug(
        "Eligibility for %s: providers=%s operatories=%s",
        appointment_type.name, result.nexhealth_provider_ids, result.nexhealth_operatory_ids,
    )
    return result


def _stable_key(external_id: str) -> tuple[int, int | str]:
    # Numeric NexHealth ids sort numerically, anything else lexically after them
    return (0, int(external_id)) if external_id.isdigit() else (1, external_id)


def select_booking_assignment(
    eligibility: EligibilityResult,
    *,
    slot_provider_id: str | None = None,
    slot_operatory_id: str | None = None,
    policy: AssignmentPolicy = AssignmentPolicy.FIRST_BY_STABLE_ORDER,
) -> tuple[SavedProvider, SavedOperatory | None]:
    """Pick the provider/operatory for the booking write.

    The slot's own provider/operatory win when they are still eligible;
    otherwise *policy* decides.
    """
    if policy is not AssignmentPolicy.FIRST_BY_STABLE_ORDER:
        raise ValueError(f"Unsupported assignment policy: {policy}")

    providers = sorted(eligibility.providers, key=lambda sp: _stable_key(sp.provider.nexhealth_provider_id))
    slot_provider = next(
        (sp for sp in providers if sp.provider.nexhealth_provider_id == slot_provider_id),
        None,
    )
    operatories = sorted(eligibility.operatories, key=lambda o: _stable_key(o.nexhealth_operatory_id))

    if slot_provider is None:
        # Reassigned: the slot's operatory belongs to another provider's schedule
        provider = providers[0]
        own = [o for o in operatories if o.id in provider.assigned_operatory_ids]
        candidates = own or operatories
        return provider, candidates[0] if candidates else None

    operatory = next(
        (o for o in operatories if o.nexhealth_operatory_id == slot_operatory_id),
        operatories[0] if operatories else None,
    )
    return slot_provider, operatory
