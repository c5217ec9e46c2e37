"""
state_machine.py - Load Lifecycle State Machine

Two independent layers decide whether a status change may happen:

1. Structural table (VALID_TRANSITIONS): is current -> requested a legal edge?
2. Role permissions (ROLE_PERMISSIONS): may this role request that status?

validate_transition() applies both. It is pure: no I/O, no knowledge of
organizations. Callers still check that the actor's organization owns the
load (or the assigned truck) before writing.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Union

from .core import LoadStatus, Role, TERMINAL_STATUSES


S = LoadStatus

# Total over LoadStatus: every status has an entry, terminal ones map to the empty set.
VALID_TRANSITIONS: Dict[LoadStatus, FrozenSet[LoadStatus]] = {
    S.DRAFT: frozenset({S.POSTED, S.CANCELLED, S.EXCEPTION}),
    S.POSTED: frozenset({
        S.SEARCHING, S.OFFERED, S.ASSIGNED, S.UNPOSTED,
        S.CANCELLED, S.EXPIRED, S.EXCEPTION,
    }),
    S.SEARCHING: frozenset({
        S.OFFERED, S.ASSIGNED, S.UNPOSTED, S.CANCELLED, S.EXPIRED, S.EXCEPTION,
    }),
    S.OFFERED: frozenset({S.SEARCHING, S.ASSIGNED, S.CANCELLED, S.EXPIRED, S.EXCEPTION}),
    S.ASSIGNED: frozenset({S.PICKUP_PENDING, S.IN_TRANSIT, S.CANCELLED, S.EXCEPTION}),
    S.PICKUP_PENDING: frozenset({S.IN_TRANSIT, S.CANCELLED, S.EXCEPTION}),
    # No direct cancellation once on the road: go through EXCEPTION.
    S.IN_TRANSIT: frozenset({S.DELIVERED, S.EXCEPTION}),
    S.DELIVERED: frozenset({S.COMPLETED, S.EXCEPTION}),
    S.EXCEPTION: frozenset({
        S.SEARCHING, S.ASSIGNED, S.PICKUP_PENDING, S.IN_TRANSIT,
        S.DELIVERED, S.CANCELLED, S.COMPLETED,
    }),
    S.UNPOSTED: frozenset({S.DRAFT, S.POSTED, S.CANCELLED, S.EXCEPTION}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}

# Statuses each restricted role may request. Roles in BYPASS_ROLES are
# limited only by the structural table.
ROLE_PERMISSIONS: Dict[Role, FrozenSet[LoadStatus]] = {
    Role.SHIPPER: frozenset({S.DRAFT, S.POSTED, S.CANCELLED, S.UNPOSTED}),
    Role.CARRIER: frozenset({S.ASSIGNED, S.PICKUP_PENDING, S.IN_TRANSIT, S.DELIVERED}),
}

BYPASS_ROLES: FrozenSet[Role] = frozenset({Role.DISPATCHER, Role.ADMIN, Role.SUPER_ADMIN})

STATUS_DESCRIPTIONS: Dict[LoadStatus, str] = {
    S.DRAFT: "Load created but not yet posted to the marketplace",
    S.POSTED: "Load posted and visible to carriers",
    S.SEARCHING: "Dispatcher is actively searching for a carrier",
    S.OFFERED: "Load offered to a carrier, awaiting response",
    S.ASSIGNED: "Carrier and truck assigned, awaiting pickup",
    S.PICKUP_PENDING: "Truck en route to the pickup location",
    S.IN_TRANSIT: "Load picked up and in transit to the destination",
    S.DELIVERED: "Load delivered, awaiting proof of delivery",
    S.COMPLETED: "Delivery confirmed with POD, load complete",
    S.EXCEPTION: "Problem reported, awaiting resolution",
    S.CANCELLED: "Load cancelled",
    S.EXPIRED: "Load expired without being assigned",
    S.UNPOSTED: "Load removed from the marketplace",
}


@dataclass(frozen=True, slots=True)
class TransitionResult:
    valid: bool
    error: Optional[str] = None


def _coerce_status(status: Union[LoadStatus, str]) -> Optional[LoadStatus]:
    if isinstance(status, LoadStatus):
        return status
    try:
        return LoadStatus(status)
    except ValueError:
        return None


def _coerce_role(role: Union[Role, str]) -> Optional[Role]:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


def is_terminal_status(status: LoadStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_valid_transition(current: LoadStatus, requested: LoadStatus) -> bool:
    """True if current -> requested is an edge of the structural table."""
    return requested in VALID_TRANSITIONS.get(current, frozenset())


def can_role_set_status(role: Union[Role, str], status: LoadStatus) -> bool:
    """True if the role may request status, ignoring the structural table."""
    role = _coerce_role(role)
    if role is None:
        return False
    if role in BYPASS_ROLES:
        return True
    return status in ROLE_PERMISSIONS.get(role, frozenset())


def get_valid_next_states(current: LoadStatus) -> List[LoadStatus]:
    """Allowed next statuses in declaration order (empty for terminal statuses)."""
    allowed = VALID_TRANSITIONS.get(current, frozenset())
    return [status for status in LoadStatus if status in allowed]


def validate_transition(
    current: Union[LoadStatus, str],
    requested: Union[LoadStatus, str],
    role: Union[Role, str],
) -> TransitionResult:
    """
    Validate a requested status change for an acting role.

    The structural table is checked first, then the role restriction.

    Args:
        current: The load's current status.
        requested: The status being requested.
        role: The acting role.

    Returns:
        TransitionResult(valid=True) or TransitionResult(valid=False, error=...).
        Error strings contain "Unknown status", "Unknown role",
        "Invalid transition" or "<ROLE> cannot set status <STATUS>".
    """
    current_status = _coerce_status(current)
    if current_status is None:
        return TransitionResult(False, f"Unknown status: {current}")
    requested_status = _coerce_status(requested)
    if requested_status is None:
        return TransitionResult(False, f"Unknown status: {requested}")
    acting_role = _coerce_role(role)
    if acting_role is None:
        return TransitionResult(False, f"Unknown role: {role}")

    if not is_valid_transition(current_status, requested_status):
        allowed = ", ".join(s.value for s in get_valid_next_states(current_status)) or "none"
        return TransitionResult(
            False,
            f"Invalid transition from {current_status.value} to {requested_status.value}. "
            f"Allowed: {allowed}",
        )
    if not can_role_set_status(acting_role, requested_status):
        return TransitionResult(
            False, f"{acting_role.value} cannot set status {requested_status.value}"
        )
    return TransitionResult(True)


def get_status_description(status: Union[LoadStatus, str]) -> str:
    coerced = _coerce_status(status)
    if coerced is None:
        return "Unknown status"
    return STATUS_DESCRIPTIONS[coerced]
