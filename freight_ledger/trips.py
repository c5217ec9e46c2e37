"""
trips.py - Trip/Assignment Synchronizer

The status write path for loads. Every status change goes through
update_load_status(), which in one unit of work:

1. Validates the transition (state machine) and the actor's ownership
2. Writes the new load status
3. Mirrors it onto the load's Trip (LOAD_TO_TRIP_STATUS)
4. Releases the truck and disables tracking when the load leaves the
   truck-holding statuses
5. Deducts service fees on COMPLETED, refunds them on CANCELLED/EXPIRED
6. Records a STATUS_CHANGED event

Assignment (approve_load_request) re-reads the load and truck inside the same
unit of work that writes the assignment, so a stale "not yet assigned" read
can never be acted on.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

import structlog

from .core import (
    Actor, Load, LoadRequest, Trip,
    FeeStatus, LoadStatus, RequestStatus, Role, TripStatus,
    EVENT_ASSIGNED, EVENT_REQUEST_REJECTED, EVENT_STATUS_CHANGED,
    TERMINAL_STATUSES, TRUCK_HOLDING_STATUSES,
    ConflictError, ConstraintViolation, Forbidden, InvalidTransition,
    LoadAlreadyAssigned, NotFound, PreconditionFailed, RequestAlreadyResolved,
    TruckBusy, ValidationError,
)
from .notifications import (
    NotificationDispatcher, dispatch,
    LOAD_REQUEST_APPROVED, LOAD_REQUEST_REJECTED, LOAD_STATUS_CHANGED,
    SERVICE_FEE_DEDUCTED, SERVICE_FEE_REFUNDED,
)
from .service_fees import (
    FeeOpResult, RefundResult,
    _deduct_service_fee, _refund_service_fee, _validate_wallet_balances,
    log_fee_result, log_refund_result, wallet_failure,
)
from .state_machine import _coerce_status, is_valid_transition, validate_transition
from .store import FreightStore, StoreTransaction


logger = structlog.get_logger(__name__)


LOAD_TO_TRIP_STATUS: Dict[LoadStatus, TripStatus] = {
    LoadStatus.ASSIGNED: TripStatus.ASSIGNED,
    LoadStatus.PICKUP_PENDING: TripStatus.PICKUP_PENDING,
    LoadStatus.IN_TRANSIT: TripStatus.IN_TRANSIT,
    LoadStatus.DELIVERED: TripStatus.DELIVERED,
    LoadStatus.COMPLETED: TripStatus.COMPLETED,
    LoadStatus.CANCELLED: TripStatus.CANCELLED,
    LoadStatus.EXPIRED: TripStatus.CANCELLED,
}

# Statuses that only make sense with a truck on the load.
REQUIRES_TRUCK = frozenset({
    LoadStatus.ASSIGNED,
    LoadStatus.PICKUP_PENDING,
    LoadStatus.IN_TRANSIT,
    LoadStatus.DELIVERED,
})


def trip_status_for(status: LoadStatus) -> Optional[TripStatus]:
    """Trip status mirroring a load status, or None when the trip is left untouched."""
    return LOAD_TO_TRIP_STATUS.get(status)


@dataclass(frozen=True, slots=True)
class StatusUpdateResult:
    load: Load
    previous_status: LoadStatus
    trip: Optional[Trip] = None
    service_fee: Optional[FeeOpResult] = None
    refund: Optional[RefundResult] = None
    idempotent: bool = False


@dataclass(frozen=True, slots=True)
class AssignmentResult:
    load: Load
    trip: Optional[Trip]
    request: LoadRequest
    cancelled_requests: Tuple[LoadRequest, ...] = ()
    idempotent: bool = False


def _check_ownership(tx: StoreTransaction, load: Load, actor: Actor) -> None:
    if actor.is_privileged:
        return
    if actor.role is Role.SHIPPER:
        if load.shipper_id != actor.organization_id:
            raise Forbidden("You can only update loads owned by your organization")
    elif actor.role is Role.CARRIER:
        truck = tx.get_truck(load.assigned_truck_id) if load.assigned_truck_id else None
        if truck is None or truck.carrier_id != actor.organization_id:
            raise Forbidden("You can only update loads assigned to your trucks")


def _sync_trip(tx: StoreTransaction, load_id: str, new_status: LoadStatus,
               released_truck: bool) -> Optional[Trip]:
    trip = tx.get_trip_for_load(load_id)
    if trip is None:
        return None
    trip_status = trip_status_for(new_status)
    if trip_status is None:
        if not released_truck:
            return trip
        # Back to the marketplace (e.g. EXCEPTION -> SEARCHING): this trip is over.
        trip_status = TripStatus.CANCELLED
    if trip.status is trip_status:
        return trip

    now = tx.now()
    changes = {"status": trip_status}
    if trip_status is TripStatus.IN_TRANSIT and trip.started_at is None:
        changes["started_at"] = now
    elif trip_status is TripStatus.DELIVERED:
        changes["delivered_at"] = now
    elif trip_status is TripStatus.COMPLETED:
        changes["completed_at"] = now
        changes["tracking_enabled"] = False
    elif trip_status is TripStatus.CANCELLED:
        changes["cancelled_at"] = now
        changes["tracking_enabled"] = False
    return tx.update_trip(trip.id, **changes)


# ============================================================================
# STATUS WRITE PATH
# ============================================================================

def update_load_status(
    store: FreightStore,
    load_id: str,
    new_status: Union[LoadStatus, str],
    actor: Actor,
    reason: Optional[str] = None,
    notifications: Optional[NotificationDispatcher] = None,
) -> StatusUpdateResult:
    """
    Change a load's status and keep its trip, truck and fees in step.

    COMPLETED charges the service fees in the same unit of work: if a party
    has no wallet or cannot pay, nothing is written and the load stays where
    it was. A load without fee configuration completes with its fees WAIVED.
    Refunds on CANCELLED/EXPIRED are reported on result.refund.

    Args:
        store: Persistence boundary.
        load_id: Load to update.
        new_status: Requested status (enum or its string value).
        actor: Acting identity; its role is checked by the state machine and
            its organization against the load or assigned truck.
        reason: Free text recorded on the STATUS_CHANGED event.
        notifications: Optional dispatcher for fire-and-forget notices.

    Raises:
        NotFound: Load does not exist.
        InvalidTransition: Transition illegal or not allowed for the role.
        Forbidden: Actor's organization does not own the load or its truck.
        PreconditionFailed: Status needs a truck but none is assigned.
        WalletNotFound / InsufficientBalance: COMPLETED, but a party cannot
            pay its service fee.
        ConflictError: A concurrent update won the race.
    """
    requested = _coerce_status(new_status)
    if requested is None:
        raise InvalidTransition(f"Unknown status: {new_status}")

    def work(tx: StoreTransaction) -> StatusUpdateResult:
        load = tx.get_load(load_id)
        if load is None:
            raise NotFound(f"Load {load_id} not found")
        _check_ownership(tx, load, actor)

        if load.status is requested:
            return StatusUpdateResult(load, load.status, trip=tx.get_trip_for_load(load_id),
                                      idempotent=True)

        check = validate_transition(load.status, requested, actor.role)
        if not check.valid:
            raise InvalidTransition(check.error)
        if requested in REQUIRES_TRUCK and not load.assigned_truck_id:
            raise PreconditionFailed(f"Load must have an assigned truck to move to {requested.value}")

        previous = load.status
        now = tx.now()

        # Money moves before the truck is released so the carrier is still known.
        fee_result = None
        refund_result = None
        if requested is LoadStatus.COMPLETED:
            fee_result = _deduct_service_fee(tx, load_id, actor.user_id)
            if not fee_result.success and not fee_result.waived:
                logger.warning("load_completion_blocked", load_id=load_id, error=fee_result.error)
                raise wallet_failure(f"Cannot complete trip: fee deduction failed ({fee_result.error})")
        elif requested in (LoadStatus.CANCELLED, LoadStatus.EXPIRED):
            if load.service_fee_status is FeeStatus.DEDUCTED:
                refund_result = _refund_service_fee(tx, load_id, actor.user_id)

        changes = {"status": requested}
        if requested is LoadStatus.POSTED and load.posted_at is None:
            changes["posted_at"] = now
        truck_id = load.assigned_truck_id
        release_truck = bool(truck_id) and requested not in TRUCK_HOLDING_STATUSES
        if release_truck:
            changes["assigned_truck_id"] = None
            changes["tracking_enabled"] = False
        if requested in TERMINAL_STATUSES:
            changes["tracking_enabled"] = False
        updated = tx.update_load(load_id, **changes)

        if release_truck and tx.get_truck(truck_id) is not None:
            if tx.count_active_loads_for_truck(truck_id, exclude_load_id=load_id) == 0:
                tx.update_truck(truck_id, is_available=True)

        trip = _sync_trip(tx, load_id, requested, release_truck)
        tx.record_event(load_id, EVENT_STATUS_CHANGED, {
            "previous_status": previous.value,
            "new_status": requested.value,
            "reason": reason,
        }, actor.user_id)
        return StatusUpdateResult(updated, previous, trip=trip,
                                  service_fee=fee_result, refund=refund_result)

    try:
        result = store.run_in_transaction(work)
    except ConstraintViolation as exc:
        logger.warning("load_status_conflict", load_id=load_id,
                       status=requested.value, constraint=exc.constraint)
        raise ConflictError(f"Load {load_id} was updated concurrently, please retry") from exc

    if result.idempotent:
        return result

    logger.info("load_status_changed", load_id=load_id,
                previous_status=result.previous_status.value,
                new_status=result.load.status.value, actor=actor.user_id)
    if result.service_fee is not None:
        log_fee_result(load_id, result.service_fee)
    if result.refund is not None:
        log_refund_result(load_id, result.refund)

    carrier_id = result.trip.carrier_id if result.trip else None
    for recipient in (result.load.shipper_id, carrier_id):
        dispatch(notifications, recipient, LOAD_STATUS_CHANGED, load_id=load_id,
                 previous_status=result.previous_status.value,
                 new_status=result.load.status.value)
    if result.service_fee is not None and result.service_fee.success and not result.service_fee.idempotent:
        dispatch(notifications, result.load.shipper_id, SERVICE_FEE_DEDUCTED,
                 load_id=load_id, amount=str(result.service_fee.shipper_fee))
    if result.refund is not None and result.refund.success and not result.refund.idempotent:
        dispatch(notifications, result.load.shipper_id, SERVICE_FEE_REFUNDED,
                 load_id=load_id, amount=str(result.refund.shipper_refund))
    return result


# ============================================================================
# ASSIGNMENT
# ============================================================================

def _check_request_owner(load: Load, actor: Actor) -> None:
    if actor.is_privileged:
        return
    if actor.role is not Role.SHIPPER or load.shipper_id != actor.organization_id:
        raise Forbidden("Only the load's shipper can respond to load requests")


def approve_load_request(
    store: FreightStore,
    request_id: str,
    actor: Actor,
    notifications: Optional[NotificationDispatcher] = None,
) -> AssignmentResult:
    """
    Approve a carrier's load request and assign its truck to the load.

    In one unit of work: the load becomes ASSIGNED with the truck and
    tracking enabled, the truck becomes unavailable, a Trip is created in
    ASSIGNED, the request is APPROVED and every other pending request for the
    load is CANCELLED.

    Returns:
        AssignmentResult; idempotent=True if the request was already approved.

    Raises:
        NotFound: Request, load or truck does not exist.
        Forbidden: Actor does not own the load.
        RequestAlreadyResolved: Request was rejected or cancelled.
        LoadAlreadyAssigned: Load already has a truck.
        TruckBusy: Truck is committed to another active load.
        InvalidTransition: Load cannot move to ASSIGNED from its status.
        WalletNotFound / InsufficientBalance: A party cannot cover its service fee.
        ConflictError: A concurrent assignment won the race.
    """
    def work(tx: StoreTransaction) -> AssignmentResult:
        request = tx.get_load_request(request_id)
        if request is None:
            raise NotFound(f"Load request {request_id} not found")
        load = tx.get_load(request.load_id)
        if load is None:
            raise NotFound(f"Load {request.load_id} not found")
        _check_request_owner(load, actor)

        if request.status is RequestStatus.APPROVED:
            return AssignmentResult(load, tx.get_trip_for_load(load.id), request, idempotent=True)
        if request.status is not RequestStatus.PENDING:
            raise RequestAlreadyResolved(f"Load request {request_id} is already {request.status.value}")

        if load.assigned_truck_id:
            raise LoadAlreadyAssigned(f"Load {load.id} is already assigned to a truck")
        if not is_valid_transition(load.status, LoadStatus.ASSIGNED):
            raise InvalidTransition(f"Load cannot be assigned from status {load.status.value}")
        truck = tx.get_truck(request.truck_id)
        if truck is None:
            raise NotFound(f"Truck {request.truck_id} not found")
        if truck.carrier_id != request.carrier_id:
            raise ValidationError("Truck does not belong to the requesting carrier")
        if tx.count_active_loads_for_truck(truck.id, exclude_load_id=load.id) > 0:
            raise TruckBusy(f"Truck {truck.id} is already assigned to an active load")

        wallet_check = _validate_wallet_balances(tx, load, request.carrier_id)
        if not wallet_check.valid:
            raise wallet_failure("; ".join(wallet_check.errors))

        now = tx.now()
        assigned = tx.update_load(
            load.id,
            status=LoadStatus.ASSIGNED,
            assigned_truck_id=truck.id,
            assigned_at=now,
            tracking_enabled=True,
        )
        tx.update_truck(truck.id, is_available=False)
        trip = tx.insert(Trip(
            id=tx.next_id("trip"),
            load_id=load.id,
            truck_id=truck.id,
            carrier_id=request.carrier_id,
            shipper_id=load.shipper_id,
            status=TripStatus.ASSIGNED,
            tracking_enabled=True,
            created_at=now,
        ))
        approved = tx.update_load_request(request_id, status=RequestStatus.APPROVED, responded_at=now)

        cancelled = []
        for other in tx.list_load_requests(load.id, RequestStatus.PENDING):
            cancelled.append(tx.update_load_request(
                other.id,
                status=RequestStatus.CANCELLED,
                responded_at=now,
                response_notes="Load assigned to another carrier",
            ))

        tx.record_event(load.id, EVENT_ASSIGNED, {
            "previous_status": load.status.value,
            "request_id": request_id,
            "truck_id": truck.id,
            "carrier_id": request.carrier_id,
            "trip_id": trip.id,
        }, actor.user_id)
        return AssignmentResult(assigned, trip, approved, tuple(cancelled))

    try:
        result = store.run_in_transaction(work)
    except ConstraintViolation as exc:
        logger.warning("assignment_conflict", request_id=request_id, constraint=exc.constraint)
        raise ConflictError(f"Load request {request_id} conflicted with a concurrent assignment, please retry") from exc

    if result.idempotent:
        return result

    logger.info("load_request_approved", request_id=request_id, load_id=result.load.id,
                truck_id=result.load.assigned_truck_id, trip_id=result.trip.id,
                cancelled_requests=len(result.cancelled_requests))
    dispatch(notifications, result.request.carrier_id, LOAD_REQUEST_APPROVED,
             load_id=result.load.id, request_id=request_id, trip_id=result.trip.id)
    for other in result.cancelled_requests:
        dispatch(notifications, other.carrier_id, LOAD_REQUEST_REJECTED,
                 load_id=result.load.id, request_id=other.id, reason=other.response_notes)
    return result


def reject_load_request(
    store: FreightStore,
    request_id: str,
    actor: Actor,
    reason: Optional[str] = None,
    notifications: Optional[NotificationDispatcher] = None,
) -> LoadRequest:
    """
    Reject a pending load request. Rejecting an already rejected request is a no-op.

    Raises:
        NotFound: Request or load does not exist.
        Forbidden: Actor does not own the load.
        RequestAlreadyResolved: Request was approved or cancelled.
    """
    def work(tx: StoreTransaction) -> Tuple[LoadRequest, bool]:
        request = tx.get_load_request(request_id)
        if request is None:
            raise NotFound(f"Load request {request_id} not found")
        load = tx.get_load(request.load_id)
        if load is None:
            raise NotFound(f"Load {request.load_id} not found")
        _check_request_owner(load, actor)

        if request.status is RequestStatus.REJECTED:
            return request, True
        if request.status is not RequestStatus.PENDING:
            raise RequestAlreadyResolved(f"Load request {request_id} is already {request.status.value}")

        rejected = tx.update_load_request(
            request_id, status=RequestStatus.REJECTED, responded_at=tx.now(), response_notes=reason,
        )
        tx.record_event(load.id, EVENT_REQUEST_REJECTED,
                        {"request_id": request_id, "reason": reason}, actor.user_id)
        return rejected, False

    try:
        request, idempotent = store.run_in_transaction(work)
    except ConstraintViolation as exc:
        raise ConflictError(f"Load request {request_id} was updated concurrently, please retry") from exc

    if not idempotent:
        logger.info("load_request_rejected", request_id=request_id, load_id=request.load_id)
        dispatch(notifications, request.carrier_id, LOAD_REQUEST_REJECTED,
                 load_id=request.load_id, request_id=request_id, reason=reason)
    return request
