"""
service_fees.py - Service-Fee Ledger Manager

Moves platform service fees between organization wallets and platform revenue
as a load's lifecycle advances:

    - deduct_service_fee: charge shipper and carrier once per load (on COMPLETED)
    - refund_service_fee: reverse deducted fees (on CANCELLED/EXPIRED)
    - validate_wallet_balances_for_trip: can both parties pay before assignment?

Idempotency is enforced by the load event log: a SERVICE_FEE_DEDUCTED or
SERVICE_FEE_REFUNDED event proves the movement already happened, and the store
rejects a second one at commit.

Expected business failures (no wallet, no fee configuration, insufficient
balance) are returned as results with success=False. Infrastructure failures
propagate.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import structlog

from .core import (
    Actor, Load,
    AccountType, FeeStatus, TransactionType, TripStatus,
    EVENT_SERVICE_FEE_DEDUCTED, EVENT_SERVICE_FEE_REFUNDED, EVENT_SERVICE_FEE_WAIVED,
    ConflictError, ConstraintViolation, InsufficientBalance, NotFound, PreconditionFailed,
    WalletNotFound,
)
from .fees import (
    DualPartyFeePreview, FeePreview,
    calculate_fee_preview, calculate_fees_from_corridor, resolve_trip_distance,
)
from .money import ZERO, format_money
from .notifications import NotificationDispatcher, dispatch, SERVICE_FEE_DEDUCTED, SERVICE_FEE_REFUNDED
from .store import FreightStore, StoreTransaction, PLATFORM_ACCOUNT


logger = structlog.get_logger(__name__)


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class FeeOpResult:
    """
    Outcome of deduct_service_fee.

    transaction_id is the first journal entry written (shipper's when charged);
    journal_entry_ids lists one entry per charged party. waived is set when
    the load has no fee configuration and its fees were marked WAIVED.
    """
    success: bool
    shipper_fee: Decimal = ZERO
    carrier_fee: Decimal = ZERO
    total_platform_fee: Decimal = ZERO
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    idempotent: bool = False
    journal_entry_ids: Tuple[str, ...] = ()
    distance_km: Optional[Decimal] = None
    distance_source: Optional[str] = None
    waived: bool = False


@dataclass(frozen=True, slots=True)
class RefundResult:
    success: bool
    service_fee: Decimal = ZERO
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    idempotent: bool = False
    shipper_refund: Decimal = ZERO
    carrier_refund: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class WalletCheck:
    valid: bool
    shipper_fee: Decimal = ZERO
    carrier_fee: Decimal = ZERO
    shipper_balance: Optional[Decimal] = None
    carrier_balance: Optional[Decimal] = None
    errors: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class _FeePlan:
    preview: DualPartyFeePreview
    distance_km: Decimal
    distance_source: str
    corridor_id: Optional[str]


# ============================================================================
# FEE PLAN
# ============================================================================

def _fee_plan(tx: StoreTransaction, load: Load) -> Optional[_FeePlan]:
    """
    Fee configuration of a load: its active corridor, else a legacy flat fee.

    Returns None when the load has neither.
    """
    corridor = tx.get_corridor(load.corridor_id) if load.corridor_id else None
    if corridor is not None and corridor.is_active:
        distance, source = resolve_trip_distance(load, corridor)
        return _FeePlan(calculate_fees_from_corridor(corridor, distance), distance, source, corridor.id)

    if load.service_fee > ZERO:
        # Legacy loads carry a flat shipper-only fee.
        shipper = FeePreview(
            distance_km=ZERO, price_per_km=ZERO, base_fee=load.service_fee,
            promo_discount=ZERO, final_fee=load.service_fee,
        )
        carrier = calculate_fee_preview(0, 0)
        preview = DualPartyFeePreview(shipper, carrier, shipper.final_fee + carrier.final_fee)
        return _FeePlan(preview, ZERO, "legacy.service_fee", None)
    return None


def _carrier_id(tx: StoreTransaction, load: Load) -> Optional[str]:
    """Carrier of the assigned truck, else of the load's latest trip unless it was cancelled."""
    if load.assigned_truck_id:
        truck = tx.get_truck(load.assigned_truck_id)
        if truck is not None:
            return truck.carrier_id
    trip = tx.get_trip_for_load(load.id)
    if trip is None or trip.status is TripStatus.CANCELLED:
        return None
    return trip.carrier_id


def wallet_failure(message: str) -> PreconditionFailed:
    """Error for a party that cannot cover its fee: short balance or no wallet."""
    if "Insufficient" in message:
        return InsufficientBalance(message)
    return WalletNotFound(message)


def _check_wallets(tx: StoreTransaction, load: Load, carrier_id: Optional[str],
                   plan: Optional[_FeePlan]) -> WalletCheck:
    if plan is None:
        return WalletCheck(valid=True)

    shipper_fee = plan.preview.shipper.final_fee
    carrier_fee = plan.preview.carrier.final_fee
    shipper_wallet = tx.find_wallet(load.shipper_id, AccountType.SHIPPER_WALLET)
    carrier_wallet = tx.find_wallet(carrier_id, AccountType.CARRIER_WALLET)
    errors: List[str] = []

    for party, wallet, fee in (("shipper", shipper_wallet, shipper_fee),
                               ("carrier", carrier_wallet, carrier_fee)):
        if fee <= ZERO:
            continue
        if wallet is None:
            errors.append(f"{party.capitalize()} wallet not found")
        elif wallet.balance < fee:
            errors.append(
                f"Insufficient {party} balance for service fee: required "
                f"{format_money(fee, tx.currency)}, available {format_money(wallet.balance, tx.currency)}"
            )

    return WalletCheck(
        valid=not errors,
        shipper_fee=shipper_fee,
        carrier_fee=carrier_fee,
        shipper_balance=shipper_wallet.balance if shipper_wallet else None,
        carrier_balance=carrier_wallet.balance if carrier_wallet else None,
        errors=tuple(errors),
    )


# ============================================================================
# DEDUCTION
# ============================================================================

def _deduct_service_fee(tx: StoreTransaction, load_id: str,
                        actor_user_id: Optional[str] = None) -> FeeOpResult:
    """Deduction inside an existing unit of work. Used by the status write path."""
    load = tx.get_load(load_id)
    if load is None:
        return FeeOpResult(False, error="Load not found")

    prior = tx.find_event(load_id, EVENT_SERVICE_FEE_DEDUCTED)
    if prior is not None:
        return FeeOpResult(
            True,
            shipper_fee=load.shipper_service_fee,
            carrier_fee=load.carrier_service_fee,
            total_platform_fee=load.service_fee,
            transaction_id=prior.payload.get("transaction_id"),
            idempotent=True,
            journal_entry_ids=tuple(prior.payload.get("journal_entry_ids", ())),
        )

    plan = _fee_plan(tx, load)
    if plan is None:
        tx.update_load(
            load_id,
            shipper_fee_status=FeeStatus.WAIVED,
            carrier_fee_status=FeeStatus.WAIVED,
            service_fee_status=FeeStatus.WAIVED,
        )
        tx.record_event(load_id, EVENT_SERVICE_FEE_WAIVED,
                        {"reason": "no corridor"}, actor_user_id)
        return FeeOpResult(False, error="No matching corridor found - service fees waived", waived=True)

    carrier_id = _carrier_id(tx, load)
    check = _check_wallets(tx, load, carrier_id, plan)
    if not check.valid:
        return FeeOpResult(
            False,
            shipper_fee=check.shipper_fee,
            carrier_fee=check.carrier_fee,
            total_platform_fee=plan.preview.total_platform_fee,
            error="; ".join(check.errors),
        )

    platform = tx.platform_wallet()
    entries = []
    for party, organization_id, account_type, fee in (
        ("shipper", load.shipper_id, AccountType.SHIPPER_WALLET, check.shipper_fee),
        ("carrier", carrier_id, AccountType.CARRIER_WALLET, check.carrier_fee),
    ):
        if fee <= ZERO:
            continue
        wallet = tx.find_wallet(organization_id, account_type)
        entries.append(tx.create_journal_entry(
            TransactionType.SERVICE_FEE,
            [(wallet.id, -fee), (platform.id, fee)],
            load_id=load_id,
            description=f"{party.capitalize()} service fee for load {load_id} ({format_money(fee, tx.currency)})",
            metadata={
                "party": party,
                "corridor_id": plan.corridor_id,
                "distance_km": plan.distance_km,
                "distance_source": plan.distance_source,
            },
        ))

    entry_ids = tuple(e.id for e in entries)
    transaction_id = entry_ids[0] if entry_ids else None
    tx.update_load(
        load_id,
        shipper_service_fee=check.shipper_fee,
        carrier_service_fee=check.carrier_fee,
        service_fee=plan.preview.total_platform_fee,
        shipper_fee_status=FeeStatus.DEDUCTED,
        carrier_fee_status=FeeStatus.DEDUCTED,
        service_fee_status=FeeStatus.DEDUCTED,
        service_fee_deducted_at=tx.now(),
    )
    tx.record_event(load_id, EVENT_SERVICE_FEE_DEDUCTED, {
        "transaction_id": transaction_id,
        "journal_entry_ids": entry_ids,
        "shipper_fee": check.shipper_fee,
        "carrier_fee": check.carrier_fee,
        "total_platform_fee": plan.preview.total_platform_fee,
        "carrier_id": carrier_id,
    }, actor_user_id)

    return FeeOpResult(
        True,
        shipper_fee=check.shipper_fee,
        carrier_fee=check.carrier_fee,
        total_platform_fee=plan.preview.total_platform_fee,
        transaction_id=transaction_id,
        journal_entry_ids=entry_ids,
        distance_km=plan.distance_km,
        distance_source=plan.distance_source,
    )


def deduct_service_fee(
    store: FreightStore,
    load_id: str,
    actor: Optional[Actor] = None,
    notifications: Optional[NotificationDispatcher] = None,
) -> FeeOpResult:
    """
    Charge a load's service fees to the shipper and carrier wallets.

    Runs as one transaction: fee calculation, wallet checks, one journal entry
    per charged party, fee status update and the SERVICE_FEE_DEDUCTED event.
    Safe to call repeatedly: after the first success it returns the recorded
    amounts with idempotent=True and writes nothing.

    Args:
        store: Persistence boundary.
        load_id: Load to charge.
        actor: Who triggered the deduction (recorded on the event).
        notifications: Optional dispatcher for fire-and-forget notices.

    Returns:
        FeeOpResult. success=False with error for missing wallets, missing fee
        configuration or insufficient balance.

    Raises:
        ConflictError: A concurrent deduction for the same load won the race.
        InfrastructureError: The store is unavailable.
    """
    actor_user_id = actor.user_id if actor else None
    try:
        result = store.run_in_transaction(lambda tx: _deduct_service_fee(tx, load_id, actor_user_id))
    except ConstraintViolation as exc:
        logger.warning("service_fee_conflict", load_id=load_id, constraint=exc.constraint)
        raise ConflictError(
            f"Service fee for load {load_id} was processed concurrently, please retry"
        ) from exc

    log_fee_result(load_id, result)
    if result.success and not result.idempotent:
        load = store.get_load(load_id)
        dispatch(notifications, load.shipper_id, SERVICE_FEE_DEDUCTED,
                 load_id=load_id, amount=str(result.shipper_fee))
    return result


def log_fee_result(load_id: str, result: FeeOpResult) -> None:
    if result.idempotent:
        logger.info("service_fee_already_deducted", load_id=load_id)
    elif result.success:
        logger.info("service_fee_deducted", load_id=load_id,
                    shipper_fee=str(result.shipper_fee), carrier_fee=str(result.carrier_fee),
                    total_platform_fee=str(result.total_platform_fee),
                    transaction_id=result.transaction_id)
    else:
        logger.warning("service_fee_not_deducted", load_id=load_id, error=result.error)


# ============================================================================
# REFUND
# ============================================================================

def _refund_service_fee(tx: StoreTransaction, load_id: str,
                        actor_user_id: Optional[str] = None) -> RefundResult:
    """Refund inside an existing unit of work: reverse every SERVICE_FEE entry of the load."""
    load = tx.get_load(load_id)
    if load is None:
        return RefundResult(False, error="Load not found")

    prior = tx.find_event(load_id, EVENT_SERVICE_FEE_REFUNDED)
    if prior is not None:
        return RefundResult(
            True,
            service_fee=prior.payload.get("service_fee", ZERO),
            transaction_id=prior.payload.get("transaction_id"),
            idempotent=True,
            shipper_refund=prior.payload.get("shipper_refund", ZERO),
            carrier_refund=prior.payload.get("carrier_refund", ZERO),
        )

    fee_entries = [
        e for e in tx.journal_entries(load_id)
        if e.transaction_type is TransactionType.SERVICE_FEE
    ]
    if load.service_fee_status is not FeeStatus.DEDUCTED or not fee_entries:
        return RefundResult(False, error="No fee to refund")

    refunded: Dict[str, Decimal] = {"shipper": ZERO, "carrier": ZERO}
    refunds = []
    for entry in fee_entries:
        amount = entry.amount_for(PLATFORM_ACCOUNT)
        party = entry.metadata.get("party", "shipper")
        refunds.append(tx.create_journal_entry(
            TransactionType.REFUND,
            [(line.account_id, -line.amount) for line in entry.lines],
            load_id=load_id,
            description=f"Refund of {party} service fee for load {load_id} ({format_money(amount, tx.currency)})",
            metadata={"party": party, "reverses": entry.id},
        ))
        refunded[party] += amount

    total = refunded["shipper"] + refunded["carrier"]
    changes = {
        "service_fee_status": FeeStatus.REFUNDED,
        "service_fee_refunded_at": tx.now(),
    }
    if refunded["shipper"] > ZERO:
        changes["shipper_fee_status"] = FeeStatus.REFUNDED
    if refunded["carrier"] > ZERO:
        changes["carrier_fee_status"] = FeeStatus.REFUNDED
    tx.update_load(load_id, **changes)

    transaction_id = refunds[0].id
    tx.record_event(load_id, EVENT_SERVICE_FEE_REFUNDED, {
        "transaction_id": transaction_id,
        "journal_entry_ids": tuple(r.id for r in refunds),
        "service_fee": total,
        "shipper_refund": refunded["shipper"],
        "carrier_refund": refunded["carrier"],
    }, actor_user_id)

    return RefundResult(
        True,
        service_fee=total,
        transaction_id=transaction_id,
        shipper_refund=refunded["shipper"],
        carrier_refund=refunded["carrier"],
    )


def refund_service_fee(
    store: FreightStore,
    load_id: str,
    actor: Optional[Actor] = None,
    notifications: Optional[NotificationDispatcher] = None,
) -> RefundResult:
    """
    Return deducted service fees to the wallets they were charged to.

    Guarded like deduction: a second call is an idempotent no-op.

    Returns:
        RefundResult. success=False with "No fee to refund" when nothing was deducted.
    """
    actor_user_id = actor.user_id if actor else None
    try:
        result = store.run_in_transaction(lambda tx: _refund_service_fee(tx, load_id, actor_user_id))
    except ConstraintViolation as exc:
        logger.warning("service_fee_refund_conflict", load_id=load_id, constraint=exc.constraint)
        raise ConflictError(
            f"Service fee refund for load {load_id} was processed concurrently, please retry"
        ) from exc

    log_refund_result(load_id, result)
    if result.success and not result.idempotent:
        load = store.get_load(load_id)
        dispatch(notifications, load.shipper_id, SERVICE_FEE_REFUNDED,
                 load_id=load_id, amount=str(result.shipper_refund))
    return result


def log_refund_result(load_id: str, result: RefundResult) -> None:
    if result.idempotent:
        logger.info("service_fee_already_refunded", load_id=load_id)
    elif result.success:
        logger.info("service_fee_refunded", load_id=load_id,
                    service_fee=str(result.service_fee), transaction_id=result.transaction_id)
    else:
        logger.info("service_fee_not_refunded", load_id=load_id, error=result.error)


# ============================================================================
# PRE-ASSIGNMENT CHECK
# ============================================================================

def _validate_wallet_balances(tx: StoreTransaction, load: Load,
                              carrier_id: Optional[str] = None) -> WalletCheck:
    return _check_wallets(tx, load, carrier_id or _carrier_id(tx, load), _fee_plan(tx, load))


def validate_wallet_balances_for_trip(
    store: FreightStore,
    load_id: str,
    carrier_id: Optional[str] = None,
) -> WalletCheck:
    """
    Check that shipper and carrier can cover the load's service fees.

    Args:
        carrier_id: Carrier organization to check; defaults to the owner of the
            load's assigned truck, then to the carrier of its current trip.

    Raises:
        NotFound: If the load does not exist.
    """
    tx = store.read()
    load = tx.get_load(load_id)
    if load is None:
        raise NotFound(f"Load {load_id} not found")
    return _validate_wallet_balances(tx, load, carrier_id)
