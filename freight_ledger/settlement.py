"""
settlement.py - Settlement Orchestrator

Post-delivery processing for a load:

    submit_pod -> verify_pod -> process_settlement

process_settlement computes the shipper and carrier commissions on the load's
fare, moves them to platform revenue and marks the load PAID. Everything
happens in one unit of work, so a failure at any step leaves no partial
commission behind.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple

import structlog

from .core import (
    Actor, Load,
    AccountType, LoadStatus, Role, SettlementStatus, TransactionType,
    EVENT_POD_SUBMITTED, EVENT_POD_VERIFIED, EVENT_SETTLEMENT_PROCESSED,
    ConflictError, ConstraintViolation, Forbidden, InsufficientBalance, NotFound,
    PreconditionFailed, SettlementAlreadyProcessed, SettlementPreconditionFailed,
    WalletNotFound,
)
from .fees import CommissionBreakdown, calculate_commission_breakdown
from .money import ZERO, format_money, is_positive_finite, round_money
from .notifications import (
    NotificationDispatcher, dispatch,
    COMMISSION_DEDUCTED, POD_SUBMITTED, POD_VERIFIED, SETTLEMENT_COMPLETE,
)
from .store import FreightStore, StoreTransaction


logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PodResult:
    load: Load
    idempotent: bool = False


def _assigned_carrier(tx: StoreTransaction, load: Load) -> Optional[str]:
    if not load.assigned_truck_id:
        return None
    truck = tx.get_truck(load.assigned_truck_id)
    return truck.carrier_id if truck else None


# ============================================================================
# PROOF OF DELIVERY
# ============================================================================

def submit_pod(store: FreightStore, load_id: str, actor: Actor,
               notifications: Optional[NotificationDispatcher] = None) -> PodResult:
    """
    Mark proof of delivery as submitted for a DELIVERED load.

    Only the carrier owning the assigned truck (or a dispatcher/admin) may submit.
    A lost race with a concurrent update raises ConflictError.
    """
    def work(tx: StoreTransaction) -> Tuple[PodResult, Optional[str]]:
        load = tx.get_load(load_id)
        if load is None:
            raise NotFound(f"Load {load_id} not found")
        if load.pod_submitted:
            return PodResult(load, idempotent=True), None
        if load.status is not LoadStatus.DELIVERED:
            raise PreconditionFailed(
                f"Proof of delivery can only be submitted for DELIVERED loads, current status {load.status.value}"
            )
        carrier_id = _assigned_carrier(tx, load)
        if not actor.is_privileged and (actor.role is not Role.CARRIER
                                        or carrier_id != actor.organization_id):
            raise Forbidden("Only the assigned carrier can submit proof of delivery")

        updated = tx.update_load(load_id, pod_submitted=True, pod_submitted_at=tx.now())
        tx.record_event(load_id, EVENT_POD_SUBMITTED, {"carrier_id": carrier_id}, actor.user_id)
        return PodResult(updated), carrier_id

    try:
        result, _ = store.run_in_transaction(work)
    except ConstraintViolation as exc:
        logger.warning("pod_conflict", load_id=load_id, constraint=exc.constraint)
        raise ConflictError(f"Proof of delivery for load {load_id} was updated concurrently, please retry") from exc
    if not result.idempotent:
        logger.info("pod_submitted", load_id=load_id, submitted_by=actor.user_id)
        dispatch(notifications, result.load.shipper_id, POD_SUBMITTED, load_id=load_id)
    return result


def verify_pod(store: FreightStore, load_id: str, actor: Actor,
               notifications: Optional[NotificationDispatcher] = None) -> PodResult:
    """
    Confirm a submitted proof of delivery.

    Only the shipper owning the load (or a dispatcher/admin) may verify.
    """
    def work(tx: StoreTransaction) -> Tuple[PodResult, Optional[str]]:
        load = tx.get_load(load_id)
        if load is None:
            raise NotFound(f"Load {load_id} not found")
        if load.pod_verified:
            return PodResult(load, idempotent=True), None
        if not load.pod_submitted:
            raise PreconditionFailed("Proof of delivery has not been submitted")
        if not actor.is_privileged and (actor.role is not Role.SHIPPER
                                        or load.shipper_id != actor.organization_id):
            raise Forbidden("Only the load's shipper can verify proof of delivery")

        updated = tx.update_load(load_id, pod_verified=True, pod_verified_at=tx.now())
        tx.record_event(load_id, EVENT_POD_VERIFIED, {}, actor.user_id)
        return PodResult(updated), _assigned_carrier(tx, load)

    try:
        result, carrier_id = store.run_in_transaction(work)
    except ConstraintViolation as exc:
        logger.warning("pod_conflict", load_id=load_id, constraint=exc.constraint)
        raise ConflictError(f"Proof of delivery for load {load_id} was updated concurrently, please retry") from exc
    if not result.idempotent:
        logger.info("pod_verified", load_id=load_id, verified_by=actor.user_id)
        dispatch(notifications, carrier_id, POD_VERIFIED, load_id=load_id)
    return result


# ============================================================================
# SETTLEMENT
# ============================================================================

def _process_settlement(tx: StoreTransaction, load_id: str,
                        actor_user_id: Optional[str]) -> Tuple[CommissionBreakdown, Load, str]:
    load = tx.get_load(load_id)
    if load is None:
        raise NotFound(f"Load {load_id} not found")

    # Already-settled is checked first so a re-run reports exactly that.
    if (load.settlement_status is SettlementStatus.PAID
            or tx.has_event(load_id, EVENT_SETTLEMENT_PROCESSED)):
        raise SettlementAlreadyProcessed("Settlement already processed")
    if load.status is not LoadStatus.DELIVERED:
        raise SettlementPreconditionFailed(
            f"Load must be DELIVERED to settle, current status {load.status.value}"
        )
    if not load.pod_submitted:
        raise SettlementPreconditionFailed("Proof of delivery has not been submitted")
    if not load.pod_verified:
        raise SettlementPreconditionFailed("Proof of delivery has not been verified")

    carrier_id = _assigned_carrier(tx, load)
    if carrier_id is None:
        raise SettlementPreconditionFailed("Load has no assigned carrier")
    fare = load.fare_amount
    if fare is None or not is_positive_finite(fare):
        raise SettlementPreconditionFailed("Load has no fare to settle")

    breakdown = calculate_commission_breakdown(fare, tx.commission_rates)
    platform = tx.platform_wallet()

    parties = (
        ("shipper", load.shipper_id, AccountType.SHIPPER_WALLET, breakdown.shipper_commission),
        ("carrier", carrier_id, AccountType.CARRIER_WALLET, breakdown.carrier_commission),
    )
    wallets = {}
    for party, organization_id, account_type, amount in parties:
        wallet = tx.find_wallet(organization_id, account_type)
        if wallet is None:
            raise WalletNotFound(f"{party.capitalize()} wallet not found")
        if wallet.balance < amount:
            raise InsufficientBalance(
                f"Insufficient {party} balance for commission: required "
                f"{format_money(amount, tx.currency)}, available {format_money(wallet.balance, tx.currency)}"
            )
        wallets[party] = wallet

    entry_ids = []
    for party, _, _, amount in parties:
        if amount <= ZERO:
            continue
        entry_ids.append(tx.create_journal_entry(
            TransactionType.COMMISSION,
            [(wallets[party].id, -amount), (platform.id, amount)],
            load_id=load_id,
            description=f"{party.capitalize()} commission for load {load_id} ({format_money(amount, tx.currency)})",
            metadata={"party": party, "fare": breakdown.total_fare},
        ).id)

    updated = tx.update_load(
        load_id,
        shipper_commission=breakdown.shipper_commission,
        carrier_commission=breakdown.carrier_commission,
        platform_commission=breakdown.platform_revenue,
        settlement_status=SettlementStatus.PAID,
        settled_at=tx.now(),
    )
    tx.record_event(load_id, EVENT_SETTLEMENT_PROCESSED, {
        "journal_entry_ids": tuple(entry_ids),
        "total_fare": breakdown.total_fare,
        "shipper_commission": breakdown.shipper_commission,
        "carrier_commission": breakdown.carrier_commission,
        "platform_revenue": breakdown.platform_revenue,
        "carrier_id": carrier_id,
    }, actor_user_id)
    return breakdown, updated, carrier_id


def process_settlement(
    store: FreightStore,
    load_id: str,
    actor: Optional[Actor] = None,
    notifications: Optional[NotificationDispatcher] = None,
) -> CommissionBreakdown:
    """
    Settle a delivered, POD-verified load.

    Runs as one transaction: precondition checks, commission calculation at
    the store's commission rates, one COMMISSION journal entry per party,
    the commission fields and PAID status on the load, and the
    SETTLEMENT_PROCESSED event. After commit both organizations are sent
    COMMISSION_DEDUCTED and SETTLEMENT_COMPLETE (the carrier's with its
    net amount).

    Returns:
        The CommissionBreakdown that was applied.

    Raises:
        NotFound: Load does not exist.
        SettlementAlreadyProcessed: The load was settled before.
        SettlementPreconditionFailed: Not DELIVERED, POD missing, no carrier or no fare.
        WalletNotFound / InsufficientBalance: A party cannot pay its commission.
        ConflictError: A concurrent settlement of the same load won the race.
    """
    actor_user_id = actor.user_id if actor else None
    try:
        breakdown, load, carrier_id = store.run_in_transaction(
            lambda tx: _process_settlement(tx, load_id, actor_user_id)
        )
    except ConstraintViolation as exc:
        logger.warning("settlement_conflict", load_id=load_id, constraint=exc.constraint)
        raise ConflictError(f"Settlement of load {load_id} conflicted with a concurrent update, please retry") from exc

    logger.info("settlement_processed", load_id=load_id,
                total_fare=str(breakdown.total_fare),
                shipper_commission=str(breakdown.shipper_commission),
                carrier_commission=str(breakdown.carrier_commission),
                platform_revenue=str(breakdown.platform_revenue))
    dispatch(notifications, load.shipper_id, COMMISSION_DEDUCTED,
             load_id=load_id, amount=str(breakdown.shipper_commission))
    dispatch(notifications, carrier_id, COMMISSION_DEDUCTED,
             load_id=load_id, amount=str(breakdown.carrier_commission))
    carrier_net = round_money(breakdown.total_fare - breakdown.carrier_commission)
    dispatch(notifications, load.shipper_id, SETTLEMENT_COMPLETE,
             load_id=load_id, amount=str(round_money(breakdown.total_fare)))
    dispatch(notifications, carrier_id, SETTLEMENT_COMPLETE,
             load_id=load_id, amount=str(carrier_net))
    return breakdown
