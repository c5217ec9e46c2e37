"""
wallets.py - Deposits and withdrawals

Money entering or leaving the platform moves between an organization wallet
and the system clearing account. Withdrawals are two-step: a request reserves
funds (pending requests count against the available balance) and an admin
approval posts the journal entry.

Withdrawal requests run SERIALIZABLE so two concurrent requests can never both
pass the balance check against the same funds.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import structlog

from .core import (
    Actor, JournalEntry, Wallet, WithdrawalRequest,
    AccountType, RequestStatus, Role, TransactionType,
    SYSTEM_ACCOUNT,
    ConflictError, ConstraintViolation, Forbidden, InsufficientBalance,
    NotFound, RequestAlreadyResolved, ValidationError, WalletNotFound,
)
from .money import Numeric, ZERO, format_money, is_positive_finite, round_money, sum_money, to_decimal
from .notifications import NotificationDispatcher, dispatch, WITHDRAWAL_REQUESTED
from .store import FreightStore, Isolation, StoreTransaction


logger = structlog.get_logger(__name__)

_WALLET_FOR_ROLE = {
    Role.SHIPPER: AccountType.SHIPPER_WALLET,
    Role.CARRIER: AccountType.CARRIER_WALLET,
}


@dataclass(frozen=True, slots=True)
class WithdrawalDecision:
    request: WithdrawalRequest
    idempotent: bool = False


def _positive_amount(amount: Numeric) -> Decimal:
    try:
        value = to_decimal(amount)
    except ValueError as exc:
        raise ValidationError(f"Invalid amount: {amount!r}") from exc
    if not is_positive_finite(value):
        raise ValidationError("Amount must be a positive number")
    value = round_money(value)
    if value <= ZERO:
        raise ValidationError("Amount must be at least 0.01")
    return value


def available_balance(tx: StoreTransaction, wallet: Wallet) -> Decimal:
    """Balance minus funds reserved by pending withdrawal requests."""
    pending = sum_money(w.amount for w in tx.list_withdrawals(wallet.id, RequestStatus.PENDING))
    return wallet.balance - pending


# ============================================================================
# DEPOSITS
# ============================================================================

def deposit(store: FreightStore, wallet_id: str, amount: Numeric,
            description: str = "") -> JournalEntry:
    """
    Credit a wallet with external funds (system clearing -> wallet).

    Raises:
        ValidationError: If amount is not positive.
        WalletNotFound: If the wallet does not exist.
    """
    value = _positive_amount(amount)

    def work(tx: StoreTransaction) -> JournalEntry:
        wallet = tx.get_wallet(wallet_id)
        if wallet is None or wallet.account_type not in _WALLET_FOR_ROLE.values():
            raise WalletNotFound(f"Wallet {wallet_id} not found")
        return tx.create_journal_entry(
            TransactionType.DEPOSIT,
            [(SYSTEM_ACCOUNT, -value), (wallet_id, value)],
            description=description or f"Deposit {format_money(value, tx.currency)}",
        )

    entry = store.run_in_transaction(work)
    logger.info("wallet_deposit", wallet_id=wallet_id, amount=str(value), journal_entry_id=entry.id)
    return entry


# ============================================================================
# WITHDRAWALS
# ============================================================================

def request_withdrawal(
    store: FreightStore,
    actor: Actor,
    amount: Numeric,
    bank_name: str,
    bank_account: str,
    account_holder: str,
    notifications: Optional[NotificationDispatcher] = None,
) -> WithdrawalRequest:
    """
    Ask to pay out funds from the actor organization's wallet.

    The check-then-insert runs SERIALIZABLE: of two concurrent requests that
    each fit the balance but not together, exactly one succeeds.

    Raises:
        ValidationError: Bad amount, bank details, or no organization.
        Forbidden: Role has no wallet (dispatchers, admins).
        WalletNotFound: Organization has no wallet of the role's type.
        InsufficientBalance: Amount exceeds the available balance.
    """
    value = _positive_amount(amount)
    if not actor.organization_id:
        raise ValidationError("User must belong to an organization to withdraw")
    account_type = _WALLET_FOR_ROLE.get(actor.role)
    if account_type is None:
        raise Forbidden(f"{actor.role.value} cannot request withdrawals")
    if not bank_name or not bank_name.strip():
        raise ValidationError("Bank name is required")
    if not account_holder or not account_holder.strip():
        raise ValidationError("Account holder is required")
    if not bank_account or len(bank_account.strip()) < store.min_bank_account_length:
        raise ValidationError(
            f"Bank account must be at least {store.min_bank_account_length} characters"
        )

    def work(tx: StoreTransaction) -> WithdrawalRequest:
        wallet = tx.find_wallet(actor.organization_id, account_type)
        if wallet is None:
            raise WalletNotFound("Wallet not found")
        available = available_balance(tx, wallet)
        if available < value:
            raise InsufficientBalance(
                f"Insufficient balance: requested {format_money(value, tx.currency)}, "
                f"available {format_money(available, tx.currency)}"
            )
        return tx.insert(WithdrawalRequest(
            id=tx.next_id("wd"),
            account_id=wallet.id,
            organization_id=actor.organization_id,
            amount=value,
            bank_name=bank_name.strip(),
            bank_account=bank_account.strip(),
            account_holder=account_holder.strip(),
            requested_by=actor.user_id,
            created_at=tx.now(),
        ))

    request = store.run_in_transaction(work, isolation=Isolation.SERIALIZABLE)
    logger.info("withdrawal_requested", request_id=request.id,
                organization_id=actor.organization_id, amount=str(value))
    dispatch(notifications, actor.organization_id, WITHDRAWAL_REQUESTED,
             request_id=request.id, amount=str(value))
    return request


def _resolve_withdrawal(store: FreightStore, request_id: str, actor: Actor, approve: bool) -> WithdrawalDecision:
    if actor.role not in (Role.ADMIN, Role.SUPER_ADMIN):
        raise Forbidden("Only admins can resolve withdrawal requests")
    target = RequestStatus.APPROVED if approve else RequestStatus.REJECTED

    def work(tx: StoreTransaction) -> WithdrawalDecision:
        request = tx.get_withdrawal(request_id)
        if request is None:
            raise NotFound(f"Withdrawal request {request_id} not found")
        if request.status is target:
            return WithdrawalDecision(request, idempotent=True)
        if request.status is not RequestStatus.PENDING:
            raise RequestAlreadyResolved(
                f"Withdrawal request {request_id} is already {request.status.value}"
            )

        entry_id = None
        if approve:
            wallet = tx.get_wallet(request.account_id)
            if wallet is None:
                raise WalletNotFound(f"Wallet {request.account_id} not found")
            if wallet.balance < request.amount:
                raise InsufficientBalance(
                    f"Insufficient balance: requested {format_money(request.amount, tx.currency)}, "
                    f"available {format_money(wallet.balance, tx.currency)}"
                )
            entry_id = tx.create_journal_entry(
                TransactionType.WITHDRAWAL,
                [(wallet.id, -request.amount), (SYSTEM_ACCOUNT, request.amount)],
                description=f"Withdrawal {request_id} to {request.bank_name}",
                metadata={"withdrawal_id": request_id},
            ).id

        updated = tx.update_withdrawal(
            request_id, status=target, resolved_at=tx.now(), journal_entry_id=entry_id,
        )
        return WithdrawalDecision(updated)

    try:
        decision = store.run_in_transaction(work, isolation=Isolation.SERIALIZABLE)
    except ConstraintViolation as exc:
        raise ConflictError(f"Withdrawal request {request_id} conflicted with a concurrent update") from exc

    if not decision.idempotent:
        logger.info("withdrawal_resolved", request_id=request_id,
                    status=target.value, resolved_by=actor.user_id)
    return decision


def approve_withdrawal(store: FreightStore, request_id: str, actor: Actor) -> WithdrawalDecision:
    """Pay out a pending withdrawal (wallet -> system clearing). Admin only."""
    return _resolve_withdrawal(store, request_id, actor, approve=True)


def reject_withdrawal(store: FreightStore, request_id: str, actor: Actor) -> WithdrawalDecision:
    """Release a pending withdrawal's reserved funds. Admin only."""
    return _resolve_withdrawal(store, request_id, actor, approve=False)
