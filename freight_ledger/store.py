"""
store.py - Transactional persistence boundary

FreightStore is the in-process implementation of the persistence collaborator.
It is the only module that mutates state, ensuring controlled and auditable
changes.

Key responsibilities:
    - run_in_transaction(): every unit of work runs against a private snapshot
      and is published all-or-nothing at commit
    - Wallet balances move only through balanced journal entries
    - Data-layer constraints checked at commit (unique fee/settlement events,
      one active load per truck, non-negative wallets)
    - Audit: verify_double_entry() and verify_assignments()

Isolation:
    READ_COMMITTED units snapshot at start and publish their write set at commit.
    Journal deltas are re-applied to the current balances; a record written by
    the unit that another unit changed in the meantime fails the commit with
    ConstraintViolation("concurrent_update").
    SERIALIZABLE units additionally run one at a time, so a read-check-write
    sequence can never act on a stale read.
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import structlog

from .config import FreightSettings, get_settings
from .core import (
    # Records
    Load, Truck, Trip, Corridor, LoadRequest, Wallet, JournalLine, JournalEntry,
    WithdrawalRequest, LoadEvent,
    # Enums
    AccountType, RequestStatus, TransactionType,
    # Constants
    SYSTEM_ACCOUNT, TERMINAL_STATUSES, TRUCK_HOLDING_STATUSES, UNIQUE_EVENT_TYPES,
    # Exceptions
    ConstraintViolation, InfrastructureError, NotFound,
)
from .money import ZERO, round_money


logger = structlog.get_logger(__name__)

T = TypeVar("T")

PLATFORM_ACCOUNT = "platform_revenue"


class Isolation(Enum):
    READ_COMMITTED = "read_committed"
    SERIALIZABLE = "serializable"


# Record tables published by id at commit. Wallets, journal and events are
# handled separately.
_RECORD_TABLES: Dict[type, str] = {
    Load: "loads",
    Truck: "trucks",
    Trip: "trips",
    Corridor: "corridors",
    LoadRequest: "load_requests",
    WithdrawalRequest: "withdrawals",
}


@dataclass
class _Tables:
    loads: Dict[str, Load] = field(default_factory=dict)
    trucks: Dict[str, Truck] = field(default_factory=dict)
    trips: Dict[str, Trip] = field(default_factory=dict)
    corridors: Dict[str, Corridor] = field(default_factory=dict)
    load_requests: Dict[str, LoadRequest] = field(default_factory=dict)
    withdrawals: Dict[str, WithdrawalRequest] = field(default_factory=dict)
    wallets: Dict[str, Wallet] = field(default_factory=dict)
    journal: List[JournalEntry] = field(default_factory=list)
    events: List[LoadEvent] = field(default_factory=list)

    def copy(self) -> _Tables:
        """Shallow copy. Records are frozen, so sharing them is safe."""
        return _Tables(
            loads=dict(self.loads),
            trucks=dict(self.trucks),
            trips=dict(self.trips),
            corridors=dict(self.corridors),
            load_requests=dict(self.load_requests),
            withdrawals=dict(self.withdrawals),
            wallets=dict(self.wallets),
            journal=list(self.journal),
            events=list(self.events),
        )


# ============================================================================
# UNIT OF WORK
# ============================================================================

class StoreTransaction:
    """
    Handle given to a unit of work inside run_in_transaction().

    Reads see the snapshot plus this unit's own writes. Nothing is visible to
    other units until the store commits the write set.
    """

    def __init__(self, store: FreightStore, tables: _Tables, isolation: Isolation):
        self._store = store
        self._tables = tables
        self.isolation = isolation
        self._written: Dict[str, Dict[str, Any]] = {name: {} for name in _RECORD_TABLES.values()}
        # Version of each written record as first seen by this unit (None for inserts).
        self._base: Dict[Tuple[str, str], Any] = {}
        self._created_wallets: Dict[str, Wallet] = {}
        self._journal: List[JournalEntry] = []
        self._events: List[LoadEvent] = []

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return self._store.now()

    def next_id(self, prefix: str) -> str:
        return self._store.next_id(prefix)

    @property
    def commission_rates(self):
        return self._store.commission_rates

    @property
    def currency(self) -> str:
        return self._store.currency

    @property
    def min_bank_account_length(self) -> int:
        return self._store.min_bank_account_length

    def has_writes(self) -> bool:
        return bool(
            any(self._written.values()) or self._created_wallets
            or self._journal or self._events
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_load(self, load_id: str) -> Optional[Load]:
        return self._tables.loads.get(load_id)

    def get_truck(self, truck_id: str) -> Optional[Truck]:
        return self._tables.trucks.get(truck_id)

    def get_trip(self, trip_id: str) -> Optional[Trip]:
        return self._tables.trips.get(trip_id)

    def get_corridor(self, corridor_id: str) -> Optional[Corridor]:
        return self._tables.corridors.get(corridor_id)

    def get_load_request(self, request_id: str) -> Optional[LoadRequest]:
        return self._tables.load_requests.get(request_id)

    def get_withdrawal(self, request_id: str) -> Optional[WithdrawalRequest]:
        return self._tables.withdrawals.get(request_id)

    def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        return self._tables.wallets.get(wallet_id)

    def find_wallet(self, organization_id: Optional[str], account_type: AccountType) -> Optional[Wallet]:
        """Active wallet of one organization for one account type."""
        if not organization_id:
            return None
        for wallet in self._tables.wallets.values():
            if (wallet.organization_id == organization_id
                    and wallet.account_type is account_type and wallet.is_active):
                return wallet
        return None

    def platform_wallet(self) -> Wallet:
        return self._tables.wallets[PLATFORM_ACCOUNT]

    def get_trip_for_load(self, load_id: str) -> Optional[Trip]:
        """Most recently created trip of a load."""
        for trip in reversed(list(self._tables.trips.values())):
            if trip.load_id == load_id:
                return trip
        return None

    def list_load_requests(self, load_id: str, status: Optional[RequestStatus] = None) -> List[LoadRequest]:
        return [
            r for r in self._tables.load_requests.values()
            if r.load_id == load_id and (status is None or r.status is status)
        ]

    def list_withdrawals(self, account_id: str, status: Optional[RequestStatus] = None) -> List[WithdrawalRequest]:
        return [
            w for w in self._tables.withdrawals.values()
            if w.account_id == account_id and (status is None or w.status is status)
        ]

    def count_active_loads_for_truck(self, truck_id: str, exclude_load_id: Optional[str] = None) -> int:
        """Loads holding this truck that are not in a terminal status."""
        return sum(
            1 for load in self._tables.loads.values()
            if load.assigned_truck_id == truck_id
            and load.status not in TERMINAL_STATUSES
            and load.id != exclude_load_id
        )

    def find_event(self, load_id: str, event_type: str) -> Optional[LoadEvent]:
        for event in self._tables.events:
            if event.load_id == load_id and event.event_type == event_type:
                return event
        return None

    def has_event(self, load_id: str, event_type: str) -> bool:
        return self.find_event(load_id, event_type) is not None

    def events_for(self, load_id: str) -> List[LoadEvent]:
        return [e for e in self._tables.events if e.load_id == load_id]

    def journal_entries(self, load_id: Optional[str] = None) -> List[JournalEntry]:
        return [e for e in self._tables.journal if load_id is None or e.load_id == load_id]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, record: T) -> T:
        """Insert a new Load, Truck, Trip, Corridor, LoadRequest or WithdrawalRequest."""
        table_name = _RECORD_TABLES.get(type(record))
        if table_name is None:
            raise TypeError(f"Cannot insert {type(record).__name__}")
        table = getattr(self._tables, table_name)
        if record.id in table:
            raise ConstraintViolation(f"{table_name}_pkey", f"{table_name} {record.id} already exists")
        table[record.id] = record
        self._base.setdefault((table_name, record.id), None)
        self._written[table_name][record.id] = record
        return record

    def _update(self, table_name: str, record_id: str, changes: Dict[str, Any]):
        table = getattr(self._tables, table_name)
        if record_id not in table:
            raise NotFound(f"{table_name} {record_id} not found")
        self._base.setdefault((table_name, record_id), table[record_id])
        updated = replace(table[record_id], **changes)
        table[record_id] = updated
        self._written[table_name][record_id] = updated
        return updated

    def update_load(self, load_id: str, **changes: Any) -> Load:
        changes.setdefault("updated_at", self.now())
        return self._update("loads", load_id, changes)

    def update_truck(self, truck_id: str, **changes: Any) -> Truck:
        return self._update("trucks", truck_id, changes)

    def update_trip(self, trip_id: str, **changes: Any) -> Trip:
        return self._update("trips", trip_id, changes)

    def update_load_request(self, request_id: str, **changes: Any) -> LoadRequest:
        return self._update("load_requests", request_id, changes)

    def update_withdrawal(self, request_id: str, **changes: Any) -> WithdrawalRequest:
        return self._update("withdrawals", request_id, changes)

    def create_wallet(
        self,
        organization_id: str,
        account_type: AccountType,
        currency: Optional[str] = None,
    ) -> Wallet:
        """Open an empty wallet. Balances only ever start at zero."""
        if self.find_wallet(organization_id, account_type) is not None:
            raise ConstraintViolation(
                "wallet_org_type_unique",
                f"{account_type.value} already exists for organization {organization_id}",
            )
        wallet = Wallet(
            id=self.next_id("wallet"),
            organization_id=organization_id,
            account_type=account_type,
            balance=ZERO,
            currency=currency or self.currency,
        )
        self._tables.wallets[wallet.id] = wallet
        self._created_wallets[wallet.id] = wallet
        return wallet

    def create_journal_entry(
        self,
        transaction_type: TransactionType,
        lines: Sequence[Tuple[str, Decimal]],
        load_id: Optional[str] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> JournalEntry:
        """
        Append a balanced journal entry and apply it to the wallets it touches.

        Args:
            transaction_type: Business classification of the entry.
            lines: (account_id, signed amount) pairs; positive increases the balance.
            load_id: Load this entry belongs to, if any.

        Raises:
            NotFound: If an account does not exist.
            ValueError: If the lines do not sum to zero.
        """
        journal_lines = tuple(JournalLine(account_id, round_money(amount)) for account_id, amount in lines)
        for line in journal_lines:
            if line.account_id not in self._tables.wallets:
                raise NotFound(f"Account {line.account_id} not found")
        entry = JournalEntry(
            id=self.next_id("je"),
            transaction_type=transaction_type,
            lines=journal_lines,
            load_id=load_id,
            description=description,
            metadata=dict(metadata or {}),
            created_at=self.now(),
            sequence_number=self._store.next_sequence(),
        )
        _apply_entry(self._tables.wallets, entry)
        self._tables.journal.append(entry)
        self._journal.append(entry)
        return entry

    def record_event(
        self,
        load_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        actor_user_id: Optional[str] = None,
    ) -> LoadEvent:
        event = LoadEvent(
            id=self.next_id("evt"),
            load_id=load_id,
            event_type=event_type,
            payload=dict(payload or {}),
            actor_user_id=actor_user_id,
            created_at=self.now(),
            sequence_number=self._store.next_sequence(),
        )
        self._tables.events.append(event)
        self._events.append(event)
        return event


def _apply_entry(wallets: Dict[str, Wallet], entry: JournalEntry) -> None:
    for line in entry.lines:
        wallet = wallets.get(line.account_id)
        if wallet is None:
            raise ConstraintViolation("journal_account_fkey", f"Account {line.account_id} not found")
        wallets[line.account_id] = replace(wallet, balance=wallet.balance + line.amount)


# ============================================================================
# STORE
# ============================================================================

class FreightStore:
    """
    In-memory persistence for loads, trucks, trips, wallets and their audit trail.

    Thread Safety:
        run_in_transaction() may be called from several threads. Commits are
        serialized; SERIALIZABLE units are serialized end to end.

    Example:
        store = FreightStore("main")
        store.add(Load(id="load-1", shipper_id="shipper-org"))
        load = store.run_in_transaction(lambda tx: tx.update_load("load-1", status=LoadStatus.POSTED))
    """

    def __init__(
        self,
        name: str = "freight",
        settings: Optional[FreightSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Create a store.

        Args:
            name: Store identifier (appears in logs)
            settings: Currency and default commission rates (default: get_settings())
            clock: Source of timestamps (default: UTC wall clock)
        """
        settings = settings or get_settings()
        self.name = name
        self.currency = settings.currency
        self.commission_rates = settings.commission_rates()
        self.min_bank_account_length = settings.min_bank_account_length
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tables = _Tables()
        self._commit_lock = threading.RLock()
        self._serializable_lock = threading.Lock()
        self._id_lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._next_sequence = 0
        self.commit_count = 0
        # Set to False to simulate the transaction engine being down.
        self.available = True

        self._tables.wallets[SYSTEM_ACCOUNT] = Wallet(
            SYSTEM_ACCOUNT, None, AccountType.SYSTEM_CLEARING, currency=self.currency
        )
        self._tables.wallets[PLATFORM_ACCOUNT] = Wallet(
            PLATFORM_ACCOUNT, None, AccountType.PLATFORM_REVENUE, currency=self.currency
        )

    # ========================================================================
    # CONTEXT
    # ========================================================================

    def now(self) -> datetime:
        return self._clock()

    def next_id(self, prefix: str) -> str:
        with self._id_lock:
            self._counters[prefix] += 1
            return f"{prefix}_{self._counters[prefix]:06d}"

    def next_sequence(self) -> int:
        with self._id_lock:
            sequence = self._next_sequence
            self._next_sequence += 1
            return sequence

    # ========================================================================
    # TRANSACTIONS
    # ========================================================================

    def run_in_transaction(
        self,
        fn: Callable[[StoreTransaction], T],
        isolation: Isolation = Isolation.READ_COMMITTED,
    ) -> T:
        """
        Run fn as one atomic unit of work.

        If fn raises, nothing it wrote becomes visible and the exception
        propagates unchanged.

        Args:
            fn: Callable receiving a StoreTransaction.
            isolation: READ_COMMITTED (default) or SERIALIZABLE.

        Returns:
            Whatever fn returns.

        Raises:
            InfrastructureError: If the store is unavailable.
            ConstraintViolation: If the commit would break a data-layer constraint.
        """
        if isolation is Isolation.SERIALIZABLE:
            with self._serializable_lock:
                return self._run(fn, isolation)
        return self._run(fn, isolation)

    def _run(self, fn: Callable[[StoreTransaction], T], isolation: Isolation) -> T:
        self._ensure_available()
        with self._commit_lock:
            snapshot = self._tables.copy()
        tx = StoreTransaction(self, snapshot, isolation)
        result = fn(tx)
        if tx.has_writes():
            self._commit(tx)
        return result

    def _ensure_available(self) -> None:
        if not self.available:
            raise InfrastructureError(f"Transaction engine for store '{self.name}' is unavailable")

    def _commit(self, tx: StoreTransaction) -> None:
        """Publish a unit's write set after checking constraints against current state."""
        with self._commit_lock:
            self._ensure_available()
            staged = self._tables.copy()

            for (table_name, record_id), base in tx._base.items():
                if getattr(staged, table_name).get(record_id) is not base:
                    raise ConstraintViolation(
                        "concurrent_update",
                        f"{table_name} {record_id} was changed by a concurrent transaction",
                    )
            for table_name, records in tx._written.items():
                getattr(staged, table_name).update(records)

            for wallet in tx._created_wallets.values():
                if wallet.id in staged.wallets or any(
                    w.organization_id == wallet.organization_id and w.account_type is wallet.account_type
                    for w in staged.wallets.values()
                ):
                    raise ConstraintViolation(
                        "wallet_org_type_unique",
                        f"{wallet.account_type.value} already exists for organization {wallet.organization_id}",
                    )
                staged.wallets[wallet.id] = wallet

            for entry in tx._journal:
                _apply_entry(staged.wallets, entry)
                staged.journal.append(entry)

            self._check_unique_events(staged.events, tx._events)
            staged.events.extend(tx._events)

            self._check_truck_assignments(staged, tx)
            self._check_balances(staged, tx)

            self._tables = staged
            self.commit_count += 1
            logger.debug("transaction_committed", store=self.name, isolation=tx.isolation.value,
                         journal_entries=len(tx._journal), events=len(tx._events))

    @staticmethod
    def _check_unique_events(existing: List[LoadEvent], new_events: List[LoadEvent]) -> None:
        seen = {
            (e.load_id, e.event_type) for e in existing
            if e.event_type in UNIQUE_EVENT_TYPES
        }
        for event in new_events:
            if event.event_type not in UNIQUE_EVENT_TYPES:
                continue
            key = (event.load_id, event.event_type)
            if key in seen:
                raise ConstraintViolation(
                    "load_event_unique",
                    f"{event.event_type} already recorded for load {event.load_id}",
                )
            seen.add(key)

    @staticmethod
    def _check_truck_assignments(staged: _Tables, tx: StoreTransaction) -> None:
        truck_ids = {
            load.assigned_truck_id for load in tx._written["loads"].values()
            if load.assigned_truck_id
        }
        for truck_id in truck_ids:
            active = [
                load.id for load in staged.loads.values()
                if load.assigned_truck_id == truck_id and load.status not in TERMINAL_STATUSES
            ]
            if len(active) > 1:
                raise ConstraintViolation(
                    "truck_active_assignment",
                    f"Truck {truck_id} is assigned to more than one active load: {sorted(active)}",
                )

    @staticmethod
    def _check_balances(staged: _Tables, tx: StoreTransaction) -> None:
        touched = {line.account_id for entry in tx._journal for line in entry.lines}
        for account_id in sorted(touched):
            wallet = staged.wallets[account_id]
            if wallet.account_type is AccountType.SYSTEM_CLEARING:
                continue
            if wallet.balance < ZERO:
                raise ConstraintViolation(
                    "wallet_balance_non_negative",
                    f"Account {account_id} would go negative: {wallet.balance}",
                )

    # ========================================================================
    # READ-ONLY ACCESS
    # ========================================================================

    def read(self) -> StoreTransaction:
        """A throwaway unit of work over the current state. Its writes are never committed."""
        with self._commit_lock:
            return StoreTransaction(self, self._tables.copy(), Isolation.READ_COMMITTED)

    def snapshot_state(self) -> _Tables:
        """Copy of the committed state, for before/after comparisons."""
        with self._commit_lock:
            return self._tables.copy()

    def get_load(self, load_id: str) -> Optional[Load]:
        return self.read().get_load(load_id)

    def get_truck(self, truck_id: str) -> Optional[Truck]:
        return self.read().get_truck(truck_id)

    def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        return self.read().get_wallet(wallet_id)

    def get_load_request(self, request_id: str) -> Optional[LoadRequest]:
        return self.read().get_load_request(request_id)

    def get_withdrawal(self, request_id: str) -> Optional[WithdrawalRequest]:
        return self.read().get_withdrawal(request_id)

    def get_trip_for_load(self, load_id: str) -> Optional[Trip]:
        return self.read().get_trip_for_load(load_id)

    def find_wallet(self, organization_id: str, account_type: AccountType) -> Optional[Wallet]:
        return self.read().find_wallet(organization_id, account_type)

    def balance(self, wallet_id: str) -> Decimal:
        wallet = self.get_wallet(wallet_id)
        if wallet is None:
            raise NotFound(f"Account {wallet_id} not found")
        return wallet.balance

    def events(self, load_id: Optional[str] = None) -> List[LoadEvent]:
        with self._commit_lock:
            return [e for e in self._tables.events if load_id is None or e.load_id == load_id]

    def journal_entries(self, load_id: Optional[str] = None) -> List[JournalEntry]:
        return self.read().journal_entries(load_id)

    # ========================================================================
    # SETUP
    # ========================================================================

    def add(self, *records: Any) -> None:
        """Insert reference and seed records (loads, trucks, corridors, requests)."""
        def work(tx: StoreTransaction) -> None:
            for record in records:
                tx.insert(record)
        self.run_in_transaction(work)

    def open_wallet(self, organization_id: str, account_type: AccountType) -> Wallet:
        return self.run_in_transaction(lambda tx: tx.create_wallet(organization_id, account_type))

    # ========================================================================
    # AUDIT
    # ========================================================================

    def verify_double_entry(self) -> Dict[str, Any]:
        """
        Verify the accounting invariants of the committed state.

        1. All balances (system clearing included) sum to zero.
        2. Every wallet balance equals the sum of its journal line effects.

        Returns:
            Dict with keys 'valid', 'total' and 'discrepancies'.
        """
        tables = self.snapshot_state()
        reconstructed: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for entry in tables.journal:
            for line in entry.lines:
                reconstructed[line.account_id] += line.amount

        discrepancies = []
        for wallet_id in sorted(tables.wallets):
            wallet = tables.wallets[wallet_id]
            expected = reconstructed.get(wallet_id, ZERO)
            if wallet.balance != expected:
                discrepancies.append({
                    'account': wallet_id,
                    'balance': wallet.balance,
                    'journal_total': expected,
                    'difference': wallet.balance - expected,
                })

        total = sum((tables.wallets[w].balance for w in sorted(tables.wallets)), ZERO)
        if total != ZERO:
            discrepancies.append({'account': '*', 'balance': total, 'error': 'balances do not sum to zero'})

        return {
            'valid': len(discrepancies) == 0,
            'total': total,
            'discrepancies': discrepancies,
        }

    def verify_assignments(self) -> Dict[str, Any]:
        """
        Verify truck assignment invariants of the committed state.

        - A load holds a truck only in ASSIGNED, PICKUP_PENDING, IN_TRANSIT,
          DELIVERED or EXCEPTION.
        - A terminal load holds no truck and has tracking disabled.
        - A truck holds at most one non-terminal load.
        """
        tables = self.snapshot_state()
        violations = []
        per_truck: Dict[str, List[str]] = defaultdict(list)
        for load in tables.loads.values():
            if load.assigned_truck_id and load.status not in TRUCK_HOLDING_STATUSES:
                violations.append(f"{load.id}: truck {load.assigned_truck_id} held in {load.status.value}")
            if load.status in TERMINAL_STATUSES and load.tracking_enabled:
                violations.append(f"{load.id}: tracking enabled in {load.status.value}")
            if load.assigned_truck_id and load.status not in TERMINAL_STATUSES:
                per_truck[load.assigned_truck_id].append(load.id)
        for truck_id, load_ids in sorted(per_truck.items()):
            if len(load_ids) > 1:
                violations.append(f"truck {truck_id}: active on {sorted(load_ids)}")
        return {'valid': len(violations) == 0, 'violations': violations}
