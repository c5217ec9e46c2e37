"""
Core types for the load lifecycle and settlement system.

This module provides the foundational data structures shared by every other module:
1. Enums: closed sets for load/trip status, roles, fee and settlement status
2. Immutable records: Load, Truck, Trip, Corridor, Wallet, JournalEntry, ...
3. Exceptions: FreightError and the business/infrastructure error taxonomy
4. Constants: reserved accounts and domain event types

Records are frozen. The store replaces a record with an updated copy
(dataclasses.replace); nothing mutates a record in place.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .money import ZERO, DEFAULT_CURRENCY, to_decimal


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved clearing account for money entering or leaving the platform
# (deposits, paid-out withdrawals). Exempt from the non-negative balance check.
SYSTEM_ACCOUNT = "system"

# Domain event types (strings, recorded in the load event log).
EVENT_STATUS_CHANGED = "STATUS_CHANGED"
EVENT_ASSIGNED = "ASSIGNED"
EVENT_REQUEST_REJECTED = "REQUEST_REJECTED"
EVENT_SERVICE_FEE_DEDUCTED = "SERVICE_FEE_DEDUCTED"
EVENT_SERVICE_FEE_REFUNDED = "SERVICE_FEE_REFUNDED"
EVENT_SERVICE_FEE_WAIVED = "SERVICE_FEE_WAIVED"
EVENT_SETTLEMENT_PROCESSED = "SETTLEMENT_PROCESSED"
EVENT_POD_SUBMITTED = "POD_SUBMITTED"
EVENT_POD_VERIFIED = "POD_VERIFIED"

# Event types that may occur at most once per load (unique on load_id, event_type).
UNIQUE_EVENT_TYPES: FrozenSet[str] = frozenset({
    EVENT_SERVICE_FEE_DEDUCTED,
    EVENT_SERVICE_FEE_REFUNDED,
    EVENT_SETTLEMENT_PROCESSED,
})


# ============================================================================
# ENUMS
# ============================================================================

class LoadStatus(Enum):
    """Lifecycle status of a load."""
    DRAFT = "DRAFT"
    POSTED = "POSTED"
    SEARCHING = "SEARCHING"
    OFFERED = "OFFERED"
    ASSIGNED = "ASSIGNED"
    PICKUP_PENDING = "PICKUP_PENDING"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    EXCEPTION = "EXCEPTION"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    UNPOSTED = "UNPOSTED"


TERMINAL_STATUSES: FrozenSet[LoadStatus] = frozenset({
    LoadStatus.COMPLETED,
    LoadStatus.CANCELLED,
    LoadStatus.EXPIRED,
})

# Statuses in which a load may hold a truck. EXCEPTION keeps the truck so that
# recovery (EXCEPTION -> IN_TRANSIT, ...) resumes the same trip.
TRUCK_HOLDING_STATUSES: FrozenSet[LoadStatus] = frozenset({
    LoadStatus.ASSIGNED,
    LoadStatus.PICKUP_PENDING,
    LoadStatus.IN_TRANSIT,
    LoadStatus.DELIVERED,
    LoadStatus.EXCEPTION,
})


class Role(Enum):
    """Acting role supplied by the identity collaborator."""
    SHIPPER = "SHIPPER"
    CARRIER = "CARRIER"
    DISPATCHER = "DISPATCHER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class TripStatus(Enum):
    """Execution status of a trip, derived from its load."""
    ASSIGNED = "ASSIGNED"
    PICKUP_PENDING = "PICKUP_PENDING"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class FeeStatus(Enum):
    PENDING = "PENDING"
    DEDUCTED = "DEDUCTED"
    REFUNDED = "REFUNDED"
    WAIVED = "WAIVED"


class SettlementStatus(Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class AccountType(Enum):
    SHIPPER_WALLET = "SHIPPER_WALLET"
    CARRIER_WALLET = "CARRIER_WALLET"
    PLATFORM_REVENUE = "PLATFORM_REVENUE"
    SYSTEM_CLEARING = "SYSTEM_CLEARING"


class TransactionType(Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    SERVICE_FEE = "SERVICE_FEE"
    COMMISSION = "COMMISSION"
    REFUND = "REFUND"
    # Not posted here: settlement posts COMMISSION entries.
    SETTLEMENT = "SETTLEMENT"


class RequestStatus(Enum):
    """Status of a carrier's load request or of a withdrawal request."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class FreightError(Exception):
    """
    Base exception for all load lifecycle and settlement errors.

    Attributes:
        code: Machine-checkable reason string.
        http_status: Status the HTTP layer should map this error to.
    """
    code = "FREIGHT_ERROR"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(FreightError):
    """Malformed input. Never retried automatically."""
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidTransition(ValidationError):
    """Requested status change is structurally illegal or not allowed for the role."""
    code = "INVALID_TRANSITION"


class PreconditionFailed(FreightError):
    """A business precondition does not hold. Safe to show to the end user."""
    code = "PRECONDITION_FAILED"
    http_status = 400


class NotFound(PreconditionFailed):
    code = "NOT_FOUND"
    http_status = 404


class WalletNotFound(NotFound):
    code = "WALLET_NOT_FOUND"


class InsufficientBalance(PreconditionFailed):
    code = "INSUFFICIENT_BALANCE"


class Forbidden(PreconditionFailed):
    """Actor's organization does not own the load or truck."""
    code = "FORBIDDEN"
    http_status = 403


class LoadAlreadyAssigned(PreconditionFailed):
    code = "LOAD_ALREADY_ASSIGNED"
    http_status = 409


class TruckBusy(PreconditionFailed):
    code = "TRUCK_BUSY"
    http_status = 409


class RequestAlreadyResolved(PreconditionFailed):
    code = "REQUEST_ALREADY_RESOLVED"
    http_status = 409


class SettlementPreconditionFailed(PreconditionFailed):
    code = "SETTLEMENT_PRECONDITION_FAILED"


class SettlementAlreadyProcessed(PreconditionFailed):
    code = "SETTLEMENT_ALREADY_PROCESSED"
    http_status = 409


class ConflictError(FreightError):
    """A concurrent writer won the race. The caller decides whether to retry."""
    code = "CONFLICT"
    http_status = 409


class ConstraintViolation(FreightError):
    """
    Raised by the store when a commit would break a data-layer constraint.

    Operations translate this into ConflictError.
    """
    code = "CONSTRAINT_VIOLATION"
    http_status = 409

    def __init__(self, constraint: str, message: str):
        super().__init__(message)
        self.constraint = constraint


class InfrastructureError(FreightError):
    """The persistence layer is unavailable. Never masked as a business error."""
    code = "INFRASTRUCTURE_ERROR"
    http_status = 503


# ============================================================================
# IDENTITY
# ============================================================================

@dataclass(frozen=True, slots=True)
class Actor:
    """
    Identity/role context supplied per call.

    The role is trusted as given; organization ownership is checked by the
    operations that need it.
    """
    user_id: str
    organization_id: Optional[str]
    role: Role

    def __post_init__(self):
        if not self.user_id or not self.user_id.strip():
            raise ValueError("Actor user_id cannot be empty")
        if not isinstance(self.role, Role):
            raise ValueError(f"Actor role must be a Role, got {self.role!r}")

    @property
    def is_privileged(self) -> bool:
        """Dispatchers and admins act on any organization's loads."""
        return self.role in (Role.DISPATCHER, Role.ADMIN, Role.SUPER_ADMIN)


# ============================================================================
# REFERENCE DATA
# ============================================================================

@dataclass(frozen=True, slots=True)
class Corridor:
    """
    Static per-km pricing for an origin/destination region pair.

    Attributes:
        distance_km: Default billable distance for the corridor.
        shipper_price_per_km: Shipper service-fee rate (ETB/km).
        carrier_price_per_km: Carrier service-fee rate; zero for shipper-only corridors.
        shipper_promo_pct / carrier_promo_pct: Discount percentage applied when the
            matching promo flag is set.
    """
    id: str
    name: str
    origin_region: str
    destination_region: str
    distance_km: Decimal
    shipper_price_per_km: Decimal
    carrier_price_per_km: Decimal = ZERO
    shipper_promo_flag: bool = False
    shipper_promo_pct: Optional[Decimal] = None
    carrier_promo_flag: bool = False
    carrier_promo_pct: Optional[Decimal] = None
    is_active: bool = True

    def __post_init__(self):
        for name in ("distance_km", "shipper_price_per_km", "carrier_price_per_km"):
            value = to_decimal(getattr(self, name))
            if not value.is_finite() or value < ZERO:
                raise ValueError(f"Corridor {name} must be a finite non-negative number, got {value}")
            object.__setattr__(self, name, value)
        for name in ("shipper_promo_pct", "carrier_promo_pct"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, to_decimal(value))


@dataclass(frozen=True, slots=True)
class Truck:
    id: str
    carrier_id: str
    plate_number: str = ""
    is_available: bool = True


# ============================================================================
# LOAD AND TRIP
# ============================================================================

@dataclass(frozen=True, slots=True)
class Load:
    """
    The shippable unit under contract.

    Pricing is either the corridor-era total fare (base fare + per-km rate x
    distance, stored as total_fare) or a legacy flat rate. Service-fee fields
    are per party; service_fee/service_fee_status carry the combined legacy view.

    Attributes:
        assigned_truck_id: Non-null only while status holds a truck.
        tracking_enabled: GPS tracking flag, cleared on terminal statuses.
        actual_trip_km / estimated_trip_km / trip_km: Distance sources, in
            decreasing order of preference for fee calculation.
    """
    id: str
    shipper_id: str
    status: LoadStatus = LoadStatus.DRAFT
    assigned_truck_id: Optional[str] = None
    corridor_id: Optional[str] = None
    # Pricing
    base_fare: Optional[Decimal] = None
    per_km_rate: Optional[Decimal] = None
    total_fare: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    # Distance
    trip_km: Optional[Decimal] = None
    estimated_trip_km: Optional[Decimal] = None
    actual_trip_km: Optional[Decimal] = None
    # Service fees
    shipper_service_fee: Decimal = ZERO
    carrier_service_fee: Decimal = ZERO
    service_fee: Decimal = ZERO
    shipper_fee_status: FeeStatus = FeeStatus.PENDING
    carrier_fee_status: FeeStatus = FeeStatus.PENDING
    service_fee_status: FeeStatus = FeeStatus.PENDING
    service_fee_deducted_at: Optional[datetime] = None
    service_fee_refunded_at: Optional[datetime] = None
    # Proof of delivery and settlement
    pod_submitted: bool = False
    pod_verified: bool = False
    pod_submitted_at: Optional[datetime] = None
    pod_verified_at: Optional[datetime] = None
    settlement_status: SettlementStatus = SettlementStatus.PENDING
    shipper_commission: Optional[Decimal] = None
    carrier_commission: Optional[Decimal] = None
    platform_commission: Optional[Decimal] = None
    # Tracking and timestamps
    tracking_enabled: bool = False
    posted_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("Load id cannot be empty")
        if not self.shipper_id or not self.shipper_id.strip():
            raise ValueError("Load shipper_id cannot be empty")
        for name in ("base_fare", "per_km_rate", "total_fare", "rate",
                     "trip_km", "estimated_trip_km", "actual_trip_km"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def fare_amount(self) -> Optional[Decimal]:
        """Total fare for commission purposes: corridor-era total, else legacy rate."""
        if self.total_fare is not None and self.total_fare > ZERO:
            return self.total_fare
        return self.rate


@dataclass(frozen=True, slots=True)
class Trip:
    """
    Execution record mirroring a subset of its load's status.

    Created at assignment time only; never exists without a load.
    """
    id: str
    load_id: str
    truck_id: str
    carrier_id: str
    shipper_id: str
    status: TripStatus = TripStatus.ASSIGNED
    tracking_enabled: bool = True
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class LoadRequest:
    """A carrier's request to haul a load with one of its trucks."""
    id: str
    load_id: str
    truck_id: str
    carrier_id: str
    requested_by: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response_notes: Optional[str] = None


# ============================================================================
# MONEY RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Wallet:
    """
    A financial account. One per organization per account type.

    balance changes only through journal entries applied by the store.
    """
    id: str
    organization_id: Optional[str]
    account_type: AccountType
    balance: Decimal = ZERO
    currency: str = DEFAULT_CURRENCY
    is_active: bool = True


@dataclass(frozen=True, slots=True)
class JournalLine:
    """
    One leg of a journal entry.

    amount is signed: positive increases the account balance, negative decreases it.
    """
    account_id: str
    amount: Decimal

    def __post_init__(self):
        if not self.account_id or not self.account_id.strip():
            raise ValueError("JournalLine account_id cannot be empty")
        if not isinstance(self.amount, Decimal):
            raise ValueError(f"JournalLine amount must be Decimal, got {type(self.amount)}")
        if not self.amount.is_finite():
            raise ValueError(f"JournalLine amount must be finite, got {self.amount}")
        if self.amount == ZERO:
            raise ValueError("JournalLine amount cannot be zero")


@dataclass(frozen=True, slots=True)
class JournalEntry:
    """
    Immutable double-entry record. Lines always sum to zero.

    Attributes:
        sequence_number: Commit order within the store (assigned at creation).
    """
    id: str
    transaction_type: TransactionType
    lines: Tuple[JournalLine, ...]
    load_id: Optional[str] = None
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    sequence_number: int = 0

    def __post_init__(self):
        if len(self.lines) < 2:
            raise ValueError("JournalEntry needs at least two lines")
        total = sum((line.amount for line in self.lines), ZERO)
        if total != ZERO:
            raise ValueError(f"JournalEntry lines must sum to zero, got {total}")

    def amount_for(self, account_id: str) -> Decimal:
        """Net effect of this entry on one account."""
        return sum((line.amount for line in self.lines if line.account_id == account_id), ZERO)


@dataclass(frozen=True, slots=True)
class WithdrawalRequest:
    id: str
    account_id: str
    organization_id: str
    amount: Decimal
    bank_name: str
    bank_account: str
    account_holder: str
    requested_by: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    journal_entry_id: Optional[str] = None


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoadEvent:
    """
    Append-only audit record keyed by load.

    Doubles as the idempotency guard: an event of a UNIQUE_EVENT_TYPES kind
    proves the corresponding money movement already happened.
    """
    id: str
    load_id: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    actor_user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    sequence_number: int = 0
