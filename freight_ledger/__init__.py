"""
freight_ledger - Load Lifecycle & Settlement Core

Status transitions for freight loads, coupled to a double-entry wallet ledger
that deducts and refunds platform service fees and settles commissions.

Usage:
    from freight_ledger import (
        FreightStore, Load, LoadStatus, Truck, LoadRequest, Actor, Role, AccountType,
        deposit, approve_load_request, update_load_status,
    )

    store = FreightStore("main")
    store.add(Load(id="load-1", shipper_id="acme", status=LoadStatus.POSTED))
    store.add(Truck(id="truck-1", carrier_id="haulco"))
    shipper_wallet = store.open_wallet("acme", AccountType.SHIPPER_WALLET)
    deposit(store, shipper_wallet.id, 10_000)

    store.add(LoadRequest(id="req-1", load_id="load-1", truck_id="truck-1",
                          carrier_id="haulco", requested_by="user-9"))
    shipper = Actor("user-1", "acme", Role.SHIPPER)
    result = approve_load_request(store, "req-1", shipper)
"""

# Money
from .money import (
    to_decimal,
    round_money,
    sum_money,
    format_money,
    is_positive_finite,
    MONEY_PLACES,
    DEFAULT_CURRENCY,
)

# Core types
from .core import (
    Actor,
    Corridor,
    Truck,
    Load,
    Trip,
    LoadRequest,
    Wallet,
    JournalLine,
    JournalEntry,
    WithdrawalRequest,
    LoadEvent,
    LoadStatus,
    Role,
    TripStatus,
    FeeStatus,
    SettlementStatus,
    AccountType,
    TransactionType,
    RequestStatus,
    FreightError,
    ValidationError,
    InvalidTransition,
    PreconditionFailed,
    NotFound,
    WalletNotFound,
    InsufficientBalance,
    Forbidden,
    LoadAlreadyAssigned,
    TruckBusy,
    RequestAlreadyResolved,
    SettlementPreconditionFailed,
    SettlementAlreadyProcessed,
    ConflictError,
    ConstraintViolation,
    InfrastructureError,
    SYSTEM_ACCOUNT,
    TERMINAL_STATUSES,
    TRUCK_HOLDING_STATUSES,
)

# Fee & commission calculator
from .fees import (
    FeePreview,
    DualPartyFeePreview,
    CommissionRates,
    CommissionBreakdown,
    calculate_fee_preview,
    calculate_dual_party_fee_preview,
    calculate_fees_from_corridor,
    resolve_trip_distance,
    calculate_commission,
    calculate_commission_breakdown,
)

# State machine
from .state_machine import (
    TransitionResult,
    VALID_TRANSITIONS,
    ROLE_PERMISSIONS,
    validate_transition,
    is_valid_transition,
    is_terminal_status,
    can_role_set_status,
    get_valid_next_states,
    get_status_description,
)

# Configuration
from .config import FreightSettings, get_settings, reset_settings, configure_logging

# Persistence
from .store import FreightStore, StoreTransaction, Isolation, PLATFORM_ACCOUNT

# Notifications
from .notifications import (
    Notifier,
    LoggingNotifier,
    RecordingNotifier,
    DetachedTaskRunner,
    NotificationDispatcher,
)

# Service fees
from .service_fees import (
    FeeOpResult,
    RefundResult,
    WalletCheck,
    deduct_service_fee,
    refund_service_fee,
    validate_wallet_balances_for_trip,
)

# Wallets
from .wallets import (
    WithdrawalDecision,
    deposit,
    request_withdrawal,
    approve_withdrawal,
    reject_withdrawal,
    available_balance,
)

# Settlement
from .settlement import PodResult, submit_pod, verify_pod, process_settlement

# Trips
from .trips import (
    StatusUpdateResult,
    AssignmentResult,
    LOAD_TO_TRIP_STATUS,
    trip_status_for,
    update_load_status,
    approve_load_request,
    reject_load_request,
)

__all__ = [
    # Money
    'to_decimal', 'round_money', 'sum_money', 'format_money', 'is_positive_finite',
    'MONEY_PLACES', 'DEFAULT_CURRENCY',
    # Core types
    'Actor', 'Corridor', 'Truck', 'Load', 'Trip', 'LoadRequest', 'Wallet',
    'JournalLine', 'JournalEntry', 'WithdrawalRequest', 'LoadEvent',
    'LoadStatus', 'Role', 'TripStatus', 'FeeStatus', 'SettlementStatus',
    'AccountType', 'TransactionType', 'RequestStatus',
    'SYSTEM_ACCOUNT', 'TERMINAL_STATUSES', 'TRUCK_HOLDING_STATUSES',
    # Errors
    'FreightError', 'ValidationError', 'InvalidTransition', 'PreconditionFailed',
    'NotFound', 'WalletNotFound', 'InsufficientBalance', 'Forbidden',
    'LoadAlreadyAssigned', 'TruckBusy', 'RequestAlreadyResolved',
    'SettlementPreconditionFailed', 'SettlementAlreadyProcessed',
    'ConflictError', 'ConstraintViolation', 'InfrastructureError',
    # Fees
    'FeePreview', 'DualPartyFeePreview', 'CommissionRates', 'CommissionBreakdown',
    'calculate_fee_preview', 'calculate_dual_party_fee_preview',
    'calculate_fees_from_corridor', 'resolve_trip_distance',
    'calculate_commission', 'calculate_commission_breakdown',
    # State machine
    'TransitionResult', 'VALID_TRANSITIONS', 'ROLE_PERMISSIONS',
    'validate_transition', 'is_valid_transition', 'is_terminal_status',
    'can_role_set_status', 'get_valid_next_states', 'get_status_description',
    # Configuration
    'FreightSettings', 'get_settings', 'reset_settings', 'configure_logging',
    # Persistence
    'FreightStore', 'StoreTransaction', 'Isolation', 'PLATFORM_ACCOUNT',
    # Notifications
    'Notifier', 'LoggingNotifier', 'RecordingNotifier', 'DetachedTaskRunner',
    'NotificationDispatcher',
    # Service fees
    'FeeOpResult', 'RefundResult', 'WalletCheck',
    'deduct_service_fee', 'refund_service_fee', 'validate_wallet_balances_for_trip',
    # Wallets
    'WithdrawalDecision', 'deposit', 'request_withdrawal', 'approve_withdrawal',
    'reject_withdrawal', 'available_balance',
    # Settlement
    'PodResult', 'submit_pod', 'verify_pod', 'process_settlement',
    # Trips
    'StatusUpdateResult', 'AssignmentResult', 'LOAD_TO_TRIP_STATUS', 'trip_status_for',
    'update_load_status', 'approve_load_request', 'reject_load_request',
]

__version__ = '1.0.0'
