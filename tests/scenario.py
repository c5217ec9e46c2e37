"""
scenario.py - Builders for freight test scenarios

A "marketplace" is one shipper, one carrier with one truck, a corridor
(500 km at 6 ETB/km shipper and 4 ETB/km carrier), funded wallets, a load and
a carrier's pending request for it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from freight_ledger import (
    Actor, Corridor, FreightSettings, FreightStore, Load, LoadRequest, Truck, Wallet,
    AccountType, LoadStatus, Role,
    approve_load_request, deposit, submit_pod, update_load_status, verify_pod,
)


FIXED_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

SHIPPER_ORG = "shipper-org"
CARRIER_ORG = "carrier-org"
OTHER_CARRIER_ORG = "carrier-org-2"

SHIPPER = Actor("shipper-user", SHIPPER_ORG, Role.SHIPPER)
CARRIER = Actor("carrier-user", CARRIER_ORG, Role.CARRIER)
OTHER_CARRIER = Actor("carrier-user-2", OTHER_CARRIER_ORG, Role.CARRIER)
DISPATCHER = Actor("dispatcher-user", None, Role.DISPATCHER)
ADMIN = Actor("admin-user", None, Role.ADMIN)


def make_store(name: str = "test", **overrides) -> FreightStore:
    """Store with a fixed clock and settings that ignore the environment's .env file."""
    settings = FreightSettings(_env_file=None, **overrides)
    return FreightStore(name, settings=settings, clock=lambda: FIXED_NOW)


def addis_dire_corridor(**overrides) -> Corridor:
    fields = dict(
        id="corr-addis-dire",
        name="Addis Ababa - Dire Dawa",
        origin_region="Addis Ababa",
        destination_region="Dire Dawa",
        distance_km=Decimal("500"),
        shipper_price_per_km=Decimal("6"),
        carrier_price_per_km=Decimal("4"),
    )
    fields.update(overrides)
    return Corridor(**fields)


def funded_wallet(store: FreightStore, organization_id: str, account_type: AccountType,
                  amount) -> Wallet:
    wallet = store.open_wallet(organization_id, account_type)
    if amount:
        deposit(store, wallet.id, amount)
    return store.get_wallet(wallet.id)


@dataclass
class Marketplace:
    store: FreightStore
    corridor: Optional[Corridor]
    truck: Truck
    load: Load
    request: LoadRequest
    shipper_wallet: Optional[Wallet]
    carrier_wallet: Optional[Wallet]

    def balance(self, wallet: Wallet) -> Decimal:
        return self.store.balance(wallet.id)

    def current_load(self) -> Load:
        return self.store.get_load(self.load.id)


def build_marketplace(
    shipper_balance=Decimal("10000"),
    carrier_balance=Decimal("10000"),
    load_status: LoadStatus = LoadStatus.POSTED,
    with_corridor: bool = True,
    with_wallets: bool = True,
    total_fare=Decimal("20000"),
    store: Optional[FreightStore] = None,
    **load_fields,
) -> Marketplace:
    store = store or make_store()
    corridor = addis_dire_corridor() if with_corridor else None
    truck = Truck("truck-1", CARRIER_ORG, "AA-3-12345")
    load = Load(
        id="load-1",
        shipper_id=SHIPPER_ORG,
        status=load_status,
        corridor_id=corridor.id if corridor else None,
        total_fare=total_fare,
        **load_fields,
    )
    request = LoadRequest("req-1", load.id, truck.id, CARRIER_ORG, CARRIER.user_id)
    records = [truck, load, request]
    if corridor is not None:
        records.insert(0, corridor)
    store.add(*records)

    shipper_wallet = carrier_wallet = None
    if with_wallets:
        shipper_wallet = funded_wallet(store, SHIPPER_ORG, AccountType.SHIPPER_WALLET, shipper_balance)
        carrier_wallet = funded_wallet(store, CARRIER_ORG, AccountType.CARRIER_WALLET, carrier_balance)
    return Marketplace(store, corridor, truck, load, request, shipper_wallet, carrier_wallet)


def assign(m: Marketplace):
    return approve_load_request(m.store, m.request.id, SHIPPER)


def deliver(m: Marketplace) -> Load:
    """Assign the load and drive it to DELIVERED."""
    assign(m)
    for status in (LoadStatus.PICKUP_PENDING, LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED):
        update_load_status(m.store, m.load.id, status, CARRIER)
    return m.current_load()


def deliver_with_pod(m: Marketplace) -> Load:
    """DELIVERED with proof of delivery submitted and verified: ready to settle."""
    deliver(m)
    submit_pod(m.store, m.load.id, CARRIER)
    verify_pod(m.store, m.load.id, SHIPPER)
    return m.current_load()
