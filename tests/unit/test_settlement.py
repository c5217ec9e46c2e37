"""
test_settlement.py - Unit tests for the settlement orchestrator

Tests:
- submit_pod / verify_pod: preconditions, ownership, idempotent repeats
- process_settlement: commission entries, load fields, event, rates
- Guards: already processed, not delivered, POD missing, no fare, short wallets
"""

import pytest
from decimal import Decimal
from structlog.testing import capture_logs

from freight_ledger import (
    LoadStatus, SettlementStatus, TransactionType,
    Forbidden, InsufficientBalance, NotFound, PreconditionFailed,
    SettlementAlreadyProcessed, SettlementPreconditionFailed,
    PLATFORM_ACCOUNT,
    process_settlement, submit_pod, verify_pod,
)

from tests.scenario import (
    ADMIN, CARRIER, CARRIER_ORG, DISPATCHER, FIXED_NOW, OTHER_CARRIER, SHIPPER, SHIPPER_ORG,
    build_marketplace, deliver, deliver_with_pod, make_store,
)


class TestProofOfDelivery:

    def test_submit_and_verify(self, market):
        deliver(market)
        submitted = submit_pod(market.store, market.load.id, CARRIER)
        assert submitted.load.pod_submitted
        assert submitted.load.pod_submitted_at == FIXED_NOW

        verified = verify_pod(market.store, market.load.id, SHIPPER)
        assert verified.load.pod_verified
        assert verified.load.pod_verified_at == FIXED_NOW

        events = [e.event_type for e in market.store.events(market.load.id)]
        assert "POD_SUBMITTED" in events and "POD_VERIFIED" in events

    def test_submit_requires_delivered(self, market):
        with pytest.raises(PreconditionFailed, match="DELIVERED"):
            submit_pod(market.store, market.load.id, DISPATCHER)

    @pytest.mark.parametrize("actor", [SHIPPER, OTHER_CARRIER])
    def test_only_assigned_carrier_submits(self, market, actor):
        deliver(market)
        with pytest.raises(Forbidden):
            submit_pod(market.store, market.load.id, actor)

    def test_dispatcher_may_submit(self, market):
        deliver(market)
        assert submit_pod(market.store, market.load.id, DISPATCHER).load.pod_submitted

    def test_repeat_submit_is_idempotent(self, market):
        deliver(market)
        submit_pod(market.store, market.load.id, CARRIER)
        commits = market.store.commit_count
        assert submit_pod(market.store, market.load.id, CARRIER).idempotent
        assert market.store.commit_count == commits

    def test_verify_requires_submission(self, market):
        deliver(market)
        with pytest.raises(PreconditionFailed, match="not been submitted"):
            verify_pod(market.store, market.load.id, SHIPPER)

    def test_carrier_cannot_verify(self, market):
        deliver(market)
        submit_pod(market.store, market.load.id, CARRIER)
        with pytest.raises(Forbidden):
            verify_pod(market.store, market.load.id, CARRIER)

    def test_missing_load(self, store):
        with pytest.raises(NotFound):
            submit_pod(store, "ghost", CARRIER)

    def test_notifications(self, market, notifications, notifier):
        deliver(market)
        submit_pod(market.store, market.load.id, CARRIER, notifications=notifications)
        verify_pod(market.store, market.load.id, SHIPPER, notifications=notifications)
        assert notifications.drain(timeout=5)
        assert [n[0] for n in notifier.of_type("POD_SUBMITTED")] == [SHIPPER_ORG]
        assert [n[0] for n in notifier.of_type("POD_VERIFIED")] == [CARRIER_ORG]


class TestProcessSettlement:

    def test_breakdown_at_default_rates(self, market):
        deliver_with_pod(market)
        breakdown = process_settlement(market.store, market.load.id, ADMIN)

        assert breakdown.total_fare == Decimal("20000")
        assert breakdown.shipper_commission == Decimal("1000.00")
        assert breakdown.carrier_commission == Decimal("1000.00")
        assert breakdown.platform_revenue == Decimal("2000.00")

    def test_moves_commission_to_platform(self, market):
        deliver_with_pod(market)
        process_settlement(market.store, market.load.id)

        assert market.balance(market.shipper_wallet) == Decimal("9000")
        assert market.balance(market.carrier_wallet) == Decimal("9000")
        assert market.store.balance(PLATFORM_ACCOUNT) == Decimal("2000")

        entries = market.store.journal_entries(market.load.id)
        assert [e.transaction_type for e in entries] == [TransactionType.COMMISSION] * 2
        assert [e.metadata["party"] for e in entries] == ["shipper", "carrier"]

    def test_load_marked_paid(self, market):
        deliver_with_pod(market)
        process_settlement(market.store, market.load.id)
        load = market.current_load()

        assert load.settlement_status is SettlementStatus.PAID
        assert load.settled_at == FIXED_NOW
        assert load.shipper_commission == Decimal("1000.00")
        assert load.carrier_commission == Decimal("1000.00")
        assert load.platform_commission == Decimal("2000.00")
        # Settlement does not change the lifecycle status
        assert load.status is LoadStatus.DELIVERED

    def test_records_event(self, market):
        deliver_with_pod(market)
        process_settlement(market.store, market.load.id, ADMIN)
        [event] = [e for e in market.store.events(market.load.id)
                   if e.event_type == "SETTLEMENT_PROCESSED"]
        assert event.actor_user_id == ADMIN.user_id
        assert event.payload["platform_revenue"] == Decimal("2000.00")
        assert event.payload["carrier_id"] == CARRIER_ORG
        assert len(event.payload["journal_entry_ids"]) == 2

    def test_rates_from_settings(self):
        m = build_marketplace(store=make_store(shipper_commission_rate=2, carrier_commission_rate=3))
        deliver_with_pod(m)
        breakdown = process_settlement(m.store, m.load.id)
        assert breakdown.shipper_commission == Decimal("400.00")
        assert breakdown.carrier_commission == Decimal("600.00")

    def test_legacy_rate_used_without_total_fare(self):
        m = build_marketplace(total_fare=None, rate=Decimal("10000"))
        deliver_with_pod(m)
        assert process_settlement(m.store, m.load.id).platform_revenue == Decimal("1000.00")

    def test_second_run_is_refused(self, market):
        deliver_with_pod(market)
        process_settlement(market.store, market.load.id)
        with pytest.raises(SettlementAlreadyProcessed, match="Settlement already processed"):
            process_settlement(market.store, market.load.id)
        assert market.store.balance(PLATFORM_ACCOUNT) == Decimal("2000")

    def test_logs_and_notifies(self, market, notifications, notifier):
        deliver_with_pod(market)
        with capture_logs() as logs:
            process_settlement(market.store, market.load.id, notifications=notifications)
        assert notifications.drain(timeout=5)

        [entry] = [e for e in logs if e["event"] == "settlement_processed"]
        assert entry["platform_revenue"] == "2000.00"
        sent = notifier.of_type("COMMISSION_DEDUCTED")
        assert sorted((n[0], n[2]["amount"]) for n in sent) == [
            (CARRIER_ORG, "1000.00"), (SHIPPER_ORG, "1000.00"),
        ]
        completed = notifier.of_type("SETTLEMENT_COMPLETE")
        # Shipper sees the fare, carrier its net after commission
        assert sorted((n[0], n[2]["amount"]) for n in completed) == [
            (CARRIER_ORG, "19000.00"), (SHIPPER_ORG, "20000.00"),
        ]


class TestSettlementGuards:

    def test_missing_load(self, store):
        with pytest.raises(NotFound):
            process_settlement(store, "ghost")

    def test_not_delivered(self, market):
        with pytest.raises(SettlementPreconditionFailed, match="must be DELIVERED"):
            process_settlement(market.store, market.load.id)

    def test_pod_not_submitted(self, market):
        deliver(market)
        with pytest.raises(SettlementPreconditionFailed, match="not been submitted"):
            process_settlement(market.store, market.load.id)

    def test_pod_not_verified(self, market):
        deliver(market)
        submit_pod(market.store, market.load.id, CARRIER)
        with pytest.raises(SettlementPreconditionFailed, match="not been verified"):
            process_settlement(market.store, market.load.id)

    def test_no_fare(self):
        m = build_marketplace(total_fare=None)
        deliver_with_pod(m)
        with pytest.raises(SettlementPreconditionFailed, match="no fare"):
            process_settlement(m.store, m.load.id)

    def test_insufficient_balance_writes_nothing(self):
        # Fare 100,000: 5,000 commission each, shipper holds 4,000
        m = build_marketplace(shipper_balance=4000, total_fare=Decimal("100000"))
        deliver_with_pod(m)
        with pytest.raises(InsufficientBalance, match="Insufficient shipper balance for commission"):
            process_settlement(m.store, m.load.id)

        load = m.current_load()
        assert load.settlement_status is SettlementStatus.PENDING
        assert load.shipper_commission is None
        assert m.store.journal_entries(m.load.id) == []
        assert m.balance(m.carrier_wallet) == Decimal("10000")
