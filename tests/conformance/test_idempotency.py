"""
Idempotency Conformance Tests

INVARIANT: Repeating an operation moves money at most once.

    ∀ money operation op, load L:
        op(L) succeeded ⟹ op(L) again writes nothing
        state after the repeat = state after the first call

Service-fee deduction and refund report the recorded amounts with
idempotent=True; settlement refuses a re-run with SettlementAlreadyProcessed.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from freight_ledger import (
    LoadStatus,
    SettlementAlreadyProcessed,
    PLATFORM_ACCOUNT,
    approve_load_request, approve_withdrawal, deduct_service_fee, process_settlement,
    refund_service_fee, reject_load_request, request_withdrawal, submit_pod,
    update_load_status,
)

from tests.scenario import (
    ADMIN, CARRIER, SHIPPER,
    assign, build_marketplace, deliver, deliver_with_pod,
)


class TestIdempotencyProperties:
    """Property-based idempotency tests."""

    @given(st.integers(min_value=1, max_value=5))
    @settings(max_examples=20, deadline=None)
    def test_repeated_deduction_charges_once(self, num_repeats):
        """
        PROPERTY: Deducting N times charges each party exactly once.
        """
        m = build_marketplace()
        assign(m)
        first = deduct_service_fee(m.store, m.load.id)
        after_first = m.store.snapshot_state()

        for _ in range(num_repeats):
            again = deduct_service_fee(m.store, m.load.id)
            assert again.success and again.idempotent
            assert again.total_platform_fee == first.total_platform_fee
            assert again.journal_entry_ids == first.journal_entry_ids

        assert m.store.snapshot_state() == after_first
        assert m.store.balance(PLATFORM_ACCOUNT) == Decimal("5000")

    @given(st.integers(min_value=1, max_value=5))
    @settings(max_examples=20, deadline=None)
    def test_repeated_refund_refunds_once(self, num_repeats):
        """
        PROPERTY: Refunding N times returns the fee exactly once.
        """
        m = build_marketplace()
        assign(m)
        deduct_service_fee(m.store, m.load.id)
        refund_service_fee(m.store, m.load.id)
        after_first = m.store.snapshot_state()

        for _ in range(num_repeats):
            assert refund_service_fee(m.store, m.load.id).idempotent

        assert m.store.snapshot_state() == after_first
        assert m.balance(m.shipper_wallet) == Decimal("10000")

    @given(st.integers(min_value=1, max_value=5))
    @settings(max_examples=20, deadline=None)
    def test_repeated_settlement_refused(self, num_repeats):
        """
        PROPERTY: Settlement happens once; every re-run raises and writes nothing.
        """
        m = build_marketplace()
        deliver_with_pod(m)
        process_settlement(m.store, m.load.id)
        after_first = m.store.snapshot_state()

        for _ in range(num_repeats):
            with pytest.raises(SettlementAlreadyProcessed):
                process_settlement(m.store, m.load.id)

        assert m.store.snapshot_state() == after_first
        assert m.store.balance(PLATFORM_ACCOUNT) == Decimal("2000")


class TestIdempotencyExamples:
    """Explicit idempotency examples."""

    def test_same_status_twice(self):
        m = build_marketplace()
        assign(m)
        update_load_status(m.store, m.load.id, LoadStatus.PICKUP_PENDING, CARRIER)
        before = m.store.snapshot_state()
        assert update_load_status(m.store, m.load.id, LoadStatus.PICKUP_PENDING, CARRIER).idempotent
        assert m.store.snapshot_state() == before

    def test_approval_twice(self):
        m = build_marketplace()
        assign(m)
        before = m.store.snapshot_state()
        assert approve_load_request(m.store, m.request.id, SHIPPER).idempotent
        assert m.store.snapshot_state() == before

    def test_rejection_twice(self):
        m = build_marketplace()
        reject_load_request(m.store, m.request.id, SHIPPER)
        before = m.store.snapshot_state()
        reject_load_request(m.store, m.request.id, SHIPPER)
        assert m.store.snapshot_state() == before

    def test_pod_submission_twice(self):
        m = build_marketplace()
        deliver(m)
        submit_pod(m.store, m.load.id, CARRIER)
        before = m.store.snapshot_state()
        assert submit_pod(m.store, m.load.id, CARRIER).idempotent
        assert m.store.snapshot_state() == before

    def test_withdrawal_approval_twice(self):
        m = build_marketplace()
        request = request_withdrawal(m.store, SHIPPER, 500, "Bank", "1000123456789", "Shipper PLC")
        approve_withdrawal(m.store, request.id, ADMIN)
        before = m.store.snapshot_state()
        assert approve_withdrawal(m.store, request.id, ADMIN).idempotent
        assert m.store.snapshot_state() == before
        assert m.balance(m.shipper_wallet) == Decimal("9500")

    def test_completion_after_manual_deduction(self):
        """Completing a load whose fee was already taken does not charge again."""
        m = build_marketplace()
        deliver(m)
        deduct_service_fee(m.store, m.load.id)
        result = update_load_status(m.store, m.load.id, LoadStatus.COMPLETED, ADMIN)
        assert result.service_fee.idempotent
        assert m.store.balance(PLATFORM_ACCOUNT) == Decimal("5000")
