"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the load lifecycle and
settlement core. Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. transitions.py - Total transition table and role permissions
2. conservation.py - Double-entry accounting invariants
3. atomicity.py - All-or-nothing units of work
4. idempotency.py - Repeated operations move money at most once
5. concurrency.py - Races resolve to exactly one winner

These tests use hypothesis for property-based testing.
"""
