"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the protocol engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. test_conservation.py - Liquidation waterfall and native value conservation
2. test_atomicity.py - All-or-nothing operation semantics
3. test_accrual.py - Monotonic, idempotent fee accrual and borrow-rate curve
4. test_lp_roundtrip.py - Deposit/withdraw and fee accumulator behavior
"""
