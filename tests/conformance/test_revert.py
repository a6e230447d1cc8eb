"""
Revert Conformance Tests

INVARIANT: Reverting restores the exact pre-edit state.

    ∀ loan L, field f, edits e1..en:
        revert(L, f) after e1..en ⟹ no entry for (L, f), no preview for L
        editing back to the original value ⟹ same as revert
        revert_all_for_loan(L) ⟹ has_changes_for_loan(L) = False,
                                 other loans untouched

Pending state never leaks past a revert, so a save after a revert persists
nothing for that loan.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from pricing import ChangeLedger, PreviewCalculator

from tests.conftest import make_loan, make_fee, make_flat_config
from tests.fake_view import FakePortfolio
from tests.conformance.strategies import rates, rate_fields


def _workspace():
    portfolio = FakePortfolio(
        loans=[make_loan("L1"), make_loan("L2", fees=[make_fee("F1", 500)])],
        fee_configs=[make_flat_config()],
    )
    ledger = ChangeLedger()
    return portfolio, ledger, PreviewCalculator(portfolio, ledger)


class TestRevertProperties:
    """Property-based revert tests."""

    @given(rate_fields, st.lists(rates, min_size=1, max_size=6))
    @settings(max_examples=50)
    def test_revert_after_any_edit_sequence(self, field, values):
        """
        PROPERTY: After any number of edits, revert leaves nothing behind.
        """
        portfolio, ledger, calculator = _workspace()
        baseline = portfolio.get_loan("L1").field_value(field)
        current = baseline
        for value in values:
            ledger.track_field_change("L1", field, None, current, value)
            current = value

        ledger.revert_field_change("L1", field)

        assert not ledger.is_field_modified("L1", field)
        assert not ledger.has_changes()
        assert calculator.get_preview("L1") is None

    @given(rate_fields, st.lists(rates, min_size=1, max_size=6))
    @settings(max_examples=50)
    def test_edit_back_equals_revert(self, field, values):
        """
        PROPERTY: Ending an edit sequence on the baseline value removes the entry.
        """
        portfolio, ledger, calculator = _workspace()
        baseline = portfolio.get_loan("L1").field_value(field)
        current = baseline
        for value in values + [baseline]:
            ledger.track_field_change("L1", field, None, current, value)
            current = value

        assert not ledger.is_field_modified("L1", field)
        assert calculator.get_preview("L1") is None

    @given(st.lists(rates, min_size=1, max_size=4), st.booleans())
    @settings(max_examples=50)
    def test_revert_all_for_loan_is_scoped(self, values, touch_fee):
        """
        PROPERTY: Reverting one loan never touches another loan's entries.
        """
        portfolio, ledger, calculator = _workspace()
        for value in values:
            ledger.track_field_change("L1", "pricing.spread", None, Decimal("0.02"), value)
        ledger.track_field_change("L2", "pricing.baseRate", None, Decimal("0.05"), Decimal("0.09"))
        if touch_fee:
            ledger.track_fee_add("L1", "cfg-flat")
        before_l2 = ledger.get_changes_for_loan("L2")

        ledger.revert_all_for_loan("L1")

        assert not ledger.has_changes_for_loan("L1")
        assert ledger.get_changes_for_loan("L2") == before_l2
        assert calculator.get_preview("L1") is None
        assert calculator.get_preview("L2").effective_rate == Decimal("0.11")

    @given(rate_fields, rates)
    @settings(max_examples=50)
    def test_revert_is_idempotent(self, field, value):
        """
        PROPERTY: A second revert of the same field is a no-op returning False.
        """
        portfolio, ledger, _ = _workspace()
        ledger.track_field_change("L1", field, None, portfolio.get_loan("L1").field_value(field), value)
        ledger.revert_field_change("L1", field)
        assert ledger.revert_field_change("L1", field) is False
        assert ledger.change_count == 0
