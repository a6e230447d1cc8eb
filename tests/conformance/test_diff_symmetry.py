"""
Diff Symmetry Conformance Tests

INVARIANT: Diffing in the opposite direction mirrors every change.

    ∀ states A, B of the same loans:
        diff(A, A) = ∅
        |diff(A, B)| = |diff(B, A)|
        added fees of diff(A, B) = deleted fees of diff(B, A)
        rate (old, new) of diff(A, B) = rate (new, old) of diff(B, A)
        invoice move L1 -> L2 in diff(A, B) = move L2 -> L1 in diff(B, A)
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from pricing import ChangeAction, diff_loans

from tests.conftest import make_loan, make_invoice
from tests.conformance.strategies import portfolio_pairs, portfolios


def _fee_keys(details, action):
    return {(d.loan_id, d.fee_id) for d in details if d.action is action}


class TestDiffSymmetryProperties:
    """Property-based diff symmetry tests."""

    @given(portfolios())
    @settings(max_examples=50)
    def test_self_diff_is_empty(self, loans):
        """
        PROPERTY: A state never differs from itself.
        """
        assert diff_loans(loans, loans).is_empty

    @given(portfolio_pairs())
    @settings(max_examples=50)
    def test_reverse_diff_mirrors_changes(self, pair):
        """
        PROPERTY: Forward and reverse diffs describe the same changes.
        """
        previous, current = pair
        forward = diff_loans(previous, current)
        reverse = diff_loans(current, previous)

        assert forward.change_count == reverse.change_count
        assert _fee_keys(forward.fees, ChangeAction.ADDED) == _fee_keys(reverse.fees, ChangeAction.DELETED)
        assert _fee_keys(forward.fees, ChangeAction.DELETED) == _fee_keys(reverse.fees, ChangeAction.ADDED)
        assert _fee_keys(forward.fees, ChangeAction.MODIFIED) == _fee_keys(reverse.fees, ChangeAction.MODIFIED)
        assert {(d.loan_id, d.field, d.old_value, d.new_value) for d in forward.rates} == \
            {(d.loan_id, d.field, d.new_value, d.old_value) for d in reverse.rates}
        assert {(d.loan_id, d.field, d.old_value, d.new_value) for d in forward.statuses} == \
            {(d.loan_id, d.field, d.new_value, d.old_value) for d in reverse.statuses}

    @given(st.sampled_from([("L1", "L2"), ("L2", "L3"), ("L3", "L1")]))
    @settings(max_examples=10)
    def test_invoice_move_reverses(self, route):
        """
        PROPERTY: A move reverses its source and target.
        """
        source, target = route
        invoice = make_invoice("I1", 2500)
        ids = ("L1", "L2", "L3")
        before = [make_loan(i, invoices=[invoice] if i == source else []) for i in ids]
        after = [make_loan(i, invoices=[invoice] if i == target else []) for i in ids]

        (forward,) = diff_loans(before, after).invoices
        (reverse,) = diff_loans(after, before).invoices
        assert forward.action is reverse.action is ChangeAction.MOVED
        assert (forward.source_loan_id, forward.target_loan_id) == (source, target)
        assert (reverse.source_loan_id, reverse.target_loan_id) == (target, source)
