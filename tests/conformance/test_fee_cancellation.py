"""
Fee Operation Conformance Tests

INVARIANT: Deleting a pending add cancels it; fee entries never pile up.

    ∀ pending add A, updates u1..un:
        delete(A) after u1..un ⟹ no fee entry for A, ledger empty

    ∀ persisted fee F, operation sequence over {update, delete}:
        at most one entry for F
        entry type = DELETE iff a delete occurred
        original_fee = F
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from pricing import ChangeLedger, FeeChangeType

from tests.conftest import make_fee
from tests.conformance.strategies import amounts


operations = st.lists(
    st.one_of(
        st.tuples(st.just("update"), amounts),
        st.tuples(st.just("delete"), st.none()),
    ),
    min_size=1,
    max_size=8,
)


class TestFeeCancellationProperties:
    """Property-based fee operation tests."""

    @given(st.lists(amounts, max_size=5))
    @settings(max_examples=50)
    def test_delete_cancels_pending_add(self, update_amounts):
        """
        PROPERTY: Add, any number of updates, delete -> nothing to save.
        """
        ledger = ChangeLedger()
        entry = ledger.track_fee_add("L1", "cfg-flat")
        for amount in update_amounts:
            ledger.track_fee_update("L1", entry.fee_id, None, {'flat_amount': amount})

        assert ledger.track_fee_delete("L1", entry.fee_id) is None
        assert not ledger.has_changes()

    @given(operations)
    @settings(max_examples=50)
    def test_one_entry_per_persisted_fee(self, ops):
        """
        PROPERTY: Updates merge, deletes win, and the original is preserved.
        """
        ledger = ChangeLedger()
        fee = make_fee("F1", 500)
        deleted = False
        for kind, amount in ops:
            if kind == "update":
                ledger.track_fee_update("L2", "F1", fee, {'calculated_amount': amount})
            else:
                ledger.track_fee_delete("L2", "F1", fee)
                deleted = True

        entries = ledger.get_fee_changes_for_loan("L2")
        assert len(entries) == 1
        assert entries[0].original_fee == fee
        expected = FeeChangeType.DELETE if deleted else FeeChangeType.UPDATE
        assert entries[0].change_type is expected

    @given(st.integers(min_value=1, max_value=5))
    @settings(max_examples=20)
    def test_adds_are_independent(self, count):
        """
        PROPERTY: Cancelling one pending add leaves the others intact.
        """
        ledger = ChangeLedger()
        entries = [ledger.track_fee_add("L1", "cfg-flat") for _ in range(count)]
        ledger.track_fee_delete("L1", entries[0].fee_id)
        assert ledger.get_pending_fee_adds("L1") == entries[1:]
