"""
test_preview.py - Unit tests for the preview calculator

Tests:
- Rate projections from pending and explicit inputs
- Fee projections: updates, deletes, pending adds
- Cache maintenance driven by ledger events
- Batch previews and playback previews
"""

import pytest
from dataclasses import replace
from decimal import Decimal

from pricing import (
    EditableField, LoanNotFound, FeeConfigNotFound, UnknownField,
    PreviewCalculator, project_fees, build_playback_previews, recalculate_loan,
)
from pricing.preview import parse_rate_inputs, build_playback_preview

from tests.conftest import make_loan, make_fee, make_flat_config
from tests.fake_view import FakePortfolio


BASE = EditableField.BASE_RATE
SPREAD = EditableField.SPREAD


class TestParseRateInputs:

    def test_accepted_key_forms(self):
        inputs = parse_rate_inputs({'base_rate': 0.06, 'pricing.spread': "0.01"})
        assert inputs == {BASE: Decimal("0.06"), SPREAD: Decimal("0.01")}

    def test_none_values_skipped(self):
        assert parse_rate_inputs({BASE: None}) == {}
        assert parse_rate_inputs(None) == {}

    def test_non_rate_field_rejected(self):
        with pytest.raises(ValueError, match="not a rate input"):
            parse_rate_inputs({'status': "approved"})

    def test_unknown_key_rejected(self):
        with pytest.raises(UnknownField):
            parse_rate_inputs({'margin': 0.01})


class TestRatePreview:
    """Tests for rate projections."""

    def test_base_rate_edit(self, calculator, ledger):
        """Base 0.05 -> 0.06 with spread 0.02 on 100,000 for one year."""
        ledger.track_field_change("L1", BASE, "Base Rate", 0.05, 0.06)
        preview = calculator.get_preview("L1")
        assert preview.effective_rate == Decimal("0.08")
        assert preview.interest_amount == Decimal("8000.00")
        assert preview.net_proceeds == Decimal("92000.00")
        assert preview.original_effective_rate == Decimal("0.07")
        assert preview.original_net_proceeds == Decimal("93000.00")
        assert preview.rate_delta == Decimal("0.01")
        assert preview.interest_delta == Decimal("1000.00")
        assert preview.net_delta == Decimal("-1000.00")

    def test_explicit_input_keeps_other_pending_rate(self, calculator, ledger):
        """Editing the spread does not regress a pending base rate edit."""
        ledger.track_field_change("L1", BASE, "Base Rate", 0.05, 0.06)
        preview = calculator.calculate_preview("L1", {SPREAD: "0.03"})
        assert preview.effective_rate == Decimal("0.09")

    def test_explicit_input_wins_over_pending(self, calculator, ledger):
        ledger.track_field_change("L1", BASE, "Base Rate", 0.05, 0.06)
        preview = calculator.calculate_preview("L1", {'base_rate': "0.04"})
        assert preview.effective_rate == Decimal("0.06")

    def test_baseline_not_mutated(self, calculator, ledger, fake_portfolio, l1):
        ledger.track_field_change("L1", BASE, "Base Rate", 0.05, 0.06)
        assert fake_portfolio.get_loan("L1") == l1
        assert l1.pricing.base_rate == Decimal("0.05")

    def test_unknown_loan(self, calculator):
        with pytest.raises(LoanNotFound):
            calculator.calculate_preview("L404")

    def test_no_changes_is_unchanged(self, calculator):
        assert calculator.calculate_preview("L1").is_unchanged


class TestFeePreview:
    """Tests for fee projections."""

    def test_update_and_add(self, calculator, ledger, l2):
        """F1 500 -> 650 plus a new 100 fee: total fees +250."""
        ledger.track_fee_update("L2", "F1", l2.get_fee("F1"), {'calculated_amount': 650})
        ledger.track_fee_add("L2", "cfg-flat", "Processing Fee")
        preview = calculator.get_preview("L2")
        assert preview.total_fees == Decimal("750.00")
        assert preview.fees_delta == Decimal("250.00")
        assert preview.net_delta == Decimal("-250.00")

    def test_update_without_amount_recomputes(self, fake_portfolio, ledger, l2):
        ledger.track_fee_update("L2", "F1", l2.get_fee("F1"), {'flat_amount': 800})
        fees = project_fees(l2, ledger, fake_portfolio)
        assert fees[0].calculated_amount == Decimal("800.00")

    def test_waive_update_zeroes_fee(self, fake_portfolio, ledger, l2):
        ledger.track_fee_update("L2", "F1", l2.get_fee("F1"), {'is_waived': True})
        assert project_fees(l2, ledger, fake_portfolio)[0].calculated_amount == Decimal("0")

    def test_delete_drops_fee(self, calculator, ledger, l2):
        ledger.track_fee_delete("L2", "F1", l2.get_fee("F1"))
        preview = calculator.get_preview("L2")
        assert preview.total_fees == Decimal("0.00")
        assert preview.net_delta == Decimal("500.00")

    def test_pending_add_from_tiered_config(self, fake_portfolio, ledger, l1):
        entry = ledger.track_fee_add("L1", "cfg-tiered")
        fees = project_fees(l1, ledger, fake_portfolio)
        assert [fee.id for fee in fees] == [entry.fee_id]
        assert fees[0].calculated_amount == Decimal("750.00")
        assert fees[0].name == "Tiered Arrangement Fee"

    def test_update_merged_into_add(self, fake_portfolio, ledger, l1):
        entry = ledger.track_fee_add("L1", "cfg-flat")
        ledger.track_fee_update("L1", entry.fee_id, None, {'flat_amount': 250})
        assert project_fees(l1, ledger, fake_portfolio)[0].calculated_amount == Decimal("250.00")

    def test_missing_config_raises(self, fake_portfolio, ledger, l1):
        ledger.track_fee_add("L1", "cfg-gone")
        with pytest.raises(FeeConfigNotFound):
            project_fees(l1, ledger, fake_portfolio)

    def test_amount_update_marks_override(self, fake_portfolio, ledger, l2):
        """An entered amount survives recalculation of the saved loan."""
        ledger.track_fee_update("L2", "F1", l2.get_fee("F1"), {'calculated_amount': 650})
        fees = project_fees(l2, ledger, fake_portfolio)
        assert fees[0].is_overridden
        saved = recalculate_loan(replace(l2, fees=fees))
        assert saved.total_fees == Decimal("650.00")

    def test_overridden_fee_rename_keeps_amount(self, ledger):
        fee = replace(make_fee("F1", 500), calculated_amount=Decimal("800"), is_overridden=True)
        loan = make_loan("L5", fees=[fee])
        calculator = PreviewCalculator(FakePortfolio(loans=[loan]), ledger)
        ledger.track_fee_update("L5", "F1", fee, {'name': "Renamed"})
        preview = calculator.get_preview("L5")
        assert loan.total_fees == Decimal("800.00")
        assert preview.total_fees == Decimal("800.00")
        assert preview.fees_delta == Decimal("0")

    def test_overridden_fee_recomputed_when_amount_driver_changes(self, ledger):
        fee = replace(make_fee("F1", 500), calculated_amount=Decimal("800"), is_overridden=True)
        loan = make_loan("L5", fees=[fee])
        ledger.track_fee_update("L5", "F1", fee, {'flat_amount': 900})
        fees = project_fees(loan, ledger, FakePortfolio(loans=[loan]))
        assert fees[0].calculated_amount == Decimal("900.00")

    def test_fee_change_keeps_pending_rate(self, calculator, ledger, l2):
        ledger.track_field_change("L2", BASE, "Base Rate", 0.05, 0.06)
        ledger.track_fee_delete("L2", "F1", l2.get_fee("F1"))
        preview = calculator.recalculate_for_fee_changes("L2")
        assert preview.effective_rate == Decimal("0.08")
        assert preview.total_fees == Decimal("0.00")


class TestPreviewCache:
    """Tests for ledger-driven cache maintenance."""

    def test_revert_drops_preview(self, calculator, ledger):
        ledger.track_field_change("L1", BASE, "Base Rate", 0.05, 0.06)
        ledger.revert_field_change("L1", BASE)
        assert calculator.get_preview("L1") is None

    def test_revert_all_for_loan_drops_preview(self, calculator, ledger):
        ledger.track_field_change("L1", BASE, "Base Rate", 0.05, 0.06)
        ledger.track_field_change("L2", BASE, "Base Rate", 0.05, 0.06)
        ledger.revert_all_for_loan("L1")
        assert calculator.get_preview("L1") is None
        assert calculator.get_preview("L2") is not None

    def test_clear_empties_cache(self, calculator, ledger):
        ledger.track_field_change("L1", BASE, "Base Rate", 0.05, 0.06)
        ledger.clear_all_changes()
        assert calculator.previews == {}

    def test_detach_stops_updates(self, calculator, ledger):
        calculator.detach()
        ledger.track_field_change("L1", BASE, "Base Rate", 0.05, 0.06)
        assert calculator.get_preview("L1") is None

    def test_unprojectable_loan_never_breaks_ledger(self, calculator, ledger):
        """A pending add with a missing config drops the preview; edits still stage."""
        ledger.track_fee_add("L1", "cfg-missing")
        ledger.track_field_change("L1", SPREAD, "Spread", 0.02, 0.03)
        assert ledger.change_count == 2
        assert calculator.get_preview("L1") is None
        with pytest.raises(FeeConfigNotFound):
            calculator.calculate_preview("L1")

    def test_unsubscribed_calculator(self, fake_portfolio, ledger):
        calculator = PreviewCalculator(fake_portfolio, ledger, subscribe=False)
        ledger.track_field_change("L1", BASE, "Base Rate", 0.05, 0.06)
        assert calculator.get_preview("L1") is None
        assert calculator.calculate_preview("L1").effective_rate == Decimal("0.08")


class TestBatchPreview:

    def test_batch_not_cached(self, calculator):
        previews = calculator.batch_preview(["L1", "L2"], {SPREAD: "0.03"})
        assert previews["L1"].effective_rate == Decimal("0.08")
        assert previews["L2"].effective_rate == Decimal("0.08")
        assert calculator.previews == {}


class TestPlaybackPreviews:
    """Tests for snapshot pair previews."""

    def test_pairs_with_previous_snapshot(self):
        before = make_loan("L1")
        after = make_loan("L1", base_rate="0.06")
        preview = build_playback_preview(before, after)
        assert preview.original_base_rate == Decimal("0.05")
        assert preview.base_rate == Decimal("0.06")
        assert preview.interest_delta == Decimal("1000.00")

    def test_only_common_loans(self):
        previous = [make_loan("L1"), make_loan("L2")]
        current = [make_loan("L1", spread="0.03"), make_loan("L3")]
        previews = build_playback_previews(previous, current)
        assert list(previews) == ["L1"]
        assert previews["L1"].rate_delta == Decimal("0.01")

    def test_identical_snapshots_unchanged(self):
        loans = [make_loan("L1", fees=[make_fee("F1", 10)])]
        assert all(p.is_unchanged for p in build_playback_previews(loans, loans).values())
