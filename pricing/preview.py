"""
preview.py - Preview Calculator

Combines ChangeLedger entries with a loan's persisted baseline through the
pricing formula to produce an "as-if-saved" projection per loan. The baseline
Loan is never mutated; every projection is a fresh Preview.

Rate inputs:
    The projection always starts from every pending rate value of the loan and
    overlays any explicit inputs, so editing the spread reuses a pending base
    rate edit instead of regressing it to baseline.

Fee projection (project_fees):
    persisted fee, untouched      -> persisted calculated_amount
    persisted fee, pending update -> updated calculated_amount if given
                                     (marked overridden), the kept amount of
                                     an overridden fee, otherwise recomputed
                                     by the formula
    persisted fee, pending delete -> dropped
    pending add                   -> built from its catalogue entry

Playback:
    build_playback_previews() pairs two snapshots' loans, where "original"
    means the previous snapshot rather than the persisted record.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .core import (
    Fee, FeeConfig, Loan, EditableField, PortfolioView, PricingError,
    index_loans, to_decimal,
)
from .change_ledger import (
    ChangeLedger, PendingFeeChange, LedgerEvent, LedgerEventKind,
)
from .formula import (
    calculate_effective_rate, calculate_interest, calculate_fee_amount,
    calculate_total_fees, calculate_net_proceeds,
)
from .logging import get_logger


logger = get_logger(__name__)

# Python-style aliases accepted in explicit pricing inputs.
_RATE_ALIASES = {
    'base_rate': EditableField.BASE_RATE,
    'spread': EditableField.SPREAD,
}

# Fee attributes whose change recomputes an overridden fee.
AMOUNT_DRIVING_FIELDS = frozenset({'flat_amount', 'rate', 'basis', 'tiers', 'is_waived'})


# ============================================================================
# PROJECTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Preview:
    """Projected figures of one loan and the values they are compared against."""
    loan_id: str
    effective_rate: Decimal
    interest_amount: Decimal
    total_fees: Decimal
    net_proceeds: Decimal
    original_effective_rate: Decimal
    original_interest_amount: Decimal
    original_total_fees: Decimal
    original_net_proceeds: Decimal

    @property
    def rate_delta(self) -> Decimal:
        return self.effective_rate - self.original_effective_rate

    @property
    def interest_delta(self) -> Decimal:
        return self.interest_amount - self.original_interest_amount

    @property
    def fees_delta(self) -> Decimal:
        return self.total_fees - self.original_total_fees

    @property
    def net_delta(self) -> Decimal:
        return self.net_proceeds - self.original_net_proceeds

    @property
    def is_unchanged(self) -> bool:
        return not (self.rate_delta or self.interest_delta or self.fees_delta or self.net_delta)


@dataclass(frozen=True, slots=True)
class PlaybackPreview(Preview):
    """Preview of a snapshot pair, carrying both sides' rate inputs."""
    base_rate: Decimal = Decimal("0")
    spread: Decimal = Decimal("0")
    original_base_rate: Decimal = Decimal("0")
    original_spread: Decimal = Decimal("0")


def parse_rate_inputs(pricing: Optional[Mapping[Any, Any]]) -> Dict[EditableField, Decimal]:
    """
    Normalize explicit pricing inputs to EditableField -> Decimal.

    Keys may be EditableField members, field paths ("pricing.baseRate") or
    attribute names ("base_rate", "spread"). None values are skipped.

    Raises:
        UnknownField: For any other key, or a non-rate field
    """
    if not pricing:
        return {}
    inputs: Dict[EditableField, Decimal] = {}
    for key, value in pricing.items():
        editable = _RATE_ALIASES.get(key) if isinstance(key, str) else None
        if editable is None:
            editable = EditableField.parse(key)
        if not editable.is_rate:
            raise ValueError(f"{editable.value} is not a rate input")
        if value is not None:
            inputs[editable] = to_decimal(value)
    return inputs


def materialize_fee_add(
    entry: PendingFeeChange,
    config: FeeConfig,
    loan: Loan,
) -> Fee:
    """
    Build the fee a pending add would create, with its amount calculated.

    Updates merged into the add entry override the catalogue defaults.
    """
    fee = Fee(
        id=entry.fee_id,
        fee_config_id=config.id,
        name=entry.fee_name or config.name,
        code=config.code,
        calculation_type=config.calculation_type,
        flat_amount=config.default_flat_amount,
        rate=config.default_rate,
        basis=config.default_basis,
        tiers=config.default_tiers,
        currency=loan.currency,
    )
    return apply_fee_updates(fee, entry.updates, loan)


def apply_fee_updates(fee: Fee, updates: Mapping[str, Any], loan: Loan) -> Fee:
    """
    Fee with pending updates applied.

    An explicit calculated_amount is an override: the fee is marked
    is_overridden so recalculation keeps the amount. An overridden fee keeps
    its amount until one of AMOUNT_DRIVING_FIELDS changes.
    """
    updates = updates or {}
    updated = replace(fee, **updates)
    if 'calculated_amount' in updates:
        if 'is_overridden' in updates:
            return updated
        return replace(updated, is_overridden=True)
    if updated.is_overridden and not AMOUNT_DRIVING_FIELDS.intersection(updates):
        return updated
    return replace(updated, calculated_amount=calculate_fee_amount(updated, loan))


def project_fees(loan: Loan, ledger: ChangeLedger, portfolio: PortfolioView) -> Tuple[Fee, ...]:
    """
    The loan's fee list after applying pending adds, updates and deletes.

    Raises:
        FeeConfigNotFound: If a pending add refers to a missing catalogue entry
    """
    fees: List[Fee] = []
    for fee in loan.fees:
        if ledger.is_fee_deleted(loan.id, fee.id):
            continue
        updates = ledger.get_fee_updates(loan.id, fee.id)
        fees.append(apply_fee_updates(fee, updates, loan) if updates else fee)
    for entry in ledger.get_pending_fee_adds(loan.id):
        config = portfolio.get_fee_config(entry.fee_config_id)
        fees.append(materialize_fee_add(entry, config, loan))
    return tuple(fees)


def project_loan(
    loan: Loan,
    ledger: ChangeLedger,
    portfolio: PortfolioView,
    pricing: Optional[Mapping[Any, Any]] = None,
) -> Preview:
    """Pure projection of one loan; see PreviewCalculator.calculate_preview()."""
    inputs = dict(ledger.pending_rate_inputs(loan.id))
    inputs.update(parse_rate_inputs(pricing))
    base_rate = inputs.get(EditableField.BASE_RATE, loan.pricing.base_rate)
    spread = inputs.get(EditableField.SPREAD, loan.pricing.spread)

    effective_rate = calculate_effective_rate(base_rate, spread)
    interest = calculate_interest(
        loan.principal,
        effective_rate,
        loan.start_date,
        loan.maturity_date,
        loan.pricing.day_count_convention,
        loan.pricing.accrual_method,
        fallback=loan.interest_amount,
    )
    total_fees = calculate_total_fees(project_fees(loan, ledger, portfolio))

    return Preview(
        loan_id=loan.id,
        effective_rate=effective_rate,
        interest_amount=interest,
        total_fees=total_fees,
        net_proceeds=calculate_net_proceeds(loan.principal, interest, total_fees),
        original_effective_rate=loan.pricing.effective_rate,
        original_interest_amount=loan.interest_amount,
        original_total_fees=loan.total_fees,
        original_net_proceeds=loan.net_proceeds,
    )


# ============================================================================
# PREVIEW CALCULATOR
# ============================================================================

class PreviewCalculator:
    """
    Cache of live-mode projections, kept current by ledger events.

    A missing entry means the loan has no pending changes and the baseline
    should be displayed.

    Example:
        calculator = PreviewCalculator(portfolio, ledger)
        ledger.track_field_change("L1", EditableField.BASE_RATE, None, 0.05, 0.06)
        calculator.get_preview("L1").effective_rate   # Decimal("0.0800")
    """

    def __init__(self, portfolio: PortfolioView, ledger: ChangeLedger, subscribe: bool = True):
        """
        Args:
            portfolio: Baseline the projections start from
            ledger: Pending changes to project
            subscribe: Recompute automatically on ledger events
        """
        self.portfolio = portfolio
        self.ledger = ledger
        self._previews: Dict[str, Preview] = {}
        self._subscribed = subscribe
        if subscribe:
            ledger.add_listener(self._on_ledger_event)

    def detach(self) -> None:
        """Stop listening to the ledger."""
        if self._subscribed:
            self.ledger.remove_listener(self._on_ledger_event)
            self._subscribed = False

    def _on_ledger_event(self, event: LedgerEvent) -> None:
        """
        Keep the cache current. A loan that cannot be projected loses its
        cached preview; the error surfaces on the next explicit
        calculate_preview() call, never inside a ledger mutation.
        """
        if event.kind is LedgerEventKind.CLEARED:
            self.clear_all_previews()
        elif event.loan_id is not None:
            if not self.ledger.has_changes_for_loan(event.loan_id):
                self.clear_preview(event.loan_id)
                return
            try:
                self.calculate_preview(event.loan_id)
            except PricingError as exc:
                logger.warning("Cannot preview %s: %s", event.loan_id, exc)
                self.clear_preview(event.loan_id)

    def calculate_preview(
        self,
        loan_id: str,
        pricing: Optional[Mapping[Any, Any]] = None,
    ) -> Preview:
        """
        Project one loan and cache the result.

        Args:
            loan_id: Loan to project
            pricing: Explicit rate inputs; they win over pending values for the
                same field and every other pending rate value is kept

        Returns:
            A fresh Preview

        Raises:
            LoanNotFound: If the loan is not in the baseline
            FeeConfigNotFound: If a pending add refers to a missing catalogue entry
        """
        loan = self.portfolio.get_loan(loan_id)
        preview = project_loan(loan, self.ledger, self.portfolio, pricing)
        self._previews[loan_id] = preview
        logger.debug(
            "Preview %s: rate %s interest %s fees %s net %s",
            loan_id, preview.effective_rate, preview.interest_amount,
            preview.total_fees, preview.net_proceeds,
        )
        return preview

    def recalculate_for_fee_changes(self, loan_id: str) -> Preview:
        """Re-project after a fee change, reusing pending rate values."""
        return self.calculate_preview(loan_id)

    def batch_preview(
        self,
        loan_ids: Iterable[str],
        pricing: Optional[Mapping[Any, Any]] = None,
    ) -> Dict[str, Preview]:
        """
        Project many loans with the same explicit inputs without caching.

        Used to show the effect of a bulk edit before it is tracked.
        """
        return {
            loan_id: project_loan(self.portfolio.get_loan(loan_id), self.ledger, self.portfolio, pricing)
            for loan_id in loan_ids
        }

    def clear_preview(self, loan_id: str) -> None:
        self._previews.pop(loan_id, None)

    def clear_all_previews(self) -> None:
        """Empty the cache. Must follow every ledger clear."""
        self._previews.clear()

    def get_preview(self, loan_id: str) -> Optional[Preview]:
        return self._previews.get(loan_id)

    @property
    def previews(self) -> Dict[str, Preview]:
        return dict(self._previews)

    def __repr__(self) -> str:
        return f"PreviewCalculator({len(self._previews)} previews)"


# ============================================================================
# PLAYBACK PREVIEWS
# ============================================================================

def build_playback_preview(previous: Loan, current: Loan) -> PlaybackPreview:
    """Current snapshot's figures against the previous snapshot's."""
    return PlaybackPreview(
        loan_id=current.id,
        effective_rate=current.pricing.effective_rate,
        interest_amount=current.interest_amount,
        total_fees=current.total_fees,
        net_proceeds=current.net_proceeds,
        original_effective_rate=previous.pricing.effective_rate,
        original_interest_amount=previous.interest_amount,
        original_total_fees=previous.total_fees,
        original_net_proceeds=previous.net_proceeds,
        base_rate=current.pricing.base_rate,
        spread=current.pricing.spread,
        original_base_rate=previous.pricing.base_rate,
        original_spread=previous.pricing.spread,
    )


def build_playback_previews(
    previous_loans: Iterable[Loan],
    current_loans: Iterable[Loan],
) -> Dict[str, PlaybackPreview]:
    """
    PlaybackPreview for every loan present in both snapshots, keyed by loan id.

    Loans present on one side only get no entry.
    """
    previous_index = index_loans(previous_loans)
    current_index = index_loans(current_loans)
    return {
        loan_id: build_playback_preview(previous_index[loan_id], current_index[loan_id])
        for loan_id in sorted(current_index)
        if loan_id in previous_index
    }
