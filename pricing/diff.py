"""
diff.py - Snapshot Diff Engine

Compares two complete portfolio states and produces a structured SnapshotChanges
plus per-currency aggregate deltas.

ALGORITHM:
==========

1. Index loans by id on both sides. Only loans present on BOTH sides are
   compared; loans created or removed portfolio-wide are outside the diff.
2. For each common loan, in sorted id order:
   - rates:    base_rate and spread compared independently
   - fees:     ids only in current -> added, ids only in previous -> deleted,
               ids on both sides whose calculated_amount differs -> modified
   - statuses: status and pricing_status
3. Invoices across all common loans:
   - same id owned by a different loan -> one "moved" event (source, target)
   - only in current -> added, only in previous -> deleted
   - same owner, different amount -> modified

Fee modification compares the calculated currency amount exactly, not the
configured rate: an override changes the amount without changing configuration.

AGGREGATION:
============

currency_deltas() sums before/after figures over affected loans only. A loan is
affected when a change detail references it or when its fees, interest, net
proceeds or effective rate differ. The average-rate delta is the plain mean of
per-loan effective-rate differences unless RateWeighting.PRINCIPAL is selected.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from .core import (
    Loan, Invoice, EditableField, ChangeAction,
    BASIS_POINTS, ZERO,
    index_loans,
)
from .snapshot import (
    Snapshot, SnapshotChanges,
    FeeChangeDetail, RateChangeDetail, InvoiceChangeDetail, StatusChangeDetail,
)


class RateWeighting(Enum):
    """How per-loan effective-rate differences are averaged within a currency."""
    UNWEIGHTED = "unweighted"
    PRINCIPAL = "principal"


LoanSource = Union[Snapshot, Iterable[Loan]]


def _loans_of(source: LoanSource) -> List[Loan]:
    if isinstance(source, Snapshot):
        return list(source.loans)
    return list(source)


# ============================================================================
# PER-LOAN COMPARISON
# ============================================================================

def _rate_changes(previous: Loan, current: Loan) -> List[RateChangeDetail]:
    details = []
    for editable, before, after in (
        (EditableField.BASE_RATE, previous.pricing.base_rate, current.pricing.base_rate),
        (EditableField.SPREAD, previous.pricing.spread, current.pricing.spread),
    ):
        if before != after:
            details.append(RateChangeDetail(
                loan_id=current.id,
                loan_number=current.loan_number,
                currency=current.currency,
                field=editable,
                old_value=before,
                new_value=after,
                old_effective_rate=previous.pricing.effective_rate,
                new_effective_rate=current.pricing.effective_rate,
            ))
    return details


def _fee_changes(previous: Loan, current: Loan) -> List[FeeChangeDetail]:
    before = {fee.id: fee for fee in previous.fees}
    after_ids = {fee.id for fee in current.fees}
    details = []

    for fee in current.fees:
        old = before.get(fee.id)
        if old is None:
            details.append(FeeChangeDetail(
                action=ChangeAction.ADDED, loan_id=current.id, loan_number=current.loan_number,
                fee_id=fee.id, fee_name=fee.name, fee_code=fee.code, currency=current.currency,
                new_amount=fee.calculated_amount,
            ))
        elif old.calculated_amount != fee.calculated_amount:
            details.append(FeeChangeDetail(
                action=ChangeAction.MODIFIED, loan_id=current.id, loan_number=current.loan_number,
                fee_id=fee.id, fee_name=fee.name, fee_code=fee.code, currency=current.currency,
                old_amount=old.calculated_amount, new_amount=fee.calculated_amount,
            ))

    for fee in previous.fees:
        if fee.id not in after_ids:
            details.append(FeeChangeDetail(
                action=ChangeAction.DELETED, loan_id=current.id, loan_number=current.loan_number,
                fee_id=fee.id, fee_name=fee.name, fee_code=fee.code, currency=current.currency,
                old_amount=fee.calculated_amount,
            ))
    return details


def _status_changes(previous: Loan, current: Loan) -> List[StatusChangeDetail]:
    details = []
    for editable, before, after in (
        (EditableField.STATUS, previous.status, current.status),
        (EditableField.PRICING_STATUS, previous.pricing_status, current.pricing_status),
    ):
        if before != after:
            details.append(StatusChangeDetail(
                loan_id=current.id,
                loan_number=current.loan_number,
                field=editable,
                old_value=before.value,
                new_value=after.value,
            ))
    return details


def _invoice_owners(loans: Iterable[Loan]) -> Dict[str, Tuple[Loan, Invoice]]:
    owners: Dict[str, Tuple[Loan, Invoice]] = {}
    for loan in loans:
        for invoice in loan.invoices:
            owners.setdefault(invoice.id, (loan, invoice))
    return owners


def _invoice_changes(previous: List[Loan], current: List[Loan]) -> List[InvoiceChangeDetail]:
    before = _invoice_owners(previous)
    after = _invoice_owners(current)
    details = []

    for invoice_id in sorted(set(before) | set(after)):
        if invoice_id in before and invoice_id in after:
            old_loan, old_invoice = before[invoice_id]
            new_loan, new_invoice = after[invoice_id]
            if old_loan.id != new_loan.id:
                details.append(InvoiceChangeDetail(
                    action=ChangeAction.MOVED,
                    invoice_id=invoice_id,
                    invoice_number=new_invoice.invoice_number,
                    amount=new_invoice.amount,
                    currency=new_invoice.currency or new_loan.currency,
                    source_loan_id=old_loan.id,
                    source_loan_number=old_loan.loan_number,
                    target_loan_id=new_loan.id,
                    target_loan_number=new_loan.loan_number,
                ))
            elif old_invoice.amount != new_invoice.amount:
                details.append(InvoiceChangeDetail(
                    action=ChangeAction.MODIFIED,
                    invoice_id=invoice_id,
                    invoice_number=new_invoice.invoice_number,
                    amount=new_invoice.amount,
                    currency=new_invoice.currency or new_loan.currency,
                    loan_id=new_loan.id,
                    loan_number=new_loan.loan_number,
                ))
        elif invoice_id in after:
            loan, invoice = after[invoice_id]
            details.append(InvoiceChangeDetail(
                action=ChangeAction.ADDED,
                invoice_id=invoice_id,
                invoice_number=invoice.invoice_number,
                amount=invoice.amount,
                currency=invoice.currency or loan.currency,
                loan_id=loan.id,
                loan_number=loan.loan_number,
            ))
        else:
            loan, invoice = before[invoice_id]
            details.append(InvoiceChangeDetail(
                action=ChangeAction.DELETED,
                invoice_id=invoice_id,
                invoice_number=invoice.invoice_number,
                amount=invoice.amount,
                currency=invoice.currency or loan.currency,
                loan_id=loan.id,
                loan_number=loan.loan_number,
            ))
    return details


# ============================================================================
# DIFF
# ============================================================================

def _common_pairs(previous: Iterable[Loan], current: Iterable[Loan]) -> List[Tuple[Loan, Loan]]:
    before = index_loans(previous)
    after = index_loans(current)
    return [(before[loan_id], after[loan_id]) for loan_id in sorted(set(before) & set(after))]


def diff_loans(previous_loans: Iterable[Loan], current_loans: Iterable[Loan]) -> SnapshotChanges:
    """
    Structured changes between two loan lists.

    Args:
        previous_loans: Older state
        current_loans: Newer state

    Returns:
        SnapshotChanges covering loans present on both sides. Disjoint loans
        contribute nothing; that is not an error.
    """
    pairs = _common_pairs(previous_loans, current_loans)
    fees: List[FeeChangeDetail] = []
    rates: List[RateChangeDetail] = []
    statuses: List[StatusChangeDetail] = []
    for previous, current in pairs:
        rates.extend(_rate_changes(previous, current))
        fees.extend(_fee_changes(previous, current))
        statuses.extend(_status_changes(previous, current))
    invoices = _invoice_changes([p for p, _ in pairs], [c for _, c in pairs])
    return SnapshotChanges(fees=fees, rates=rates, invoices=invoices, statuses=statuses)


def diff_snapshots(previous: Snapshot, current: Snapshot) -> SnapshotChanges:
    """Structured changes that lead from previous to current."""
    return diff_loans(previous.loans, current.loans)


# ============================================================================
# AGGREGATE DELTAS
# ============================================================================

@dataclass(frozen=True, slots=True)
class CurrencyDelta:
    """
    Before/after totals of the affected loans of one currency.

    Both average-rate interpretations are carried; avg_rate_change returns the
    one selected by weighting.
    """
    currency: str
    loan_count: int
    net_proceeds_before: Decimal
    net_proceeds_after: Decimal
    fees_before: Decimal
    fees_after: Decimal
    interest_before: Decimal
    interest_after: Decimal
    unweighted_rate_change: Decimal
    weighted_rate_change: Decimal
    weighting: RateWeighting = RateWeighting.UNWEIGHTED

    @property
    def net_proceeds_change(self) -> Decimal:
        return self.net_proceeds_after - self.net_proceeds_before

    @property
    def fees_change(self) -> Decimal:
        return self.fees_after - self.fees_before

    @property
    def interest_change(self) -> Decimal:
        return self.interest_after - self.interest_before

    @property
    def avg_rate_change(self) -> Decimal:
        if self.weighting is RateWeighting.PRINCIPAL:
            return self.weighted_rate_change
        return self.unweighted_rate_change

    @property
    def avg_rate_change_bps(self) -> Decimal:
        return self.avg_rate_change * BASIS_POINTS


def _numerically_changed(previous: Loan, current: Loan) -> bool:
    return (previous.total_fees != current.total_fees
            or previous.interest_amount != current.interest_amount
            or previous.net_proceeds != current.net_proceeds
            or previous.pricing.effective_rate != current.pricing.effective_rate)


def affected_loan_ids(
    previous: LoanSource,
    current: LoanSource,
    changes: Optional[SnapshotChanges] = None,
) -> Set[str]:
    """Common loans referenced by a change detail or with a numeric difference."""
    pairs = _common_pairs(_loans_of(previous), _loans_of(current))
    if changes is None:
        changes = diff_loans([p for p, _ in pairs], [c for _, c in pairs])
    referenced = changes.loan_ids
    return {
        current_loan.id for previous_loan, current_loan in pairs
        if current_loan.id in referenced or _numerically_changed(previous_loan, current_loan)
    }


def currency_deltas(
    previous: LoanSource,
    current: LoanSource,
    changes: Optional[SnapshotChanges] = None,
    weighting: Union[RateWeighting, str] = RateWeighting.UNWEIGHTED,
) -> Dict[str, CurrencyDelta]:
    """
    Per-currency aggregate deltas over affected loans.

    Args:
        previous: Older snapshot or loan list
        current: Newer snapshot or loan list
        changes: Change set deciding which loans are affected; computed with
            diff_loans() when omitted
        weighting: Interpretation used by CurrencyDelta.avg_rate_change

    Returns:
        One CurrencyDelta for every currency present on either side, sorted by
        currency. Currencies without affected loans report zeros.
    """
    weighting = RateWeighting(weighting)
    previous_loans = _loans_of(previous)
    current_loans = _loans_of(current)
    affected = affected_loan_ids(previous_loans, current_loans, changes)
    currencies = {loan.currency for loan in previous_loans} | {loan.currency for loan in current_loans}

    groups: Dict[str, List[Tuple[Loan, Loan]]] = {currency: [] for currency in currencies}
    for previous_loan, current_loan in _common_pairs(previous_loans, current_loans):
        if current_loan.id in affected:
            groups.setdefault(current_loan.currency, []).append((previous_loan, current_loan))

    deltas: Dict[str, CurrencyDelta] = {}
    for currency in sorted(groups):
        pairs = groups[currency]
        rate_diffs = [c.pricing.effective_rate - p.pricing.effective_rate for p, c in pairs]
        principal = sum((c.principal for _, c in pairs), ZERO)
        weighted = sum(
            (diff * c.principal for diff, (_, c) in zip(rate_diffs, pairs)), ZERO
        )
        deltas[currency] = CurrencyDelta(
            currency=currency,
            loan_count=len(pairs),
            net_proceeds_before=sum((p.net_proceeds for p, _ in pairs), ZERO),
            net_proceeds_after=sum((c.net_proceeds for _, c in pairs), ZERO),
            fees_before=sum((p.total_fees for p, _ in pairs), ZERO),
            fees_after=sum((c.total_fees for _, c in pairs), ZERO),
            interest_before=sum((p.interest_amount for p, _ in pairs), ZERO),
            interest_after=sum((c.interest_amount for _, c in pairs), ZERO),
            unweighted_rate_change=sum(rate_diffs, ZERO) / len(pairs) if pairs else ZERO,
            weighted_rate_change=weighted / principal if principal > 0 else ZERO,
            weighting=weighting,
        )
    return deltas
