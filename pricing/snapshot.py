"""
snapshot.py - Portfolio Snapshots and Recorded Changes

A Snapshot is an immutable, timestamped, user-attributed capture of every loan
of a portfolio at save time, together with:

    - changes: the SnapshotChanges recorded just before the save (the
      authoritative list of what changed, never recomputed)
    - summary: per-currency totals of the captured loans
    - delta:   per-currency change of those totals against the previous
      snapshot, or None for the first snapshot

Snapshots of one portfolio form a strictly time-ordered sequence held by
SnapshotHistory. Once created they are never mutated; pruning removes the
oldest ones.

Serialized change details use the camelCase keys of the persisted record
(SnapshotChanges.to_dict / from_dict).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import (
    Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple,
)

from .core import (
    Loan, EditableField, ChangeAction, FeeChangeType, PortfolioView,
    SnapshotNotFound, SnapshotOrderError,
    BASIS_POINTS, ZERO,
    content_hash, to_decimal,
)
from .change_ledger import ChangeLedger, PendingFeeChange
from .formula import calculate_effective_rate
from .preview import apply_fee_updates, materialize_fee_add
from .logging import get_logger


logger = get_logger(__name__)

DEFAULT_RETENTION_LIMIT = 100

# Wire names of editable fields in persisted change records.
_WIRE_FIELD = {
    EditableField.BASE_RATE: "baseRate",
    EditableField.SPREAD: "spread",
    EditableField.STATUS: "status",
    EditableField.PRICING_STATUS: "pricingStatus",
}
_FIELD_FROM_WIRE = {wire: editable for editable, wire in _WIRE_FIELD.items()}


def _number(value: Optional[Decimal]) -> Optional[float]:
    return None if value is None else float(value)


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


# ============================================================================
# CHANGE DETAILS
# ============================================================================

@dataclass(frozen=True, slots=True)
class FeeChangeDetail:
    action: ChangeAction
    loan_id: str
    fee_id: str
    loan_number: str = ""
    fee_name: str = ""
    fee_code: str = ""
    currency: str = ""
    old_amount: Optional[Decimal] = None
    new_amount: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, 'action', ChangeAction(self.action))
        object.__setattr__(self, 'old_amount', _optional_decimal(self.old_amount))
        object.__setattr__(self, 'new_amount', _optional_decimal(self.new_amount))

    @property
    def amount_change(self) -> Decimal:
        return (self.new_amount or ZERO) - (self.old_amount or ZERO)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'action': self.action.value,
            'loanId': self.loan_id,
            'loanNumber': self.loan_number,
            'feeId': self.fee_id,
            'feeName': self.fee_name,
            'feeCode': self.fee_code,
            'currency': self.currency,
        }
        if self.old_amount is not None:
            data['oldAmount'] = _number(self.old_amount)
        if self.new_amount is not None:
            data['newAmount'] = _number(self.new_amount)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'FeeChangeDetail':
        return cls(
            action=data['action'],
            loan_id=data['loanId'],
            fee_id=data['feeId'],
            loan_number=data.get('loanNumber', ""),
            fee_name=data.get('feeName', ""),
            fee_code=data.get('feeCode', ""),
            currency=data.get('currency', ""),
            old_amount=data.get('oldAmount'),
            new_amount=data.get('newAmount'),
        )


@dataclass(frozen=True, slots=True)
class RateChangeDetail:
    loan_id: str
    field: EditableField
    old_value: Decimal
    new_value: Decimal
    old_effective_rate: Decimal
    new_effective_rate: Decimal
    loan_number: str = ""
    currency: str = ""
    action: ChangeAction = ChangeAction.MODIFIED

    def __post_init__(self):
        editable = EditableField.parse(self.field)
        if not editable.is_rate:
            raise ValueError(f"{editable.value} is not a rate field")
        object.__setattr__(self, 'field', editable)
        object.__setattr__(self, 'action', ChangeAction(self.action))
        for name in ('old_value', 'new_value', 'old_effective_rate', 'new_effective_rate'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'loanId': self.loan_id,
            'loanNumber': self.loan_number,
            'currency': self.currency,
            'field': _WIRE_FIELD[self.field],
            'oldValue': _number(self.old_value),
            'newValue': _number(self.new_value),
            'oldEffectiveRate': _number(self.old_effective_rate),
            'newEffectiveRate': _number(self.new_effective_rate),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'RateChangeDetail':
        return cls(
            loan_id=data['loanId'],
            field=_FIELD_FROM_WIRE[data['field']],
            old_value=data['oldValue'],
            new_value=data['newValue'],
            old_effective_rate=data['oldEffectiveRate'],
            new_effective_rate=data['newEffectiveRate'],
            loan_number=data.get('loanNumber', ""),
            currency=data.get('currency', ""),
            action=data.get('action', ChangeAction.MODIFIED.value),
        )


@dataclass(frozen=True, slots=True)
class InvoiceChangeDetail:
    """
    An invoice added to, deleted from, or modified on one loan (loan_id), or
    moved between two loans (source_loan_id -> target_loan_id).
    """
    action: ChangeAction
    invoice_id: str
    amount: Decimal
    invoice_number: str = ""
    currency: str = ""
    source_loan_id: Optional[str] = None
    source_loan_number: Optional[str] = None
    target_loan_id: Optional[str] = None
    target_loan_number: Optional[str] = None
    loan_id: Optional[str] = None
    loan_number: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'action', ChangeAction(self.action))
        object.__setattr__(self, 'amount', to_decimal(self.amount))

    @property
    def loan_ids(self) -> Tuple[str, ...]:
        ids = (self.loan_id, self.source_loan_id, self.target_loan_id)
        return tuple(loan_id for loan_id in ids if loan_id is not None)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'action': self.action.value,
            'invoiceId': self.invoice_id,
            'invoiceNumber': self.invoice_number,
            'amount': _number(self.amount),
            'currency': self.currency,
        }
        optional = {
            'sourceLoanId': self.source_loan_id,
            'sourceLoanNumber': self.source_loan_number,
            'targetLoanId': self.target_loan_id,
            'targetLoanNumber': self.target_loan_number,
            'loanId': self.loan_id,
            'loanNumber': self.loan_number,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'InvoiceChangeDetail':
        return cls(
            action=data['action'],
            invoice_id=data['invoiceId'],
            amount=data['amount'],
            invoice_number=data.get('invoiceNumber', ""),
            currency=data.get('currency', ""),
            source_loan_id=data.get('sourceLoanId'),
            source_loan_number=data.get('sourceLoanNumber'),
            target_loan_id=data.get('targetLoanId'),
            target_loan_number=data.get('targetLoanNumber'),
            loan_id=data.get('loanId'),
            loan_number=data.get('loanNumber'),
        )


@dataclass(frozen=True, slots=True)
class StatusChangeDetail:
    loan_id: str
    field: EditableField
    old_value: str
    new_value: str
    loan_number: str = ""
    action: ChangeAction = ChangeAction.MODIFIED

    def __post_init__(self):
        editable = EditableField.parse(self.field)
        if editable.is_rate:
            raise ValueError(f"{editable.value} is not a status field")
        object.__setattr__(self, 'field', editable)
        object.__setattr__(self, 'action', ChangeAction(self.action))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'loanId': self.loan_id,
            'loanNumber': self.loan_number,
            'field': _WIRE_FIELD[self.field],
            'oldValue': self.old_value,
            'newValue': self.new_value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'StatusChangeDetail':
        return cls(
            loan_id=data['loanId'],
            field=_FIELD_FROM_WIRE[data['field']],
            old_value=data['oldValue'],
            new_value=data['newValue'],
            loan_number=data.get('loanNumber', ""),
            action=data.get('action', ChangeAction.MODIFIED.value),
        )


@dataclass(frozen=True, slots=True)
class SnapshotChanges:
    """
    What changed to produce a snapshot, grouped by kind.

    Recorded before save from the ChangeLedger, or computed after the fact by
    diff_snapshots(). The recorded form is the source of truth for the
    changed-only filter.
    """
    fees: Tuple[FeeChangeDetail, ...] = ()
    rates: Tuple[RateChangeDetail, ...] = ()
    invoices: Tuple[InvoiceChangeDetail, ...] = ()
    statuses: Tuple[StatusChangeDetail, ...] = ()

    def __post_init__(self):
        for name in ('fees', 'rates', 'invoices', 'statuses'):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @property
    def loan_ids(self) -> FrozenSet[str]:
        """Every loan referenced, including both ends of an invoice move."""
        ids = {detail.loan_id for detail in self.fees}
        ids.update(detail.loan_id for detail in self.rates)
        ids.update(detail.loan_id for detail in self.statuses)
        for detail in self.invoices:
            ids.update(detail.loan_ids)
        return frozenset(ids)

    @property
    def change_count(self) -> int:
        return len(self.fees) + len(self.rates) + len(self.invoices) + len(self.statuses)

    @property
    def is_empty(self) -> bool:
        return self.change_count == 0

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            'fees': [detail.to_dict() for detail in self.fees],
            'rates': [detail.to_dict() for detail in self.rates],
            'invoices': [detail.to_dict() for detail in self.invoices],
            'statuses': [detail.to_dict() for detail in self.statuses],
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'SnapshotChanges':
        """Parse the persisted shape; missing groups are empty."""
        data = data or {}
        return cls(
            fees=tuple(FeeChangeDetail.from_dict(d) for d in data.get('fees', ())),
            rates=tuple(RateChangeDetail.from_dict(d) for d in data.get('rates', ())),
            invoices=tuple(InvoiceChangeDetail.from_dict(d) for d in data.get('invoices', ())),
            statuses=tuple(StatusChangeDetail.from_dict(d) for d in data.get('statuses', ())),
        )


EMPTY_CHANGES = SnapshotChanges()


# ============================================================================
# SUMMARIES
# ============================================================================

@dataclass(frozen=True, slots=True)
class CurrencySummary:
    """Totals of all loans of one currency. avg_rate is principal-weighted."""
    loan_count: int = 0
    total_amount: Decimal = ZERO
    total_fees: Decimal = ZERO
    total_interest: Decimal = ZERO
    net_proceeds: Decimal = ZERO
    avg_rate: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class SummaryDelta:
    """Change of a CurrencySummary between consecutive snapshots."""
    fees_change: Decimal
    interest_change: Decimal
    net_proceeds_change: Decimal
    avg_rate_change_bps: Decimal


def calculate_summary(loans: Iterable[Loan]) -> Dict[str, CurrencySummary]:
    """
    Per-currency totals of a loan list.

    The average rate is weighted by principal; a currency whose principal sums
    to zero reports an average of 0.
    """
    groups: Dict[str, List[Loan]] = {}
    for loan in loans:
        groups.setdefault(loan.currency, []).append(loan)

    summary: Dict[str, CurrencySummary] = {}
    for currency in sorted(groups):
        group = groups[currency]
        total_amount = sum((loan.principal for loan in group), ZERO)
        weighted = sum((loan.pricing.effective_rate * loan.principal for loan in group), ZERO)
        summary[currency] = CurrencySummary(
            loan_count=len(group),
            total_amount=total_amount,
            total_fees=sum((loan.total_fees for loan in group), ZERO),
            total_interest=sum((loan.interest_amount for loan in group), ZERO),
            net_proceeds=sum((loan.net_proceeds for loan in group), ZERO),
            avg_rate=weighted / total_amount if total_amount > 0 else ZERO,
        )
    return summary


def calculate_summary_delta(
    current: Mapping[str, CurrencySummary],
    previous: Optional[Mapping[str, CurrencySummary]],
) -> Optional[Dict[str, SummaryDelta]]:
    """
    Per-currency change between two summaries, or None without a previous one.

    A currency missing on one side counts as all zeros there.
    """
    if previous is None:
        return None
    empty = CurrencySummary()
    delta: Dict[str, SummaryDelta] = {}
    for currency in sorted(set(current) | set(previous)):
        now = current.get(currency, empty)
        before = previous.get(currency, empty)
        delta[currency] = SummaryDelta(
            fees_change=now.total_fees - before.total_fees,
            interest_change=now.total_interest - before.total_interest,
            net_proceeds_change=now.net_proceeds - before.net_proceeds,
            avg_rate_change_bps=(now.avg_rate - before.avg_rate) * BASIS_POINTS,
        )
    return delta


# ============================================================================
# SNAPSHOT
# ============================================================================

@dataclass(frozen=True, slots=True)
class Snapshot:
    """Immutable capture of a portfolio at save time."""
    id: str
    portfolio_id: str
    timestamp: datetime
    loans: Tuple[Loan, ...]
    changes: SnapshotChanges = EMPTY_CHANGES
    summary: Mapping[str, CurrencySummary] = field(default_factory=dict)
    delta: Optional[Mapping[str, SummaryDelta]] = None
    user_id: str = "system"
    user_name: str = "System"
    change_count: int = 0
    description: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'loans', tuple(self.loans))
        object.__setattr__(self, 'summary', MappingProxyType(dict(self.summary)))
        if self.delta is not None:
            object.__setattr__(self, 'delta', MappingProxyType(dict(self.delta)))

    @property
    def fingerprint(self) -> str:
        """Deterministic content hash of the captured state and its changes."""
        return content_hash([self.portfolio_id, self.timestamp, list(self.loans), self.changes])

    @property
    def loan_index(self) -> Dict[str, Loan]:
        return {loan.id: loan for loan in self.loans}

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        for loan in self.loans:
            if loan.id == loan_id:
                return loan
        return None

    def __repr__(self) -> str:
        return (f"Snapshot({self.id} {self.timestamp.isoformat()} by {self.user_name}, "
                f"{len(self.loans)} loans, {self.change_count} changes)")


def create_snapshot(
    portfolio_id: str,
    loans: Sequence[Loan],
    timestamp: datetime,
    changes: Optional[SnapshotChanges] = None,
    previous: Optional[Snapshot] = None,
    user_id: str = "system",
    user_name: str = "System",
    description: Optional[str] = None,
    snapshot_id: Optional[str] = None,
    change_count: Optional[int] = None,
) -> Snapshot:
    """
    Capture loans as a new snapshot.

    Args:
        portfolio_id: Portfolio the loans belong to
        loans: Complete persisted loan list after the save
        timestamp: Save time
        changes: Changes recorded before the save
        previous: Latest earlier snapshot; its summary is the delta baseline
        user_id: Author id
        user_name: Author display name
        description: Optional free text
        snapshot_id: Explicit id; defaults to one derived from the content
        change_count: Defaults to the number of recorded change details

    Returns:
        The new Snapshot
    """
    changes = changes or EMPTY_CHANGES
    summary = calculate_summary(loans)
    delta = calculate_summary_delta(summary, previous.summary if previous else None)
    if snapshot_id is None:
        snapshot_id = "snap-" + content_hash([portfolio_id, timestamp, list(loans), changes])[:12]
    return Snapshot(
        id=snapshot_id,
        portfolio_id=portfolio_id,
        timestamp=timestamp,
        loans=tuple(loans),
        changes=changes,
        summary=summary,
        delta=delta,
        user_id=user_id,
        user_name=user_name,
        change_count=changes.change_count if change_count is None else change_count,
        description=description,
    )


def validate_order(snapshots: Sequence[Snapshot]) -> None:
    """Raise SnapshotOrderError unless timestamps strictly increase."""
    for earlier, later in zip(snapshots, snapshots[1:]):
        if later.timestamp <= earlier.timestamp:
            raise SnapshotOrderError(
                f"Snapshot {later.id} at {later.timestamp.isoformat()} does not follow "
                f"{earlier.id} at {earlier.timestamp.isoformat()}"
            )


# ============================================================================
# SNAPSHOT HISTORY
# ============================================================================

class SnapshotHistory:
    """
    Time-ordered snapshots of one portfolio, oldest first.

    Example:
        history = SnapshotHistory("pf-1")
        first = history.record(loans, datetime(2025, 1, 1), user_name="Ana")
        second = history.record(saved_loans, datetime(2025, 1, 2), changes=changes)
        second.delta["USD"].fees_change
    """

    def __init__(self, portfolio_id: str, snapshots: Iterable[Snapshot] = ()):
        self.portfolio_id = portfolio_id
        self._snapshots: List[Snapshot] = []
        for snapshot in snapshots:
            self.append(snapshot)

    def append(self, snapshot: Snapshot) -> None:
        """
        Add an existing snapshot to the end of the history.

        Raises:
            ValueError: If the snapshot belongs to another portfolio or its id
                is already present
            SnapshotOrderError: If it is not later than the latest snapshot
        """
        if snapshot.portfolio_id != self.portfolio_id:
            raise ValueError(
                f"Snapshot {snapshot.id} belongs to {snapshot.portfolio_id}, not {self.portfolio_id}"
            )
        if any(existing.id == snapshot.id for existing in self._snapshots):
            raise ValueError(f"Snapshot {snapshot.id} is already in the history")
        latest = self.latest
        if latest is not None and snapshot.timestamp <= latest.timestamp:
            raise SnapshotOrderError(
                f"Snapshot {snapshot.id} at {snapshot.timestamp.isoformat()} is not later "
                f"than {latest.id} at {latest.timestamp.isoformat()}"
            )
        self._snapshots.append(snapshot)

    def record(
        self,
        loans: Sequence[Loan],
        timestamp: datetime,
        changes: Optional[SnapshotChanges] = None,
        user_id: str = "system",
        user_name: str = "System",
        description: Optional[str] = None,
    ) -> Snapshot:
        """Create a snapshot against the latest one and append it."""
        snapshot = create_snapshot(
            self.portfolio_id, loans, timestamp,
            changes=changes,
            previous=self.latest,
            user_id=user_id,
            user_name=user_name,
            description=description,
        )
        self.append(snapshot)
        logger.info(
            "Recorded snapshot %s for %s: %d loans, %d changes",
            snapshot.id, self.portfolio_id, len(snapshot.loans), snapshot.change_count,
        )
        return snapshot

    def get(self, snapshot_id: str) -> Snapshot:
        return self._snapshots[self.index_of(snapshot_id)]

    def index_of(self, snapshot_id: str) -> int:
        for i, snapshot in enumerate(self._snapshots):
            if snapshot.id == snapshot_id:
                return i
        raise SnapshotNotFound(f"Snapshot {snapshot_id!r} not found for {self.portfolio_id}")

    @property
    def latest(self) -> Optional[Snapshot]:
        return self._snapshots[-1] if self._snapshots else None

    @property
    def snapshots(self) -> List[Snapshot]:
        return list(self._snapshots)

    def prune(self, retention_limit: int = DEFAULT_RETENTION_LIMIT) -> int:
        """
        Drop the oldest snapshots beyond retention_limit.

        Returns:
            Number of snapshots removed
        """
        if retention_limit < 0:
            raise ValueError(f"retention_limit must be non-negative, got {retention_limit}")
        excess = len(self._snapshots) - retention_limit
        if excess <= 0:
            return 0
        del self._snapshots[:excess]
        logger.info("Pruned %d snapshots of %s", excess, self.portfolio_id)
        return excess

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[Snapshot]:
        return iter(list(self._snapshots))

    def __repr__(self) -> str:
        return f"SnapshotHistory({self.portfolio_id}, {len(self._snapshots)} snapshots)"


# ============================================================================
# RECORDING CHANGES BEFORE SAVE
# ============================================================================

def _fee_details(loan: Loan, entries: List[PendingFeeChange], portfolio: PortfolioView) -> List[FeeChangeDetail]:
    details: List[FeeChangeDetail] = []
    for entry in entries:
        common = dict(
            loan_id=loan.id,
            loan_number=loan.loan_number,
            fee_id=entry.fee_id,
            currency=loan.currency,
        )
        if entry.is_provisional:
            config = portfolio.get_fee_config(entry.fee_config_id)
            fee = materialize_fee_add(entry, config, loan)
            details.append(FeeChangeDetail(
                action=ChangeAction.ADDED, fee_name=fee.name, fee_code=fee.code,
                new_amount=fee.calculated_amount, **common,
            ))
            continue
        original = loan.get_fee(entry.fee_id) or entry.original_fee
        if original is None:
            logger.warning("Skipping %s: fee %s not found on %s", entry.id, entry.fee_id, loan.id)
            continue
        if entry.change_type is FeeChangeType.DELETE:
            details.append(FeeChangeDetail(
                action=ChangeAction.DELETED, fee_name=original.name, fee_code=original.code,
                old_amount=original.calculated_amount, **common,
            ))
        else:
            updated = apply_fee_updates(original, entry.updates, loan)
            details.append(FeeChangeDetail(
                action=ChangeAction.MODIFIED, fee_name=updated.name, fee_code=updated.code,
                old_amount=original.calculated_amount, new_amount=updated.calculated_amount,
                **common,
            ))
    return details


def record_changes(
    ledger: ChangeLedger,
    portfolio: PortfolioView,
    invoices: Iterable[InvoiceChangeDetail] = (),
) -> SnapshotChanges:
    """
    Build the SnapshotChanges to persist alongside the next snapshot.

    Rate details carry the effective rate before and after all pending rate
    edits of the loan. Fee amounts come from the pricing formula. Invoice
    operations are not staged in the ledger; the collaborator passes the ones
    it performed.

    Raises:
        LoanNotFound: If a pending change refers to a loan not in the baseline
        FeeConfigNotFound: If a pending add refers to a missing catalogue entry
    """
    fees: List[FeeChangeDetail] = []
    rates: List[RateChangeDetail] = []
    statuses: List[StatusChangeDetail] = []

    for loan_id in ledger.affected_loan_ids:
        loan = portfolio.get_loan(loan_id)
        field_entries = ledger.get_changes_for_loan(loan_id)
        pending_rates = ledger.pending_rate_inputs(loan_id)
        new_effective = calculate_effective_rate(
            pending_rates.get(EditableField.BASE_RATE, loan.pricing.base_rate),
            pending_rates.get(EditableField.SPREAD, loan.pricing.spread),
        )
        for entry in sorted(field_entries, key=lambda e: list(EditableField).index(e.field)):
            if entry.field.is_rate:
                rates.append(RateChangeDetail(
                    loan_id=loan.id,
                    loan_number=loan.loan_number,
                    currency=loan.currency,
                    field=entry.field,
                    old_value=entry.original_value,
                    new_value=entry.new_value,
                    old_effective_rate=loan.pricing.effective_rate,
                    new_effective_rate=new_effective,
                ))
            else:
                statuses.append(StatusChangeDetail(
                    loan_id=loan.id,
                    loan_number=loan.loan_number,
                    field=entry.field,
                    old_value=entry.original_value.value,
                    new_value=entry.new_value.value,
                ))
        fees.extend(_fee_details(loan, ledger.get_fee_changes_for_loan(loan_id), portfolio))

    changes = SnapshotChanges(fees=fees, rates=rates, invoices=tuple(invoices), statuses=statuses)
    logger.debug("Recorded %d changes across %d loans", changes.change_count, len(changes.loan_ids))
    return changes
