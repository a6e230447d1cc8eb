"""
Core types and pure helpers for the loan pricing workspace.

This module provides the foundational data structures shared by every other module:
1. Protocols: PortfolioView for read-only access to the persisted baseline
2. Immutable data structures: Fee, FeeConfig, Invoice, LoanPricing, Loan
3. Enums: statuses, fee calculation types, editable fields
4. Exceptions: PricingError and domain-specific error types
5. Canonical serialization used for content fingerprints

Nothing in this module mutates state. Loans are values: an edit never changes a
Loan, it is recorded in the ChangeLedger and projected by the PreviewCalculator.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP, getcontext
from enum import Enum
import hashlib
from typing import (
    Any, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All amounts and rates are Decimal. The global context is configured once at
# import time so projections are reproducible across processes.
#
_PRICING_DECIMAL_CONTEXT = getcontext()
_PRICING_DECIMAL_CONTEXT.prec = 50


# ============================================================================
# CONSTANTS
# ============================================================================

# Places used when rounding currency amounts and rates.
DECIMAL_PRECISION = {
    'AMOUNT': 2,
    'RATE': 4,
}

DECIMAL_ROUNDING = {
    'AMOUNT': ROUND_HALF_UP,
    'RATE': ROUND_HALF_UP,
}

# One basis point expressed as a rate.
BASIS_POINTS = Decimal("10000")

ZERO = Decimal("0")

# Provisional id prefix for fees that only exist as pending adds.
PENDING_FEE_PREFIX = "pending-fee-"


# ============================================================================
# ENUMS
# ============================================================================

class LoanStatus(Enum):
    DRAFT = "draft"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    FUNDED = "funded"
    COLLECTED = "collected"
    CLOSED = "closed"


class PricingStatus(Enum):
    PENDING = "pending"
    PRICED = "priced"
    LOCKED = "locked"


class FeeCalculationType(Enum):
    FLAT = "flat"
    PERCENTAGE = "percentage"
    TIERED = "tiered"


class FeeBasis(Enum):
    """Amount a percentage or tiered fee is applied to."""
    PRINCIPAL = "principal"
    OUTSTANDING = "outstanding"
    TOTAL_INVOICES = "total_invoices"


class DayCountConvention(Enum):
    THIRTY_360 = "30/360"
    ACT_360 = "ACT/360"
    ACT_365 = "ACT/365"


class AccrualMethod(Enum):
    SIMPLE = "simple"
    COMPOUND = "compound"


class FeeChangeType(Enum):
    """Kind of pending fee operation held by the ChangeLedger."""
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class ChangeAction(Enum):
    """Action reported in a SnapshotChanges detail record."""
    ADDED = "added"
    DELETED = "deleted"
    MODIFIED = "modified"
    MOVED = "moved"


class EditableField(Enum):
    """
    Closed set of loan fields an operator can edit in the grid.

    The value is the field path used by the grid and by persisted change
    records. Use EditableField.parse() at the boundary so a mistyped path
    fails immediately instead of silently creating a second ledger key.
    """
    BASE_RATE = "pricing.baseRate"
    SPREAD = "pricing.spread"
    STATUS = "status"
    PRICING_STATUS = "pricingStatus"

    @property
    def label(self) -> str:
        return _FIELD_LABELS[self]

    @property
    def is_rate(self) -> bool:
        return self in (EditableField.BASE_RATE, EditableField.SPREAD)

    @classmethod
    def parse(cls, value: Any) -> 'EditableField':
        """Return the member for a member or field path; raise UnknownField otherwise."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownField(f"Unknown editable field: {value!r}") from None


_FIELD_LABELS = {
    EditableField.BASE_RATE: "Base Rate",
    EditableField.SPREAD: "Spread",
    EditableField.STATUS: "Status",
    EditableField.PRICING_STATUS: "Pricing Status",
}


# ============================================================================
# EXCEPTIONS
# ============================================================================

class PricingError(Exception):
    """Base exception for all pricing workspace errors."""
    pass


class LoanNotFound(PricingError):
    """Raised when a loan id has no baseline record in the portfolio."""
    pass


class FeeConfigNotFound(PricingError):
    """Raised when a fee config id is not in the catalogue."""
    pass


class FeeNotFound(PricingError):
    """Raised when a fee id is neither on the loan nor a pending add."""
    pass


class UnknownField(PricingError, ValueError):
    """Raised when a field path does not name an EditableField."""
    pass


class SnapshotNotFound(PricingError):
    """Raised when a snapshot id is not in the supplied history."""
    pass


class SnapshotOrderError(PricingError):
    """Raised when snapshots are not strictly ordered by timestamp."""
    pass


class PlaybackError(PricingError):
    """Raised when a playback-only operation is used in live mode."""
    pass


class SessionClosed(PricingError):
    """Raised when an editing session is used after close()."""
    pass


class ConfigurationError(PricingError):
    """Raised when configuration values are invalid."""
    pass


# ============================================================================
# CONVERSION HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """
    Convert a numeric value to a finite Decimal.

    Floats go through str() so 0.05 becomes Decimal("0.05"), not its binary
    expansion.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Expected a number, got {value!r}")
    else:
        result = Decimal(str(value))
    if result.is_nan() or result.is_infinite():
        raise ValueError(f"Value must be finite, got {value!r}")
    return result


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


def _set(obj: Any, name: str, value: Any) -> None:
    object.__setattr__(obj, name, value)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class PortfolioView(Protocol):
    """
    Read-only interface to the persisted portfolio baseline.

    The PreviewCalculator and the change recorder only ever read through this
    protocol. Portfolio implements it; tests use FakePortfolio.
    """

    def get_loan(self, loan_id: str) -> 'Loan':
        """Return the baseline loan. Raises LoanNotFound."""
        ...

    def get_fee_config(self, fee_config_id: str) -> 'FeeConfig':
        """Return a catalogue entry. Raises FeeConfigNotFound."""
        ...

    def list_loans(self) -> List['Loan']:
        """Return all baseline loans."""
        ...


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class FeeTier:
    """A marginal tier: rate applies to the slice of the basis inside [min, max)."""
    min_amount: Decimal
    max_amount: Optional[Decimal]
    rate: Decimal

    def __post_init__(self):
        _set(self, 'min_amount', to_decimal(self.min_amount))
        _set(self, 'max_amount', _optional_decimal(self.max_amount))
        _set(self, 'rate', to_decimal(self.rate))


@dataclass(frozen=True, slots=True)
class Fee:
    """
    A fee applied to exactly one loan.

    calculated_amount is the persisted result of the fee formula. Overrides can
    change it without touching rate or flat_amount, so comparisons between
    snapshots use calculated_amount.
    """
    id: str
    fee_config_id: str
    name: str
    calculation_type: FeeCalculationType
    calculated_amount: Decimal = ZERO
    code: str = ""
    flat_amount: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    basis: FeeBasis = FeeBasis.PRINCIPAL
    tiers: Tuple[FeeTier, ...] = ()
    currency: str = ""
    is_paid: bool = False
    is_waived: bool = False
    is_overridden: bool = False

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("Fee id cannot be empty")
        _set(self, 'calculation_type', FeeCalculationType(self.calculation_type))
        _set(self, 'basis', FeeBasis(self.basis))
        _set(self, 'calculated_amount', to_decimal(self.calculated_amount))
        _set(self, 'flat_amount', _optional_decimal(self.flat_amount))
        _set(self, 'rate', _optional_decimal(self.rate))
        _set(self, 'tiers', tuple(self.tiers))


@dataclass(frozen=True, slots=True)
class FeeConfig:
    """Catalogue template a new fee is created from."""
    id: str
    code: str
    name: str
    calculation_type: FeeCalculationType
    default_rate: Optional[Decimal] = None
    default_flat_amount: Optional[Decimal] = None
    default_basis: FeeBasis = FeeBasis.PRINCIPAL
    default_tiers: Tuple[FeeTier, ...] = ()
    is_required: bool = False
    is_editable: bool = True
    applicable_currencies: Tuple[str, ...] = ()
    is_active: bool = True

    def __post_init__(self):
        _set(self, 'calculation_type', FeeCalculationType(self.calculation_type))
        _set(self, 'default_basis', FeeBasis(self.default_basis))
        _set(self, 'default_rate', _optional_decimal(self.default_rate))
        _set(self, 'default_flat_amount', _optional_decimal(self.default_flat_amount))
        _set(self, 'default_tiers', tuple(self.default_tiers))
        _set(self, 'applicable_currencies', tuple(self.applicable_currencies))

    def applies_to(self, currency: str) -> bool:
        """Empty applicable_currencies means every currency."""
        return not self.applicable_currencies or currency in self.applicable_currencies


@dataclass(frozen=True, slots=True)
class Invoice:
    id: str
    invoice_number: str
    amount: Decimal
    currency: str = ""
    buyer_name: str = ""

    def __post_init__(self):
        _set(self, 'amount', to_decimal(self.amount))


@dataclass(frozen=True, slots=True)
class LoanPricing:
    """
    Rate inputs of a loan.

    effective_rate is derived (base_rate + spread) when not supplied.
    """
    base_rate: Decimal
    spread: Decimal
    effective_rate: Optional[Decimal] = None
    day_count_convention: DayCountConvention = DayCountConvention.ACT_360
    accrual_method: AccrualMethod = AccrualMethod.SIMPLE

    def __post_init__(self):
        _set(self, 'base_rate', to_decimal(self.base_rate))
        _set(self, 'spread', to_decimal(self.spread))
        _set(self, 'day_count_convention', DayCountConvention(self.day_count_convention))
        _set(self, 'accrual_method', AccrualMethod(self.accrual_method))
        if self.effective_rate is None:
            _set(self, 'effective_rate', self.base_rate + self.spread)
        else:
            _set(self, 'effective_rate', to_decimal(self.effective_rate))


@dataclass(frozen=True, slots=True)
class Loan:
    """
    Persisted loan record as fetched by the data collaborator.

    total_fees, interest_amount and net_proceeds are the persisted derived
    figures. total_fees defaults to the sum of the fee amounts.
    formula.recalculate_loan() produces a copy with them recomputed.

    This class is immutable (frozen=True). Pending edits live in the
    ChangeLedger, never here.
    """
    id: str
    currency: str
    principal: Decimal
    pricing: LoanPricing
    loan_number: str = ""
    borrower_name: str = ""
    status: LoanStatus = LoanStatus.DRAFT
    pricing_status: PricingStatus = PricingStatus.PENDING
    start_date: Optional[date] = None
    maturity_date: Optional[date] = None
    outstanding_amount: Optional[Decimal] = None
    total_invoice_amount: Optional[Decimal] = None
    fees: Tuple[Fee, ...] = ()
    invoices: Tuple[Invoice, ...] = ()
    total_fees: Optional[Decimal] = None
    interest_amount: Decimal = ZERO
    net_proceeds: Decimal = ZERO

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("Loan id cannot be empty")
        if not self.currency or not self.currency.strip():
            raise ValueError("Loan currency cannot be empty")
        _set(self, 'principal', to_decimal(self.principal))
        _set(self, 'status', LoanStatus(self.status))
        _set(self, 'pricing_status', PricingStatus(self.pricing_status))
        _set(self, 'fees', tuple(self.fees))
        _set(self, 'invoices', tuple(self.invoices))
        _set(self, 'interest_amount', to_decimal(self.interest_amount))
        _set(self, 'net_proceeds', to_decimal(self.net_proceeds))
        if self.outstanding_amount is None:
            _set(self, 'outstanding_amount', self.principal)
        else:
            _set(self, 'outstanding_amount', to_decimal(self.outstanding_amount))
        if self.total_fees is None:
            _set(self, 'total_fees', sum((fee.calculated_amount for fee in self.fees), ZERO))
        else:
            _set(self, 'total_fees', to_decimal(self.total_fees))
        if self.total_invoice_amount is None:
            total = sum((inv.amount for inv in self.invoices), ZERO)
            _set(self, 'total_invoice_amount', total)
        else:
            _set(self, 'total_invoice_amount', to_decimal(self.total_invoice_amount))
        if not self.loan_number:
            _set(self, 'loan_number', self.id)

    def get_fee(self, fee_id: str) -> Optional[Fee]:
        for fee in self.fees:
            if fee.id == fee_id:
                return fee
        return None

    def field_value(self, editable: EditableField) -> Any:
        """Return the baseline value of an editable field."""
        if editable is EditableField.BASE_RATE:
            return self.pricing.base_rate
        if editable is EditableField.SPREAD:
            return self.pricing.spread
        if editable is EditableField.STATUS:
            return self.status
        return self.pricing_status

    def __repr__(self) -> str:
        return (f"Loan({self.id} {self.principal} {self.currency} "
                f"@ {self.pricing.effective_rate}, {len(self.fees)} fees)")


def index_loans(loans: Iterable[Loan]) -> Dict[str, Loan]:
    """Build an id -> Loan index, keeping the first record for a duplicated id."""
    index: Dict[str, Loan] = {}
    for loan in loans:
        index.setdefault(loan.id, loan)
    return index


# ============================================================================
# CANONICAL SERIALIZATION
# ============================================================================

def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Deterministic regardless of dict insertion order or Decimal representation.
    Dataclass records are serialized field by field.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, (datetime, date)):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    slots = getattr(type(value), '__dataclass_fields__', None)
    if slots is not None:
        serialized = ",".join(
            f"{name}={_canonicalize(getattr(value, name))}" for name in sorted(slots)
        )
        return f"{type(value).__name__}({serialized})"
    return f"R:{repr(value)}"


def content_hash(value: Any) -> str:
    """Deterministic short content hash of any canonicalizable value."""
    return hashlib.sha256(_canonicalize(value).encode()).hexdigest()[:16]
