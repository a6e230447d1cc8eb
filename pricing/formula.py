"""
formula.py - Pricing Formula

Pure calculation functions for loan pricing. No state, no portfolio access:
every input is an explicit parameter, so each function is trivially testable.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. ROUNDING HELPERS (round_amount, round_rate):
   - Amounts to 2 places, rates to 4 places, ROUND_HALF_UP

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take all inputs explicitly as parameters
   - Example: calculate_net_proceeds(principal, interest, fees) -> Decimal

3. LOAN RECALCULATION (recalculate_loan):
   - Returns a new Loan with every derived figure recomputed
   - Never mutates its input

Key Formulas:
    effective_rate = base_rate + spread
    simple interest = principal * rate * year_fraction
    compound interest = principal * ((1 + rate) ** year_fraction - 1)
    net_proceeds = principal - interest - total_fees
"""

from __future__ import annotations
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Union

from .core import (
    Loan, Fee, FeeConfig, FeeTier,
    FeeCalculationType, FeeBasis, DayCountConvention, AccrualMethod,
    DECIMAL_PRECISION, DECIMAL_ROUNDING, ZERO,
    to_decimal,
)


_AMOUNT_QUANTUM = Decimal(1).scaleb(-DECIMAL_PRECISION['AMOUNT'])
_RATE_QUANTUM = Decimal(1).scaleb(-DECIMAL_PRECISION['RATE'])


# ============================================================================
# ROUNDING
# ============================================================================

def round_amount(value) -> Decimal:
    """Round a currency amount to cents."""
    return to_decimal(value).quantize(_AMOUNT_QUANTUM, rounding=DECIMAL_ROUNDING['AMOUNT'])


def round_rate(value) -> Decimal:
    """Round a rate to four decimal places."""
    return to_decimal(value).quantize(_RATE_QUANTUM, rounding=DECIMAL_ROUNDING['RATE'])


# ============================================================================
# RATES AND DAY COUNT
# ============================================================================

def calculate_effective_rate(base_rate, spread) -> Decimal:
    """effective_rate = base_rate + spread, rounded to 4 places."""
    return round_rate(to_decimal(base_rate) + to_decimal(spread))


def year_fraction(
    start: date,
    end: date,
    convention: Union[DayCountConvention, str],
) -> Decimal:
    """
    Calculate year fraction. Supports: "30/360", "ACT/360", "ACT/365".

    30/360 applies the bond-basis end-of-month adjustment: a start day of 31
    becomes 30, and an end day of 31 becomes 30 when the start day is 30 or 31.
    The actual conventions use the absolute day distance.
    """
    try:
        convention = DayCountConvention(convention)
    except ValueError:
        raise ValueError(f"Unknown day count convention: {convention}") from None

    if convention is DayCountConvention.THIRTY_360:
        d1, d2 = start.day, end.day
        if d1 == 31:
            d1 = 30
        if d2 == 31 and d1 >= 30:
            d2 = 30
        days = 360 * (end.year - start.year) + 30 * (end.month - start.month) + (d2 - d1)
        return Decimal(days) / Decimal("360")
    days = abs((end - start).days)
    if convention is DayCountConvention.ACT_360:
        return Decimal(days) / Decimal("360")
    return Decimal(days) / Decimal("365")


# ============================================================================
# INTEREST
# ============================================================================

def calculate_simple_interest(principal, rate, fraction) -> Decimal:
    return round_amount(to_decimal(principal) * to_decimal(rate) * to_decimal(fraction))


def calculate_compound_interest(principal, rate, fraction) -> Decimal:
    """Annual compounding over a fractional number of years."""
    principal = to_decimal(principal)
    growth = (Decimal("1") + to_decimal(rate)) ** to_decimal(fraction)
    return round_amount(principal * growth - principal)


def calculate_interest(
    principal,
    rate,
    start_date: Optional[date],
    maturity_date: Optional[date],
    convention: Union[DayCountConvention, str] = DayCountConvention.ACT_360,
    method: Union[AccrualMethod, str] = AccrualMethod.SIMPLE,
    fallback=ZERO,
) -> Decimal:
    """
    Interest over the loan term.

    Args:
        principal: Loan principal
        rate: Effective annual rate
        start_date: Start of accrual; None means unknown
        maturity_date: End of accrual; None means unknown
        convention: Day count convention
        method: Simple or compound accrual
        fallback: Returned when either date is missing (the persisted interest)

    Returns:
        Interest amount rounded to cents
    """
    if start_date is None or maturity_date is None:
        return to_decimal(fallback)
    fraction = year_fraction(start_date, maturity_date, convention)
    if AccrualMethod(method) is AccrualMethod.COMPOUND:
        return calculate_compound_interest(principal, rate, fraction)
    return calculate_simple_interest(principal, rate, fraction)


# ============================================================================
# FEES
# ============================================================================

def basis_amount(loan: Loan, basis: Union[FeeBasis, str]) -> Decimal:
    """Return the loan amount a percentage or tiered fee applies to."""
    basis = FeeBasis(basis)
    if basis is FeeBasis.OUTSTANDING:
        return loan.outstanding_amount
    if basis is FeeBasis.TOTAL_INVOICES:
        return loan.total_invoice_amount
    return loan.principal


def calculate_tiered_amount(amount, tiers: Sequence[FeeTier]) -> Decimal:
    """
    Marginal tiered fee: each tier's rate applies only to the slice of the
    amount that falls inside that tier.
    """
    if not tiers:
        return ZERO
    remaining = to_decimal(amount)
    total = ZERO
    for tier in sorted(tiers, key=lambda t: t.min_amount):
        if remaining <= 0:
            break
        if tier.max_amount is None:
            in_tier = remaining
        else:
            in_tier = min(remaining, tier.max_amount - tier.min_amount)
        if in_tier > 0:
            total += in_tier * tier.rate
            remaining -= in_tier
    return round_amount(total)


def _fee_amount(
    calculation_type: FeeCalculationType,
    flat_amount: Optional[Decimal],
    rate: Optional[Decimal],
    basis: FeeBasis,
    tiers: Sequence[FeeTier],
    loan: Loan,
) -> Decimal:
    if calculation_type is FeeCalculationType.FLAT:
        return round_amount(flat_amount if flat_amount is not None else ZERO)
    if calculation_type is FeeCalculationType.PERCENTAGE:
        return round_amount(basis_amount(loan, basis) * (rate if rate is not None else ZERO))
    return calculate_tiered_amount(basis_amount(loan, basis), tiers)


def calculate_fee_amount(fee: Fee, loan: Loan) -> Decimal:
    """Amount a fee charges on a loan. Waived fees charge nothing."""
    if fee.is_waived:
        return ZERO
    return _fee_amount(
        fee.calculation_type, fee.flat_amount, fee.rate, fee.basis, fee.tiers, loan
    )


def calculate_fee_from_config(config: FeeConfig, loan: Loan) -> Decimal:
    """Amount a new fee created from a catalogue entry would carry."""
    return _fee_amount(
        config.calculation_type,
        config.default_flat_amount,
        config.default_rate,
        config.default_basis,
        config.default_tiers,
        loan,
    )


def calculate_total_fees(fees: Iterable[Fee]) -> Decimal:
    """Sum of persisted calculated amounts."""
    return round_amount(sum((fee.calculated_amount for fee in fees), ZERO))


def calculate_net_proceeds(principal, interest_amount, total_fees) -> Decimal:
    """net_proceeds = principal - interest - fees."""
    return round_amount(
        to_decimal(principal) - to_decimal(interest_amount) - to_decimal(total_fees)
    )


# ============================================================================
# LOAN RECALCULATION
# ============================================================================

def recalculate_loan(loan: Loan) -> Loan:
    """
    Return a copy of the loan with every derived field recomputed.

    Overridden fees keep their persisted calculated_amount; every other fee is
    recomputed from its configuration. When the loan has no dates the persisted
    interest is kept.
    """
    pricing = replace(
        loan.pricing,
        effective_rate=calculate_effective_rate(loan.pricing.base_rate, loan.pricing.spread),
    )
    if loan.invoices:
        total_invoices = round_amount(sum((inv.amount for inv in loan.invoices), ZERO))
    else:
        total_invoices = loan.total_invoice_amount
    staged = replace(loan, pricing=pricing, total_invoice_amount=total_invoices)

    fees = tuple(
        fee if fee.is_overridden
        else replace(fee, calculated_amount=calculate_fee_amount(fee, staged))
        for fee in loan.fees
    )
    total_fees = calculate_total_fees(fees)
    interest = calculate_interest(
        loan.principal,
        pricing.effective_rate,
        loan.start_date,
        loan.maturity_date,
        pricing.day_count_convention,
        pricing.accrual_method,
        fallback=loan.interest_amount,
    )
    return replace(
        staged,
        fees=fees,
        total_fees=total_fees,
        interest_amount=interest,
        net_proceeds=calculate_net_proceeds(loan.principal, interest, total_fees),
    )
