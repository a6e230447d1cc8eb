"""
conftest.py - Shared pytest fixtures for pricing tests

Provides common builders and fixtures used across unit, conformance and
functional tests:
- Loan, fee and fee config builders (derived figures via recalculate_loan)
- A deterministic clock
- Ledgers, portfolios and editing sessions
"""

import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from pricing import (
    Loan, LoanPricing, Fee, FeeConfig, FeeTier, Invoice,
    FeeCalculationType, FeeBasis,
    ChangeLedger, PreviewCalculator, Portfolio, EditingSession, PricingConfig,
    SnapshotHistory,
    recalculate_loan,
)

from tests.fake_view import FakePortfolio


# =============================================================================
# CONSTANTS
# =============================================================================

# 360 actual days: under ACT/360 the year fraction is exactly 1, so interest
# equals principal * effective rate.
START = date(2024, 1, 1)
MATURITY = date(2024, 12, 26)

T0 = datetime(2025, 1, 1, 9, 0)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_clock(start: datetime = T0, step: timedelta = timedelta(minutes=1)) -> Callable[[], datetime]:
    """Clock that advances by step on every call."""
    state = {'now': start - step}

    def clock() -> datetime:
        state['now'] += step
        return state['now']

    return clock


def make_fee(
    fee_id: str,
    amount,
    name: Optional[str] = None,
    fee_config_id: str = "cfg-flat",
    **kwargs,
) -> Fee:
    """Flat fee whose calculated amount equals its flat amount."""
    return Fee(
        id=fee_id,
        fee_config_id=fee_config_id,
        name=name or f"Fee {fee_id}",
        code=kwargs.pop('code', fee_id.upper()),
        calculation_type=FeeCalculationType.FLAT,
        flat_amount=Decimal(str(amount)),
        calculated_amount=Decimal(str(amount)),
        **kwargs,
    )


def make_percentage_fee(fee_id: str, rate, basis: FeeBasis = FeeBasis.PRINCIPAL, **kwargs) -> Fee:
    return Fee(
        id=fee_id,
        fee_config_id=kwargs.pop('fee_config_id', "cfg-pct"),
        name=kwargs.pop('name', f"Fee {fee_id}"),
        calculation_type=FeeCalculationType.PERCENTAGE,
        rate=Decimal(str(rate)),
        basis=basis,
        **kwargs,
    )


def make_loan(
    loan_id: str,
    principal=100000,
    base_rate="0.05",
    spread="0.02",
    currency: str = "USD",
    fees: Iterable[Fee] = (),
    invoices: Iterable[Invoice] = (),
    dated: bool = True,
    **kwargs,
) -> Loan:
    """Loan with every derived figure computed by the pricing formula."""
    loan = Loan(
        id=loan_id,
        currency=currency,
        principal=Decimal(str(principal)),
        pricing=LoanPricing(base_rate=Decimal(str(base_rate)), spread=Decimal(str(spread))),
        start_date=START if dated else None,
        maturity_date=MATURITY if dated else None,
        fees=tuple(fees),
        invoices=tuple(invoices),
        **kwargs,
    )
    return recalculate_loan(loan)


def make_flat_config(config_id: str = "cfg-flat", amount=100, name: str = "Processing Fee") -> FeeConfig:
    return FeeConfig(
        id=config_id,
        code=config_id.upper(),
        name=name,
        calculation_type=FeeCalculationType.FLAT,
        default_flat_amount=Decimal(str(amount)),
    )


def make_tiered_config(config_id: str = "cfg-tiered") -> FeeConfig:
    return FeeConfig(
        id=config_id,
        code="TIER",
        name="Tiered Arrangement Fee",
        calculation_type=FeeCalculationType.TIERED,
        default_tiers=(
            FeeTier(0, 50000, Decimal("0.01")),
            FeeTier(50000, None, Decimal("0.005")),
        ),
    )


def make_invoice(invoice_id: str, amount, currency: str = "USD") -> Invoice:
    return Invoice(id=invoice_id, invoice_number=f"INV-{invoice_id}", amount=Decimal(str(amount)),
                   currency=currency)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return make_clock()


@pytest.fixture
def ledger(clock):
    """Empty ChangeLedger with a deterministic clock."""
    return ChangeLedger(clock=clock)


@pytest.fixture
def l1():
    """USD loan, principal 100,000, base 0.05, spread 0.02, no fees."""
    return make_loan("L1")


@pytest.fixture
def l2():
    """USD loan with one flat fee F1 of 500."""
    return make_loan("L2", fees=[make_fee("F1", 500)])


@pytest.fixture
def fee_configs():
    return [make_flat_config(), make_tiered_config()]


@pytest.fixture
def fake_portfolio(l1, l2, fee_configs):
    return FakePortfolio(loans=[l1, l2], fee_configs=fee_configs)


@pytest.fixture
def calculator(fake_portfolio, ledger):
    return PreviewCalculator(fake_portfolio, ledger)


@pytest.fixture
def portfolio(l1, l2, fee_configs):
    return Portfolio("pf-1", loans=[l1, l2], fee_configs=fee_configs)


@pytest.fixture
def session(portfolio, clock):
    return EditingSession(portfolio, config=PricingConfig(), clock=clock)
