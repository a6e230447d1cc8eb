"""
strategies.py - Hypothesis strategies shared by the conformance suite
"""

from decimal import Decimal

from hypothesis import strategies as st

from pricing import EditableField, LoanStatus

from tests.conftest import make_loan, make_fee


rates = st.decimals(
    min_value=Decimal("0"), max_value=Decimal("0.2000"), places=4,
    allow_nan=False, allow_infinity=False,
)

amounts = st.decimals(
    min_value=Decimal("0"), max_value=Decimal("5000.00"), places=2,
    allow_nan=False, allow_infinity=False,
)

principals = st.integers(min_value=1000, max_value=1000000).map(Decimal)

rate_fields = st.sampled_from([EditableField.BASE_RATE, EditableField.SPREAD])

fee_ids = st.sampled_from(["F1", "F2", "F3"])


@st.composite
def fee_sets(draw):
    """Fees keyed by id with independent amounts, in id order."""
    chosen = draw(st.sets(fee_ids, max_size=3))
    return [make_fee(fee_id, draw(amounts)) for fee_id in sorted(chosen)]


@st.composite
def loan_states(draw, loan_id="L1", currency="USD"):
    return make_loan(
        loan_id,
        principal=draw(principals),
        base_rate=draw(rates),
        spread=draw(rates),
        currency=currency,
        fees=draw(fee_sets()),
        status=draw(st.sampled_from(list(LoanStatus))),
    )


@st.composite
def portfolios(draw, loan_ids=("L1", "L2", "L3")):
    """Loan list with one state per id, currencies drawn from USD and EUR."""
    return [
        draw(loan_states(loan_id, draw(st.sampled_from(["USD", "EUR"]))))
        for loan_id in loan_ids
    ]


@st.composite
def portfolio_pairs(draw):
    """
    Two states of the same loans, with each loan's currency kept across states.
    """
    previous = draw(portfolios())
    current = [
        draw(loan_states(loan.id, loan.currency)) for loan in previous
    ]
    return previous, current
