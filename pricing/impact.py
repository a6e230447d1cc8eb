"""
impact.py - Pending impact summaries

Live-mode counterpart of the snapshot currency deltas: what the pending edits
would do to each currency's totals if saved now. Only loans with pending
changes are counted.

Rate-change statistics are vectorised with numpy and reported in basis points
as floats; they are display figures, not ledger amounts.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from .core import PortfolioView, BASIS_POINTS, ZERO
from .change_ledger import ChangeLedger
from .preview import Preview, project_loan


Numeric = Sequence[float]


@dataclass(frozen=True, slots=True)
class RateChangeStats:
    """Distribution of per-loan effective-rate changes, in basis points."""
    count: int
    mean_bps: float
    weighted_mean_bps: float
    min_bps: float
    max_bps: float


EMPTY_RATE_STATS = RateChangeStats(0, 0.0, 0.0, 0.0, 0.0)


@dataclass(frozen=True, slots=True)
class CurrencyImpact:
    """Before/after totals of the loans of one currency with pending changes."""
    currency: str
    loan_count: int
    net_proceeds_before: Decimal
    net_proceeds_after: Decimal
    fees_before: Decimal
    fees_after: Decimal
    interest_before: Decimal
    interest_after: Decimal
    rate_stats: RateChangeStats

    @property
    def net_proceeds_change(self) -> Decimal:
        return self.net_proceeds_after - self.net_proceeds_before

    @property
    def fees_change(self) -> Decimal:
        return self.fees_after - self.fees_before

    @property
    def interest_change(self) -> Decimal:
        return self.interest_after - self.interest_before


def rate_change_statistics(
    before: Numeric,
    after: Numeric,
    principals: Optional[Numeric] = None,
) -> RateChangeStats:
    """
    Summarize per-loan rate changes.

    Args:
        before: Effective rates before the change
        after: Effective rates after the change, same order
        principals: Weights for the weighted mean; equal weights when omitted

    Returns:
        RateChangeStats in basis points

    Raises:
        ValueError: If the inputs differ in length
    """
    before_arr = np.asarray([float(x) for x in before], dtype=float)
    after_arr = np.asarray([float(x) for x in after], dtype=float)
    if before_arr.shape != after_arr.shape:
        raise ValueError(f"Length mismatch: {before_arr.size} rates before, {after_arr.size} after")
    if before_arr.size == 0:
        return EMPTY_RATE_STATS

    changes = (after_arr - before_arr) * float(BASIS_POINTS)
    if principals is None:
        weights = np.ones_like(changes)
    else:
        weights = np.asarray([float(x) for x in principals], dtype=float)
        if weights.shape != changes.shape:
            raise ValueError(f"Length mismatch: {weights.size} principals for {changes.size} rates")

    weighted = float(np.average(changes, weights=weights)) if weights.sum() > 0 else 0.0
    return RateChangeStats(
        count=int(changes.size),
        mean_bps=float(np.mean(changes)),
        weighted_mean_bps=weighted,
        min_bps=float(np.min(changes)),
        max_bps=float(np.max(changes)),
    )


def summarize_pending_impact(
    portfolio: PortfolioView,
    ledger: ChangeLedger,
    previews: Optional[Mapping[str, Preview]] = None,
) -> Dict[str, CurrencyImpact]:
    """
    Per-currency impact of every pending change.

    Cached previews are used when given; loans without one are projected on the
    fly.

    Raises:
        LoanNotFound: If the ledger refers to a loan not in the baseline
    """
    previews = previews or {}
    groups: Dict[str, List[tuple]] = {}
    for loan_id in ledger.affected_loan_ids:
        loan = portfolio.get_loan(loan_id)
        preview = previews.get(loan_id) or project_loan(loan, ledger, portfolio)
        groups.setdefault(loan.currency, []).append((loan, preview))

    impact: Dict[str, CurrencyImpact] = {}
    for currency in sorted(groups):
        rows = groups[currency]
        impact[currency] = CurrencyImpact(
            currency=currency,
            loan_count=len(rows),
            net_proceeds_before=sum((p.original_net_proceeds for _, p in rows), ZERO),
            net_proceeds_after=sum((p.net_proceeds for _, p in rows), ZERO),
            fees_before=sum((p.original_total_fees for _, p in rows), ZERO),
            fees_after=sum((p.total_fees for _, p in rows), ZERO),
            interest_before=sum((p.original_interest_amount for _, p in rows), ZERO),
            interest_after=sum((p.interest_amount for _, p in rows), ZERO),
            rate_stats=rate_change_statistics(
                [p.original_effective_rate for _, p in rows],
                [p.effective_rate for _, p in rows],
                [loan.principal for loan, _ in rows],
            ),
        )
    return impact
