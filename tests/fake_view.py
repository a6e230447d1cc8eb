"""
fake_view.py - Test Helper for PortfolioView

Provides a minimal PortfolioView implementation for testing the preview
calculator and change recorder without a full Portfolio.
"""

from __future__ import annotations
from typing import Dict, Iterable, List, Optional

from pricing import PortfolioView, LoanNotFound, FeeConfigNotFound
from pricing.core import Loan, FeeConfig


class FakePortfolio:
    """
    Minimal PortfolioView implementation.

    Example:
        view = FakePortfolio(loans=[loan], fee_configs=[config])
        view.get_loan("L1")
    """

    def __init__(
        self,
        loans: Iterable[Loan] = (),
        fee_configs: Optional[Iterable[FeeConfig]] = None,
    ):
        self.loans: Dict[str, Loan] = {loan.id: loan for loan in loans}
        self.fee_configs: Dict[str, FeeConfig] = {cfg.id: cfg for cfg in (fee_configs or ())}
        self.reads: List[str] = []

    def get_loan(self, loan_id: str) -> Loan:
        self.reads.append(loan_id)
        if loan_id not in self.loans:
            raise LoanNotFound(loan_id)
        return self.loans[loan_id]

    def get_fee_config(self, fee_config_id: str) -> FeeConfig:
        if fee_config_id not in self.fee_configs:
            raise FeeConfigNotFound(fee_config_id)
        return self.fee_configs[fee_config_id]

    def list_loans(self) -> List[Loan]:
        return list(self.loans.values())
