"""
portfolio.py - In-memory portfolio baseline

Holds the persisted state the data collaborator fetched: the loan list and the
fee config catalogue. Implements the PortfolioView protocol so the preview
calculator and change recorder can read it without being able to change it.

The baseline is replaced wholesale by refresh() after every successful save.
"""

from __future__ import annotations
from typing import Dict, Iterable, List, Optional

from .core import (
    Loan, FeeConfig,
    LoanNotFound, FeeConfigNotFound,
    index_loans,
)
from .logging import get_logger


logger = get_logger(__name__)


class Portfolio:
    """
    Read-only baseline of one portfolio.

    Example:
        portfolio = Portfolio("pf-1", loans=[loan], fee_configs=[origination])
        portfolio.get_loan("L1")
        portfolio.get_fee_config("cfg-orig")
    """

    def __init__(
        self,
        portfolio_id: str,
        loans: Iterable[Loan] = (),
        fee_configs: Iterable[FeeConfig] = (),
    ):
        if not portfolio_id or not portfolio_id.strip():
            raise ValueError("Portfolio id cannot be empty")
        self.portfolio_id = portfolio_id
        self._loans: Dict[str, Loan] = {}
        self._fee_configs: Dict[str, FeeConfig] = {}
        self.refresh(loans, fee_configs)

    def refresh(
        self,
        loans: Iterable[Loan],
        fee_configs: Optional[Iterable[FeeConfig]] = None,
    ) -> None:
        """
        Replace the baseline with freshly persisted records.

        Args:
            loans: The complete loan list as persisted
            fee_configs: New catalogue, or None to keep the current one
        """
        self._loans = index_loans(loans)
        if fee_configs is not None:
            self._fee_configs = {cfg.id: cfg for cfg in fee_configs}
        logger.debug(
            "Portfolio %s refreshed: %d loans, %d fee configs",
            self.portfolio_id, len(self._loans), len(self._fee_configs),
        )

    # ========================================================================
    # PortfolioView
    # ========================================================================

    def get_loan(self, loan_id: str) -> Loan:
        try:
            return self._loans[loan_id]
        except KeyError:
            raise LoanNotFound(f"Loan {loan_id!r} is not in portfolio {self.portfolio_id!r}") from None

    def get_fee_config(self, fee_config_id: str) -> FeeConfig:
        try:
            return self._fee_configs[fee_config_id]
        except KeyError:
            raise FeeConfigNotFound(f"Fee config {fee_config_id!r} is not in the catalogue") from None

    def list_loans(self) -> List[Loan]:
        return list(self._loans.values())

    # ========================================================================
    # Convenience
    # ========================================================================

    def has_loan(self, loan_id: str) -> bool:
        return loan_id in self._loans

    def list_fee_configs(self, currency: Optional[str] = None) -> List[FeeConfig]:
        """Active catalogue entries, optionally restricted to one currency."""
        return [
            cfg for cfg in self._fee_configs.values()
            if cfg.is_active and (currency is None or cfg.applies_to(currency))
        ]

    @property
    def loan_ids(self) -> List[str]:
        return sorted(self._loans)

    def __len__(self) -> int:
        return len(self._loans)

    def __repr__(self) -> str:
        return f"Portfolio({self.portfolio_id}, {len(self._loans)} loans)"
