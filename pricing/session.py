"""
session.py - Editing Session

One EditingSession exists per portfolio-editing session. It owns the pieces
that must share a lifecycle:

    - ChangeLedger        pending edits (the only writer)
    - PreviewCalculator   projections, subscribed to the ledger
    - PlaybackController  live / playback state and grid capability sets
    - SnapshotHistory     saved snapshots, oldest first

Grid callbacks enter through the session and are routed to the capability set
of the current playback state, so an edit made during playback is ignored
rather than staged.

Save flow (persistence itself belongs to the collaborator):

    changes = session.prepare_save()          # what to persist alongside
    ... collaborator persists, re-fetches loans ...
    snapshot = session.commit(saved_loans)     # baseline refreshed, ledger cleared
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .core import Loan, FeeConfig, PlaybackError, SessionClosed
from .config import PricingConfig
from .portfolio import Portfolio
from .change_ledger import ChangeLedger, PendingFeeChange
from .preview import Preview, PreviewCalculator
from .snapshot import (
    Snapshot, SnapshotChanges, SnapshotHistory, InvoiceChangeDetail, record_changes,
)
from .playback import EditableGrid, GridCapabilities, PlaybackController
from .impact import CurrencyImpact, summarize_pending_impact
from .logging import get_logger


logger = get_logger(__name__)


class EditingSession:
    """
    Lifecycle object for editing one portfolio.

    Example:
        session = EditingSession(portfolio)
        session.on_preview_change("L1", EditableField.BASE_RATE, "0.06")
        session.pending_impact()["USD"].net_proceeds_change
        changes = session.prepare_save()
        snapshot = session.commit(saved_loans, user_name="Ana")
        session.close()
    """

    def __init__(
        self,
        portfolio: Portfolio,
        config: Optional[PricingConfig] = None,
        history: Optional[SnapshotHistory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            portfolio: Baseline of the portfolio being edited
            config: Settings; defaults to PricingConfig()
            history: Existing snapshots of the portfolio
            clock: Source of timestamps for ledger entries and snapshots
        """
        self.config = config or PricingConfig()
        self.portfolio = portfolio
        self._clock = clock or datetime.now
        self.ledger = ChangeLedger(clock=self._clock)
        self.calculator = PreviewCalculator(portfolio, self.ledger)
        self.history = history if history is not None else SnapshotHistory(portfolio.portfolio_id)
        if self.history.portfolio_id != portfolio.portfolio_id:
            raise ValueError(
                f"History of {self.history.portfolio_id} given for portfolio {portfolio.portfolio_id}"
            )
        self.playback = PlaybackController(
            EditableGrid(portfolio, self.ledger, self.calculator),
            weighting=self.config.weighting,
        )
        self._closed = False
        logger.info("Opened editing session for %s", portfolio.portfolio_id)

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosed(f"Editing session for {self.portfolio.portfolio_id} is closed")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def capabilities(self) -> GridCapabilities:
        self._check_open()
        return self.playback.capabilities

    # ========================================================================
    # GRID CALLBACKS
    # ========================================================================

    def on_preview_change(self, loan_id: str, field: Any, value: Any) -> Optional[Preview]:
        return self.capabilities.on_preview_change(loan_id, field, value)

    def on_add_fee(self, loan_id: str, fee_config_id: str, fee_name: Optional[str] = None) -> Optional[PendingFeeChange]:
        return self.capabilities.on_add_fee(loan_id, fee_config_id, fee_name)

    def on_update_fee(self, loan_id: str, fee_id: str, updates: Mapping[str, Any]) -> Optional[PendingFeeChange]:
        return self.capabilities.on_update_fee(loan_id, fee_id, updates)

    def on_delete_fee(self, loan_id: str, fee_id: str) -> Optional[PendingFeeChange]:
        return self.capabilities.on_delete_fee(loan_id, fee_id)

    def on_revert_loan(self, loan_id: str) -> int:
        return self.capabilities.on_revert_loan(loan_id)

    def bulk_apply_rate(self, loan_ids: Iterable[str], field: Any, value: Any) -> List[str]:
        return self.capabilities.bulk_apply_rate(loan_ids, field, value)

    def bulk_add_fee(self, loan_ids: Iterable[str], fee_config_id: str) -> List[PendingFeeChange]:
        return self.capabilities.bulk_add_fee(loan_ids, fee_config_id)

    def bulk_change_status(self, loan_ids: Iterable[str], field: Any, value: Any) -> List[str]:
        return self.capabilities.bulk_change_status(loan_ids, field, value)

    # ========================================================================
    # LIVE VIEW
    # ========================================================================

    @property
    def previews(self) -> Dict[str, Preview]:
        self._check_open()
        return self.calculator.previews

    def pending_impact(self) -> Dict[str, CurrencyImpact]:
        """Per-currency effect of every pending change."""
        self._check_open()
        return summarize_pending_impact(self.portfolio, self.ledger, self.calculator.previews)

    def revert_all(self) -> None:
        """Discard every pending change."""
        self._check_open()
        if self.playback.is_playback:
            logger.warning("Ignoring revert of all changes: playback is read-only")
            return
        self.ledger.clear_all_changes()

    # ========================================================================
    # SAVE
    # ========================================================================

    def prepare_save(self, invoices: Iterable[InvoiceChangeDetail] = ()) -> SnapshotChanges:
        """
        Changes to persist with the next snapshot.

        Args:
            invoices: Invoice operations the collaborator performed directly
        """
        self._check_open()
        return record_changes(self.ledger, self.portfolio, invoices)

    def commit(
        self,
        saved_loans: Iterable[Loan],
        changes: Optional[SnapshotChanges] = None,
        user_id: str = "system",
        user_name: str = "System",
        description: Optional[str] = None,
        fee_configs: Optional[Iterable[FeeConfig]] = None,
    ) -> Snapshot:
        """
        Finish a save the collaborator has persisted.

        Args:
            saved_loans: Loan list as re-fetched after the save
            changes: Result of prepare_save(); recorded now when omitted
            user_id: Author id
            user_name: Author display name
            description: Optional snapshot description
            fee_configs: Refreshed catalogue, or None to keep the current one

        Returns:
            The recorded Snapshot

        Raises:
            PlaybackError: If called during playback
            SessionClosed: If the session is closed
            SnapshotOrderError: If the clock is not past the latest snapshot;
                nothing is changed
        """
        self._check_open()
        if self.playback.is_playback:
            raise PlaybackError("Cannot commit while in playback")
        if changes is None:
            changes = self.prepare_save()
        saved_loans = list(saved_loans)
        if fee_configs is not None:
            fee_configs = list(fee_configs)

        # All or nothing: a rejected snapshot leaves baseline and ledger intact.
        snapshot = self.history.record(
            saved_loans,
            self._clock(),
            changes=changes,
            user_id=user_id,
            user_name=user_name,
            description=description,
        )
        self.portfolio.refresh(saved_loans, fee_configs)
        self.ledger.clear_all_changes()
        self.calculator.clear_all_previews()
        self.history.prune(self.config.snapshot_retention)
        logger.info(
            "Committed %d changes on %s as %s",
            changes.change_count, self.portfolio.portfolio_id, snapshot.id,
        )
        return snapshot

    # ========================================================================
    # PLAYBACK
    # ========================================================================

    def enter_playback(self, snapshot_id: Optional[str] = None) -> Snapshot:
        """Enter playback over this session's history, at the latest snapshot by default."""
        self._check_open()
        snapshots = self.history.snapshots
        if snapshot_id is None:
            latest = self.history.latest
            snapshot_id = latest.id if latest else ""
        return self.playback.enter_playback(snapshot_id, snapshots)

    def exit_playback(self) -> None:
        self._check_open()
        self.playback.exit_playback()

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def close(self) -> None:
        """Tear down the session. Pending changes are discarded."""
        if self._closed:
            return
        self.playback.exit_playback()
        self.calculator.detach()
        discarded = self.ledger.change_count
        self.ledger.clear_all_changes()
        self.calculator.clear_all_previews()
        self._closed = True
        logger.info(
            "Closed editing session for %s (%d pending changes discarded)",
            self.portfolio.portfolio_id, discarded,
        )

    def __enter__(self) -> 'EditingSession':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else self.playback.state.value
        return (f"EditingSession({self.portfolio.portfolio_id}, {state}, "
                f"{self.ledger.change_count} pending)")
