"""
playback.py - Playback Controller and grid capability sets

State machine over the saved snapshot history:

    LIVE  --enter_playback(id, snapshots)-->  PLAYBACK
    PLAYBACK --go_to_previous / go_to_next / go_to_snapshot--> PLAYBACK
    PLAYBACK --exit_playback()-->  LIVE

The grid never receives raw ledger access. It is bound to a capability set
chosen by the controller:

    LIVE     -> EditableGrid: callbacks stage changes in the ChangeLedger
    PLAYBACK -> ReadOnlyGrid: every mutation callback is a no-op

EditableGrid also stages bulk edits over a selection, skipping locked loans.

The ChangeLedger is dormant during playback: exiting never clears it.

In playback the controller exposes the current snapshot against the one
immediately before it: the recorded SnapshotChanges, the computed diff, the
per-currency deltas and PlaybackPreviews. The changed-only filter trusts the
recorded changes, not the computed diff.
"""

from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from .core import (
    Loan, EditableField, PricingStatus, PortfolioView,
    FeeNotFound, PlaybackError, SnapshotNotFound,
)
from .change_ledger import ChangeLedger, PendingFeeChange, normalize_field_value
from .preview import Preview, PreviewCalculator, PlaybackPreview, build_playback_previews
from .snapshot import Snapshot, SnapshotChanges, EMPTY_CHANGES, validate_order
from .diff import CurrencyDelta, RateWeighting, diff_snapshots, currency_deltas
from .logging import get_logger


logger = get_logger(__name__)


# ============================================================================
# CAPABILITY SETS
# ============================================================================

@runtime_checkable
class GridCapabilities(Protocol):
    """Mutation callbacks the grid may invoke."""

    read_only: bool

    def on_preview_change(self, loan_id: str, field: Any, value: Any) -> Optional[Preview]:
        ...

    def on_add_fee(self, loan_id: str, fee_config_id: str, fee_name: Optional[str] = None) -> Optional[PendingFeeChange]:
        ...

    def on_update_fee(self, loan_id: str, fee_id: str, updates: Mapping[str, Any]) -> Optional[PendingFeeChange]:
        ...

    def on_delete_fee(self, loan_id: str, fee_id: str) -> Optional[PendingFeeChange]:
        ...

    def on_revert_loan(self, loan_id: str) -> int:
        ...

    def bulk_apply_rate(self, loan_ids: Iterable[str], field: Any, value: Any) -> List[str]:
        ...

    def bulk_add_fee(self, loan_ids: Iterable[str], fee_config_id: str) -> List[PendingFeeChange]:
        ...

    def bulk_change_status(self, loan_ids: Iterable[str], field: Any, value: Any) -> List[str]:
        ...


class EditableGrid:
    """
    Live-mode capability set: grid callbacks become ledger entries.

    Baseline values and fee snapshots are looked up here, so the grid only
    passes ids and the operator's input.
    """

    read_only = False

    def __init__(self, portfolio: PortfolioView, ledger: ChangeLedger, calculator: PreviewCalculator):
        self.portfolio = portfolio
        self.ledger = ledger
        self.calculator = calculator

    def on_preview_change(self, loan_id: str, field: Any, value: Any) -> Optional[Preview]:
        """
        Stage an edit of one field and return the refreshed projection.

        Returns:
            The loan's Preview, or None when the edit restored the baseline

        Raises:
            LoanNotFound: If the loan is not in the baseline
            UnknownField: If field does not name an editable field
        """
        editable = EditableField.parse(field)
        loan = self.portfolio.get_loan(loan_id)
        self.ledger.track_field_change(loan_id, editable, editable.label, loan.field_value(editable), value)
        if not self.ledger.has_changes_for_loan(loan_id):
            self.calculator.clear_preview(loan_id)
            return None
        return self.calculator.calculate_preview(loan_id)

    def on_add_fee(self, loan_id: str, fee_config_id: str, fee_name: Optional[str] = None) -> PendingFeeChange:
        """Stage a new fee. Raises LoanNotFound or FeeConfigNotFound before tracking."""
        self.portfolio.get_loan(loan_id)
        config = self.portfolio.get_fee_config(fee_config_id)
        return self.ledger.track_fee_add(loan_id, config.id, fee_name or config.name)

    def _existing_fee(self, loan_id: str, fee_id: str):
        loan = self.portfolio.get_loan(loan_id)
        fee = loan.get_fee(fee_id)
        if fee is None and not any(e.fee_id == fee_id for e in self.ledger.get_pending_fee_adds(loan_id)):
            raise FeeNotFound(f"Fee {fee_id!r} is not on loan {loan_id!r}")
        return fee

    def on_update_fee(self, loan_id: str, fee_id: str, updates: Mapping[str, Any]) -> Optional[PendingFeeChange]:
        """Stage fee edits. Raises FeeNotFound for an unknown fee."""
        fee = self._existing_fee(loan_id, fee_id)
        return self.ledger.track_fee_update(loan_id, fee_id, fee, updates)

    def on_delete_fee(self, loan_id: str, fee_id: str) -> Optional[PendingFeeChange]:
        """Stage a fee deletion. Raises FeeNotFound for an unknown fee."""
        fee = self._existing_fee(loan_id, fee_id)
        return self.ledger.track_fee_delete(loan_id, fee_id, fee)

    def on_revert_loan(self, loan_id: str) -> int:
        return self.ledger.revert_all_for_loan(loan_id)

    # ------------------------------------------------------------------------
    # Bulk edits over a selection. Locked loans are skipped; every id is
    # resolved before anything is staged.
    # ------------------------------------------------------------------------

    def _unlocked(self, loan_ids: Iterable[str]) -> List[Loan]:
        loans = [self.portfolio.get_loan(loan_id) for loan_id in loan_ids]
        unlocked = [loan for loan in loans if loan.pricing_status is not PricingStatus.LOCKED]
        if len(unlocked) < len(loans):
            logger.info("Skipping %d locked loans", len(loans) - len(unlocked))
        return unlocked

    def bulk_apply_rate(self, loan_ids: Iterable[str], field: Any, value: Any) -> List[str]:
        """
        Stage one base rate or spread value on every unlocked loan.

        Returns:
            Ids of the loans the value was staged on

        Raises:
            LoanNotFound: If any id is not in the baseline
            ValueError: If field is not a rate field
        """
        editable = EditableField.parse(field)
        if not editable.is_rate:
            raise ValueError(f"{editable.value} is not a rate field")
        applied = []
        for loan in self._unlocked(loan_ids):
            self.on_preview_change(loan.id, editable, value)
            applied.append(loan.id)
        return applied

    def bulk_add_fee(self, loan_ids: Iterable[str], fee_config_id: str) -> List[PendingFeeChange]:
        """
        Stage a fee from fee_config_id on every unlocked loan that does not
        already carry one, saved or pending.

        Raises:
            LoanNotFound: If any id is not in the baseline
            FeeConfigNotFound: If the catalogue has no such entry
        """
        config = self.portfolio.get_fee_config(fee_config_id)
        entries = []
        for loan in self._unlocked(loan_ids):
            if any(fee.fee_config_id == config.id for fee in loan.fees):
                continue
            if any(e.fee_config_id == config.id for e in self.ledger.get_pending_fee_adds(loan.id)):
                continue
            entries.append(self.on_add_fee(loan.id, config.id))
        return entries

    def bulk_change_status(self, loan_ids: Iterable[str], field: Any, value: Any) -> List[str]:
        """
        Stage a status or pricing status on a selection.

        Locked loans are skipped for status changes and for locking; any other
        pricing status, such as an unlock, applies to the whole selection.

        Returns:
            Ids of the loans the value was staged on
        """
        editable = EditableField.parse(field)
        if editable.is_rate:
            raise ValueError(f"{editable.value} is not a status field")
        target = normalize_field_value(editable, value)
        if editable is EditableField.PRICING_STATUS and target is not PricingStatus.LOCKED:
            loans = [self.portfolio.get_loan(loan_id) for loan_id in loan_ids]
        else:
            loans = self._unlocked(loan_ids)
        applied = []
        for loan in loans:
            self.on_preview_change(loan.id, editable, target)
            applied.append(loan.id)
        return applied


class ReadOnlyGrid:
    """Playback-mode capability set. Every callback is ignored."""

    read_only = True

    def _ignore(self, action: str, loan_id: str) -> None:
        logger.warning("Ignoring %s on %s: playback is read-only", action, loan_id)

    def on_preview_change(self, loan_id: str, field: Any, value: Any) -> None:
        self._ignore("preview change", loan_id)
        return None

    def on_add_fee(self, loan_id: str, fee_config_id: str, fee_name: Optional[str] = None) -> None:
        self._ignore("fee add", loan_id)
        return None

    def on_update_fee(self, loan_id: str, fee_id: str, updates: Mapping[str, Any]) -> None:
        self._ignore("fee update", loan_id)
        return None

    def on_delete_fee(self, loan_id: str, fee_id: str) -> None:
        self._ignore("fee delete", loan_id)
        return None

    def on_revert_loan(self, loan_id: str) -> int:
        self._ignore("revert", loan_id)
        return 0

    def bulk_apply_rate(self, loan_ids: Iterable[str], field: Any, value: Any) -> List[str]:
        self._ignore("bulk rate change", "selection")
        return []

    def bulk_add_fee(self, loan_ids: Iterable[str], fee_config_id: str) -> List[PendingFeeChange]:
        self._ignore("bulk fee add", "selection")
        return []

    def bulk_change_status(self, loan_ids: Iterable[str], field: Any, value: Any) -> List[str]:
        self._ignore("bulk status change", "selection")
        return []


# ============================================================================
# PLAYBACK CONTROLLER
# ============================================================================

class PlaybackState(Enum):
    LIVE = "live"
    PLAYBACK = "playback"


class PlaybackController:
    """
    Navigation over an ordered snapshot list (oldest first).

    Example:
        controller = PlaybackController(editable_grid)
        controller.enter_playback(snapshots[-1].id, snapshots)
        controller.recorded_changes.fees
        controller.go_to_previous()
        controller.exit_playback()
    """

    def __init__(
        self,
        editable: GridCapabilities,
        weighting: RateWeighting = RateWeighting.UNWEIGHTED,
    ):
        """
        Args:
            editable: Capability set exposed in LIVE state
            weighting: Average-rate interpretation used by currency_deltas
        """
        self._editable = editable
        self._read_only = ReadOnlyGrid()
        self.weighting = RateWeighting(weighting)
        self._state = PlaybackState.LIVE
        self._snapshots: List[Snapshot] = []
        self._index = 0
        self._changed_only = False
        self._computed: Dict[int, SnapshotChanges] = {}

    # ========================================================================
    # STATE
    # ========================================================================

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def is_playback(self) -> bool:
        return self._state is PlaybackState.PLAYBACK

    @property
    def capabilities(self) -> GridCapabilities:
        """Capability set the grid must use for the current state."""
        return self._read_only if self.is_playback else self._editable

    def _require_playback(self) -> None:
        if not self.is_playback:
            raise PlaybackError("Operation requires playback mode")

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def enter_playback(self, snapshot_id: str, snapshots: Sequence[Snapshot]) -> Snapshot:
        """
        Switch to playback, positioned at snapshot_id.

        Entering while already in playback replaces the snapshot list.

        Args:
            snapshot_id: Snapshot to display
            snapshots: Full history, oldest first

        Returns:
            The selected snapshot

        Raises:
            SnapshotOrderError: If timestamps are not strictly increasing
            SnapshotNotFound: If snapshot_id is not in the list
        """
        snapshots = list(snapshots)
        validate_order(snapshots)
        index = self._find(snapshot_id, snapshots)
        self._snapshots = snapshots
        self._index = index
        self._computed = {}
        self._state = PlaybackState.PLAYBACK
        logger.info("Entered playback at %s (%d of %d)", snapshot_id, index + 1, len(snapshots))
        return snapshots[index]

    def exit_playback(self) -> None:
        """Return to live editing. The ChangeLedger is left untouched."""
        if not self.is_playback:
            return
        self._snapshots = []
        self._index = 0
        self._computed = {}
        self._state = PlaybackState.LIVE
        logger.info("Exited playback")

    @staticmethod
    def _find(snapshot_id: str, snapshots: Sequence[Snapshot]) -> int:
        for i, snapshot in enumerate(snapshots):
            if snapshot.id == snapshot_id:
                return i
        raise SnapshotNotFound(f"Snapshot {snapshot_id!r} is not in the playback list")

    # ========================================================================
    # NAVIGATION
    # ========================================================================

    @property
    def has_previous(self) -> bool:
        return self.is_playback and self._index > 0

    @property
    def has_next(self) -> bool:
        return self.is_playback and self._index < len(self._snapshots) - 1

    def go_to_previous(self) -> Snapshot:
        """Step one snapshot back; stays put at the oldest."""
        self._require_playback()
        if self.has_previous:
            self._index -= 1
            logger.debug("Playback at %s", self.current_snapshot.id)
        return self.current_snapshot

    def go_to_next(self) -> Snapshot:
        """Step one snapshot forward; stays put at the newest."""
        self._require_playback()
        if self.has_next:
            self._index += 1
            logger.debug("Playback at %s", self.current_snapshot.id)
        return self.current_snapshot

    def go_to_snapshot(self, snapshot_id: str) -> Snapshot:
        self._require_playback()
        self._index = self._find(snapshot_id, self._snapshots)
        return self.current_snapshot

    @property
    def current_index(self) -> Optional[int]:
        return self._index if self.is_playback else None

    @property
    def snapshots(self) -> List[Snapshot]:
        return list(self._snapshots)

    @property
    def current_snapshot(self) -> Optional[Snapshot]:
        return self._snapshots[self._index] if self.is_playback else None

    @property
    def previous_snapshot(self) -> Optional[Snapshot]:
        """Snapshot immediately before the current one, or None at the oldest."""
        if not self.has_previous:
            return None
        return self._snapshots[self._index - 1]

    # ========================================================================
    # CURRENT PAIR
    # ========================================================================

    @property
    def recorded_changes(self) -> SnapshotChanges:
        """Changes recorded when the current snapshot was saved."""
        self._require_playback()
        return self.current_snapshot.changes

    @property
    def computed_changes(self) -> SnapshotChanges:
        """Diff of the previous snapshot against the current one; empty at the oldest."""
        self._require_playback()
        if self._index not in self._computed:
            previous = self.previous_snapshot
            self._computed[self._index] = (
                diff_snapshots(previous, self.current_snapshot) if previous else EMPTY_CHANGES
            )
        return self._computed[self._index]

    @property
    def currency_deltas(self) -> Dict[str, CurrencyDelta]:
        """Per-currency deltas of the current pair; empty at the oldest snapshot."""
        self._require_playback()
        previous = self.previous_snapshot
        if previous is None:
            return {}
        return currency_deltas(
            previous, self.current_snapshot,
            changes=self.recorded_changes,
            weighting=self.weighting,
        )

    @property
    def playback_previews(self) -> Dict[str, PlaybackPreview]:
        """Current figures against the previous snapshot's, keyed by loan id."""
        self._require_playback()
        previous = self.previous_snapshot
        if previous is None:
            return {}
        return build_playback_previews(previous.loans, self.current_snapshot.loans)

    # ========================================================================
    # CHANGED-ONLY FILTER
    # ========================================================================

    @property
    def changed_only(self) -> bool:
        return self._changed_only

    def set_changed_only(self, enabled: bool) -> None:
        self._changed_only = bool(enabled)

    def toggle_changed_only(self) -> bool:
        self._changed_only = not self._changed_only
        return self._changed_only

    def visible_loans(self) -> List[Loan]:
        """
        Loans of the current snapshot to display.

        With the changed-only filter on, only loans referenced by the recorded
        changes are returned, even if the computed diff reports more.
        """
        self._require_playback()
        loans = list(self.current_snapshot.loans)
        if not self._changed_only:
            return loans
        referenced = self.recorded_changes.loan_ids
        return [loan for loan in loans if loan.id in referenced]

    def __repr__(self) -> str:
        if not self.is_playback:
            return "PlaybackController(LIVE)"
        return (f"PlaybackController(PLAYBACK at {self.current_snapshot.id}, "
                f"{self._index + 1}/{len(self._snapshots)})")
