"""
change_ledger.py - Staged Pricing Changes

The ChangeLedger records pending, unsaved edits against the immutable portfolio
baseline. It is the only object that mutates pending state, and it is owned by
one EditingSession (one writer, many readers).

Key responsibilities:
    - Field edits: one PendingFieldChange per (loan, field); the first-seen
      original is preserved across later edits, and editing back to the
      original removes the entry
    - Fee operations: add / update / delete with merge and cancellation rules
    - Exact revert of any single entry, of one loan, or of everything
    - Side-effect-free queries used by the grid for highlighting
    - Listener notification after every mutation so previews stay current

Fee operation rules:
    add                  -> new entry with a provisional fee id (pending-fee-N)
    update on a pending add -> merged into the add entry
    update on an update  -> merged, last write wins per key, original kept
    update on a delete   -> ignored (delete is terminal until reverted)
    delete on a pending add -> both cancel, nothing remains
    delete on an update  -> update removed, delete recorded
    delete on a delete   -> no-op
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .core import (
    EditableField, FeeChangeType, Fee, LoanStatus, PricingStatus,
    PENDING_FEE_PREFIX,
    to_decimal,
)
from .logging import get_logger


logger = get_logger(__name__)

# Fee attributes a pending update may change.
UPDATABLE_FEE_FIELDS = frozenset({
    'name', 'code', 'calculated_amount', 'flat_amount', 'rate', 'basis', 'tiers',
    'is_paid', 'is_waived', 'is_overridden',
})


# ============================================================================
# PENDING ENTRIES
# ============================================================================

@dataclass(frozen=True, slots=True)
class PendingFieldChange:
    """
    A pending edit of one editable field of one loan.

    original_value is the baseline value captured at the first edit; later edits
    replace new_value only.
    """
    id: str
    loan_id: str
    field: EditableField
    label: str
    original_value: Any
    new_value: Any
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class PendingFeeChange:
    """
    A pending fee operation.

    For ADD entries fee_id is the provisional id handed back to the caller and
    original_fee is None. For UPDATE and DELETE entries original_fee is the
    persisted fee captured at first edit.
    """
    id: str
    loan_id: str
    change_type: FeeChangeType
    fee_id: str
    timestamp: datetime
    fee_config_id: Optional[str] = None
    fee_name: str = ""
    original_fee: Optional[Fee] = None
    updates: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        object.__setattr__(self, 'change_type', FeeChangeType(self.change_type))
        object.__setattr__(self, 'updates', MappingProxyType(dict(self.updates)))

    @property
    def is_provisional(self) -> bool:
        return self.change_type is FeeChangeType.ADD


class LedgerEventKind(Enum):
    CHANGED = "changed"
    LOAN_REVERTED = "loan_reverted"
    CLEARED = "cleared"


@dataclass(frozen=True, slots=True)
class LedgerEvent:
    """Notification sent to listeners after a mutation. loan_id is None for CLEARED."""
    kind: LedgerEventKind
    loan_id: Optional[str] = None


LedgerListener = Callable[[LedgerEvent], None]


def normalize_field_value(editable: EditableField, value: Any) -> Any:
    """Coerce a grid value into the domain type of the field."""
    if editable.is_rate:
        return to_decimal(value)
    if editable is EditableField.STATUS:
        return LoanStatus(value)
    return PricingStatus(value)


# ============================================================================
# CHANGE LEDGER
# ============================================================================

class ChangeLedger:
    """
    In-memory store of pending field edits and fee operations, keyed by loan.

    Not thread-safe. One ledger belongs to one editing session.

    Example:
        ledger = ChangeLedger()
        ledger.track_field_change("L1", EditableField.BASE_RATE, "Base Rate", 0.05, 0.06)
        ledger.get_original_value("L1", EditableField.BASE_RATE)   # Decimal("0.05")
        entry = ledger.track_fee_add("L1", "cfg-orig", "Origination Fee")
        ledger.track_fee_delete("L1", entry.fee_id)                # cancels the add
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """
        Create an empty ledger.

        Args:
            clock: Zero-argument callable returning the timestamp stamped on new
                entries. Defaults to datetime.now.
        """
        self._clock = clock or datetime.now
        self._field_changes: Dict[Tuple[str, EditableField], PendingFieldChange] = {}
        self._fee_changes: List[PendingFeeChange] = []
        self._listeners: List[LedgerListener] = []
        self._change_seq = 0
        self._fee_change_seq = 0
        self._provisional_seq = 0

    # ========================================================================
    # LISTENERS
    # ========================================================================

    def add_listener(self, listener: LedgerListener) -> None:
        """Register a callback invoked with a LedgerEvent after each mutation."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: LedgerListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: LedgerEventKind, loan_id: Optional[str] = None) -> None:
        event = LedgerEvent(kind, loan_id)
        for listener in list(self._listeners):
            listener(event)

    # ========================================================================
    # FIELD CHANGES
    # ========================================================================

    def track_field_change(
        self,
        loan_id: str,
        field: Any,
        label: Optional[str],
        old_value: Any,
        new_value: Any,
    ) -> Optional[PendingFieldChange]:
        """
        Record an edit of one field of one loan.

        If an entry already exists for (loan_id, field), its original value is
        kept and old_value is ignored. Editing back to the original removes the
        entry. Repeating the current new value is a no-op.

        Args:
            loan_id: Loan being edited
            field: EditableField member or its field path
            label: Display label; defaults to the field's label
            old_value: Baseline value shown before the edit
            new_value: Value entered by the operator

        Returns:
            The pending entry, or None when nothing remains to save

        Raises:
            UnknownField: If field does not name an editable field
        """
        editable = EditableField.parse(field)
        key = (loan_id, editable)
        existing = self._field_changes.get(key)
        new = normalize_field_value(editable, new_value)

        if existing is not None:
            original = existing.original_value
        else:
            original = normalize_field_value(editable, old_value)

        if new == original:
            if existing is not None:
                del self._field_changes[key]
                logger.debug("%s.%s edited back to original, entry removed", loan_id, editable.value)
                self._emit(LedgerEventKind.CHANGED, loan_id)
            return None

        if existing is not None and existing.new_value == new:
            return existing

        if existing is not None:
            entry = replace(existing, new_value=new, timestamp=self._clock())
        else:
            self._change_seq += 1
            entry = PendingFieldChange(
                id=f"change-{self._change_seq}",
                loan_id=loan_id,
                field=editable,
                label=label or editable.label,
                original_value=original,
                new_value=new,
                timestamp=self._clock(),
            )
        self._field_changes[key] = entry
        logger.debug("Tracked %s.%s: %s -> %s", loan_id, editable.value, original, new)
        self._emit(LedgerEventKind.CHANGED, loan_id)
        return entry

    def revert_field_change(self, loan_id: str, field: Any) -> bool:
        """
        Remove the pending edit of one field.

        Returns:
            True if an entry was removed
        """
        editable = EditableField.parse(field)
        removed = self._field_changes.pop((loan_id, editable), None)
        if removed is None:
            return False
        logger.debug("Reverted %s.%s", loan_id, editable.value)
        self._emit(LedgerEventKind.CHANGED, loan_id)
        return True

    def revert_change(self, change_id: str) -> bool:
        """Remove a field change by its id. Returns True if it existed."""
        for key, entry in self._field_changes.items():
            if entry.id == change_id:
                del self._field_changes[key]
                logger.debug("Reverted %s", change_id)
                self._emit(LedgerEventKind.CHANGED, entry.loan_id)
                return True
        return False

    # ========================================================================
    # FEE CHANGES
    # ========================================================================

    def _next_fee_change_id(self) -> str:
        self._fee_change_seq += 1
        return f"fee-change-{self._fee_change_seq}"

    def _find_fee_entry(
        self, loan_id: str, fee_id: str, change_type: FeeChangeType
    ) -> Optional[int]:
        for i, entry in enumerate(self._fee_changes):
            if (entry.loan_id == loan_id and entry.fee_id == fee_id
                    and entry.change_type is change_type):
                return i
        return None

    @staticmethod
    def _check_updates(updates: Mapping[str, Any]) -> None:
        unknown = set(updates) - UPDATABLE_FEE_FIELDS
        if unknown:
            raise ValueError(f"Fee fields cannot be updated: {sorted(unknown)}")

    def track_fee_add(
        self,
        loan_id: str,
        fee_config_id: str,
        fee_name: str = "",
    ) -> PendingFeeChange:
        """
        Record a new fee created from a catalogue entry.

        Args:
            loan_id: Loan receiving the fee
            fee_config_id: Catalogue entry the fee is created from
            fee_name: Display name

        Returns:
            The add entry; its fee_id is the provisional id used by later
            updates or a cancelling delete
        """
        self._provisional_seq += 1
        entry = PendingFeeChange(
            id=self._next_fee_change_id(),
            loan_id=loan_id,
            change_type=FeeChangeType.ADD,
            fee_id=f"{PENDING_FEE_PREFIX}{self._provisional_seq}",
            fee_config_id=fee_config_id,
            fee_name=fee_name,
            timestamp=self._clock(),
        )
        self._fee_changes.append(entry)
        logger.debug("Tracked fee add %s on %s from %s", entry.fee_id, loan_id, fee_config_id)
        self._emit(LedgerEventKind.CHANGED, loan_id)
        return entry

    def track_fee_update(
        self,
        loan_id: str,
        fee_id: str,
        original_fee: Optional[Fee],
        updates: Mapping[str, Any],
    ) -> Optional[PendingFeeChange]:
        """
        Record changes to an existing or pending fee.

        Args:
            loan_id: Loan owning the fee
            fee_id: Persisted fee id, or the provisional id of a pending add
            original_fee: Persisted fee before any edit (ignored for pending adds
                and for fees that already have an update entry)
            updates: Fee attribute -> new value

        Returns:
            The add or update entry holding the merged updates, or None when the
            fee is pending deletion

        Raises:
            ValueError: If updates names an attribute that cannot be updated
        """
        self._check_updates(updates)

        if self.is_fee_deleted(loan_id, fee_id):
            logger.warning("Ignoring update of %s on %s: fee is pending deletion", fee_id, loan_id)
            return None

        for change_type in (FeeChangeType.ADD, FeeChangeType.UPDATE):
            index = self._find_fee_entry(loan_id, fee_id, change_type)
            if index is not None:
                existing = self._fee_changes[index]
                merged = {**existing.updates, **updates}
                entry = replace(existing, updates=merged, timestamp=self._clock())
                self._fee_changes[index] = entry
                logger.debug("Merged update into %s for %s on %s", entry.id, fee_id, loan_id)
                self._emit(LedgerEventKind.CHANGED, loan_id)
                return entry

        entry = PendingFeeChange(
            id=self._next_fee_change_id(),
            loan_id=loan_id,
            change_type=FeeChangeType.UPDATE,
            fee_id=fee_id,
            fee_config_id=original_fee.fee_config_id if original_fee else None,
            fee_name=original_fee.name if original_fee else "",
            original_fee=original_fee,
            updates=dict(updates),
            timestamp=self._clock(),
        )
        self._fee_changes.append(entry)
        logger.debug("Tracked fee update %s on %s", fee_id, loan_id)
        self._emit(LedgerEventKind.CHANGED, loan_id)
        return entry

    def track_fee_delete(
        self,
        loan_id: str,
        fee_id: str,
        original_fee: Optional[Fee] = None,
    ) -> Optional[PendingFeeChange]:
        """
        Record deletion of a fee.

        Deleting a pending add cancels it and leaves no entry. Otherwise any
        pending update of the fee is dropped and a delete entry is recorded.

        Returns:
            The delete entry, or None when the delete cancelled a pending add
        """
        add_index = self._find_fee_entry(loan_id, fee_id, FeeChangeType.ADD)
        if add_index is not None:
            cancelled = self._fee_changes.pop(add_index)
            logger.debug("Fee delete cancelled pending add %s on %s", cancelled.fee_id, loan_id)
            self._emit(LedgerEventKind.CHANGED, loan_id)
            return None

        delete_index = self._find_fee_entry(loan_id, fee_id, FeeChangeType.DELETE)
        if delete_index is not None:
            return self._fee_changes[delete_index]

        update_index = self._find_fee_entry(loan_id, fee_id, FeeChangeType.UPDATE)
        if update_index is not None:
            superseded = self._fee_changes.pop(update_index)
            original_fee = superseded.original_fee or original_fee

        entry = PendingFeeChange(
            id=self._next_fee_change_id(),
            loan_id=loan_id,
            change_type=FeeChangeType.DELETE,
            fee_id=fee_id,
            fee_config_id=original_fee.fee_config_id if original_fee else None,
            fee_name=original_fee.name if original_fee else "",
            original_fee=original_fee,
            timestamp=self._clock(),
        )
        self._fee_changes.append(entry)
        logger.debug("Tracked fee delete %s on %s", fee_id, loan_id)
        self._emit(LedgerEventKind.CHANGED, loan_id)
        return entry

    def revert_fee_change(self, change_id: str) -> bool:
        """Remove a fee change by its id. Returns True if it existed."""
        for i, entry in enumerate(self._fee_changes):
            if entry.id == change_id:
                del self._fee_changes[i]
                logger.debug("Reverted %s", change_id)
                self._emit(LedgerEventKind.CHANGED, entry.loan_id)
                return True
        return False

    # ========================================================================
    # BULK REMOVAL
    # ========================================================================

    def revert_all_for_loan(self, loan_id: str) -> int:
        """
        Remove every pending field and fee entry of one loan.

        Returns:
            Number of entries removed
        """
        field_keys = [key for key in self._field_changes if key[0] == loan_id]
        for key in field_keys:
            del self._field_changes[key]
        kept = [entry for entry in self._fee_changes if entry.loan_id != loan_id]
        removed = len(field_keys) + len(self._fee_changes) - len(kept)
        self._fee_changes = kept
        if removed:
            logger.debug("Reverted %d pending changes on %s", removed, loan_id)
            self._emit(LedgerEventKind.LOAN_REVERTED, loan_id)
        return removed

    def clear_all_changes(self) -> None:
        """Remove everything. Called after a successful save."""
        count = self.change_count
        self._field_changes.clear()
        self._fee_changes.clear()
        logger.debug("Cleared %d pending changes", count)
        self._emit(LedgerEventKind.CLEARED)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def has_changes(self) -> bool:
        return bool(self._field_changes or self._fee_changes)

    def has_changes_for_loan(self, loan_id: str) -> bool:
        return (any(key[0] == loan_id for key in self._field_changes)
                or any(entry.loan_id == loan_id for entry in self._fee_changes))

    def get_field_change(self, loan_id: str, field: Any) -> Optional[PendingFieldChange]:
        return self._field_changes.get((loan_id, EditableField.parse(field)))

    def is_field_modified(self, loan_id: str, field: Any) -> bool:
        return self.get_field_change(loan_id, field) is not None

    def get_original_value(self, loan_id: str, field: Any) -> Any:
        """Baseline value captured at the first edit, or None if unmodified."""
        entry = self.get_field_change(loan_id, field)
        return entry.original_value if entry else None

    def get_new_value(self, loan_id: str, field: Any) -> Any:
        entry = self.get_field_change(loan_id, field)
        return entry.new_value if entry else None

    def get_changes_for_loan(self, loan_id: str) -> List[PendingFieldChange]:
        return [entry for key, entry in self._field_changes.items() if key[0] == loan_id]

    def get_fee_changes_for_loan(self, loan_id: str) -> List[PendingFeeChange]:
        return [entry for entry in self._fee_changes if entry.loan_id == loan_id]

    def _fee_changes_of_type(self, loan_id: str, change_type: FeeChangeType) -> List[PendingFeeChange]:
        return [entry for entry in self._fee_changes
                if entry.loan_id == loan_id and entry.change_type is change_type]

    def get_pending_fee_adds(self, loan_id: str) -> List[PendingFeeChange]:
        return self._fee_changes_of_type(loan_id, FeeChangeType.ADD)

    def get_pending_fee_updates(self, loan_id: str) -> List[PendingFeeChange]:
        return self._fee_changes_of_type(loan_id, FeeChangeType.UPDATE)

    def get_pending_fee_deletes(self, loan_id: str) -> List[PendingFeeChange]:
        return self._fee_changes_of_type(loan_id, FeeChangeType.DELETE)

    def is_fee_deleted(self, loan_id: str, fee_id: str) -> bool:
        return self._find_fee_entry(loan_id, fee_id, FeeChangeType.DELETE) is not None

    def get_fee_updates(self, loan_id: str, fee_id: str) -> Optional[Mapping[str, Any]]:
        """Pending updates of a persisted fee or a pending add, or None."""
        for change_type in (FeeChangeType.UPDATE, FeeChangeType.ADD):
            index = self._find_fee_entry(loan_id, fee_id, change_type)
            if index is not None:
                return self._fee_changes[index].updates
        return None

    def pending_rate_inputs(self, loan_id: str) -> Dict[EditableField, Any]:
        """Pending new values of every rate field of a loan."""
        return {
            editable: entry.new_value
            for (lid, editable), entry in self._field_changes.items()
            if lid == loan_id and editable.is_rate
        }

    @property
    def affected_loan_ids(self) -> List[str]:
        ids = {key[0] for key in self._field_changes}
        ids.update(entry.loan_id for entry in self._fee_changes)
        return sorted(ids)

    @property
    def change_count(self) -> int:
        return len(self._field_changes) + len(self._fee_changes)

    @property
    def field_changes(self) -> List[PendingFieldChange]:
        return list(self._field_changes.values())

    @property
    def fee_changes(self) -> List[PendingFeeChange]:
        return list(self._fee_changes)

    def __repr__(self) -> str:
        return (f"ChangeLedger({len(self._field_changes)} field changes, "
                f"{len(self._fee_changes)} fee changes)")
