"""
pricing - Staged Loan Pricing Changes, Previews and Snapshot Playback

An in-process library for bulk-editing loan pricing: pending edits are staged
against an immutable baseline, projected without touching persisted state, and
saved snapshots can be replayed and diffed.

Usage:
    from pricing import (
        EditingSession, Portfolio, Loan, LoanPricing, EditableField, recalculate_loan,
    )

    loan = recalculate_loan(Loan(
        id="L1", currency="USD", principal=100000,
        pricing=LoanPricing(base_rate=0.05, spread=0.02),
    ))
    session = EditingSession(Portfolio("pf-1", loans=[loan]))

    # Stage an edit and read the projection
    preview = session.on_preview_change("L1", EditableField.BASE_RATE, 0.06)
    preview.effective_rate                                   # Decimal("0.0800")
    session.ledger.get_original_value("L1", EditableField.BASE_RATE)   # Decimal("0.05")

    # Save: the collaborator persists, then the session records a snapshot
    changes = session.prepare_save()
    snapshot = session.commit(saved_loans, user_name="Ana")

    # Replay history read-only
    session.enter_playback(snapshot.id)
    session.playback.recorded_changes
"""

# Core types
from .core import (
    PortfolioView,
    Loan,
    LoanPricing,
    Fee,
    FeeTier,
    FeeConfig,
    Invoice,
    LoanStatus,
    PricingStatus,
    FeeCalculationType,
    FeeBasis,
    DayCountConvention,
    AccrualMethod,
    FeeChangeType,
    ChangeAction,
    EditableField,
    PricingError,
    LoanNotFound,
    FeeConfigNotFound,
    FeeNotFound,
    UnknownField,
    SnapshotNotFound,
    SnapshotOrderError,
    PlaybackError,
    SessionClosed,
    ConfigurationError,
    PENDING_FEE_PREFIX,
    content_hash,
)

# Pricing formula
from .formula import (
    round_amount,
    round_rate,
    calculate_effective_rate,
    year_fraction,
    calculate_simple_interest,
    calculate_compound_interest,
    calculate_interest,
    calculate_tiered_amount,
    calculate_fee_amount,
    calculate_fee_from_config,
    calculate_total_fees,
    calculate_net_proceeds,
    recalculate_loan,
)

# Baseline
from .portfolio import Portfolio

# Change ledger
from .change_ledger import (
    ChangeLedger,
    PendingFieldChange,
    PendingFeeChange,
    LedgerEvent,
    LedgerEventKind,
)

# Previews
from .preview import (
    Preview,
    PlaybackPreview,
    PreviewCalculator,
    project_fees,
    project_loan,
    build_playback_previews,
)

# Snapshots
from .snapshot import (
    Snapshot,
    SnapshotChanges,
    FeeChangeDetail,
    RateChangeDetail,
    InvoiceChangeDetail,
    StatusChangeDetail,
    CurrencySummary,
    SummaryDelta,
    SnapshotHistory,
    calculate_summary,
    calculate_summary_delta,
    create_snapshot,
    record_changes,
)

# Diff engine
from .diff import (
    RateWeighting,
    CurrencyDelta,
    diff_loans,
    diff_snapshots,
    currency_deltas,
)

# Pending impact
from .impact import (
    CurrencyImpact,
    RateChangeStats,
    rate_change_statistics,
    summarize_pending_impact,
)

# Playback
from .playback import (
    GridCapabilities,
    EditableGrid,
    ReadOnlyGrid,
    PlaybackState,
    PlaybackController,
)

# Session, configuration, logging
from .session import EditingSession
from .config import PricingConfig
from .logging import setup_logging, get_logger


__all__ = [
    # Core
    'PortfolioView', 'Loan', 'LoanPricing', 'Fee', 'FeeTier', 'FeeConfig', 'Invoice',
    'LoanStatus', 'PricingStatus', 'FeeCalculationType', 'FeeBasis',
    'DayCountConvention', 'AccrualMethod', 'FeeChangeType', 'ChangeAction', 'EditableField',
    'PENDING_FEE_PREFIX', 'content_hash',
    # Exceptions
    'PricingError', 'LoanNotFound', 'FeeConfigNotFound', 'FeeNotFound', 'UnknownField',
    'SnapshotNotFound', 'SnapshotOrderError', 'PlaybackError', 'SessionClosed',
    'ConfigurationError',
    # Formula
    'round_amount', 'round_rate', 'calculate_effective_rate', 'year_fraction',
    'calculate_simple_interest', 'calculate_compound_interest', 'calculate_interest',
    'calculate_tiered_amount', 'calculate_fee_amount', 'calculate_fee_from_config',
    'calculate_total_fees', 'calculate_net_proceeds', 'recalculate_loan',
    # Baseline
    'Portfolio',
    # Ledger
    'ChangeLedger', 'PendingFieldChange', 'PendingFeeChange', 'LedgerEvent', 'LedgerEventKind',
    # Previews
    'Preview', 'PlaybackPreview', 'PreviewCalculator', 'project_fees', 'project_loan',
    'build_playback_previews',
    # Snapshots
    'Snapshot', 'SnapshotChanges', 'FeeChangeDetail', 'RateChangeDetail',
    'InvoiceChangeDetail', 'StatusChangeDetail', 'CurrencySummary', 'SummaryDelta',
    'SnapshotHistory', 'calculate_summary', 'calculate_summary_delta', 'create_snapshot',
    'record_changes',
    # Diff
    'RateWeighting', 'CurrencyDelta', 'diff_loans', 'diff_snapshots', 'currency_deltas',
    # Impact
    'CurrencyImpact', 'RateChangeStats', 'rate_change_statistics', 'summarize_pending_impact',
    # Playback
    'GridCapabilities', 'EditableGrid', 'ReadOnlyGrid', 'PlaybackState', 'PlaybackController',
    # Session
    'EditingSession', 'PricingConfig', 'setup_logging', 'get_logger',
]

__version__ = '1.0.0'
