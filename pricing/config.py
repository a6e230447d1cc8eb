"""Configuration management for the pricing workspace."""

from __future__ import annotations
from dataclasses import dataclass
import logging
import os

from .core import ConfigurationError
from .diff import RateWeighting
from .logging import LOG_FORMATS, setup_logging


DEFAULT_SNAPSHOT_RETENTION = 100


@dataclass
class PricingConfig:
    """
    Runtime settings of an editing session.

    rate_weighting selects how the average-rate delta of a currency is computed
    ("unweighted" mean of per-loan changes, or "principal" weighted).
    snapshot_retention is the number of snapshots SnapshotHistory.prune() keeps.
    """

    rate_weighting: str = RateWeighting.UNWEIGHTED.value
    snapshot_retention: int = DEFAULT_SNAPSHOT_RETENTION
    log_level: str = "INFO"
    log_format: str = "standard"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError for any invalid setting."""
        try:
            RateWeighting(self.rate_weighting)
        except ValueError:
            raise ConfigurationError(
                f"rate_weighting must be one of {[w.value for w in RateWeighting]}, "
                f"got {self.rate_weighting!r}"
            ) from None
        if isinstance(self.snapshot_retention, bool) or not isinstance(self.snapshot_retention, int):
            raise ConfigurationError(
                f"snapshot_retention must be an integer, got {self.snapshot_retention!r}"
            )
        if self.snapshot_retention < 1:
            raise ConfigurationError(
                f"snapshot_retention must be at least 1, got {self.snapshot_retention}"
            )
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"Unknown log level: {self.log_level!r}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigurationError(
                f"log_format must be one of {list(LOG_FORMATS)}, got {self.log_format!r}"
            )

    @property
    def weighting(self) -> RateWeighting:
        return RateWeighting(self.rate_weighting)

    @classmethod
    def from_env(cls) -> "PricingConfig":
        """Create config from environment variables."""
        retention = os.getenv("PRICING_SNAPSHOT_RETENTION", str(DEFAULT_SNAPSHOT_RETENTION))
        try:
            retention_value = int(retention)
        except ValueError:
            raise ConfigurationError(
                f"PRICING_SNAPSHOT_RETENTION must be an integer, got {retention!r}"
            ) from None

        return cls(
            rate_weighting=os.getenv("PRICING_RATE_WEIGHTING", RateWeighting.UNWEIGHTED.value).lower(),
            snapshot_retention=retention_value,
            log_level=os.getenv("PRICING_LOG_LEVEL", "INFO"),
            log_format=os.getenv("PRICING_LOG_FORMAT", "standard").lower(),
        )

    def configure_logging(self) -> None:
        """Apply log_level and log_format through setup_logging()."""
        setup_logging(self.log_level, self.log_format)
