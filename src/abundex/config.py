"""Configuration management for abundex.

This module holds the configuration records consumed by the alignment
filter, the bias models and the EM estimator. Configuration can come from:
- Default values
- Preset filter groups (``no_filters``, ``nanocount``)
- A TOML configuration file
- Command-line arguments

Example:
    >>> from abundex.config import Config
    >>> config = Config.load("abundex.toml")
    >>> config.em.max_iterations
    1000
"""

import math
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

import attrs

# =============================================================================
# Default Configuration Values
# =============================================================================

# Clip limits this large never reject anything
UNLIMITED_CLIP = 4_294_967_295

# Alignment filter defaults
DEFAULT_SCORE_THRESHOLD = 0.9
DEFAULT_MIN_ALIGNED_FRACTION = 0.5
DEFAULT_MIN_ALIGNED_LEN = 50

# Bias model defaults
DEFAULT_GROWTH_RATE = 2.0
DEFAULT_COVERAGE_BIN_COUNT = 10
DEFAULT_KDE_BANDWIDTH = 0.05
DEFAULT_LENGTH_BUCKET_COUNT = 1

# EM defaults
DEFAULT_CONVERGENCE_TOLERANCE = 1e-6
DEFAULT_MAX_ITERATIONS = 1000
DEFAULT_SCORE_BUCKET_WIDTH = 0.01


# =============================================================================
# Exceptions
# =============================================================================


class ConfigurationError(ValueError):
    """Raised when configuration values are invalid or contradictory."""

    pass


# =============================================================================
# Enums
# =============================================================================


class StrandFilter(Enum):
    """Which alignment orientation is admissible."""

    BOTH = "both"
    FORWARD = "forward"
    REVERSE = "reverse"

    def accepts(self, strand: str) -> bool:
        """Check whether an alignment on ``strand`` ("+" or "-") passes."""
        if self is StrandFilter.BOTH:
            return True
        if self is StrandFilter.FORWARD:
            return strand == "+"
        return strand == "-"


class BiasModelKind(Enum):
    """Available positional bias models."""

    NONE = "none"
    EMPIRICAL = "empirical"
    BINOMIAL = "binomial"
    LOGISTIC = "logistic"


# =============================================================================
# Configuration Classes
# =============================================================================


@attrs.define
class FilterConfig:
    """Thresholds for the per-alignment admissibility filter.

    Attributes:
        five_prime_clip_max: Maximum clipped bases at the read 5' end.
        three_prime_clip_max: Maximum clipped bases at the read 3' end.
        score_threshold_fraction: Minimum score as a fraction of the read's best.
        min_aligned_fraction: Minimum fraction of the read inside the alignment.
        min_aligned_len: Minimum aligned read bases.
        required_strand: Admissible alignment orientation.
    """

    five_prime_clip_max: int = UNLIMITED_CLIP
    three_prime_clip_max: int = UNLIMITED_CLIP
    score_threshold_fraction: float = DEFAULT_SCORE_THRESHOLD
    min_aligned_fraction: float = DEFAULT_MIN_ALIGNED_FRACTION
    min_aligned_len: int = DEFAULT_MIN_ALIGNED_LEN
    required_strand: StrandFilter = attrs.field(
        default=StrandFilter.BOTH, converter=StrandFilter
    )

    # -------------------------------------------------------------------------
    # Preset Filter Groups
    # -------------------------------------------------------------------------

    @classmethod
    def no_filters(cls) -> "FilterConfig":
        """Disable every filter; only malformed records are rejected."""
        return cls(
            five_prime_clip_max=UNLIMITED_CLIP,
            three_prime_clip_max=UNLIMITED_CLIP,
            score_threshold_fraction=0.0,
            min_aligned_fraction=0.0,
            min_aligned_len=1,
            required_strand=StrandFilter.BOTH,
        )

    @classmethod
    def nanocount(cls) -> "FilterConfig":
        """Filters matching the NanoCount defaults for direct RNA reads."""
        return cls(
            five_prime_clip_max=UNLIMITED_CLIP,
            three_prime_clip_max=50,
            score_threshold_fraction=0.95,
            min_aligned_fraction=0.5,
            min_aligned_len=50,
            required_strand=StrandFilter.FORWARD,
        )

    @classmethod
    def from_group(cls, group: str | None) -> "FilterConfig":
        """Build the filter configuration for a named filter group.

        Args:
            group: "no-filters", "nanocount-filters" or None for defaults.

        Raises:
            ConfigurationError: If the group name is unknown.
        """
        if group is None:
            return cls()
        key = group.replace("_", "-").lower()
        if key == "no-filters":
            return cls.no_filters()
        if key == "nanocount-filters":
            return cls.nanocount()
        raise ConfigurationError(f"Unknown filter group: {group}")

    def validate(self) -> None:
        """Check thresholds for consistency.

        Raises:
            ConfigurationError: If a threshold is out of range.
        """
        if self.five_prime_clip_max < 0 or self.three_prime_clip_max < 0:
            raise ConfigurationError("Clip limits must be non-negative")
        if not 0.0 <= self.score_threshold_fraction <= 1.0:
            raise ConfigurationError(
                f"score_threshold_fraction must be in [0, 1], got {self.score_threshold_fraction}"
            )
        if not 0.0 <= self.min_aligned_fraction <= 1.0:
            raise ConfigurationError(
                f"min_aligned_fraction must be in [0, 1], got {self.min_aligned_fraction}"
            )
        if self.min_aligned_len < 0:
            raise ConfigurationError("min_aligned_len must be non-negative")


@attrs.define
class BiasConfig:
    """Configuration for the positional bias model.

    Attributes:
        model: Which bias model to apply.
        logistic_growth_rate: Growth rate of the logistic curve.
        coverage_bin_count: Number of coverage bins per transcript.
        kde_bandwidth: Kernel bandwidth of the empirical model (fraction of length).
        length_bucket_count: Length buckets pooled separately by the empirical model.
    """

    model: BiasModelKind = attrs.field(default=BiasModelKind.NONE, converter=BiasModelKind)
    logistic_growth_rate: float = DEFAULT_GROWTH_RATE
    coverage_bin_count: int = DEFAULT_COVERAGE_BIN_COUNT
    kde_bandwidth: float = DEFAULT_KDE_BANDWIDTH
    length_bucket_count: int = DEFAULT_LENGTH_BUCKET_COUNT

    @property
    def enabled(self) -> bool:
        """Whether coverage bins must be tracked."""
        return self.model is not BiasModelKind.NONE

    def validate(self) -> None:
        """Check bias model parameters.

        Raises:
            ConfigurationError: If a parameter is out of range.
        """
        if self.enabled and self.coverage_bin_count < 2:
            raise ConfigurationError("coverage_bin_count must be at least 2 when a bias model is used")
        if not math.isfinite(self.logistic_growth_rate):
            raise ConfigurationError("logistic_growth_rate must be finite")
        if self.kde_bandwidth <= 0:
            raise ConfigurationError("kde_bandwidth must be positive")
        if self.length_bucket_count < 1:
            raise ConfigurationError("length_bucket_count must be at least 1")


@attrs.define
class EMConfig:
    """Configuration for the EM estimator.

    Attributes:
        convergence_tolerance: Maximum per-transcript change at convergence.
        max_iterations: Iteration cap.
        score_bucket_width: Resolution of normalized scores in class keys.
        mean_fragment_length: Subtracted from lengths for effective lengths.
    """

    convergence_tolerance: float = DEFAULT_CONVERGENCE_TOLERANCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    score_bucket_width: float = DEFAULT_SCORE_BUCKET_WIDTH
    mean_fragment_length: float | None = None

    def validate(self) -> None:
        """Check estimator parameters.

        Raises:
            ConfigurationError: If a parameter is out of range.
        """
        if not (self.convergence_tolerance > 0 and math.isfinite(self.convergence_tolerance)):
            raise ConfigurationError("convergence_tolerance must be a positive number")
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be at least 1")
        if not 0.0 < self.score_bucket_width <= 1.0:
            raise ConfigurationError("score_bucket_width must be in (0, 1]")
        if self.mean_fragment_length is not None and self.mean_fragment_length < 0:
            raise ConfigurationError("mean_fragment_length must be non-negative")


@attrs.define
class Config:
    """Main configuration container for abundex.

    Attributes:
        filters: Alignment filter thresholds.
        bias: Positional bias model settings.
        em: EM estimator settings.
        threads: Worker threads for filtering and EM.
    """

    filters: FilterConfig = attrs.Factory(FilterConfig)
    bias: BiasConfig = attrs.Factory(BiasConfig)
    em: EMConfig = attrs.Factory(EMConfig)
    threads: int = 1

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from a TOML file.

        The file may contain ``threads`` and the tables ``[filters]``,
        ``[bias]`` and ``[em]``; a ``group`` key in ``[filters]`` selects a
        preset that the remaining keys override.

        Args:
            path: Path to configuration file. If None, returns defaults.

        Returns:
            Loaded configuration object.

        Raises:
            FileNotFoundError: If configuration file doesn't exist.
            ConfigurationError: If configuration file is invalid.
        """
        if path is None:
            return cls()

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Build a configuration from a nested dictionary.

        Raises:
            ConfigurationError: If a section contains unknown keys or bad values.
        """
        filter_data = dict(data.get("filters", {}))
        filters = FilterConfig.from_group(filter_data.pop("group", None))

        try:
            filters = attrs.evolve(filters, **filter_data)
            bias = BiasConfig(**data.get("bias", {}))
            em = EMConfig(**data.get("em", {}))
            config = cls(filters=filters, bias=bias, em=em, threads=data.get("threads", 1))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        config.validate()
        return config

    def validate(self) -> None:
        """Validate every section.

        Raises:
            ConfigurationError: If any section is invalid.
        """
        self.filters.validate()
        self.bias.validate()
        self.em.validate()
        if self.threads < 1:
            raise ConfigurationError("threads must be at least 1")

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation with enums as their values.
        """
        return attrs.asdict(
            self,
            value_serializer=lambda _inst, _field, value: value.value
            if isinstance(value, Enum)
            else value,
        )
