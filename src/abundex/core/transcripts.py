"""Per-transcript state read and updated by the EM estimator.

The transcript table is stored column-wise (one numpy array per attribute)
so the estimator can gather lengths and abundances for many alignments at
once. ``TranscriptInfo`` is a per-transcript snapshot for reporting.

Example:
    >>> from abundex.core.transcripts import TranscriptTable
    >>> table = TranscriptTable.from_references(["tx1", "tx2"], [1000, 500])
    >>> table[1].effective_length
    500.0
"""

from __future__ import annotations

import logging
from typing import Iterator, Sequence

import attrs
import numpy as np

from abundex.config import ConfigurationError

logger = logging.getLogger(__name__)

# Effective lengths never drop below this
EFFECTIVE_LENGTH_FLOOR = 1.0


# =============================================================================
# Data Structures
# =============================================================================


@attrs.define(slots=True)
class TranscriptInfo:
    """Snapshot of one transcript's state.

    Attributes:
        index: Position in the reference table.
        name: Reference sequence name.
        length: Length in bases.
        effective_length: Length used to normalize abundance.
        abundance: Current abundance estimate (reads).
        coverage_bins: Coverage mass per bin, or None without a bias model.
    """

    index: int
    name: str
    length: int
    effective_length: float
    abundance: float = 0.0
    coverage_bins: np.ndarray | None = None


def compute_effective_lengths(
    lengths: Sequence[int] | np.ndarray,
    mean_fragment_length: float | None = None,
) -> np.ndarray:
    """Compute floored effective lengths.

    Args:
        lengths: Transcript lengths.
        mean_fragment_length: If given, subtracted from each length (plus one).

    Returns:
        Effective lengths as float64, each at least EFFECTIVE_LENGTH_FLOOR.
    """
    lengths = np.asarray(lengths, dtype=np.float64)
    if mean_fragment_length is None:
        effective = lengths.copy()
    else:
        effective = lengths - mean_fragment_length + 1.0
    return np.maximum(effective, EFFECTIVE_LENGTH_FLOOR)


# =============================================================================
# Transcript Table
# =============================================================================


class TranscriptTable:
    """Column-wise table of transcript state.

    The estimator reads ``effective_lengths`` and ``abundance`` concurrently
    during the E-step and replaces ``abundance`` and ``coverage`` only at the
    end-of-iteration reduction.

    Attributes:
        names: Reference names in table order.
        lengths: Lengths in bases (int64).
        effective_lengths: Floored effective lengths (float64).
        abundance: Current abundance estimate per transcript (float64).
        coverage: Coverage mass array of shape (n, bins), or None.
    """

    def __init__(
        self,
        names: Sequence[str],
        lengths: Sequence[int] | np.ndarray,
        effective_lengths: Sequence[float] | np.ndarray | None = None,
        coverage_bin_count: int | None = None,
    ) -> None:
        """Initialize the table.

        Args:
            names: Reference names.
            lengths: Reference lengths, same order as names.
            effective_lengths: Optional precomputed effective lengths.
            coverage_bin_count: Number of coverage bins (None disables bins).

        Raises:
            ConfigurationError: If the table is empty or columns disagree.
        """
        if len(names) == 0:
            raise ConfigurationError("Reference table contains no transcripts")
        if len(names) != len(lengths):
            raise ConfigurationError(
                f"Got {len(names)} names but {len(lengths)} lengths"
            )

        self.names = list(names)
        self.lengths = np.asarray(lengths, dtype=np.int64)
        if np.any(self.lengths <= 0):
            raise ConfigurationError("Transcript lengths must be positive")

        if effective_lengths is None:
            self.effective_lengths = compute_effective_lengths(self.lengths)
        else:
            if len(effective_lengths) != len(self.names):
                raise ConfigurationError("effective_lengths does not match the table size")
            self.effective_lengths = np.maximum(
                np.asarray(effective_lengths, dtype=np.float64), EFFECTIVE_LENGTH_FLOOR
            )

        self.abundance = np.zeros(len(self.names), dtype=np.float64)
        self.coverage_bin_count = coverage_bin_count
        self.coverage: np.ndarray | None = None
        if coverage_bin_count is not None:
            self.coverage = np.zeros((len(self.names), coverage_bin_count), dtype=np.float64)

    @classmethod
    def from_references(
        cls,
        names: Sequence[str],
        lengths: Sequence[int],
        coverage_bin_count: int | None = None,
        mean_fragment_length: float | None = None,
    ) -> TranscriptTable:
        """Create a table from a resolved reference header.

        Args:
            names: Reference names.
            lengths: Reference lengths.
            coverage_bin_count: Bins per transcript when modeling bias.
            mean_fragment_length: Optional fragment length for effective lengths.

        Returns:
            New TranscriptTable.
        """
        table = cls(
            names,
            lengths,
            effective_lengths=compute_effective_lengths(lengths, mean_fragment_length),
            coverage_bin_count=coverage_bin_count,
        )
        logger.info(f"Parsed reference information for {len(table):,} transcripts")
        return table

    def __len__(self) -> int:
        return len(self.names)

    def __getitem__(self, index: int) -> TranscriptInfo:
        return TranscriptInfo(
            index=index,
            name=self.names[index],
            length=int(self.lengths[index]),
            effective_length=float(self.effective_lengths[index]),
            abundance=float(self.abundance[index]),
            coverage_bins=None if self.coverage is None else self.coverage[index].copy(),
        )

    def __iter__(self) -> Iterator[TranscriptInfo]:
        for i in range(len(self)):
            yield self[i]

    @property
    def has_coverage(self) -> bool:
        """Whether coverage bins are tracked."""
        return self.coverage is not None

    def set_abundance(self, abundance: np.ndarray) -> None:
        """Replace the abundance vector, clamping negatives to zero."""
        if abundance.shape != self.abundance.shape:
            raise ValueError(
                f"Abundance shape {abundance.shape} does not match table ({len(self)},)"
            )
        self.abundance = np.maximum(abundance, 0.0)

    def set_coverage(self, coverage: np.ndarray) -> None:
        """Replace the coverage bins after a reduction."""
        if self.coverage is None:
            raise RuntimeError("Coverage bins are not tracked for this table")
        if coverage.shape != self.coverage.shape:
            raise ValueError(
                f"Coverage shape {coverage.shape} does not match table {self.coverage.shape}"
            )
        self.coverage = coverage

    def reset(self) -> None:
        """Zero abundances and coverage before a new run."""
        self.abundance = np.zeros(len(self), dtype=np.float64)
        if self.coverage is not None:
            self.coverage = np.zeros_like(self.coverage)
