"""Per-alignment admissibility filter.

This module decides which alignments of a read may take part in
quantification. Checks are applied in a fixed order and the first failing
check is reported as the rejection reason:

1. Malformed record (inconsistent offsets or clip lengths)
2. Unmapped record
3. 5' clip longer than allowed
4. 3' clip longer than allowed
5. Score below a fraction of the read's best score (below the best score
   itself when that is not positive)
6. Aligned fraction of the read too small
7. Aligned length too short
8. Wrong strand

Secondary and supplementary alignments are candidates like any other; only
the score threshold removes weak hits.

Example:
    >>> from abundex.config import FilterConfig
    >>> from abundex.core.filters import AlignmentFilter
    >>> aln_filter = AlignmentFilter(FilterConfig(), transcript_lengths=[1000, 500])
    >>> admissible, stats = aln_filter.filter_read(records)
    >>> stats.rejected
    {'low_score': 1}
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, NamedTuple, Sequence

import attrs
import numpy as np

from abundex.config import FilterConfig

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# SAM flag bits
FLAG_UNMAPPED = 0x4
FLAG_SECONDARY = 0x100
FLAG_SUPPLEMENTARY = 0x800


# =============================================================================
# Enums
# =============================================================================


class RejectionReason(Enum):
    """Why an alignment was not admitted."""

    MALFORMED = "malformed"
    UNMAPPED = "unmapped"
    FIVE_PRIME_CLIP = "five_prime_clip"
    THREE_PRIME_CLIP = "three_prime_clip"
    LOW_SCORE = "low_score"
    LOW_ALIGNED_FRACTION = "low_aligned_fraction"
    SHORT_ALIGNMENT = "short_alignment"
    WRONG_STRAND = "wrong_strand"


# =============================================================================
# Data Structures
# =============================================================================


class AlignmentRecord(NamedTuple):
    """A raw alignment of one read to one transcript.

    Clip lengths are in read orientation: ``clip_5p`` is at the read's 5'
    end whichever strand the alignment is on.

    Attributes:
        read_id: Read identifier.
        target: Transcript index in the reference table.
        ref_start: Alignment start on the transcript (0-based).
        ref_end: Alignment end on the transcript (0-based, exclusive).
        clip_5p: Clipped bases at the read 5' end.
        clip_3p: Clipped bases at the read 3' end.
        aligned_length: Read bases inside the alignment.
        read_length: Full read length.
        score: Raw alignment score.
        strand: "+" or "-".
        flags: SAM flag bits.
    """

    read_id: str
    target: int
    ref_start: int
    ref_end: int
    clip_5p: int
    clip_3p: int
    aligned_length: int
    read_length: int
    score: float
    strand: str = "+"
    flags: int = 0

    @property
    def is_secondary(self) -> bool:
        """Secondary alignment flag."""
        return bool(self.flags & FLAG_SECONDARY)

    @property
    def is_supplementary(self) -> bool:
        """Supplementary alignment flag."""
        return bool(self.flags & FLAG_SUPPLEMENTARY)

    @property
    def is_unmapped(self) -> bool:
        """Unmapped flag."""
        return bool(self.flags & FLAG_UNMAPPED)

    @property
    def aligned_fraction(self) -> float:
        """Fraction of the read inside the alignment."""
        if self.read_length <= 0:
            return 0.0
        return self.aligned_length / self.read_length


class AdmissibleAlignment(NamedTuple):
    """An alignment that passed filtering.

    Attributes:
        target: Transcript index.
        score: Raw alignment score.
        normalized_score: Score relative to the read's best score, in (0, 1].
        strand: "+" or "-".
        position: Relative alignment start on the transcript, in [0, 1).
    """

    target: int
    score: float
    normalized_score: float
    strand: str
    position: float


@attrs.define
class FilterStats:
    """Counters collected while filtering.

    Attributes:
        records_seen: Alignment records inspected.
        records_admitted: Alignment records that passed.
        reads_seen: Reads inspected.
        reads_without_alignment: Reads left with no admissible alignment.
        rejected: Rejection counts keyed by reason value.
    """

    records_seen: int = 0
    records_admitted: int = 0
    reads_seen: int = 0
    reads_without_alignment: int = 0
    rejected: dict[str, int] = attrs.Factory(dict)

    def reject(self, reason: RejectionReason) -> None:
        """Count one rejection."""
        self.rejected[reason.value] = self.rejected.get(reason.value, 0) + 1

    @property
    def records_rejected(self) -> int:
        """Total rejected records."""
        return sum(self.rejected.values())

    def merge(self, other: FilterStats) -> FilterStats:
        """Add another set of counters into this one and return self."""
        self.records_seen += other.records_seen
        self.records_admitted += other.records_admitted
        self.reads_seen += other.reads_seen
        self.reads_without_alignment += other.reads_without_alignment
        for reason, count in other.rejected.items():
            self.rejected[reason] = self.rejected.get(reason, 0) + count
        return self

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "records_seen": self.records_seen,
            "records_admitted": self.records_admitted,
            "records_rejected": self.records_rejected,
            "reads_seen": self.reads_seen,
            "reads_without_alignment": self.reads_without_alignment,
            "rejected": {reason.value: self.rejected.get(reason.value, 0) for reason in RejectionReason},
        }


# =============================================================================
# Alignment Filter
# =============================================================================


class AlignmentFilter:
    """Decide admissibility of alignments and normalize their scores.

    ``check`` is a pure function of the record, the read's best score and the
    configuration, so applying it twice gives the same decision.

    Attributes:
        config: Filter thresholds.
        transcript_lengths: Lengths of the reference transcripts.
    """

    def __init__(
        self,
        config: FilterConfig,
        transcript_lengths: Sequence[int] | np.ndarray,
    ) -> None:
        """Initialize the filter.

        Args:
            config: Filter thresholds (validated here).
            transcript_lengths: Lengths used for bounds checks and positions.
        """
        config.validate()
        self.config = config
        self.transcript_lengths = np.asarray(transcript_lengths, dtype=np.int64)

    def _is_malformed(self, record: AlignmentRecord) -> bool:
        """Check record self-consistency."""
        if min(record.clip_5p, record.clip_3p, record.aligned_length, record.ref_start) < 0:
            return True
        if record.read_length <= 0 or record.ref_end <= record.ref_start:
            return True
        if not 0 <= record.target < len(self.transcript_lengths):
            return True
        if record.ref_end > self.transcript_lengths[record.target]:
            return True
        if record.strand not in ("+", "-"):
            return True
        return record.clip_5p + record.aligned_length + record.clip_3p != record.read_length

    def best_score(self, records: Iterable[AlignmentRecord]) -> float | None:
        """Best score among a read's well-formed, mapped alignments.

        Returns:
            The best score, or None if no record qualifies.
        """
        scores = [
            r.score for r in records if not r.is_unmapped and not self._is_malformed(r)
        ]
        return max(scores) if scores else None

    def check(
        self,
        record: AlignmentRecord,
        best_score: float | None,
    ) -> tuple[AdmissibleAlignment | None, RejectionReason | None]:
        """Check one alignment against all thresholds.

        Args:
            record: The alignment to check.
            best_score: Best score among the read's alignments.

        Returns:
            Tuple of (admissible_alignment, None) or (None, rejection_reason).
        """
        cfg = self.config

        if self._is_malformed(record):
            return None, RejectionReason.MALFORMED
        if record.is_unmapped or best_score is None:
            return None, RejectionReason.UNMAPPED

        if record.clip_5p > cfg.five_prime_clip_max:
            return None, RejectionReason.FIVE_PRIME_CLIP
        if record.clip_3p > cfg.three_prime_clip_max:
            return None, RejectionReason.THREE_PRIME_CLIP

        # The read's best record always passes
        if best_score > 0:
            low_score = record.score < cfg.score_threshold_fraction * best_score
        else:
            low_score = record.score < best_score
        if low_score:
            return None, RejectionReason.LOW_SCORE

        if record.aligned_fraction < cfg.min_aligned_fraction:
            return None, RejectionReason.LOW_ALIGNED_FRACTION
        if record.aligned_length < cfg.min_aligned_len:
            return None, RejectionReason.SHORT_ALIGNMENT

        if not cfg.required_strand.accepts(record.strand):
            return None, RejectionReason.WRONG_STRAND

        # Scores are only comparable within a read
        if best_score > 0:
            normalized = min(1.0, max(record.score, 0.0) / best_score)
        else:
            normalized = 1.0

        # ref_start < ref_end <= length, so the position stays below 1
        position = record.ref_start / self.transcript_lengths[record.target]

        return (
            AdmissibleAlignment(
                target=record.target,
                score=record.score,
                normalized_score=normalized,
                strand=record.strand,
                position=float(position),
            ),
            None,
        )

    def filter_read(
        self,
        records: Sequence[AlignmentRecord],
        stats: FilterStats | None = None,
    ) -> tuple[list[AdmissibleAlignment], FilterStats]:
        """Filter all alignments of one read.

        Args:
            records: Every alignment record of the read.
            stats: Counters to update (a new FilterStats if None).

        Returns:
            Tuple of (admissible_alignments, stats).
        """
        stats = stats if stats is not None else FilterStats()
        stats.reads_seen += 1

        best = self.best_score(records)
        admitted: list[AdmissibleAlignment] = []

        for record in records:
            stats.records_seen += 1
            alignment, reason = self.check(record, best)
            if alignment is None:
                stats.reject(reason)
                if reason is RejectionReason.MALFORMED:
                    logger.debug(f"Rejected malformed record for read {record.read_id}")
                continue
            stats.records_admitted += 1
            admitted.append(alignment)

        if not admitted:
            stats.reads_without_alignment += 1

        return admitted, stats

    def filter_reads(
        self,
        reads: Iterable[Sequence[AlignmentRecord]],
    ) -> tuple[list[list[AdmissibleAlignment]], FilterStats]:
        """Filter a batch of reads.

        Args:
            reads: Alignment records grouped by read.

        Returns:
            Tuple of (per-read admissible alignments, stats).
        """
        stats = FilterStats()
        batch = [self.filter_read(records, stats)[0] for records in reads]
        return batch, stats
