"""BAM/SAM reading for long-read transcriptome alignments.

This module reads name-collated alignments of long reads against a
transcriptome and converts them into ``AlignmentRecord`` objects for the
alignment filter.

Features:
    - Reference table from the header
    - Clip lengths from the CIGAR, oriented to the read's 5'/3' ends
    - Alignment score from the ``AS`` tag
    - Streaming grouping of consecutive records by read name

Example:
    >>> from abundex.io.bam import AlignmentReader
    >>> with AlignmentReader("aln.bam") as reader:
    ...     names, lengths = reader.reference_names, reader.reference_lengths
    ...     for records in reader.reads():
    ...         print(records[0].read_id, len(records))
"""

from __future__ import annotations

import itertools
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator

import pysam

from abundex.core.filters import AlignmentRecord
from abundex.utils.logging import ProgressLogger

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# CIGAR operations
CIGAR_M = 0  # Match or mismatch
CIGAR_I = 1  # Insertion
CIGAR_D = 2  # Deletion
CIGAR_N = 3  # Skipped region
CIGAR_S = 4  # Soft clip
CIGAR_H = 5  # Hard clip
CIGAR_EQ = 7  # Sequence match
CIGAR_X = 8  # Sequence mismatch

CLIP_OPS = (CIGAR_S, CIGAR_H)

# Tag holding the aligner's alignment score
SCORE_TAG = "AS"

# Reads between progress messages
PROGRESS_INTERVAL = 100_000


# =============================================================================
# CIGAR Helpers
# =============================================================================


def cigar_clips(cigartuples: list[tuple[int, int]] | None) -> tuple[int, int]:
    """Clipped bases at the left and right ends of an alignment.

    Soft and hard clips both count.

    Args:
        cigartuples: CIGAR as (operation, length) pairs, in reference order.

    Returns:
        Tuple of (left_clip, right_clip).
    """
    if not cigartuples:
        return 0, 0

    left = 0
    for op, length in cigartuples:
        if op not in CLIP_OPS:
            break
        left += length

    right = 0
    for op, length in reversed(cigartuples):
        if op not in CLIP_OPS:
            break
        right += length

    return left, right


def segment_to_record(segment: pysam.AlignedSegment) -> AlignmentRecord:
    """Convert a mapped pysam segment to an AlignmentRecord.

    On the reverse strand the read's 5' end lies at the right end of the
    alignment, so the clips are swapped.
    """
    left, right = cigar_clips(segment.cigartuples)
    strand = "-" if segment.is_reverse else "+"
    clip_5p, clip_3p = (right, left) if strand == "-" else (left, right)

    read_length = segment.infer_read_length() or 0
    score = segment.get_tag(SCORE_TAG) if segment.has_tag(SCORE_TAG) else 0

    return AlignmentRecord(
        read_id=segment.query_name,
        target=segment.reference_id,
        ref_start=segment.reference_start,
        ref_end=segment.reference_end if segment.reference_end is not None else -1,
        clip_5p=clip_5p,
        clip_3p=clip_3p,
        aligned_length=read_length - left - right,
        read_length=read_length,
        score=float(score),
        strand=strand,
        flags=segment.flag,
    )


def group_by_read(records: Iterable[AlignmentRecord]) -> Iterator[list[AlignmentRecord]]:
    """Group consecutive records sharing a read name."""
    for _, group in itertools.groupby(records, key=lambda r: r.read_id):
        yield list(group)


# =============================================================================
# Alignment Reader
# =============================================================================


class AlignmentReader:
    """Stream name-collated alignments from a BAM or SAM file.

    All alignments of a read must be adjacent, as produced by minimap2 or
    ``samtools collate``; no index is needed.

    Attributes:
        path: Path to the alignment file.
        reads_seen: Read groups yielded so far.
    """

    def __init__(self, path: Path | str) -> None:
        """Open the alignment file.

        Args:
            path: Path to a BAM or SAM file.

        Raises:
            FileNotFoundError: If the file doesn't exist.
        """
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"Alignment file not found: {self.path}")

        self.reads_seen = 0
        self._bam: pysam.AlignmentFile | None = None
        self._open()

    def _open(self) -> None:
        """Open the file and inspect its header."""
        self._bam = pysam.AlignmentFile(str(self.path), "r", check_sq=True)
        logger.info(f"Opened alignment file: {self.path.name}")
        if not self.mapped_with_minimap2():
            logger.warning(
                f"{self.path.name} does not look like minimap2 output; "
                "scores and clips may not be comparable"
            )

    def __enter__(self) -> AlignmentReader:
        """Context manager entry."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.close()

    def close(self) -> None:
        """Close the alignment file."""
        if self._bam is not None:
            self._bam.close()
            self._bam = None

    def _require_open(self) -> pysam.AlignmentFile:
        if self._bam is None:
            raise RuntimeError("Alignment file not open")
        return self._bam

    @property
    def reference_names(self) -> list[str]:
        """Reference names in header order."""
        return list(self._require_open().references)

    @property
    def reference_lengths(self) -> list[int]:
        """Reference lengths in header order."""
        return [int(n) for n in self._require_open().lengths]

    def mapped_with_minimap2(self) -> bool:
        """Whether any @PG header line names minimap2."""
        programs = self._require_open().header.to_dict().get("PG", [])
        return any(
            "minimap2" in str(pg.get("PN", "")).lower() or "minimap2" in str(pg.get("ID", "")).lower()
            for pg in programs
        )

    def records(self) -> Iterator[AlignmentRecord]:
        """Yield one record per mapped alignment, in file order."""
        bam = self._require_open()
        for segment in bam.fetch(until_eof=True):
            if segment.is_unmapped:
                continue
            yield segment_to_record(segment)

    def reads(self) -> Iterator[list[AlignmentRecord]]:
        """Yield the records of each read together."""
        progress = ProgressLogger(logger, interval=PROGRESS_INTERVAL, description="Reads processed")
        for group in group_by_read(self.records()):
            self.reads_seen += 1
            progress.update()
            yield group
        logger.info(f"Read alignments for {self.reads_seen:,} reads")
