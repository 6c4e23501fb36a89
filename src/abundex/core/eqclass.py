"""Equivalence classes of reads.

Reads that are compatible with the same transcripts, with the same score
buckets (and, when a bias model is active, the same coverage bins), are
collapsed into one equivalence class with a multiplicity. The EM estimator
then iterates over classes instead of reads.

Score bucketing:
    ``bucket = max(1, floor(normalized_score / width + 0.5))`` with a default
    width of 0.01; the EM uses ``bucket * width`` as the member's score
    weight, so all reads of a class share exactly the same weights.

Example:
    >>> from abundex.core.eqclass import EquivalenceClassBuilder
    >>> builder = EquivalenceClassBuilder(n_transcripts=2)
    >>> builder.add_read(admissible_alignments)
    >>> classes = builder.build()
    >>> classes.total_reads
    1
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Iterator, Sequence

import attrs
import numpy as np

from abundex.config import DEFAULT_SCORE_BUCKET_WIDTH
from abundex.core.bias import bin_centers, position_to_bin
from abundex.core.filters import AdmissibleAlignment

logger = logging.getLogger(__name__)

# (transcript index, score bucket, position bin)
MemberKey = tuple[int, int, int]


# =============================================================================
# Data Structures
# =============================================================================


@attrs.define(frozen=True)
class EquivalenceClass:
    """A set of reads sharing the same compatibility signature.

    Attributes:
        members: Sorted (transcript, score_bucket, position_bin) triples.
        multiplicity: Number of reads with this signature.
    """

    members: tuple[MemberKey, ...]
    multiplicity: int

    @property
    def targets(self) -> tuple[int, ...]:
        """Transcript indices of the class."""
        return tuple(m[0] for m in self.members)

    @property
    def is_unique(self) -> bool:
        """Whether the class has a single candidate transcript."""
        return len(self.members) == 1

    def __len__(self) -> int:
        return len(self.members)


class EquivalenceClassCollection:
    """Immutable, ordered collection of equivalence classes.

    Classes are ordered by ascending multiplicity and then by key, so the
    estimator accumulates small classes before large ones and the order never
    depends on input order. Member attributes are also exposed as flat numpy
    arrays indexed through ``offsets``.

    Attributes:
        classes: Ordered classes.
        n_transcripts: Size of the transcript table.
        score_bucket_width: Width of one score bucket.
        coverage_bin_count: Position bins per transcript, or None.
        n_discarded: Reads dropped for having no admissible alignment.
        read_ids: Names of the tracked reads, or None.
        read_class_index: Class index of each tracked read, or None.
    """

    def __init__(
        self,
        classes: Iterable[EquivalenceClass],
        n_transcripts: int,
        score_bucket_width: float = DEFAULT_SCORE_BUCKET_WIDTH,
        coverage_bin_count: int | None = None,
        n_discarded: int = 0,
        read_keys: Sequence[tuple[str, tuple[MemberKey, ...]]] | None = None,
    ) -> None:
        self.classes = sorted(classes, key=lambda c: (c.multiplicity, c.members))
        self.n_transcripts = n_transcripts
        self.score_bucket_width = score_bucket_width
        self.coverage_bin_count = coverage_bin_count
        self.n_discarded = n_discarded

        sizes = np.fromiter((len(c) for c in self.classes), dtype=np.int64, count=len(self.classes))
        self.sizes = sizes
        self.offsets = np.zeros(len(self.classes) + 1, dtype=np.int64)
        np.cumsum(sizes, out=self.offsets[1:])

        members = np.array(
            [m for c in self.classes for m in c.members], dtype=np.int64
        ).reshape(-1, 3)
        self.targets = members[:, 0].copy()
        self.score_buckets = members[:, 1].copy()
        self.position_bins = members[:, 2].copy()
        self.score_weights = self.score_buckets.astype(np.float64) * score_bucket_width
        if coverage_bin_count:
            self.positions = bin_centers(coverage_bin_count)[self.position_bins]
        else:
            self.positions = np.zeros(len(self.targets), dtype=np.float64)

        self.multiplicities = np.fromiter(
            (c.multiplicity for c in self.classes), dtype=np.float64, count=len(self.classes)
        )
        self.class_index = np.repeat(np.arange(len(self.classes), dtype=np.int64), sizes)

        if len(self.targets) and (
            self.targets.min() < 0 or self.targets.max() >= n_transcripts
        ):
            raise ValueError("Equivalence class references a transcript outside the table")

        self.read_ids: list[str] | None = None
        self.read_class_index: np.ndarray | None = None
        if read_keys is not None:
            index = {c.members: i for i, c in enumerate(self.classes)}
            self.read_ids = [read_id for read_id, _ in read_keys]
            self.read_class_index = np.fromiter(
                (index[key] for _, key in read_keys), dtype=np.int64, count=len(read_keys)
            )

    def __len__(self) -> int:
        return len(self.classes)

    def __iter__(self) -> Iterator[EquivalenceClass]:
        return iter(self.classes)

    def __getitem__(self, index: int) -> EquivalenceClass:
        return self.classes[index]

    @property
    def n_members(self) -> int:
        """Total (class, transcript) pairs."""
        return len(self.targets)

    @property
    def total_reads(self) -> int:
        """Number of reads represented (sum of multiplicities)."""
        return int(sum(c.multiplicity for c in self.classes))

    def transcripts_present(self) -> np.ndarray:
        """Boolean mask of transcripts appearing in at least one class."""
        present = np.zeros(self.n_transcripts, dtype=bool)
        present[self.targets] = True
        return present

    def resample(self, multiplicities: Sequence[int] | np.ndarray) -> EquivalenceClassCollection:
        """Copy of this collection with new multiplicities.

        Classes whose new multiplicity is zero are dropped, and read
        tracking is not carried over.

        Args:
            multiplicities: One non-negative count per class, in class order.
        """
        if len(multiplicities) != len(self.classes):
            raise ValueError(
                f"Expected {len(self.classes)} multiplicities, got {len(multiplicities)}"
            )
        return EquivalenceClassCollection(
            (
                EquivalenceClass(members=c.members, multiplicity=int(m))
                for c, m in zip(self.classes, multiplicities)
                if m > 0
            ),
            n_transcripts=self.n_transcripts,
            score_bucket_width=self.score_bucket_width,
            coverage_bin_count=self.coverage_bin_count,
            n_discarded=self.n_discarded,
        )

    def to_dict(self) -> dict:
        """Summary statistics."""
        return {
            "n_classes": len(self),
            "n_members": self.n_members,
            "n_unique_classes": int(np.sum(self.sizes == 1)),
            "reads_assigned": self.total_reads,
            "reads_discarded": self.n_discarded,
            "score_bucket_width": self.score_bucket_width,
        }


# =============================================================================
# Builder
# =============================================================================


class EquivalenceClassBuilder:
    """Group admissible alignments by read into equivalence classes.

    Each read keeps its best-scoring alignment per transcript, the leftmost
    one on ties. Runs in time linear in the number of alignments added.

    With ``track_reads`` the builder also remembers the class of every read
    added with a name, so per-read posteriors can be reported after the EM.

    Attributes:
        n_transcripts: Size of the transcript table.
        score_bucket_width: Width of one score bucket.
        coverage_bin_count: Position bins included in keys, or None.
        n_reads: Reads added with at least one alignment.
        n_discarded: Reads added without any alignment.
    """

    def __init__(
        self,
        n_transcripts: int,
        score_bucket_width: float = DEFAULT_SCORE_BUCKET_WIDTH,
        coverage_bin_count: int | None = None,
        track_reads: bool = False,
    ) -> None:
        if not 0.0 < score_bucket_width <= 1.0:
            raise ValueError("score_bucket_width must be in (0, 1]")
        self.n_transcripts = n_transcripts
        self.score_bucket_width = score_bucket_width
        self.coverage_bin_count = coverage_bin_count
        self.n_reads = 0
        self.n_discarded = 0
        self._counts: dict[tuple[MemberKey, ...], int] = {}
        self._read_keys: list[tuple[str, tuple[MemberKey, ...]]] | None = (
            [] if track_reads else None
        )

    def score_bucket(self, normalized_score: float) -> int:
        """Bucket index of a normalized score (at least 1)."""
        return max(1, math.floor(normalized_score / self.score_bucket_width + 0.5))

    def class_key(self, alignments: Sequence[AdmissibleAlignment]) -> tuple[MemberKey, ...]:
        """Compute the class key of one read's alignments.

        Args:
            alignments: The read's admissible alignments (non-empty).

        Raises:
            ValueError: If an alignment targets a transcript outside the table.
        """
        best: dict[int, AdmissibleAlignment] = {}
        for aln in alignments:
            if not 0 <= aln.target < self.n_transcripts:
                raise ValueError(f"Alignment targets unknown transcript {aln.target}")
            current = best.get(aln.target)
            # Ties on score go to the leftmost alignment
            if current is None or (aln.normalized_score, -aln.position) > (
                current.normalized_score,
                -current.position,
            ):
                best[aln.target] = aln

        members = []
        for target, aln in best.items():
            if self.coverage_bin_count:
                pos_bin = int(position_to_bin(aln.position, self.coverage_bin_count))
            else:
                pos_bin = 0
            members.append((target, self.score_bucket(aln.normalized_score), pos_bin))
        return tuple(sorted(members))

    def add_read(
        self,
        alignments: Sequence[AdmissibleAlignment],
        read_id: str | None = None,
    ) -> tuple[MemberKey, ...] | None:
        """Add one read.

        Args:
            alignments: The read's admissible alignments.
            read_id: Read name, remembered when tracking reads.

        Returns:
            The class key, or None if the read was discarded.
        """
        if not alignments:
            self.n_discarded += 1
            return None

        key = self.class_key(alignments)
        self._counts[key] = self._counts.get(key, 0) + 1
        self.n_reads += 1
        if self._read_keys is not None and read_id is not None:
            self._read_keys.append((read_id, key))
        return key

    def add_reads(
        self,
        reads: Iterable[Sequence[AdmissibleAlignment]],
        read_ids: Iterable[str] | None = None,
    ) -> None:
        """Add a batch of reads in order."""
        if read_ids is None:
            for alignments in reads:
                self.add_read(alignments)
            return
        for alignments, read_id in zip(reads, read_ids, strict=True):
            self.add_read(alignments, read_id)

    def build(self) -> EquivalenceClassCollection:
        """Freeze the accumulated classes into a collection."""
        collection = EquivalenceClassCollection(
            (EquivalenceClass(members=key, multiplicity=count) for key, count in self._counts.items()),
            n_transcripts=self.n_transcripts,
            score_bucket_width=self.score_bucket_width,
            coverage_bin_count=self.coverage_bin_count,
            n_discarded=self.n_discarded,
            read_keys=self._read_keys,
        )
        logger.info(
            f"Built {len(collection):,} equivalence classes from {self.n_reads:,} reads "
            f"({self.n_discarded:,} reads discarded)"
        )
        return collection
