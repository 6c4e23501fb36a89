"""Bulk quantification pipeline.

This module wires the pieces together: alignment records grouped by read
are filtered in parallel batches, collapsed into equivalence classes and
passed to the EM estimator together with the configured bias model.

Example:
    >>> from abundex.config import Config
    >>> from abundex.quant import quantify_bam
    >>> result = quantify_bam("aln.bam", Config())
    >>> result.em_result.converged
    True
"""

from __future__ import annotations

import itertools
import logging
from pathlib import Path
from typing import Any, Iterable, NamedTuple, Sequence

import attrs
import numpy as np

from abundex import __version__
from abundex.bootstrap import run_bootstraps
from abundex.config import BiasModelKind, Config, ConfigurationError
from abundex.core.bias import BiasModel, create_bias_model
from abundex.core.em import EMEstimator, EMResult
from abundex.core.eqclass import EquivalenceClassBuilder, EquivalenceClassCollection
from abundex.core.filters import AlignmentFilter, AlignmentRecord, FilterStats
from abundex.core.transcripts import TranscriptTable
from abundex.io.bam import AlignmentReader
from abundex.io.digest import reference_digest
from abundex.parallel.executor import ParallelExecutor, batched
from abundex.utils.logging import Timer

logger = logging.getLogger(__name__)

# Reads per filtering batch
READ_BATCH_SIZE = 10_000

# Batches in flight per worker thread
BATCHES_PER_WORKER = 2


# =============================================================================
# Result
# =============================================================================


class ReadAssignment(NamedTuple):
    """Final posterior of one read over its candidate transcripts."""

    read_id: str
    targets: np.ndarray
    probabilities: np.ndarray



@attrs.define
class QuantificationResult:
    """Everything produced by one quantification run.

    Attributes:
        transcripts: Transcript table holding the final abundances.
        em_result: EM outcome.
        filter_stats: Per-stage rejection counts.
        class_stats: Equivalence class summary.
        config: Configuration used.
        reference_digest: Digest of the reference table, if computed.
        bootstraps: Replicate abundances of shape (n, n_transcripts), or None.
        assignments: Per-read (read_id, transcript indices, posteriors), or None.
    """

    transcripts: TranscriptTable
    em_result: EMResult
    filter_stats: FilterStats
    class_stats: dict[str, Any]
    config: Config
    reference_digest: dict[str, str] | None = None
    bootstraps: np.ndarray | None = None
    assignments: list[ReadAssignment] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Run summary for the meta-info file."""
        return {
            "version": __version__,
            "num_transcripts": len(self.transcripts),
            "config": self.config.to_dict(),
            "filter_stats": self.filter_stats.to_dict(),
            "equivalence_classes": self.class_stats,
            "em": self.em_result.to_dict(),
            "num_bootstraps": 0 if self.bootstraps is None else int(self.bootstraps.shape[0]),
            "reference_digest": self.reference_digest,
        }


# =============================================================================
# Pipeline Stages
# =============================================================================


def build_transcript_table(
    names: Sequence[str],
    lengths: Sequence[int],
    config: Config,
) -> TranscriptTable:
    """Create the transcript table matching a configuration."""
    return TranscriptTable.from_references(
        names,
        lengths,
        coverage_bin_count=config.bias.coverage_bin_count if config.bias.enabled else None,
        mean_fragment_length=config.em.mean_fragment_length,
    )


def collect_equivalence_classes(
    reads: Iterable[Sequence[AlignmentRecord]],
    transcripts: TranscriptTable,
    config: Config,
    track_reads: bool = False,
) -> tuple[EquivalenceClassCollection, FilterStats]:
    """Filter reads and collapse them into equivalence classes.

    Batches are filtered concurrently but handed to the builder in input
    order. Only a bounded window of batches is held in memory.

    Args:
        reads: Single-pass iterable of records grouped by read.
        transcripts: Transcript table.
        config: Run configuration.
        track_reads: Remember the class of every read by name.

    Returns:
        Tuple of (classes, filter_stats).
    """
    aln_filter = AlignmentFilter(config.filters, transcripts.lengths)
    builder = EquivalenceClassBuilder(
        len(transcripts),
        score_bucket_width=config.em.score_bucket_width,
        coverage_bin_count=transcripts.coverage_bin_count if config.bias.enabled else None,
        track_reads=track_reads,
    )
    executor = ParallelExecutor(n_workers=config.threads)
    stats = FilterStats()

    batches = batched(reads, READ_BATCH_SIZE)
    window_size = config.threads * BATCHES_PER_WORKER
    while window := list(itertools.islice(batches, window_size)):
        results, _ = executor.map_batches(aln_filter.filter_reads, window)
        for batch, task in zip(window, results):
            admitted, batch_stats = task.result
            stats.merge(batch_stats)
            if track_reads:
                read_ids = [records[0].read_id if records else "" for records in batch]
                builder.add_reads(admitted, read_ids)
            else:
                builder.add_reads(admitted)

    logger.info(
        f"Filtered {stats.records_seen:,} alignments from {stats.reads_seen:,} reads; "
        f"{stats.records_rejected:,} alignments rejected"
    )
    for reason, count in sorted(stats.rejected.items()):
        logger.debug(f"  {reason}: {count:,}")

    return builder.build(), stats


def read_assignment_probabilities(
    classes: EquivalenceClassCollection,
    transcripts: TranscriptTable,
    estimator: EMEstimator,
    bias_model: BiasModel | None = None,
) -> list[ReadAssignment]:
    """Posterior of every tracked read at the table's current abundances.

    Reads of one class share the class's posteriors.

    Raises:
        ValueError: If the classes were built without read tracking.
    """
    if classes.read_ids is None or classes.read_class_index is None:
        raise ValueError("Equivalence classes were built without read tracking")

    bias_weights = None
    if bias_model is not None and bias_model.kind is not BiasModelKind.NONE:
        bias_weights = bias_model.weights(classes.targets, classes.positions)
    resp = estimator.responsibilities(
        classes, transcripts.abundance, transcripts.effective_lengths, bias_weights
    )

    assignments = []
    for read_id, c in zip(classes.read_ids, classes.read_class_index):
        lo, hi = classes.offsets[c], classes.offsets[c + 1]
        assignments.append(ReadAssignment(read_id, classes.targets[lo:hi], resp[lo:hi]))
    return assignments


def quantify_alignments(
    reads: Iterable[Sequence[AlignmentRecord]],
    transcripts: TranscriptTable,
    config: Config | None = None,
    num_bootstraps: int = 0,
    seed: int | None = None,
    assignment_probs: bool = False,
) -> QuantificationResult:
    """Quantify transcripts from alignment records grouped by read.

    Args:
        reads: Single-pass iterable of records grouped by read.
        transcripts: Transcript table; receives the final abundances.
        config: Run configuration (defaults if None).
        num_bootstraps: Bootstrap replicates to run afterwards.
        seed: Seed for the bootstrap random generator.
        assignment_probs: Also report each read's final posteriors.

    Returns:
        QuantificationResult for the run.

    Raises:
        ConfigurationError: If the configuration is invalid or does not
            match the transcript table.
        NumericalIntegrityError: If the estimator produces non-finite values.
    """
    config = config or Config()
    config.validate()
    if config.bias.enabled and transcripts.coverage_bin_count != config.bias.coverage_bin_count:
        raise ConfigurationError(
            f"Transcript table has {transcripts.coverage_bin_count} coverage bins, "
            f"bias model needs {config.bias.coverage_bin_count}"
        )

    with Timer("Alignment filtering", logger):
        classes, filter_stats = collect_equivalence_classes(
            reads, transcripts, config, track_reads=assignment_probs
        )

    bias_model = create_bias_model(config.bias, transcripts.lengths)
    estimator = EMEstimator(config.em, n_threads=config.threads)
    with Timer("EM", logger):
        em_result = estimator.estimate(classes, transcripts, bias_model)

    assignments = None
    if assignment_probs:
        assignments = read_assignment_probabilities(classes, transcripts, estimator, bias_model)

    bootstraps = None
    if num_bootstraps > 0:
        with Timer("Bootstrapping", logger):
            bootstraps = run_bootstraps(
                classes,
                transcripts,
                config,
                n_bootstraps=num_bootstraps,
                seed=seed,
                n_threads=config.threads,
            )

    return QuantificationResult(
        transcripts=transcripts,
        em_result=em_result,
        filter_stats=filter_stats,
        class_stats=classes.to_dict(),
        config=config,
        reference_digest=reference_digest(transcripts.names, transcripts.lengths.tolist()),
        bootstraps=bootstraps,
        assignments=assignments,
    )


def quantify_bam(
    path: Path | str,
    config: Config | None = None,
    num_bootstraps: int = 0,
    seed: int | None = None,
    assignment_probs: bool = False,
) -> QuantificationResult:
    """Quantify transcripts from a name-collated BAM or SAM file.

    The reference table is taken from the file header.
    """
    config = config or Config()
    config.validate()

    with AlignmentReader(path) as reader:
        transcripts = build_transcript_table(
            reader.reference_names, reader.reference_lengths, config
        )
        return quantify_alignments(
            reader.reads(),
            transcripts,
            config,
            num_bootstraps=num_bootstraps,
            seed=seed,
            assignment_probs=assignment_probs,
        )
