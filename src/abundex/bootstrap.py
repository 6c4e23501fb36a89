"""Bootstrap replicates of the abundance estimate.

Each replicate redraws the read counts of the equivalence classes from a
multinomial over the observed class proportions and reruns the EM from
scratch, giving a sample of abundance vectors for uncertainty estimates.

Example:
    >>> from abundex.bootstrap import run_bootstraps
    >>> replicates = run_bootstraps(classes, table, config, n_bootstraps=20, seed=7)
    >>> replicates.shape
    (20, 2)
"""

from __future__ import annotations

import logging

import numpy as np

from abundex.config import Config
from abundex.core.bias import create_bias_model
from abundex.core.em import EMEstimator
from abundex.core.eqclass import EquivalenceClassCollection
from abundex.core.transcripts import TranscriptTable
from abundex.parallel.executor import ParallelExecutor

logger = logging.getLogger(__name__)


def draw_multiplicities(
    classes: EquivalenceClassCollection,
    n_bootstraps: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw resampled class counts for every replicate.

    Returns:
        Integer array of shape (n_bootstraps, n_classes); each row sums to
        the number of reads in ``classes``.
    """
    total = classes.total_reads
    probabilities = classes.multiplicities / total
    return rng.multinomial(total, probabilities, size=n_bootstraps)


def _fresh_table(transcripts: TranscriptTable) -> TranscriptTable:
    return TranscriptTable(
        transcripts.names,
        transcripts.lengths,
        effective_lengths=transcripts.effective_lengths,
        coverage_bin_count=transcripts.coverage_bin_count,
    )


def run_bootstraps(
    classes: EquivalenceClassCollection,
    transcripts: TranscriptTable,
    config: Config,
    n_bootstraps: int,
    seed: int | None = None,
    n_threads: int = 1,
) -> np.ndarray:
    """Estimate abundances on resampled class counts.

    Replicates run in parallel, one thread each; each gets its own
    transcript table and a fresh bias model.

    Args:
        classes: Equivalence classes of the full data set.
        transcripts: Transcript table of the full run (not modified).
        config: Run configuration.
        n_bootstraps: Number of replicates.
        seed: Seed for the random generator.
        n_threads: Replicates run concurrently.

    Returns:
        Array of shape (n_bootstraps, n_transcripts).
    """
    if n_bootstraps < 0:
        raise ValueError("n_bootstraps must be non-negative")

    n = len(transcripts)
    if n_bootstraps == 0:
        return np.zeros((0, n), dtype=np.float64)
    if len(classes) == 0:
        logger.warning("No reads to resample; bootstrap replicates are all zero")
        return np.zeros((n_bootstraps, n), dtype=np.float64)

    rng = np.random.default_rng(seed)
    draws = draw_multiplicities(classes, n_bootstraps, rng)

    def run_replicate(index: int) -> np.ndarray:
        replicate_classes = classes.resample(draws[index])
        table = _fresh_table(transcripts)
        bias_model = create_bias_model(config.bias, transcripts.lengths)
        result = EMEstimator(config.em, n_threads=1).estimate(
            replicate_classes, table, bias_model
        )
        if not result.converged:
            logger.warning(
                f"Bootstrap replicate {index} did not converge in {result.iterations} iterations"
            )
        return result.abundance

    logger.info(f"Running {n_bootstraps} bootstrap replicates")
    executor = ParallelExecutor(n_workers=n_threads)
    replicates = executor.map_items(run_replicate, list(range(n_bootstraps)))
    return np.vstack(replicates)
