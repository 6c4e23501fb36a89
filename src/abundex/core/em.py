"""Expectation-maximization abundance estimation.

This module implements the iterative estimator that turns equivalence
classes of ambiguously aligned reads into maximum-likelihood transcript
abundances.

Per iteration, for every class and candidate transcript ``t``:

- E-step: ``r_t = abundance[t] / effective_length[t] * score_weight(t) *
  bias_weight(t)``, normalized so the class's responsibilities sum to 1.
  A class whose weights all underflow to zero is split uniformly.
- M-step: ``new[t] += multiplicity * r_t``; the same mass is added to the
  transcript's coverage bin when a bias model is active.

Classes are partitioned across worker threads; each worker fills private
accumulators that are summed in partition order at the end of the
iteration. Only then is the transcript table written, convergence checked
and the bias model refitted, so every iteration is a hard barrier.

Example:
    >>> from abundex.core.em import EMEstimator
    >>> estimator = EMEstimator(EMConfig(), n_threads=4)
    >>> result = estimator.estimate(classes, transcripts)
    >>> result.converged, result.iterations
    (True, 37)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, NamedTuple

import attrs
import numpy as np

from abundex.config import ConfigurationError, EMConfig
from abundex.core.bias import BiasModel, BiasModelKind
from abundex.core.eqclass import EquivalenceClassCollection
from abundex.core.transcripts import TranscriptTable

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Below this abundance the convergence test uses absolute change
MIN_RELATIVE_ABUNDANCE = 1e-8

# Transcripts listed in a numerical integrity error
MAX_REPORTED_TRANSCRIPTS = 10


# =============================================================================
# Enums and Exceptions
# =============================================================================


class EMState(Enum):
    """States of the estimator."""

    INITIALIZING = "initializing"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


class NumericalIntegrityError(ArithmeticError):
    """Raised when abundances stop being finite.

    Attributes:
        iteration: Iteration at which the problem was detected.
        transcripts: Indices of the affected transcripts.
    """

    def __init__(self, iteration: int, transcripts: list[int]) -> None:
        self.iteration = iteration
        self.transcripts = transcripts
        shown = transcripts[:MAX_REPORTED_TRANSCRIPTS]
        more = "" if len(transcripts) <= len(shown) else f" (and {len(transcripts) - len(shown)} more)"
        super().__init__(
            f"Non-finite abundance at EM iteration {iteration} for transcripts {shown}{more}"
        )


# =============================================================================
# Data Structures
# =============================================================================


@attrs.define
class EMResult:
    """Outcome of an EM run.

    Attributes:
        abundance: Final abundance per transcript, in reads.
        iterations: Iterations performed.
        converged: Whether the tolerance was reached.
        state: Terminal estimator state.
        delta_history: Maximum abundance change of each iteration.
        degenerate_events: Class visits that fell back to a uniform split.
        total_reads: Reads represented by the classes.
        coverage: Final coverage bins, or None without a bias model.
    """

    abundance: np.ndarray
    iterations: int
    converged: bool
    state: EMState
    delta_history: list[float] = attrs.Factory(list)
    degenerate_events: int = 0
    total_reads: float = 0.0
    coverage: np.ndarray | None = None

    @property
    def final_delta(self) -> float | None:
        """Change in the last iteration."""
        return self.delta_history[-1] if self.delta_history else None

    def relative_abundance(self) -> np.ndarray:
        """Abundance normalized to sum to 1."""
        total = self.abundance.sum()
        if total <= 0:
            return np.zeros_like(self.abundance)
        return self.abundance / total

    def tpm(self, effective_lengths: np.ndarray) -> np.ndarray:
        """Transcripts per million, normalizing reads by effective length."""
        rate = self.abundance / effective_lengths
        total = rate.sum()
        if total <= 0:
            return np.zeros_like(self.abundance)
        return rate / total * 1e6

    def to_dict(self) -> dict[str, Any]:
        """Summary for the meta-info report."""
        return {
            "converged": self.converged,
            "state": self.state.value,
            "iterations": self.iterations,
            "final_delta": self.final_delta,
            "degenerate_events": self.degenerate_events,
            "total_reads": self.total_reads,
        }


class _Partition(NamedTuple):
    """Contiguous range of classes handled by one worker."""

    first_class: int
    last_class: int
    first_member: int
    last_member: int


class _PartialSums(NamedTuple):
    """Private accumulators returned by one worker."""

    abundance: np.ndarray
    coverage: np.ndarray | None
    degenerate: int


# =============================================================================
# Estimator
# =============================================================================


def max_abundance_change(old: np.ndarray, new: np.ndarray) -> float:
    """Largest per-transcript change between two abundance vectors.

    Relative change is used where the old abundance exceeds
    MIN_RELATIVE_ABUNDANCE, absolute change elsewhere.
    """
    if len(old) == 0:
        return 0.0
    diff = np.abs(new - old)
    significant = old > MIN_RELATIVE_ABUNDANCE
    change = np.where(significant, diff / np.where(significant, old, 1.0), diff)
    return float(change.max())


class EMEstimator:
    """Iterative maximum-likelihood abundance estimator.

    Attributes:
        config: Convergence settings.
        n_threads: Worker threads per iteration.
    """

    def __init__(self, config: EMConfig | None = None, n_threads: int = 1) -> None:
        self.config = config or EMConfig()
        self.config.validate()
        if n_threads < 1:
            raise ConfigurationError("n_threads must be at least 1")
        self.n_threads = n_threads
        self.state = EMState.INITIALIZING

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    @staticmethod
    def initial_abundance(classes: EquivalenceClassCollection) -> np.ndarray:
        """Uniform abundance over transcripts present in any class."""
        abundance = np.zeros(classes.n_transcripts, dtype=np.float64)
        present = classes.transcripts_present()
        n_present = int(present.sum())
        if n_present:
            abundance[present] = classes.total_reads / n_present
        return abundance

    @staticmethod
    def seed_coverage(classes: EquivalenceClassCollection, bin_count: int) -> np.ndarray:
        """Coverage from splitting each class uniformly over its members."""
        mass = (classes.multiplicities / np.maximum(classes.sizes, 1))[classes.class_index]
        flat = np.bincount(
            classes.targets * bin_count + classes.position_bins,
            weights=mass,
            minlength=classes.n_transcripts * bin_count,
        )
        return flat.reshape(classes.n_transcripts, bin_count)

    def _partitions(self, classes: EquivalenceClassCollection) -> list[_Partition]:
        """Split classes into contiguous, member-balanced partitions."""
        n_classes = len(classes)
        n_parts = max(1, min(self.n_threads, n_classes))
        cuts = np.searchsorted(
            classes.offsets,
            np.linspace(0, classes.n_members, n_parts + 1)[1:-1],
            side="left",
        )
        bounds = np.unique(np.concatenate(([0], cuts, [n_classes])))
        return [
            _Partition(
                first_class=int(lo),
                last_class=int(hi),
                first_member=int(classes.offsets[lo]),
                last_member=int(classes.offsets[hi]),
            )
            for lo, hi in zip(bounds[:-1], bounds[1:])
        ]

    # -------------------------------------------------------------------------
    # E/M pass
    # -------------------------------------------------------------------------

    @staticmethod
    def _partition_responsibilities(
        classes: EquivalenceClassCollection,
        part: _Partition,
        abundance: np.ndarray,
        effective_lengths: np.ndarray,
        bias_weights: np.ndarray | None,
    ) -> tuple[np.ndarray, int]:
        """Per-member responsibilities over one partition.

        Returns:
            Tuple of (responsibilities, degenerate_class_count).
        """
        lo, hi = part.first_member, part.last_member
        c0, c1 = part.first_class, part.last_class

        targets = classes.targets[lo:hi]
        weights = abundance[targets] / effective_lengths[targets] * classes.score_weights[lo:hi]
        if bias_weights is not None:
            weights = weights * bias_weights[lo:hi]

        local = classes.class_index[lo:hi] - c0
        denom = np.bincount(local, weights=weights, minlength=c1 - c0)

        # NaN sums are not degenerate; they surface in the integrity check
        degenerate = denom == 0.0
        resp = weights / np.where(degenerate, 1.0, denom)[local]
        n_degenerate = int(degenerate.sum())
        if n_degenerate:
            uniform = 1.0 / classes.sizes[c0:c1]
            resp = np.where(degenerate[local], uniform[local], resp)
        return resp, n_degenerate

    @classmethod
    def _expectation_partition(
        cls,
        classes: EquivalenceClassCollection,
        part: _Partition,
        abundance: np.ndarray,
        effective_lengths: np.ndarray,
        bias_weights: np.ndarray | None,
        bin_count: int | None,
    ) -> _PartialSums:
        """E-step and partial M-step over one partition."""
        lo, hi = part.first_member, part.last_member
        c0, c1 = part.first_class, part.last_class
        n = classes.n_transcripts

        resp, n_degenerate = cls._partition_responsibilities(
            classes, part, abundance, effective_lengths, bias_weights
        )
        targets = classes.targets[lo:hi]
        local = classes.class_index[lo:hi] - c0
        contrib = classes.multiplicities[c0:c1][local] * resp
        partial = np.bincount(targets, weights=contrib, minlength=n)

        coverage = None
        if bin_count is not None:
            coverage = np.bincount(
                targets * bin_count + classes.position_bins[lo:hi],
                weights=contrib,
                minlength=n * bin_count,
            ).reshape(n, bin_count)

        return _PartialSums(partial, coverage, n_degenerate)

    def responsibilities(
        self,
        classes: EquivalenceClassCollection,
        abundance: np.ndarray,
        effective_lengths: np.ndarray,
        bias_weights: np.ndarray | None = None,
    ) -> np.ndarray:
        """Posterior of each class member given fixed abundances.

        Values are aligned with ``classes.targets`` and sum to 1 within each
        class; zero-weight classes are split uniformly.
        """
        whole = _Partition(
            first_class=0,
            last_class=len(classes),
            first_member=0,
            last_member=classes.n_members,
        )
        resp, _ = self._partition_responsibilities(
            classes, whole, abundance, effective_lengths, bias_weights
        )
        return resp

    def em_step(
        self,
        classes: EquivalenceClassCollection,
        abundance: np.ndarray,
        effective_lengths: np.ndarray,
        bias_weights: np.ndarray | None = None,
        bin_count: int | None = None,
        pool: ThreadPoolExecutor | None = None,
    ) -> tuple[np.ndarray, np.ndarray | None, int]:
        """Run one E/M pass and reduce the per-partition accumulators.

        Args:
            classes: Equivalence classes.
            abundance: Current abundance (read only).
            effective_lengths: Effective length per transcript.
            bias_weights: Per-member bias weights, or None.
            bin_count: Coverage bins to accumulate, or None.
            pool: Thread pool for the partitions (serial if None).

        Returns:
            Tuple of (new_abundance, coverage_or_None, degenerate_class_count).
        """
        partitions = self._partitions(classes)
        args = (abundance, effective_lengths, bias_weights, bin_count)

        if pool is None or len(partitions) == 1:
            partials = [self._expectation_partition(classes, p, *args) for p in partitions]
        else:
            futures = [
                pool.submit(self._expectation_partition, classes, p, *args)
                for p in partitions
            ]
            # Barrier: reduce in partition order, not completion order
            partials = [f.result() for f in futures]

        new_abundance = np.zeros(classes.n_transcripts, dtype=np.float64)
        coverage = None if bin_count is None else np.zeros((classes.n_transcripts, bin_count))
        degenerate = 0
        for partial in partials:
            new_abundance += partial.abundance
            if coverage is not None:
                coverage += partial.coverage
            degenerate += partial.degenerate

        return new_abundance, coverage, degenerate

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def estimate(
        self,
        classes: EquivalenceClassCollection,
        transcripts: TranscriptTable,
        bias_model: BiasModel | None = None,
    ) -> EMResult:
        """Estimate abundances.

        Args:
            classes: Equivalence classes of the filtered reads.
            transcripts: Transcript table; abundance and coverage are updated.
            bias_model: Positional bias model, or None.

        Returns:
            EMResult with the final abundance vector.

        Raises:
            ConfigurationError: If classes and transcripts disagree.
            NumericalIntegrityError: If abundances become non-finite.
        """
        cfg = self.config
        self.state = EMState.INITIALIZING

        if classes.n_transcripts != len(transcripts):
            raise ConfigurationError(
                f"Classes index {classes.n_transcripts} transcripts, table has {len(transcripts)}"
            )

        use_bias = bias_model is not None and bias_model.kind is not BiasModelKind.NONE
        bin_count = None
        if use_bias:
            if not transcripts.has_coverage:
                raise ConfigurationError("A bias model needs coverage bins in the transcript table")
            bin_count = transcripts.coverage_bin_count
            if classes.coverage_bin_count != bin_count:
                raise ConfigurationError(
                    "Equivalence classes were built without the transcript coverage bins"
                )

        transcripts.reset()
        total_reads = float(classes.total_reads)

        if len(classes) == 0:
            logger.warning("No reads to quantify; all abundances are zero")
            self.state = EMState.CONVERGED
            return EMResult(
                abundance=transcripts.abundance.copy(),
                iterations=0,
                converged=True,
                state=self.state,
                coverage=None if not use_bias else transcripts.coverage.copy(),
            )

        abundance = self.initial_abundance(classes)
        transcripts.set_abundance(abundance)
        if use_bias:
            seeded = self.seed_coverage(classes, bin_count)
            transcripts.set_coverage(seeded)
            bias_model.update(seeded)

        effective_lengths = transcripts.effective_lengths
        history: list[float] = []
        degenerate_events = 0
        converged = False
        iteration = 0

        logger.info(
            f"Running EM over {len(classes):,} classes ({total_reads:,.0f} reads) "
            f"with {self.n_threads} thread(s)"
        )

        self.state = EMState.ITERATING
        with ThreadPoolExecutor(max_workers=self.n_threads) as pool:
            for iteration in range(1, cfg.max_iterations + 1):
                bias_weights = None
                if use_bias:
                    bias_weights = bias_model.weights(classes.targets, classes.positions)

                new_abundance, coverage, degenerate = self.em_step(
                    classes,
                    abundance,
                    effective_lengths,
                    bias_weights=bias_weights,
                    bin_count=bin_count,
                    pool=pool if self.n_threads > 1 else None,
                )

                bad = np.flatnonzero(~np.isfinite(new_abundance))
                if len(bad):
                    raise NumericalIntegrityError(iteration, bad.tolist())

                if degenerate:
                    degenerate_events += degenerate
                    logger.warning(
                        f"EM iteration {iteration}: {degenerate} class(es) had zero total "
                        "weight and were split uniformly"
                    )

                new_abundance = np.maximum(new_abundance, 0.0)
                delta = max_abundance_change(abundance, new_abundance)
                history.append(delta)

                # Single writer, after the barrier
                transcripts.set_abundance(new_abundance)
                if use_bias:
                    transcripts.set_coverage(coverage)
                    bias_model.update(coverage)

                abundance = new_abundance
                logger.debug(f"EM iteration {iteration}: max change {delta:.3e}")

                if delta < cfg.convergence_tolerance:
                    converged = True
                    break

        if converged:
            self.state = EMState.CONVERGED
            logger.info(f"EM converged after {iteration} iterations")
        else:
            self.state = EMState.MAX_ITERATIONS_REACHED
            logger.warning(
                f"EM did not converge within {cfg.max_iterations} iterations "
                f"(last max change {history[-1]:.3e})"
            )

        return EMResult(
            abundance=abundance.copy(),
            iterations=iteration,
            converged=converged,
            state=self.state,
            delta_history=history,
            degenerate_events=degenerate_events,
            total_reads=total_reads,
            coverage=None if not use_bias else transcripts.coverage.copy(),
        )
