"""Positional coverage bias models.

A bias model turns the relative position of an alignment on its transcript
into a multiplicative weight in ``[BIAS_WEIGHT_FLOOR, 1]`` applied in the
E-step. Models are refitted once per EM round from the coverage mass
accumulated during the previous round.

Models:
    - none: every position weighs 1
    - empirical: kernel-smoothed pooled density of alignment start positions
    - binomial: continuous binomial density with a fitted success probability
    - logistic: fixed logistic curve along the transcript

Example:
    >>> from abundex.config import BiasConfig
    >>> from abundex.core.bias import create_bias_model
    >>> model = create_bias_model(BiasConfig(model="logistic"), lengths)
    >>> model.weight(0, 0.9)
    0.94...
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

import numpy as np
from scipy.special import expit, gammaln, xlogy

from abundex.config import BiasConfig, BiasModelKind

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# No alignment is ever weighted down to exactly zero
BIAS_WEIGHT_FLOOR = 1e-8

# Keeps the binomial success probability away from 0 and 1
BINOMIAL_P_EPSILON = 1e-6

# Grid used to find the maximum of the continuous binomial density
BINOMIAL_GRID_SIZE = 1025


def position_to_bin(positions: np.ndarray | float, bin_count: int) -> np.ndarray:
    """Map relative positions in [0, 1) to coverage bin indices.

    Args:
        positions: Relative positions.
        bin_count: Number of bins.

    Returns:
        Bin indices clipped into [0, bin_count).
    """
    bins = np.floor(np.asarray(positions, dtype=np.float64) * bin_count).astype(np.int64)
    return np.clip(bins, 0, bin_count - 1)


def bin_centers(bin_count: int) -> np.ndarray:
    """Relative positions of the centers of ``bin_count`` bins."""
    return (np.arange(bin_count, dtype=np.float64) + 0.5) / bin_count


# =============================================================================
# Base Class
# =============================================================================


class BiasModel:
    """Interface shared by all bias models.

    Attributes:
        kind: Which model this is.
    """

    kind: BiasModelKind = BiasModelKind.NONE

    def update(self, coverage: np.ndarray | None) -> None:
        """Refit model parameters from accumulated coverage.

        Args:
            coverage: Coverage mass of shape (n_transcripts, n_bins).
        """

    def weights(self, targets: np.ndarray, positions: np.ndarray) -> np.ndarray:
        """Weights for many (transcript, position) pairs at once.

        Args:
            targets: Transcript indices.
            positions: Relative positions in [0, 1).

        Returns:
            Weights in [BIAS_WEIGHT_FLOOR, 1].
        """
        raise NotImplementedError

    def weight(self, target: int, position: float) -> float:
        """Weight of a single alignment."""
        result = self.weights(
            np.asarray([target], dtype=np.int64),
            np.asarray([position], dtype=np.float64),
        )
        return float(result[0])


class NoBiasModel(BiasModel):
    """Uniform positional weights."""

    kind = BiasModelKind.NONE

    def weights(self, targets: np.ndarray, positions: np.ndarray) -> np.ndarray:
        return np.ones(len(targets), dtype=np.float64)


# =============================================================================
# Empirical Model
# =============================================================================


class EmpiricalBiasModel(BiasModel):
    """Kernel-smoothed empirical density of alignment start positions.

    Coverage rows are normalized per transcript, pooled (per length bucket
    when more than one is configured) and smoothed with a Gaussian kernel.
    The smoothed density is scaled to a maximum of 1 and cached as a
    (bucket, bin) lookup table until the next update.

    Attributes:
        bin_count: Coverage bins per transcript.
        bandwidth: Kernel standard deviation as a fraction of transcript length.
        bucket_of: Length bucket of each transcript.
        table: Cached weights of shape (n_buckets, bin_count).
    """

    kind = BiasModelKind.EMPIRICAL

    def __init__(
        self,
        transcript_lengths: Sequence[int] | np.ndarray,
        bin_count: int,
        bandwidth: float,
        length_bucket_count: int = 1,
    ) -> None:
        self.bin_count = bin_count
        self.bandwidth = bandwidth

        lengths = np.asarray(transcript_lengths, dtype=np.float64)
        if length_bucket_count > 1:
            quantiles = np.linspace(0.0, 1.0, length_bucket_count + 1)[1:-1]
            edges = np.unique(np.quantile(lengths, quantiles))
            self.bucket_of = np.searchsorted(edges, lengths, side="right")
            self.n_buckets = len(edges) + 1
        else:
            self.bucket_of = np.zeros(len(lengths), dtype=np.int64)
            self.n_buckets = 1

        self._kernel = self._gaussian_kernel()
        self.table = np.ones((self.n_buckets, bin_count), dtype=np.float64)

    def _gaussian_kernel(self) -> np.ndarray:
        """Discrete Gaussian kernel on the bin grid."""
        sigma = max(self.bandwidth * self.bin_count, 1e-3)
        # Reflection padding cannot exceed the signal length
        radius = min(max(1, math.ceil(3 * sigma)), self.bin_count - 1)
        offsets = np.arange(-radius, radius + 1, dtype=np.float64)
        kernel = np.exp(-0.5 * (offsets / sigma) ** 2)
        return kernel / kernel.sum()

    def _smooth(self, density: np.ndarray) -> np.ndarray:
        radius = len(self._kernel) // 2
        padded = np.pad(density, radius, mode="reflect")
        return np.convolve(padded, self._kernel, mode="valid")

    def update(self, coverage: np.ndarray | None) -> None:
        if coverage is None:
            return

        totals = coverage.sum(axis=1)
        covered = totals > 0
        pooled = np.zeros((self.n_buckets, self.bin_count), dtype=np.float64)
        np.add.at(
            pooled,
            self.bucket_of[covered],
            coverage[covered] / totals[covered, None],
        )

        table = np.ones_like(pooled)
        for bucket in range(self.n_buckets):
            if pooled[bucket].sum() <= 0:
                continue
            smoothed = self._smooth(pooled[bucket])
            peak = smoothed.max()
            if peak > 0 and np.isfinite(peak):
                table[bucket] = np.maximum(smoothed / peak, BIAS_WEIGHT_FLOOR)

        self.table = table

    def weights(self, targets: np.ndarray, positions: np.ndarray) -> np.ndarray:
        bins = position_to_bin(positions, self.bin_count)
        return self.table[self.bucket_of[targets], bins]


# =============================================================================
# Continuous Binomial Model
# =============================================================================


class BinomialBiasModel(BiasModel):
    """Continuous relaxation of a binomial over relative position.

    With ``n = bin_count - 1`` trials the density at ``x = position * n`` is
    ``Gamma(n+1) / (Gamma(x+1) Gamma(n-x+1)) p^x (1-p)^(n-x)``, evaluated in
    log space and divided by its maximum so the weights lie in (0, 1].

    Attributes:
        n_trials: Number of trials of the relaxed binomial.
        p: Success probability fitted from pooled coverage skew.
    """

    kind = BiasModelKind.BINOMIAL

    def __init__(self, bin_count: int) -> None:
        self.bin_count = bin_count
        self.n_trials = float(bin_count - 1)
        self.p = 0.5
        self._log_max = self._max_log_density()

    def _log_density(self, x: np.ndarray) -> np.ndarray:
        n = self.n_trials
        return (
            gammaln(n + 1.0)
            - gammaln(x + 1.0)
            - gammaln(n - x + 1.0)
            + xlogy(x, self.p)
            + xlogy(n - x, 1.0 - self.p)
        )

    def _max_log_density(self) -> float:
        grid = np.linspace(0.0, self.n_trials, BINOMIAL_GRID_SIZE)
        return float(np.max(self._log_density(grid)))

    def update(self, coverage: np.ndarray | None) -> None:
        if coverage is None:
            return

        mass = coverage.sum(axis=0)
        total = mass.sum()
        if total <= 0 or not np.isfinite(total):
            return

        p = float(np.dot(mass, bin_centers(self.bin_count)) / total)
        self.p = min(max(p, BINOMIAL_P_EPSILON), 1.0 - BINOMIAL_P_EPSILON)
        self._log_max = self._max_log_density()
        logger.debug(f"Binomial bias model: p={self.p:.4f}")

    def weights(self, targets: np.ndarray, positions: np.ndarray) -> np.ndarray:
        x = np.clip(np.asarray(positions, dtype=np.float64), 0.0, 1.0) * self.n_trials
        log_w = self._log_density(x) - self._log_max
        return np.clip(np.exp(log_w), BIAS_WEIGHT_FLOOR, 1.0)


# =============================================================================
# Logistic Model
# =============================================================================


class LogisticBiasModel(BiasModel):
    """Logistic weight along the transcript.

    A positive growth rate favors alignments near the 3' end, a negative one
    favors the 5' end, and zero is uniform. Nothing is fitted.

    Attributes:
        growth_rate: Steepness of the logistic curve.
    """

    kind = BiasModelKind.LOGISTIC

    def __init__(self, growth_rate: float) -> None:
        self.growth_rate = growth_rate
        self._scale = float(expit(abs(growth_rate) * 0.5))

    def weights(self, targets: np.ndarray, positions: np.ndarray) -> np.ndarray:
        x = np.asarray(positions, dtype=np.float64)
        w = expit(self.growth_rate * (x - 0.5)) / self._scale
        return np.clip(w, BIAS_WEIGHT_FLOOR, 1.0)


# =============================================================================
# Factory
# =============================================================================


def create_bias_model(
    config: BiasConfig,
    transcript_lengths: Sequence[int] | np.ndarray,
) -> BiasModel:
    """Create the bias model selected by the configuration.

    Args:
        config: Bias configuration.
        transcript_lengths: Lengths of the reference transcripts.

    Returns:
        A fresh, unfitted bias model.
    """
    config.validate()

    if config.model is BiasModelKind.EMPIRICAL:
        return EmpiricalBiasModel(
            transcript_lengths,
            bin_count=config.coverage_bin_count,
            bandwidth=config.kde_bandwidth,
            length_bucket_count=config.length_bucket_count,
        )
    if config.model is BiasModelKind.BINOMIAL:
        return BinomialBiasModel(config.coverage_bin_count)
    if config.model is BiasModelKind.LOGISTIC:
        return LogisticBiasModel(config.logistic_growth_rate)
    return NoBiasModel()
