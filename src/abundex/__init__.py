"""abundex: transcript abundance estimation from read alignments.

abundex resolves reads that align to several transcripts and estimates
per-transcript abundance with an expectation-maximization (EM) algorithm,
optionally reweighting alignments with a positional coverage bias model.

Example:
    >>> import abundex
    >>> abundex.__version__
    '0.1.0'

Modules:
    core: Alignment filtering, bias models, equivalence classes and EM
    io: BAM input, reference digests and output writers
    parallel: Thread-pool execution of the filtering pass
    quant: Bulk quantification pipeline
    bootstrap: Resampled EM replicates
    utils: Logging utilities
"""

__version__ = "0.1.0"

from abundex.config import (
    BiasConfig,
    BiasModelKind,
    Config,
    ConfigurationError,
    EMConfig,
    FilterConfig,
    StrandFilter,
)
from abundex.quant import QuantificationResult, quantify_alignments

__all__ = [
    "__version__",
    "BiasConfig",
    "BiasModelKind",
    "Config",
    "ConfigurationError",
    "EMConfig",
    "FilterConfig",
    "StrandFilter",
    "QuantificationResult",
    "quantify_alignments",
]
