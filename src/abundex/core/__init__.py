"""Core quantification logic for abundex.

This module contains the algorithms and data structures that turn filtered
long-read alignments into transcript abundances:

- Transcript table
- Alignment filtering
- Equivalence class construction
- Positional bias models
- EM estimation

Example:
    >>> from abundex.core.em import EMEstimator
    >>> from abundex.core.eqclass import EquivalenceClassBuilder
"""

from abundex.core.bias import (
    BiasModel,
    BinomialBiasModel,
    EmpiricalBiasModel,
    LogisticBiasModel,
    NoBiasModel,
    create_bias_model,
)
from abundex.core.em import EMEstimator, EMResult, EMState, NumericalIntegrityError
from abundex.core.eqclass import (
    EquivalenceClass,
    EquivalenceClassBuilder,
    EquivalenceClassCollection,
)
from abundex.core.filters import (
    AdmissibleAlignment,
    AlignmentFilter,
    AlignmentRecord,
    FilterStats,
    RejectionReason,
)
from abundex.core.transcripts import TranscriptInfo, TranscriptTable

__all__: list[str] = [
    # Transcripts
    "TranscriptInfo",
    "TranscriptTable",
    # Filtering
    "AdmissibleAlignment",
    "AlignmentFilter",
    "AlignmentRecord",
    "FilterStats",
    "RejectionReason",
    # Equivalence classes
    "EquivalenceClass",
    "EquivalenceClassBuilder",
    "EquivalenceClassCollection",
    # Bias models
    "BiasModel",
    "BinomialBiasModel",
    "EmpiricalBiasModel",
    "LogisticBiasModel",
    "NoBiasModel",
    "create_bias_model",
    # EM
    "EMEstimator",
    "EMResult",
    "EMState",
    "NumericalIntegrityError",
]
