"""Output writers for quantification results.

This module writes the files produced by ``abundex quant``:

- ``<prefix>.quant``: per-transcript abundance table
- ``<prefix>.meta_info.json``: run parameters and summary statistics
- ``<prefix>.coverage.tsv``: final coverage bins (bias model runs only)
- ``<prefix>.infreps.tsv``: bootstrap replicate abundances
- ``<prefix>.prob.tsv``: per-read posteriors over candidate transcripts

Example:
    >>> from abundex.io.output import write_all
    >>> paths = write_all(result, "sample1", write_coverage_bins=True)
"""

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from abundex.quant import QuantificationResult

logger = logging.getLogger(__name__)

QUANT_SUFFIX = ".quant"
META_INFO_SUFFIX = ".meta_info.json"
COVERAGE_SUFFIX = ".coverage.tsv"
BOOTSTRAP_SUFFIX = ".infreps.tsv"
ASSIGNMENT_PROBS_SUFFIX = ".prob.tsv"


def output_path(prefix: Path | str, suffix: str) -> Path:
    """Path of an output file for ``prefix``."""
    prefix = Path(prefix)
    return prefix.with_name(prefix.name + suffix)


# =============================================================================
# TSV Writers
# =============================================================================


def write_quant(result: "QuantificationResult", path: Path | str) -> Path:
    """Write the per-transcript abundance table.

    Columns: ``tname``, ``len``, ``efflen``, ``num_reads``, ``tpm``.

    Args:
        result: Quantification result.
        path: Output file path.

    Returns:
        The path written.
    """
    path = Path(path)
    table = result.transcripts
    abundance = result.em_result.abundance
    tpm = result.em_result.tpm(table.effective_lengths)

    with open(path, "w", newline="") as f:
        writer = csv.writer(f, delimiter="\t")
        writer.writerow(["tname", "len", "efflen", "num_reads", "tpm"])
        for i, name in enumerate(table.names):
            writer.writerow(
                [
                    name,
                    int(table.lengths[i]),
                    f"{table.effective_lengths[i]:.1f}",
                    f"{abundance[i]:.6g}",
                    f"{tpm[i]:.6g}",
                ]
            )

    logger.info(f"Wrote abundances for {len(table):,} transcripts to {path}")
    return path


def write_coverage(result: "QuantificationResult", path: Path | str) -> Path:
    """Write the final coverage bins, one column per bin.

    Raises:
        ValueError: If the run did not track coverage.
    """
    coverage = result.em_result.coverage
    if coverage is None:
        raise ValueError("Coverage was not tracked; run with a bias model")

    path = Path(path)
    with open(path, "w", newline="") as f:
        writer = csv.writer(f, delimiter="\t")
        writer.writerow(["tname"] + [f"bin_{b}" for b in range(coverage.shape[1])])
        for name, row in zip(result.transcripts.names, coverage):
            writer.writerow([name] + [f"{v:.6g}" for v in row])

    logger.info(f"Wrote coverage bins to {path}")
    return path


def write_bootstraps(
    names: list[str],
    replicates: np.ndarray,
    path: Path | str,
) -> Path:
    """Write bootstrap replicate abundances, one column per replicate.

    Args:
        names: Transcript names.
        replicates: Array of shape (n_bootstraps, n_transcripts).
        path: Output file path.
    """
    if replicates.ndim != 2 or replicates.shape[1] != len(names):
        raise ValueError(
            f"Replicates of shape {replicates.shape} do not match {len(names)} transcripts"
        )

    path = Path(path)
    with open(path, "w", newline="") as f:
        writer = csv.writer(f, delimiter="\t")
        writer.writerow(["tname"] + [f"bootstrap.{i}" for i in range(replicates.shape[0])])
        for i, name in enumerate(names):
            writer.writerow([name] + [f"{v:.6g}" for v in replicates[:, i]])

    logger.info(f"Wrote {replicates.shape[0]} bootstrap replicates to {path}")
    return path


def write_assignment_probs(result: "QuantificationResult", path: Path | str) -> Path:
    """Write each read's posterior over its candidate transcripts.

    One row per (read, transcript) pair with columns ``read_id``, ``tname``
    and ``prob``; rows of a read are adjacent and appear in input order.

    Raises:
        ValueError: If the run did not track reads.
    """
    if result.assignments is None:
        raise ValueError("Read assignments were not tracked")

    path = Path(path)
    names = result.transcripts.names
    with open(path, "w", newline="") as f:
        writer = csv.writer(f, delimiter="\t")
        writer.writerow(["read_id", "tname", "prob"])
        for read_id, targets, probs in result.assignments:
            for target, prob in zip(targets, probs):
                writer.writerow([read_id, names[target], f"{prob:.6g}"])

    logger.info(f"Wrote assignment probabilities for {len(result.assignments):,} reads to {path}")
    return path


# =============================================================================
# JSON Writers
# =============================================================================


def write_meta_info(result: "QuantificationResult", path: Path | str) -> Path:
    """Write run parameters and summary statistics as JSON."""
    path = Path(path)
    with open(path, "w") as f:
        json.dump(result.to_dict(), f, indent=2)
        f.write("\n")
    logger.info(f"Wrote run information to {path}")
    return path


def write_all(
    result: "QuantificationResult",
    prefix: Path | str,
    write_coverage_bins: bool = False,
) -> list[Path]:
    """Write every output applicable to ``result``.

    Args:
        result: Quantification result.
        prefix: Output prefix; parent directories are created.
        write_coverage_bins: Also write coverage when it was tracked.

    Returns:
        Paths written.
    """
    prefix = Path(prefix)
    prefix.parent.mkdir(parents=True, exist_ok=True)

    paths = [
        write_quant(result, output_path(prefix, QUANT_SUFFIX)),
        write_meta_info(result, output_path(prefix, META_INFO_SUFFIX)),
    ]

    if write_coverage_bins:
        if result.em_result.coverage is None:
            logger.warning("Coverage was requested but no bias model was used; skipping")
        else:
            paths.append(write_coverage(result, output_path(prefix, COVERAGE_SUFFIX)))

    if result.bootstraps is not None:
        paths.append(
            write_bootstraps(
                result.transcripts.names,
                result.bootstraps,
                output_path(prefix, BOOTSTRAP_SUFFIX),
            )
        )

    if result.assignments is not None:
        paths.append(write_assignment_probs(result, output_path(prefix, ASSIGNMENT_PROBS_SUFFIX)))

    return paths
