"""Command-line interface for abundex.

This module provides the main entry point for the abundex CLI tool.
It uses Click to define commands and rich for console output.

Commands:
    quant: Quantify transcript abundance from name-collated alignments

Example:
    $ abundex --help
    $ abundex quant --alignments aln.bam --output sample1 --threads 8
    $ abundex -v quant --alignments aln.bam --output sample1 --filter-group nanocount-filters
    $ abundex quant --alignments aln.bam --output sample1 --bias-model empirical --write-coverage
"""

import logging
from pathlib import Path
from typing import Any, Optional

import attrs
import click
from rich.console import Console

from abundex import __version__
from abundex.config import BiasModelKind, Config, FilterConfig, StrandFilter
from abundex.io.output import write_all
from abundex.quant import quantify_bam
from abundex.utils.logging import setup_logging

logger = logging.getLogger(__name__)

console = Console()

FILTER_GROUPS = ["no-filters", "nanocount-filters"]

# CLI option name -> (config section, field)
OVERRIDES = {
    "five_prime_clip": ("filters", "five_prime_clip_max"),
    "three_prime_clip": ("filters", "three_prime_clip_max"),
    "score_threshold": ("filters", "score_threshold_fraction"),
    "min_aligned_fraction": ("filters", "min_aligned_fraction"),
    "min_aligned_len": ("filters", "min_aligned_len"),
    "strand": ("filters", "required_strand"),
    "bias_model": ("bias", "model"),
    "growth_rate": ("bias", "logistic_growth_rate"),
    "bin_count": ("bias", "coverage_bin_count"),
    "score_bucket": ("em", "score_bucket_width"),
    "max_iterations": ("em", "max_iterations"),
    "convergence_tolerance": ("em", "convergence_tolerance"),
}


@click.group()
@click.version_option(version=__version__, prog_name="abundex")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
@click.option("-q", "--quiet", is_flag=True, help="Suppress non-error output.")
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool) -> None:
    """abundex: transcript abundance estimation from long-read alignments.

    abundex filters alignments, groups reads into equivalence classes and
    estimates transcript abundances with an EM algorithm, optionally
    correcting for positional coverage bias.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet


def resolve_config(
    config_path: Optional[Path],
    filter_group: Optional[str],
    threads: Optional[int],
    options: dict[str, Any],
) -> Config:
    """Combine the config file, filter preset and explicit options.

    Explicit options take precedence over the preset, which takes
    precedence over the config file. Each override is logged.
    """
    config = Config.load(config_path)

    if filter_group is not None:
        logger.info(f"Using filter group {filter_group}")
        config.filters = FilterConfig.from_group(filter_group)

    for option, value in options.items():
        if value is None:
            continue
        section_name, field = OVERRIDES[option]
        section = getattr(config, section_name)
        logger.info(f"Overriding {field} with user-provided value {value}")
        setattr(config, section_name, attrs.evolve(section, **{field: value}))

    if threads is not None:
        logger.info(f"Overriding threads with user-provided value {threads}")
        config.threads = threads

    config.validate()
    return config


# =============================================================================
# quant command
# =============================================================================


@main.command()
@click.option(
    "-a",
    "--alignments",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Name-collated BAM/SAM file of reads aligned to the transcriptome.",
)
@click.option(
    "-o",
    "--output",
    type=click.Path(path_type=Path),
    required=True,
    help="Output prefix.",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="TOML configuration file.",
)
@click.option(
    "--filter-group",
    type=click.Choice(FILTER_GROUPS),
    help="Preset of alignment filters.",
)
# Alignment filter options
@click.option("--five-prime-clip", type=click.IntRange(min=0), help="Maximum 5' clip length.")
@click.option("--three-prime-clip", type=click.IntRange(min=0), help="Maximum 3' clip length.")
@click.option(
    "--score-threshold",
    type=click.FloatRange(0.0, 1.0),
    help="Minimum score as a fraction of the read's best score.",
)
@click.option(
    "--min-aligned-fraction",
    type=click.FloatRange(0.0, 1.0),
    help="Minimum fraction of the read that must be aligned.",
)
@click.option("--min-aligned-len", type=click.IntRange(min=0), help="Minimum aligned length.")
@click.option(
    "--strand",
    type=click.Choice([s.value for s in StrandFilter]),
    help="Admissible alignment orientation.",
)
# Bias model options
@click.option(
    "--bias-model",
    type=click.Choice([m.value for m in BiasModelKind]),
    help="Positional coverage bias model.",
)
@click.option("--growth-rate", type=float, help="Growth rate of the logistic bias model.")
@click.option("--bin-count", type=click.IntRange(min=2), help="Coverage bins per transcript.")
# EM options
@click.option(
    "--score-bucket",
    type=click.FloatRange(0.0, 1.0, min_open=True),
    help="Width of normalized-score buckets in equivalence classes.",
)
@click.option("--max-iterations", type=click.IntRange(min=1), help="Maximum EM iterations.")
@click.option("--convergence-tolerance", type=float, help="EM convergence tolerance.")
# Run options
@click.option("-t", "--threads", type=click.IntRange(min=1), help="Worker threads.")
@click.option(
    "--num-bootstraps",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Bootstrap replicates to run.",
)
@click.option("--seed", type=int, default=None, help="Seed for bootstrap resampling.")
@click.option(
    "--write-coverage",
    is_flag=True,
    help="Write final coverage bins (requires a bias model).",
)
@click.option(
    "--write-assignment-probs",
    is_flag=True,
    help="Write each read's final posterior over its candidate transcripts.",
)
@click.option("--log-file", type=click.Path(path_type=Path), help="Also write a debug log here.")
@click.pass_context
def quant(
    ctx: click.Context,
    alignments: Path,
    output: Path,
    config_path: Optional[Path],
    filter_group: Optional[str],
    threads: Optional[int],
    num_bootstraps: int,
    seed: Optional[int],
    write_coverage: bool,
    write_assignment_probs: bool,
    log_file: Optional[Path],
    **options: Any,
) -> None:
    """Quantify transcript abundance from alignments.

    Reads must be aligned to the transcriptome and collated by name, as
    produced by minimap2.

    \b
    Output files:
      PREFIX.quant            Per-transcript abundance (reads and TPM)
      PREFIX.meta_info.json   Parameters and run statistics
      PREFIX.coverage.tsv     Coverage bins (--write-coverage)
      PREFIX.infreps.tsv      Bootstrap replicates (--num-bootstraps)
      PREFIX.prob.tsv         Per-read posteriors (--write-assignment-probs)

    \b
    Examples:
        abundex quant -a aln.bam -o sample1
        abundex quant -a aln.bam -o sample1 --filter-group nanocount-filters
        abundex quant -a aln.bam -o sample1 --bias-model binomial -t 8
    """
    verbose = ctx.obj.get("verbose", False)
    quiet = ctx.obj.get("quiet", False)
    setup_logging(verbosity=0 if quiet else (2 if verbose else 1), log_file=log_file)

    try:
        config = resolve_config(config_path, filter_group, threads, options)

        if not quiet:
            console.print(f"[blue]Alignments:[/blue] {alignments}")
            console.print(f"[blue]Output prefix:[/blue] {output}")
            console.print(f"[blue]Bias model:[/blue] {config.bias.model.value}")
            console.print(f"[blue]Threads:[/blue] {config.threads}")

        result = quantify_bam(
            alignments,
            config,
            num_bootstraps=num_bootstraps,
            seed=seed,
            assignment_probs=write_assignment_probs,
        )
        paths = write_all(result, output, write_coverage_bins=write_coverage)

        if not quiet:
            em = result.em_result
            stats = result.filter_stats
            console.print("")
            console.print("[bold]Quantification Summary:[/bold]")
            console.print(f"  Transcripts:           {len(result.transcripts):,}")
            console.print(f"  Reads seen:            {stats.reads_seen:,}")
            console.print(f"  Reads assigned:        {result.class_stats['reads_assigned']:,}")
            console.print(f"  Equivalence classes:   {result.class_stats['n_classes']:,}")
            console.print(f"  EM iterations:         {em.iterations:,}")
            console.print(f"  Converged:             {em.converged}")
            console.print("")
            for path in paths:
                console.print(f"[green]Wrote:[/green] {path}")

    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if verbose:
            console.print_exception()
        raise SystemExit(1)


if __name__ == "__main__":
    main()
