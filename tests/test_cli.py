"""Tests for the abundex command-line interface.

Tests cover:
- Configuration precedence (file, preset, explicit options)
- The quant command's outputs and exit codes
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from abundex.cli import main, resolve_config
from abundex.config import BiasModelKind, ConfigurationError, StrandFilter
from abundex.quant import build_transcript_table, quantify_alignments


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def alignments(tmp_path: Path) -> Path:
    path = tmp_path / "aln.bam"
    path.touch()
    return path


@pytest.fixture
def fake_quantify_bam(scenario_reads):
    """Stand-in for quantify_bam that runs the scenario reads."""

    def run(path, config, num_bootstraps=0, seed=None, assignment_probs=False):
        table = build_transcript_table(["tx1", "tx2"], [1000, 500], config)
        return quantify_alignments(
            scenario_reads,
            table,
            config,
            num_bootstraps=num_bootstraps,
            seed=seed,
            assignment_probs=assignment_probs,
        )

    return run


NO_OPTIONS = {
    "five_prime_clip": None,
    "three_prime_clip": None,
    "score_threshold": None,
    "min_aligned_fraction": None,
    "min_aligned_len": None,
    "strand": None,
    "bias_model": None,
    "growth_rate": None,
    "bin_count": None,
    "score_bucket": None,
    "max_iterations": None,
    "convergence_tolerance": None,
}


# =============================================================================
# Configuration Precedence Tests
# =============================================================================


class TestResolveConfig:
    """Tests for resolve_config."""

    def test_defaults(self) -> None:
        config = resolve_config(None, None, None, NO_OPTIONS)
        assert config.threads == 1
        assert config.bias.model is BiasModelKind.NONE

    def test_preset_then_options(self) -> None:
        options = dict(NO_OPTIONS, three_prime_clip=20, strand="both")
        config = resolve_config(None, "nanocount-filters", 3, options)

        assert config.filters.score_threshold_fraction == 0.95
        assert config.filters.three_prime_clip_max == 20
        assert config.filters.required_strand is StrandFilter.BOTH
        assert config.threads == 3

    def test_options_override_file(self, tmp_path: Path, caplog) -> None:
        path = tmp_path / "abundex.toml"
        path.write_text('[bias]\nmodel = "logistic"\n[em]\nmax_iterations = 10\n')
        options = dict(NO_OPTIONS, bias_model="binomial", bin_count=12)

        with caplog.at_level("INFO", logger="abundex"):
            config = resolve_config(path, None, None, options)

        assert config.bias.model is BiasModelKind.BINOMIAL
        assert config.bias.coverage_bin_count == 12
        assert config.em.max_iterations == 10
        assert "Overriding model with user-provided value binomial" in caplog.text

    def test_invalid_override(self) -> None:
        options = dict(NO_OPTIONS, convergence_tolerance=-1.0)
        with pytest.raises(ConfigurationError):
            resolve_config(None, None, None, options)


# =============================================================================
# quant Command Tests
# =============================================================================


class TestQuantCommand:
    """Tests for the quant command."""

    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["quant", "--help"])
        assert result.exit_code == 0
        assert "--filter-group" in result.output

    def test_writes_outputs(
        self, runner: CliRunner, alignments: Path, tmp_path: Path, fake_quantify_bam
    ) -> None:
        prefix = tmp_path / "out" / "sample"
        with patch("abundex.cli.quantify_bam", side_effect=fake_quantify_bam):
            result = runner.invoke(
                main,
                ["quant", "--alignments", str(alignments), "--output", str(prefix)],
            )

        assert result.exit_code == 0, result.output
        assert "Quantification Summary" in result.output
        assert (tmp_path / "out" / "sample.quant").exists()
        meta = json.loads((tmp_path / "out" / "sample.meta_info.json").read_text())
        assert meta["em"]["converged"] is True

    def test_bias_coverage_and_bootstraps(
        self, runner: CliRunner, alignments: Path, tmp_path: Path, fake_quantify_bam
    ) -> None:
        prefix = tmp_path / "sample"
        with patch("abundex.cli.quantify_bam", side_effect=fake_quantify_bam):
            result = runner.invoke(
                main,
                [
                    "-q",
                    "quant",
                    "-a", str(alignments),
                    "-o", str(prefix),
                    "--bias-model", "empirical",
                    "--bin-count", "5",
                    "--write-coverage",
                    "--num-bootstraps", "2",
                    "--seed", "11",
                    "--threads", "2",
                ],
            )

        assert result.exit_code == 0, result.output
        assert (tmp_path / "sample.coverage.tsv").exists()
        assert (tmp_path / "sample.infreps.tsv").exists()
        assert "Quantification Summary" not in result.output

    def test_assignment_probs(
        self, runner: CliRunner, alignments: Path, tmp_path: Path, fake_quantify_bam
    ) -> None:
        prefix = tmp_path / "sample"
        with patch("abundex.cli.quantify_bam", side_effect=fake_quantify_bam) as mock_quantify:
            result = runner.invoke(
                main,
                ["quant", "-a", str(alignments), "-o", str(prefix), "--write-assignment-probs"],
            )

        assert result.exit_code == 0, result.output
        assert mock_quantify.call_args.kwargs["assignment_probs"] is True
        lines = (tmp_path / "sample.prob.tsv").read_text().splitlines()
        assert lines[0] == "read_id\ttname\tprob"
        assert len(lines) == 5

    def test_error_exit_code(self, runner: CliRunner, alignments: Path, tmp_path: Path) -> None:
        bad_config = tmp_path / "bad.toml"
        bad_config.write_text("[em]\nmax_iterations = 0\n")

        result = runner.invoke(
            main,
            [
                "quant",
                "--alignments", str(alignments),
                "--output", str(tmp_path / "sample"),
                "--config", str(bad_config),
            ],
        )

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert not (tmp_path / "sample.quant").exists()

    def test_rejects_unknown_filter_group(self, runner: CliRunner, alignments: Path) -> None:
        result = runner.invoke(
            main,
            ["quant", "-a", str(alignments), "-o", "x", "--filter-group", "strict"],
        )
        assert result.exit_code == 2

    def test_missing_alignments(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(
            main, ["quant", "-a", str(tmp_path / "missing.bam"), "-o", str(tmp_path / "s")]
        )
        assert result.exit_code == 2
