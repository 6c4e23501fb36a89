"""Tests for abundex.quant module.

Tests cover:
- End-to-end quantification of record streams
- Filter rejections never reaching the class builder
- Threaded filtering matching serial filtering
- Configuration checks before any iteration
- Abundances independent of read and record order
- Per-read assignment probabilities
- BAM entry point with a mocked reader
"""

import itertools
import random
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from abundex.config import BiasConfig, Config, ConfigurationError, FilterConfig
from abundex.core.em import EMEstimator
from abundex.core.transcripts import TranscriptTable
from abundex.quant import (
    QuantificationResult,
    build_transcript_table,
    collect_equivalence_classes,
    quantify_alignments,
    quantify_bam,
    read_assignment_probabilities,
)


class TestBuildTranscriptTable:
    """Tests for build_transcript_table."""

    def test_without_bias(self) -> None:
        table = build_transcript_table(["a", "b"], [100, 200], Config())
        assert not table.has_coverage

    def test_with_bias(self) -> None:
        config = Config(bias=BiasConfig(model="binomial", coverage_bin_count=6))
        table = build_transcript_table(["a", "b"], [100, 200], config)
        assert table.coverage.shape == (2, 6)


class TestCollectEquivalenceClasses:
    """Tests for the filtering pass."""

    def test_rejected_reads_never_reach_builder(self, make_record, two_transcripts) -> None:
        config = Config(filters=FilterConfig(five_prime_clip_max=10))
        reads = [
            [make_record("clipped", clip_5p=800, aligned=200)],
            [make_record("good", target=1)],
        ]

        classes, stats = collect_equivalence_classes(iter(reads), two_transcripts, config)

        assert stats.rejected == {"five_prime_clip": 1}
        assert classes.total_reads == 1
        assert classes.n_discarded == 1
        assert classes[0].targets == (1,)

    def test_threaded_matches_serial(self, make_record, monkeypatch) -> None:
        monkeypatch.setattr("abundex.quant.READ_BATCH_SIZE", 7)
        table = TranscriptTable(["a", "b", "c"], [1000, 1000, 1000])
        rng = np.random.default_rng(3)
        reads = []
        for i in range(200):
            targets = rng.choice(3, size=rng.integers(1, 4), replace=False)
            reads.append(
                [make_record(f"r{i}", target=int(t), score=float(rng.integers(90, 101))) for t in targets]
            )

        serial, serial_stats = collect_equivalence_classes(reads, table, Config(threads=1))
        threaded, threaded_stats = collect_equivalence_classes(reads, table, Config(threads=4))

        assert serial.classes == threaded.classes
        assert serial_stats == threaded_stats
        assert serial_stats.reads_seen == 200


class TestQuantifyAlignments:
    """Tests for quantify_alignments."""

    def test_scenario(self, scenario_reads, two_transcripts) -> None:
        result = quantify_alignments(iter(scenario_reads), two_transcripts, Config())

        assert isinstance(result, QuantificationResult)
        assert result.em_result.converged
        assert result.em_result.abundance.sum() == pytest.approx(3.0)
        assert result.class_stats["reads_assigned"] == 3
        assert result.filter_stats.reads_seen == 3
        assert result.bootstraps is None
        assert result.reference_digest["digest"]

    def test_with_bootstraps(self, scenario_reads, two_transcripts) -> None:
        result = quantify_alignments(
            scenario_reads, two_transcripts, Config(), num_bootstraps=3, seed=1
        )
        assert result.bootstraps.shape == (3, 2)

    def test_to_dict(self, scenario_reads, two_transcripts) -> None:
        data = quantify_alignments(scenario_reads, two_transcripts).to_dict()

        assert data["num_transcripts"] == 2
        assert data["em"]["converged"] is True
        assert data["config"]["bias"]["model"] == "none"
        assert data["num_bootstraps"] == 0

    def test_invalid_config_before_reading(self, two_transcripts) -> None:
        reads = MagicMock()
        config = Config(filters=FilterConfig(score_threshold_fraction=2.0))

        with pytest.raises(ConfigurationError):
            quantify_alignments(reads, two_transcripts, config)

        reads.__iter__.assert_not_called()

    def test_bias_needs_matching_table(self, scenario_reads, two_transcripts) -> None:
        config = Config(bias=BiasConfig(model="logistic"))
        with pytest.raises(ConfigurationError, match="coverage bins"):
            quantify_alignments(scenario_reads, two_transcripts, config)

    def test_bias_model_run(self, scenario_reads) -> None:
        config = Config(bias=BiasConfig(model="empirical", coverage_bin_count=10))
        table = build_transcript_table(["tx1", "tx2"], [1000, 500], config)

        result = quantify_alignments(scenario_reads, table, config)

        assert result.em_result.coverage.shape == (2, 10)
        assert result.em_result.abundance.sum() == pytest.approx(3.0)


class TestOrderInvariance:
    """Final abundances do not depend on input order."""

    @pytest.fixture
    def reads(self, make_record) -> list[list]:
        reads = []
        for i in range(5):
            reads.append([make_record(f"late{i}", target=0, ref_start=900, aligned=80)])
            reads.append([make_record(f"mid{i}", target=0, ref_start=500, aligned=80)])
            reads.append([make_record(f"early{i}", target=1, ref_start=50, aligned=80)])
        reads.append(
            [
                make_record("multi", target=0, ref_start=0, aligned=80),
                make_record("multi", target=0, ref_start=900, aligned=80),
                make_record("multi", target=1, ref_start=0, aligned=80),
            ]
        )
        return reads

    @pytest.mark.parametrize("model", ["none", "empirical", "binomial", "logistic"])
    def test_records_within_read_shuffled(self, reads, model) -> None:
        config = Config(bias=BiasConfig(model=model, coverage_bin_count=10))
        *unique, multi = reads

        abundances = []
        for order in itertools.permutations(multi):
            table = build_transcript_table(["t0", "t1"], [1000, 1000], config)
            result = quantify_alignments(unique + [list(order)], table, config)
            abundances.append(result.em_result.abundance)

        for abundance in abundances[1:]:
            np.testing.assert_allclose(abundance, abundances[0], rtol=1e-12)

    def test_reads_and_records_shuffled(self, reads) -> None:
        config = Config(bias=BiasConfig(model="empirical", coverage_bin_count=10))
        shuffled = [random.Random(i).sample(read, len(read)) for i, read in enumerate(reads)]
        random.Random(7).shuffle(shuffled)

        first = quantify_alignments(
            reads, build_transcript_table(["t0", "t1"], [1000, 1000], config), config
        )
        second = quantify_alignments(
            shuffled, build_transcript_table(["t0", "t1"], [1000, 1000], config), config
        )

        np.testing.assert_allclose(
            second.em_result.abundance, first.em_result.abundance, rtol=1e-12
        )
        assert first.em_result.abundance.sum() == pytest.approx(16.0)


class TestNegativeScores:
    """Reads whose aligner scores are all negative."""

    def test_best_alignment_kept(self, make_record, two_transcripts) -> None:
        reads = [[make_record("neg", target=0, score=-10), make_record("neg", target=1, score=-12)]]

        result = quantify_alignments(reads, two_transcripts, Config())

        assert result.filter_stats.reads_without_alignment == 0
        assert result.filter_stats.rejected == {"low_score": 1}
        np.testing.assert_allclose(result.em_result.abundance, [1.0, 0.0])


class TestAssignmentProbabilities:
    """Tests for per-read posteriors."""

    def test_scenario_posteriors(self, scenario_reads, two_transcripts) -> None:
        result = quantify_alignments(
            scenario_reads, two_transcripts, Config(), assignment_probs=True
        )

        assignments = {a.read_id: a for a in result.assignments}
        assert list(assignments) == ["readA", "readB", "readC"]
        np.testing.assert_array_equal(assignments["readA"].targets, [0])
        np.testing.assert_allclose(assignments["readA"].probabilities, [1.0])

        shared = assignments["readC"]
        np.testing.assert_array_equal(shared.targets, [0, 1])
        assert shared.probabilities.sum() == pytest.approx(1.0)
        assert np.all(shared.probabilities > 0)

    def test_posteriors_add_up_to_abundance(self, ten_read_fixture, three_transcripts) -> None:
        result = quantify_alignments(
            ten_read_fixture, three_transcripts, Config(), assignment_probs=True
        )

        assigned = np.zeros(3)
        for _, targets, probs in result.assignments:
            np.add.at(assigned, targets, probs)

        assert len(result.assignments) == 10
        np.testing.assert_allclose(assigned, result.em_result.abundance, rtol=1e-4)

    def test_not_tracked_by_default(self, scenario_reads, two_transcripts) -> None:
        result = quantify_alignments(scenario_reads, two_transcripts, Config())
        assert result.assignments is None

    def test_requires_tracking(self, scenario_reads, two_transcripts) -> None:
        classes, _ = collect_equivalence_classes(scenario_reads, two_transcripts, Config())
        with pytest.raises(ValueError, match="read tracking"):
            read_assignment_probabilities(classes, two_transcripts, EMEstimator())


class TestQuantifyBam:
    """Tests for quantify_bam."""

    @patch("abundex.quant.AlignmentReader")
    def test_reads_header_and_records(
        self, mock_reader_cls: MagicMock, scenario_reads, tmp_path: Path
    ) -> None:
        reader = mock_reader_cls.return_value.__enter__.return_value
        reader.reference_names = ["tx1", "tx2"]
        reader.reference_lengths = [1000, 500]
        reader.reads.return_value = iter(scenario_reads)

        result = quantify_bam(tmp_path / "aln.bam", Config())

        mock_reader_cls.assert_called_once_with(tmp_path / "aln.bam")
        assert result.transcripts.names == ["tx1", "tx2"]
        assert result.em_result.abundance.sum() == pytest.approx(3.0)
