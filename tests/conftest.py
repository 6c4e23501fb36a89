"""Pytest configuration and shared fixtures for abundex tests.

Fixtures are organized by category:

- Record fixtures: Build alignment records programmatically
- Transcript fixtures: Small reference tables
- Scenario fixtures: Read sets with known outcomes
"""

from typing import Callable

import pytest

from abundex.core.filters import AlignmentRecord
from abundex.core.transcripts import TranscriptTable


# =============================================================================
# Record Fixtures
# =============================================================================


def build_record(
    read_id: str = "read1",
    target: int = 0,
    score: float = 100.0,
    ref_start: int = 0,
    aligned: int = 400,
    clip_5p: int = 0,
    clip_3p: int = 0,
    strand: str = "+",
    flags: int = 0,
) -> AlignmentRecord:
    """Build a self-consistent alignment record.

    The read length is the sum of the clips and the aligned length, and the
    alignment covers ``aligned`` reference bases from ``ref_start``.
    """
    return AlignmentRecord(
        read_id=read_id,
        target=target,
        ref_start=ref_start,
        ref_end=ref_start + aligned,
        clip_5p=clip_5p,
        clip_3p=clip_3p,
        aligned_length=aligned,
        read_length=clip_5p + aligned + clip_3p,
        score=score,
        strand=strand,
        flags=flags,
    )


@pytest.fixture
def make_record() -> Callable[..., AlignmentRecord]:
    """Factory for self-consistent alignment records."""
    return build_record


# =============================================================================
# Transcript Fixtures
# =============================================================================


@pytest.fixture
def two_transcripts() -> TranscriptTable:
    """Two transcripts of length 1000 and 500."""
    return TranscriptTable(["tx1", "tx2"], [1000, 500])


@pytest.fixture
def three_transcripts() -> TranscriptTable:
    """Three transcripts of length 1000, 500 and 800; tx3 gets no reads."""
    return TranscriptTable(["tx1", "tx2", "tx3"], [1000, 500, 800])


# =============================================================================
# Scenario Fixtures
# =============================================================================


@pytest.fixture
def scenario_reads() -> list[list[AlignmentRecord]]:
    """Three reads over two transcripts.

    - readA maps uniquely to tx1 (score 60)
    - readB maps uniquely to tx2 (score 60)
    - readC maps to tx1 (score 55) and tx2 (score 58)
    """
    return [
        [build_record("readA", target=0, score=60)],
        [build_record("readB", target=1, score=60)],
        [
            build_record("readC", target=0, score=55, ref_start=100),
            build_record("readC", target=1, score=58, ref_start=50),
        ],
    ]


@pytest.fixture
def ten_read_fixture() -> list[list[AlignmentRecord]]:
    """Ten reads over three equal-length transcripts with equal scores.

    4 unique to t0, 2 unique to t1, 1 unique to t2, 2 shared by t0/t1 and
    1 shared by t1/t2.
    """
    reads = []
    layout = [(0,)] * 4 + [(1,)] * 2 + [(2,)] + [(0, 1)] * 2 + [(1, 2)]
    for i, targets in enumerate(layout):
        reads.append([build_record(f"read{i}", target=t, score=80) for t in targets])
    return reads


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
