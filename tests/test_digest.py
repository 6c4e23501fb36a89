"""Tests for abundex.io.digest module."""

import pytest

from abundex.io.digest import canonical_json, reference_digest, sha512t24u


class TestSha512t24u:
    """Tests for sha512t24u."""

    def test_known_values(self) -> None:
        assert sha512t24u(b"") == "z4PhNX7vuL3xVChQ1m2AB9Yg5AULVxXc"
        assert sha512t24u(b"ACGT") == "aKF498dAxcJAqme6QYQ7EZ07-fiw8Kw2"

    def test_length(self) -> None:
        assert len(sha512t24u(b"anything")) == 32


class TestCanonicalJson:
    """Tests for canonical_json."""

    def test_compact_sorted(self) -> None:
        assert canonical_json({"name": "tx1", "length": 10}) == b'{"length":10,"name":"tx1"}'


class TestReferenceDigest:
    """Tests for reference_digest."""

    def test_stable(self) -> None:
        a = reference_digest(["tx1", "tx2"], [1000, 500])
        b = reference_digest(["tx1", "tx2"], [1000, 500])
        assert a == b
        assert set(a) == {"names", "lengths", "sorted_name_length_pairs", "digest"}

    def test_order_sensitive_except_sorted_pairs(self) -> None:
        a = reference_digest(["tx1", "tx2"], [1000, 500])
        b = reference_digest(["tx2", "tx1"], [500, 1000])

        assert a["digest"] != b["digest"]
        assert a["names"] != b["names"]
        assert a["sorted_name_length_pairs"] == b["sorted_name_length_pairs"]

    def test_length_change(self) -> None:
        a = reference_digest(["tx1"], [1000])
        b = reference_digest(["tx1"], [1001])
        assert a["lengths"] != b["lengths"]
        assert a["names"] == b["names"]

    def test_mismatched_columns(self) -> None:
        with pytest.raises(ValueError):
            reference_digest(["tx1"], [1, 2])

    def test_top_level_covers_inherent_attributes(self) -> None:
        result = reference_digest(["tx1", "tx2"], [1000, 500])
        expected = sha512t24u(
            canonical_json({"lengths": result["lengths"], "names": result["names"]})
        )
        assert result["digest"] == expected
