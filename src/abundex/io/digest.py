"""Reference provenance digests.

Computes a sequence-collection style digest of the reference table found
in an alignment header, so that quantifications can be matched to the
transcriptome they were produced against. Sequences are not available from
an alignment header, so only names and lengths are digested.

Example:
    >>> from abundex.io.digest import reference_digest
    >>> reference_digest(["tx1", "tx2"], [1000, 500])["digest"]
    '...'
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Sequence


def canonical_json(value: Any) -> bytes:
    """Serialize ``value`` as compact, key-sorted UTF-8 JSON."""
    return json.dumps(
        value, separators=(",", ":"), sort_keys=True, ensure_ascii=False
    ).encode("utf-8")


def sha512t24u(data: bytes) -> str:
    """Base64url encoding of the first 24 bytes of the SHA-512 digest."""
    return base64.urlsafe_b64encode(hashlib.sha512(data).digest()[:24]).decode("ascii")


def reference_digest(names: Sequence[str], lengths: Sequence[int]) -> dict[str, str]:
    """Digest a reference table.

    Args:
        names: Reference names in header order.
        lengths: Reference lengths in header order.

    Returns:
        Dictionary with the ``names``, ``lengths`` and
        ``sorted_name_length_pairs`` attribute digests and the top-level
        ``digest``. Like other sequence-collection tools, the top-level
        digest covers only the inherent attributes (names and lengths).
    """
    if len(names) != len(lengths):
        raise ValueError(f"Got {len(names)} names but {len(lengths)} lengths")

    lengths = [int(n) for n in lengths]
    pair_digests = sorted(
        sha512t24u(canonical_json({"length": length, "name": name}))
        for name, length in zip(names, lengths)
    )

    inherent = {
        "lengths": sha512t24u(canonical_json(lengths)),
        "names": sha512t24u(canonical_json(list(names))),
    }
    return {
        **inherent,
        "sorted_name_length_pairs": sha512t24u(canonical_json(pair_digests)),
        "digest": sha512t24u(canonical_json(inherent)),
    }
