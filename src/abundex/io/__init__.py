"""Input/output for abundex.

- BAM/SAM alignment reading
- Reference provenance digests
- Quantification output files

Example:
    >>> from abundex.io.bam import AlignmentReader
    >>> from abundex.io.output import write_all
"""

from abundex.io.bam import AlignmentReader, group_by_read, segment_to_record
from abundex.io.digest import reference_digest, sha512t24u
from abundex.io.output import (
    write_all,
    write_assignment_probs,
    write_bootstraps,
    write_coverage,
    write_meta_info,
    write_quant,
)

__all__: list[str] = [
    "AlignmentReader",
    "group_by_read",
    "reference_digest",
    "segment_to_record",
    "sha512t24u",
    "write_all",
    "write_assignment_probs",
    "write_bootstraps",
    "write_coverage",
    "write_meta_info",
    "write_quant",
]
