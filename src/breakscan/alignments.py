"""Alignment record access.

The evidence walker reads records through the attribute names of
``pysam.AlignedSegment`` (``reference_start`` is 0-based, ``reference_end``
exclusive). BAM/CRAM streams are therefore consumed as-is;
:class:`AlignmentRecord` offers the same surface for synthetic streams.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import pysam

logger = logging.getLogger(__name__)

# pysam CIGAR operation codes
CIGAR_OPS = "MIDNSHP=X"
_REF_CONSUMING = {0, 2, 3, 7, 8}  # M, D, N, =, X
_CLIP_OPS = {4, 5}  # S, H

_CIGAR_RE = re.compile(r"(\d+)([MIDNSHP=X])")


@dataclass(frozen=True)
class SupplementaryAlignment:
    """One entry of an SA tag (``rname,pos,strand,CIGAR,mapQ,NM``); ``pos`` is 1-based."""

    chrom: str
    pos: int
    strand: str
    cigartuples: List[Tuple[int, int]]
    mapping_quality: int
    edit_distance: Optional[int]

    @property
    def end(self) -> int:
        """1-based inclusive alignment end."""
        return self.pos + max(reference_length(self.cigartuples), 1) - 1


def parse_cigar_string(cigar: str) -> Optional[List[Tuple[int, int]]]:
    """Parse a CIGAR string into pysam-style ``(op, length)`` tuples.

    Returns None when the string is empty, ``*`` or contains anything other
    than well-formed operations.
    """
    if not cigar or cigar == "*":
        return None
    ops: List[Tuple[int, int]] = []
    consumed = 0
    for m in _CIGAR_RE.finditer(cigar):
        if m.start() != consumed:
            return None
        ops.append((CIGAR_OPS.index(m.group(2)), int(m.group(1))))
        consumed = m.end()
    if consumed != len(cigar):
        return None
    return ops


def reference_length(cigartuples: Sequence[Tuple[int, int]]) -> int:
    return sum(length for op, length in cigartuples if op in _REF_CONSUMING)


def clip_length(cigartuples: Optional[Sequence[Tuple[int, int]]]) -> int:
    """Total soft- plus hard-clipped bases; 0 when the CIGAR is missing."""
    if not cigartuples:
        return 0
    return sum(length for op, length in cigartuples if op in _CLIP_OPS)


def parse_sa_tag(sa_tag: Optional[str]) -> Optional[SupplementaryAlignment]:
    """Parse the first entry of an SA tag; None if absent or malformed."""
    if not sa_tag:
        return None
    first = sa_tag.split(";")[0]
    parts = first.split(",")
    if len(parts) < 5:
        return None
    chrom, pos_s, strand, cigar_s, mapq_s = parts[:5]
    if not chrom or strand not in ("+", "-"):
        return None
    try:
        pos = int(pos_s)
        mapq = int(mapq_s)
        nm: Optional[int] = int(parts[5]) if len(parts) > 5 and parts[5] != "" else None
    except ValueError:
        return None
    if pos < 1 or mapq < 0:
        return None
    cigartuples = parse_cigar_string(cigar_s)
    if cigartuples is None:
        return None
    return SupplementaryAlignment(
        chrom=chrom,
        pos=pos,
        strand=strand,
        cigartuples=cigartuples,
        mapping_quality=mapq,
        edit_distance=nm,
    )


@dataclass(frozen=True)
class AlignmentRecord:
    """A minimal in-memory alignment with the ``pysam.AlignedSegment`` surface the walker uses."""

    query_name: str
    reference_name: Optional[str]
    reference_start: int
    cigartuples: Optional[List[Tuple[int, int]]]
    mapping_quality: int = 60
    is_unmapped: bool = False
    is_reverse: bool = False
    is_paired: bool = False
    mate_is_unmapped: bool = False
    mate_is_reverse: bool = False
    next_reference_name: Optional[str] = None
    next_reference_start: int = -1
    template_length: int = 0
    is_secondary: bool = False
    is_supplementary: bool = False
    tags: Dict[str, object] = field(default_factory=dict)

    @property
    def reference_end(self) -> Optional[int]:
        if self.is_unmapped or not self.cigartuples:
            return None
        return self.reference_start + reference_length(self.cigartuples)

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def get_tag(self, tag: str) -> object:
        try:
            return self.tags[tag]
        except KeyError:
            raise KeyError(f"tag '{tag}' not present") from None


def _sample_name_from_header(header: pysam.AlignmentHeader) -> str:
    read_groups = header.to_dict().get("RG", [])
    for rg in read_groups:
        if rg.get("SM"):
            return str(rg["SM"])
    return "unknown"


def alignment_contig_lengths(path: str | Path, *, reference_path: Optional[str | Path] = None) -> Dict[str, int]:
    """Contig name -> length from a BAM/CRAM header, in header order."""
    with _open(path, reference_path) as aln:
        return {name: int(length) for name, length in zip(aln.references, aln.lengths)}


def _open(path: str | Path, reference_path: Optional[str | Path]) -> pysam.AlignmentFile:
    p = str(path)
    if p.lower().endswith(".cram"):
        if reference_path is None:
            raise ValueError("CRAM input requires a reference FASTA (reference_path).")
        return pysam.AlignmentFile(p, "rc", reference_filename=str(reference_path))
    return pysam.AlignmentFile(p, "rb")


class AlignmentSource:
    """An opened BAM/CRAM: its sample name plus a one-shot record iterator.

    Use as a context manager; records are yielded in file order
    (``fetch(until_eof=True)``), unmapped reads included.
    """

    def __init__(self, path: str | Path, *, reference_path: Optional[str | Path] = None) -> None:
        self.path = str(path)
        self._aln = _open(path, reference_path)
        self.sample_name = _sample_name_from_header(self._aln.header)

    def __iter__(self) -> Iterator[pysam.AlignedSegment]:
        return self._aln.fetch(until_eof=True)

    def close(self) -> None:
        self._aln.close()

    def __enter__(self) -> "AlignmentSource":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def open_alignments(path: str | Path, *, reference_path: Optional[str | Path] = None) -> AlignmentSource:
    """Open a BAM/CRAM for a single sequential pass."""
    logger.info("Opening alignments: %s", path)
    return AlignmentSource(path, reference_path=reference_path)
