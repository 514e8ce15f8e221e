from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .utils import clamp, dataclass_to_jsonable

PASS_FILTER = "PASS"


class SvType(str, enum.Enum):
    """Structural variant classes, named as in the VCF ``SVTYPE`` field."""

    DEL = "DEL"
    DUP = "DUP"
    INV = "INV"
    BND = "BND"
    INS = "INS"


class DiscordantReason(str, enum.Enum):
    """Why a read pair deviates from the expected library layout."""

    INSERT_SIZE_OUTLIER = "InsertSizeOutlier"
    WRONG_ORIENTATION = "WrongOrientation"
    INTER_CHROMOSOMAL = "InterChromosomal"


@dataclass(frozen=True)
class DiscordantPair:
    """A primary alignment whose mate maps inconsistently with the library.

    Positions are 1-based alignment starts; strands are ``"+"`` or ``"-"``.

    Attributes
    ----------
    insert_size:
        Absolute template length; 0 for inter-chromosomal pairs.
    map_q:
        Minimum mapping quality over the read and (when known) its mate.
    reason:
        The first matching rule: inter-chromosomal, insert size, orientation.
    """

    read_name: str
    chrom1: str
    pos1: int
    strand1: str
    chrom2: str
    pos2: int
    strand2: str
    insert_size: int
    map_q: int
    reason: DiscordantReason

    @property
    def is_inter_chromosomal(self) -> bool:
        return self.reason is DiscordantReason.INTER_CHROMOSOMAL


@dataclass(frozen=True)
class SplitRead:
    """A read aligned in two pieces, linked by its SA tag.

    ``*_pos`` are 1-based alignment starts and ``*_end`` 1-based inclusive
    alignment ends of the primary and (first) supplementary segment.
    """

    read_name: str
    primary_chrom: str
    primary_pos: int
    primary_strand: str
    supp_chrom: str
    supp_pos: int
    supp_strand: str
    clip_length: int
    map_q: int
    primary_end: int
    supp_end: int

    @property
    def is_inter_chromosomal(self) -> bool:
        return self.primary_chrom != self.supp_chrom


@dataclass(frozen=True)
class DepthSegment:
    """A run of depth bins with consistent copy-number deviation.

    Coordinates are 0-based half-open.
    """

    chrom: str
    start: int
    end: int
    mean_depth: float
    log2_ratio: float
    z_score: float
    num_bins: int
    sv_type: SvType

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"DepthSegment end ({self.end}) must be > start ({self.start})")
        if self.num_bins < 1:
            raise ValueError("DepthSegment must span at least one bin")
        if self.sv_type not in (SvType.DEL, SvType.DUP):
            raise ValueError(f"Depth alone cannot resolve {self.sv_type.value}")

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def relative_depth(self) -> float:
        return float(2.0 ** self.log2_ratio)


@dataclass(frozen=True)
class BreakpointCluster:
    """Evidence grouped around one breakpoint.

    ``ci_low``/``ci_high`` are offsets of the outermost member positions from
    ``position``. For intra-chromosomal evidence ``end_position`` is the
    partner breakpoint with its own interval; for inter-chromosomal evidence
    ``mate_chrom``/``mate_position`` locate the other side.
    """

    chrom: str
    position: int
    ci_low: int
    ci_high: int
    discordant_pairs: Tuple[DiscordantPair, ...] = ()
    split_reads: Tuple[SplitRead, ...] = ()
    mate_chrom: Optional[str] = None
    mate_position: Optional[int] = None
    end_position: Optional[int] = None
    end_ci_low: int = 0
    end_ci_high: int = 0

    @property
    def pe_support(self) -> int:
        return len(self.discordant_pairs)

    @property
    def sr_support(self) -> int:
        return len(self.split_reads)

    @property
    def total_support(self) -> int:
        return self.pe_support + self.sr_support

    @property
    def mean_map_q(self) -> float:
        mapqs = [p.map_q for p in self.discordant_pairs] + [s.map_q for s in self.split_reads]
        if not mapqs:
            return 0.0
        return sum(mapqs) / len(mapqs)


@dataclass(frozen=True)
class SvCall:
    """A called structural variant.

    Coordinates are 1-based. ``sv_len`` is negative for deletions; ``ci_pos``
    and ``ci_end`` are (low, high) offsets around ``start`` and ``end`` and
    always bracket zero.
    """

    id: str
    chrom: str
    start: int
    end: int
    sv_type: SvType
    sv_len: int
    ci_pos: Tuple[int, int]
    ci_end: Tuple[int, int]
    quality: float
    paired_end_support: int
    split_read_support: int
    relative_depth: Optional[float]
    mate_chrom: Optional[str]
    mate_pos: Optional[int]
    filter: str
    genotype: str

    def __post_init__(self) -> None:
        if self.sv_type is SvType.DEL and self.sv_len >= 0:
            raise ValueError(f"{self.id}: deletions must have a negative sv_len")
        if self.sv_type is not SvType.DEL and self.sv_len < 0:
            raise ValueError(f"{self.id}: only deletions may have a negative sv_len")
        for name, (lo, hi) in (("ci_pos", self.ci_pos), ("ci_end", self.ci_end)):
            if not lo <= 0 <= hi:
                raise ValueError(f"{self.id}: {name} {lo, hi} must bracket zero")

    @property
    def is_pass(self) -> bool:
        return self.filter == PASS_FILTER

    @property
    def confidence(self) -> float:
        return SvCall.calculate_confidence(self)

    @staticmethod
    def calculate_confidence(call: "SvCall") -> float:
        """Combine PE, SR and depth evidence into a score in [0, 1].

        Each sub-score is capped at 1.0: PE support saturates at 10 pairs,
        SR support at 5 reads, depth at a 50% deviation from the expected
        depth. Missing depth contributes 0; the weights are not renormalized.
        """
        pe_score = min(max(call.paired_end_support, 0) / 10.0, 1.0)
        sr_score = min(max(call.split_read_support, 0) / 5.0, 1.0)
        depth_score = 0.0
        if call.relative_depth is not None:
            depth_score = min(abs(1.0 - call.relative_depth) / 0.5, 1.0)
        return clamp(pe_score * 0.3 + sr_score * 0.4 + depth_score * 0.3, 0.0, 1.0)

    def to_dict(self) -> Dict[str, Any]:
        return dataclass_to_jsonable(self)


@dataclass(frozen=True)
class SvEvidenceCollection:
    """Everything the evidence walker gathered for one sample in one run.

    ``depth_bins`` maps each contig to its per-bin read-start counts. The
    arrays belong to this collection; do not reuse them across runs.
    """

    discordant_pairs: List[DiscordantPair]
    split_reads: List[SplitRead]
    depth_bins: Dict[str, np.ndarray]
    sample_name: str
    expected_insert_size: float
    insert_size_sd: float
    records_processed: int = 0

    @property
    def total_discordant_pairs(self) -> int:
        return len(self.discordant_pairs)

    @property
    def total_split_reads(self) -> int:
        return len(self.split_reads)

    @property
    def inter_chromosomal_pairs(self) -> List[DiscordantPair]:
        return [p for p in self.discordant_pairs if p.is_inter_chromosomal]

    def pairs_by_reason(self) -> Dict[DiscordantReason, int]:
        counts = Counter(p.reason for p in self.discordant_pairs)
        return {reason: counts.get(reason, 0) for reason in DiscordantReason}

    def group_discordant_pairs_by_breakpoint(
        self, max_distance: int
    ) -> Dict[Tuple[str, int], List[DiscordantPair]]:
        """Group pairs by chromosome and a ``max_distance``-wide position bin."""
        groups: Dict[Tuple[str, int], List[DiscordantPair]] = {}
        for p in self.discordant_pairs:
            key = (p.chrom1, p.pos1 // max_distance * max_distance)
            groups.setdefault(key, []).append(p)
        return groups

    def group_split_reads_by_breakpoint(
        self, max_distance: int
    ) -> Dict[Tuple[str, int], List[SplitRead]]:
        """Group split reads by primary chromosome and a ``max_distance``-wide position bin."""
        groups: Dict[Tuple[str, int], List[SplitRead]] = {}
        for s in self.split_reads:
            key = (s.primary_chrom, s.primary_pos // max_distance * max_distance)
            groups.setdefault(key, []).append(s)
        return groups


@dataclass(frozen=True)
class SvAnalysisResult:
    """Outcome of one SV calling run: PASS calls plus run-level counters."""

    sv_calls: List[SvCall]
    total_discordant_pairs: int
    total_split_reads: int
    cnv_segments: int
    analysis_timestamp: datetime
    reference_build: str
    mean_coverage: float
    artifact_dir: Optional[str] = None

    def count_by_type(self) -> Dict[SvType, int]:
        counts = Counter(c.sv_type for c in self.sv_calls)
        return {t: counts.get(t, 0) for t in SvType}

    def to_dict(self) -> Dict[str, Any]:
        return dataclass_to_jsonable(self)


@dataclass(frozen=True)
class CachedSvInfo:
    """Metadata written next to a cached SV VCF (counts are over PASS calls)."""

    vcf_path: str
    index_path: str
    reference_build: str
    created_at: str
    sv_call_count: int
    deletion_count: int
    duplication_count: int
    inversion_count: int
    translocation_count: int
    insertion_count: int = 0


def placeholder_genotype(chrom: str, ploidy: Optional[Mapping[str, int]] = None) -> str:
    """``0/1`` unless ``ploidy`` marks the contig haploid, then ``1``.

    No allele-level genotyping is done; this only carries the expected
    copy number of the contig into the GT field.
    """
    if ploidy is not None and ploidy.get(chrom) == 1:
        return "1"
    return "0/1"
