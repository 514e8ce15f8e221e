"""Group PE/SR evidence into breakpoint clusters and turn clusters into calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import SvCallerConfig
from .models import (
    PASS_FILTER,
    BreakpointCluster,
    DepthSegment,
    DiscordantPair,
    DiscordantReason,
    SplitRead,
    SvCall,
    SvEvidenceCollection,
    SvType,
    placeholder_genotype,
)
from .segmenter import segments_to_calls

logger = logging.getLogger(__name__)

# (cluster, expected_insert_size) -> SV type
Classifier = Callable[[BreakpointCluster, float], SvType]


@dataclass(frozen=True)
class _Member:
    anchor: int
    partner: int
    pair: Optional[DiscordantPair] = None
    split: Optional[SplitRead] = None


def _first_per_read(items: Iterable) -> List:
    seen = set()
    out = []
    for item in items:
        key = item.read_name
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def _contig_rank(contig_order: Optional[Sequence[str]]) -> Callable[[str], Tuple[int, str]]:
    rank = {c: i for i, c in enumerate(contig_order or ())}

    def key(chrom: str) -> Tuple[int, str]:
        # unknown contigs sort after known ones, by name
        return (rank.get(chrom, len(rank)), "" if chrom in rank else chrom)

    return key


def _split_read_breakpoints(sr: SplitRead) -> Tuple[int, int]:
    """(end of the upstream segment, start of the downstream segment)."""
    if sr.primary_pos <= sr.supp_pos:
        return sr.primary_end, sr.supp_pos
    return sr.supp_end, sr.primary_pos


def cluster_positions(members: Sequence[_Member], max_distance: int) -> List[List[_Member]]:
    """Bucket members by ``anchor // max_distance`` and join adjacent buckets.

    An adjacent bucket joins the open cluster only while every member stays
    within ``max_distance`` of every other (``max - min <= max_distance``).
    """
    buckets: Dict[int, List[_Member]] = {}
    for m in sorted(members, key=lambda m: m.anchor):
        buckets.setdefault(m.anchor // max_distance, []).append(m)

    clusters: List[List[_Member]] = []
    current: List[_Member] = []
    last_bucket: Optional[int] = None
    for bucket_id in sorted(buckets):
        bucket = buckets[bucket_id]
        if current and last_bucket is not None and bucket_id == last_bucket + 1:
            span = max(bucket[-1].anchor, current[-1].anchor) - min(current[0].anchor, bucket[0].anchor)
            if span <= max_distance:
                current.extend(bucket)
                last_bucket = bucket_id
                continue
        if current:
            clusters.append(current)
        current = list(bucket)
        last_bucket = bucket_id
    if current:
        clusters.append(current)
    return clusters


def _centroid(values: Sequence[int]) -> Tuple[int, int, int]:
    """(integer centroid, low offset, high offset)."""
    c = sum(values) // len(values)
    return c, min(values) - c, max(values) - c


def _make_cluster(chrom: str, members: Sequence[_Member], mate_chrom: Optional[str] = None) -> BreakpointCluster:
    pos, lo, hi = _centroid([m.anchor for m in members])
    end, end_lo, end_hi = _centroid([m.partner for m in members])
    return BreakpointCluster(
        chrom=chrom,
        position=pos,
        ci_low=lo,
        ci_high=hi,
        discordant_pairs=tuple(m.pair for m in members if m.pair is not None),
        split_reads=tuple(m.split for m in members if m.split is not None),
        mate_chrom=mate_chrom,
        mate_position=end if mate_chrom is not None else None,
        end_position=None if mate_chrom is not None else end,
        end_ci_low=end_lo,
        end_ci_high=end_hi,
    )


def build_breakpoint_clusters(
    evidence: SvEvidenceCollection,
    *,
    max_distance: int,
    contig_order: Optional[Sequence[str]] = None,
) -> List[BreakpointCluster]:
    """Cluster deduplicated discordant pairs and split reads by breakpoint position.

    Intra-chromosomal evidence is anchored at its upstream breakpoint and
    carries the downstream one as ``end_position``. Inter-chromosomal
    evidence is oriented so the anchor lies on the contig that sorts first
    and is clustered per contig pair; the other side becomes
    ``mate_chrom``/``mate_position``.
    """
    if max_distance <= 0:
        raise ValueError("max_distance must be > 0")
    rank = _contig_rank(contig_order)

    intra: Dict[str, List[_Member]] = {}
    inter: Dict[Tuple[str, str], List[_Member]] = {}

    for p in _first_per_read(evidence.discordant_pairs):
        if p.is_inter_chromosomal:
            a, b = (p.chrom1, p.pos1), (p.chrom2, p.pos2)
            if rank(b[0]) < rank(a[0]):
                a, b = b, a
            inter.setdefault((a[0], b[0]), []).append(_Member(a[1], b[1], pair=p))
        else:
            intra.setdefault(p.chrom1, []).append(_Member(min(p.pos1, p.pos2), max(p.pos1, p.pos2), pair=p))

    for s in _first_per_read(evidence.split_reads):
        if s.is_inter_chromosomal:
            a, b = (s.primary_chrom, s.primary_pos), (s.supp_chrom, s.supp_pos)
            if rank(b[0]) < rank(a[0]):
                a, b = b, a
            inter.setdefault((a[0], b[0]), []).append(_Member(a[1], b[1], split=s))
        else:
            anchor, partner = _split_read_breakpoints(s)
            intra.setdefault(s.primary_chrom, []).append(_Member(anchor, partner, split=s))

    clusters: List[BreakpointCluster] = []
    for chrom, members in intra.items():
        clusters.extend(_make_cluster(chrom, group) for group in cluster_positions(members, max_distance))
    for (chrom, mate_chrom), members in inter.items():
        clusters.extend(
            _make_cluster(chrom, group, mate_chrom=mate_chrom) for group in cluster_positions(members, max_distance)
        )

    clusters.sort(key=lambda c: (rank(c.chrom), c.position))
    return clusters


def _is_everted(p: DiscordantPair) -> bool:
    """RF layout: the upstream read on ``-`` and the downstream read on ``+``."""
    if p.strand1 == p.strand2:
        return False
    upstream_strand = p.strand1 if p.pos1 <= p.pos2 else p.strand2
    return upstream_strand == "-"


def infer_sv_type(cluster: BreakpointCluster, expected_insert_size: float) -> SvType:
    """Default SV classifier for intra-chromosomal clusters.

    Rules, first match wins:

    1. a majority of same-strand pairs -> INV
    2. more everted (RF) than forward-reverse pairs -> DUP, whatever their
       insert size
    3. forward-reverse insert size outliers: mean insert above
       ``expected_insert_size`` -> DEL, below -> DUP
    4. split reads only: segments on opposite strands -> INV
    5. otherwise DEL
    """
    if cluster.mate_chrom is not None:
        return SvType.BND

    pairs = cluster.discordant_pairs
    if pairs:
        same_strand = sum(1 for p in pairs if p.strand1 == p.strand2)
        if same_strand * 2 > len(pairs):
            return SvType.INV

        everted = sum(1 for p in pairs if _is_everted(p))
        if everted * 2 > len(pairs) - same_strand:
            return SvType.DUP

        outliers = [
            p.insert_size
            for p in pairs
            if p.reason is DiscordantReason.INSERT_SIZE_OUTLIER and p.strand1 != p.strand2 and not _is_everted(p)
        ]
        if outliers:
            mean_insert = sum(outliers) / len(outliers)
            if mean_insert < expected_insert_size:
                return SvType.DUP
        return SvType.DEL

    if cluster.split_reads:
        opposite = sum(1 for s in cluster.split_reads if s.primary_strand != s.supp_strand)
        if opposite * 2 > len(cluster.split_reads):
            return SvType.INV
    return SvType.DEL


def passes_support(cluster: BreakpointCluster, config: SvCallerConfig) -> bool:
    return cluster.pe_support >= config.min_paired_end_support and (
        cluster.sr_support >= config.min_split_read_support
        or cluster.total_support >= config.min_total_support
    )


def cluster_quality(cluster: BreakpointCluster) -> float:
    return min(cluster.total_support * 5.0 + cluster.mean_map_q * 0.5, 99.0)


def cluster_to_call(
    cluster: BreakpointCluster,
    sv_type: SvType,
    index: int,
    *,
    config: SvCallerConfig,
    ploidy: Optional[Mapping[str, int]] = None,
) -> SvCall:
    quality = cluster_quality(cluster)
    start = cluster.position
    ci_pos = (cluster.ci_low, cluster.ci_high)

    if sv_type is SvType.BND:
        end, sv_len = start, 0
        ci_end = (cluster.end_ci_low, cluster.end_ci_high)
    else:
        if cluster.end_position is not None:
            length = max(abs(cluster.end_position - cluster.position), 1)
            ci_end = (cluster.end_ci_low, cluster.end_ci_high)
        else:
            length = config.max_cluster_distance
            ci_end = ci_pos
        end = start + length
        sv_len = -length if sv_type is SvType.DEL else length

    return SvCall(
        id=f"{sv_type.value}_{cluster.chrom}_{start}_{index}",
        chrom=cluster.chrom,
        start=start,
        end=end,
        sv_type=sv_type,
        sv_len=sv_len,
        ci_pos=ci_pos,
        ci_end=ci_end,
        quality=quality,
        paired_end_support=cluster.pe_support,
        split_read_support=cluster.sr_support,
        relative_depth=None,
        mate_chrom=cluster.mate_chrom if sv_type is SvType.BND else None,
        mate_pos=cluster.mate_position if sv_type is SvType.BND else None,
        filter=PASS_FILTER if quality >= config.min_quality else "LowQual",
        genotype=placeholder_genotype(cluster.chrom, ploidy),
    )


def _overlaps(call: SvCall, seg: DepthSegment) -> bool:
    # call is 1-based closed, segment 0-based half-open
    return call.chrom == seg.chrom and seg.start + 1 <= call.end and call.start <= seg.end


def integrate_depth(
    calls: Sequence[SvCall],
    depth_segments: Sequence[DepthSegment],
    *,
    config: SvCallerConfig,
    ploidy: Optional[Mapping[str, int]] = None,
) -> List[SvCall]:
    """Attach depth ratios to overlapping PE/SR calls; promote the rest to depth-only calls.

    Each segment is used at most once, by the first same-type call it
    overlaps.
    """
    used = set()
    out: List[SvCall] = []
    for call in calls:
        for i, seg in enumerate(depth_segments):
            if i in used or seg.sv_type is not call.sv_type or not _overlaps(call, seg):
                continue
            used.add(i)
            call = replace(call, relative_depth=seg.relative_depth)
            break
        out.append(call)

    leftover = [
        seg for i, seg in enumerate(depth_segments) if i not in used and seg.length >= config.min_cnv_size
    ]
    out.extend(segments_to_calls(leftover, config=config, first_index=len(out) + 1, ploidy=ploidy))
    return out


def cluster_evidence(
    evidence: SvEvidenceCollection,
    depth_segments: Sequence[DepthSegment],
    *,
    config: SvCallerConfig,
    contig_order: Optional[Sequence[str]] = None,
    classify: Classifier = infer_sv_type,
    ploidy: Optional[Mapping[str, int]] = None,
) -> List[SvCall]:
    """Cluster evidence, call SVs and merge in depth segments.

    Returns every call, filtered ones included, ordered by
    ``contig_order`` (unknown contigs last, by name) and start.
    """
    clusters = build_breakpoint_clusters(
        evidence, max_distance=config.max_cluster_distance, contig_order=contig_order
    )

    calls: List[SvCall] = []
    for cluster in clusters:
        if not passes_support(cluster, config):
            logger.debug(
                "Dropping cluster %s:%d (PE=%d SR=%d)",
                cluster.chrom,
                cluster.position,
                cluster.pe_support,
                cluster.sr_support,
            )
            continue
        sv_type = SvType.BND if cluster.mate_chrom is not None else classify(cluster, evidence.expected_insert_size)
        calls.append(cluster_to_call(cluster, sv_type, len(calls) + 1, config=config, ploidy=ploidy))

    n_pe_sr = len(calls)
    calls = integrate_depth(calls, depth_segments, config=config, ploidy=ploidy)

    rank = _contig_rank(contig_order)
    calls.sort(key=lambda c: (rank(c.chrom), c.start))

    logger.info(
        "Clustering: %d clusters, %d PE/SR calls, %d depth-only calls",
        len(clusters),
        n_pe_sr,
        len(calls) - n_pe_sr,
    )
    return calls
