"""Read-depth copy-number segmentation.

Per contig, each bin's read-start count is standardized against the
contig's own distribution of non-empty bins (so long zero runs at
centromeres and telomeres do not dominate the statistic). Maximal runs of
bins deviating in the same direction by at least ``min_depth_z_score``
become candidate deletions (low depth) or duplications (high depth).
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from .config import SvCallerConfig
from .models import PASS_FILTER, DepthSegment, SvCall, SvType, placeholder_genotype
from .utils import log2_ratio

logger = logging.getLogger(__name__)


def expected_reads_per_bin(mean_coverage: float, read_length: float, bin_size: int) -> float:
    if read_length <= 0:
        raise ValueError("read_length must be > 0")
    return mean_coverage * bin_size / read_length


def bin_z_scores(counts: np.ndarray) -> np.ndarray:
    """z-score of every bin against the mean and SD of the non-zero bins.

    When the non-zero bins have no spread, a Poisson SD ``sqrt(max(mean, 1))``
    is used instead.
    """
    nonzero = counts[counts > 0]
    if nonzero.size == 0:
        return np.zeros(counts.shape, dtype=float)
    mu = float(nonzero.mean())
    sd = float(nonzero.std())
    if sd <= 0.0:
        sd = math.sqrt(max(mu, 1.0))
    return (counts.astype(float) - mu) / sd


def _contig_segments(
    contig: str,
    counts: np.ndarray,
    contig_length: int,
    expected: float,
    config: SvCallerConfig,
) -> List[DepthSegment]:
    z = bin_z_scores(counts)
    threshold = config.min_depth_z_score
    bin_size = config.bin_size

    out: List[DepthSegment] = []
    i = 0
    n = len(z)
    while i < n:
        if abs(z[i]) < threshold:
            i += 1
            continue
        negative = z[i] < 0
        j = i
        while j + 1 < n and abs(z[j + 1]) >= threshold and (z[j + 1] < 0) == negative:
            j += 1

        start = i * bin_size
        end = min((j + 1) * bin_size, contig_length)
        if end > start and end - start >= config.min_cnv_size:
            run_counts = counts[i : j + 1]
            mean_depth = float(run_counts.mean())
            out.append(
                DepthSegment(
                    chrom=contig,
                    start=start,
                    end=end,
                    mean_depth=mean_depth,
                    log2_ratio=log2_ratio(mean_depth, expected),
                    z_score=float(z[i : j + 1].mean()),
                    num_bins=j - i + 1,
                    sv_type=SvType.DEL if negative else SvType.DUP,
                )
            )
        i = j + 1
    return out


def segment_depth(
    depth_bins: Mapping[str, np.ndarray],
    contig_lengths: Mapping[str, int],
    *,
    mean_coverage: float,
    read_length: float = 150.0,
    config: SvCallerConfig,
) -> List[DepthSegment]:
    """Segment per-contig depth bins into candidate CNV segments.

    Contigs absent from ``contig_lengths`` and contigs without any reads are
    skipped. Segments shorter than ``config.min_cnv_size`` are dropped.
    Output is ordered by ``contig_lengths`` order, then start.
    """
    expected = expected_reads_per_bin(mean_coverage, read_length, config.bin_size)
    order = {c: i for i, c in enumerate(contig_lengths)}

    segments: List[DepthSegment] = []
    for contig, counts in depth_bins.items():
        if contig not in contig_lengths:
            logger.debug("Skipping depth bins for %s: no contig length", contig)
            continue
        counts = np.asarray(counts)
        if counts.size == 0 or int(counts.sum()) == 0:
            continue
        segments.extend(
            _contig_segments(contig, counts, int(contig_lengths[contig]), expected, config)
        )

    segments.sort(key=lambda s: (order.get(s.chrom, len(order)), s.chrom, s.start))
    logger.info("Depth segmentation: %d candidate segments", len(segments))
    return segments


def _weighted(a: float, wa: int, b: float, wb: int) -> float:
    return (a * wa + b * wb) / (wa + wb)


def merge_nearby_segments(
    segments: Sequence[DepthSegment],
    *,
    config: SvCallerConfig,
    max_gap: Optional[int] = None,
) -> List[DepthSegment]:
    """Join same-type segments on the same contig separated by at most ``max_gap`` bp.

    ``max_gap`` defaults to ``config.max_cluster_distance``. Depth, log2 ratio
    and z-score of a merged span are averaged weighted by bin count. A
    segment lying entirely inside the running merge is absorbed unchanged, so
    merging is idempotent.
    """
    if not segments:
        return []
    gap = config.max_cluster_distance if max_gap is None else max_gap

    # stable: input order decides the contig order
    order: Dict[str, int] = {}
    for s in segments:
        order.setdefault(s.chrom, len(order))
    ordered = sorted(segments, key=lambda s: (order[s.chrom], s.start, s.end))

    merged: List[DepthSegment] = []
    current = ordered[0]
    for nxt in ordered[1:]:
        same = current.chrom == nxt.chrom and current.sv_type == nxt.sv_type
        if same and nxt.start >= current.start and nxt.end <= current.end:
            continue
        if same and nxt.start - current.end <= gap:
            wa, wb = current.num_bins, nxt.num_bins
            current = DepthSegment(
                chrom=current.chrom,
                start=current.start,
                end=max(current.end, nxt.end),
                mean_depth=_weighted(current.mean_depth, wa, nxt.mean_depth, wb),
                log2_ratio=_weighted(current.log2_ratio, wa, nxt.log2_ratio, wb),
                z_score=_weighted(current.z_score, wa, nxt.z_score, wb),
                num_bins=wa + wb,
                sv_type=current.sv_type,
            )
        else:
            merged.append(current)
            current = nxt
    merged.append(current)
    return merged


def segments_to_calls(
    segments: Sequence[DepthSegment],
    *,
    config: SvCallerConfig,
    first_index: int = 1,
    ploidy: Optional[Mapping[str, int]] = None,
) -> List[SvCall]:
    """Depth-only SV calls: no PE/SR support, ``relative_depth`` from the segment.

    A call passes only when the segment's ``|z|`` reaches
    ``depth_only_z_margin * min_depth_z_score`` and its quality reaches
    ``min_quality``; otherwise it is filtered ``LowQual`` (quality) or
    ``DepthOnly`` (weak depth signal).
    """
    ci = max(config.bin_size // 2, 100)
    calls: List[SvCall] = []
    for idx, seg in enumerate(segments, start=first_index):
        quality = min(abs(seg.z_score) * 10.0, 99.0)
        if quality < config.min_quality:
            filt = "LowQual"
        elif abs(seg.z_score) < config.depth_only_z_margin * config.min_depth_z_score:
            filt = "DepthOnly"
        else:
            filt = PASS_FILTER
        length = seg.end - seg.start
        calls.append(
            SvCall(
                id=f"CNV_{seg.chrom}_{seg.start + 1}_{idx}",
                chrom=seg.chrom,
                start=seg.start + 1,
                end=seg.end,
                sv_type=seg.sv_type,
                sv_len=-length if seg.sv_type is SvType.DEL else length,
                ci_pos=(-ci, ci),
                ci_end=(-ci, ci),
                quality=quality,
                paired_end_support=0,
                split_read_support=0,
                relative_depth=seg.relative_depth,
                mate_chrom=None,
                mate_pos=None,
                filter=filt,
                genotype=placeholder_genotype(seg.chrom, ploidy),
            )
        )
    return calls
