"""Single-pass collection of structural variant evidence.

One sequential scan over an alignment stream gathers three independent
signals:

- read-start counts per depth bin (copy-number segmentation),
- discordant read pairs (BreakDancer-style insert size / orientation /
  inter-chromosomal tests),
- split reads linked through the SA tag (Pindel/LUMPY-style breakpoints).
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import numpy as np
from tqdm import tqdm

from .alignments import clip_length, parse_sa_tag
from .config import SvCallerConfig
from .errors import AnalysisCancelled, EvidenceCollectionError
from .models import DiscordantPair, DiscordantReason, SplitRead, SvEvidenceCollection

logger = logging.getLogger(__name__)

MIN_CLIP_LENGTH = 10
DEFAULT_PROGRESS_INTERVAL = 1_000_000

# (message, records_seen) -> False to cancel
ProgressCallback = Callable[[str, int], Optional[bool]]


def _strand(is_reverse: bool) -> str:
    return "-" if is_reverse else "+"


def allocate_depth_bins(contig_lengths: Mapping[str, int], bin_size: int) -> Dict[str, np.ndarray]:
    """One zeroed count array per contig, ``ceil(length / bin_size)`` bins long."""
    bins: Dict[str, np.ndarray] = {}
    for contig, length in contig_lengths.items():
        n_bins = (int(length) + bin_size - 1) // bin_size
        bins[contig] = np.zeros(n_bins, dtype=np.int32)
    return bins


def is_expected_orientation(read) -> bool:
    """True for forward-reverse (FR) pairs: upstream read on +, downstream read on -."""
    if read.is_reverse == read.mate_is_reverse:
        return False
    if read.reference_start < read.next_reference_start:
        return not read.is_reverse and read.mate_is_reverse
    return read.is_reverse and not read.mate_is_reverse


def _pair_map_q(read) -> int:
    mapq = int(read.mapping_quality)
    if read.has_tag("MQ"):
        try:
            mapq = min(mapq, int(read.get_tag("MQ")))
        except (TypeError, ValueError):
            pass
    return mapq


def detect_discordant_pair(
    read,
    *,
    insert_size_min: float,
    insert_size_max: float,
    min_map_q: int,
) -> Optional[DiscordantPair]:
    """Classify a primary paired alignment; None when the pair looks concordant.

    Rules are evaluated in priority order and the first match wins:
    inter-chromosomal, insert size outlier, wrong orientation.
    """
    if not read.is_paired or read.mate_is_unmapped:
        return None
    if read.mapping_quality < min_map_q:
        return None

    inter = read.next_reference_name != read.reference_name
    insert_size = 0 if inter else abs(int(read.template_length))

    if inter:
        reason = DiscordantReason.INTER_CHROMOSOMAL
    elif insert_size > insert_size_max or (0 < insert_size < insert_size_min):
        reason = DiscordantReason.INSERT_SIZE_OUTLIER
    elif not is_expected_orientation(read):
        reason = DiscordantReason.WRONG_ORIENTATION
    else:
        return None

    return DiscordantPair(
        read_name=str(read.query_name),
        chrom1=str(read.reference_name),
        pos1=int(read.reference_start) + 1,
        strand1=_strand(read.is_reverse),
        chrom2=str(read.next_reference_name),
        pos2=int(read.next_reference_start) + 1,
        strand2=_strand(read.mate_is_reverse),
        insert_size=insert_size,
        map_q=_pair_map_q(read),
        reason=reason,
    )


def extract_split_read(read, *, min_map_q: int) -> Optional[SplitRead]:
    """Build a SplitRead from the first SA entry, or None.

    Requires a supplementary MAPQ of at least ``min_map_q`` and at least
    ``MIN_CLIP_LENGTH`` clipped bases in the record's own CIGAR. Malformed SA
    tags and records without a CIGAR yield None.
    """
    if not read.has_tag("SA"):
        return None
    sa = parse_sa_tag(str(read.get_tag("SA")))
    if sa is None:
        logger.debug("Skipping malformed SA tag on %s", read.query_name)
        return None
    cigar = read.cigartuples
    if not cigar:
        logger.debug("Skipping split read without CIGAR: %s", read.query_name)
        return None

    clipped = clip_length(cigar)
    if sa.mapping_quality < min_map_q or clipped < MIN_CLIP_LENGTH:
        return None

    start0 = int(read.reference_start)
    end0 = read.reference_end
    return SplitRead(
        read_name=str(read.query_name),
        primary_chrom=str(read.reference_name),
        primary_pos=start0 + 1,
        primary_strand=_strand(read.is_reverse),
        supp_chrom=sa.chrom,
        supp_pos=sa.pos,
        supp_strand=sa.strand,
        clip_length=clipped,
        map_q=min(int(read.mapping_quality), sa.mapping_quality),
        primary_end=int(end0) if end0 is not None else start0 + 1,
        supp_end=sa.end,
    )


def collect_evidence(
    records: Iterable,
    *,
    contig_lengths: Mapping[str, int],
    expected_insert_size: float,
    insert_size_sd: float,
    config: SvCallerConfig,
    sample_name: str = "unknown",
    on_progress: Optional[ProgressCallback] = None,
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
    progress: bool = False,
) -> SvEvidenceCollection:
    """Walk an alignment stream once and gather depth, discordant-pair and split-read evidence.

    Parameters
    ----------
    records:
        Alignment records in file order (``pysam.AlignedSegment`` or
        :class:`~breakscan.alignments.AlignmentRecord`).
    contig_lengths:
        Contigs to bin for depth; contigs missing here get no depth accounting.
    expected_insert_size, insert_size_sd:
        Library insert-size distribution.
    on_progress:
        Called as ``on_progress(message, records_seen)`` at start, every
        ``progress_interval`` records and at the end. Returning ``False``
        cancels the walk (checked at the same cadence).
    progress:
        Show a tqdm progress bar.

    Raises
    ------
    EvidenceCollectionError
        The stream failed mid-walk; no partial evidence is returned.
    AnalysisCancelled
        The progress callback asked to stop.
    """
    if progress_interval <= 0:
        raise ValueError("progress_interval must be > 0")

    bin_size = config.bin_size
    min_map_q = config.min_map_q
    depth_bins = allocate_depth_bins(contig_lengths, bin_size)

    insert_size_max = expected_insert_size + config.insert_size_z_threshold * insert_size_sd
    insert_size_min = max(0.0, expected_insert_size - config.insert_size_z_threshold * insert_size_sd)

    discordant_pairs: List[DiscordantPair] = []
    split_reads: List[SplitRead] = []
    unbinned_contigs: set = set()
    binned = 0

    def report(message: str, seen: int) -> None:
        if on_progress is not None and on_progress(message, seen) is False:
            raise AnalysisCancelled(
                f"SV evidence collection cancelled after {seen} records.", phase="evidence"
            )

    report("Collecting SV evidence from alignments...", 0)

    it: Iterable = records
    if progress:
        it = tqdm(it, unit="read", desc="Collecting SV evidence")

    n = 0
    try:
        for read in it:
            n += 1
            if n % progress_interval == 0:
                report(f"Processed {n:,} records...", n)

            if read.is_unmapped:
                continue

            contig = read.reference_name
            primary = not (read.is_secondary or read.is_supplementary)

            if primary:
                bins = depth_bins.get(contig)
                if bins is not None:
                    # 1-based alignment start
                    idx = (int(read.reference_start) + 1) // bin_size
                    if 0 <= idx < len(bins):
                        bins[idx] += 1
                        binned += 1
                elif contig not in unbinned_contigs:
                    unbinned_contigs.add(contig)
                    logger.debug("Contig %s is not in contig_lengths; skipping depth for it", contig)

                dp = detect_discordant_pair(
                    read,
                    insert_size_min=insert_size_min,
                    insert_size_max=insert_size_max,
                    min_map_q=min_map_q,
                )
                if dp is not None:
                    discordant_pairs.append(dp)

            if read.mapping_quality >= min_map_q:
                sr = extract_split_read(read, min_map_q=min_map_q)
                if sr is not None:
                    split_reads.append(sr)
    except (OSError, ValueError) as e:
        raise EvidenceCollectionError(f"Failed to collect SV evidence: {e}") from e

    report("SV evidence collection complete.", n)

    if unbinned_contigs and binned == 0:
        logger.warning(
            "None of the %d contigs in the alignments matched contig_lengths; depth bins are empty.",
            len(unbinned_contigs),
        )

    logger.info(
        "Evidence: %d records, %d discordant pairs, %d split reads",
        n,
        len(discordant_pairs),
        len(split_reads),
    )

    return SvEvidenceCollection(
        discordant_pairs=discordant_pairs,
        split_reads=split_reads,
        depth_bins=depth_bins,
        sample_name=sample_name,
        expected_insert_size=float(expected_insert_size),
        insert_size_sd=float(insert_size_sd),
        records_processed=n,
    )
