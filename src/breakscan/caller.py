"""End-to-end structural variant calling for one sample.

Phases, with their share of the reported progress:

1. evidence collection (0-60 %): one pass over the alignments,
2. depth segmentation (60-75 %),
3. clustering and calling (75-90 %),
4. artifacts (90-100 %), only when ``artifact_dir`` is given.

The first failing phase aborts the run with an :class:`~breakscan.errors.SvCallerError`
whose ``phase`` names it; later phases do not run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Union

from .alignments import alignment_contig_lengths, open_alignments
from .artifacts import write_sv_artifacts
from .clusterer import Classifier, cluster_evidence, infer_sv_type
from .config import SvCallerConfig
from .errors import AnalysisCancelled, EvidenceCollectionError, PreconditionError, SvCallerError
from .models import SvAnalysisResult, SvEvidenceCollection
from .segmenter import merge_nearby_segments, segment_depth
from .walker import DEFAULT_PROGRESS_INTERVAL, collect_evidence

logger = logging.getLogger(__name__)

MIN_COVERAGE = 10.0

# (message, fraction in [0, 1]) -> False to cancel
RunProgressCallback = Callable[[str, float], Optional[bool]]

AlignmentInput = Union[str, Path, Iterable]

_WALK_SHARE = 0.60
_SEGMENT_END = 0.75
_CLUSTER_END = 0.90


def check_preconditions(
    *,
    contig_lengths: Optional[Mapping[str, int]],
    mean_coverage: float,
    mean_insert_size: float,
    insert_size_sd: float,
    mean_read_length: float,
) -> None:
    """Raise PreconditionError when the library cannot support SV calling."""
    if mean_coverage < MIN_COVERAGE:
        raise PreconditionError(
            f"Insufficient coverage for SV calling: {mean_coverage:.1f}x (minimum {MIN_COVERAGE:.0f}x)."
        )
    if not contig_lengths:
        raise PreconditionError("No contig lengths available; cannot bin read depth.")
    if mean_insert_size <= 0 or insert_size_sd <= 0:
        raise PreconditionError(
            f"Invalid insert size distribution: mean={mean_insert_size}, sd={insert_size_sd}."
        )
    if mean_read_length <= 0:
        raise PreconditionError(f"Invalid mean read length: {mean_read_length}.")


class _Progress:
    """Monotonic run-level progress that honours cancellation requests."""

    def __init__(self, callback: Optional[RunProgressCallback]) -> None:
        self._callback = callback
        self._last = 0.0

    def __call__(self, message: str, fraction: float, *, phase: str) -> None:
        self._last = max(self._last, min(fraction, 1.0))
        if self._callback is not None and self._callback(message, self._last) is False:
            raise AnalysisCancelled(f"SV calling cancelled during {phase}.", phase=phase)

    def done(self, message: str) -> None:
        self._last = 1.0
        if self._callback is not None:
            self._callback(message, 1.0)


def _walk(
    alignments: AlignmentInput,
    *,
    contig_lengths: Mapping[str, int],
    reference_path,
    mean_insert_size: float,
    insert_size_sd: float,
    config: SvCallerConfig,
    sample_name: Optional[str],
    progress: _Progress,
    progress_interval: int,
    show_progress: bool,
) -> SvEvidenceCollection:
    def on_records(message: str, seen: int) -> bool:
        progress(message, _WALK_SHARE * seen / (seen + progress_interval), phase="evidence")
        return True

    kwargs = dict(
        contig_lengths=contig_lengths,
        expected_insert_size=mean_insert_size,
        insert_size_sd=insert_size_sd,
        config=config,
        on_progress=on_records,
        progress_interval=progress_interval,
        progress=show_progress,
    )

    if isinstance(alignments, (str, Path)):
        try:
            source = open_alignments(alignments, reference_path=reference_path)
        except (OSError, ValueError) as e:
            raise EvidenceCollectionError(f"Failed to open alignments {alignments}: {e}") from e
        with source:
            return collect_evidence(source, sample_name=sample_name or source.sample_name, **kwargs)
    return collect_evidence(alignments, sample_name=sample_name or "unknown", **kwargs)


def call_structural_variants(
    alignments: AlignmentInput,
    *,
    contig_lengths: Optional[Mapping[str, int]] = None,
    reference_build: str,
    mean_coverage: float,
    mean_insert_size: float,
    insert_size_sd: float,
    mean_read_length: float = 150.0,
    reference_path: Optional[Union[str, Path]] = None,
    config: Optional[SvCallerConfig] = None,
    on_progress: Optional[RunProgressCallback] = None,
    artifact_dir: Optional[Union[str, Path]] = None,
    sample_name: Optional[str] = None,
    classify: Classifier = infer_sv_type,
    ploidy: Optional[Mapping[str, int]] = None,
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
    show_progress: bool = False,
) -> SvAnalysisResult:
    """Call structural variants from one alignment stream.

    Parameters
    ----------
    alignments:
        Path to a BAM/CRAM (CRAM needs ``reference_path``) or any iterable of
        alignment records in file order.
    contig_lengths:
        Contig name -> length in reference order. May be omitted for a
        BAM/CRAM path, in which case the file header is used.
    mean_coverage, mean_insert_size, insert_size_sd, mean_read_length:
        Library statistics from an upstream collaborator.
    on_progress:
        ``on_progress(message, fraction)``; returning ``False`` cancels the
        run at the next progress point.
    artifact_dir:
        When given, write ``<artifact_dir>/sv/`` (depth table, evidence
        summary, VCF with index, metadata JSON).
    classify:
        SV type classifier for intra-chromosomal clusters.
    ploidy:
        Optional contig -> copy number mapping; haploid contigs get GT ``1``.
    show_progress:
        Show a tqdm bar over the alignment records.

    Returns
    -------
    SvAnalysisResult
        PASS calls only; filtered calls are still written to the VCF.

    Raises
    ------
    SvCallerError
        ``PreconditionError`` before any scan, or the first failing phase.
    """
    if contig_lengths is None and isinstance(alignments, (str, Path)):
        try:
            contig_lengths = alignment_contig_lengths(alignments, reference_path=reference_path)
        except (OSError, ValueError) as e:
            raise PreconditionError(f"Cannot read contig lengths from {alignments}: {e}") from e

    check_preconditions(
        contig_lengths=contig_lengths,
        mean_coverage=mean_coverage,
        mean_insert_size=mean_insert_size,
        insert_size_sd=insert_size_sd,
        mean_read_length=mean_read_length,
    )
    if config is None:
        config = SvCallerConfig()

    progress = _Progress(on_progress)
    logger.info(
        "Calling SVs: coverage=%.1fx insert=%.0f±%.0f, %d contigs",
        mean_coverage,
        mean_insert_size,
        insert_size_sd,
        len(contig_lengths),
    )

    evidence = _walk(
        alignments,
        contig_lengths=contig_lengths,
        reference_path=reference_path,
        mean_insert_size=mean_insert_size,
        insert_size_sd=insert_size_sd,
        config=config,
        sample_name=sample_name,
        progress=progress,
        progress_interval=progress_interval,
        show_progress=show_progress,
    )
    if evidence.total_discordant_pairs == 0 and evidence.total_split_reads == 0:
        logger.warning("No discordant pairs or split reads found in %d records.", evidence.records_processed)

    progress("Segmenting read depth...", _WALK_SHARE, phase="segmentation")
    try:
        raw_segments = segment_depth(
            evidence.depth_bins,
            contig_lengths,
            mean_coverage=mean_coverage,
            read_length=mean_read_length,
            config=config,
        )
        segments = merge_nearby_segments(raw_segments, config=config)
    except ValueError as e:
        raise SvCallerError(f"Depth segmentation failed: {e}", phase="segmentation") from e
    logger.info("Depth segmentation: %d segments after merging", len(segments))

    progress("Clustering SV evidence...", _SEGMENT_END, phase="clustering")
    try:
        calls = cluster_evidence(
            evidence,
            segments,
            config=config,
            contig_order=list(contig_lengths),
            classify=classify,
            ploidy=ploidy,
        )
    except ValueError as e:
        raise SvCallerError(f"SV clustering failed: {e}", phase="clustering") from e

    written_dir: Optional[str] = None
    timestamp = datetime.now(timezone.utc)
    if artifact_dir is not None:
        progress("Writing SV artifacts...", _CLUSTER_END, phase="artifacts")
        try:
            artifacts = write_sv_artifacts(
                artifact_dir,
                calls=calls,
                segments=segments,
                evidence=evidence,
                reference_build=reference_build,
                contig_lengths=contig_lengths,
                created_at=timestamp,
            )
        except (OSError, ValueError) as e:
            raise SvCallerError(f"Failed to write SV artifacts: {e}", phase="artifacts") from e
        written_dir = artifacts.outdir

    passed = [c for c in calls if c.is_pass]
    progress.done(f"SV calling complete: {len(passed)} PASS calls.")
    logger.info("SV calling complete: %d calls, %d PASS", len(calls), len(passed))

    return SvAnalysisResult(
        sv_calls=passed,
        total_discordant_pairs=evidence.total_discordant_pairs,
        total_split_reads=evidence.total_split_reads,
        cnv_segments=len(segments),
        analysis_timestamp=timestamp,
        reference_build=reference_build,
        mean_coverage=mean_coverage,
        artifact_dir=written_dir,
    )
