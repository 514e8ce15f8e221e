from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pysam

from .models import CachedSvInfo, DepthSegment, SvCall, SvEvidenceCollection, SvType
from .utils import ensure_outdir, open_textmaybe_gzip, read_json, write_json

logger = logging.getLogger(__name__)

SV_SUBDIR = "sv"
DEPTH_SEGMENTS_TSV = "depth_segments.tsv"
EVIDENCE_SUMMARY_TXT = "evidence_summary.txt"
SV_VCF = "structural_variants.vcf.gz"
SV_METADATA_JSON = "sv_metadata.json"

DEPTH_SEGMENT_COLUMNS = ["chrom", "start", "end", "mean_depth", "log2_ratio", "z_score", "num_bins", "sv_type"]

_ALT_DESCRIPTIONS = {
    SvType.DEL: "Deletion",
    SvType.DUP: "Duplication",
    SvType.INV: "Inversion",
    SvType.INS: "Insertion",
}

_GT = {"0/1": (0, 1), "1/1": (1, 1), "1": (1,), "0": (0,)}


@dataclass(frozen=True)
class SvArtifacts:
    """Paths of the files written for one run, plus the metadata record."""

    outdir: str
    depth_segments: str
    evidence_summary: str
    vcf: str
    vcf_index: str
    metadata: str
    info: CachedSvInfo


def write_depth_segments(path: str | Path, segments: Sequence[DepthSegment]) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        f.write("\t".join(DEPTH_SEGMENT_COLUMNS) + "\n")
        for s in segments:
            f.write(
                f"{s.chrom}\t{s.start}\t{s.end}\t{s.mean_depth:.2f}\t{s.log2_ratio:.3f}\t"
                f"{s.z_score:.2f}\t{s.num_bins}\t{s.sv_type.value}\n"
            )


def read_depth_segments(path: str | Path) -> List[DepthSegment]:
    """Load a depth segment table (plain or gzipped); values carry the written precision."""
    out: List[DepthSegment] = []
    with open_textmaybe_gzip(path) as f:
        header = f.readline().rstrip("\n").split("\t")
        if header != DEPTH_SEGMENT_COLUMNS:
            raise ValueError(f"Unexpected depth segment header in {path}: {header}")
        for line in f:
            line = line.rstrip("\n")
            if not line:
                continue
            chrom, start, end, mean_depth, log2, z, num_bins, sv_type = line.split("\t")
            out.append(
                DepthSegment(
                    chrom=chrom,
                    start=int(start),
                    end=int(end),
                    mean_depth=float(mean_depth),
                    log2_ratio=float(log2),
                    z_score=float(z),
                    num_bins=int(num_bins),
                    sv_type=SvType(sv_type),
                )
            )
    return out


def write_evidence_summary(path: str | Path, evidence: SvEvidenceCollection) -> None:
    by_reason = evidence.pairs_by_reason()
    lines = [
        "## SV EVIDENCE SUMMARY",
        f"Sample: {evidence.sample_name}",
        f"Records processed: {evidence.records_processed}",
        f"Expected insert size: {evidence.expected_insert_size}",
        f"Insert size SD: {evidence.insert_size_sd}",
        "",
        "## DISCORDANT PAIRS",
        f"Total: {evidence.total_discordant_pairs}",
    ]
    for reason, count in by_reason.items():
        lines.append(f"{reason.value}: {count}")
    lines += [
        "",
        "## SPLIT READS",
        f"Total: {evidence.total_split_reads}",
        "",
        "## DEPTH BINS",
    ]
    for contig, bins in evidence.depth_bins.items():
        lines.append(f"{contig}: {int(np.count_nonzero(bins))} / {len(bins)} bins with reads")
    Path(path).write_text("\n".join(lines) + "\n", encoding="utf-8")


def _vcf_header(
    sample_name: str,
    reference_build: str,
    contigs: Mapping[str, Optional[int]],
) -> pysam.VariantHeader:
    header = pysam.VariantHeader()
    header.add_meta("fileDate", datetime.now(timezone.utc).strftime("%Y%m%d"))
    header.add_meta("source", "breakscan")
    header.add_meta("reference", reference_build)
    for name, length in contigs.items():
        if length is None:
            header.contigs.add(name)
        else:
            header.contigs.add(name, length=length)

    header.info.add("SVTYPE", number=1, type="String", description="Type of structural variant")
    header.info.add("SVLEN", number=1, type="Integer", description="Difference in length between REF and ALT alleles")
    header.info.add("END", number=1, type="Integer", description="End position of the variant")
    header.info.add("CIPOS", number=2, type="Integer", description="Confidence interval around POS")
    header.info.add("CIEND", number=2, type="Integer", description="Confidence interval around END")
    header.info.add("PE", number=1, type="Integer", description="Number of paired-end reads supporting the variant")
    header.info.add("SR", number=1, type="Integer", description="Number of split reads supporting the variant")
    header.info.add("RD", number=1, type="Float", description="Relative read depth (observed/expected)")

    for sv_type, description in _ALT_DESCRIPTIONS.items():
        header.add_line(f'##ALT=<ID={sv_type.value},Description="{description}">')

    header.filters.add("LowQual", None, None, "Quality score below threshold")
    header.filters.add("LowSupport", None, None, "Insufficient read support")
    header.filters.add("DepthOnly", None, None, "Read-depth call without a strong enough depth signal")

    header.formats.add("GT", number=1, type="String", description="Genotype")
    header.formats.add("GQ", number=1, type="Integer", description="Genotype Quality")
    header.add_sample(sample_name)
    return header


def _alt_allele(call: SvCall) -> str:
    if call.sv_type is SvType.BND:
        mate_chrom = call.mate_chrom or call.chrom
        mate_pos = call.mate_pos if call.mate_pos is not None else call.end
        return f"N]{mate_chrom}:{mate_pos}]"
    return f"<{call.sv_type.value}>"


def write_sv_vcf(
    path: str | Path,
    calls: Sequence[SvCall],
    *,
    sample_name: str,
    reference_build: str,
    contig_lengths: Mapping[str, int],
) -> str:
    """Write calls as a bgzipped, tabix-indexed VCF; returns the index path.

    ``path`` must end in ``.vcf.gz``. Calls are written in ``contig_lengths``
    order (unknown contigs last, by name), then by start.
    """
    vcf_gz = str(path)
    if not vcf_gz.endswith(".vcf.gz"):
        raise ValueError(f"VCF output must end in .vcf.gz: {vcf_gz}")

    contigs: Dict[str, Optional[int]] = {c: int(n) for c, n in contig_lengths.items()}
    for c in sorted({call.chrom for call in calls} | {call.mate_chrom for call in calls if call.mate_chrom}):
        contigs.setdefault(c, None)
    rank = {c: i for i, c in enumerate(contigs)}
    ordered = sorted(calls, key=lambda c: (rank[c.chrom], c.start))

    header = _vcf_header(sample_name, reference_build, contigs)
    plain = vcf_gz[: -len(".gz")]
    with pysam.VariantFile(plain, "w", header=header) as vcf:
        for call in ordered:
            stop = call.start if call.sv_type is SvType.BND else max(call.end, call.start)
            rec = vcf.new_record(
                contig=call.chrom,
                start=call.start - 1,
                stop=stop,
                alleles=("N", _alt_allele(call)),
                id=call.id,
                qual=round(call.quality, 2),
                filter=call.filter,
            )
            rec.info["SVTYPE"] = call.sv_type.value
            rec.info["SVLEN"] = call.sv_len
            rec.info["CIPOS"] = call.ci_pos
            rec.info["CIEND"] = call.ci_end
            if call.paired_end_support > 0:
                rec.info["PE"] = call.paired_end_support
            if call.split_read_support > 0:
                rec.info["SR"] = call.split_read_support
            if call.relative_depth is not None:
                rec.info["RD"] = call.relative_depth
            rec.samples[sample_name]["GT"] = _GT.get(call.genotype, (0, 1))
            rec.samples[sample_name]["GQ"] = int(call.quality)
            vcf.write(rec)

    pysam.tabix_compress(plain, vcf_gz, force=True)
    pysam.tabix_index(vcf_gz, preset="vcf", force=True)
    os.remove(plain)
    return vcf_gz + ".tbi"


def sv_info_from_calls(
    calls: Sequence[SvCall],
    *,
    vcf_path: str,
    index_path: str,
    reference_build: str,
    created_at: Optional[datetime] = None,
) -> CachedSvInfo:
    """Metadata counts over PASS calls."""
    passed = [c for c in calls if c.is_pass]
    ts = created_at or datetime.now(timezone.utc)

    def count(t: SvType) -> int:
        return sum(1 for c in passed if c.sv_type is t)

    return CachedSvInfo(
        vcf_path=vcf_path,
        index_path=index_path,
        reference_build=reference_build,
        created_at=ts.isoformat(),
        sv_call_count=len(passed),
        deletion_count=count(SvType.DEL),
        duplication_count=count(SvType.DUP),
        inversion_count=count(SvType.INV),
        translocation_count=count(SvType.BND),
        insertion_count=count(SvType.INS),
    )


def load_sv_metadata(path: str | Path) -> CachedSvInfo:
    data = read_json(path)
    known = {f.name for f in fields(CachedSvInfo)}
    return CachedSvInfo(**{k: v for k, v in data.items() if k in known})


def write_sv_artifacts(
    artifact_dir: str | Path,
    *,
    calls: Sequence[SvCall],
    segments: Sequence[DepthSegment],
    evidence: SvEvidenceCollection,
    reference_build: str,
    contig_lengths: Mapping[str, int],
    created_at: Optional[datetime] = None,
) -> SvArtifacts:
    """Write the depth table, evidence summary, VCF (+ index) and metadata under ``<artifact_dir>/sv``.

    The VCF holds every call, filtered ones included; the metadata counts
    PASS calls only.
    """
    outdir = ensure_outdir(Path(artifact_dir) / SV_SUBDIR)

    depth_path = outdir / DEPTH_SEGMENTS_TSV
    write_depth_segments(depth_path, segments)

    summary_path = outdir / EVIDENCE_SUMMARY_TXT
    write_evidence_summary(summary_path, evidence)

    vcf_path = outdir / SV_VCF
    index_path = write_sv_vcf(
        vcf_path,
        calls,
        sample_name=evidence.sample_name,
        reference_build=reference_build,
        contig_lengths=contig_lengths,
    )

    info = sv_info_from_calls(
        calls,
        vcf_path=str(vcf_path),
        index_path=index_path,
        reference_build=reference_build,
        created_at=created_at,
    )
    metadata_path = outdir / SV_METADATA_JSON
    write_json(metadata_path, asdict(info))

    logger.info("Wrote SV artifacts to %s (%d calls, %d PASS)", outdir, len(calls), info.sv_call_count)
    return SvArtifacts(
        outdir=str(outdir),
        depth_segments=str(depth_path),
        evidence_summary=str(summary_path),
        vcf=str(vcf_path),
        vcf_index=index_path,
        metadata=str(metadata_path),
        info=info,
    )
