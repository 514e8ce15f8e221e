from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Mapping

import pysam

from .alignments import AlignmentRecord
from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"
TOY_CONTIG_LENGTH = 1_000_000
TOY_READ_LENGTH = 150
TOY_INSERT_SIZE = 400.0
TOY_INSERT_SD = 50.0
TOY_SAMPLE = "TOY"

# 1-based, inclusive
TOY_DELETION = (100_001, 150_000)

_QUERY_CONSUMING = {0, 1, 4, 7, 8}  # M, I, S, =, X


def _background(contig: str, contig_length: int, deletion: tuple, read_step: int, read_length: int) -> List[AlignmentRecord]:
    del_start, del_end = deletion
    reads: List[AlignmentRecord] = []
    for pos in range(1, contig_length - read_length + 2, read_step):
        k = (pos - 1) // read_step
        # heterozygous: half the reads starting inside the deletion survive
        if del_start <= pos <= del_end and k % 2:
            continue
        reads.append(
            AlignmentRecord(
                query_name=f"bg_{k}",
                reference_name=contig,
                reference_start=pos - 1,
                cigartuples=[(0, read_length)],
            )
        )
    return reads


def _discordant_pairs(contig: str, deletion: tuple, n_pairs: int, read_length: int) -> List[AlignmentRecord]:
    del_start, del_end = deletion
    reads: List[AlignmentRecord] = []
    for i in range(n_pairs):
        left0 = del_start - 352 + 25 * i
        right0 = del_end + 59 + 20 * i
        tlen = right0 + read_length - left0
        name = f"del_pair_{i}"
        common = dict(query_name=name, reference_name=contig, cigartuples=[(0, read_length)], is_paired=True)
        reads.append(
            AlignmentRecord(
                reference_start=left0,
                is_reverse=False,
                mate_is_reverse=True,
                next_reference_name=contig,
                next_reference_start=right0,
                template_length=tlen,
                **common,
            )
        )
        reads.append(
            AlignmentRecord(
                reference_start=right0,
                is_reverse=True,
                mate_is_reverse=False,
                next_reference_name=contig,
                next_reference_start=left0,
                template_length=-tlen,
                **common,
            )
        )
    return reads


def _split_reads(contig: str, deletion: tuple, n_split: int) -> List[AlignmentRecord]:
    del_start, del_end = deletion
    reads: List[AlignmentRecord] = []
    for i in range(n_split):
        name = f"del_split_{i}"
        # 100 bases end at the last retained base before the deletion; 50 resume after it
        reads.append(
            AlignmentRecord(
                query_name=name,
                reference_name=contig,
                reference_start=del_start - 101,
                cigartuples=[(0, 100), (4, 50)],
                tags={"SA": f"{contig},{del_end + 1},+,100S50M,60,0;"},
            )
        )
        reads.append(
            AlignmentRecord(
                query_name=name,
                reference_name=contig,
                reference_start=del_end,
                cigartuples=[(5, 100), (0, 50)],
                is_supplementary=True,
                tags={"SA": f"{contig},{del_start - 100},+,100M50S,60,0;"},
            )
        )
    return reads


def simulate_deletion(
    *,
    contig: str = TOY_CONTIG,
    contig_length: int = TOY_CONTIG_LENGTH,
    deletion: tuple = TOY_DELETION,
    read_step: int = 5,
    read_length: int = TOY_READ_LENGTH,
    n_pairs: int = 10,
    n_split_reads: int = 5,
) -> List[AlignmentRecord]:
    """Synthetic single-contig alignments carrying one heterozygous deletion.

    Unpaired background reads start every ``read_step`` bp (30x at the
    defaults); inside ``deletion`` every other one is dropped. The deletion
    is supported by ``n_pairs`` long-insert FR pairs spanning it and by
    ``n_split_reads`` reads split exactly at its edges (primary plus
    supplementary record each). Records are returned sorted by position.
    """
    if read_step <= 0 or read_length <= 0:
        raise ValueError("read_step and read_length must be > 0")
    del_start, del_end = deletion
    if not (read_length + 400 < del_start <= del_end < contig_length - 1000):
        raise ValueError(f"Deletion {deletion} does not fit on a {contig_length} bp contig")

    records = _background(contig, contig_length, deletion, read_step, read_length)
    records += _discordant_pairs(contig, deletion, n_pairs, read_length)
    records += _split_reads(contig, deletion, n_split_reads)
    records.sort(key=lambda r: r.reference_start)
    return records


def _query_length(cigartuples) -> int:
    return sum(length for op, length in cigartuples if op in _QUERY_CONSUMING)


def _to_segment(rec: AlignmentRecord, header: pysam.AlignmentHeader, read_group: str) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment(header)
    a.query_name = rec.query_name
    a.flag = 0
    a.is_paired = rec.is_paired
    a.is_reverse = rec.is_reverse
    a.is_secondary = rec.is_secondary
    a.is_supplementary = rec.is_supplementary
    a.reference_name = rec.reference_name
    a.reference_start = rec.reference_start
    a.mapping_quality = rec.mapping_quality
    a.cigartuples = rec.cigartuples
    qlen = _query_length(rec.cigartuples or [])
    a.query_sequence = "A" * qlen
    a.query_qualities = pysam.qualitystring_to_array("I" * qlen)
    if rec.is_paired:
        a.mate_is_reverse = rec.mate_is_reverse
        a.mate_is_unmapped = rec.mate_is_unmapped
        a.next_reference_name = rec.next_reference_name
        a.next_reference_start = rec.next_reference_start
        a.template_length = rec.template_length
    else:
        a.next_reference_id = -1
        a.next_reference_start = -1
    for tag, value in rec.tags.items():
        a.set_tag(tag, value)
    a.set_tag("RG", read_group)
    return a


def write_toy_bam(
    records: Iterable[AlignmentRecord],
    path: str | Path,
    *,
    contig_lengths: Mapping[str, int],
    sample_name: str = TOY_SAMPLE,
) -> str:
    """Write records to a coordinate-sorted, indexed BAM with one read group."""
    read_group = "rg1"
    header = pysam.AlignmentHeader.from_dict(
        {
            "HD": {"VN": "1.6", "SO": "coordinate"},
            "SQ": [{"SN": name, "LN": int(length)} for name, length in contig_lengths.items()],
            "RG": [{"ID": read_group, "SM": sample_name, "PL": "ILLUMINA"}],
        }
    )
    order = {name: i for i, name in enumerate(contig_lengths)}
    ordered = sorted(records, key=lambda r: (order[r.reference_name], r.reference_start))

    bam_path = str(path)
    with pysam.AlignmentFile(bam_path, "wb", header=header) as bam:
        for rec in ordered:
            bam.write(_to_segment(rec, header, read_group))
    pysam.index(bam_path)
    return bam_path


def make_toy_data(*, outdir: str | Path, read_step: int = 10) -> Dict[str, object]:
    """Create a small deletion BAM suitable for quick demos/tests.

    Writes ``toy_deletion.bam`` (+ ``.bai``) and ``toy_summary.json`` with the
    library parameters to call it with. ``mean_coverage`` in the summary is
    the background coverage implied by ``read_step``.
    """
    outdir_p = ensure_outdir(outdir)
    contig_lengths = {TOY_CONTIG: TOY_CONTIG_LENGTH}
    records = simulate_deletion(read_step=read_step)
    bam_path = write_toy_bam(records, outdir_p / "toy_deletion.bam", contig_lengths=contig_lengths)

    summary: Dict[str, object] = {
        "bam": bam_path,
        "contig_lengths": contig_lengths,
        "sample_name": TOY_SAMPLE,
        "mean_coverage": TOY_READ_LENGTH / read_step,
        "mean_insert_size": TOY_INSERT_SIZE,
        "insert_size_sd": TOY_INSERT_SD,
        "mean_read_length": float(TOY_READ_LENGTH),
        "deletion": {"chrom": TOY_CONTIG, "start": TOY_DELETION[0], "end": TOY_DELETION[1]},
        "outdir": str(outdir_p),
    }
    write_json(outdir_p / "toy_summary.json", summary)
    return summary
