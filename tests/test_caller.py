import json

import pysam
import pytest

from breakscan.alignments import AlignmentRecord
from breakscan.artifacts import load_sv_metadata, read_depth_segments
from breakscan.caller import MIN_COVERAGE, call_structural_variants
from breakscan.errors import AnalysisCancelled, PreconditionError, SvCallerError
from breakscan.models import SvType
from breakscan.toy_data import (
    TOY_CONTIG,
    TOY_CONTIG_LENGTH,
    TOY_DELETION,
    TOY_INSERT_SD,
    TOY_INSERT_SIZE,
    simulate_deletion,
)

CONTIGS = {TOY_CONTIG: TOY_CONTIG_LENGTH}


@pytest.fixture(scope="module")
def deletion_records():
    return simulate_deletion()


def run(records, **kw):
    params = dict(
        contig_lengths=CONTIGS,
        reference_build="toy",
        mean_coverage=30.0,
        mean_insert_size=TOY_INSERT_SIZE,
        insert_size_sd=TOY_INSERT_SD,
        mean_read_length=150.0,
    )
    params.update(kw)
    return call_structural_variants(records, **params)


def test_heterozygous_deletion_is_called(deletion_records):
    result = run(deletion_records)

    assert len(result.sv_calls) == 1
    call = result.sv_calls[0]
    assert call.sv_type is SvType.DEL
    assert call.is_pass
    assert (call.paired_end_support, call.split_read_support) == (10, 5)

    del_start, del_end = TOY_DELETION
    # breakpoints: last retained base and first base after the deletion
    assert call.start + call.ci_pos[0] <= del_start - 1 <= call.start + call.ci_pos[1]
    assert call.end + call.ci_end[0] <= del_end + 1 <= call.end + call.ci_end[1]
    assert call.sv_len == -(call.end - call.start)
    assert abs(call.start - (del_start - 1)) <= 500
    assert abs(call.end - (del_end + 1)) <= 500

    assert call.relative_depth == pytest.approx(0.5, abs=0.1)
    assert call.confidence > 0.9
    assert result.cnv_segments == 1
    # both mates and both split-read records are counted as evidence
    assert result.total_discordant_pairs == 20
    assert result.total_split_reads == 10
    assert result.analysis_timestamp.tzinfo is not None
    assert result.reference_build == "toy"
    assert result.artifact_dir is None


def test_low_coverage_is_rejected_before_scanning():
    consumed = []

    def records():
        consumed.append(True)
        yield from ()

    with pytest.raises(PreconditionError, match="coverage") as excinfo:
        run(records(), mean_coverage=8.0)
    assert excinfo.value.phase == "precondition"
    assert consumed == []
    assert MIN_COVERAGE == 10.0


def test_missing_contig_lengths_rejected():
    with pytest.raises(PreconditionError):
        run([], contig_lengths={})


def test_single_pair_gives_no_calls():
    common = dict(query_name="lonely", reference_name=TOY_CONTIG, cigartuples=[(0, 150)], is_paired=True)
    records = [
        AlignmentRecord(
            reference_start=99_649,
            mate_is_reverse=True,
            next_reference_name=TOY_CONTIG,
            next_reference_start=150_059,
            template_length=50_560,
            **common,
        ),
        AlignmentRecord(
            reference_start=150_059,
            is_reverse=True,
            next_reference_name=TOY_CONTIG,
            next_reference_start=99_649,
            template_length=-50_560,
            **common,
        ),
    ]
    result = run(records)
    assert result.sv_calls == []
    assert result.total_discordant_pairs == 2


def test_empty_stream_is_not_an_error():
    result = run([])
    assert result.sv_calls == []
    assert result.cnv_segments == 0


def test_progress_is_monotonic_and_sliced(deletion_records):
    seen = []
    run(deletion_records, on_progress=lambda msg, frac: seen.append((msg, frac)), progress_interval=50_000)
    fractions = [f for _, f in seen]
    assert fractions == sorted(fractions)
    assert fractions[0] == 0.0
    assert fractions[-1] == 1.0
    segmenting = next(i for i, (m, _) in enumerate(seen) if m.startswith("Segmenting"))
    walker = fractions[:segmenting]
    assert len(walker) >= 3 and max(walker) < 0.6
    assert any(m.startswith("Segmenting") and f == pytest.approx(0.6) for m, f in seen)
    assert any(m.startswith("Clustering") and f == pytest.approx(0.75) for m, f in seen)


def test_cancel_during_evidence_collection(deletion_records):
    with pytest.raises(AnalysisCancelled) as excinfo:
        run(deletion_records, on_progress=lambda msg, frac: frac == 0.0, progress_interval=50_000)
    assert excinfo.value.phase == "evidence"


def test_cancel_before_clustering():
    with pytest.raises(AnalysisCancelled) as excinfo:
        run([], on_progress=lambda msg, frac: not msg.startswith("Clustering"))
    assert excinfo.value.phase == "clustering"


def test_stream_failure_surfaces_as_single_error():
    def broken():
        yield AlignmentRecord(query_name="r", reference_name=TOY_CONTIG, reference_start=0, cigartuples=[(0, 150)])
        raise ValueError("corrupt record")

    with pytest.raises(SvCallerError, match="corrupt record") as excinfo:
        run(broken())
    assert excinfo.value.phase == "evidence"


def test_missing_bam_is_an_evidence_error(tmp_path):
    with pytest.raises(SvCallerError) as excinfo:
        run(str(tmp_path / "missing.bam"))
    assert excinfo.value.phase == "evidence"


def test_artifacts_written(deletion_records, tmp_path):
    result = run(deletion_records, artifact_dir=tmp_path, sample_name="NA00001")
    outdir = tmp_path / "sv"
    assert result.artifact_dir == str(outdir)

    segs = read_depth_segments(outdir / "depth_segments.tsv")
    assert [(s.start, s.end, s.sv_type) for s in segs] == [(100_000, 150_000, SvType.DEL)]

    summary = (outdir / "evidence_summary.txt").read_text()
    assert "Sample: NA00001" in summary
    assert "InsertSizeOutlier: 20" in summary
    assert f"{TOY_CONTIG}: 1000 / 1000 bins with reads" in summary

    vcf_path = outdir / "structural_variants.vcf.gz"
    assert (outdir / "structural_variants.vcf.gz.tbi").exists()
    assert not (outdir / "structural_variants.vcf").exists()
    with pysam.VariantFile(str(vcf_path)) as vcf:
        assert list(vcf.header.samples) == ["NA00001"]
        records = list(vcf)
    assert len(records) == 1
    rec = records[0]
    call = result.sv_calls[0]
    assert rec.id == call.id
    assert rec.pos == call.start
    assert rec.stop == call.end
    assert rec.alts == ("<DEL>",)
    assert rec.info["SVTYPE"] == "DEL"
    assert rec.info["SVLEN"] == call.sv_len
    assert tuple(rec.info["CIPOS"]) == call.ci_pos
    assert rec.info["PE"] == 10 and rec.info["SR"] == 5
    assert list(rec.filter.keys()) == ["PASS"]
    assert rec.samples["NA00001"]["GT"] == (0, 1)

    info = load_sv_metadata(outdir / "sv_metadata.json")
    assert info.sv_call_count == 1
    assert info.deletion_count == 1
    assert info.reference_build == "toy"
    assert info.index_path.endswith(".tbi")
    raw = json.loads((outdir / "sv_metadata.json").read_text())
    assert raw["vcf_path"] == str(vcf_path)
