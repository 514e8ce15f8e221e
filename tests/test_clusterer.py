import dataclasses

import pytest

from breakscan.config import SvCallerConfig
from breakscan.clusterer import (
    build_breakpoint_clusters,
    cluster_evidence,
    cluster_positions,
    infer_sv_type,
    _Member,
)
from breakscan.models import (
    BreakpointCluster,
    DepthSegment,
    DiscordantPair,
    DiscordantReason,
    SplitRead,
    SvEvidenceCollection,
    SvType,
)

CFG = SvCallerConfig()


def pair(name, pos1, pos2, *, s1="+", s2="-", chrom2="chr1", insert=None, reason=None, mapq=60):
    inter = chrom2 != "chr1"
    if reason is None:
        reason = DiscordantReason.INTER_CHROMOSOMAL if inter else DiscordantReason.INSERT_SIZE_OUTLIER
    return DiscordantPair(
        read_name=name,
        chrom1="chr1",
        pos1=pos1,
        strand1=s1,
        chrom2=chrom2,
        pos2=pos2,
        strand2=s2,
        insert_size=0 if inter else (insert if insert is not None else abs(pos2 - pos1) + 150),
        map_q=mapq,
        reason=reason,
    )


def split(name, primary_pos, primary_end, supp_pos, supp_end, *, supp_chrom="chr1", s1="+", s2="+"):
    return SplitRead(name, "chr1", primary_pos, s1, supp_chrom, supp_pos, s2, 50, 60, primary_end, supp_end)


def evidence(pairs=(), splits=()):
    return SvEvidenceCollection(
        discordant_pairs=list(pairs),
        split_reads=list(splits),
        depth_bins={},
        sample_name="S",
        expected_insert_size=400.0,
        insert_size_sd=50.0,
    )


def deletion_pairs(n=5, left=10_000, right=20_000):
    return [pair(f"p{i}", left + 20 * i, right + 10 * i) for i in range(n)]


def test_cluster_positions_merges_adjacent_buckets_within_distance():
    members = [_Member(490, 0), _Member(510, 0), _Member(700, 0)]
    groups = cluster_positions(members, 500)
    assert [[m.anchor for m in g] for g in groups] == [[490, 510, 700]]

    members = [_Member(10, 0), _Member(990, 0)]
    assert len(cluster_positions(members, 500)) == 2

    members = [_Member(100, 0), _Member(2600, 0)]
    assert len(cluster_positions(members, 500)) == 2


def test_deletion_pairs_form_one_cluster_with_end_breakpoint():
    clusters = build_breakpoint_clusters(evidence(deletion_pairs()), max_distance=500)
    assert len(clusters) == 1
    c = clusters[0]
    assert c.position == 10_040
    assert (c.ci_low, c.ci_high) == (-40, 40)
    assert c.end_position == 20_020
    assert (c.end_ci_low, c.end_ci_high) == (-20, 20)
    assert c.mate_chrom is None


def test_mates_of_one_pair_count_once():
    p = pair("dup_name", 10_000, 20_000)
    mate = DiscordantPair("dup_name", "chr1", 20_000, "-", "chr1", 10_000, "+", 10_150, 60, p.reason)
    clusters = build_breakpoint_clusters(evidence([p, mate, pair("other", 10_050, 20_050)]), max_distance=500)
    assert len(clusters) == 1
    assert clusters[0].pe_support == 2


def test_split_read_anchors_on_upstream_segment_end():
    sr = split("s1", 9_901, 10_000, 20_001, 20_050)
    # the supplementary record of the same read points back upstream
    sr_supp = SplitRead("s1", "chr1", 20_001, "+", "chr1", 9_901, "+", 100, 60, 20_050, 10_000)
    clusters = build_breakpoint_clusters(evidence(splits=[sr, sr_supp]), max_distance=500)
    assert len(clusters) == 1
    assert (clusters[0].position, clusters[0].end_position) == (10_000, 20_001)
    assert clusters[0].sr_support == 1


def test_deletion_call():
    calls = cluster_evidence(evidence(deletion_pairs(), [split("s1", 9_901, 10_100, 20_001, 20_050)]), [], config=CFG)
    assert len(calls) == 1
    c = calls[0]
    assert c.sv_type is SvType.DEL
    assert c.filter == "PASS"
    assert c.sv_len < 0
    assert c.end == c.start - c.sv_len
    assert c.id == f"DEL_chr1_{c.start}_1"
    assert (c.paired_end_support, c.split_read_support) == (5, 1)
    assert c.quality == pytest.approx(min(6 * 5 + 60 * 0.5, 99))
    assert c.ci_pos[0] <= 0 <= c.ci_pos[1]
    assert c.genotype == "0/1"


def test_long_everted_pairs_call_duplication():
    pairs = [pair(f"d{i}", 30_000 + 10 * i, 35_000 + 10 * i, s1="-", s2="+", insert=5150) for i in range(5)]
    calls = cluster_evidence(evidence(pairs), [], config=CFG)
    assert len(calls) == 1
    c = calls[0]
    assert c.sv_type is SvType.DUP
    assert c.sv_len > 0
    assert c.id.startswith("DUP_chr1_")
    assert c.filter == "PASS"


def test_support_gate():
    assert cluster_evidence(evidence(deletion_pairs(n=1)), [], config=CFG) == []
    # two pairs, no split read, total below min_total_support
    assert cluster_evidence(evidence(deletion_pairs(n=2)), [], config=CFG) == []
    assert len(cluster_evidence(evidence(deletion_pairs(n=3)), [], config=CFG)) == 1


def test_low_quality_filter():
    cfg = SvCallerConfig(min_quality=90.0)
    calls = cluster_evidence(evidence(deletion_pairs(n=3)), [], config=cfg)
    assert [c.filter for c in calls] == ["LowQual"]


def test_classifier_rules():
    def cluster(pairs=(), splits=()):
        return BreakpointCluster("chr1", 1000, 0, 0, tuple(pairs), tuple(splits))

    inv = [pair(f"i{i}", 1000, 9000, s2="+") for i in range(3)]
    assert infer_sv_type(cluster(inv), 400.0) is SvType.INV

    assert infer_sv_type(cluster(deletion_pairs()), 400.0) is SvType.DEL

    small = [pair(f"s{i}", 1000, 1050, insert=120) for i in range(3)]
    assert infer_sv_type(cluster(small), 400.0) is SvType.DUP

    everted = [
        pair(f"e{i}", 1000, 1250, s1="-", s2="+", insert=400, reason=DiscordantReason.WRONG_ORIENTATION)
        for i in range(3)
    ]
    assert infer_sv_type(cluster(everted), 400.0) is SvType.DUP

    # tandem duplication: RF pairs spanning far, tagged as insert size outliers
    tandem = [pair(f"t{i}", 1000 + 10 * i, 6000 + 10 * i, s1="-", s2="+", insert=5150) for i in range(5)]
    assert all(p.reason is DiscordantReason.INSERT_SIZE_OUTLIER for p in tandem)
    assert infer_sv_type(cluster(tandem), 400.0) is SvType.DUP

    opposite = [split("x", 1000, 1100, 5000, 5050, s2="-")]
    assert infer_sv_type(cluster(splits=opposite), 400.0) is SvType.INV
    same = [split("y", 1000, 1100, 5000, 5050)]
    assert infer_sv_type(cluster(splits=same), 400.0) is SvType.DEL


def test_inter_chromosomal_pairs_become_breakends():
    pairs = [pair(f"t{i}", 50_000 + 10 * i, 7_000 + 10 * i, chrom2="chr2") for i in range(4)]
    calls = cluster_evidence(evidence(pairs), [], config=CFG, contig_order=["chr1", "chr2"])
    assert len(calls) == 1
    c = calls[0]
    assert c.sv_type is SvType.BND
    assert (c.chrom, c.mate_chrom) == ("chr1", "chr2")
    assert c.mate_pos == 7_015
    assert c.end == c.start
    assert c.sv_len == 0


def test_breakend_anchor_uses_contig_order():
    pairs = [pair(f"t{i}", 50_000 + 10 * i, 7_000, chrom2="chr2") for i in range(4)]
    calls = cluster_evidence(evidence(pairs), [], config=CFG, contig_order=["chr2", "chr1"])
    assert (calls[0].chrom, calls[0].start, calls[0].mate_chrom) == ("chr2", 7_000, "chr1")


def test_injected_classifier():
    calls = cluster_evidence(
        evidence(deletion_pairs()), [], config=CFG, classify=lambda cluster, expected: SvType.INS
    )
    assert calls[0].sv_type is SvType.INS
    assert calls[0].sv_len > 0


def test_haploid_contig_genotype():
    calls = cluster_evidence(evidence(deletion_pairs()), [], config=CFG, ploidy={"chr1": 1})
    assert calls[0].genotype == "1"


def test_depth_segment_attached_to_overlapping_call():
    seg = DepthSegment("chr1", 10_000, 20_000, 50.0, -1.0, -5.5, 10, SvType.DEL)
    calls = cluster_evidence(evidence(deletion_pairs()), [seg], config=CFG)
    assert len(calls) == 1
    assert calls[0].relative_depth == pytest.approx(0.5)
    # PE 5/10 * 0.3 + depth 1.0 * 0.3
    assert calls[0].confidence == pytest.approx(0.45)


def test_unused_depth_segments_become_depth_only_calls():
    dup = DepthSegment("chr1", 100_000, 120_000, 200.0, 1.0, 6.0, 20, SvType.DUP)
    wrong_type = DepthSegment("chr1", 10_000, 20_000, 200.0, 1.0, 6.0, 10, SvType.DUP)
    calls = cluster_evidence(evidence(deletion_pairs()), [wrong_type, dup], config=CFG)
    assert [c.sv_type for c in calls] == [SvType.DUP, SvType.DEL, SvType.DUP]
    assert calls[1].relative_depth is None
    depth_only = [c for c in calls if c.id.startswith("CNV_")]
    assert [c.start for c in depth_only] == [10_001, 100_001]
    assert all(c.paired_end_support == 0 for c in depth_only)


def test_calls_sorted_by_contig_order_then_start():
    chr2_pairs = [
        DiscordantPair(f"q{i}", "chr2", 5_000 + i, "+", "chr2", 9_000, "-", 4_150, 60, DiscordantReason.INSERT_SIZE_OUTLIER)
        for i in range(3)
    ]
    late = deletion_pairs(left=80_000, right=90_000)
    late = [dataclasses.replace(p, read_name="l" + p.read_name) for p in late]
    ev = evidence(chr2_pairs + late + deletion_pairs())
    calls = cluster_evidence(ev, [], config=CFG, contig_order=["chr1", "chr2"])
    assert [(c.chrom, c.start // 1000) for c in calls] == [("chr1", 10), ("chr1", 80), ("chr2", 5)]
