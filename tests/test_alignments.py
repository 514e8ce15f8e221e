import pytest

from breakscan.alignments import (
    AlignmentRecord,
    clip_length,
    parse_cigar_string,
    parse_sa_tag,
    reference_length,
)


def test_parse_cigar_string():
    assert parse_cigar_string("100M50S") == [(0, 100), (4, 50)]
    assert parse_cigar_string("5H20M3D10M") == [(5, 5), (0, 20), (2, 3), (0, 10)]
    assert parse_cigar_string("*") is None
    assert parse_cigar_string("10Q") is None
    assert parse_cigar_string("M10") is None


def test_reference_and_clip_lengths():
    cigar = [(4, 20), (0, 50), (2, 5), (1, 3), (0, 40), (5, 10)]
    assert reference_length(cigar) == 95
    assert clip_length(cigar) == 30
    assert clip_length(None) == 0


def test_parse_sa_tag_first_entry():
    sa = parse_sa_tag("chr2,5001,-,40S60M,35,2;chr3,100,+,60M40S,10,0;")
    assert sa is not None
    assert (sa.chrom, sa.pos, sa.strand, sa.mapping_quality, sa.edit_distance) == ("chr2", 5001, "-", 35, 2)
    assert sa.end == 5060


@pytest.mark.parametrize(
    "tag",
    [
        "",
        "chr2,5001,-,40S60M",
        "chr2,abc,-,40S60M,35,2;",
        "chr2,5001,x,40S60M,35,2;",
        "chr2,5001,+,garbage,35,2;",
        "chr2,0,+,60M,35,2;",
    ],
)
def test_parse_sa_tag_malformed(tag):
    assert parse_sa_tag(tag) is None


def test_alignment_record_surface():
    rec = AlignmentRecord(
        query_name="r1",
        reference_name="chr1",
        reference_start=99,
        cigartuples=[(0, 100), (4, 50)],
        tags={"SA": "chr1,5000,+,100S50M,60,0;"},
    )
    assert rec.reference_end == 199
    assert rec.has_tag("SA")
    assert not rec.has_tag("MQ")
    with pytest.raises(KeyError):
        rec.get_tag("MQ")
    unmapped = AlignmentRecord(query_name="u", reference_name=None, reference_start=-1, cigartuples=None, is_unmapped=True)
    assert unmapped.reference_end is None
