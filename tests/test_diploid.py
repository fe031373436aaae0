import pytest

from megamap.diploid import (
    diploid_chrom_sizes,
    map_diploid_contacts,
    map_diploid_loci,
    split_homolog,
    split_homolog_bedgraph,
)
from megamap.models import AlignmentRecord, ContactRecord, LocusCountRecord, ReadHomologAssignment


def rec(qname, ip, mate_chrom="chr1", mp=1, *, chrom="chr1", rt=2):
    return AlignmentRecord(
        qname=qname, chrom=chrom, pos=ip, mapq=0, mate_chrom=mate_chrom, ip=ip, mp=mp, mate_mapq=0, read_type=rt
    )


@pytest.fixture
def assignment():
    return ReadHomologAssignment(
        labels={"chr1": {"a": "chr1-r", "b": "chr1-a", "c": "chr1-r", "x": "chr1-a"}},
        read_types={"chr1": {"a": {2}, "b": {3}, "c": {2}, "x": {2}}},
    )


def test_contacts_pair_two_records_by_name_smaller_position_first(assignment):
    records = [
        rec("a", 500, mp=100),
        rec("a", 100, mp=500),
        rec("b", 300, mp=700),
        rec("b", 700, mp=300),
        rec("unassigned", 10, mp=20),
        rec("unassigned", 20, mp=10),
    ]
    out = map_diploid_contacts("chr1", records, assignment)
    assert [r.to_line() for r in out] == [
        "0 chr1-a 300 0 1 chr1-a 700 1",
        "0 chr1-r 100 0 1 chr1-r 500 1",
    ]


def test_contacts_drop_inter_chromosomal_and_incomplete_names(assignment):
    records = [
        rec("a", 100, mate_chrom="chr2", mp=50),
        rec("a", 200, mp=100),
        rec("c", 150, mate_chrom=None),
        rec("x", 10),
        rec("x", 20),
        rec("x", 30),
    ]
    assert map_diploid_contacts("chr1", records, assignment) == []


def test_loci_corrected_requires_partner_read_type(assignment):
    records = [
        rec("a", 100, rt=3),
        rec("a", 100, rt=2),
        rec("b", 200, rt=2),
        rec("unassigned", 100, rt=3),
    ]
    raw, corrected = map_diploid_loci("chr1", records, assignment)
    assert [r.to_bedgraph() for r in raw] == [
        "chr1-a\t199\t200\t1",
        "chr1-r\t99\t100\t2",
    ]
    assert [r.to_bedgraph() for r in corrected] == [
        "chr1-a\t199\t200\t1",
        "chr1-r\t99\t100\t1",
    ]


def test_loci_read_type_filter(assignment):
    raw, _ = map_diploid_loci("chr1", [rec("a", 100, rt=0)], assignment, read_types={2, 3, 4, 5})
    assert raw == []


def test_split_homolog_strips_suffix_and_keeps_one_homolog():
    records = [
        ContactRecord(0, "chr1-r", 10, 0, 1, "chr1-r", 20, 1),
        ContactRecord(0, "chr1-a", 30, 0, 1, "chr1-a", 40, 1),
    ]
    assert list(split_homolog(records, "-a")) == [ContactRecord(0, "chr1", 30, 0, 1, "chr1", 40, 1)]
    with pytest.raises(ValueError):
        list(split_homolog(records, "-x"))

    tracks = [LocusCountRecord("chr1-r", 9, 10, 2), LocusCountRecord("chr1-a", 9, 10, 1)]
    assert list(split_homolog_bedgraph(tracks, "-r")) == [LocusCountRecord("chr1", 9, 10, 2)]


def test_diploid_chrom_sizes_interleaves_homologs():
    assert diploid_chrom_sizes([("chr1", 100), ("chrX", 50)]) == [
        ("chr1-r", 100),
        ("chr1-a", 100),
        ("chrX-r", 50),
        ("chrX-a", 50),
    ]
