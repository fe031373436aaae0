from megamap.models import AlignmentRecord, ContactRecord
from megamap.records import count_positions, map_contacts, map_loci


def rec(qname, chrom, ip, mate_chrom, mp, *, mapq=60, mate_mapq=60, rt=2):
    return AlignmentRecord(
        qname=qname,
        chrom=chrom,
        pos=ip,
        mapq=mapq,
        mate_chrom=mate_chrom,
        ip=ip,
        mp=mp,
        mate_mapq=mate_mapq,
        read_type=rt,
    )


def test_intra_pair_emitted_once_by_smaller_position():
    records = [rec("a", "chr1", 100, "chr1", 500), rec("a", "chr1", 500, "chr1", 100)]
    res = map_contacts("chr1", 1, records)
    assert res.primary == [ContactRecord(0, "chr1", 100, 0, 0, "chr1", 500, 1)]
    assert res.side == []
    assert res.stats["skipped_mate_owned"] == 1


def test_self_ligation_folded_by_read_name():
    records = [rec("s", "chr1", 100, "chr1", 100), rec("s", "chr1", 100, "chr1", 100)]
    res = map_contacts("chr1", 1, records)
    assert res.primary == [ContactRecord(0, "chr1", 100, 0, 0, "chr1", 100, 1)]
    assert res.stats["self_ligation"] == 1


def test_self_ligation_keeps_position_of_last_record_with_that_name():
    records = [
        rec("s", "chr1", 100, "chr1", 100),
        rec("t", "chr1", 150, "chr1", 150),
        rec("s", "chr1", 200, "chr1", 200),
    ]
    res = map_contacts("chr1", 1, records)
    assert res.primary == [
        ContactRecord(0, "chr1", 200, 0, 0, "chr1", 200, 1),
        ContactRecord(0, "chr1", 150, 0, 0, "chr1", 150, 1),
    ]
    assert res.stats["self_ligation"] == 2


def test_self_ligations_emitted_after_stream_in_first_seen_order():
    records = [
        rec("s2", "chr1", 50, "chr1", 50),
        rec("p", "chr1", 60, "chr1", 90),
        rec("s1", "chr1", 70, "chr1", 70),
        rec("s2", "chr1", 50, "chr1", 50),
    ]
    res = map_contacts("chr1", 1, records)
    assert [r.to_line() for r in res.primary] == [
        "0 chr1 60 0 0 chr1 90 1",
        "0 chr1 50 0 0 chr1 50 1",
        "0 chr1 70 0 0 chr1 70 1",
    ]


def test_cross_chromosome_owned_by_first_chromosome():
    on_chr1 = map_contacts("chr1", 1, [rec("x", "chr1", 10, "chr2", 20)])
    on_chr2 = map_contacts("chr2", 1, [rec("x", "chr2", 20, "chr1", 10)])
    assert on_chr1.primary == []
    assert on_chr1.side == [ContactRecord(0, "chr1", 10, 0, 0, "chr2", 20, 1)]
    assert on_chr2.side == [] and on_chr2.primary == []


def test_mapq_filters_apply_to_both_mates():
    records = [
        rec("lo", "chr1", 10, "chr1", 20, mapq=10),
        rec("mate_lo", "chr1", 30, "chr1", 40, mate_mapq=10),
        rec("ok", "chr1", 50, "chr1", 60, mapq=30, mate_mapq=30),
    ]
    res = map_contacts("chr1", 30, records)
    assert [r.pos1 for r in res.primary] == [50]
    assert res.stats["skipped_mapq"] == 2


def test_malformed_and_unmapped_mates_are_skipped_not_fatal():
    broken = AlignmentRecord(qname="b", chrom="chr1", pos=5, mapq=60, mate_chrom="chr1", ip=5, mp=None, mate_mapq=60)
    records = [broken, rec("u", "chr1", 10, None, 10), rec("ok", "chr1", 1, "chr1", 2)]
    res = map_contacts("chr1", 1, records)
    assert len(res.primary) == 1
    assert res.stats["malformed"] == 1
    assert res.stats["skipped_mate_unmapped"] == 1


def test_read_type_filter():
    res = map_contacts("chr1", 1, [rec("a", "chr1", 1, "chr1", 2, rt=0)], read_types={2, 3})
    assert res.primary == []
    assert res.stats["skipped_read_type"] == 1


def test_count_positions_sorted_bedgraph_intervals():
    out = count_positions("chr1", [30, 10, 30, 20, 30])
    assert [(r.start, r.end, r.count) for r in out] == [(9, 10, 1), (19, 20, 1), (29, 30, 3)]
    assert count_positions("chr1", []) == []


def test_map_loci_filters_mapq_and_read_type():
    records = [
        rec("a", "chr1", 100, "chr1", 200, rt=2),
        rec("b", "chr1", 100, "chr1", 300, rt=0),
        rec("c", "chr1", 100, "chr1", 300, rt=3, mapq=5),
        rec("d", "chr1", 150, "chr1", 300, rt=3),
    ]
    out = map_loci("chr1", 10, records, read_types={2, 3, 4, 5})
    assert [r.to_bedgraph() for r in out] == ["chr1\t99\t100\t1", "chr1\t149\t150\t1"]
