import pysam
import pytest

from megamap.alignments import (
    detect_platform,
    extra_contigs,
    iter_records,
    junction_read_types,
    merge_headers,
    normalize_platform,
    prepare_alignments,
)
from megamap.toy_data import make_toy_data


def test_platform_aliases_and_read_types():
    assert normalize_platform("ilm") == "ILLUMINA"
    assert normalize_platform("LS454") == "454"
    assert junction_read_types("ILLUMINA") == {2, 3, 4, 5}
    assert junction_read_types("454") == {0, 1}
    with pytest.raises(ValueError):
        junction_read_types("PACBIO")


def test_detect_platform_from_read_group(tmp_path):
    toy = make_toy_data(outdir=tmp_path / "ilm", platform="ILM")
    assert detect_platform(toy["bams"][0]) == "ILLUMINA"

    toy454 = make_toy_data(outdir=tmp_path / "454", platform="LS454")
    assert detect_platform(toy454["bams"][0]) == "454"


def test_detect_platform_rejects_mixed(tmp_path):
    toy = make_toy_data(outdir=tmp_path / "a")
    other = make_toy_data(outdir=tmp_path / "b", platform="454")
    out = tmp_path / "mixed.bam"
    prepare_alignments(bam_paths=[toy["bams"][0], other["bams"][1]], out_bam=out, progress=False)
    with pytest.raises(ValueError, match="mixed"):
        detect_platform(out)


def test_extra_contigs_and_merged_header(tmp_path):
    toy = make_toy_data(outdir=tmp_path)
    assert extra_contigs(toy["bams"][0], ["chr1", "chr2"]) == ["chrUn"]
    header = merge_headers(toy["bams"])
    assert [sq["SN"] for sq in header["SQ"]] == ["chr1", "chr2", "chrUn"]
    assert sorted(rg["ID"] for rg in header["RG"]) == ["exp1", "exp2"]


def test_prepare_alignments_drops_duplicates_and_mapq_zero(tmp_path):
    toy = make_toy_data(outdir=tmp_path / "toy")
    out = tmp_path / "work" / "sorted.bam"
    res = prepare_alignments(bam_paths=toy["bams"], out_bam=out, progress=False)

    counts = res["counts"]
    assert counts["records_total"] == 38
    assert counts["records_kept"] == 34
    assert counts["skipped_duplicate"] == 2
    assert counts["skipped_mapq"] == 2
    assert (tmp_path / "work" / "sorted.bam.bai").exists()
    assert not (tmp_path / "work" / "sorted.unsorted.bam").exists()

    with pysam.AlignmentFile(str(out), "rb") as bam:
        assert bam.header.to_dict()["HD"]["SO"] == "coordinate"
        names = {r.query_name for r in bam.fetch(until_eof=True)}
    assert "dup0" not in names and "lowq" not in names and "midq" in names

    chr2 = list(iter_records(out, "chr2", min_mapq=30))
    assert {r.qname for r in chr2} == {"selflig", "inter0", "inter1", "inter2"} | {f"intra2_{i}" for i in range(4)}
    assert list(iter_records(out, "chrM")) == []
