from megamap.merge import external_sort, merge_bedgraphs, merge_contacts
from megamap.models import ContactRecord


def _write(path, lines):
    path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
    return path


def test_external_sort_spills_runs_and_stays_stable(tmp_path):
    items = [("b", i) for i in range(5)] + [("a", i) for i in range(5)] + [("b", 9), ("a", 9)]
    out = list(
        external_sort(
            items,
            key=lambda x: x[0],
            encode=lambda x: f"{x[0]}\t{x[1]}",
            decode=lambda s: (s.split("\t")[0], int(s.split("\t")[1])),
            chunk_size=3,
            tmpdir=tmp_path,
        )
    )
    assert out == sorted(items, key=lambda x: x[0])
    # run files are removed once the merge is consumed
    assert not any(p.name.startswith("megamap_sort_") for p in tmp_path.iterdir())


def test_external_sort_single_chunk_in_memory(tmp_path):
    out = list(external_sort([3, 1, 2], key=lambda x: x, encode=str, decode=int, tmpdir=tmp_path))
    assert out == [1, 2, 3]
    assert list(external_sort([], key=lambda x: x, encode=str, decode=int)) == []


def test_merge_contacts_primary_in_task_order_then_sorted_side(tmp_path):
    p1 = _write(tmp_path / "chr1.mnd.txt", ["0 chr1 10 0 0 chr1 20 1"])
    p2 = _write(tmp_path / "chr2.mnd.txt", ["0 chr2 5 0 0 chr2 5 1"])
    s1 = _write(tmp_path / "chr1.side.txt", ["0 chr1 1 0 0 chrX 1 1", "0 chr1 2 0 0 chr2 2 1"])
    s2 = _write(tmp_path / "chr2.side.txt", ["0 chr2 3 0 0 chrX 3 1", "0 chr1 4 0 0 chr2 4 1"])

    out = tmp_path / "merged1.txt"
    counts = merge_contacts([p1, p2], [s1, s2], out, chunk_size=2, tmpdir=tmp_path)

    assert counts == {"primary": 2, "side": 4}
    lines = out.read_text(encoding="utf-8").splitlines()
    assert lines == [
        "0 chr1 10 0 0 chr1 20 1",
        "0 chr2 5 0 0 chr2 5 1",
        "0 chr1 2 0 0 chr2 2 1",
        "0 chr1 4 0 0 chr2 4 1",
        "0 chr1 1 0 0 chrX 1 1",
        "0 chr2 3 0 0 chrX 3 1",
    ]
    assert ContactRecord.from_line(lines[0]).pos2 == 20


def test_merge_bedgraphs_concatenates_or_sorts(tmp_path):
    b1 = _write(tmp_path / "a.bedgraph", ["chr2-r\t9\t10\t1", "chr2-a\t4\t5\t2"])
    b2 = _write(tmp_path / "b.bedgraph", ["chr1-r\t0\t1\t3"])

    assert merge_bedgraphs([b1, b2], tmp_path / "cat.bedgraph") == 3
    assert (tmp_path / "cat.bedgraph").read_text(encoding="utf-8").splitlines()[0] == "chr2-r\t9\t10\t1"

    assert merge_bedgraphs([b1, b2], tmp_path / "sorted.bedgraph", sort=True, chunk_size=1, tmpdir=tmp_path) == 3
    assert (tmp_path / "sorted.bedgraph").read_text(encoding="utf-8").splitlines() == [
        "chr1-r\t0\t1\t3",
        "chr2-a\t4\t5\t2",
        "chr2-r\t9\t10\t1",
    ]
