"""Fan-in of per-chromosome buffers into the combined contact and track files.

The contact file is the concatenation of the primary buffers in task order,
followed by the cross-chromosome side channel sorted by ``(chrom1, chrom2)``.
Side-channel volume can exceed memory, so it is sorted out of core: sorted
runs are spilled to temporary files and merged with :func:`heapq.merge`.
"""

from __future__ import annotations

import heapq
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, TypeVar

from .models import ContactRecord, LocusCountRecord
from .utils import atomic_output, chunked

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 1_000_000


def _iter_run(path: Path, decode: Callable[[str], T]) -> Iterator[T]:
    with open(path, "rt", encoding="utf-8") as fh:
        for line in fh:
            if line.strip():
                yield decode(line.rstrip("\n"))


def external_sort(
    items: Iterable[T],
    key: Callable[[T], object],
    *,
    encode: Callable[[T], str],
    decode: Callable[[str], T],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    tmpdir: Optional[str | Path] = None,
) -> Iterator[T]:
    """Stable sort of an arbitrarily long stream.

    Parameters
    ----------
    items:
        Stream to sort.
    key:
        Sort key.
    encode, decode:
        Line codec used for the spilled runs (``encode`` must not emit newlines).
    chunk_size:
        Items held in memory per run. A stream that fits in one run is sorted
        without touching the disk.
    tmpdir:
        Parent directory for the run files.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")

    it = iter(chunked(items, chunk_size))
    first = next(it, None)
    if first is None:
        return
    second = next(it, None)
    if second is None:
        yield from sorted(first, key=key)
        return

    run_dir = Path(tempfile.mkdtemp(prefix="megamap_sort_", dir=str(tmpdir) if tmpdir is not None else None))
    try:
        runs: List[Path] = []
        for i, chunk in enumerate(_chain(first, second, it)):
            chunk.sort(key=key)
            run = run_dir / f"run{i:05d}.txt"
            with open(run, "wt", encoding="utf-8") as fh:
                for item in chunk:
                    fh.write(encode(item) + "\n")
            runs.append(run)
        logger.debug("External sort: merging %d run(s) from %s", len(runs), run_dir)
        # heapq.merge is stable across inputs, so earlier runs win ties
        yield from heapq.merge(*(_iter_run(r, decode) for r in runs), key=key)
    finally:
        shutil.rmtree(run_dir, ignore_errors=True)


def _chain(first: List[T], second: List[T], rest: Iterator[List[T]]) -> Iterator[List[T]]:
    yield first
    yield second
    yield from rest


def _contact_key(r: ContactRecord) -> tuple:
    return (r.chrom1, r.chrom2)


def iter_contacts(path: str | Path) -> Iterator[ContactRecord]:
    with open(path, "rt", encoding="utf-8") as fh:
        for line in fh:
            if line.strip():
                yield ContactRecord.from_line(line)


def iter_bedgraph(path: str | Path) -> Iterator[LocusCountRecord]:
    with open(path, "rt", encoding="utf-8") as fh:
        for line in fh:
            if line.strip():
                yield LocusCountRecord.from_bedgraph(line)


def _copy_lines(src: str | Path, fh) -> int:
    n = 0
    with open(src, "rt", encoding="utf-8") as inp:
        for line in inp:
            if not line.strip():
                continue
            fh.write(line if line.endswith("\n") else line + "\n")
            n += 1
    return n


def merge_contacts(
    primary_paths: Sequence[str | Path],
    side_paths: Sequence[str | Path],
    out_path: str | Path,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    tmpdir: Optional[str | Path] = None,
) -> dict:
    """Build the combined contact file.

    Returns
    -------
    dict
        ``primary`` and ``side`` record counts.
    """
    counts = {"primary": 0, "side": 0}
    with atomic_output(out_path) as fh:
        for p in primary_paths:
            counts["primary"] += _copy_lines(p, fh)

        side = (rec for p in side_paths for rec in iter_contacts(p))
        for rec in external_sort(
            side,
            _contact_key,
            encode=ContactRecord.to_line,
            decode=ContactRecord.from_line,
            chunk_size=chunk_size,
            tmpdir=tmpdir,
        ):
            fh.write(rec.to_line() + "\n")
            counts["side"] += 1
    logger.info("Wrote %s (%d primary, %d cross-chromosome)", out_path, counts["primary"], counts["side"])
    return counts


def merge_bedgraphs(
    paths: Sequence[str | Path],
    out_path: str | Path,
    *,
    sort: bool = False,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    tmpdir: Optional[str | Path] = None,
) -> int:
    """Concatenate per-chromosome bedgraphs; with ``sort`` order by (chrom, start)."""
    n = 0
    with atomic_output(out_path) as fh:
        if not sort:
            for p in paths:
                n += _copy_lines(p, fh)
            return n
        records = (rec for p in paths for rec in iter_bedgraph(p))
        for rec in external_sort(
            records,
            lambda r: (r.chrom, r.start),
            encode=LocusCountRecord.to_bedgraph,
            decode=LocusCountRecord.from_bedgraph,
            chunk_size=chunk_size,
            tmpdir=tmpdir,
        ):
            fh.write(rec.to_bedgraph() + "\n")
            n += 1
    return n


def write_filtered(
    out_path: str | Path,
    records: Iterable[object],
    encode: Callable[[object], str],
) -> int:
    n = 0
    with atomic_output(out_path) as fh:
        for r in records:
            fh.write(encode(r) + "\n")
            n += 1
    return n
