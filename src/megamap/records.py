"""Per-chromosome record mapping: alignment records -> contact / locus count records.

The mappers are plain folds over a record stream. They never raise on a bad
record: records missing one of the Juicer tags they need are counted as
``malformed`` and skipped.

Contact ownership rules (one emission per pair across all partitions):

* mates on the same chromosome: the mate with the smaller junction position
  (``ip < mp``) emits the contact; ``ip > mp`` is skipped. Pairs whose two
  junction positions coincide are folded by read name and emitted once at the
  end of the stream as a self-ligation contact.
* mates on different chromosomes: the partition whose chromosome sorts first
  owns the contact. It goes to the side channel, because the matrix engine
  needs those records ordered by ``(chrom1, chrom2)`` across partitions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import numpy as np

from .alignments import ALL_READ_TYPES, iter_records
from .models import AlignmentRecord, ContactRecord, LocusCountRecord
from .utils import atomic_output, ensure_outdir

logger = logging.getLogger(__name__)


@dataclass
class ContactMapResult:
    """Output of :func:`map_contacts` for one chromosome partition."""

    chrom: str
    primary: List[ContactRecord] = field(default_factory=list)
    side: List[ContactRecord] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ChromosomeOutput:
    """What a worker hands back to the pool: task-private files plus counters."""

    chrom: str
    paths: Dict[str, str]
    stats: Dict[str, int]


def _new_stats() -> Dict[str, int]:
    return {
        "records_seen": 0,
        "malformed": 0,
        "skipped_mapq": 0,
        "skipped_read_type": 0,
        "skipped_mate_owned": 0,
        "skipped_mate_unmapped": 0,
        "intra": 0,
        "self_ligation": 0,
        "inter": 0,
    }


def map_contacts(
    chrom: str,
    min_mapq: int,
    records: Iterable[AlignmentRecord],
    read_types: Iterable[int] = ALL_READ_TYPES,
) -> ContactMapResult:
    """Fold one chromosome's alignment records into contact records.

    Parameters
    ----------
    chrom:
        Partition key; only records on this chromosome are considered.
    min_mapq:
        Minimum mapping quality for the record and its mate (MQ tag).
    records:
        Alignment stream for the partition.
    read_types:
        Accepted junction categories.
    """
    allowed = frozenset(read_types)
    res = ContactMapResult(chrom=chrom, stats=_new_stats())
    stats = res.stats
    # read name -> junction position; dict keeps first-seen order, later records win
    self_ligations: Dict[str, int] = {}

    for rec in records:
        if rec.chrom != chrom:
            continue
        stats["records_seen"] += 1
        if rec.ip is None or rec.mp is None or rec.mate_mapq is None:
            stats["malformed"] += 1
            continue
        if rec.mapq < min_mapq or rec.mate_mapq < min_mapq:
            stats["skipped_mapq"] += 1
            continue
        if rec.read_type not in allowed:
            stats["skipped_read_type"] += 1
            continue

        if rec.mate_chrom is None:
            stats["skipped_mate_unmapped"] += 1
            continue

        if rec.same_chrom:
            if rec.ip > rec.mp:
                stats["skipped_mate_owned"] += 1
            elif rec.ip == rec.mp:
                self_ligations[rec.qname] = rec.ip
            else:
                res.primary.append(ContactRecord(0, chrom, rec.ip, 0, 0, chrom, rec.mp, 1))
                stats["intra"] += 1
            continue

        if rec.mate_chrom < chrom:
            stats["skipped_mate_owned"] += 1
            continue
        res.side.append(ContactRecord(0, chrom, rec.ip, 0, 0, rec.mate_chrom, rec.mp, 1))
        stats["inter"] += 1

    for pos in self_ligations.values():
        res.primary.append(ContactRecord.self_ligation(chrom, pos))
    stats["self_ligation"] = len(self_ligations)
    return res


def count_positions(chrom: str, positions: Iterable[int]) -> List[LocusCountRecord]:
    """Collapse 1-based positions into sorted 1-bp bedGraph intervals with counts."""
    arr = np.fromiter(positions, dtype=np.int64)
    if arr.size == 0:
        return []
    uniq, counts = np.unique(arr, return_counts=True)
    return [
        LocusCountRecord(chrom, int(p) - 1, int(p), int(n))
        for p, n in zip(uniq.tolist(), counts.tolist())
    ]


def map_loci(
    chrom: str,
    min_mapq: int,
    records: Iterable[AlignmentRecord],
    read_types: Optional[Iterable[int]] = None,
) -> List[LocusCountRecord]:
    """Count read 5'-ends (``ip`` tag) per locus, sorted by position."""
    allowed = frozenset(read_types) if read_types is not None else None

    def positions() -> Iterable[int]:
        for rec in records:
            if rec.chrom != chrom or rec.ip is None:
                continue
            if rec.mapq < min_mapq:
                continue
            if allowed is not None and rec.read_type not in allowed:
                continue
            yield rec.ip

    return count_positions(chrom, positions())


def _task_name(chrom: str) -> str:
    # contig names may contain characters that are awkward in file names
    return "".join(c if c.isalnum() or c in "._-" else "_" for c in chrom)


def write_contacts(path: str | Path, records: Iterable[ContactRecord]) -> int:
    n = 0
    with atomic_output(path) as fh:
        for r in records:
            fh.write(r.to_line() + "\n")
            n += 1
    return n


def write_bedgraph(path: str | Path, records: Iterable[LocusCountRecord]) -> int:
    n = 0
    with atomic_output(path) as fh:
        for r in records:
            fh.write(r.to_bedgraph() + "\n")
            n += 1
    return n


def contacts_for_chromosome(
    chrom: str,
    *,
    bam_path: str,
    min_mapq: int,
    out_dir: str,
    read_types: Iterable[int] = ALL_READ_TYPES,
) -> ChromosomeOutput:
    """Worker: map one chromosome of the sorted BAM into task-private mnd buffers."""
    out = ensure_outdir(out_dir)
    res = map_contacts(
        chrom,
        min_mapq,
        iter_records(bam_path, chrom, min_mapq=min_mapq),
        read_types=read_types,
    )
    name = _task_name(chrom)
    primary = out / f"{name}.mnd.txt"
    side = out / f"{name}.side.txt"
    write_contacts(primary, res.primary)
    write_contacts(side, res.side)
    logger.debug("%s: %s", chrom, res.stats)
    return ChromosomeOutput(chrom=chrom, paths={"primary": str(primary), "side": str(side)}, stats=res.stats)


def loci_for_chromosome(
    chrom: str,
    *,
    bam_path: str,
    min_mapq: int,
    out_dir: str,
    read_types: Optional[Iterable[int]] = None,
) -> ChromosomeOutput:
    """Worker: per-locus 5'-end counts for one chromosome, written as bedGraph."""
    out = ensure_outdir(out_dir)
    loci = map_loci(chrom, min_mapq, iter_records(bam_path, chrom, min_mapq=min_mapq, read_types=read_types))
    path = out / f"{_task_name(chrom)}.bedgraph"
    n = write_bedgraph(path, loci)
    return ChromosomeOutput(
        chrom=chrom,
        paths={"bedgraph": str(path)},
        stats={"loci": n, "reads": sum(r.count for r in loci)},
    )
