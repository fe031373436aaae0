"""Homolog-resolved contacts and accessibility counts.

Records of reads assigned to a homolog are relabelled onto the
``<chrom>-r`` / ``<chrom>-a`` pseudo-chromosomes. Only intra-chromosomal
pairs (or pairs with an unmapped mate) are considered.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .alignments import iter_records
from .homologs import is_consistent_read_type
from .models import HOMOLOG_SUFFIXES, AlignmentRecord, ContactRecord, LocusCountRecord, ReadHomologAssignment
from .records import ChromosomeOutput, _task_name, write_bedgraph, write_contacts
from .utils import ensure_outdir

logger = logging.getLogger(__name__)


def _relabelled(
    chrom: str, records: Iterable[AlignmentRecord], assignment: ReadHomologAssignment
) -> Iterable[Tuple[str, AlignmentRecord]]:
    for rec in records:
        if rec.chrom != chrom:
            continue
        label = assignment.label(rec.qname, chrom)
        if label is None:
            continue
        yield label, rec


def map_diploid_contacts(
    chrom: str,
    records: Iterable[AlignmentRecord],
    assignment: ReadHomologAssignment,
) -> List[ContactRecord]:
    """Pair up relabelled records by read name into homolog contacts.

    Read names with anything other than exactly two usable records are
    dropped. Within a pair the smaller junction position comes first.
    """
    groups: Dict[str, List[Tuple[str, int]]] = {}
    for label, rec in _relabelled(chrom, records, assignment):
        if rec.mate_chrom is not None and not rec.same_chrom:
            continue
        if rec.ip is None:
            continue
        groups.setdefault(rec.qname, []).append((label, rec.ip))

    out: List[ContactRecord] = []
    for qname in sorted(groups):
        pair = groups[qname]
        if len(pair) != 2:
            continue
        (lab1, p1), (lab2, p2) = sorted(pair, key=lambda x: x[1])
        out.append(ContactRecord(0, lab1, p1, 0, 1, lab2, p2, 1))
    out.sort(key=lambda r: r.chrom1)
    return out


def map_diploid_loci(
    chrom: str,
    records: Iterable[AlignmentRecord],
    assignment: ReadHomologAssignment,
    read_types: Optional[Iterable[int]] = None,
) -> Tuple[List[LocusCountRecord], List[LocusCountRecord]]:
    """Raw and read-type corrected 5'-end counts per ``(label, ip)``.

    Returns
    -------
    raw, corrected:
        Both sorted by (label, position).
    """
    allowed = frozenset(read_types) if read_types is not None else None
    raw: Counter = Counter()
    corrected: Counter = Counter()
    for label, rec in _relabelled(chrom, records, assignment):
        if rec.ip is None:
            continue
        if allowed is not None and rec.read_type not in allowed:
            continue
        raw[(label, rec.ip)] += 1
        if is_consistent_read_type(assignment, chrom, rec.qname, rec.read_type):
            corrected[(label, rec.ip)] += 1

    def _records(counts: Counter) -> List[LocusCountRecord]:
        return [LocusCountRecord(lab, ip - 1, ip, n) for (lab, ip), n in sorted(counts.items())]

    return _records(raw), _records(corrected)


def split_homolog(records: Iterable[ContactRecord], suffix: str) -> Iterable[ContactRecord]:
    """Contacts of one homolog with the ``-r`` / ``-a`` suffix stripped from both ends."""
    if suffix not in HOMOLOG_SUFFIXES:
        raise ValueError(f"suffix must be one of {HOMOLOG_SUFFIXES}, got {suffix!r}")
    n = len(suffix)
    for r in records:
        if not r.chrom1.endswith(suffix):
            continue
        c2 = r.chrom2[:-n] if r.chrom2.endswith(suffix) else r.chrom2
        yield ContactRecord(r.strand1, r.chrom1[:-n], r.pos1, r.frag1, r.strand2, c2, r.pos2, r.frag2)


def split_homolog_bedgraph(records: Iterable[LocusCountRecord], suffix: str) -> Iterable[LocusCountRecord]:
    if suffix not in HOMOLOG_SUFFIXES:
        raise ValueError(f"suffix must be one of {HOMOLOG_SUFFIXES}, got {suffix!r}")
    for r in records:
        if r.chrom.endswith(suffix):
            yield LocusCountRecord(r.chrom[: -len(suffix)], r.start, r.end, r.count)


def diploid_chrom_sizes(sizes: Sequence[Tuple[str, int]]) -> List[Tuple[str, int]]:
    """Interleave ``chr-r`` / ``chr-a`` entries for every chromosome."""
    out: List[Tuple[str, int]] = []
    for name, length in sizes:
        out.append((f"{name}-r", length))
        out.append((f"{name}-a", length))
    return out


def diploid_contacts_for_chromosome(
    chrom: str,
    *,
    bam_path: str,
    reads_to_homologs: str,
    out_dir: str,
) -> ChromosomeOutput:
    """Worker: homolog contacts for one chromosome, written as mnd lines."""
    assignment = ReadHomologAssignment.load(reads_to_homologs).for_chromosome(chrom)
    contacts = map_diploid_contacts(chrom, iter_records(bam_path, chrom), assignment)
    path = ensure_outdir(out_dir) / f"{_task_name(chrom)}.diploid.mnd.txt"
    n = write_contacts(path, contacts)
    return ChromosomeOutput(chrom=chrom, paths={"primary": str(path)}, stats={"contacts": n, "reads": len(assignment)})


def diploid_loci_for_chromosome(
    chrom: str,
    *,
    bam_path: str,
    reads_to_homologs: str,
    out_dir: str,
    read_types: Optional[Iterable[int]] = None,
) -> ChromosomeOutput:
    """Worker: raw and corrected homolog bedgraphs for one chromosome."""
    assignment = ReadHomologAssignment.load(reads_to_homologs).for_chromosome(chrom)
    raw, corrected = map_diploid_loci(chrom, iter_records(bam_path, chrom, read_types=read_types), assignment)
    out = ensure_outdir(out_dir)
    name = _task_name(chrom)
    raw_path = Path(out) / f"{name}.raw.bedgraph"
    corrected_path = Path(out) / f"{name}.corrected.bedgraph"
    write_bedgraph(raw_path, raw)
    write_bedgraph(corrected_path, corrected)
    return ChromosomeOutput(
        chrom=chrom,
        paths={"raw": str(raw_path), "corrected": str(corrected_path)},
        stats={"raw_loci": len(raw), "corrected_loci": len(corrected)},
    )
