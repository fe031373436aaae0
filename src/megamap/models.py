from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Tuple

import pysam

from .utils import atomic_output

HOMOLOG_SUFFIXES = ("-r", "-a")


def _int_tag(seg: pysam.AlignedSegment, tag: str) -> Optional[int]:
    if not seg.has_tag(tag):
        return None
    try:
        return int(seg.get_tag(tag))
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class AlignmentRecord:
    """One read half of a Hi-C pair, as written by Juicer into merged_dedup.bam.

    Attributes
    ----------
    qname:
        Read name, shared by both mates.
    chrom:
        Reference name of this alignment.
    pos:
        1-based leftmost alignment position.
    mapq:
        Mapping quality of this alignment.
    is_reverse:
        Strand.
    mate_chrom:
        Reference name of the mate, or None if the mate is unmapped.
    ip, mp:
        ``ip:i`` / ``mp:i`` tags: junction-adjacent coordinate of this read and
        of its mate.
    mate_mapq:
        ``MQ:i`` tag.
    read_type:
        ``rt:i`` tag, ligation junction category (0..5).
    """

    qname: str
    chrom: str
    pos: int
    mapq: int
    is_reverse: bool = False
    mate_chrom: Optional[str] = None
    ip: Optional[int] = None
    mp: Optional[int] = None
    mate_mapq: Optional[int] = None
    read_type: Optional[int] = None

    @property
    def same_chrom(self) -> bool:
        return self.mate_chrom is not None and self.mate_chrom == self.chrom

    @classmethod
    def from_segment(cls, seg: pysam.AlignedSegment) -> "AlignmentRecord":
        mate_chrom: Optional[str] = None
        if seg.next_reference_id >= 0 and not seg.mate_is_unmapped:
            mate_chrom = seg.next_reference_name
        return cls(
            qname=str(seg.query_name),
            chrom=str(seg.reference_name),
            pos=int(seg.reference_start) + 1,
            mapq=int(seg.mapping_quality),
            is_reverse=bool(seg.is_reverse),
            mate_chrom=mate_chrom,
            ip=_int_tag(seg, "ip"),
            mp=_int_tag(seg, "mp"),
            mate_mapq=_int_tag(seg, "MQ"),
            read_type=_int_tag(seg, "rt"),
        )


@dataclass(frozen=True)
class ContactRecord:
    """One line of a Juicer short-format merged_nodups (mnd) file.

    Strand and fragment columns are placeholders: restriction fragments are not
    tracked, so they are always 0/1.
    """

    strand1: int
    chrom1: str
    pos1: int
    frag1: int
    strand2: int
    chrom2: str
    pos2: int
    frag2: int

    @classmethod
    def self_ligation(cls, chrom: str, pos: int) -> "ContactRecord":
        return cls(0, chrom, pos, 0, 0, chrom, pos, 1)

    def to_line(self) -> str:
        return (
            f"{self.strand1} {self.chrom1} {self.pos1} {self.frag1} "
            f"{self.strand2} {self.chrom2} {self.pos2} {self.frag2}"
        )

    @classmethod
    def from_line(cls, line: str) -> "ContactRecord":
        f = line.split()
        if len(f) != 8:
            raise ValueError(f"Expected 8 fields in contact record, got {len(f)}: {line!r}")
        return cls(int(f[0]), f[1], int(f[2]), int(f[3]), int(f[4]), f[5], int(f[6]), int(f[7]))


@dataclass(frozen=True)
class LocusCountRecord:
    """A 1-bp bedGraph interval with the number of read 5'-ends observed there."""

    chrom: str
    start: int
    end: int
    count: int

    def to_bedgraph(self) -> str:
        return f"{self.chrom}\t{self.start}\t{self.end}\t{self.count}"

    @classmethod
    def from_bedgraph(cls, line: str) -> "LocusCountRecord":
        chrom, start, end, count = line.split()[:4]
        return cls(chrom, int(start), int(end), int(count))


@dataclass(frozen=True)
class PhasedVariant:
    """A heterozygous phased SNV. Coordinates are 0-based.

    ``allele_r`` is the base carried by the first haplotype (``-r`` homolog),
    ``allele_a`` by the second (``-a`` homolog).
    """

    chrom: str
    pos0: int
    ref: str
    alt: str
    allele_r: str
    allele_a: str
    record_id: str


def homolog_chromosome(label: str) -> Optional[str]:
    """Chromosome of a ``<chrom>-r`` / ``<chrom>-a`` label, or None for anything else."""
    for suffix in HOMOLOG_SUFFIXES:
        if label.endswith(suffix) and len(label) > len(suffix):
            return label[: -len(suffix)]
    return None


@dataclass
class ReadHomologAssignment:
    """Per-chromosome read name -> homolog label (``<chrom>-r`` or ``<chrom>-a``).

    ``labels`` and ``read_types`` are keyed by chromosome first: a read whose
    mates carry SNP evidence on two chromosomes is assigned on each of them
    independently. A read is conflicting on a chromosome when it supports both
    homologs of that chromosome; it is then left out of ``labels`` for that
    chromosome and counted in ``conflicts``. ``read_types`` keeps the ``rt``
    values of the reads that carried the SNP evidence, used for the corrected
    accessibility track.
    """

    labels: Dict[str, Dict[str, str]] = field(default_factory=dict)
    read_types: Dict[str, Dict[str, Set[int]]] = field(default_factory=dict)
    conflicts: int = 0

    def __len__(self) -> int:
        return sum(len(by_read) for by_read in self.labels.values())

    def __contains__(self, qname: object) -> bool:
        return any(qname in by_read for by_read in self.labels.values())

    def label(self, qname: str, chrom: str) -> Optional[str]:
        return self.labels.get(chrom, {}).get(qname)

    def evidence_read_types(self, qname: str, chrom: str) -> Set[int]:
        return self.read_types.get(chrom, {}).get(qname, set())

    def for_chromosome(self, chrom: str) -> "ReadHomologAssignment":
        """Subset with labels belonging to ``chrom``."""
        labels = dict(self.labels.get(chrom, {}))
        rts = self.read_types.get(chrom, {})
        return ReadHomologAssignment(
            labels={chrom: labels} if labels else {},
            read_types={chrom: {q: set(rts.get(q, ())) for q in labels}} if labels else {},
            conflicts=0,
        )

    def iter_rows(self) -> Iterable[Tuple[str, str, Optional[int]]]:
        rows = []
        for chrom, by_read in self.labels.items():
            rts_by_read = self.read_types.get(chrom, {})
            for qname, label in by_read.items():
                rts = sorted(rts_by_read.get(qname, ()))
                if not rts:
                    rows.append((qname, label, None))
                rows.extend((qname, label, rt) for rt in rts)
        rows.sort(key=lambda r: (r[0], r[1], -1 if r[2] is None else r[2]))
        return rows

    def write(self, path: str | Path) -> Path:
        """Write the reads-to-homologs artifact atomically."""
        path = Path(path)
        with atomic_output(path) as fh:
            for qname, label, rt in self.iter_rows():
                fh.write(f"{qname}\t{label}\t{'' if rt is None else rt}\n")
        return path

    @classmethod
    def load(cls, path: str | Path) -> "ReadHomologAssignment":
        """Load a reads-to-homologs file.

        A name listed with both homologs of one chromosome is treated as
        conflicting on that chromosome, like freshly computed evidence.
        """
        labels: Dict[str, Dict[str, str]] = {}
        read_types: Dict[str, Dict[str, Set[int]]] = {}
        conflicted: Set[Tuple[str, str]] = set()
        with open(path, "rt", encoding="utf-8") as fh:
            for line in fh:
                f = line.rstrip("\n").split("\t")
                if len(f) < 2 or not f[0]:
                    continue
                qname, label = f[0], f[1]
                chrom = homolog_chromosome(label)
                if chrom is None or (qname, chrom) in conflicted:
                    continue
                by_read = labels.setdefault(chrom, {})
                prev = by_read.get(qname)
                if prev is not None and prev != label:
                    conflicted.add((qname, chrom))
                    del by_read[qname]
                    read_types.get(chrom, {}).pop(qname, None)
                    continue
                by_read[qname] = label
                if len(f) > 2 and f[2].strip().lstrip("-").isdigit():
                    read_types.setdefault(chrom, {}).setdefault(qname, set()).add(int(f[2]))
        labels = {c: by_read for c, by_read in labels.items() if by_read}
        return cls(labels=labels, read_types=read_types, conflicts=len(conflicted))
