"""Assign Hi-C reads to parental homologs from phased heterozygous SNVs.

A read (identified by its name, so both mates share the outcome) is tagged,
per chromosome, with the homolog whose allele it carries at the phased SNVs
it overlaps there. A read carrying both the ``-r`` and the ``-a`` allele of
one chromosome is conflicting and excluded from that chromosome's diploid
outputs; its assignment on another chromosome is unaffected.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import pysam

from .alignments import iter_segments
from .errors import AmbiguousAssignmentError
from .models import PhasedVariant, ReadHomologAssignment, homolog_chromosome
from .utils import atomic_output, ensure_outdir

logger = logging.getLogger(__name__)

_BASES = {"A", "C", "G", "T"}
_PHASE_TABLE_COLUMNS = ["chrom", "pos", "ref", "alt", "allele_r", "allele_a", "id"]


@dataclass(frozen=True)
class VariantIndex:
    """Per-contig phased variant lookup structure."""

    positions: List[int]  # sorted 0-based positions
    variants: List[PhasedVariant]  # aligned with positions

    def overlapping(self, start0: int, end0: int) -> Tuple[List[int], List[PhasedVariant]]:
        """Variants within [start0, end0)."""
        left = bisect.bisect_left(self.positions, start0)
        right = bisect.bisect_left(self.positions, end0)
        return self.positions[left:right], self.variants[left:right]


@dataclass(frozen=True)
class ReadEvidence:
    qname: str
    label: str
    read_type: Optional[int]


def load_phased_variants(
    vcf_path: str | Path,
    *,
    chromosomes: Optional[Iterable[str]] = None,
    sample: Optional[str] = None,
    require_pass: bool = False,
) -> Tuple[List[PhasedVariant], Dict[str, int]]:
    """Read heterozygous phased SNVs from a VCF.

    Only biallelic SNVs whose genotype is phased ``0|1`` or ``1|0`` are kept.
    The allele on the first haplotype becomes the ``-r`` homolog allele.

    Parameters
    ----------
    vcf_path:
        Phased VCF (plain or bgzipped).
    chromosomes:
        Allow-list of contigs; None keeps all.
    sample:
        Sample name; defaults to the first sample.
    require_pass:
        If True, require FILTER to be PASS or empty.

    Returns
    -------
    variants:
        Sorted by (chrom, pos0).
    stats:
        Counters about records kept / skipped.
    """
    allow = set(chromosomes) if chromosomes is not None else None
    stats: Dict[str, int] = {
        "records_total": 0,
        "kept": 0,
        "skipped_chrom": 0,
        "skipped_filter": 0,
        "skipped_non_snv": 0,
        "skipped_unphased": 0,
        "skipped_homozygous": 0,
    }
    out: List[PhasedVariant] = []

    with pysam.VariantFile(str(vcf_path)) as vcf:
        samples = list(vcf.header.samples)
        if not samples:
            raise ValueError(f"VCF {vcf_path} has no samples; a phased genotype column is required.")
        if sample is None:
            sample = samples[0]
        elif sample not in samples:
            raise ValueError(f"Sample '{sample}' not found in VCF samples: {samples}")

        for rec in vcf:
            stats["records_total"] += 1
            if allow is not None and rec.contig not in allow:
                stats["skipped_chrom"] += 1
                continue
            if require_pass:
                filt = list(rec.filter.keys())
                if filt and filt != ["PASS"]:
                    stats["skipped_filter"] += 1
                    continue
            alts = list(rec.alts or [])
            ref = (rec.ref or "").upper()
            if len(ref) != 1 or len(alts) != 1 or len(alts[0]) != 1:
                stats["skipped_non_snv"] += 1
                continue
            alt = alts[0].upper()
            if ref not in _BASES or alt not in _BASES:
                stats["skipped_non_snv"] += 1
                continue

            call = rec.samples[sample]
            gt = call.get("GT")
            if not gt or len(gt) != 2 or None in gt:
                stats["skipped_unphased"] += 1
                continue
            if not call.phased:
                stats["skipped_unphased"] += 1
                continue
            if set(gt) != {0, 1}:
                stats["skipped_homozygous"] += 1
                continue

            alleles = (ref, alt)
            rid = rec.id if rec.id is not None else f"{rec.contig}:{rec.pos}:{ref}:{alt}"
            out.append(
                PhasedVariant(
                    chrom=str(rec.contig),
                    pos0=int(rec.pos) - 1,
                    ref=ref,
                    alt=alt,
                    allele_r=alleles[gt[0]],
                    allele_a=alleles[gt[1]],
                    record_id=rid,
                )
            )

    out.sort(key=lambda v: (v.chrom, v.pos0))
    stats["kept"] = len(out)
    if not out:
        logger.warning("No heterozygous phased SNVs found in %s; diploid outputs will be empty.", vcf_path)
    return out, stats


def write_phase_table(path: str | Path, variants: Iterable[PhasedVariant]) -> Path:
    """Persist phased variants as a tab-separated table (1-based positions)."""
    path = Path(path)
    with atomic_output(path) as fh:
        fh.write("\t".join(_PHASE_TABLE_COLUMNS) + "\n")
        for v in variants:
            fh.write(f"{v.chrom}\t{v.pos0 + 1}\t{v.ref}\t{v.alt}\t{v.allele_r}\t{v.allele_a}\t{v.record_id}\n")
    return path


def load_phase_table(path: str | Path, *, chromosomes: Optional[Iterable[str]] = None) -> List[PhasedVariant]:
    allow = set(chromosomes) if chromosomes is not None else None
    out: List[PhasedVariant] = []
    with open(path, "rt", encoding="utf-8") as fh:
        for line in fh:
            if not line.strip() or line.startswith(("#", "chrom\t")):
                continue
            f = line.rstrip("\n").split("\t")
            if len(f) < 6:
                raise ValueError(f"Malformed phase table line in {path}: {line!r}")
            if allow is not None and f[0] not in allow:
                continue
            rid = f[6] if len(f) > 6 and f[6] else f"{f[0]}:{f[1]}:{f[2]}:{f[3]}"
            out.append(
                PhasedVariant(
                    chrom=f[0],
                    pos0=int(f[1]) - 1,
                    ref=f[2].upper(),
                    alt=f[3].upper(),
                    allele_r=f[4].upper(),
                    allele_a=f[5].upper(),
                    record_id=rid,
                )
            )
    out.sort(key=lambda v: (v.chrom, v.pos0))
    return out


def build_variant_index(variants: Iterable[PhasedVariant]) -> Dict[str, VariantIndex]:
    """Build a per-contig index for fast read overlap lookup."""
    by_contig: Dict[str, List[PhasedVariant]] = {}
    for v in variants:
        by_contig.setdefault(v.chrom, []).append(v)

    index: Dict[str, VariantIndex] = {}
    for chrom, lst in by_contig.items():
        lst_sorted = sorted(lst, key=lambda x: x.pos0)
        index[chrom] = VariantIndex(positions=[v.pos0 for v in lst_sorted], variants=lst_sorted)
    return index


def extract_bases_at_positions(
    read: pysam.AlignedSegment, positions0: Sequence[int]
) -> Dict[int, Tuple[str, int]]:
    """Extract (base, baseq) at a sorted list of reference positions (0-based) for one read.

    Walks the CIGAR once. Positions falling in deletions or reference skips
    are absent from the result.
    """
    if read.is_unmapped or read.cigartuples is None or len(positions0) == 0:
        return {}

    seq = read.query_sequence
    if seq is None:
        return {}
    quals = read.query_qualities

    out: Dict[int, Tuple[str, int]] = {}
    pos_idx = 0
    ref_pos = read.reference_start
    query_pos = 0

    while pos_idx < len(positions0) and positions0[pos_idx] < ref_pos:
        pos_idx += 1

    for op, length in read.cigartuples:
        if pos_idx >= len(positions0):
            break
        if op in (0, 7, 8):  # M, =, X
            ref_end = ref_pos + length
            while pos_idx < len(positions0) and positions0[pos_idx] < ref_end:
                qpos = query_pos + (positions0[pos_idx] - ref_pos)
                if 0 <= qpos < len(seq):
                    out[positions0[pos_idx]] = (seq[qpos].upper(), int(quals[qpos]) if quals is not None else 0)
                pos_idx += 1
            ref_pos = ref_end
            query_pos += length
        elif op in (1, 4):  # I, S
            query_pos += length
        elif op in (2, 3):  # D, N
            ref_end = ref_pos + length
            while pos_idx < len(positions0) and positions0[pos_idx] < ref_end:
                pos_idx += 1
            ref_pos = ref_end
    return out


def read_labels(
    read: pysam.AlignedSegment,
    index: VariantIndex,
    *,
    min_baseq: int = 0,
) -> Set[str]:
    """Homolog labels supported by one aligned read (empty, one, or both)."""
    chrom = str(read.reference_name)
    end0 = read.reference_end
    if end0 is None:
        return set()
    positions, variants = index.overlapping(read.reference_start, end0)
    if not positions:
        return set()
    bases = extract_bases_at_positions(read, positions)
    labels: Set[str] = set()
    for pos0, v in zip(positions, variants):
        obs = bases.get(pos0)
        if obs is None or obs[1] < min_baseq:
            continue
        if obs[0] == v.allele_r:
            labels.add(f"{chrom}-r")
        elif obs[0] == v.allele_a:
            labels.add(f"{chrom}-a")
    return labels


def iter_snp_evidence(
    segments: Iterable[pysam.AlignedSegment],
    index: VariantIndex,
    *,
    min_baseq: int = 0,
) -> Iterator[ReadEvidence]:
    for seg in segments:
        if seg.is_unmapped or seg.is_duplicate:
            continue
        labels = read_labels(seg, index, min_baseq=min_baseq)
        if not labels:
            continue
        rt = int(seg.get_tag("rt")) if seg.has_tag("rt") else None
        for label in sorted(labels):
            yield ReadEvidence(qname=str(seg.query_name), label=label, read_type=rt)


def snp_evidence_for_chromosome(
    chrom: str,
    *,
    bam_path: str,
    phase_table: str,
    out_dir: str,
    min_baseq: int = 0,
) -> str:
    """Worker: write SNP evidence rows (qname, label, rt) for one chromosome; return the path."""
    variants = load_phase_table(phase_table, chromosomes=[chrom])
    out = ensure_outdir(out_dir) / f"{chrom}.evidence.txt"
    index = build_variant_index(variants).get(chrom)
    with atomic_output(out) as fh:
        if index is not None:
            for ev in iter_snp_evidence(iter_segments(bam_path, chrom), index, min_baseq=min_baseq):
                fh.write(f"{ev.qname}\t{ev.label}\t{'' if ev.read_type is None else ev.read_type}\n")
    return str(out)


def load_evidence(paths: Iterable[str | Path]) -> Iterator[ReadEvidence]:
    for p in paths:
        with open(p, "rt", encoding="utf-8") as fh:
            for line in fh:
                f = line.rstrip("\n").split("\t")
                if len(f) < 2:
                    continue
                rt = int(f[2]) if len(f) > 2 and f[2] else None
                yield ReadEvidence(qname=f[0], label=f[1], read_type=rt)


def _add_evidence(assignment: ReadHomologAssignment, ev: ReadEvidence) -> None:
    chrom = homolog_chromosome(ev.label)
    if chrom is None:
        raise ValueError(f"Not a homolog label: {ev.label!r}")
    by_read = assignment.labels.setdefault(chrom, {})
    prev = by_read.get(ev.qname)
    if prev is not None and prev != ev.label:
        raise AmbiguousAssignmentError(ev.qname, [prev, ev.label])
    by_read[ev.qname] = ev.label
    if ev.read_type is not None:
        assignment.read_types.setdefault(chrom, {}).setdefault(ev.qname, set()).add(ev.read_type)


def resolve_assignments(evidence: Iterable[ReadEvidence]) -> ReadHomologAssignment:
    """Fold evidence rows into per-chromosome read -> homolog mappings.

    A read is excluded only on the chromosome where it supports both homologs.
    """
    assignment = ReadHomologAssignment()
    conflicted: Set[Tuple[str, str]] = set()
    for ev in evidence:
        chrom = homolog_chromosome(ev.label)
        if (ev.qname, chrom) in conflicted:
            continue
        try:
            _add_evidence(assignment, ev)
        except AmbiguousAssignmentError as e:
            logger.debug("%s", e)
            conflicted.add((ev.qname, chrom))
            assignment.labels[chrom].pop(ev.qname, None)
            assignment.read_types.get(chrom, {}).pop(ev.qname, None)
    assignment.labels = {c: by_read for c, by_read in assignment.labels.items() if by_read}
    assignment.conflicts = len(conflicted)
    logger.info(
        "Assigned %d read(s) to homologs; excluded %d conflicting read/chromosome pair(s).",
        len(assignment),
        assignment.conflicts,
    )
    return assignment


def partner_read_type(read_type: int) -> int:
    """Read type of the mate that pairs with ``read_type`` (0<->1, 2<->3, 4<->5)."""
    return read_type ^ 1


def is_consistent_read_type(
    assignment: ReadHomologAssignment, chrom: str, qname: str, read_type: Optional[int]
) -> bool:
    """Whether a record's read type pairs with the read type of its SNP-carrying mate on ``chrom``."""
    if read_type is None:
        return False
    return partner_read_type(read_type) in assignment.evidence_read_types(qname, chrom)
