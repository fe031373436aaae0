"""Alignment source: Juicer merged_dedup BAMs read through pysam/htslib.

Everything the core needs from the alignment files goes through this module:
header metadata (reference names, sequencing platform), per-contig record
streams filtered by mapping quality and junction type, and the ``prep`` step
that merges the per-experiment BAMs into one sorted, indexed file.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple

import pysam
from tqdm import tqdm

from .models import AlignmentRecord
from .utils import ensure_outdir

logger = logging.getLogger(__name__)

# Juicer ligation junction categories carried in the rt:i tag.
ALL_READ_TYPES: FrozenSet[int] = frozenset(range(6))
_ILLUMINA_READ_TYPES: FrozenSet[int] = frozenset({2, 3, 4, 5})
_LS454_READ_TYPES: FrozenSet[int] = frozenset({0, 1})

_PLATFORM_ALIASES = {
    "ILM": "ILLUMINA",
    "ILLUMINA": "ILLUMINA",
    "LS454": "454",
    "454": "454",
}


@dataclass(frozen=True)
class AlignmentHeader:
    """Header facts the pipeline relies on."""

    references: List[Tuple[str, int]]
    platforms: List[str]

    @property
    def reference_names(self) -> List[str]:
        return [name for name, _ in self.references]


def normalize_platform(pl: str) -> str:
    """Map @RG PL spellings onto ILLUMINA / 454; unknown values are returned upper-cased."""
    key = pl.strip().upper()
    return _PLATFORM_ALIASES.get(key, key)


def read_header(bam_path: str | Path) -> AlignmentHeader:
    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        refs = [(name, int(length)) for name, length in zip(bam.references, bam.lengths)]
        rgs = bam.header.to_dict().get("RG", [])
    platforms: List[str] = []
    for rg in rgs:
        pl = rg.get("PL")
        if pl:
            norm = normalize_platform(str(pl))
            if norm not in platforms:
                platforms.append(norm)
    return AlignmentHeader(references=refs, platforms=platforms)


def detect_platform(bam_path: str | Path) -> str:
    """Return the single sequencing platform of a BAM (ILLUMINA or 454).

    Raises
    ------
    ValueError
        If the platform is missing, unrecognized, or data from several
        platforms is mixed.
    """
    platforms = read_header(bam_path).platforms
    if len(platforms) != 1 or platforms[0] not in ("ILLUMINA", "454"):
        raise ValueError(
            "Platform name is not recognized or data from different platforms seems to be mixed "
            f"(@RG PL values: {platforms or 'none'})."
        )
    return platforms[0]


def junction_read_types(platform: str) -> FrozenSet[int]:
    """Junction categories used for accessibility tracks on a given platform."""
    if normalize_platform(platform) == "ILLUMINA":
        return _ILLUMINA_READ_TYPES
    if normalize_platform(platform) == "454":
        return _LS454_READ_TYPES
    raise ValueError(f"Unsupported platform: {platform}")


def extra_contigs(bam_path: str | Path, chrom_sizes: Sequence[str]) -> List[str]:
    """BAM contigs that are absent from the chrom.sizes table, in header order."""
    known = set(chrom_sizes)
    return [c for c in read_header(bam_path).reference_names if c not in known]


def iter_segments(bam_path: str | Path, contig: str) -> Iterator[pysam.AlignedSegment]:
    """Raw segments on one contig. Contigs absent from the header yield nothing."""
    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        if contig not in bam.references:
            return
        for seg in bam.fetch(contig):
            yield seg


def iter_records(
    bam_path: str | Path,
    contig: str,
    *,
    min_mapq: int = 0,
    read_types: Optional[Iterable[int]] = None,
) -> Iterator[AlignmentRecord]:
    """Alignment records on one contig, filtered like ``samtools view -q -d rt:``."""
    allowed = frozenset(read_types) if read_types is not None else None
    for seg in iter_segments(bam_path, contig):
        if seg.is_unmapped or seg.mapping_quality < min_mapq:
            continue
        rec = AlignmentRecord.from_segment(seg)
        if allowed is not None and rec.read_type not in allowed:
            continue
        yield rec


def merge_headers(bam_paths: Sequence[str | Path]) -> Dict[str, object]:
    """Merge BAM headers: identical @SQ required, @RG lines unioned by ID, @PG dropped."""
    merged: Dict[str, object] = {"HD": {"VN": "1.6", "SO": "unsorted"}}
    sq_ref: Optional[List[Tuple[str, int]]] = None
    rgs: List[Dict[str, object]] = []
    seen_rg = set()
    for p in bam_paths:
        with pysam.AlignmentFile(str(p), "rb") as bam:
            hd = bam.header.to_dict()
        sq = [(str(s["SN"]), int(s["LN"])) for s in hd.get("SQ", [])]
        if sq_ref is None:
            sq_ref = sq
            merged["SQ"] = [{"SN": n, "LN": ln} for n, ln in sq]
        elif sq != sq_ref:
            raise ValueError(
                f"Reference sequences in {p} differ from those of {bam_paths[0]}. "
                "All experiments must be aligned to the same reference."
            )
        for rg in hd.get("RG", []):
            rid = rg.get("ID")
            if rid in seen_rg:
                continue
            seen_rg.add(rid)
            rgs.append(dict(rg))
    if sq_ref is None:
        raise ValueError("At least one input BAM is required")
    if rgs:
        merged["RG"] = rgs
    return merged


def prepare_alignments(
    *,
    bam_paths: Sequence[str | Path],
    out_bam: str | Path,
    min_mapq: int = 1,
    read_types: Iterable[int] = ALL_READ_TYPES,
    threads: int = 1,
    sort_memory: str = "768M",
    progress: bool = True,
) -> Dict[str, object]:
    """Extract unique paired alignments from all experiments into one sorted, indexed BAM.

    Keeps records with a known junction type, not flagged duplicate and with
    mapping quality >= ``min_mapq``. The result is written to a temporary
    unsorted BAM, coordinate sorted into ``out_bam`` and indexed.
    """
    t0 = time.time()
    out_bam = Path(out_bam)
    ensure_outdir(out_bam.parent)
    allowed = frozenset(read_types)

    header = merge_headers(bam_paths)
    unsorted = out_bam.with_name(out_bam.stem + ".unsorted.bam")

    counts = {"records_total": 0, "records_kept": 0, "skipped_duplicate": 0, "skipped_mapq": 0, "skipped_read_type": 0}
    with pysam.AlignmentFile(str(unsorted), "wb", header=header) as out:
        for p in bam_paths:
            with pysam.AlignmentFile(str(p), "rb") as bam:
                it: Iterable[pysam.AlignedSegment] = bam.fetch(until_eof=True)
                if progress:
                    it = tqdm(it, unit="read", desc=f"Extracting {Path(p).name}")
                for seg in it:
                    counts["records_total"] += 1
                    if seg.is_duplicate:
                        counts["skipped_duplicate"] += 1
                        continue
                    if seg.mapping_quality < min_mapq:
                        counts["skipped_mapq"] += 1
                        continue
                    rt = seg.get_tag("rt") if seg.has_tag("rt") else None
                    if rt not in allowed:
                        counts["skipped_read_type"] += 1
                        continue
                    out.write(seg)
                    counts["records_kept"] += 1

    logger.info("Sorting %d records into %s", counts["records_kept"], out_bam)
    pysam.sort("-@", str(max(1, int(threads))), "-m", sort_memory, "-o", str(out_bam), str(unsorted))
    unsorted.unlink(missing_ok=True)

    logger.info("Indexing %s", out_bam)
    pysam.index("-@", str(max(1, int(threads))), str(out_bam))

    return {
        "inputs": [str(p) for p in bam_paths],
        "out_bam": str(out_bam),
        "min_mapq": int(min_mapq),
        "counts": counts,
        "runtime_seconds": float(time.time() - t0),
    }
