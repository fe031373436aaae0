from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

logger = logging.getLogger(__name__)


_UCSC_PREFIX = "chr"


def detect_contig_style(contigs: Iterable[str]) -> str:
    """Infer contig style: 'ucsc' if most contigs start with 'chr', else 'ensembl'."""
    names = [c for c in contigs if c]
    if not names:
        return "unknown"
    chr_like = [c for c in names if c.startswith(_UCSC_PREFIX)]
    if len(chr_like) >= max(1, int(0.5 * len(names))):
        return "ucsc"
    return "ensembl"


def check_contig_overlap(chrom_sizes: Sequence[str], bam_contigs: Sequence[str]) -> List[str]:
    """Chromosomes of the size table missing from the BAM header.

    Raises ValueError when nothing overlaps, which almost always means the
    two files use different naming styles (``chr1`` vs ``1``).
    """
    bam_set = set(bam_contigs)
    missing = [c for c in chrom_sizes if c not in bam_set]
    if chrom_sizes and len(missing) == len(chrom_sizes):
        raise ValueError(
            "No chromosome of the chrom.sizes file appears in the BAM header "
            f"(chrom.sizes style: {detect_contig_style(chrom_sizes)}, "
            f"BAM style: {detect_contig_style(bam_contigs)}). "
            "Use the chrom.sizes file that was used when running Juicer."
        )
    if missing:
        logger.warning("%d chromosome(s) of chrom.sizes absent from the BAM: %s", len(missing), ", ".join(missing[:10]))
    return missing
