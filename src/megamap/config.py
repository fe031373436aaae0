"""Run configuration for the mega-map pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .pool import default_concurrency
from .stages import Stage, StageController, parse_stage, validate_stage_range

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTIONS: Tuple[int, ...] = (
    2500000, 1000000, 500000, 250000, 100000, 50000, 25000, 10000,
    5000, 2000, 1000, 500, 200, 100, 50, 20, 10,
)
DEFAULT_EXCLUDE_CHR = "Y|chrY|MT|chrM"
DEFAULT_MAPQ_LEVELS: Tuple[int, ...] = (1, 30)


def parse_resolutions(value: str) -> List[int]:
    """Parse a comma separated resolution list (``2500000,1000000,...``)."""
    out: List[int] = []
    for tok in value.split(","):
        tok = tok.strip()
        if not tok:
            continue
        r = int(tok)
        if r <= 0:
            raise ValueError(f"Resolutions must be positive integers, got {tok}")
        out.append(r)
    if not out:
        raise ValueError("At least one resolution is required")
    return out


def parse_exclude(value: Optional[str]) -> List[str]:
    """Split a ``|`` separated chromosome list."""
    if not value:
        return []
    return [c for c in value.split("|") if c]


def load_chrom_sizes(path: str | Path) -> List[Tuple[str, int]]:
    """Read a two-column chrom.sizes table, keeping file order."""
    sizes: List[Tuple[str, int]] = []
    seen = set()
    with open(path, "rt", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip() or line.startswith("#"):
                continue
            f = line.split()
            if len(f) < 2:
                raise ValueError(f"{path}:{lineno}: expected '<name> <length>', got {line.rstrip()!r}")
            if f[0] in seen:
                raise ValueError(f"{path}:{lineno}: duplicate chromosome {f[0]}")
            seen.add(f[0])
            sizes.append((f[0], int(f[1])))
    if not sizes:
        raise ValueError(f"chrom.sizes file {path} is empty")
    return sizes


@dataclass
class PipelineConfig:
    """Everything a run needs. Paths are resolved against the working directory by the caller."""

    workdir: Path
    chrom_sizes: Path
    juicer_dir: Optional[Path] = None
    bams: List[Path] = field(default_factory=list)
    genome_id: Optional[str] = None
    resolutions: List[int] = field(default_factory=lambda: list(DEFAULT_RESOLUTIONS))
    vcf: Optional[Path] = None
    sample: Optional[str] = None
    phase_table: Optional[Path] = None
    reads_to_homologs: Optional[Path] = None
    exclude_chr: str = DEFAULT_EXCLUDE_CHR
    separate_homologs: bool = False
    threads: int = field(default_factory=default_concurrency)
    threads_hic: Optional[int] = None
    from_stage: Stage = Stage.PREP
    to_stage: Stage = Stage.CLEANUP
    mapq_levels: Tuple[int, ...] = DEFAULT_MAPQ_LEVELS
    min_baseq: int = 20
    sort_chunk_size: int = 1_000_000
    java_opts: Optional[str] = None
    executor: str = "process"
    progress: bool = True

    def __post_init__(self) -> None:
        self.workdir = Path(self.workdir)
        self.chrom_sizes = Path(self.chrom_sizes)
        self.bams = [Path(b) for b in self.bams]
        for name in ("juicer_dir", "vcf", "phase_table", "reads_to_homologs"):
            v = getattr(self, name)
            if v is not None:
                setattr(self, name, Path(v))
        self.from_stage = parse_stage(self.from_stage)
        self.to_stage = parse_stage(self.to_stage)
        if self.threads_hic is None:
            self.threads_hic = self.threads

    @property
    def diploid_enabled(self) -> bool:
        return any(p is not None for p in (self.vcf, self.phase_table, self.reads_to_homologs))

    @property
    def excluded_chromosomes(self) -> List[str]:
        return parse_exclude(self.exclude_chr)

    def stages_requested(self) -> Sequence[Stage]:
        """Stages the run would execute, following the diploid branch after ``dhs``."""
        return StageController({}, diploid_enabled=self.diploid_enabled).plan(self.from_stage, self.to_stage)

    def validate(self) -> None:
        """Raise ValueError with an actionable message if the configuration cannot run."""
        validate_stage_range(self.from_stage, self.to_stage)
        if not self.chrom_sizes.exists():
            raise ValueError(
                f"chrom.sizes file not found: {self.chrom_sizes}. "
                "Use -c to point to the chrom.sizes file used when running Juicer."
            )
        if self.threads < 1 or (self.threads_hic is not None and self.threads_hic < 1):
            raise ValueError("--threads and --threads-hic must be >= 1")
        if self.min_baseq < 0:
            raise ValueError("--min-baseq must be >= 0")
        if self.sort_chunk_size < 1:
            raise ValueError("--sort-chunk-size must be >= 1")
        if not self.resolutions:
            raise ValueError("At least one resolution is required")
        if self.from_stage == Stage.PREP:
            if not self.bams:
                raise ValueError("Stage 'prep' needs at least one input BAM (merged_dedup.bam from each experiment).")
            missing = [str(b) for b in self.bams if not b.exists()]
            if missing:
                raise ValueError(f"Input BAM(s) not found: {', '.join(missing)}")
        needs_juicer = any(s in (Stage.HIC, Stage.HICNARROW, Stage.DIPLOID_HIC) for s in self.stages_requested())
        if needs_juicer and self.juicer_dir is None:
            raise ValueError("Juicer directory is not specified. Use --juicer-dir (needed by hic/hicnarrow/diploid_hic).")
        for name in ("vcf", "phase_table", "reads_to_homologs"):
            p = getattr(self, name)
            if p is not None and not p.exists():
                raise ValueError(f"--{name.replace('_', '-')} file not found: {p}")
        if not self.genome_id and Stage.HICNARROW in self.stages_requested():
            logger.warning(
                "No genome id provided; the hicnarrow stage needs one (e.g. -g hg38) to run the motif finder."
            )
