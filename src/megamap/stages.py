"""Stage sequencing with artifact-presence preconditions.

Stages are totally ordered. A run starts at ``from_stage``, walks forward and
stops after ``to_stage``. The only branch is after ``dhs``: the diploid
stages run only when phasing inputs were supplied, otherwise the controller
jumps straight to ``cleanup``.

Every artifact lives under the working directory with a fixed name, so a run
resumed with ``--from-stage`` finds what earlier runs produced.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .errors import InvalidStageRangeError, PreconditionError
from .utils import artifact_ready

logger = logging.getLogger(__name__)


class Stage(IntEnum):
    PREP = 0
    HIC = 1
    HICNARROW = 2
    DHS = 3
    DIPLOID_HIC = 4
    DIPLOID_DHS = 5
    CLEANUP = 6

    @property
    def label(self) -> str:
        return self.name.lower()


STAGE_NAMES = [s.label for s in Stage]


def parse_stage(value: "str | Stage") -> Stage:
    """Parse a lower-case stage name (``prep``, ``hic`` ...)."""
    if isinstance(value, Stage):
        return value
    key = str(value).strip().lower()
    for s in Stage:
        if s.label == key:
            return s
    raise ValueError(f"Unknown pipeline stage '{value}'. Choose one of: {', '.join(STAGE_NAMES)}")


def validate_stage_range(from_stage: "str | Stage", to_stage: "str | Stage") -> tuple:
    start, stop = parse_stage(from_stage), parse_stage(to_stage)
    if start > stop:
        raise InvalidStageRangeError(
            f"from_stage '{start.label}' comes after to_stage '{stop.label}'; nothing would run."
        )
    return start, stop


@dataclass(frozen=True)
class Artifacts:
    """Fixed artifact names under one working directory."""

    workdir: Path

    def _p(self, name: str) -> Path:
        return self.workdir / name

    @property
    def sorted_bam(self) -> Path:
        return self._p("reads.sorted.bam")

    @property
    def sorted_bam_index(self) -> Path:
        return self._p("reads.sorted.bam.bai")

    def merged(self, mapq: int) -> Path:
        return self._p(f"merged{mapq}.txt")

    def merged_index(self, mapq: int) -> Path:
        return self._p(f"merged{mapq}_index.txt")

    def hic(self, mapq: int) -> Path:
        return self._p("inter.hic" if mapq <= 1 else f"inter_{mapq}.hic")

    def hic_hists(self, mapq: int) -> Path:
        return self._p("inter_hists.m" if mapq <= 1 else f"inter_{mapq}_hists.m")

    def bedgraph(self, mapq: int) -> Path:
        return self._p("inter.bedgraph" if mapq <= 1 else f"inter_{mapq}.bedgraph")

    def bigwig(self, mapq: int) -> Path:
        return self._p("inter.bw" if mapq <= 1 else f"inter_{mapq}.bw")

    @property
    def hiccups_dir(self) -> Path:
        return self._p("hiccups_results")

    @property
    def arrowhead_dir(self) -> Path:
        return self._p("arrowhead_results")

    @property
    def phase_table(self) -> Path:
        return self._p("phased_variants.tsv")

    @property
    def reads_to_homologs(self) -> Path:
        return self._p("reads_to_homologs.txt")

    @property
    def diploid_mnd(self) -> Path:
        return self._p("diploid.mnd.txt")

    def diploid_hic(self, homolog: str = "") -> Path:
        return self._p(f"diploid_inter{'_' + homolog if homolog else ''}.hic")

    def diploid_bedgraph(self, kind: str) -> Path:
        return self._p(f"diploid_{kind}.bedgraph")

    def diploid_bigwig(self, kind: str, homolog: str = "") -> Path:
        return self._p(f"diploid_inter_{kind}{'_' + homolog if homolog else ''}.bw")

    @property
    def scratch(self) -> Path:
        return self._p("megamap_tmp")

    @property
    def summary_json(self) -> Path:
        return self._p("pipeline_summary.json")

    @property
    def report_html(self) -> Path:
        return self._p("report.html")

    def intermediates(self) -> List[Path]:
        """Text artifacts removed by ``cleanup``."""
        out: List[Path] = []
        for mapq in (1, 30):
            out += [self.merged(mapq), self.merged_index(mapq), self.bedgraph(mapq)]
        out += [self.diploid_mnd, self.diploid_bedgraph("raw"), self.diploid_bedgraph("corrected")]
        return out


@dataclass
class StageOutcome:
    stage: str
    status: str  # "completed" | "failed"
    runtime_seconds: float
    details: Dict[str, object] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class RunSummary:
    from_stage: str
    to_stage: str
    outcomes: List[StageOutcome] = field(default_factory=list)

    @property
    def completed(self) -> List[str]:
        return [o.stage for o in self.outcomes if o.status == "completed"]

    @property
    def success(self) -> bool:
        return all(o.status == "completed" for o in self.outcomes)


StageRunner = Callable[[], Optional[Dict[str, object]]]
Requirement = Callable[[], Sequence[Path]]


class StageController:
    """Drive stage runners in order.

    Parameters
    ----------
    runners:
        Stage -> zero-argument callable doing the work. It may return a dict
        of details for the summary.
    requirements:
        Stage -> callable listing the artifacts that must exist (and be
        non-empty) before the stage may start. A requirement callable may
        itself raise :class:`PreconditionError` for non-file preconditions.
    diploid_enabled:
        Whether phasing inputs were supplied.
    """

    def __init__(
        self,
        runners: Mapping[Stage, StageRunner],
        requirements: Optional[Mapping[Stage, Requirement]] = None,
        *,
        diploid_enabled: bool = False,
    ) -> None:
        self.runners = dict(runners)
        self.requirements = dict(requirements or {})
        self.diploid_enabled = diploid_enabled
        self.last_summary: Optional[RunSummary] = None

    def next_stage(self, stage: Stage) -> Optional[Stage]:
        if stage == Stage.DHS and not self.diploid_enabled:
            return Stage.CLEANUP
        if stage == Stage.CLEANUP:
            return None
        return Stage(stage + 1)

    def plan(self, from_stage: "str | Stage" = Stage.PREP, to_stage: "str | Stage" = Stage.CLEANUP) -> List[Stage]:
        """Ordered stages a run over ``[from_stage, to_stage]`` would execute."""
        start, stop = validate_stage_range(from_stage, to_stage)
        out: List[Stage] = []
        current: Optional[Stage] = start
        while current is not None and current <= stop:
            out.append(current)
            current = self.next_stage(current)
        return out

    def check_preconditions(self, stage: Stage) -> None:
        req = self.requirements.get(stage)
        if req is None:
            return
        missing = [p for p in req() if not artifact_ready(p)]
        if missing:
            raise PreconditionError(
                f"Cannot start stage '{stage.label}': missing or empty artifact(s): "
                + ", ".join(str(p) for p in missing),
                stage=stage.label,
                missing=missing,
            )

    def run(self, from_stage: "str | Stage" = Stage.PREP, to_stage: "str | Stage" = Stage.CLEANUP) -> RunSummary:
        """Run the planned stages; the first failure propagates after being recorded."""
        start, stop = validate_stage_range(from_stage, to_stage)
        summary = RunSummary(from_stage=start.label, to_stage=stop.label)
        self.last_summary = summary
        for stage in self.plan(start, stop):
            runner = self.runners.get(stage)
            logger.info("=== Stage %s ===", stage.label)
            t0 = time.time()
            try:
                self.check_preconditions(stage)
                details = runner() if runner is not None else None
            except Exception as e:
                summary.outcomes.append(
                    StageOutcome(stage.label, "failed", float(time.time() - t0), error=f"{type(e).__name__}: {e}")
                )
                raise
            summary.outcomes.append(StageOutcome(stage.label, "completed", float(time.time() - t0), dict(details or {})))
            logger.info("Stage %s done in %.1fs", stage.label, time.time() - t0)
        return summary
