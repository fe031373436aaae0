"""Stage runners wiring the record mappers, pool, merger and engines together.

``run_pipeline`` is the library entry point used by the ``megamap run`` CLI.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import __version__
from .alignments import (
    ALL_READ_TYPES,
    detect_platform,
    extra_contigs,
    junction_read_types,
    prepare_alignments,
    read_header,
)
from .config import PipelineConfig, load_chrom_sizes
from .diploid import (
    diploid_chrom_sizes,
    diploid_contacts_for_chromosome,
    diploid_loci_for_chromosome,
    split_homolog,
    split_homolog_bedgraph,
)
from .engines import Juicer, bedgraph_to_bigwig, write_chrom_sizes
from .errors import PreconditionError
from .homologs import (
    load_evidence,
    load_phased_variants,
    resolve_assignments,
    snp_evidence_for_chromosome,
    write_phase_table,
)
from .merge import iter_bedgraph, iter_contacts, merge_bedgraphs, merge_contacts, write_filtered
from .models import ContactRecord, LocusCountRecord
from .plotting import plot_chromosome_counts, plot_stage_runtimes
from .pool import PoolResult, run_chromosomes
from .records import ChromosomeOutput, contacts_for_chromosome, loci_for_chromosome
from .report import render_report
from .stages import Artifacts, RunSummary, Stage, StageController
from .utils import artifact_ready, ensure_outdir, remove_paths, write_json
from .validation import check_contig_overlap

logger = logging.getLogger(__name__)

_HOMOLOGS = (("-r", "r"), ("-a", "a"))
_DIPLOID_NORMS = ("VC", "VC_SQRT")


class MegaPipeline:
    """Runners and preconditions for every stage of one working directory."""

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config
        self.art = Artifacts(Path(config.workdir))
        self._sizes: Optional[List[Tuple[str, int]]] = None
        self._juicer: Optional[Juicer] = None

    # -----------------
    # shared helpers
    # -----------------
    @property
    def sizes(self) -> List[Tuple[str, int]]:
        if self._sizes is None:
            self._sizes = load_chrom_sizes(self.config.chrom_sizes)
        return self._sizes

    @property
    def chromosomes(self) -> List[str]:
        return [name for name, _ in self.sizes]

    @property
    def diploid_chromosomes(self) -> List[str]:
        excluded = set(self.config.excluded_chromosomes)
        return [c for c in self.chromosomes if c not in excluded]

    @property
    def juicer(self) -> Juicer:
        if self._juicer is None:
            if self.config.juicer_dir is None:
                raise PreconditionError("Juicer directory is not specified (--juicer-dir).", stage="hic")
            self._juicer = Juicer(Path(self.config.juicer_dir), java_opts=self.config.java_opts)
        return self._juicer

    @property
    def high_mapq(self) -> int:
        return max(self.config.mapq_levels)

    @property
    def reads_to_homologs_path(self) -> Path:
        if self.config.reads_to_homologs is not None:
            return Path(self.config.reads_to_homologs)
        return self.art.reads_to_homologs

    def _task_dir(self, name: str) -> Path:
        d = self.art.scratch / name
        # stale buffers from an interrupted run must not leak into this one
        remove_paths([d])
        return ensure_outdir(d)

    def _fan_out(self, stage: Stage, chroms: Sequence[str], worker: Callable[[str], Any], desc: str) -> PoolResult:
        pool = run_chromosomes(
            chroms,
            worker,
            concurrency=self.config.threads,
            executor=self.config.executor,
            progress=self.config.progress,
            desc=desc,
        )
        pool.raise_for_status(stage.label)
        return pool

    def _check_contigs(self) -> None:
        check_contig_overlap(self.chromosomes, read_header(self.art.sorted_bam).reference_names)

    def _platform_read_types(self, stage: Stage):
        try:
            platform = detect_platform(self.art.sorted_bam)
        except ValueError as e:
            raise PreconditionError(str(e), stage=stage.label) from e
        logger.info("Sequencing platform: %s", platform)
        return platform, junction_read_types(platform)

    # -----------------
    # preconditions
    # -----------------
    def _require_sorted_bam(self) -> List[Path]:
        return [self.art.sorted_bam, self.art.sorted_bam_index]

    def _require_hicnarrow(self) -> List[Path]:
        if not self.config.genome_id:
            raise PreconditionError(
                "Stage 'hicnarrow' requires a genome id (e.g. -g hg38). Provide one or skip this stage.",
                stage=Stage.HICNARROW.label,
            )
        return [self.art.hic(self.high_mapq)]

    def _require_diploid_hic(self) -> List[Path]:
        supplied = [p for p in (self.config.reads_to_homologs, self.config.phase_table, self.config.vcf) if p]
        if not supplied:
            raise PreconditionError(
                "Stage 'diploid_hic' needs phasing data: --vcf, --phase-table or --reads-to-homologs.",
                stage=Stage.DIPLOID_HIC.label,
            )
        return self._require_sorted_bam() + [Path(supplied[0])]

    def _require_diploid_dhs(self) -> List[Path]:
        return self._require_sorted_bam() + [self.reads_to_homologs_path]

    def requirements(self) -> Dict[Stage, Callable[[], Sequence[Path]]]:
        return {
            Stage.PREP: lambda: list(self.config.bams),
            Stage.HIC: self._require_sorted_bam,
            Stage.HICNARROW: self._require_hicnarrow,
            Stage.DHS: self._require_sorted_bam,
            Stage.DIPLOID_HIC: self._require_diploid_hic,
            Stage.DIPLOID_DHS: self._require_diploid_dhs,
        }

    def runners(self) -> Dict[Stage, Callable[[], Optional[Dict[str, object]]]]:
        return {
            Stage.PREP: self.run_prep,
            Stage.HIC: self.run_hic,
            Stage.HICNARROW: self.run_hicnarrow,
            Stage.DHS: self.run_dhs,
            Stage.DIPLOID_HIC: self.run_diploid_hic,
            Stage.DIPLOID_DHS: self.run_diploid_dhs,
            Stage.CLEANUP: self.run_cleanup,
        }

    def controller(self) -> StageController:
        return StageController(self.runners(), self.requirements(), diploid_enabled=self.config.diploid_enabled)

    # -----------------
    # prep
    # -----------------
    def run_prep(self) -> Dict[str, object]:
        logger.info("Extracting unique paired alignments from %d BAM(s) and sorting", len(self.config.bams))
        res = prepare_alignments(
            bam_paths=self.config.bams,
            out_bam=self.art.sorted_bam,
            min_mapq=1,
            read_types=ALL_READ_TYPES,
            threads=self.config.threads,
            progress=self.config.progress,
        )
        return {"counts": res["counts"]}

    # -----------------
    # hic
    # -----------------
    def build_contacts(self, mapq: int) -> Tuple[Path, Dict[str, object]]:
        """Contact pool at one MAPQ threshold, merged into ``merged<mapq>.txt``."""
        self._check_contigs()
        chroms = self.chromosomes + extra_contigs(self.art.sorted_bam, self.chromosomes)
        task_dir = self._task_dir(f"hic_q{mapq}")
        worker = partial(
            contacts_for_chromosome,
            bam_path=str(self.art.sorted_bam),
            min_mapq=mapq,
            out_dir=str(task_dir),
            read_types=ALL_READ_TYPES,
        )
        pool = self._fan_out(Stage.HIC, chroms, worker, desc=f"Contacts MAPQ>={mapq}")
        outputs: List[ChromosomeOutput] = [o for o in pool.outputs if o is not None]
        merged = self.art.merged(mapq)
        counts = merge_contacts(
            [o.paths["primary"] for o in outputs],
            [o.paths["side"] for o in outputs],
            merged,
            chunk_size=self.config.sort_chunk_size,
            tmpdir=self.art.scratch,
        )
        per_chrom = {o.chrom: o.stats["intra"] + o.stats["self_ligation"] + o.stats["inter"] for o in outputs}
        malformed = sum(o.stats["malformed"] for o in outputs)
        if malformed:
            logger.warning("MAPQ>=%d: skipped %d record(s) missing ip/mp/MQ tags", mapq, malformed)
        remove_paths([task_dir])
        return merged, {"records": counts, "malformed": malformed, "per_chromosome": per_chrom}

    def build_hic(self, mapq: int, merged: Path) -> Path:
        juicer = self.juicer
        out_hic = self.art.hic(mapq)
        threads = int(self.config.threads_hic or 1)
        index: Optional[Path] = None
        tmp: Optional[Path] = None
        if threads > 1:
            index = self.art.merged_index(mapq)
            if not artifact_ready(index):
                juicer.index_by_chr(merged, index)
            tmp = self._task_dir(f"pre_q{mapq}")
        stats = self.art.workdir / ("inter.txt" if mapq <= 1 else f"inter_{mapq}.txt")
        juicer.pre(
            merged,
            out_hic,
            self.config.chrom_sizes,
            resolutions=self.config.resolutions,
            mapq=mapq,
            stats_path=stats,
            hists_path=self.art.hic_hists(mapq),
            threads=threads,
            index=index,
            tmpdir=tmp,
        )
        juicer.add_norm(out_hic, threads=threads)
        if tmp is not None:
            remove_paths([tmp])
        return out_hic

    def run_hic(self) -> Dict[str, object]:
        details: Dict[str, object] = {}
        per_chrom: Dict[str, Dict[str, int]] = {}
        for mapq in self.config.mapq_levels:
            merged, info = self.build_contacts(mapq)
            per_chrom[f"MAPQ>={mapq}"] = info.pop("per_chromosome")  # type: ignore[assignment]
            details[f"mapq_{mapq}"] = info
            self.build_hic(mapq, merged)
            logger.info("Built %s", self.art.hic(mapq))
        details["per_chromosome"] = per_chrom
        return details

    # -----------------
    # hicnarrow
    # -----------------
    def run_hicnarrow(self) -> Dict[str, object]:
        hic = self.art.hic(self.high_mapq)
        assert self.config.genome_id is not None
        logger.info("Annotating loops and domains on %s", hic)
        self.juicer.hiccups(hic, genome_id=self.config.genome_id, cwd=self.art.workdir)
        self.juicer.arrowhead(hic, cwd=self.art.workdir)
        details: Dict[str, object] = {"hic": str(hic)}
        for key, d in (("loops", self.art.hiccups_dir), ("domains", self.art.arrowhead_dir)):
            if d.is_dir():
                details[key] = str(d)
            else:
                logger.warning("Expected annotation directory %s was not created", d)
        return details

    # -----------------
    # dhs
    # -----------------
    def run_dhs(self) -> Dict[str, object]:
        self._check_contigs()
        platform, read_types = self._platform_read_types(Stage.DHS)
        details: Dict[str, object] = {"platform": platform}
        per_chrom: Dict[str, Dict[str, int]] = {}
        for mapq in self.config.mapq_levels:
            task_dir = self._task_dir(f"dhs_q{mapq}")
            worker = partial(
                loci_for_chromosome,
                bam_path=str(self.art.sorted_bam),
                min_mapq=mapq,
                out_dir=str(task_dir),
                read_types=read_types,
            )
            pool = self._fan_out(Stage.DHS, self.chromosomes, worker, desc=f"Loci MAPQ>={mapq}")
            outputs: List[ChromosomeOutput] = [o for o in pool.outputs if o is not None]
            bedgraph = self.art.bedgraph(mapq)
            n = merge_bedgraphs([o.paths["bedgraph"] for o in outputs], bedgraph)
            bedgraph_to_bigwig(bedgraph, self.config.chrom_sizes, self.art.bigwig(mapq))
            remove_paths([task_dir])
            details[f"mapq_{mapq}"] = {"loci": n}
            per_chrom[f"MAPQ>={mapq}"] = {o.chrom: o.stats["reads"] for o in outputs}
        details["per_chromosome"] = per_chrom
        return details

    # -----------------
    # diploid_hic
    # -----------------
    def assign_reads(self) -> Dict[str, object]:
        """Produce ``reads_to_homologs.txt`` from a phase table or VCF."""
        chroms = self.diploid_chromosomes
        info: Dict[str, object] = {}
        if self.config.phase_table is not None:
            phase_table = Path(self.config.phase_table)
        else:
            assert self.config.vcf is not None
            variants, vstats = load_phased_variants(self.config.vcf, chromosomes=chroms, sample=self.config.sample)
            phase_table = write_phase_table(self.art.phase_table, variants)
            info["variants"] = vstats

        task_dir = self._task_dir("evidence")
        worker = partial(
            snp_evidence_for_chromosome,
            bam_path=str(self.art.sorted_bam),
            phase_table=str(phase_table),
            out_dir=str(task_dir),
            min_baseq=self.config.min_baseq,
        )
        pool = self._fan_out(Stage.DIPLOID_HIC, chroms, worker, desc="SNP evidence")
        assignment = resolve_assignments(load_evidence([p for p in pool.outputs if p is not None]))
        assignment.write(self.art.reads_to_homologs)
        remove_paths([task_dir])
        info.update({"reads_assigned": len(assignment), "reads_conflicting": assignment.conflicts})
        return info

    def _diploid_sizes_file(self) -> Path:
        return write_chrom_sizes(self.art.scratch / "diploid.chrom.sizes", diploid_chrom_sizes(self.sizes))

    def run_diploid_hic(self) -> Dict[str, object]:
        details: Dict[str, object] = {}
        if self.config.reads_to_homologs is None:
            details["assignment"] = self.assign_reads()
        else:
            logger.info("Using supplied reads-to-homologs file %s", self.config.reads_to_homologs)

        chroms = self.diploid_chromosomes
        task_dir = self._task_dir("diploid_hic")
        worker = partial(
            diploid_contacts_for_chromosome,
            bam_path=str(self.art.sorted_bam),
            reads_to_homologs=str(self.reads_to_homologs_path),
            out_dir=str(task_dir),
        )
        pool = self._fan_out(Stage.DIPLOID_HIC, chroms, worker, desc="Diploid contacts")
        outputs: List[ChromosomeOutput] = [o for o in pool.outputs if o is not None]
        counts = merge_contacts([o.paths["primary"] for o in outputs], [], self.art.diploid_mnd)
        remove_paths([task_dir])
        details["contacts"] = counts["primary"]
        details["per_chromosome"] = {"diploid contacts": {o.chrom: o.stats["contacts"] for o in outputs}}

        juicer = self.juicer
        resolutions = self.config.resolutions
        if self.config.separate_homologs:
            for suffix, homolog in _HOMOLOGS:
                mnd = self.art.scratch / f"diploid{suffix}.mnd.txt"
                write_filtered(mnd, split_homolog(iter_contacts(self.art.diploid_mnd), suffix), ContactRecord.to_line)
                out_hic = self.art.diploid_hic(homolog)
                juicer.pre(mnd, out_hic, self.config.chrom_sizes, resolutions=resolutions)
                juicer.add_norm(out_hic, norms=_DIPLOID_NORMS)
                remove_paths([mnd])
        else:
            out_hic = self.art.diploid_hic()
            juicer.pre(self.art.diploid_mnd, out_hic, self._diploid_sizes_file(), resolutions=resolutions)
            juicer.add_norm(out_hic, norms=_DIPLOID_NORMS)
        return details

    # -----------------
    # diploid_dhs
    # -----------------
    def run_diploid_dhs(self) -> Dict[str, object]:
        platform, read_types = self._platform_read_types(Stage.DIPLOID_DHS)
        chroms = self.diploid_chromosomes
        task_dir = self._task_dir("diploid_dhs")
        worker = partial(
            diploid_loci_for_chromosome,
            bam_path=str(self.art.sorted_bam),
            reads_to_homologs=str(self.reads_to_homologs_path),
            out_dir=str(task_dir),
            read_types=read_types,
        )
        pool = self._fan_out(Stage.DIPLOID_DHS, chroms, worker, desc="Diploid loci")
        outputs: List[ChromosomeOutput] = [o for o in pool.outputs if o is not None]

        details: Dict[str, object] = {"platform": platform}
        sizes_file = None if self.config.separate_homologs else self._diploid_sizes_file()
        for kind in ("raw", "corrected"):
            bedgraph = self.art.diploid_bedgraph(kind)
            details[f"{kind}_loci"] = merge_bedgraphs(
                [o.paths[kind] for o in outputs],
                bedgraph,
                sort=True,
                chunk_size=self.config.sort_chunk_size,
                tmpdir=self.art.scratch,
            )
            if sizes_file is not None:
                bedgraph_to_bigwig(bedgraph, sizes_file, self.art.diploid_bigwig(kind))
                continue
            for suffix, homolog in _HOMOLOGS:
                part = self.art.scratch / f"diploid_{kind}{suffix}.bedgraph"
                write_filtered(part, split_homolog_bedgraph(iter_bedgraph(bedgraph), suffix), LocusCountRecord.to_bedgraph)
                bedgraph_to_bigwig(part, self.config.chrom_sizes, self.art.diploid_bigwig(kind, homolog))
                remove_paths([part])
        remove_paths([task_dir])
        return details

    # -----------------
    # cleanup
    # -----------------
    def run_cleanup(self) -> Dict[str, object]:
        removed = remove_paths([self.art.scratch] + self.art.intermediates())
        logger.info("Removed %d intermediate artifact(s)", removed)
        return {"removed": removed}

    def final_outputs(self) -> List[str]:
        candidates = [self.art.sorted_bam]
        for mapq in self.config.mapq_levels:
            candidates += [self.art.hic(mapq), self.art.bigwig(mapq)]
        candidates += [self.art.hiccups_dir, self.art.arrowhead_dir]
        candidates += [self.art.diploid_hic(), self.art.diploid_hic("r"), self.art.diploid_hic("a")]
        for kind in ("raw", "corrected"):
            candidates += [self.art.diploid_bigwig(kind)] + [self.art.diploid_bigwig(kind, h) for _, h in _HOMOLOGS]
        candidates.append(self.art.reads_to_homologs)
        return [str(p.name) for p in candidates if p.exists()]


def _write_report(pipe: MegaPipeline, summary: RunSummary) -> None:
    config = asdict(pipe.config)
    summary_dict = asdict(summary)
    write_json(pipe.art.summary_json, {"version": __version__, "config": config, "summary": summary_dict})

    plots: Dict[str, str] = {}
    plot_dir = pipe.art.workdir / "plots"
    for o in summary.outcomes:
        per_chrom = o.details.get("per_chromosome")
        if isinstance(per_chrom, dict) and per_chrom:
            png = plot_dir / f"{o.stage}_per_chromosome.png"
            plot_chromosome_counts(counts=per_chrom, out_png=png, title=f"{o.stage}: records per chromosome")
            plots[f"{o.stage}_per_chromosome"] = str(png.relative_to(pipe.art.workdir))
    if summary.outcomes:
        png = plot_dir / "stage_runtimes.png"
        plot_stage_runtimes(
            stages=[o.stage for o in summary.outcomes],
            seconds=[o.runtime_seconds for o in summary.outcomes],
            out_png=png,
        )
        plots["stage_runtimes"] = str(png.relative_to(pipe.art.workdir))

    render_report(
        outdir=pipe.art.workdir,
        version=__version__,
        config=config,
        summary=summary_dict,
        plots=plots,
        outputs=pipe.final_outputs(),
    )


def run_pipeline(config: PipelineConfig, *, report: bool = True) -> RunSummary:
    """Validate ``config`` and run the requested stage range.

    The summary JSON and HTML report are written even when a stage fails;
    the failure is then re-raised.
    """
    config.validate()
    ensure_outdir(config.workdir)
    pipe = MegaPipeline(config)
    controller = pipe.controller()
    logger.info("Stage plan: %s", " -> ".join(s.label for s in controller.plan(config.from_stage, config.to_stage)))
    try:
        summary = controller.run(config.from_stage, config.to_stage)
    except Exception:
        if report and controller.last_summary is not None:
            _write_report(pipe, controller.last_summary)
        raise
    if report:
        _write_report(pipe, summary)
    return summary
