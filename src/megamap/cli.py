from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .config import DEFAULT_EXCLUDE_CHR, PipelineConfig, parse_resolutions
from .doctor import collect_checks
from .external import ExternalCommandError
from .pipeline import MegaPipeline, run_pipeline
from .pool import default_concurrency
from .stages import STAGE_NAMES, Artifacts, StageController
from .toy_data import make_toy_data


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _resolutions(value: str) -> list:
    try:
        return parse_resolutions(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    if isinstance(err, ExternalCommandError):
        msg = str(err)
    else:
        msg = f"{err.__class__.__name__}: {err}"

    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _abs(p: Optional[str]) -> Optional[Path]:
    return Path(p).expanduser().resolve() if p else None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="megamap",
        description=(
            "megamap: aggregate Hi-C maps and chromatin accessibility tracks from multiple "
            "Juicer experiments, with optional diploid (homolog-resolved) outputs."
        ),
    )
    p.add_argument("--version", action="version", version=f"megamap {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # run
    # -----------------
    r = sub.add_parser(
        "run",
        help="Run the staged pipeline on merged_dedup BAMs from one or more experiments.",
    )
    r.add_argument(
        "bams",
        nargs="*",
        type=_path_exists,
        help="merged_dedup.bam of each experiment (needed by the prep stage only).",
    )
    r.add_argument(
        "-c",
        "--chrom-sizes",
        required=True,
        type=_path_exists,
        help="chrom.sizes file used when running Juicer.",
    )
    r.add_argument("-o", "--workdir", default=".", help="Working directory for all artifacts (default: cwd).")
    r.add_argument("-g", "--genome-id", default=None, help="Genome id for the motif finder, e.g. hg38.")
    r.add_argument(
        "-r",
        "--resolutions",
        type=_resolutions,
        default=None,
        help="Comma separated resolutions for the .hic files (default: 2500000,...,10).",
    )
    r.add_argument("--vcf", type=_path_exists, default=None, help="Phased VCF; enables the diploid stages.")
    r.add_argument("--sample", default=None, help="VCF sample name (default: first sample).")
    r.add_argument(
        "-p",
        "--phase-table",
        type=_path_exists,
        default=None,
        help="Pre-computed phased_variants.tsv; enables the diploid stages.",
    )
    r.add_argument(
        "--reads-to-homologs",
        type=_path_exists,
        default=None,
        help="Pre-computed reads_to_homologs file; skips SNP evidence extraction.",
    )
    r.add_argument(
        "-C",
        "--exclude-chr-from-diploid",
        dest="exclude_chr",
        default=DEFAULT_EXCLUDE_CHR,
        help=f"'|' separated chromosomes to ignore in the diploid stages (default: {DEFAULT_EXCLUDE_CHR}).",
    )
    r.add_argument(
        "--separate-homologs",
        action="store_true",
        help="Build separate _r/_a maps and tracks instead of one interleaved diploid map.",
    )
    r.add_argument("--juicer-dir", default=None, help="Juicer installation (containing scripts/juicer_tools).")
    r.add_argument(
        "-t",
        "--threads",
        type=int,
        default=None,
        help="Chromosome tasks in flight (default: half the cores, capped by memory).",
    )
    r.add_argument("-T", "--threads-hic", type=int, default=None, help="Threads for juicer_tools pre (default: --threads).")
    r.add_argument("--from-stage", choices=STAGE_NAMES, default="prep", help="Fast-forward to a stage.")
    r.add_argument("--to-stage", choices=STAGE_NAMES, default="cleanup", help="Exit after a stage.")
    r.add_argument("--min-baseq", type=int, default=20, help="Minimum base quality for SNV evidence.")
    r.add_argument(
        "--sort-chunk-size",
        type=int,
        default=1_000_000,
        help="Records held in memory per run when sorting cross-chromosome contacts.",
    )
    r.add_argument("--java-opts", default=None, help="Value for _JAVA_OPTIONS, e.g. '-Xmx50g'.")
    r.add_argument(
        "--executor",
        choices=["process", "thread"],
        default="process",
        help="Worker pool flavour for chromosome tasks.",
    )
    r.add_argument("--no-progress", action="store_true", help="Disable progress bars.")
    r.add_argument("--no-report", action="store_true", help="Do not write report.html.")
    r.add_argument("--dry-run", action="store_true", help="Validate inputs and print the stage plan.")
    r.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # stages
    # -----------------
    s = sub.add_parser("stages", help="Print the stages a run would execute.")
    s.add_argument("--from-stage", choices=STAGE_NAMES, default="prep")
    s.add_argument("--to-stage", choices=STAGE_NAMES, default="cleanup")
    s.add_argument("--diploid", action="store_true", help="Assume phasing data is supplied.")

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate tiny Juicer-style BAMs, chrom.sizes and a phased VCF for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # doctor
    # -----------------
    d = sub.add_parser(
        "doctor",
        help="Check your environment for required external tools (java/juicer/bedGraphToBigWig).",
    )
    d.add_argument("--juicer-dir", default=None, help="Juicer installation to check.")
    d.add_argument("--dry-run", action="store_true", help="Print checks without exiting nonzero.")
    d.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


def _config_from_args(args: argparse.Namespace, workdir: Path) -> PipelineConfig:
    threads = args.threads if args.threads is not None else default_concurrency()
    kwargs = dict(
        workdir=workdir,
        chrom_sizes=_abs(args.chrom_sizes),
        juicer_dir=_abs(args.juicer_dir),
        bams=[_abs(b) for b in args.bams],
        genome_id=args.genome_id,
        vcf=_abs(args.vcf),
        sample=args.sample,
        phase_table=_abs(args.phase_table),
        reads_to_homologs=_abs(args.reads_to_homologs),
        exclude_chr=args.exclude_chr,
        separate_homologs=bool(args.separate_homologs),
        threads=int(threads),
        threads_hic=args.threads_hic,
        from_stage=args.from_stage,
        to_stage=args.to_stage,
        min_baseq=int(args.min_baseq),
        sort_chunk_size=int(args.sort_chunk_size),
        java_opts=args.java_opts,
        executor=args.executor,
        progress=not bool(args.no_progress),
    )
    if args.resolutions is not None:
        kwargs["resolutions"] = args.resolutions
    return PipelineConfig(**kwargs)


def cmd_run(args: argparse.Namespace) -> int:
    workdir = Path(args.workdir).expanduser().resolve()
    log_path = _log_path(workdir, "megamap.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("megamap")
    logger.info("megamap %s", __version__)

    try:
        config = _config_from_args(args, workdir)

        if args.dry_run:
            config.validate()
            plan = MegaPipeline(config).controller().plan(config.from_stage, config.to_stage)
            print("Dry-run: inputs look OK.")
            print(f"Diploid stages enabled: {config.diploid_enabled}")
            print("Planned stages: " + " -> ".join(s.label for s in plan))
            print(f"Working directory: {workdir}")
            return 0

        summary = run_pipeline(config, report=not bool(args.no_report))
        logger.info("Completed stages: %s", ", ".join(summary.completed))
        print(str(Artifacts(workdir).report_html) if not args.no_report else str(workdir))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_stages(args: argparse.Namespace) -> int:
    try:
        plan = StageController({}, diploid_enabled=bool(args.diploid)).plan(args.from_stage, args.to_stage)
    except ValueError as e:
        return _handle_error(e)
    for stage in plan:
        print(stage.label)
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)

    checks = collect_checks(juicer_dir=args.juicer_dir)

    # Human-readable output
    lines = []
    ok_all = True
    for name, r in checks.items():
        status = "OK" if r.ok else "MISSING"
        lines.append(f"{name:16s} : {status:7s}  {r.detail}")
        if not r.ok:
            ok_all = False

    print("\n".join(lines))

    # Guidance
    for name, r in checks.items():
        if not r.ok and r.howto:
            print("\n---")
            print(f"How to install/fix '{name}':")
            print(r.howto)

    if args.dry_run:
        return 0
    return 0 if ok_all else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "run":
        return cmd_run(args)
    if args.cmd == "stages":
        return cmd_stages(args)
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "doctor":
        return cmd_doctor(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
