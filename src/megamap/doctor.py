"""Environment self-checks.

This module powers the ``megamap doctor`` CLI command. Record mapping runs in
Python (pysam/htslib), but matrix building needs Java and a Juicer
installation, and accessibility tracks need ``bedGraphToBigWig`` from the
UCSC kent utilities.
"""

from __future__ import annotations

import logging
import platform
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .external import ExternalCommandError, run_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    detail: str
    howto: Optional[str] = None


def _which(name: str) -> Optional[str]:
    return shutil.which(name)


def check_python() -> CheckResult:
    v = platform.python_version()
    return CheckResult(name="python", ok=True, detail=f"Python {v}")


def check_pysam() -> CheckResult:
    import pysam

    return CheckResult(name="pysam", ok=True, detail=f"pysam {pysam.__version__} (htslib {pysam.version.__htslib_version__})")


def check_executable(name: str, *, howto: Optional[str] = None) -> CheckResult:
    p = _which(name)
    if p is None:
        return CheckResult(name=name, ok=False, detail="not found in PATH", howto=howto)
    return CheckResult(name=name, ok=True, detail=p)


def check_java() -> CheckResult:
    howto = (
        "Install a Java runtime (>= 8), e.g.\n"
        "Ubuntu: sudo apt-get install -y default-jre\n"
        "Conda/mamba: mamba install -c conda-forge openjdk"
    )
    p = _which("java")
    if p is None:
        return CheckResult(name="java", ok=False, detail="not found in PATH", howto=howto)
    try:
        cp = run_command(["java", "-version"], check=True, capture=True, text=True)
    except ExternalCommandError as e:
        return CheckResult(name="java", ok=False, detail=f"java present but not usable: {e}", howto=howto)
    # java -version prints to stderr
    first = (cp.stderr or cp.stdout or "").strip().splitlines()
    return CheckResult(name="java", ok=True, detail=first[0] if first else p)


def check_juicer(juicer_dir: Optional[str | Path]) -> CheckResult:
    howto = (
        "Point --juicer-dir to a Juicer checkout containing scripts/juicer_tools\n"
        "(see https://github.com/aidenlab/juicer)."
    )
    if juicer_dir is None:
        return CheckResult(name="juicer", ok=False, detail="--juicer-dir not given", howto=howto)
    scripts = Path(juicer_dir) / "scripts"
    missing = [n for n in ("juicer_tools", "juicer_hiccups.sh", "juicer_arrowhead.sh") if not (scripts / n).exists()]
    if missing:
        return CheckResult(name="juicer", ok=False, detail=f"missing in {scripts}: {', '.join(missing)}", howto=howto)
    return CheckResult(name="juicer", ok=True, detail=str(scripts))


def collect_checks(*, juicer_dir: Optional[str | Path] = None) -> Dict[str, CheckResult]:
    """Run all checks and return a mapping name->result."""
    checks: Dict[str, CheckResult] = {}

    checks["python"] = check_python()
    checks["pysam"] = check_pysam()
    checks["java"] = check_java()
    checks["juicer"] = check_juicer(juicer_dir)
    checks["bedGraphToBigWig"] = check_executable(
        "bedGraphToBigWig",
        howto=(
            "Download from http://hgdownload.soe.ucsc.edu/admin/exe/\n"
            "Conda/mamba: mamba install -c bioconda ucsc-bedgraphtobigwig"
        ),
    )
    checks["awk"] = check_executable(
        "awk",
        howto="Ubuntu: sudo apt-get install -y gawk",
    )

    return checks
