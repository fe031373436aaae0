"""Matrix and track engines invoked as black boxes.

* juicer_tools ``pre`` / ``addNorm`` build and normalize ``.hic`` files,
* juicer ``hiccups`` / ``arrowhead`` scripts annotate loops and domains,
* ``index_by_chr.awk`` writes the per-chromosome index used by threaded ``pre``,
* ``bedGraphToBigWig`` encodes accessibility tracks.

Every call checks both the exit status and that the expected artifact was
produced; either failure raises :class:`~megamap.errors.ExternalEngineError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ExternalEngineError
from .external import ExternalCommandError, run_command
from .utils import artifact_ready, atomic_output

logger = logging.getLogger(__name__)

# index_by_chr.awk chunk size (records per index block)
INDEX_CHUNK = 500_000


def _run_engine(
    engine: str,
    cmd: Sequence[str],
    *,
    artifact: Optional[Path] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    stdout_path: Optional[Path] = None,
) -> None:
    logger.info("Running %s", engine)
    try:
        run_command(cmd, cwd=cwd, env=env, stdout_path=stdout_path)
    except ExternalCommandError as e:
        raise ExternalEngineError(
            f"{engine} failed (exit code {e.returncode}).\n{e}",
            engine=engine,
            returncode=e.returncode,
            artifact=artifact,
        ) from e
    except FileNotFoundError as e:
        raise ExternalEngineError(f"{engine} could not be started: {e}", engine=engine, artifact=artifact) from e
    if artifact is not None and not artifact_ready(artifact):
        raise ExternalEngineError(
            f"{engine} reported success but did not produce {artifact}",
            engine=engine,
            artifact=artifact,
        )


def write_chrom_sizes(path: str | Path, sizes: Sequence[Tuple[str, int]]) -> Path:
    path = Path(path)
    with atomic_output(path) as fh:
        for name, length in sizes:
            fh.write(f"{name}\t{length}\n")
    return path


@dataclass(frozen=True)
class Juicer:
    """A Juicer installation (``<juicer_dir>/scripts``, ``<juicer_dir>/references``)."""

    juicer_dir: Path
    java_opts: Optional[str] = None

    @property
    def juicer_tools(self) -> Path:
        return self.juicer_dir / "scripts" / "juicer_tools"

    @property
    def hiccups_script(self) -> Path:
        return self.juicer_dir / "scripts" / "juicer_hiccups.sh"

    @property
    def arrowhead_script(self) -> Path:
        return self.juicer_dir / "scripts" / "juicer_arrowhead.sh"

    @property
    def motif_dir(self) -> Path:
        return self.juicer_dir / "references" / "motif"

    @property
    def index_script(self) -> Path:
        scripts = self.juicer_dir / "scripts"
        for candidate in (scripts / "index_by_chr.awk", scripts / "common" / "index_by_chr.awk"):
            if candidate.exists():
                return candidate
        return scripts / "index_by_chr.awk"

    def _env(self) -> Optional[Dict[str, str]]:
        if not self.java_opts:
            return None
        return {"_JAVA_OPTIONS": self.java_opts, "IBM_JAVA_OPTIONS": self.java_opts}

    def index_by_chr(self, mnd: Path, out: Path, *, chunk: int = INDEX_CHUNK) -> Path:
        _run_engine(
            "index_by_chr.awk",
            ["awk", "-f", str(self.index_script), str(mnd), str(chunk)],
            artifact=out,
            stdout_path=out,
        )
        return out

    def pre(
        self,
        mnd: Path,
        out_hic: Path,
        chrom_sizes: Path,
        *,
        resolutions: Sequence[int],
        mapq: Optional[int] = None,
        stats_path: Optional[Path] = None,
        hists_path: Optional[Path] = None,
        threads: int = 1,
        index: Optional[Path] = None,
        tmpdir: Optional[Path] = None,
    ) -> Path:
        """Build a ``.hic`` file from a short-format mnd file."""
        cmd: List[str] = [str(self.juicer_tools), "pre", "-n"]
        if stats_path is not None:
            cmd += ["-s", str(stats_path)]
        if hists_path is not None:
            cmd += ["-g", str(hists_path)]
        if mapq is not None:
            cmd += ["-q", str(mapq)]
        cmd += ["-r", ",".join(str(r) for r in resolutions)]
        if threads > 1 and index is not None:
            cmd += ["--threads", str(threads), "-i", str(index)]
            if tmpdir is not None:
                cmd += ["-t", str(tmpdir)]
        cmd += [str(mnd), str(out_hic), str(chrom_sizes)]
        _run_engine("juicer_tools pre", cmd, artifact=out_hic, env=self._env())
        return out_hic

    def add_norm(self, hic: Path, *, threads: int = 1, norms: Optional[Sequence[str]] = None) -> Path:
        cmd: List[str] = [str(self.juicer_tools), "addNorm"]
        if threads > 1:
            cmd += ["--threads", str(threads)]
        if norms:
            cmd += ["-k", ",".join(norms)]
        cmd.append(str(hic))
        _run_engine("juicer_tools addNorm", cmd, artifact=hic, env=self._env())
        return hic

    def hiccups(self, hic: Path, *, genome_id: str, cwd: Path) -> None:
        cmd = [str(self.hiccups_script), "-j", str(self.juicer_tools), "-i", str(hic)]
        cmd += ["-m", str(self.motif_dir), "-g", genome_id]
        _run_engine("juicer_hiccups.sh", cmd, cwd=cwd, env=self._env())

    def arrowhead(self, hic: Path, *, cwd: Path) -> None:
        cmd = [str(self.arrowhead_script), "-j", str(self.juicer_tools), "-i", str(hic)]
        _run_engine("juicer_arrowhead.sh", cmd, cwd=cwd, env=self._env())


def bedgraph_to_bigwig(bedgraph: Path, chrom_sizes: Path, out_bw: Path) -> Path:
    """Encode a sorted bedGraph as bigWig."""
    _run_engine("bedGraphToBigWig", ["bedGraphToBigWig", str(bedgraph), str(chrom_sizes), str(out_bw)], artifact=out_bw)
    return out_bw
