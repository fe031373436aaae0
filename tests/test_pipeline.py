import json
import os
import stat
from pathlib import Path

import pytest

from megamap.config import PipelineConfig
from megamap.errors import ExternalEngineError, PreconditionError
from megamap.pipeline import run_pipeline
from megamap.toy_data import make_toy_data

# juicer_tools stand-in: `pre` writes its output (second to last argument)
FAKE_JUICER_TOOLS = """#!/bin/sh
if [ "$1" = "pre" ]; then
  eval "out=\\${$(($# - 1))}"
  echo "hic" > "$out"
fi
exit 0
"""

FAKE_BIGWIG = """#!/bin/sh
cp "$1" "$3"
"""

FAILING_TOOL = """#!/bin/sh
echo "broken engine" >&2
exit 3
"""


def _script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def juicer_dir(tmp_path):
    d = tmp_path / "juicer"
    _script(d / "scripts" / "juicer_tools", FAKE_JUICER_TOOLS)
    _script(d / "scripts" / "juicer_hiccups.sh", "#!/bin/sh\nmkdir -p hiccups_results\n")
    _script(d / "scripts" / "juicer_arrowhead.sh", "#!/bin/sh\nmkdir -p arrowhead_results\n")
    return d


@pytest.fixture
def fake_bigwig(tmp_path, monkeypatch):
    bindir = tmp_path / "bin"
    _script(bindir / "bedGraphToBigWig", FAKE_BIGWIG)
    monkeypatch.setenv("PATH", str(bindir) + os.pathsep + os.environ.get("PATH", ""))
    return bindir


@pytest.fixture
def toy(tmp_path):
    return make_toy_data(outdir=tmp_path / "toy")


def _config(tmp_path, toy, juicer_dir, **kw):
    base = dict(
        workdir=tmp_path / "work",
        chrom_sizes=toy["chrom_sizes"],
        juicer_dir=juicer_dir,
        bams=toy["bams"],
        genome_id="toy",
        resolutions=[1000, 100],
        threads=2,
        threads_hic=1,
        executor="thread",
        progress=False,
    )
    base.update(kw)
    return PipelineConfig(**base)


def _lines(path):
    return Path(path).read_text(encoding="utf-8").splitlines()


def test_haploid_stages_build_contacts_tracks_and_report(tmp_path, toy, juicer_dir, fake_bigwig):
    cfg = _config(tmp_path, toy, juicer_dir, to_stage="dhs")
    summary = run_pipeline(cfg)
    assert summary.completed == ["prep", "hic", "hicnarrow", "dhs"]

    work = tmp_path / "work"
    merged1 = _lines(work / "merged1.txt")
    assert len(merged1) == 17
    assert merged1.count("0 chr2 301 0 0 chr2 301 1") == 1
    # cross-chromosome contacts close the file, owned by chr1
    assert [line.split()[1] + ":" + line.split()[5] for line in merged1[-3:]] == ["chr1:chr2"] * 3
    assert any(line.split()[1] == "chrUn" for line in merged1)

    merged30 = _lines(work / "merged30.txt")
    assert len(merged30) == 16
    assert not any(line.startswith("0 chr1 101 ") for line in merged30)

    for name in ("inter.hic", "inter_30.hic", "inter.bw", "inter_30.bw", "report.html"):
        assert (work / name).exists(), name
    # accessibility counts only cover chrom.sizes chromosomes
    assert not any(line.startswith("chrUn") for line in _lines(work / "inter.bedgraph"))

    data = json.loads((work / "pipeline_summary.json").read_text(encoding="utf-8"))
    hic = next(o for o in data["summary"]["outcomes"] if o["stage"] == "hic")
    assert hic["details"]["mapq_1"]["records"] == {"primary": 14, "side": 3}
    narrow = next(o for o in data["summary"]["outcomes"] if o["stage"] == "hicnarrow")
    assert narrow["details"]["loops"] == str(work / "hiccups_results")
    assert narrow["details"]["domains"] == str(work / "arrowhead_results")
    report = (work / "report.html").read_text(encoding="utf-8")
    assert "<code>hiccups_results</code>" in report and "<code>arrowhead_results</code>" in report
    assert (work / "plots" / "hic_per_chromosome.png").exists()
    assert not (work / "megamap_tmp" / "hic_q1").exists()


def test_diploid_stages_resume_from_prepared_alignments(tmp_path, toy, juicer_dir, fake_bigwig):
    run_pipeline(_config(tmp_path, toy, juicer_dir, to_stage="prep"), report=False)

    cfg = _config(
        tmp_path, toy, juicer_dir, vcf=toy["vcf"], from_stage="diploid_hic", to_stage="diploid_dhs"
    )
    summary = run_pipeline(cfg, report=False)
    assert summary.completed == ["diploid_hic", "diploid_dhs"]

    work = tmp_path / "work"
    rows = [line.split("\t") for line in _lines(work / "reads_to_homologs.txt")]
    labels = {r[0]: r[1] for r in rows}
    assert labels == {f"hap{i}": ("chr1-a" if i % 2 else "chr1-r") for i in range(6)}
    assert summary.outcomes[0].details["assignment"]["reads_conflicting"] == 1

    mnd = _lines(work / "diploid.mnd.txt")
    assert len(mnd) == 6
    assert mnd[0] == "0 chr1-a 483 0 1 chr1-a 1211 1"
    assert [line.split()[1] for line in mnd] == ["chr1-a"] * 3 + ["chr1-r"] * 3
    assert (work / "diploid_inter.hic").exists()

    assert len(_lines(work / "diploid_raw.bedgraph")) == 12
    assert len(_lines(work / "diploid_corrected.bedgraph")) == 6
    assert (work / "diploid_inter_corrected.bw").exists()

    cleanup = run_pipeline(_config(tmp_path, toy, juicer_dir, from_stage="cleanup"), report=False)
    assert cleanup.completed == ["cleanup"]
    assert not (work / "diploid.mnd.txt").exists()
    assert not (work / "megamap_tmp").exists()
    assert (work / "diploid_inter.hic").exists()


def test_separate_homologs_split_maps(tmp_path, toy, juicer_dir, fake_bigwig):
    run_pipeline(_config(tmp_path, toy, juicer_dir, to_stage="prep"), report=False)
    cfg = _config(
        tmp_path,
        toy,
        juicer_dir,
        vcf=toy["vcf"],
        separate_homologs=True,
        from_stage="diploid_hic",
        to_stage="diploid_dhs",
    )
    run_pipeline(cfg, report=False)
    work = tmp_path / "work"
    for name in ("diploid_inter_r.hic", "diploid_inter_a.hic", "diploid_inter_raw_r.bw", "diploid_inter_corrected_a.bw"):
        assert (work / name).exists(), name
    assert not (work / "diploid_inter.hic").exists()


def test_diploid_start_without_phasing_fails_precondition(tmp_path, toy, juicer_dir):
    run_pipeline(_config(tmp_path, toy, juicer_dir, to_stage="prep"), report=False)
    with pytest.raises(PreconditionError) as ei:
        run_pipeline(_config(tmp_path, toy, juicer_dir, from_stage="diploid_hic", to_stage="diploid_hic"))
    assert ei.value.stage == "diploid_hic"
    # the report is still written for the failed run
    assert (tmp_path / "work" / "report.html").exists()


def test_hic_without_prepared_alignments_fails_precondition(tmp_path, toy, juicer_dir):
    with pytest.raises(PreconditionError) as ei:
        run_pipeline(_config(tmp_path, toy, juicer_dir, from_stage="hic", to_stage="hic"), report=False)
    assert "reads.sorted.bam" in str(ei.value)


def test_engine_failure_halts_pipeline(tmp_path, toy, juicer_dir):
    _script(juicer_dir / "scripts" / "juicer_tools", FAILING_TOOL)
    with pytest.raises(ExternalEngineError) as ei:
        run_pipeline(_config(tmp_path, toy, juicer_dir, to_stage="hic"), report=False)
    assert ei.value.engine == "juicer_tools pre"
    assert ei.value.returncode == 3
    # contacts were merged before the engine ran
    assert (tmp_path / "work" / "merged1.txt").exists()
