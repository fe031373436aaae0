from pathlib import Path

import pytest

from megamap.config import PipelineConfig, load_chrom_sizes, parse_exclude, parse_resolutions
from megamap.doctor import check_juicer, collect_checks
from megamap.errors import InvalidStageRangeError
from megamap.stages import Stage
from megamap.validation import check_contig_overlap


def _sizes(tmp_path: Path, text: str) -> Path:
    p = tmp_path / "genome.chrom.sizes"
    p.write_text(text, encoding="utf-8")
    return p


def test_load_chrom_sizes_keeps_order_and_rejects_duplicates(tmp_path):
    assert load_chrom_sizes(_sizes(tmp_path, "chr2\t10\nchr1\t20\n\n")) == [("chr2", 10), ("chr1", 20)]
    with pytest.raises(ValueError, match="duplicate"):
        load_chrom_sizes(_sizes(tmp_path, "chr1\t10\nchr1\t20\n"))
    with pytest.raises(ValueError, match="empty"):
        load_chrom_sizes(_sizes(tmp_path, "\n"))


def test_parse_resolutions_and_exclude():
    assert parse_resolutions("1000, 500,") == [1000, 500]
    with pytest.raises(ValueError):
        parse_resolutions("100,-5")
    assert parse_exclude("Y|chrY|MT|chrM") == ["Y", "chrY", "MT", "chrM"]
    assert parse_exclude("") == []


def test_config_defaults(tmp_path):
    cfg = PipelineConfig(workdir=tmp_path, chrom_sizes=_sizes(tmp_path, "chr1\t10\n"), threads=3, from_stage="dhs")
    assert cfg.threads_hic == 3
    assert cfg.from_stage is Stage.DHS
    assert cfg.resolutions[0] == 2500000 and cfg.resolutions[-1] == 10
    assert not cfg.diploid_enabled
    assert "chrM" in cfg.excluded_chromosomes


def test_validate_reports_actionable_errors(tmp_path):
    sizes = _sizes(tmp_path, "chr1\t10\n")
    with pytest.raises(InvalidStageRangeError):
        PipelineConfig(workdir=tmp_path, chrom_sizes=sizes, from_stage="hic", to_stage="prep").validate()
    with pytest.raises(ValueError, match="input BAM"):
        PipelineConfig(workdir=tmp_path, chrom_sizes=sizes, to_stage="prep").validate()
    with pytest.raises(ValueError, match="--juicer-dir"):
        PipelineConfig(workdir=tmp_path, chrom_sizes=sizes, from_stage="hic").validate()
    with pytest.raises(ValueError, match="--vcf"):
        PipelineConfig(
            workdir=tmp_path, chrom_sizes=sizes, from_stage="dhs", to_stage="dhs", vcf=tmp_path / "none.vcf.gz"
        ).validate()
    # dhs alone needs neither bams nor juicer
    PipelineConfig(workdir=tmp_path, chrom_sizes=sizes, from_stage="dhs", to_stage="dhs").validate()


def test_haploid_run_from_dhs_skips_diploid_stages(tmp_path):
    sizes = _sizes(tmp_path, "chr1\t10\n")
    cfg = PipelineConfig(workdir=tmp_path, chrom_sizes=sizes, from_stage="dhs", to_stage="cleanup")
    assert list(cfg.stages_requested()) == [Stage.DHS, Stage.CLEANUP]
    cfg.validate()

    vcf = tmp_path / "phased.vcf.gz"
    vcf.touch()
    diploid = PipelineConfig(workdir=tmp_path, chrom_sizes=sizes, from_stage="dhs", to_stage="cleanup", vcf=vcf)
    assert Stage.DIPLOID_HIC in diploid.stages_requested()
    with pytest.raises(ValueError, match="--juicer-dir"):
        diploid.validate()


def test_contig_overlap():
    assert check_contig_overlap(["chr1", "chr2"], ["chr1", "chr2", "chrUn"]) == []
    assert check_contig_overlap(["chr1", "chrY"], ["chr1"]) == ["chrY"]
    with pytest.raises(ValueError, match="ensembl"):
        check_contig_overlap(["chr1", "chr2"], ["1", "2"])


def test_doctor_juicer_check(tmp_path):
    assert not check_juicer(None).ok
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    for name in ("juicer_tools", "juicer_hiccups.sh"):
        (scripts / name).touch()
    res = check_juicer(tmp_path)
    assert not res.ok and "juicer_arrowhead.sh" in res.detail
    (scripts / "juicer_arrowhead.sh").touch()
    assert check_juicer(tmp_path).ok

    checks = collect_checks(juicer_dir=tmp_path)
    assert set(checks) == {"python", "pysam", "java", "juicer", "bedGraphToBigWig", "awk"}
    assert checks["python"].ok and checks["pysam"].ok
