import pytest

from megamap.errors import InvalidStageRangeError, PreconditionError
from megamap.stages import Stage, StageController, parse_stage, validate_stage_range


def _recording_runners(calls):
    def make(stage):
        def run():
            calls.append(stage.label)
            return {"stage": stage.label}

        return run

    return {s: make(s) for s in Stage}


def test_parse_stage_names():
    assert parse_stage("HiC") is Stage.HIC
    assert parse_stage(Stage.DHS) is Stage.DHS
    with pytest.raises(ValueError):
        parse_stage("align")


def test_rejects_reversed_range_before_running_anything():
    calls = []
    ctl = StageController(_recording_runners(calls))
    with pytest.raises(InvalidStageRangeError):
        ctl.run("hic", "prep")
    assert calls == []
    with pytest.raises(ValueError):
        validate_stage_range("cleanup", "dhs")


def test_plan_skips_diploid_stages_without_phasing():
    ctl = StageController({}, diploid_enabled=False)
    assert [s.label for s in ctl.plan()] == ["prep", "hic", "hicnarrow", "dhs", "cleanup"]
    assert ctl.plan("dhs", "dhs") == [Stage.DHS]

    dip = StageController({}, diploid_enabled=True)
    assert [s.label for s in dip.plan("dhs", "cleanup")] == ["dhs", "diploid_hic", "diploid_dhs", "cleanup"]


def test_run_respects_range_and_collects_details():
    calls = []
    ctl = StageController(_recording_runners(calls), diploid_enabled=True)
    summary = ctl.run("hicnarrow", "diploid_hic")
    assert calls == ["hicnarrow", "dhs", "diploid_hic"]
    assert summary.success
    assert summary.completed == calls
    assert summary.outcomes[0].details == {"stage": "hicnarrow"}


def test_missing_artifact_fails_precondition(tmp_path):
    calls = []
    present = tmp_path / "merged1.txt"
    present.write_text("x\n", encoding="utf-8")
    empty = tmp_path / "empty.txt"
    empty.touch()
    ctl = StageController(
        _recording_runners(calls),
        {Stage.HIC: lambda: [present], Stage.DHS: lambda: [present, empty, tmp_path / "nope.bam"]},
    )
    with pytest.raises(PreconditionError) as ei:
        ctl.run("hic", "dhs")
    assert calls == ["hic", "hicnarrow"]
    assert ei.value.stage == "dhs"
    assert len(ei.value.missing) == 2

    summary = ctl.last_summary
    assert summary is not None and not summary.success
    assert summary.outcomes[-1].status == "failed"
    assert "PreconditionError" in summary.outcomes[-1].error


def test_runner_failure_is_recorded_and_propagates():
    def boom():
        raise RuntimeError("engine died")

    ctl = StageController({Stage.PREP: lambda: None, Stage.HIC: boom})
    with pytest.raises(RuntimeError):
        ctl.run("prep", "cleanup")
    assert ctl.last_summary.completed == ["prep"]
    assert ctl.last_summary.outcomes[-1].stage == "hic"
