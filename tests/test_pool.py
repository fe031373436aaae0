import time
from functools import partial

import pytest

from megamap.errors import WorkerFaultError
from megamap.pool import default_concurrency, run_chromosomes


def test_outputs_keep_submission_order():
    delays = {"chr1": 0.05, "chr2": 0.0, "chr3": 0.02}

    def worker(chrom):
        time.sleep(delays[chrom])
        return chrom.upper()

    res = run_chromosomes(["chr1", "chr2", "chr3"], worker, concurrency=3, executor="thread")
    assert res.success
    assert res.outputs == ["CHR1", "CHR2", "CHR3"]


def _tag(chrom, *, prefix):
    return prefix + chrom


def test_outputs_keep_submission_order_on_one_worker():
    res = run_chromosomes(["chr3", "chr1", "chr2"], partial(_tag, prefix="q1:"), concurrency=1, executor="thread")
    assert res.outputs == ["q1:chr3", "q1:chr1", "q1:chr2"]


def test_process_executor_runs_partial_workers_in_order():
    chroms = ["chr1", "chr2", "chr3", "chrX"]
    res = run_chromosomes(chroms, partial(_tag, prefix="q30:"), concurrency=2, executor="process")
    assert res.success
    assert res.outputs == ["q30:chr1", "q30:chr2", "q30:chr3", "q30:chrX"]
    assert [r.chrom for r in res.results] == chroms


def test_failure_does_not_cancel_siblings_and_is_aggregated():
    seen = []

    def worker(chrom):
        if chrom == "chr2":
            raise RuntimeError("boom")
        seen.append(chrom)
        return chrom

    res = run_chromosomes(["chr1", "chr2", "chr3"], worker, concurrency=1, executor="thread")
    assert not res.success
    assert sorted(seen) == ["chr1", "chr3"]
    assert res.failed == ["chr2"]
    assert "boom" in res.results[1].error
    with pytest.raises(WorkerFaultError) as ei:
        res.raise_for_status("hic")
    assert ei.value.stage == "hic"
    assert ei.value.failed == ["chr2"]


def test_empty_task_list_succeeds():
    res = run_chromosomes([], lambda c: c, executor="thread")
    assert res.success
    assert res.outputs == []


def test_unknown_executor_rejected():
    with pytest.raises(ValueError):
        run_chromosomes(["chr1"], lambda c: c, executor="cluster")


def test_default_concurrency_half_cores_capped_by_memory():
    assert default_concurrency(cpu_count=16, memory_gib=512) == 8
    # 64 GiB / 12 - 1 = 4
    assert default_concurrency(cpu_count=16, memory_gib=64) == 4
    # memory cap not positive: keep the core-based value
    assert default_concurrency(cpu_count=16, memory_gib=8) == 8
    assert default_concurrency(cpu_count=1, memory_gib=8) == 1
