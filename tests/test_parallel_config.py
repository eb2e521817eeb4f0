from __future__ import annotations

import json
import threading
import time

import numpy as np
import pytest

from meegbem.core.parallel import run_rows, strided_partition
from meegbem.utils.config import K, AssemblyConfig, IntegratorConfig
from meegbem.utils.logging import JsonlLogger, log_runtime_environment


def test_strided_partition_covers_every_index_once():
    parts = strided_partition(10, 3)
    assert [list(p) for p in parts] == [[0, 3, 6, 9], [1, 4, 7], [2, 5, 8]]
    assert len(strided_partition(2, 8)) == 2
    assert len(strided_partition(5, 0)) == 1


@pytest.mark.parametrize("workers", [1, 2, 5])
def test_run_rows_writes_each_row_once_from_calling_thread(workers):
    out = np.zeros(17)
    writers = set()

    def write(i, v):
        writers.add(threading.get_ident())
        assert out[i] == 0.0
        out[i] = v

    run_rows(17, lambda i: float(i * i + 1), write, workers)
    assert np.array_equal(out, np.arange(17) ** 2 + 1.0)
    assert writers == {threading.get_ident()}


def test_run_rows_commits_in_index_order():
    order = []

    def compute(i):
        # later rows finish first
        time.sleep(0.002 * (12 - i))
        return i

    run_rows(12, compute, lambda i, v: order.append(i), 4)
    assert order == list(range(12))


def test_run_rows_propagates_worker_errors():
    def compute(i):
        if i == 3:
            raise RuntimeError("boom")
        return i

    with pytest.raises(RuntimeError, match="boom"):
        run_rows(6, compute, lambda i, v: None, 3)


def test_integrator_config_validation():
    assert IntegratorConfig() == IntegratorConfig(order=3, levels=10, tolerance=1e-3)
    with pytest.raises(ValueError):
        IntegratorConfig(order=4)
    with pytest.raises(ValueError):
        IntegratorConfig(levels=-1)
    with pytest.raises(ValueError):
        IntegratorConfig(tolerance=0.0)


def test_assembly_config_from_env(monkeypatch):
    monkeypatch.setenv("MEEGBEM_NUM_WORKERS", "3")
    monkeypatch.setenv("MEEGBEM_PROGRESS", "yes")
    cfg = AssemblyConfig.from_env()
    assert cfg.resolved_workers() == 3
    assert cfg.progress

    monkeypatch.delenv("MEEGBEM_NUM_WORKERS")
    monkeypatch.delenv("MEEGBEM_PROGRESS")
    cfg = AssemblyConfig.from_env()
    assert cfg.num_workers is None
    assert cfg.resolved_workers() >= 1
    assert not cfg.progress

    monkeypatch.setenv("MEEGBEM_NUM_WORKERS", "many")
    with pytest.raises(ValueError):
        AssemblyConfig.from_env()
    with pytest.raises(ValueError):
        AssemblyConfig(num_workers=0)


def test_fundamental_constant():
    assert K * 4.0 * np.pi == pytest.approx(1.0)


def test_jsonl_logger_writes_sanitized_events(tmp_path):
    with JsonlLogger(tmp_path / "run") as log:
        log.info("Hello.", value=float("nan"), arr=np.arange(3))
        log.phase_start("assembly", n=3)
        log.phase_end("assembly")
        try:
            raise ValueError("bad")
        except ValueError:
            log.error("Failed.", exc_info=True)
        log_runtime_environment(log, run="test")

    lines = (tmp_path / "run" / "events.jsonl").read_text(encoding="utf-8").splitlines()
    recs = [json.loads(line) for line in lines]
    assert recs[0]["msg"] == "Hello."
    assert recs[0]["value"] == "NaN"
    assert recs[0]["arr"] == [0, 1, 2]
    assert recs[1]["phase"] == "assembly"
    assert recs[3]["level"] == "ERROR"
    assert "ValueError" in recs[3]["trace"]
    assert recs[4]["run"] == "test"
    assert "torch" in recs[4]
