"""Tests for marathon.execution.fanout.

Driver tests run ``FanOutDriver`` in-process with real child commands;
``FanOutProcess`` tests launch the driver as ``python -m marathon fan-out``.
"""

from __future__ import annotations

import asyncio
import shlex
import sys
from pathlib import Path

import pytest

from marathon.core.errors.codes import StatusCode
from marathon.execution.fanout import (
    JOBLOG_HEADER,
    MAX_FAILURE_EXIT,
    FanOutDriver,
    FanOutProcess,
    expand_template,
    worker_exec_prefix,
)
from marathon.supervisor.registry import WorkerRegistry

PY = shlex.quote(sys.executable)


def py_template(code: str) -> str:
    """Template running ``code`` with the input path as sys.argv[1]."""
    return f"{PY} -c {shlex.quote(code)}"


# ─── Template expansion ────────────────────────────────────────────────


class TestExpandTemplate:
    """Tests for expand_template()."""

    def test_placeholders(self):
        argv = expand_template("tool {} {.} {/} {/.} {//}", "/data/in/a.tar.gz")
        assert argv == [
            "tool",
            "/data/in/a.tar.gz",
            "/data/in/a.tar",
            "a.tar.gz",
            "a.tar",
            "/data/in",
        ]

    def test_path_appended_without_placeholder(self):
        """A template with no placeholder receives the path last."""
        assert expand_template("gzip -k", "/w/x.txt") == ["gzip", "-k", "/w/x.txt"]

    def test_placeholder_inside_token(self):
        assert expand_template("cp {} {.}.out", "/w/x.txt") == ["cp", "/w/x.txt", "/w/x.out"]

    def test_relative_path_directory(self):
        assert expand_template("echo {//}", "x.txt") == ["echo", "."]

    def test_empty_template_rejected(self):
        with pytest.raises(ValueError):
            expand_template("   ", "x")

    def test_worker_exec_prefix(self, tmp_path: Path):
        prefix = worker_exec_prefix(tmp_path / "workers", "unit 1 a.txt")
        assert prefix[:4] == [sys.executable, "-m", "marathon", "worker-exec"]
        assert prefix[-1] == "--"
        assert "unit 1 a.txt" in prefix


# ─── Driver ────────────────────────────────────────────────────────────


class TestFanOutDriver:
    """Tests for FanOutDriver.run()."""

    @pytest.mark.asyncio
    async def test_all_units_succeed(self, tmp_path: Path):
        inputs = []
        for name in ("a", "b", "c"):
            path = tmp_path / f"{name}.txt"
            path.write_text(name)
            inputs.append(str(path))
        template = py_template(
            "import sys; p = sys.argv[1]; open(p[:-4] + '.out', 'w').write(open(p).read().upper())"
        )
        joblog = tmp_path / "parallel.log"
        driver = FanOutDriver(template, inputs, max_workers=2, joblog=joblog)

        assert await driver.run(install_signal_handlers=False) == 0
        assert (tmp_path / "b.out").read_text() == "B"
        lines = joblog.read_text().splitlines(keepends=True)
        assert lines[0] == JOBLOG_HEADER
        assert len(lines) == 4
        assert all(line.split("\t")[6] == "0" for line in lines[1:])

    @pytest.mark.asyncio
    async def test_exit_is_failed_unit_count(self, tmp_path: Path):
        """The driver exits with the number of failed units."""
        template = py_template("import sys; sys.exit(0 if sys.argv[1].endswith('ok') else 3)")
        driver = FanOutDriver(template, ["1-ok", "2-bad", "3-bad", "4-ok"], max_workers=4)
        assert await driver.run(install_signal_handlers=False) == 2
        failed = sorted(r.seq for r in driver.results if r.failed)
        assert failed == [2, 3]

    @pytest.mark.asyncio
    async def test_failure_count_is_capped(self):
        driver = FanOutDriver("false", [str(i) for i in range(105)], max_workers=16)
        assert await driver.run(install_signal_handlers=False) == MAX_FAILURE_EXIT

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, tmp_path: Path):
        """No more than max_workers units run at once."""
        marker_dir = tmp_path / "running"
        marker_dir.mkdir()
        code = (
            "import os, sys, time; d = sys.argv[1].rsplit(':', 1)[0]; "
            "m = os.path.join(d, str(os.getpid())); open(m, 'w').close(); "
            "n = len(os.listdir(d)); time.sleep(0.2); os.remove(m); sys.exit(n)"
        )
        inputs = [f"{marker_dir}:{i}" for i in range(6)]
        driver = FanOutDriver(py_template(code), inputs, max_workers=2)
        await driver.run(install_signal_handlers=False)
        assert all(r.exitval <= 2 for r in driver.results)

    @pytest.mark.asyncio
    async def test_missing_command_counts_as_failure(self):
        driver = FanOutDriver("/nonexistent/tool", ["a"], max_workers=1)
        assert await driver.run(install_signal_handlers=False) == 1
        assert driver.results[0].exitval == StatusCode.COMMAND_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unit_output_captured(self, tmp_path: Path):
        results = tmp_path / "results"
        template = py_template("import sys; print('hello', sys.argv[1])")
        driver = FanOutDriver(template, ["x"], max_workers=1, results_dir=results)
        await driver.run(install_signal_handlers=False)
        assert (results / "1" / "stdout").read_text() == "hello x\n"

    @pytest.mark.asyncio
    async def test_units_register_through_worker_exec(self, tmp_path: Path):
        """Each unit's own pid lands in the registry."""
        registry = tmp_path / "workers"
        template = py_template("import os, sys; print(os.getpid())")
        results = tmp_path / "results"
        driver = FanOutDriver(
            template, ["a", "b"], max_workers=2, registry=registry, results_dir=results,
        )
        assert await driver.run(install_signal_handlers=False) == 0
        printed = {
            int((results / str(seq) / "stdout").read_text()) for seq in (1, 2)
        }
        assert set(WorkerRegistry(registry).list()) == printed


class TestTwoStageStop:
    """Tests for the driver's soft/hard stop contract."""

    @pytest.mark.asyncio
    async def test_first_stop_prevents_new_launches(self):
        """After one stop request, running units finish and no new ones start."""
        template = py_template("import time; time.sleep(0.5)")
        driver = FanOutDriver(template, ["a", "b", "c"], max_workers=1)
        task = asyncio.create_task(driver.run(install_signal_handlers=False))
        await asyncio.sleep(0.2)
        driver.request_stop()
        code = await asyncio.wait_for(task, timeout=10)

        assert code == StatusCode.SHUTDOWN_SIGNAL
        assert len(driver.results) == 1
        assert not driver.results[0].failed

    @pytest.mark.asyncio
    async def test_second_stop_terminates_running_units(self):
        template = py_template("import time; time.sleep(30)")
        driver = FanOutDriver(template, ["a", "b"], max_workers=2)
        task = asyncio.create_task(driver.run(install_signal_handlers=False))
        await asyncio.sleep(0.5)
        driver.request_stop()
        driver.request_stop()
        code = await asyncio.wait_for(task, timeout=10)

        assert code == StatusCode.SHUTDOWN_SIGNAL
        assert len(driver.results) == 2
        assert all(r.signal == 15 for r in driver.results)


# ─── Driver process handle ─────────────────────────────────────────────


class TestFanOutProcess:
    """Tests for FanOutProcess against a real driver process."""

    async def _start(self, tmp_path: Path, template: str, inputs: list[str]) -> FanOutProcess:
        logs = tmp_path / "logs"
        logs.mkdir(exist_ok=True)
        return await FanOutProcess.start(
            template=template,
            inputs=[Path(i) for i in inputs],
            max_workers=2,
            inputs_file=tmp_path / "inputs",
            joblog=logs / "parallel.log",
            registry=tmp_path / "workers",
            results_dir=logs / "parallel",
            cwd=tmp_path,
            driver_log=logs / "driver.log",
        )

    @pytest.mark.asyncio
    async def test_runs_to_completion(self, tmp_path: Path):
        fanout = await self._start(tmp_path, py_template("pass"), ["a", "b", "c"])
        assert await asyncio.wait_for(fanout.wait(), timeout=60) == 0
        assert not fanout.is_alive()
        assert (tmp_path / "inputs").read_text() == "a\nb\nc\n"

    @pytest.mark.asyncio
    async def test_stop_escalates_and_reports_shutdown(self, tmp_path: Path):
        """stop() moves through soft and hard stop to a shutdown exit."""
        fanout = await self._start(
            tmp_path, py_template("import time; time.sleep(60)"), ["a", "b", "c", "d"],
        )
        await asyncio.sleep(2.0)
        status = await asyncio.wait_for(fanout.stop(0.5), timeout=30)
        assert status == StatusCode.SHUTDOWN_SIGNAL
        assert not fanout.is_alive()
        registry = WorkerRegistry(tmp_path / "workers")
        assert registry.terminate_all(grace_period=0.1).signalled == 0

    @pytest.mark.asyncio
    async def test_stop_on_exited_driver_returns_its_status(self, tmp_path: Path):
        fanout = await self._start(tmp_path, "false", ["a"])
        await asyncio.wait_for(fanout.wait(), timeout=60)
        assert await fanout.stop(0.1) == 1
