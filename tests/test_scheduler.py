from __future__ import annotations

import shlex
import sys
import threading
import time
from collections.abc import Mapping
from pathlib import Path

import pytest

from monorun.config import RunOptions
from monorun.output import OutputMultiplexer
from monorun.plan import Unit, build_plan
from monorun.report import UnitResult, UnitStatus
from monorun.scheduler import Scheduler
from monorun.workspace import Package


def _pkg(name: str, scripts: dict[str, str], path: Path | None = None) -> Package:
    root = path or (Path("/ws/packages") / name)
    return Package(name=name, path=root, manifest_path=root / "package.json", kind="npm", scripts=scripts)


class _FakeRunner:
    """Pretends to run units; exit codes and delays come from the command string.

    A command of `spawn` stands for a unit whose process could not be launched.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started: list[str] = []
        self.active = 0
        self.max_active = 0

    def __call__(
        self,
        unit: Unit,
        *,
        output: OutputMultiplexer | None,
        cancel_event: threading.Event,
        grace_seconds: float,
        env: Mapping[str, str] | None,
    ) -> UnitResult:
        del output, grace_seconds, env
        if unit.command == "spawn":
            with self._lock:
                self.started.append(unit.label)
            return UnitResult(
                package=unit.package.name,
                script=unit.script,
                status=UnitStatus.SPAWN_ERROR,
                command=unit.command,
                error="Failed to launch 'spawn'",
            )

        exit_code_raw, _, delay_raw = unit.command.partition("@")
        exit_code = int(exit_code_raw)
        delay = float(delay_raw or 0)

        with self._lock:
            self.started.append(unit.label)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            cancelled = cancel_event.wait(delay) if delay else False
        finally:
            with self._lock:
                self.active -= 1

        if cancelled:
            status = UnitStatus.CANCELLED
        else:
            status = UnitStatus.SUCCEEDED if exit_code == 0 else UnitStatus.FAILED
        return UnitResult(
            package=unit.package.name,
            script=unit.script,
            status=status,
            command=unit.command,
            exit_code=exit_code,
        )


def _statuses(report) -> dict[str, UnitStatus]:
    return {r.label: r.status for r in report.results}


def test_phases_complete_in_order_and_every_unit_reported_once() -> None:
    packages = [
        _pkg("a", {"clean": "0@0.05", "build": "0"}),
        _pkg("b", {"clean": "0", "build": "0@0.02"}),
        _pkg("c", {"build": "0"}),
    ]
    runner = _FakeRunner()
    report = Scheduler(RunOptions(), runner=runner).run(build_plan(["clean", "build"], packages))

    assert report.success
    labels = [r.label for r in report.results]
    assert sorted(labels) == sorted(["a:clean", "b:clean", "c:clean", "a:build", "b:build", "c:build"])
    assert len(labels) == len(set(labels))
    last_clean = max(i for i, r in enumerate(report.results) if r.script == "clean")
    first_build = min(i for i, r in enumerate(report.results) if r.script == "build")
    assert last_clean < first_build
    assert _statuses(report)["c:clean"] is UnitStatus.SKIPPED
    assert [r.label for r in report.skipped] == ["c:clean"]


def test_results_are_recorded_in_completion_order() -> None:
    packages = [_pkg("slow", {"build": "0@0.3"}), _pkg("fast", {"build": "0"})]
    report = Scheduler(RunOptions(), runner=_FakeRunner()).run(build_plan(["build"], packages))
    assert [r.package for r in report.results] == ["fast", "slow"]


def test_concurrency_limit_is_respected() -> None:
    packages = [_pkg(f"p{i}", {"build": "0@0.05"}) for i in range(6)]
    runner = _FakeRunner()
    report = Scheduler(RunOptions(concurrency=2), runner=runner).run(build_plan(["build"], packages))

    assert report.success
    assert runner.max_active <= 2
    assert len(runner.started) == 6


def test_unbounded_concurrency_runs_phase_in_parallel() -> None:
    packages = [_pkg(f"p{i}", {"build": "0@0.2"}) for i in range(4)]
    runner = _FakeRunner()
    Scheduler(RunOptions(concurrency=None), runner=runner).run(build_plan(["build"], packages))
    assert runner.max_active == 4


def test_bail_stops_later_phases_and_cancels_running_units() -> None:
    packages = [
        _pkg("broken", {"build": "2", "test": "0"}),
        _pkg("slow", {"build": "0@10", "test": "0"}),
    ]
    runner = _FakeRunner()
    start = time.monotonic()
    report = Scheduler(RunOptions(bail=True), runner=runner).run(build_plan(["build", "test"], packages))

    assert time.monotonic() - start < 5
    assert not report.success
    statuses = _statuses(report)
    assert statuses["broken:build"] is UnitStatus.FAILED
    assert statuses["slow:build"] is UnitStatus.CANCELLED
    assert statuses["broken:test"] is UnitStatus.CANCELLED
    assert statuses["slow:test"] is UnitStatus.CANCELLED
    assert "broken:test" not in runner.started
    assert [r.label for r in report.failed] == ["broken:build"]


def test_bail_cancels_queued_units_without_running_them() -> None:
    packages = [_pkg("a-broken", {"build": "1"})] + [_pkg(f"q{i}", {"build": "0@0.05"}) for i in range(4)]
    runner = _FakeRunner()
    report = Scheduler(RunOptions(bail=True, concurrency=1), runner=runner).run(build_plan(["build"], packages))

    assert runner.started == ["a-broken:build"]
    statuses = _statuses(report)
    assert [statuses[f"q{i}:build"] for i in range(4)] == [UnitStatus.CANCELLED] * 4
    assert len(report.results) == 5


def test_without_bail_every_phase_runs() -> None:
    packages = [_pkg("a", {"build": "1", "test": "0"}), _pkg("b", {"build": "0", "test": "4"})]
    runner = _FakeRunner()
    report = Scheduler(RunOptions(bail=False), runner=runner).run(build_plan(["build", "test"], packages))

    assert sorted(runner.started) == ["a:build", "a:test", "b:build", "b:test"]
    assert not report.success
    assert sorted(r.label for r in report.failed) == ["a:build", "b:test"]
    assert report.cancelled == []


def test_script_with_no_packages_is_not_a_failure() -> None:
    packages = [_pkg("a", {"build": "0"})]
    messages: list[str] = []
    report = Scheduler(RunOptions(), runner=_FakeRunner(), progress=messages.append).run(
        build_plan(["lint", "build"], packages)
    )
    assert report.success
    assert _statuses(report) == {"a:lint": UnitStatus.SKIPPED, "a:build": UnitStatus.SUCCEEDED}
    assert any("no package defines" in m for m in messages)


def test_runner_errors_propagate() -> None:
    def _boom(unit: Unit, **_kwargs) -> UnitResult:
        raise RuntimeError(f"boom in {unit.label}")

    with pytest.raises(RuntimeError, match="boom"):
        Scheduler(RunOptions(), runner=_boom).run(build_plan(["build"], [_pkg("a", {"build": "0"})]))


def test_keyboard_interrupt_cancels_and_marks_report(monkeypatch: pytest.MonkeyPatch) -> None:
    import monorun.scheduler as scheduler_mod

    real_wait = scheduler_mod.wait
    calls = {"n": 0}

    def _interrupting_wait(fs, return_when=None):
        calls["n"] += 1
        if calls["n"] == 1:
            raise KeyboardInterrupt
        return real_wait(fs) if return_when is None else real_wait(fs, return_when=return_when)

    monkeypatch.setattr(scheduler_mod, "wait", _interrupting_wait)
    packages = [_pkg("a", {"build": "0@10", "test": "0"})]
    report = Scheduler(RunOptions(), runner=_FakeRunner()).run(build_plan(["build", "test"], packages))

    assert report.interrupted
    assert not report.success
    assert _statuses(report) == {"a:build": UnitStatus.CANCELLED, "a:test": UnitStatus.CANCELLED}


def test_real_processes_with_prefixed_output(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    py = shlex.quote(sys.executable)
    packages = []
    for name in ("alpha", "beta"):
        path = tmp_path / name
        path.mkdir()
        packages.append(_pkg(name, {"build": f"{py} -c \"print('built {name}')\""}, path=path))

    report = Scheduler(RunOptions(), OutputMultiplexer(prefix=True)).run(build_plan(["build"], packages))

    assert report.success
    out = capsys.readouterr().out.splitlines()
    assert sorted(out) == ["alpha | built alpha", "beta  | built beta"]


def test_bail_triggers_on_launch_failure() -> None:
    packages = [
        _pkg("broken", {"build": "spawn", "test": "0"}),
        _pkg("slow", {"build": "0@10", "test": "0"}),
    ]
    runner = _FakeRunner()
    start = time.monotonic()
    report = Scheduler(RunOptions(bail=True), runner=runner).run(build_plan(["build", "test"], packages))

    assert time.monotonic() - start < 5
    assert not report.success
    statuses = _statuses(report)
    assert statuses["broken:build"] is UnitStatus.SPAWN_ERROR
    assert statuses["slow:build"] is UnitStatus.CANCELLED
    assert statuses["broken:test"] is UnitStatus.CANCELLED
    assert statuses["slow:test"] is UnitStatus.CANCELLED
    assert not any(label.endswith(":test") for label in runner.started)
    (failed,) = report.failed
    assert failed.label == "broken:build"
    assert failed.exit_code is None


def test_launch_failure_without_bail_still_fails_the_run() -> None:
    packages = [_pkg("broken", {"build": "spawn", "test": "0"})]
    runner = _FakeRunner()
    report = Scheduler(RunOptions(bail=False), runner=runner).run(build_plan(["build", "test"], packages))

    assert runner.started == ["broken:build", "broken:test"]
    assert not report.success
    assert _statuses(report) == {"broken:build": UnitStatus.SPAWN_ERROR, "broken:test": UnitStatus.SUCCEEDED}


def test_real_launch_failure_bails_remaining_phases(tmp_path: Path) -> None:
    missing = tmp_path / "gone"
    packages = [_pkg("gone", {"build": "echo hi", "test": "echo hi"}, path=missing)]

    report = Scheduler(RunOptions(bail=True)).run(build_plan(["build", "test"], packages))

    statuses = _statuses(report)
    assert statuses == {"gone:build": UnitStatus.SPAWN_ERROR, "gone:test": UnitStatus.CANCELLED}
    assert [r.label for r in report.failed] == ["gone:build"]
