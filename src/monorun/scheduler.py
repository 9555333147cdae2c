from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Protocol

from monorun.config import RunOptions
from monorun.output import OutputMultiplexer
from monorun.plan import ExecutionPlan, Phase, Unit
from monorun.process import run_unit
from monorun.report import RunReport, UnitResult, UnitStatus


class UnitRunner(Protocol):
    def __call__(
        self,
        unit: Unit,
        *,
        output: OutputMultiplexer | None,
        cancel_event: threading.Event,
        grace_seconds: float,
        env: Mapping[str, str] | None,
    ) -> UnitResult: ...


class Scheduler:
    """
    Run an execution plan phase by phase with a bounded worker pool.

    Phases run strictly in order. Inside a phase up to `options.concurrency`
    units run at once (all of them when unset) and results are recorded in the
    order they finish. With `options.bail` the first failure cancels whatever is
    still running in the phase and every later phase is recorded as cancelled
    without starting.
    """

    def __init__(
        self,
        options: RunOptions,
        output: OutputMultiplexer | None = None,
        *,
        runner: UnitRunner = run_unit,
        progress: Callable[[str], None] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.options = options
        self.output = output
        self._runner = runner
        self._progress_cb = progress
        self._env = env
        self._lock = threading.Lock()

    def _progress(self, message: str) -> None:
        if self._progress_cb is not None:
            self._progress_cb(message)

    def _record(self, report: RunReport, result: UnitResult) -> None:
        with self._lock:
            report.results.append(result)

    def _has_failure(self, report: RunReport) -> bool:
        with self._lock:
            return any(r.status.is_failure for r in report.results)

    def _run_one(self, unit: Unit, cancel_event: threading.Event, report: RunReport) -> UnitResult:
        if cancel_event.is_set():
            result = UnitResult(
                package=unit.package.name,
                script=unit.script,
                status=UnitStatus.CANCELLED,
                command=unit.command,
            )
        else:
            result = self._runner(
                unit,
                output=self.output,
                cancel_event=cancel_event,
                grace_seconds=self.options.grace_seconds,
                env=self._env,
            )
        self._record(report, result)
        if result.status is UnitStatus.FAILED:
            self._progress(f"{result.label} failed (exit code {result.exit_code})")
        elif result.status is UnitStatus.SPAWN_ERROR:
            self._progress(f"{result.label} could not start: {result.error}")

        # Set before this worker can pick up the next queued unit.
        if self.options.bail and result.status.is_failure and not cancel_event.is_set():
            self._progress(f"bailing after {result.label}")
            cancel_event.set()
        return result

    def _record_skips(self, report: RunReport, phase: Phase) -> None:
        for skip in phase.skipped:
            self._record(report, UnitResult(package=skip.package.name, script=skip.script, status=UnitStatus.SKIPPED))

    def _record_not_started(self, report: RunReport, phase: Phase) -> None:
        self._record_skips(report, phase)
        for unit in phase.units:
            self._record(
                report,
                UnitResult(
                    package=unit.package.name,
                    script=unit.script,
                    status=UnitStatus.CANCELLED,
                    command=unit.command,
                ),
            )

    def _run_phase(self, phase: Phase, report: RunReport) -> bool:
        """Run one phase; return True when it was interrupted."""
        self._record_skips(report, phase)
        if not phase.units:
            self._progress(f"{phase.script}: no package defines this script")
            return False

        limit = self.options.concurrency or len(phase.units)
        workers = max(1, min(limit, len(phase.units)))
        cancel_event = threading.Event()
        interrupted = False

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="monorun") as pool:
            pending: set[Future[UnitResult]] = {
                pool.submit(self._run_one, unit, cancel_event, report) for unit in phase.units
            }
            try:
                while pending:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        future.result()
            except KeyboardInterrupt:
                interrupted = True
                self._progress("interrupted, cancelling running units")
                cancel_event.set()
                wait(pending)
            except BaseException:
                cancel_event.set()
                raise

        return interrupted

    def run(self, plan: ExecutionPlan) -> RunReport:
        report = RunReport(scripts=plan.scripts)
        start = time.monotonic()
        if self.output is not None:
            self.output.register(unit.package.name for unit in plan.units)

        stopped = False
        for phase in plan.phases:
            if stopped:
                self._record_not_started(report, phase)
                continue

            self._progress(
                f"phase {phase.index + 1}/{len(plan.phases)}: {phase.script} "
                f"({len(phase.units)} package(s), {len(phase.skipped)} skipped)"
            )
            if self._run_phase(phase, report):
                report.interrupted = True
                stopped = True
            elif self.options.bail and self._has_failure(report):
                stopped = True

        report.duration_seconds = time.monotonic() - start
        return report
