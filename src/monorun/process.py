from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import IO

from monorun.output import OutputMultiplexer
from monorun.plan import Unit
from monorun.report import OutputLine, Stream, UnitResult, UnitStatus

_POLL_INTERVAL_SECONDS = 0.05
_READER_JOIN_TIMEOUT_SECONDS = 5.0


class SpawnError(RuntimeError):
    pass


def _node_bin_dirs(package_dir: Path) -> list[Path]:
    # npm puts node_modules/.bin of the package and of every ancestor on PATH.
    out: list[Path] = []
    for directory in (package_dir, *package_dir.parents):
        candidate = directory / "node_modules" / ".bin"
        if candidate.is_dir():
            out.append(candidate)
    return out


def unit_env(unit: Unit, base_env: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base_env is None else base_env)
    env["MONORUN_PACKAGE_NAME"] = unit.package.name
    env["MONORUN_PACKAGE_VERSION"] = unit.package.version or ""
    env["MONORUN_SCRIPT"] = unit.script

    if unit.package.kind == "npm":
        bin_dirs = [str(p) for p in _node_bin_dirs(unit.package.path)]
        if bin_dirs:
            current = env.get("PATH", "")
            env["PATH"] = os.pathsep.join([*bin_dirs, current] if current else bin_dirs)
    return env


def _spawn(unit: Unit, *, env: Mapping[str, str]) -> subprocess.Popen[str]:
    try:
        return subprocess.Popen(  # noqa: S602
            unit.command,
            shell=True,
            cwd=str(unit.package.path),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=os.name != "nt",
        )
    except OSError as exc:
        raise SpawnError(f"Failed to launch {unit.command!r} in {unit.package.path}: {exc}") from exc


def _signal(proc: subprocess.Popen[str], *, force: bool) -> None:
    try:
        if os.name == "nt":
            if force:
                proc.kill()
            else:
                proc.terminate()
            return
        # The child leads its own session; signal the whole group so shell children go too.
        os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        pass


def terminate(proc: subprocess.Popen[str], *, grace_seconds: float) -> int:
    """Ask the process to stop, escalate to a kill after `grace_seconds`, and reap it."""
    _signal(proc, force=False)
    try:
        return proc.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        _signal(proc, force=True)
        return proc.wait()


def run_unit(
    unit: Unit,
    *,
    output: OutputMultiplexer | None = None,
    cancel_event: threading.Event | None = None,
    grace_seconds: float = 5.0,
    env: Mapping[str, str] | None = None,
) -> UnitResult:
    if cancel_event is None:
        cancel_event = threading.Event()

    if cancel_event.is_set():
        return UnitResult(
            package=unit.package.name,
            script=unit.script,
            status=UnitStatus.CANCELLED,
            command=unit.command,
        )

    start = time.monotonic()
    if output is not None:
        output.announce(unit)

    try:
        proc = _spawn(unit, env=unit_env(unit, env))
    except SpawnError as exc:
        if output is not None:
            output.finish(unit)
        return UnitResult(
            package=unit.package.name,
            script=unit.script,
            status=UnitStatus.SPAWN_ERROR,
            command=unit.command,
            duration_seconds=time.monotonic() - start,
            error=str(exc),
        )

    lines: list[OutputLine] = []
    lines_lock = threading.Lock()

    def _pump(pipe: IO[str] | None, stream: Stream) -> None:
        if pipe is None:
            return
        with pipe:
            for raw in pipe:
                text = raw.rstrip("\n").rstrip("\r")
                line = OutputLine(stream=stream, text=text, timestamp=time.monotonic() - start)
                with lines_lock:
                    lines.append(line)
                if output is not None:
                    output.write_line(unit, stream, text)

    readers = [
        threading.Thread(target=_pump, args=(proc.stdout, "stdout"), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, "stderr"), daemon=True),
    ]
    for reader in readers:
        reader.start()

    cancelled = False
    while proc.poll() is None:
        if cancel_event.wait(_POLL_INTERVAL_SECONDS):
            if proc.poll() is None:
                terminate(proc, grace_seconds=grace_seconds)
                cancelled = True
            break

    exit_code = proc.wait()
    for reader in readers:
        reader.join(timeout=_READER_JOIN_TIMEOUT_SECONDS)
    if output is not None:
        output.finish(unit)

    if cancelled:
        status = UnitStatus.CANCELLED
    elif exit_code == 0:
        status = UnitStatus.SUCCEEDED
    else:
        status = UnitStatus.FAILED

    with lines_lock:
        captured = tuple(lines)
    return UnitResult(
        package=unit.package.name,
        script=unit.script,
        status=status,
        command=unit.command,
        exit_code=exit_code,
        output=captured,
        duration_seconds=time.monotonic() - start,
    )
