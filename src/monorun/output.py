from __future__ import annotations

import sys
import threading
from collections.abc import Iterable
from typing import TextIO

from monorun.plan import Unit
from monorun.report import Stream

PREFIX_SEPARATOR = " | "

_UnitKey = tuple[int, str]


def _key(unit: Unit) -> _UnitKey:
    return (unit.phase, unit.package.name)


class OutputMultiplexer:
    """
    Merge line streams of concurrently running units into stdout/stderr.

    Each line is written whole under a single lock, so lines from different
    units interleave only at line boundaries. With `prefix` every line carries
    `<package> | `. With `grouped` a unit's lines are held back and written as
    one block when the unit finishes.
    """

    def __init__(
        self,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        prefix: bool = True,
        grouped: bool = False,
    ) -> None:
        self._stdout = stdout
        self._stderr = stderr
        self.prefix = prefix
        self.grouped = grouped
        self._lock = threading.Lock()
        self._width = 0
        self._pending: dict[_UnitKey, list[tuple[Stream, str]]] = {}
        self._enabled = True

    def register(self, names: Iterable[str]) -> None:
        """Pad prefixes to the widest package name so columns line up."""
        with self._lock:
            for name in names:
                self._width = max(self._width, len(name))

    def _target(self, stream: Stream) -> TextIO:
        if stream == "stderr":
            return self._stderr if self._stderr is not None else sys.stderr
        return self._stdout if self._stdout is not None else sys.stdout

    def _format(self, name: str, text: str) -> str:
        if not self.prefix:
            return text + "\n"
        return f"{name.ljust(self._width)}{PREFIX_SEPARATOR}{text}\n"

    def _emit_locked(self, stream: Stream, rendered: str) -> None:
        if not self._enabled:
            return
        target = self._target(stream)
        try:
            target.write(rendered)
            target.flush()
        except OSError:
            # A closed or broken console must not take the run down with it.
            self._enabled = False

    def announce(self, unit: Unit) -> None:
        header = f"{unit.package.name} > {unit.script}: {unit.command}\n"
        with self._lock:
            if self.grouped:
                # Keep the header at the top of the unit's block.
                self._pending.setdefault(_key(unit), []).append(("stderr", header))
                return
            self._emit_locked("stderr", header)

    def write_line(self, unit: Unit, stream: Stream, text: str) -> None:
        rendered = self._format(unit.package.name, text)
        with self._lock:
            if self.grouped:
                self._pending.setdefault(_key(unit), []).append((stream, rendered))
                return
            self._emit_locked(stream, rendered)

    def finish(self, unit: Unit) -> None:
        with self._lock:
            for stream, rendered in self._pending.pop(_key(unit), []):
                self._emit_locked(stream, rendered)
