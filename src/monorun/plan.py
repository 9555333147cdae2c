from __future__ import annotations

import shlex
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from monorun.workspace import Package


@dataclass(frozen=True)
class Unit:
    package: Package
    script: str
    command: str
    phase: int

    @property
    def label(self) -> str:
        return f"{self.package.name}:{self.script}"


@dataclass(frozen=True)
class Skip:
    package: Package
    script: str
    phase: int


@dataclass(frozen=True)
class Phase:
    index: int
    script: str
    units: tuple[Unit, ...]
    skipped: tuple[Skip, ...]


@dataclass(frozen=True)
class ExecutionPlan:
    scripts: tuple[str, ...]
    phases: tuple[Phase, ...]

    @property
    def units(self) -> tuple[Unit, ...]:
        return tuple(u for phase in self.phases for u in phase.units)


def _with_forwarded_args(command: str, forward_args: Sequence[str]) -> str:
    if not forward_args:
        return command
    return f"{command} {shlex.join(forward_args)}"


def build_plan(
    scripts: Iterable[str],
    packages: Iterable[Package],
    *,
    forward_args: Sequence[str] = (),
) -> ExecutionPlan:
    """
    Expand script names against packages, script-major.

    Every script name becomes one phase (duplicates included, request order kept).
    Inside a phase packages keep resolver order; a package that does not declare
    the script contributes a `Skip` instead of a `Unit`.
    """
    script_list = tuple(scripts)
    if not script_list:
        raise ValueError("At least one script name is required.")
    for name in script_list:
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"Invalid script name: {name!r}")

    package_list = tuple(packages)
    phases: list[Phase] = []
    for index, script in enumerate(script_list):
        units: list[Unit] = []
        skipped: list[Skip] = []
        for package in package_list:
            if package.has_script(script):
                command = _with_forwarded_args(package.command_for(script), forward_args)
                units.append(Unit(package=package, script=script, command=command, phase=index))
            else:
                skipped.append(Skip(package=package, script=script, phase=index))
        phases.append(Phase(index=index, script=script, units=tuple(units), skipped=tuple(skipped)))

    return ExecutionPlan(scripts=script_list, phases=tuple(phases))
