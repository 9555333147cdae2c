from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Literal

Stream = Literal["stdout", "stderr"]


class UnitStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # The command could not be launched at all; exit_code is None.
    SPAWN_ERROR = "spawn_error"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_failure(self) -> bool:
        return self in (UnitStatus.FAILED, UnitStatus.SPAWN_ERROR)


@dataclass(frozen=True)
class OutputLine:
    stream: Stream
    text: str
    # Seconds since the unit started, on the monotonic clock.
    timestamp: float


@dataclass(frozen=True)
class UnitResult:
    package: str
    script: str
    status: UnitStatus
    command: str | None = None
    exit_code: int | None = None
    output: tuple[OutputLine, ...] = ()
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def label(self) -> str:
        return f"{self.package}:{self.script}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "package": self.package,
            "script": self.script,
            "status": self.status.value,
            "command": self.command,
            "exit_code": self.exit_code,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
            "output": [
                {"stream": line.stream, "text": line.text, "timestamp": round(line.timestamp, 3)}
                for line in self.output
            ],
        }


@dataclass
class RunReport:
    scripts: tuple[str, ...]
    results: list[UnitResult] = field(default_factory=list)
    duration_seconds: float = 0.0
    interrupted: bool = False

    @property
    def success(self) -> bool:
        return not self.interrupted and not any(r.status.is_failure for r in self.results)

    @property
    def failed(self) -> list[UnitResult]:
        return [r for r in self.results if r.status.is_failure]

    @property
    def cancelled(self) -> list[UnitResult]:
        return [r for r in self.results if r.status is UnitStatus.CANCELLED]

    @property
    def skipped(self) -> list[UnitResult]:
        return [r for r in self.results if r.status is UnitStatus.SKIPPED]

    def counts(self) -> dict[str, int]:
        out = {status.value: 0 for status in UnitStatus}
        for result in self.results:
            out[result.status.value] += 1
        return out

    def render_summary(self) -> str:
        counts = self.counts()
        lines: list[str] = []
        ran = counts["succeeded"] + counts["failed"] + counts["spawn_error"]
        verdict = "ok" if self.success else ("interrupted" if self.interrupted else "FAILED")
        lines.append(
            f"monorun {' '.join(self.scripts)}: {verdict} "
            f"({ran} ran, {counts['failed'] + counts['spawn_error']} failed, "
            f"{counts['cancelled']} cancelled, {counts['skipped']} skipped) "
            f"in {self.duration_seconds:.1f}s"
        )
        for result in self.failed:
            if result.status is UnitStatus.SPAWN_ERROR:
                lines.append(f"- {result.label} could not start: {result.error}")
            else:
                lines.append(f"- {result.label} exited with code {result.exit_code}")
        for result in self.cancelled:
            lines.append(f"- {result.label} cancelled")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scripts": list(self.scripts),
            "success": self.success,
            "interrupted": self.interrupted,
            "duration_seconds": round(self.duration_seconds, 3),
            "counts": self.counts(),
            "failed": [{"package": r.package, "script": r.script} for r in self.failed],
            "results": [r.to_dict() for r in self.results],
        }
