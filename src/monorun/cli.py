from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from monorun.config import load_run_options
from monorun.output import OutputMultiplexer
from monorun.plan import build_plan
from monorun.report import RunReport
from monorun.scheduler import Scheduler
from monorun.workspace import ConfigError, discover_packages, select_packages

EXIT_OK = 0
EXIT_SCRIPT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

_RUN_EPILOG = """Example:

$ monorun run clean build
$ monorun run test --package core --no-bail -- --verbose
"""


def _eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def _progress(message: str) -> None:
    _eprint(f"monorun: {message}")


def _split_forwarded(argv: list[str]) -> tuple[list[str], list[str]]:
    if "--" not in argv:
        return argv, []
    idx = argv.index("--")
    return argv[:idx], argv[idx + 1 :]


def _write_report_json(path: Path, report: RunReport) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    except OSError as exc:
        _eprint(f"WARNING: failed to write run report: {path}: {exc}")


def cmd_run(args: argparse.Namespace) -> int:
    root = Path(args.root).resolve()
    packages = select_packages(discover_packages(root), args.packages)
    options = load_run_options(root).with_overrides(
        bail=args.bail,
        prefix=args.prefix,
        concurrency=args.concurrency,
        grace_seconds=args.grace_seconds,
    )

    try:
        plan = build_plan(args.scripts, packages, forward_args=getattr(args, "forward_args", []))
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    # Unprefixed lines from parallel units are unreadable when interleaved, so hold
    # each unit's output back until it finishes.
    grouped = not options.prefix and options.concurrency != 1
    output = OutputMultiplexer(prefix=options.prefix, grouped=grouped)
    scheduler = Scheduler(options, output, progress=_progress if args.verbose else None)
    report = scheduler.run(plan)

    _eprint(report.render_summary())
    if args.report_json is not None:
        _write_report_json(Path(args.report_json), report)

    if report.interrupted:
        return EXIT_INTERRUPTED
    return EXIT_OK if report.success else EXIT_SCRIPT_FAILED


def _display_path(root: Path, path: Path) -> str:
    return path.relative_to(root).as_posix() if path.is_relative_to(root) else str(path)


def cmd_list(args: argparse.Namespace) -> int:
    root = Path(args.root).resolve()
    packages = discover_packages(root)

    if args.json:
        payload: list[dict[str, Any]] = [
            {
                "name": p.name,
                "version": p.version,
                "kind": p.kind,
                "path": _display_path(root, p.path),
                "scripts": dict(p.scripts),
            }
            for p in packages
        ]
        print(json.dumps(payload, indent=2, sort_keys=True))
        return EXIT_OK

    for p in packages:
        label = f"{p.name}@{p.version}" if p.version else p.name
        print(f"{label}\t{_display_path(root, p.path)}")
        for name, command in p.scripts.items():
            print(f"  {name}: {command}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="monorun", description="Run scripts across the packages of a monorepo.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser(
        "run",
        help="Run one or more scripts in each package that defines them.",
        epilog=_RUN_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_run.add_argument("scripts", nargs="+", help="Script names, run one after another.")
    p_run.add_argument("--root", type=Path, default=Path("."), help="Workspace root (default: cwd).")
    p_run.add_argument(
        "--package",
        dest="packages",
        action="append",
        default=[],
        help="Only run in this package (repeatable).",
    )
    p_run.add_argument(
        "--bail",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Stop at the first failing script (default from config: on).",
    )
    p_run.add_argument(
        "--prefix",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Prefix output with the package name (default from config: on).",
    )
    p_run.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Max packages running a script at once; 0 means unbounded.",
    )
    p_run.add_argument(
        "--grace-seconds",
        type=float,
        default=None,
        help="How long a cancelled script gets to exit before it is killed.",
    )
    p_run.add_argument("--report-json", type=Path, help="Write the run report as JSON to this path.")
    p_run.add_argument("--verbose", "-v", action="store_true", help="Print scheduler progress to stderr.")
    p_run.set_defaults(func=cmd_run)

    p_list = sub.add_parser("list", help="List workspace packages and their scripts.")
    p_list.add_argument("--root", type=Path, default=Path("."), help="Workspace root (default: cwd).")
    p_list.add_argument("--json", action="store_true", help="Emit JSON.")
    p_list.set_defaults(func=cmd_list)
    return parser


def main(argv: list[str] | None = None) -> int:
    own_argv, forwarded = _split_forwarded(list(sys.argv[1:] if argv is None else argv))
    parser = build_parser()
    args = parser.parse_args(own_argv)
    args.forward_args = forwarded
    try:
        return int(args.func(args))
    except ConfigError as exc:
        _eprint(f"ERROR: {exc}")
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
