from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from monorun.workspace import ConfigError, monorun_table, read_toml

USER_CONFIG_FILENAME = "monorun.yaml"

_ENV_BAIL = "MONORUN_BAIL"
_ENV_PREFIX = "MONORUN_PREFIX"
_ENV_CONCURRENCY = "MONORUN_CONCURRENCY"
_ENV_GRACE_SECONDS = "MONORUN_GRACE_SECONDS"

_TRUE_STRINGS: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS: frozenset[str] = frozenset({"0", "false", "no", "off"})
_RUN_KEYS: frozenset[str] = frozenset({"bail", "prefix", "concurrency", "grace_seconds"})


@dataclass(frozen=True)
class RunOptions:
    bail: bool = True
    prefix: bool = True
    # None means no limit within a phase.
    concurrency: int | None = None
    grace_seconds: float = 5.0

    def with_overrides(self, **overrides: Any) -> RunOptions:
        """Return a copy with every override that is not None applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "concurrency" in changes:
            changes["concurrency"] = _coerce_concurrency(changes["concurrency"], where="concurrency")
        if "grace_seconds" in changes:
            changes["grace_seconds"] = _coerce_grace(changes["grace_seconds"], where="grace_seconds")
        return dataclasses.replace(self, **changes)


def _coerce_concurrency(value: Any, *, where: str, path: Path | None = None) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where}: expected an integer, got {value!r}", path=path)
    if value < 0:
        raise ConfigError(f"{where}: must be >= 0 (0 means unbounded), got {value}", path=path)
    return value or None


def _coerce_grace(value: Any, *, where: str, path: Path | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where}: expected a number of seconds, got {value!r}", path=path)
    if value <= 0:
        raise ConfigError(f"{where}: must be > 0, got {value}", path=path)
    return float(value)


def _apply_run_table(options: RunOptions, table: Any, *, path: Path, where: str) -> RunOptions:
    if table is None:
        return options
    if not isinstance(table, dict):
        raise ConfigError(f"Expected a mapping for {where} in {path}.", path=path)

    unknown = set(table) - _RUN_KEYS
    if unknown:
        raise ConfigError(
            f"Unknown keys in {where} of {path}: {', '.join(sorted(unknown))}. "
            f"Allowed: {', '.join(sorted(_RUN_KEYS))}.",
            path=path,
        )

    changes: dict[str, Any] = {}
    for key in ("bail", "prefix"):
        if key in table:
            if not isinstance(table[key], bool):
                raise ConfigError(f"{where}.{key} in {path}: expected a boolean.", path=path)
            changes[key] = table[key]
    if "concurrency" in table:
        changes["concurrency"] = _coerce_concurrency(table["concurrency"], where=f"{where}.concurrency", path=path)
    if "grace_seconds" in table:
        changes["grace_seconds"] = _coerce_grace(table["grace_seconds"], where=f"{where}.grace_seconds", path=path)
    return dataclasses.replace(options, **changes)


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}", path=path) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {path}: {e}", path=path) from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(raw).__name__}.", path=path)
    return raw


def _env_bool(env: Mapping[str, str], name: str) -> bool | None:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    value = raw.strip().lower()
    if value in _TRUE_STRINGS:
        return True
    if value in _FALSE_STRINGS:
        return False
    raise ConfigError(f"{name}={raw!r}: expected one of 1/0/true/false/yes/no/on/off")


def _env_options(options: RunOptions, env: Mapping[str, str]) -> RunOptions:
    changes: dict[str, Any] = {}
    for field_name, env_name in (("bail", _ENV_BAIL), ("prefix", _ENV_PREFIX)):
        value = _env_bool(env, env_name)
        if value is not None:
            changes[field_name] = value

    raw = env.get(_ENV_CONCURRENCY)
    if raw is not None and raw.strip():
        try:
            parsed = int(raw)
        except ValueError as e:
            raise ConfigError(f"{_ENV_CONCURRENCY}={raw!r}: expected an integer") from e
        changes["concurrency"] = _coerce_concurrency(parsed, where=_ENV_CONCURRENCY)

    raw = env.get(_ENV_GRACE_SECONDS)
    if raw is not None and raw.strip():
        try:
            grace = float(raw)
        except ValueError as e:
            raise ConfigError(f"{_ENV_GRACE_SECONDS}={raw!r}: expected a number of seconds") from e
        changes["grace_seconds"] = _coerce_grace(grace, where=_ENV_GRACE_SECONDS)

    return dataclasses.replace(options, **changes)


def load_run_options(root: Path, *, env: Mapping[str, str] | None = None) -> RunOptions:
    """
    Resolve run options for a workspace.

    Precedence, lowest first: built-in defaults, `[tool.monorun.run]` in the root
    `pyproject.toml`, the `run:` mapping of `monorun.yaml`, then `MONORUN_*`
    environment variables. CLI flags are applied on top by the caller via
    `RunOptions.with_overrides`.
    """
    options = RunOptions()

    pyproject_path = root / "pyproject.toml"
    if pyproject_path.is_file():
        table = monorun_table(read_toml(pyproject_path), path=pyproject_path)
        options = _apply_run_table(options, table.get("run"), path=pyproject_path, where="[tool.monorun.run]")

    user_config_path = root / USER_CONFIG_FILENAME
    if user_config_path.is_file():
        data = _load_yaml_mapping(user_config_path)
        unknown = set(data) - {"run"}
        if unknown:
            raise ConfigError(
                f"Unknown keys in {user_config_path}: {', '.join(sorted(unknown))}. Allowed: run.",
                path=user_config_path,
            )
        options = _apply_run_table(options, data.get("run"), path=user_config_path, where="run")

    return _env_options(options, os.environ if env is None else env)
