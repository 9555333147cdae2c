from __future__ import annotations

import json
import tomllib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any, Literal

from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

DEFAULT_MEMBER_GLOBS: tuple[str, ...] = ("packages/*",)

PackageKind = Literal["npm", "python"]


class ConfigError(ValueError):
    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


@dataclass(frozen=True)
class Package:
    name: str
    path: Path
    manifest_path: Path
    kind: PackageKind
    version: str | None = None
    scripts: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def has_script(self, name: str) -> bool:
        return name in self.scripts

    def command_for(self, name: str) -> str:
        try:
            return self.scripts[name]
        except KeyError:
            raise KeyError(f"{self.name}: no script named {name!r}") from None


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}", path=path) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Failed to parse JSON in {path}: {e}", path=path) from e
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a JSON object in {path}, got {type(data).__name__}.", path=path)
    return data


def read_toml(path: Path) -> dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}", path=path) from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse TOML in {path}: {e}", path=path) from e


def monorun_table(pyproject: dict[str, Any], *, path: Path) -> dict[str, Any]:
    """Return `[tool.monorun]` from a parsed pyproject, or an empty dict."""
    tool = pyproject.get("tool")
    if tool is None:
        return {}
    if not isinstance(tool, dict):
        raise ConfigError(f"Invalid [tool] table in {path}", path=path)
    table = tool.get("monorun")
    if table is None:
        return {}
    if not isinstance(table, dict):
        raise ConfigError(f"Invalid [tool.monorun] table in {path}", path=path)
    return table


def _parse_scripts(raw: Any, *, path: Path, where: str) -> Mapping[str, str]:
    if raw is None:
        return MappingProxyType({})
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping for {where} in {path}.", path=path)

    scripts: dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            raise ConfigError(f"Invalid script name {key!r} in {where} of {path}.", path=path)
        if not isinstance(value, str):
            raise ConfigError(
                f"Expected a command string for {where}.{key} in {path}, got {type(value).__name__}.",
                path=path,
            )
        # A blank command is treated like a missing script.
        if not value.strip():
            continue
        scripts[key] = value
    return MappingProxyType(scripts)


def _load_npm_package(package_dir: Path, manifest_path: Path) -> Package:
    data = _read_json(manifest_path)

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Missing/invalid \"name\" in {manifest_path}", path=manifest_path)

    version = data.get("version")
    if version is not None and not isinstance(version, str):
        raise ConfigError(f"Invalid \"version\" in {manifest_path} (expected string).", path=manifest_path)

    scripts = _parse_scripts(data.get("scripts"), path=manifest_path, where="scripts")
    return Package(
        name=name.strip(),
        path=package_dir,
        manifest_path=manifest_path,
        kind="npm",
        version=version,
        scripts=scripts,
    )


def _load_python_package(package_dir: Path, manifest_path: Path) -> Package:
    pyproject = read_toml(manifest_path)
    project = pyproject.get("project")
    if not isinstance(project, dict):
        raise ConfigError(f"Missing/invalid [project] table in {manifest_path}", path=manifest_path)

    name = project.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Missing/invalid [project].name in {manifest_path}", path=manifest_path)

    version = project.get("version")
    if version is not None:
        if not isinstance(version, str):
            raise ConfigError(f"Invalid [project].version in {manifest_path} (expected string).", path=manifest_path)
        try:
            Version(version)
        except InvalidVersion as e:
            raise ConfigError(f"Invalid [project].version={version!r} in {manifest_path}: {e}", path=manifest_path) from e

    table = monorun_table(pyproject, path=manifest_path)
    scripts = _parse_scripts(table.get("scripts"), path=manifest_path, where="[tool.monorun.scripts]")
    return Package(
        name=name.strip(),
        path=package_dir,
        manifest_path=manifest_path,
        kind="python",
        version=version,
        scripts=scripts,
    )


def load_package(package_dir: Path) -> Package | None:
    """Load the manifest of one package directory; None when it has no manifest."""
    npm_manifest = package_dir / "package.json"
    if npm_manifest.is_file():
        return _load_npm_package(package_dir, npm_manifest)
    py_manifest = package_dir / "pyproject.toml"
    if py_manifest.is_file():
        return _load_python_package(package_dir, py_manifest)
    return None


def _glob_list(raw: Any, *, path: Path, where: str) -> tuple[str, ...]:
    if not isinstance(raw, list):
        raise ConfigError(f"Expected a list of globs for {where} in {path}.", path=path)
    out: list[str] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"Expected non-empty string for {where}[{idx}] in {path}.", path=path)
        pattern = item.strip()
        if PurePosixPath(pattern).is_absolute() or Path(pattern).is_absolute():
            raise ConfigError(
                f"Glob {where}[{idx}]={pattern!r} in {path} must be relative to the workspace root.",
                path=path,
            )
        out.append(pattern)
    return tuple(out)


def member_globs(root: Path) -> tuple[str, ...]:
    pyproject_path = root / "pyproject.toml"
    if pyproject_path.is_file():
        table = monorun_table(read_toml(pyproject_path), path=pyproject_path)
        if "packages" in table:
            return _glob_list(table["packages"], path=pyproject_path, where="[tool.monorun].packages")

    package_json = root / "package.json"
    if package_json.is_file():
        workspaces = _read_json(package_json).get("workspaces")
        if isinstance(workspaces, dict):
            workspaces = workspaces.get("packages")
        if workspaces is not None:
            return _glob_list(workspaces, path=package_json, where="workspaces")

    return DEFAULT_MEMBER_GLOBS


def _relative_key(root: Path, candidate: Path) -> str:
    try:
        return candidate.relative_to(root).as_posix()
    except ValueError:
        return candidate.as_posix()


def discover_packages(root: Path) -> list[Package]:
    root = root.resolve()
    if not root.is_dir():
        raise ConfigError(f"Workspace root is not a directory: {root}", path=root)

    candidates: dict[str, Path] = {}
    for pattern in member_globs(root):
        try:
            matches = sorted(root.glob(pattern))
        except (ValueError, NotImplementedError) as e:
            raise ConfigError(f"Invalid workspace glob {pattern!r}: {e}", path=root) from e
        for candidate in matches:
            if not candidate.is_dir():
                continue
            candidates.setdefault(_relative_key(root, candidate), candidate)

    packages: list[Package] = []
    seen: dict[str, Path] = {}
    for key in sorted(candidates):
        package = load_package(candidates[key])
        if package is None:
            continue
        canonical = canonicalize_name(package.name)
        if canonical in seen:
            raise ConfigError(
                f"Duplicate package name {package.name!r}: {seen[canonical]} and {package.path}",
                path=package.manifest_path,
            )
        seen[canonical] = package.path
        packages.append(package)

    if not packages:
        raise ConfigError(f"No packages found in workspace: {root}", path=root)
    return packages


def select_packages(packages: Iterable[Package], names: Iterable[str]) -> list[Package]:
    wanted = {canonicalize_name(n): n for n in names}
    all_packages = list(packages)
    if not wanted:
        return all_packages

    selected = [p for p in all_packages if canonicalize_name(p.name) in wanted]
    missing = set(wanted) - {canonicalize_name(p.name) for p in selected}
    if missing:
        raise ConfigError(f"Unknown package(s): {', '.join(sorted(wanted[m] for m in missing))}")
    return selected
