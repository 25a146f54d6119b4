from __future__ import annotations

import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import yaml

from pipefix.errors import ConfigurationError

Argv = Tuple[str, ...]


def _argv(cmd: Any) -> Optional[Argv]:
    if cmd is None:
        return None
    if isinstance(cmd, (list, tuple)):
        parts = tuple(str(c) for c in cmd)
    else:
        parts = tuple(shlex.split(str(cmd)))
    return parts or None


@dataclass(frozen=True)
class Framework:
    name: str
    language: str
    markers: Tuple[str, ...] = ()
    build_cmd: Optional[Argv] = None
    lint_cmd: Optional[Argv] = None
    test_cmd: Optional[Argv] = None
    coverage_cmd: Optional[Argv] = None
    env: Dict[str, str] = field(default_factory=dict)


FRAMEWORKS: Dict[str, Framework] = {
    "nodejs": Framework(
        name="nodejs",
        language="javascript",
        markers=("package.json",),
        build_cmd=_argv("npm run build"),
        lint_cmd=_argv("npm run lint"),
        test_cmd=_argv("npm test"),
        coverage_cmd=_argv("npm run coverage"),
        env={"NODE_ENV": "test", "CI": "true"},
    ),
    "golang": Framework(
        name="golang",
        language="go",
        markers=("go.mod",),
        build_cmd=_argv("go build ./..."),
        lint_cmd=_argv("golangci-lint run"),
        test_cmd=_argv("go test -v ./..."),
        coverage_cmd=_argv("go test -cover ./..."),
        env={"GO111MODULE": "on", "CGO_ENABLED": "0"},
    ),
    "maven": Framework(
        name="maven",
        language="java",
        markers=("pom.xml",),
        build_cmd=_argv("mvn -q compile"),
        lint_cmd=_argv("mvn checkstyle:check"),
        test_cmd=_argv("mvn test"),
        coverage_cmd=_argv("mvn jacoco:report"),
    ),
    "python": Framework(
        name="python",
        language="python",
        markers=("requirements.txt", "pyproject.toml", "setup.py"),
        build_cmd=_argv("pip install -e ."),
        lint_cmd=_argv("flake8"),
        test_cmd=_argv("pytest"),
        coverage_cmd=_argv("pytest --cov=."),
        env={"PYTHONPATH": "."},
    ),
    "rust": Framework(
        name="rust",
        language="rust",
        markers=("Cargo.toml",),
        build_cmd=_argv("cargo build"),
        lint_cmd=_argv("cargo clippy"),
        test_cmd=_argv("cargo test"),
        coverage_cmd=_argv("cargo tarpaulin"),
    ),
    "php": Framework(
        name="php",
        language="php",
        markers=("composer.json",),
        build_cmd=_argv("composer dump-autoload --optimize"),
        lint_cmd=_argv("./vendor/bin/phpcs"),
        test_cmd=_argv("./vendor/bin/phpunit"),
        coverage_cmd=_argv("./vendor/bin/phpunit --coverage-text"),
    ),
    "make": Framework(
        name="make",
        language="unknown",
        markers=("Makefile",),
        build_cmd=_argv("make build"),
        lint_cmd=_argv("make lint"),
        test_cmd=_argv("make test"),
        coverage_cmd=_argv("make coverage"),
    ),
    # Nothing recognizable: run nothing, report no tests and no coverage.
    "generic": Framework(name="generic", language="unknown"),
}

# Marker files checked in this order; the first one present decides the framework.
MARKER_PRIORITY: Tuple[str, ...] = (
    "package.json",
    "go.mod",
    "pom.xml",
    "requirements.txt",
    "pyproject.toml",
    "setup.py",
    "Cargo.toml",
    "composer.json",
    "Makefile",
)


def marker_priority(frameworks: Mapping[str, Framework] = FRAMEWORKS) -> Tuple[str, ...]:
    """Built-in markers first, then markers only known to custom descriptors (table order)."""
    extra = [m for fw in frameworks.values() for m in fw.markers if m not in MARKER_PRIORITY]
    return MARKER_PRIORITY + tuple(dict.fromkeys(extra))


def framework_for_marker(filename: str, frameworks: Mapping[str, Framework] = FRAMEWORKS) -> Optional[Framework]:
    name = Path(filename).name
    for fw in frameworks.values():
        if name in fw.markers:
            return fw
    return None


def detect_framework(present_files: Iterable[str], frameworks: Mapping[str, Framework] = FRAMEWORKS) -> Framework:
    """Pure mapping from the marker files present at the workspace root to a framework."""
    present = {Path(p).name for p in present_files}
    for marker in marker_priority(frameworks):
        if marker in present:
            fw = framework_for_marker(marker, frameworks)
            if fw is not None:
                return fw
    return frameworks.get("generic") or FRAMEWORKS["generic"]


def _override(base: Optional[Framework], name: str, raw: Mapping[str, Any]) -> Framework:
    fw = base or Framework(name=name, language=str(raw.get("language") or "unknown"))
    changes: Dict[str, Any] = {}
    if "language" in raw:
        changes["language"] = str(raw["language"])
    if "markers" in raw:
        changes["markers"] = tuple(str(m) for m in (raw.get("markers") or []))
    for key in ("build_cmd", "lint_cmd", "test_cmd", "coverage_cmd"):
        if key in raw:
            changes[key] = _argv(raw[key]) if raw[key] != "" else None
    if "env" in raw:
        env = raw.get("env") or {}
        if not isinstance(env, dict):
            raise ConfigurationError(f"frameworks.{name}.env must be a mapping")
        changes["env"] = {str(k): str(v) for k, v in env.items()}
    return replace(fw, **changes)


def load_framework_overrides(path: str, base: Mapping[str, Framework] = FRAMEWORKS) -> Dict[str, Framework]:
    """
    Merge a YAML file of framework overrides onto `base`.

    Example:
        python:
          test_cmd: pytest -q
          coverage_cmd: pytest -q --cov=src
        bazel:
          markers: [WORKSPACE]
          test_cmd: bazel test //...
    """
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"frameworks file not found: {path}")
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid frameworks file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"frameworks file must be a mapping: {path}")
    out = dict(base)
    for name, spec in raw.items():
        if not isinstance(spec, dict):
            raise ConfigurationError(f"frameworks.{name} must be a mapping")
        out[str(name)] = _override(out.get(str(name)), str(name), spec)
    return out
