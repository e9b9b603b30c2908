from __future__ import annotations

import json
import subprocess
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Mapping, Sequence

from amplidenoise import __version__
from amplidenoise.paths import OutputLayout

# Distributions whose versions can change numerical results or option parsing.
TRACKED_PACKAGES = ("numpy", "scipy", "pydantic", "typer")


@dataclass(slots=True)
class RunManifest:
    """One JSON record per run, rewritten as the run moves from planned to finished."""

    command: str
    argv: list[str]
    started_at: str
    config_path: str | None
    parameters: dict[str, Any]
    inputs: list[str]
    steps: list[str]
    versions: dict[str, str]
    git_commit: str | None = None
    status: str = "running"
    ended_at: str | None = None
    outputs: list[str] = field(default_factory=list)
    statistics: dict[str, Any] = field(default_factory=dict)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _package_version(package_name: str) -> str:
    try:
        return version(package_name)
    except PackageNotFoundError:
        return "unknown"


def _detect_git_commit(cwd: Path) -> str | None:
    try:
        process = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return process.stdout.strip() or None


def collect_versions() -> dict[str, str]:
    versions = {"amplidenoise": __version__, "python": sys.version.split()[0]}
    versions.update({name: _package_version(name) for name in TRACKED_PACKAGES})
    return versions


def create_run_manifest(
    *,
    command: str,
    argv: Sequence[str],
    config_path: Path | None,
    parameters: Mapping[str, Any],
    inputs: Sequence[Path],
    steps: Sequence[str],
) -> RunManifest:
    return RunManifest(
        command=command,
        argv=list(argv),
        started_at=_utcnow_iso(),
        config_path=str(config_path) if config_path is not None else None,
        parameters=dict(parameters),
        inputs=[str(path) for path in inputs],
        steps=list(steps),
        versions=collect_versions(),
        git_commit=_detect_git_commit(Path.cwd()),
    )


def finalize_manifest(
    manifest: RunManifest,
    *,
    status: str,
    outputs: Sequence[Path | str] = (),
    statistics: Mapping[str, Any] | None = None,
) -> RunManifest:
    manifest.status = status
    manifest.ended_at = _utcnow_iso()
    manifest.outputs = [str(path) for path in outputs]
    if statistics is not None:
        manifest.statistics = dict(statistics)
    return manifest


def write_manifest(layout: OutputLayout, manifest: RunManifest) -> Path:
    path = layout.manifest_path
    path.write_text(
        json.dumps(asdict(manifest), indent=2, ensure_ascii=True, default=str),
        encoding="utf-8",
    )
    return path
