from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from amplidenoise.exceptions import AmpliDenoiseUsageError


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _check_overwrite(path: Path, force: bool) -> None:
    if path.exists() and not force:
        raise AmpliDenoiseUsageError(f"Refusing to overwrite existing file without --force: {path}")


def write_json(path: Path, payload: Mapping[str, Any], *, force: bool = False) -> Path:
    ensure_dir(path.parent)
    _check_overwrite(path, force)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=True), encoding="utf-8")
    return path


def write_tsv(
    path: Path,
    header: Sequence[str],
    rows: Iterable[Sequence[Any]],
    *,
    force: bool = False,
) -> Path:
    ensure_dir(path.parent)
    _check_overwrite(path, force)

    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, delimiter="\t")
        writer.writerow(header)
        for row in rows:
            writer.writerow(list(row))

    return path
