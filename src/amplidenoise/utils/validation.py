from __future__ import annotations

import math
import numbers
from pathlib import Path
from typing import Any, Iterable, Sequence

import numpy as np

from amplidenoise.exceptions import AmpliDenoiseUsageError

FASTA_SUFFIXES = (".fa", ".fasta", ".fna", ".fa.gz", ".fasta.gz", ".fna.gz")


def matches_suffix(path: Path, suffixes: Iterable[str]) -> bool:
    lowered = path.name.lower()
    return any(lowered.endswith(suffix) for suffix in suffixes)


def validate_existing_file(path: Path, label: str) -> None:
    if not path.exists():
        raise AmpliDenoiseUsageError(f"{label} does not exist: {path}")
    if not path.is_file():
        raise AmpliDenoiseUsageError(f"{label} is not a file: {path}")


def as_scalar(value: Any, *, label: str, kind: type = float) -> Any:
    """Accept a scalar or a length-1 sequence; any other multiplicity is a usage error."""

    if isinstance(value, np.ndarray):
        if value.size != 1:
            raise AmpliDenoiseUsageError(f"{label} not length 1: {value.size}")
        value = value.reshape(-1)[0].item()
    elif isinstance(value, (list, tuple)):
        if len(value) != 1:
            raise AmpliDenoiseUsageError(f"{label} not length 1: {len(value)}")
        value = value[0]

    if kind is bool:
        if isinstance(value, (bool, np.bool_, numbers.Integral)):
            return bool(value)
        raise AmpliDenoiseUsageError(f"{label} must be a boolean, got {value!r}.")
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, numbers.Real):
        raise AmpliDenoiseUsageError(f"{label} must be numeric, got {value!r}.")
    if math.isnan(float(value)):
        raise AmpliDenoiseUsageError(f"{label} must not be NaN.")
    return kind(value)


def validate_abundances(abundances: Sequence[Any]) -> list[int]:
    """Return abundances as ints, rejecting negative, fractional or non-numeric values."""

    validated: list[int] = []
    for idx, value in enumerate(abundances):
        if isinstance(value, (bool, np.bool_)) or not isinstance(value, numbers.Real):
            raise AmpliDenoiseUsageError(f"Abundance {idx} is not a number: {value!r}")
        as_float = float(value)
        if math.isnan(as_float) or not as_float.is_integer():
            raise AmpliDenoiseUsageError(f"Abundance {idx} is not a whole number: {value!r}")
        if as_float < 0:
            raise AmpliDenoiseUsageError(f"Abundance {idx} is negative: {value!r}")
        validated.append(int(value))
    return validated
