from __future__ import annotations

from typing import Sequence

import numpy as np

from amplidenoise.core.alignment import Substitutions, as_matrix
from amplidenoise.exceptions import AmpliDenoiseUsageError


def validate_error_matrix(values: Sequence[Sequence[float]] | np.ndarray) -> np.ndarray:
    """Return a 4x4 float error-rate matrix with entries in [0, 1]."""

    err = as_matrix(values, label="Error matrix")
    if np.any(err < 0.0) or np.any(err > 1.0):
        raise AmpliDenoiseUsageError("Error matrix entries must lie in [0, 1].")
    return err


def uniform_error_matrix(rate: float) -> np.ndarray:
    """Error matrix with ``rate`` split evenly over the three possible substitutions."""

    if not 0.0 <= rate < 1.0:
        raise AmpliDenoiseUsageError(f"Error rate must lie in [0, 1), got {rate}.")
    err = np.full((4, 4), rate / 3.0, dtype=float)
    np.fill_diagonal(err, 1.0 - rate)
    return err


def log_error_matrix(err: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore"):
        return np.log(err)


def compute_lambda(subs: Substitutions, log_err: np.ndarray) -> float:
    """Probability that the observed sequence was read from the true one by error alone.

    Every aligned A/C/G/T column contributes ``err[true, observed]``; gaps and
    ambiguous bases contribute nothing. ``log_err`` is ``log(err)``, which may
    hold ``-inf`` for impossible transitions.
    """

    counts = subs.transitions
    observed = counts > 0
    if not observed.any():
        return 1.0
    log_lambda = float(np.sum(counts[observed] * log_err[observed]))
    return float(np.exp(log_lambda))
