from __future__ import annotations

import numpy as np
import pytest

from amplidenoise.core.alignment import compare_sequences, default_score_matrix
from amplidenoise.core.likelihood import (
    compute_lambda,
    log_error_matrix,
    uniform_error_matrix,
    validate_error_matrix,
)
from amplidenoise.exceptions import AmpliDenoiseUsageError


def test_uniform_error_matrix_rows_sum_to_one() -> None:
    err = uniform_error_matrix(0.01)

    assert np.allclose(err.sum(axis=1), 1.0)
    assert err[0, 0] == pytest.approx(0.99)


def test_lambda_of_identical_sequence(reference: str) -> None:
    log_err = log_error_matrix(uniform_error_matrix(0.01))
    subs = compare_sequences(reference, reference, default_score_matrix())

    assert compute_lambda(subs, log_err) == pytest.approx(0.99 ** len(reference))


def test_lambda_decreases_with_substitutions(reference: str, mutate) -> None:
    log_err = log_error_matrix(uniform_error_matrix(0.01))
    score = default_score_matrix()

    values = [
        compute_lambda(compare_sequences(reference, mutate(reference, positions), score), log_err)
        for positions in ([], [30], [30, 60], [30, 60, 90])
    ]

    assert values == sorted(values, reverse=True)
    assert len(set(values)) == 4


def test_impossible_transition_gives_zero_lambda(reference: str, mutate) -> None:
    err = np.eye(4)
    log_err = log_error_matrix(err)
    subs = compare_sequences(reference, mutate(reference, [40]), default_score_matrix())

    assert compute_lambda(subs, log_err) == 0.0


def test_error_matrix_entries_must_be_probabilities() -> None:
    err = uniform_error_matrix(0.01)
    err[1, 2] = 1.5
    with pytest.raises(AmpliDenoiseUsageError, match=r"\[0, 1\]"):
        validate_error_matrix(err)
