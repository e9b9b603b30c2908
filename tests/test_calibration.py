from __future__ import annotations

import logging

import pytest

from amplidenoise.core.alignment import default_score_matrix
from amplidenoise.core.calibration import (
    CalibrationResult,
    calibrate_kmers,
    iter_sampled_pairs,
    plan_sampling,
    suggest_cutoff,
)
from amplidenoise.exceptions import AmpliDenoiseUsageError


def _variants(reference: str, mutate, count: int) -> list[str]:
    return [mutate(reference, [5 + 9 * idx]) for idx in range(count)]


def test_exact_number_of_pairs_when_more_are_available(reference: str, mutate, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="amplidenoise")

    result = calibrate_kmers(_variants(reference, mutate, 10), default_score_matrix(), max_aligns=5)

    assert len(result.pairs) == 5
    assert len(result.align) == len(result.kmer) == 5
    assert result.pairs == [(0, 1), (0, 2), (0, 3), (0, 4), (0, 5)]
    assert all(0.0 <= value <= 1.0 for value in result.align)
    assert all(0.0 <= value <= 1.0 for value in result.kmer)
    assert result.align == pytest.approx([0.02] * 5)
    assert not result.undersampled
    assert "Failed to reach" not in caplog.text


def test_shortfall_is_logged_not_raised(reference: str, mutate, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="amplidenoise")

    result = calibrate_kmers(_variants(reference, mutate, 4), default_score_matrix(), max_aligns=10)

    assert len(result.pairs) == 6
    assert result.undersampled
    assert "Failed to reach requested number of alignments: 6 of 10" in caplog.text


def test_sampling_strides_over_both_indices() -> None:
    plan = plan_sampling(100, 50)
    pairs = list(iter_sampled_pairs(100, plan))

    assert plan.stride == 6
    assert len(pairs) == 50
    assert all(i % 6 == 0 and (j - i - 1) % 6 == 0 for i, j in pairs)


def test_all_pairs_when_budget_covers_them() -> None:
    plan = plan_sampling(10, 45)

    assert plan.stride == 1
    assert len(list(iter_sampled_pairs(10, plan))) == 45


def test_threaded_calibration_matches_serial(reference: str, mutate) -> None:
    seqs = _variants(reference, mutate, 8)

    serial = calibrate_kmers(seqs, default_score_matrix(), max_aligns=20)
    threaded = calibrate_kmers(seqs, default_score_matrix(), max_aligns=20, threads=3)

    assert threaded.pairs == serial.pairs
    assert threaded.align == serial.align
    assert threaded.kmer == serial.kmer


def test_suggest_cutoff_covers_close_pairs() -> None:
    result = CalibrationResult(
        pairs=[(0, 1), (0, 2), (1, 2)],
        align=[0.01, 0.02, 0.5],
        kmer=[0.1, 0.2, 0.9],
        requested=3,
    )

    assert suggest_cutoff(result, 0.05) == pytest.approx(0.2)
    with pytest.raises(AmpliDenoiseUsageError, match="cannot suggest"):
        suggest_cutoff(result, 0.001)


def test_bad_score_matrix_is_rejected(reference: str) -> None:
    with pytest.raises(AmpliDenoiseUsageError, match="malformed"):
        calibrate_kmers([reference, reference], [[5, -4], [-4, 5]], max_aligns=1)
