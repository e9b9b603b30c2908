from __future__ import annotations

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from amplidenoise.core.alphabet import AMBIGUOUS, encode

KMER_SIZE = 5
# Dense count vectors have 4**k entries, so k is kept small.
MAX_KMER_SIZE = 8


def kmer_index_weights(k: int) -> np.ndarray:
    return 4 ** np.arange(k - 1, -1, -1, dtype=np.int64)


def kmer_vector(sequence: str, k: int = KMER_SIZE) -> np.ndarray:
    """Count every k-mer made only of A/C/G/T; windows touching N or '-' are skipped."""

    if not 1 <= k <= MAX_KMER_SIZE:
        raise ValueError(f"k-mer size must lie in 1..{MAX_KMER_SIZE}, got {k}.")

    counts = np.zeros(4**k, dtype=np.int64)
    codes = encode(sequence)
    if codes.size < k:
        return counts

    windows = sliding_window_view(codes, k)
    valid = np.all(windows < AMBIGUOUS, axis=1)
    if not valid.any():
        return counts

    indices = windows[valid].astype(np.int64) @ kmer_index_weights(k)
    counts += np.bincount(indices, minlength=4**k)
    return counts


def kmer_dist(
    left_vector: np.ndarray,
    left_length: int,
    right_vector: np.ndarray,
    right_length: int,
    k: int = KMER_SIZE,
) -> float:
    """Approximate fraction of differing positions from shared k-mer counts.

    The shared count is normalised by the number of windows in the shorter
    sequence, so the result lies in [0, 1] and is symmetric in its arguments.
    """

    windows = min(left_length, right_length) - k + 1
    if windows <= 0:
        return 1.0
    shared = int(np.minimum(left_vector, right_vector).sum())
    distance = 1.0 - shared / float(windows)
    return max(0.0, min(1.0, distance))


def kmer_distance(left: str, right: str, k: int = KMER_SIZE) -> float:
    if left == right:
        return 0.0
    return kmer_dist(kmer_vector(left, k), len(left), kmer_vector(right, k), len(right), k)
