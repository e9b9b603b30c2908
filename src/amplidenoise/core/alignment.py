from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from amplidenoise.core.alphabet import ALPHABET, AMBIGUOUS, encode
from amplidenoise.exceptions import AmpliDenoiseUsageError

BAND_SIZE = 16
DEFAULT_GAP_PENALTY = -8.0
DEFAULT_MATCH = 5.0
DEFAULT_MISMATCH = -4.0

# Marks a column where one side of the alignment has no residue.
ALIGN_GAP = -1

_DIAG, _LEFT, _UP = 0, 1, 2
_NEG_INF = float("-inf")


@dataclass(frozen=True, slots=True, eq=False)
class Alignment:
    """Pairwise alignment of a true (consensus) sequence against an observed one."""

    true_codes: np.ndarray
    observed_codes: np.ndarray
    score: float

    @property
    def length(self) -> int:
        return int(self.true_codes.size)

    def render(self) -> tuple[str, str]:
        def _row(codes: np.ndarray) -> str:
            return "".join("." if code == ALIGN_GAP else ALPHABET[code] for code in codes.tolist())

        return _row(self.true_codes), _row(self.observed_codes)


@dataclass(frozen=True, slots=True, eq=False)
class Substitutions:
    """Substitutions observed when reading the observed sequence against the true one.

    ``transitions[i, j]`` counts aligned columns with true base ``i`` and observed
    base ``j`` (A, C, G, T order); the diagonal holds matches. Columns involving
    ``N`` or ``-`` are excluded everywhere.
    """

    nsubs: int
    nindels: int
    positions: tuple[int, ...]
    true_bases: str
    observed_bases: str
    transitions: np.ndarray


def default_score_matrix(match: float = DEFAULT_MATCH, mismatch: float = DEFAULT_MISMATCH) -> np.ndarray:
    score = np.full((4, 4), mismatch, dtype=float)
    np.fill_diagonal(score, match)
    return score


def as_matrix(values: Sequence[Sequence[float]] | np.ndarray, *, label: str) -> np.ndarray:
    """Coerce a nested sequence to a float 4x4 matrix or raise a usage error."""

    try:
        matrix = np.asarray(values, dtype=float)
    except (TypeError, ValueError) as exc:
        raise AmpliDenoiseUsageError(f"{label} must be a numeric 4x4 matrix.") from exc
    if matrix.shape != (4, 4):
        raise AmpliDenoiseUsageError(f"{label} malformed: expected shape (4, 4), got {matrix.shape}.")
    if not np.all(np.isfinite(matrix)):
        raise AmpliDenoiseUsageError(f"{label} contains non-finite values.")
    return matrix


def _score_table(score: np.ndarray) -> list[list[float]]:
    # Rows/columns for N and '-' score 0 against everything.
    table = [[0.0] * len(ALPHABET) for _ in ALPHABET]
    for i in range(4):
        for j in range(4):
            table[i][j] = float(score[i, j])
    return table


def nwalign_endsfree(
    true_seq: str,
    observed_seq: str,
    score: np.ndarray,
    gap_penalty: float = DEFAULT_GAP_PENALTY,
    band: int = BAND_SIZE,
) -> Alignment:
    """Banded global alignment with free end gaps on both sequences.

    Cells with ``j - i`` beyond ``band`` (widened by the length difference) are
    never visited; a negative ``band`` aligns over the full matrix. Ties in the
    traceback prefer the diagonal, then a gap in ``true_seq``, then a gap in
    ``observed_seq``.
    """

    left = encode(true_seq).tolist()
    right = encode(observed_seq).tolist()
    n1, n2 = len(left), len(right)
    table = _score_table(score)
    gap = float(gap_penalty)

    if band < 0:
        lband, rband = n1, n2
    else:
        lband = band + max(0, n1 - n2)
        rband = band + max(0, n2 - n1)

    dp = [[_NEG_INF] * (n2 + 1) for _ in range(n1 + 1)]
    ptr = [[_DIAG] * (n2 + 1) for _ in range(n1 + 1)]
    for j in range(0, min(n2, rband) + 1):
        dp[0][j] = 0.0
        ptr[0][j] = _LEFT
    for i in range(0, min(n1, lband) + 1):
        dp[i][0] = 0.0
        ptr[i][0] = _UP

    for i in range(1, n1 + 1):
        row, prev = dp[i], dp[i - 1]
        ptr_row = ptr[i]
        scores = table[left[i - 1]]
        for j in range(max(1, i - lband), min(n2, i + rband) + 1):
            diag = prev[j - 1] + scores[right[j - 1]]
            from_left = row[j - 1] + gap
            from_up = prev[j] + gap
            if diag >= from_left and diag >= from_up:
                row[j], ptr_row[j] = diag, _DIAG
            elif from_left >= from_up:
                row[j], ptr_row[j] = from_left, _LEFT
            else:
                row[j], ptr_row[j] = from_up, _UP

    # Free trailing gaps: best cell on the last row or last column, preferring the corner.
    best_i, best_j = n1, n2
    best = dp[n1][n2]
    for j in range(n2 - 1, -1, -1):
        if dp[n1][j] > best:
            best, best_i, best_j = dp[n1][j], n1, j
    for i in range(n1 - 1, -1, -1):
        if dp[i][n2] > best:
            best, best_i, best_j = dp[i][n2], i, n2

    true_cols: list[int] = []
    observed_cols: list[int] = []
    for j in range(n2, best_j, -1):
        true_cols.append(ALIGN_GAP)
        observed_cols.append(right[j - 1])
    for i in range(n1, best_i, -1):
        true_cols.append(left[i - 1])
        observed_cols.append(ALIGN_GAP)

    i, j = best_i, best_j
    while i > 0 and j > 0:
        move = ptr[i][j]
        if move == _DIAG:
            true_cols.append(left[i - 1])
            observed_cols.append(right[j - 1])
            i -= 1
            j -= 1
        elif move == _LEFT:
            true_cols.append(ALIGN_GAP)
            observed_cols.append(right[j - 1])
            j -= 1
        else:
            true_cols.append(left[i - 1])
            observed_cols.append(ALIGN_GAP)
            i -= 1
    while i > 0:
        true_cols.append(left[i - 1])
        observed_cols.append(ALIGN_GAP)
        i -= 1
    while j > 0:
        true_cols.append(ALIGN_GAP)
        observed_cols.append(right[j - 1])
        j -= 1

    true_cols.reverse()
    observed_cols.reverse()
    return Alignment(
        true_codes=np.asarray(true_cols, dtype=np.int8),
        observed_codes=np.asarray(observed_cols, dtype=np.int8),
        score=float(best),
    )


def al2subs(alignment: Alignment) -> Substitutions:
    """Summarize substitutions and interior indels from an alignment."""

    true_codes = alignment.true_codes.astype(np.int64)
    observed_codes = alignment.observed_codes.astype(np.int64)
    transitions = np.zeros((4, 4), dtype=np.int64)

    true_present = true_codes != ALIGN_GAP
    observed_present = observed_codes != ALIGN_GAP
    paired = true_present & observed_present
    if not paired.any():
        return Substitutions(
            nsubs=0,
            nindels=0,
            positions=(),
            true_bases="",
            observed_bases="",
            transitions=transitions,
        )

    paired_cols = np.flatnonzero(paired)
    first, last = int(paired_cols[0]), int(paired_cols[-1])
    nindels = int(np.count_nonzero(~paired[first : last + 1]))

    informative = paired & (true_codes < AMBIGUOUS) & (observed_codes < AMBIGUOUS)
    np.add.at(transitions, (true_codes[informative], observed_codes[informative]), 1)

    mismatched = informative & (true_codes != observed_codes)
    true_positions = np.cumsum(true_present) - 1
    sub_cols = np.flatnonzero(mismatched)

    return Substitutions(
        nsubs=int(sub_cols.size),
        nindels=nindels,
        positions=tuple(int(pos) for pos in true_positions[sub_cols]),
        true_bases="".join(ALPHABET[code] for code in true_codes[sub_cols].tolist()),
        observed_bases="".join(ALPHABET[code] for code in observed_codes[sub_cols].tolist()),
        transitions=transitions,
    )


def compare_sequences(
    true_seq: str,
    observed_seq: str,
    score: np.ndarray,
    gap_penalty: float = DEFAULT_GAP_PENALTY,
    band: int = BAND_SIZE,
) -> Substitutions:
    if true_seq == observed_seq:
        # Identical sequences align column for column; skip the DP.
        codes = encode(true_seq).astype(np.int8)
        return al2subs(Alignment(true_codes=codes, observed_codes=codes.copy(), score=0.0))
    return al2subs(nwalign_endsfree(true_seq, observed_seq, score, gap_penalty, band))
