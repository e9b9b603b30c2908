from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterator, Sequence

import numpy as np

from amplidenoise.core.alignment import BAND_SIZE, DEFAULT_GAP_PENALTY, as_matrix, compare_sequences
from amplidenoise.core.alphabet import normalize_sequence, validate_sequences
from amplidenoise.core.kmer import KMER_SIZE, kmer_dist, kmer_vector
from amplidenoise.exceptions import AmpliDenoiseUsageError
from amplidenoise.logging import get_logger
from amplidenoise.utils.validation import as_scalar

logger = get_logger("amplidenoise.calibration")


@dataclass(frozen=True, slots=True)
class SamplingPlan:
    requested: int
    target: int
    stride: int


@dataclass(frozen=True, slots=True)
class CalibrationResult:
    """Paired distances for the sampled sequence pairs, in sampling order."""

    pairs: list[tuple[int, int]]
    align: list[float]
    kmer: list[float]
    requested: int

    @property
    def undersampled(self) -> bool:
        return len(self.pairs) < self.requested


def plan_sampling(nseqs: int, max_aligns: int) -> SamplingPlan:
    """Choose the stride over both loop indices for at most ``max_aligns`` comparisons.

    With more pairs available than requested, ``n_iters`` is the smallest count with
    ``n_iters * (n_iters - 1) / 2`` safely above ``max_aligns`` and the stride spreads
    those iterations over the whole sequence set. Otherwise every pair is compared.
    """

    total_pairs = nseqs * (nseqs - 1) // 2
    if max_aligns < total_pairs:
        n_iters = int(2 * math.sqrt(max_aligns)) + 2
        stride = max(1, nseqs // n_iters)
        return SamplingPlan(requested=max_aligns, target=max_aligns, stride=stride)
    return SamplingPlan(requested=max_aligns, target=total_pairs, stride=1)


def iter_sampled_pairs(nseqs: int, plan: SamplingPlan) -> Iterator[tuple[int, int]]:
    emitted = 0
    for i in range(0, nseqs, plan.stride):
        for j in range(i + 1, nseqs, plan.stride):
            if emitted >= plan.target:
                return
            yield i, j
            emitted += 1


def calibrate_kmers(
    seqs: Sequence[str],
    score: Any,
    gap: float = DEFAULT_GAP_PENALTY,
    max_aligns: int = 1000,
    *,
    band_size: int = BAND_SIZE,
    kmer_size: int = KMER_SIZE,
    threads: int = 1,
) -> CalibrationResult:
    """Align a strided sample of sequence pairs and report both distances per pair.

    The alignment distance is the substitution count over the shorter sequence's
    length. Falling short of ``max_aligns`` is logged as a warning, not raised.
    """

    gap = as_scalar(gap, label="Gap penalty")
    max_aligns = as_scalar(max_aligns, label="max_aligns", kind=int)
    if max_aligns < 0:
        raise AmpliDenoiseUsageError(f"max_aligns must be non-negative, got {max_aligns}.")
    normalized = [normalize_sequence(seq) for seq in seqs]
    validate_sequences(normalized)
    score_matrix = as_matrix(score, label="Score matrix")

    plan = plan_sampling(len(normalized), max_aligns)
    pairs = list(iter_sampled_pairs(len(normalized), plan))
    vectors = {idx: kmer_vector(normalized[idx], kmer_size) for pair in pairs for idx in pair}

    def _distances(pair: tuple[int, int]) -> tuple[float, float]:
        i, j = pair
        left, right = normalized[i], normalized[j]
        minlen = min(len(left), len(right))
        subs = compare_sequences(left, right, score_matrix, gap, band_size)
        align_distance = subs.nsubs / float(minlen)
        kmer_distance = kmer_dist(vectors[i], len(left), vectors[j], len(right), kmer_size)
        return align_distance, kmer_distance

    if threads > 1 and len(pairs) > 1:
        with ThreadPoolExecutor(max_workers=threads) as pool:
            distances = list(pool.map(_distances, pairs))
    else:
        distances = [_distances(pair) for pair in pairs]

    if len(pairs) != max_aligns:
        logger.warning(
            "Failed to reach requested number of alignments: %d of %d.",
            len(pairs),
            max_aligns,
        )

    return CalibrationResult(
        pairs=pairs,
        align=[align for align, _ in distances],
        kmer=[kmer for _, kmer in distances],
        requested=max_aligns,
    )


def suggest_cutoff(result: CalibrationResult, max_align_distance: float, quantile: float = 1.0) -> float:
    """Smallest k-mer cutoff under which ``quantile`` of the close pairs still get aligned.

    Close pairs are those with alignment distance at most ``max_align_distance``;
    skipping any of them would be a false skip.
    """

    align = np.asarray(result.align, dtype=float)
    kmer = np.asarray(result.kmer, dtype=float)
    close = kmer[align <= max_align_distance]
    if close.size == 0:
        raise AmpliDenoiseUsageError(
            f"No sampled pair has alignment distance <= {max_align_distance}; cannot suggest a cutoff."
        )
    return float(np.quantile(close, quantile))
