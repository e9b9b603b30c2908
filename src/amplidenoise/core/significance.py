from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from scipy.stats import poisson

OMEGA_A = 0.01
OMEGA_S = 1e-3


@dataclass(frozen=True, slots=True)
class BudCandidate:
    """One family's significance against its cluster."""

    cluster_index: int
    family_index: int
    first_raw: int
    reads: int
    pvalue: float

    def sort_key(self) -> tuple[float, int, int]:
        return (self.pvalue, self.cluster_index, self.first_raw)


def expected_reads(lambda_: float, cluster_reads: int) -> float:
    return lambda_ * float(cluster_reads)


def abundance_pvalue(reads: int, lambda_: float, cluster_reads: int) -> float:
    """Poisson tail P(X >= reads | X >= 1) with mean ``lambda_ * cluster_reads``.

    Conditioning on ``X >= 1`` reflects that only sequences present in the data
    are ever tested, which makes abundance-1 families uninformative (p = 1).
    """

    if reads <= 0:
        return 1.0
    mu = expected_reads(lambda_, cluster_reads)
    if mu <= 0.0:
        return 0.0
    if reads == 1:
        return 1.0
    norm = -math.expm1(-mu)
    pvalue = float(poisson.sf(reads - 1, mu)) / norm
    return min(1.0, pvalue)


def singleton_pvalue(lambda_: float, cluster_reads: int) -> float:
    """Unconditioned probability P(X >= 1) of error producing this sequence at all."""

    mu = expected_reads(lambda_, cluster_reads)
    if mu <= 0.0:
        return 0.0
    return float(-math.expm1(-mu))


def most_significant(candidates: Iterable[BudCandidate]) -> BudCandidate | None:
    """Lowest p-value; ties go to the lowest cluster index, then the earliest input raw."""

    best: BudCandidate | None = None
    for candidate in candidates:
        if best is None or candidate.sort_key() < best.sort_key():
            best = candidate
    return best
