from __future__ import annotations

from typing import Callable

import pytest

REFERENCE = (
    "TACGGAGGATCCGAGCGTTATCCGGATTTATTGGGTTTAAAGGGAGCGTAGGCGGACGCTTAAGTCAGTTGTGAAAGTTTGCGGCTCAACCGTAAAATTG"
)
_NEXT_BASE = {"A": "C", "C": "G", "G": "T", "T": "A"}


def _mutate(sequence: str, positions: list[int]) -> str:
    bases = list(sequence)
    for pos in positions:
        bases[pos] = _NEXT_BASE[bases[pos]]
    return "".join(bases)


@pytest.fixture
def reference() -> str:
    return REFERENCE


@pytest.fixture
def mutate() -> Callable[[str, list[int]], str]:
    return _mutate
