from __future__ import annotations

import re
from typing import Sequence

import numpy as np

from amplidenoise.exceptions import AmpliDenoiseUsageError

NUCLEOTIDES = "ACGT"
ALPHABET = "ACGTN-"

# Encoded values; anything >= AMBIGUOUS carries no base information.
A, C, G, T, N, GAP = range(6)
AMBIGUOUS = N

_ENCODE_TABLE = np.full(256, 255, dtype=np.uint8)
for _code, _char in enumerate(ALPHABET):
    _ENCODE_TABLE[ord(_char)] = _code
    _ENCODE_TABLE[ord(_char.lower())] = _code

_INVALID_CHARS = re.compile(r"[^ACGTNacgtn-]")


def normalize_sequence(sequence: str) -> str:
    return sequence.strip().upper()


def invalid_characters(sequence: str) -> set[str]:
    return set(_INVALID_CHARS.findall(sequence))


def validate_sequences(sequences: Sequence[str]) -> None:
    """Reject empty sequences and characters outside A/C/G/T/N/-."""

    for idx, sequence in enumerate(sequences):
        if not sequence:
            raise AmpliDenoiseUsageError(f"Sequence {idx} is empty.")
        bad = invalid_characters(sequence)
        if bad:
            listed = ", ".join(repr(char) for char in sorted(bad))
            raise AmpliDenoiseUsageError(
                f"Sequence {idx} contains characters outside {ALPHABET!r}: {listed}"
            )


def encode(sequence: str) -> np.ndarray:
    """Encode a validated sequence as a uint8 array (A=0, C=1, G=2, T=3, N=4, -=5)."""

    raw = np.frombuffer(sequence.encode("ascii"), dtype=np.uint8)
    encoded = _ENCODE_TABLE[raw]
    if encoded.size and int(encoded.max()) == 255:
        raise AmpliDenoiseUsageError(f"Cannot encode sequence with invalid characters: {sequence!r}")
    return encoded
