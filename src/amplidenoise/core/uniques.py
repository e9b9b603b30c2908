from __future__ import annotations

import csv
import gzip
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np

from amplidenoise.core.alignment import as_matrix
from amplidenoise.core.alphabet import NUCLEOTIDES, normalize_sequence, validate_sequences
from amplidenoise.exceptions import AmpliDenoiseUsageError
from amplidenoise.utils.io import ensure_dir
from amplidenoise.utils.validation import (
    FASTA_SUFFIXES,
    matches_suffix,
    validate_abundances,
    validate_existing_file,
)

_SIZE_ANNOTATION = re.compile(r"(?:^|;)size=(\d+)(?:;|$)")


@dataclass(frozen=True, slots=True)
class FastaRecord:
    """Simple FASTA record."""

    header: str
    sequence: str


@dataclass(frozen=True, slots=True)
class UniqueTable:
    """Unique sequences with parallel read counts, as handed to the engine."""

    sequences: list[str]
    abundances: list[int]
    labels: list[str]

    @property
    def total_reads(self) -> int:
        return sum(self.abundances)


def _open_text(path: Path):
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return path.open("r", encoding="utf-8")


def _write_text(path: Path):
    if path.suffix == ".gz":
        return gzip.open(path, "wt", encoding="utf-8")
    return path.open("w", encoding="utf-8")


def read_fasta_records(path: Path) -> list[FastaRecord]:
    """Read FASTA records, preserving order and full header text."""

    records: list[FastaRecord] = []
    header: str | None = None
    seq_chunks: list[str] = []

    with _open_text(path) as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith(">"):
                if header is not None:
                    records.append(FastaRecord(header=header, sequence="".join(seq_chunks).upper()))
                header = line[1:].split()[0]
                seq_chunks = []
            else:
                seq_chunks.append(line)

    if header is not None:
        records.append(FastaRecord(header=header, sequence="".join(seq_chunks).upper()))

    return records


def write_fasta_records(
    path: Path,
    records: Iterable[FastaRecord],
    line_width: int = 80,
    *,
    force: bool = False,
) -> Path:
    """Write FASTA records using deterministic line wrapping."""

    ensure_dir(path.parent)
    if path.exists() and not force:
        raise AmpliDenoiseUsageError(f"Refusing to overwrite existing file without --force: {path}")
    with _write_text(path) as handle:
        for record in records:
            handle.write(f">{record.header}\n")
            sequence = record.sequence
            for start in range(0, len(sequence), line_width):
                handle.write(f"{sequence[start:start + line_width]}\n")

    return path


def parse_size_annotation(header: str) -> int | None:
    match = _SIZE_ANNOTATION.search(header)
    if match is None:
        return None
    return int(match.group(1))


def uniques_from_fasta(records: Sequence[FastaRecord], *, require_abundance: bool = True) -> UniqueTable:
    """Build a unique table from records carrying ``;size=N`` in their headers.

    Without ``require_abundance`` a missing annotation counts as one read.
    """

    sequences: list[str] = []
    abundances: list[int] = []
    labels: list[str] = []
    for record in records:
        size = parse_size_annotation(record.header)
        if size is None:
            if require_abundance:
                raise AmpliDenoiseUsageError(f"FASTA header lacks a ';size=N' annotation: {record.header}")
            size = 1
        sequences.append(normalize_sequence(record.sequence))
        abundances.append(size)
        labels.append(record.header.split(";")[0])
    validate_sequences(sequences)
    return UniqueTable(sequences=sequences, abundances=abundances, labels=labels)


def read_uniques_tsv(path: Path, *, require_abundance: bool = True) -> UniqueTable:
    """Read a ``sequence``/``abundance`` TSV, with an optional ``id`` column."""

    with _open_text(path) as handle:
        reader = csv.DictReader(handle, delimiter="\t")
        if reader.fieldnames is None:
            raise AmpliDenoiseUsageError(f"Uniques TSV has no header row: {path}")
        header = [name.strip() for name in reader.fieldnames]
        required = {"sequence", "abundance"} if require_abundance else {"sequence"}
        missing = required.difference(header)
        if missing:
            raise AmpliDenoiseUsageError(
                f"Missing required columns in {path}: {', '.join(sorted(missing))}"
            )
        rows = [{str(key).strip(): (value or "").strip() for key, value in row.items()} for row in reader]

    if not rows:
        raise AmpliDenoiseUsageError(f"Uniques TSV has no data rows: {path}")

    sequences: list[str] = []
    raw_abundances: list[float] = []
    labels: list[str] = []
    for idx, row in enumerate(rows):
        try:
            raw_abundances.append(float(row.get("abundance") or ("" if require_abundance else "1")))
        except ValueError as exc:
            raise AmpliDenoiseUsageError(
                f"Invalid abundance at row {idx + 2} in {path}: {row.get('abundance')!r}"
            ) from exc
        sequences.append(normalize_sequence(row["sequence"]))
        labels.append(row.get("id") or f"uniq_{idx + 1:06d}")

    validate_sequences(sequences)
    return UniqueTable(
        sequences=sequences,
        abundances=validate_abundances(raw_abundances),
        labels=labels,
    )


def load_uniques(path: Path, *, require_abundance: bool = True) -> UniqueTable:
    """Load unique sequences from a TSV table or a size-annotated FASTA file."""

    validate_existing_file(path, "Uniques file")
    if matches_suffix(path, FASTA_SUFFIXES):
        records = read_fasta_records(path)
        if not records:
            raise AmpliDenoiseUsageError(f"FASTA file has no records: {path}")
        return uniques_from_fasta(records, require_abundance=require_abundance)
    return read_uniques_tsv(path, require_abundance=require_abundance)


def read_matrix_tsv(path: Path, label: str) -> np.ndarray:
    """Read a 4x4 matrix with an ``A C G T`` header row and row labels in the first column."""

    validate_existing_file(path, label)
    with _open_text(path) as handle:
        rows = [line.rstrip("\n").split("\t") for line in handle if line.strip()]

    if not rows:
        raise AmpliDenoiseUsageError(f"{label} file is empty: {path}")

    header = [cell.strip().upper() for cell in rows[0]]
    body = rows[1:]
    if header[-4:] != list(NUCLEOTIDES):
        raise AmpliDenoiseUsageError(f"{label} header must end with A, C, G, T columns: {path}")

    values: list[list[float]] = []
    for row in body:
        cells = row[1:] if len(row) == 5 else row
        try:
            values.append([float(cell) for cell in cells])
        except ValueError as exc:
            raise AmpliDenoiseUsageError(f"Non-numeric entry in {label}: {path}") from exc

    return as_matrix(values, label=label)


def matrix_rows(matrix: np.ndarray) -> list[list[str]]:
    return [[base, *(f"{value:g}" for value in matrix[idx])] for idx, base in enumerate(NUCLEOTIDES)]
