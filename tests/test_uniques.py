from __future__ import annotations

import gzip
from pathlib import Path

import numpy as np
import pytest

from amplidenoise.core.uniques import (
    FastaRecord,
    load_uniques,
    matrix_rows,
    parse_size_annotation,
    read_fasta_records,
    read_matrix_tsv,
    write_fasta_records,
)
from amplidenoise.exceptions import AmpliDenoiseUsageError


def test_load_size_annotated_fasta(tmp_path: Path) -> None:
    fasta = tmp_path / "uniques.fasta"
    fasta.write_text(">u1;size=120\nACGT\nacgt\n>u2;size=3;\nACGA\n", encoding="utf-8")

    table = load_uniques(fasta)

    assert table.sequences == ["ACGTACGT", "ACGA"]
    assert table.abundances == [120, 3]
    assert table.labels == ["u1", "u2"]
    assert table.total_reads == 123


def test_fasta_without_sizes_requires_opt_out(tmp_path: Path) -> None:
    fasta = tmp_path / "seqs.fa.gz"
    with gzip.open(fasta, "wt", encoding="utf-8") as handle:
        handle.write(">a\nACGT\n>b\nAGGT\n")

    with pytest.raises(AmpliDenoiseUsageError, match="size=N"):
        load_uniques(fasta)
    table = load_uniques(fasta, require_abundance=False)
    assert table.abundances == [1, 1]


def test_load_uniques_tsv(tmp_path: Path) -> None:
    tsv = tmp_path / "uniques.tsv"
    tsv.write_text("id\tsequence\tabundance\ns1\tACGT\t10\ns2\tacgg\t2\n", encoding="utf-8")

    table = load_uniques(tsv)

    assert table.sequences == ["ACGT", "ACGG"]
    assert table.abundances == [10, 2]
    assert table.labels == ["s1", "s2"]


def test_tsv_rejects_bad_abundance(tmp_path: Path) -> None:
    tsv = tmp_path / "uniques.tsv"
    tsv.write_text("sequence\tabundance\nACGT\tmany\n", encoding="utf-8")

    with pytest.raises(AmpliDenoiseUsageError, match="Invalid abundance"):
        load_uniques(tsv)


def test_tsv_missing_column(tmp_path: Path) -> None:
    tsv = tmp_path / "uniques.tsv"
    tsv.write_text("sequence\nACGT\n", encoding="utf-8")

    with pytest.raises(AmpliDenoiseUsageError, match="abundance"):
        load_uniques(tsv)
    assert load_uniques(tsv, require_abundance=False).abundances == [1]


def test_missing_file_is_usage_error(tmp_path: Path) -> None:
    with pytest.raises(AmpliDenoiseUsageError, match="does not exist"):
        load_uniques(tmp_path / "absent.tsv")


def test_parse_size_annotation() -> None:
    assert parse_size_annotation("seq1;size=42") == 42
    assert parse_size_annotation("seq1;size=42;ee=0.1") == 42
    assert parse_size_annotation("seq1;abundance=42") is None


def _write_labelled_matrix(path: Path, header: list[str], matrix: np.ndarray) -> None:
    path.write_text(
        "\t".join(header)
        + "\n"
        + "\n".join("\t".join(row) for row in matrix_rows(matrix))
        + "\n",
        encoding="utf-8",
    )


@pytest.mark.parametrize("header", [["from", "A", "C", "G", "T"], ["A", "C", "G", "T"]])
def test_matrix_tsv_round_trip_with_row_labels(tmp_path: Path, header: list[str]) -> None:
    path = tmp_path / "err.tsv"
    matrix = np.full((4, 4), 0.01)
    np.fill_diagonal(matrix, 0.97)
    _write_labelled_matrix(path, header, matrix)

    assert np.allclose(read_matrix_tsv(path, "Error matrix"), matrix)


def test_matrix_tsv_wrong_shape(tmp_path: Path) -> None:
    path = tmp_path / "score.tsv"
    path.write_text("A\tC\tG\tT\n5\t-4\t-4\t-4\n", encoding="utf-8")

    with pytest.raises(AmpliDenoiseUsageError, match="malformed"):
        read_matrix_tsv(path, "Score matrix")


def test_write_fasta_refuses_overwrite(tmp_path: Path) -> None:
    path = tmp_path / "out.fasta"
    records = [FastaRecord(header="g1;size=5", sequence="A" * 100)]

    write_fasta_records(path, records, line_width=60)
    assert [record.sequence for record in read_fasta_records(path)] == ["A" * 100]
    with pytest.raises(AmpliDenoiseUsageError, match="--force"):
        write_fasta_records(path, records)
    write_fasta_records(path, records, force=True)
