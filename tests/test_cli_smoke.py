from __future__ import annotations

import csv
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from amplidenoise import __version__
from amplidenoise.cli import app

runner = CliRunner()

REFERENCE = (
    "TACGGAGGATCCGAGCGTTATCCGGATTTATTGGGTTTAAAGGGAGCGTAGGCGGACGCTTAAGTCAGTTGTGAAAGTTTGCGGCTCAACCGTAAAATTG"
)


def _substitute(sequence: str, positions: list[int]) -> str:
    bases = list(sequence)
    for pos in positions:
        bases[pos] = "A" if bases[pos] != "A" else "C"
    return "".join(bases)


def _write_uniques(tmp_path: Path) -> Path:
    uniques = tmp_path / "uniques.tsv"
    variant = _substitute(REFERENCE, [20, 35, 50, 65, 80])
    rows = [
        ("ref", REFERENCE, 1000),
        ("var", variant, 500),
        ("err", _substitute(REFERENCE, [42]), 1),
    ]
    uniques.write_text(
        "id\tsequence\tabundance\n" + "".join(f"{i}\t{s}\t{a}\n" for i, s, a in rows),
        encoding="utf-8",
    )
    return uniques


def _write_calibration_fasta(tmp_path: Path) -> Path:
    fasta = tmp_path / "seqs.fasta"
    fasta.write_text(
        "".join(f">s{idx}\n{_substitute(REFERENCE, [10 + 7 * idx])}\n" for idx in range(6)),
        encoding="utf-8",
    )
    return fasta


def _read_tsv(path: Path) -> list[dict[str, str]]:
    with path.open("r", encoding="utf-8", newline="") as handle:
        return list(csv.DictReader(handle, delimiter="\t"))


def test_root_help_smoke() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "denoise" in result.stdout
    assert "calibrate" in result.stdout


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"amplidenoise {__version__}" in result.stdout


def test_denoise_dry_run_writes_manifest(tmp_path: Path) -> None:
    uniques = _write_uniques(tmp_path)
    outdir = tmp_path / "run_dry"

    result = runner.invoke(
        app,
        ["denoise", "--uniques", str(uniques), "--error-rate", "0.001", "--outdir", str(outdir), "--dry-run"],
    )

    assert result.exit_code == 0
    manifest = json.loads((outdir / "amplidenoise_manifest.json").read_text(encoding="utf-8"))
    assert manifest["command"] == "denoise"
    assert manifest["status"] == "dry-run"
    assert manifest["parameters"]["error_rate"] == 0.001
    assert manifest["inputs"] == [str(uniques)]
    assert len(manifest["steps"]) == 3
    assert manifest["ended_at"] is not None
    assert not (outdir / "denoise" / "genotypes.tsv").exists()


def test_denoise_writes_genotypes(tmp_path: Path) -> None:
    uniques = _write_uniques(tmp_path)
    outdir = tmp_path / "run"
    log_file = tmp_path / "logs" / "denoise.jsonl"

    result = runner.invoke(
        app,
        [
            "denoise",
            "--uniques",
            str(uniques),
            "--error-rate",
            "0.001",
            "--outdir",
            str(outdir),
            "--threads",
            "2",
            "--verbose",
            "--log-file",
            str(log_file),
        ],
    )

    assert result.exit_code == 0, result.stdout
    genotypes = _read_tsv(outdir / "denoise" / "genotypes.tsv")
    assert [row["center_id"] for row in genotypes] == ["ref", "var"]
    assert [int(row["abundance"]) for row in genotypes] == [1001, 500]

    assignments = _read_tsv(outdir / "denoise" / "assignments.tsv")
    assert {row["unique_id"]: row["genotype_id"] for row in assignments} == {
        "ref": "genotype_0001",
        "var": "genotype_0002",
        "err": "genotype_0001",
    }

    fasta = (outdir / "denoise" / "genotypes.fasta").read_text(encoding="utf-8")
    assert fasta.startswith(">genotype_0001;size=1001\n")

    transitions = _read_tsv(outdir / "denoise" / "transitions.tsv")
    assert [row["true_base"] for row in transitions] == ["A", "C", "G", "T"]

    manifest = json.loads((outdir / "amplidenoise_manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "completed"
    assert manifest["statistics"]["n_genotypes"] == 2

    records = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert any(record.get("n_clusters") == 2 for record in records)


def test_denoise_refuses_to_overwrite_without_force(tmp_path: Path) -> None:
    uniques = _write_uniques(tmp_path)
    outdir = tmp_path / "run"
    args = ["denoise", "--uniques", str(uniques), "--error-rate", "0.001", "--outdir", str(outdir)]

    assert runner.invoke(app, args).exit_code == 0
    assert runner.invoke(app, args).exit_code == 2
    assert runner.invoke(app, [*args, "--force"]).exit_code == 0


def test_denoise_without_error_model_is_usage_error(tmp_path: Path) -> None:
    uniques = _write_uniques(tmp_path)
    outdir = tmp_path / "run"

    result = runner.invoke(app, ["denoise", "--uniques", str(uniques), "--outdir", str(outdir)])

    assert result.exit_code == 2
    assert "No error model given" in result.stdout
    assert not (outdir / "amplidenoise_manifest.json").exists()


def test_denoise_malformed_error_matrix(tmp_path: Path) -> None:
    uniques = _write_uniques(tmp_path)
    err = tmp_path / "err.tsv"
    err.write_text("A\tC\tG\n0.9\t0.05\t0.05\n", encoding="utf-8")

    result = runner.invoke(
        app,
        ["denoise", "--uniques", str(uniques), "--err", str(err), "--outdir", str(tmp_path / "run")],
    )

    assert result.exit_code == 2


def test_denoise_with_yaml_config(tmp_path: Path) -> None:
    uniques = _write_uniques(tmp_path)
    outdir = tmp_path / "run_cfg"
    config = tmp_path / "config.yaml"
    config.write_text(
        f"denoise:\n  uniques: {uniques}\n  error_rate: 0.001\n  use_kmers: false\n  outdir: {outdir}\n",
        encoding="utf-8",
    )

    result = runner.invoke(app, ["denoise", "--config", str(config)])

    assert result.exit_code == 0
    manifest = json.loads((outdir / "amplidenoise_manifest.json").read_text(encoding="utf-8"))
    assert manifest["parameters"]["use_kmers"] is False
    assert manifest["statistics"]["kmer_skips"] == 0


def test_calibrate_writes_pairs(tmp_path: Path) -> None:
    fasta = _write_calibration_fasta(tmp_path)
    outdir = tmp_path / "calib"

    result = runner.invoke(
        app,
        ["calibrate", "--uniques", str(fasta), "--max-aligns", "4", "--outdir", str(outdir)],
    )

    assert result.exit_code == 0, result.stdout
    rows = _read_tsv(outdir / "calibrate" / "kmer_calibration.tsv")
    assert len(rows) == 4
    assert all(0.0 <= float(row["align"]) <= 1.0 for row in rows)
    assert rows[0]["seq1"] == "s0"


def test_calibrate_missing_input_is_usage_error(tmp_path: Path) -> None:
    result = runner.invoke(app, ["calibrate", "--outdir", str(tmp_path / "calib")])

    assert result.exit_code == 2


def test_calibrate_reports_suggested_cutoff(tmp_path: Path) -> None:
    fasta = _write_calibration_fasta(tmp_path)
    outdir = tmp_path / "calib"

    result = runner.invoke(
        app,
        [
            "calibrate",
            "--uniques",
            str(fasta),
            "--max-aligns",
            "6",
            "--max-align-distance",
            "0.05",
            "--outdir",
            str(outdir),
        ],
    )

    assert result.exit_code == 0, result.stdout
    assert "Suggested --kdist-cutoff" in result.stdout
    rows = _read_tsv(outdir / "calibrate" / "kmer_calibration.tsv")
    manifest = json.loads((outdir / "amplidenoise_manifest.json").read_text(encoding="utf-8"))
    assert manifest["parameters"]["max_align_distance"] == 0.05
    assert manifest["statistics"]["suggested_kdist_cutoff"] == pytest.approx(
        max(float(row["kmer"]) for row in rows), abs=1e-6
    )
    assert manifest["outputs"] == [str(outdir / "calibrate" / "kmer_calibration.tsv")]


def test_calibrate_without_close_pairs_still_writes_pairs(tmp_path: Path) -> None:
    fasta = _write_calibration_fasta(tmp_path)
    outdir = tmp_path / "calib"

    result = runner.invoke(
        app,
        ["calibrate", "--uniques", str(fasta), "--max-align-distance", "0", "--outdir", str(outdir)],
    )

    assert result.exit_code == 0, result.stdout
    manifest = json.loads((outdir / "amplidenoise_manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "completed"
    assert "suggested_kdist_cutoff" not in manifest["statistics"]
    assert (outdir / "calibrate" / "kmer_calibration.tsv").exists()
