from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

MANIFEST_NAME = "amplidenoise_manifest.json"


@dataclass(frozen=True, slots=True)
class OutputLayout:
    root: Path
    denoise_dir: Path
    calibrate_dir: Path

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_NAME

    @property
    def genotypes_tsv(self) -> Path:
        return self.denoise_dir / "genotypes.tsv"

    @property
    def genotypes_fasta(self) -> Path:
        return self.denoise_dir / "genotypes.fasta"

    @property
    def transitions_tsv(self) -> Path:
        return self.denoise_dir / "transitions.tsv"

    @property
    def assignments_tsv(self) -> Path:
        return self.denoise_dir / "assignments.tsv"

    @property
    def denoise_summary(self) -> Path:
        return self.denoise_dir / "summary.json"

    @property
    def calibration_tsv(self) -> Path:
        return self.calibrate_dir / "kmer_calibration.tsv"


def create_output_layout(outdir: Path) -> OutputLayout:
    root = outdir
    denoise_dir = root / "denoise"
    calibrate_dir = root / "calibrate"

    for path in (root, denoise_dir, calibrate_dir):
        path.mkdir(parents=True, exist_ok=True)

    return OutputLayout(root=root, denoise_dir=denoise_dir, calibrate_dir=calibrate_dir)
