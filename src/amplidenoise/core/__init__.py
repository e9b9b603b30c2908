"""Denoising engine: alignment, k-mer distance, likelihood, significance and clustering."""

from amplidenoise.core.calibration import CalibrationResult, calibrate_kmers
from amplidenoise.core.clustering import DenoiseResult, Genotype, denoise_uniques

__all__ = [
    "CalibrationResult",
    "DenoiseResult",
    "Genotype",
    "calibrate_kmers",
    "denoise_uniques",
]
