from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, TypeVar

import numpy as np
import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    StrictBool,
    ValidationError,
    field_validator,
    model_validator,
)

from amplidenoise.core.alignment import BAND_SIZE, DEFAULT_GAP_PENALTY, default_score_matrix
from amplidenoise.core.clustering import KDIST_CUTOFF, EngineSettings
from amplidenoise.core.kmer import KMER_SIZE, MAX_KMER_SIZE
from amplidenoise.core.significance import OMEGA_A, OMEGA_S
from amplidenoise.exceptions import AmpliDenoiseUsageError

Matrix = list[list[float]]

# An error source given on the command line replaces any source from YAML.
ERROR_SOURCES = ("err_path", "error_matrix", "error_rate")


def _check_square4(value: Matrix | None, label: str) -> Matrix | None:
    if value is None:
        return None
    if len(value) != 4 or any(len(row) != 4 for row in value):
        shape = f"{len(value)} rows of lengths {[len(row) for row in value]}"
        raise ValueError(f"{label} must be 4x4, got {shape}.")
    return value


class CommonConfig(BaseModel):
    """Shared command options across amplidenoise subcommands."""

    model_config = ConfigDict(extra="forbid")

    outdir: Path = Field(default_factory=Path.cwd)
    threads: PositiveInt = 1
    dry_run: bool = False
    force: bool = False
    log_file: Path | None = None
    verbose: bool = False
    quiet: bool = False

    @model_validator(mode="after")
    def _validate_verbosity(self) -> "CommonConfig":
        if self.verbose and self.quiet:
            raise ValueError("`verbose` and `quiet` cannot both be true.")
        return self


class AlignmentParams(BaseModel):
    """Alignment scoring shared by denoising and calibration."""

    gap_penalty: float = Field(default=DEFAULT_GAP_PENALTY, le=0.0)
    band_size: int = BAND_SIZE
    kmer_size: int = Field(default=KMER_SIZE, ge=1, le=MAX_KMER_SIZE)
    score_matrix: Matrix | None = None

    @field_validator("score_matrix")
    @classmethod
    def _score_is_4x4(cls, value: Matrix | None) -> Matrix | None:
        return _check_square4(value, "score_matrix")

    def resolved_score(self) -> np.ndarray:
        if self.score_matrix is None:
            return default_score_matrix()
        return np.asarray(self.score_matrix, dtype=float)


class DenoiseConfig(CommonConfig, AlignmentParams):
    uniques: Path | None = None
    err_path: Path | None = None
    error_matrix: Matrix | None = None
    error_rate: float | None = Field(default=None, ge=0.0, lt=1.0)

    use_kmers: StrictBool = True
    kdist_cutoff: float = Field(default=KDIST_CUTOFF, ge=0.0, le=1.0)
    omega_a: float = Field(default=OMEGA_A, gt=0.0, le=1.0)
    use_singletons: StrictBool = False
    omega_s: float = Field(default=OMEGA_S, gt=0.0, le=1.0)

    @field_validator("error_matrix")
    @classmethod
    def _error_is_4x4(cls, value: Matrix | None) -> Matrix | None:
        return _check_square4(value, "error_matrix")

    @model_validator(mode="after")
    def _validate_error_source(self) -> "DenoiseConfig":
        sources = [
            name
            for name, value in (
                ("err_path", self.err_path),
                ("error_matrix", self.error_matrix),
                ("error_rate", self.error_rate),
            )
            if value is not None
        ]
        if len(sources) > 1:
            raise ValueError(f"Error model sources are mutually exclusive: {', '.join(sources)}.")
        return self

    def engine_settings(self) -> EngineSettings:
        return EngineSettings(
            gap_penalty=self.gap_penalty,
            band_size=self.band_size,
            use_kmers=self.use_kmers,
            kdist_cutoff=self.kdist_cutoff,
            omega_a=self.omega_a,
            use_singletons=self.use_singletons,
            omega_s=self.omega_s,
            kmer_size=self.kmer_size,
            threads=self.threads,
        )


class CalibrateConfig(CommonConfig, AlignmentParams):
    uniques: Path | None = None
    max_aligns: PositiveInt = 1000
    max_align_distance: float | None = Field(default=None, ge=0.0, le=1.0)


class AmpliDenoiseConfig(BaseModel):
    """Top-level YAML config model."""

    model_config = ConfigDict(extra="forbid")

    denoise: DenoiseConfig | None = None
    calibrate: CalibrateConfig | None = None


def load_config(config_path: Path | None) -> AmpliDenoiseConfig:
    """Load and validate a YAML config file."""

    if config_path is None:
        return AmpliDenoiseConfig()

    if not config_path.exists():
        raise AmpliDenoiseUsageError(f"Config file does not exist: {config_path}")

    if not config_path.is_file():
        raise AmpliDenoiseUsageError(f"Config path is not a file: {config_path}")

    payload_raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if payload_raw is None:
        payload_raw = {}

    if not isinstance(payload_raw, dict):
        raise AmpliDenoiseUsageError("Config YAML must be a key/value mapping at the top level.")

    try:
        return AmpliDenoiseConfig.model_validate(payload_raw)
    except ValidationError as exc:
        raise AmpliDenoiseUsageError(f"Invalid config file: {config_path}\n{exc}") from exc


T = TypeVar("T", bound=CommonConfig)


def merge_command_config(
    *,
    config_path: Path | None,
    section: str,
    model_cls: type[T],
    cli_overrides: Mapping[str, Any],
) -> T:
    """Merge YAML config values with explicit CLI overrides and validate."""

    root = load_config(config_path)
    section_model = getattr(root, section)

    merged: dict[str, Any] = {}
    if section_model is not None:
        merged.update(section_model.model_dump(exclude_none=True))

    if any(cli_overrides.get(key) is not None for key in ERROR_SOURCES):
        for key in ERROR_SOURCES:
            merged.pop(key, None)

    for key, value in cli_overrides.items():
        if value is not None:
            merged[key] = value

    try:
        return model_cls.model_validate(merged)
    except ValidationError as exc:
        raise AmpliDenoiseUsageError(f"Invalid merged config for `{section}`:\n{exc}") from exc
