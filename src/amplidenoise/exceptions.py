from __future__ import annotations


class AmpliDenoiseError(Exception):
    """Base class for amplidenoise exceptions."""

    exit_code: int = 1


class AmpliDenoiseUsageError(AmpliDenoiseError):
    """Raised when command arguments or engine inputs are invalid."""

    exit_code = 2


class PartitionInvariantError(AmpliDenoiseError):
    """Raised when the cluster/family/raw partition is found in an inconsistent state."""
