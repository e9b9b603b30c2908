"""Divisive amplicon denoising of unique sequences into true sequence variants."""

__version__ = "0.1.0"

__all__ = ["__version__"]
