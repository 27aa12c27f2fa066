"""Resumable disk provisioning and Arch Linux bootstrap pipeline."""

from .__version__ import __version__

__all__ = ["__version__"]
