"""submission-resilience: retry, circuit breaking and health monitoring."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("submission-resilience")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
