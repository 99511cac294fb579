"""Hierarchical Poisson Factorization recommender toolkit."""
from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("poissonrec")
except PackageNotFoundError:  # pragma: no cover - fallback during editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]
