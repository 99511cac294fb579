"""Model collection for the Poisson factorization experiments."""

from . import hpf

__all__ = ["hpf"]
