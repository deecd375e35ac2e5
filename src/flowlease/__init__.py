"""Task-attempt lease/retry core with idempotent SQL operators."""

__version__ = "0.1.0"
