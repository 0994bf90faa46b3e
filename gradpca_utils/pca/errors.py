"""
Error kinds raised by the streaming eigen-estimator.

None of these are retried: a deterministic numerical routine fed the same
input would fail the same way, so the caller gets the error immediately.
"""

from __future__ import annotations


class InvalidArgument(ValueError):
    """Bad constructor parameters (dim, k, batch_size, gamma, lam)."""


class DimensionMismatch(ValueError):
    """An observation or direction does not have the expected length."""


class NumericalFailure(RuntimeError):
    """The dense symmetric eigensolver failed or produced non-finite output."""
