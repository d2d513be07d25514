"""Exception and warning types raised by svyreg.

Design and cell errors signal caller contract violations and are never
retried. Separation and optimisation errors abort only the fit in progress.
"""
from __future__ import annotations

__all__ = [
    "DesignError",
    "InvalidCellError",
    "NonConvergenceWarning",
    "OptimizationError",
    "SeparationError",
    "SingularDesignError",
    "SvyregError",
]


class SvyregError(Exception):
    """Base class for all svyreg errors."""


class DesignError(SvyregError, ValueError):
    """Malformed survey design metadata (missing stratum or cluster ids)."""

    def __init__(self, message: str, *, record_id: object = None) -> None:
        super().__init__(message)
        self.record_id = record_id


class SingularDesignError(DesignError):
    """No stratum has two or more clusters, so no variance is estimable."""


class SeparationError(SvyregError, RuntimeError):
    """Logit fit diverged (complete or quasi-complete separation)."""

    def __init__(self, message: str, *, columns: list[str] | None = None) -> None:
        super().__init__(message)
        self.columns = list(columns) if columns else []


class OptimizationError(SvyregError, RuntimeError):
    """Likelihood optimisation failed (flat surface or non-finite steps)."""


class InvalidCellError(SvyregError, KeyError):
    """Margin request references a covariate or level the model never saw."""

    def __init__(self, message: str, *, cell: object = None) -> None:
        super().__init__(message)
        self.cell = cell

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class NonConvergenceWarning(UserWarning):
    """Iteration cap reached before the coefficient tolerance was met."""
