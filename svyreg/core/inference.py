"""Reference distributions for design-based inference.

Confidence intervals use Student's t with the design degrees of freedom
(clusters minus strata), falling back to the normal when that is not positive.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from scipy import stats

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

__all__ = [
    "ci_level_to_alpha",
    "confidence_interval",
    "critical_value",
    "normalize_ci_level",
    "two_sided_pvalue",
]


def normalize_ci_level(level: float | None, *, default: float = 0.95) -> float:
    """Normalize confidence level to a probability (0, 1)."""
    if not (0.0 < float(default) < 1.0):
        raise ValueError("default confidence level must lie in (0, 1)")
    if level is None:
        coerced = float(default)
    else:
        coerced = float(level)
        # Accept percentage-style inputs (e.g., 90 for 90%)
        if coerced > 1.0:
            coerced /= 100.0
    if not (0.0 < coerced < 1.0):
        raise ValueError("ci_level must be in (0, 1); supply e.g. 0.95 or 95")
    return coerced


def ci_level_to_alpha(level: float | None, *, default: float = 0.95) -> float:
    """Return the corresponding tail probability ``alpha`` for a confidence level."""
    return 1.0 - normalize_ci_level(level, default=default)


def critical_value(ci_level: float, df: int | float | None) -> float:
    """Two-sided critical value; t(df) when df > 0, standard normal otherwise."""
    alpha = ci_level_to_alpha(ci_level)
    q = 1.0 - alpha / 2.0
    if df is None or not np.isfinite(df) or df <= 0:
        return float(stats.norm.ppf(q))
    return float(stats.t.ppf(q, df))


def confidence_interval(
    estimate: ArrayLike,
    se: ArrayLike,
    *,
    ci_level: float = 0.95,
    df: int | float | None = None,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Symmetric Wald interval ``estimate -/+ crit * se``."""
    est = np.asarray(estimate, dtype=np.float64)
    s = np.asarray(se, dtype=np.float64)
    crit = critical_value(ci_level, df)
    return est - crit * s, est + crit * s


def two_sided_pvalue(stat: ArrayLike, df: int | float | None = None) -> NDArray[np.float64]:
    z = np.abs(np.asarray(stat, dtype=np.float64))
    if df is None or not np.isfinite(df) or df <= 0:
        return 2.0 * stats.norm.sf(z)
    return 2.0 * stats.t.sf(z, df)
