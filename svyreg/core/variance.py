"""Linearized (Taylor-series) variance estimation for complex survey designs.

Every statistic handled here is the solution of weighted estimating equations,
so its sampling variance follows from per-record linearized contributions
(weighted scores or influence values):

1. sum contributions within each cluster,
2. centre the cluster totals within their stratum,
3. accumulate ``n_h / (n_h - 1) * sum (z_hi - zbar_h)(z_hi - zbar_h)'``.

A stratum with a single cluster contributes nothing. When no stratum has two
clusters the variance is not estimable and :class:`SingularDesignError` is
raised. Clusters are visited in sorted (stratum, cluster) order so results are
reproducible bit for bit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import numpy as np
import pandas as pd

from svyreg.core import linalg as la
from svyreg.core.inference import confidence_interval
from svyreg.errors import SingularDesignError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from svyreg.core.design import DesignArrays, SurveyDesign

__all__ = [
    "SurveyMean",
    "design_degrees_of_freedom",
    "estimate_variance",
    "linearized_vcov",
    "sandwich",
    "svy_mean",
]

LOGGER = logging.getLogger(__name__)


def _codes(labels: Any) -> NDArray[np.int64]:
    return pd.factorize(np.asarray(labels).reshape(-1), sort=True)[0].astype(np.int64)


def design_degrees_of_freedom(strata: Any, psu: Any) -> int:
    """Number of clusters minus number of strata."""
    s = _codes(strata)
    c = _codes(psu)
    n_psu = int(np.unique(np.column_stack([s, c]), axis=0).shape[0]) if s.size else 0
    return n_psu - int(np.unique(s).size)


def linearized_vcov(
    scores: Any,
    strata: Any,
    psu: Any,
) -> NDArray[np.float64]:
    """Stratified between-cluster covariance of per-record contributions.

    Parameters
    ----------
    scores : array-like, shape (n, p) or (n,)
        Linearized contributions, survey weights already applied.
    strata, psu : array-like, shape (n,)
        Stratum and cluster labels. Clusters are nested in strata, so the same
        cluster label in two strata denotes two clusters.

    Returns
    -------
    ndarray, shape (p, p)
        Symmetric positive semi-definite covariance matrix.

    """
    Z = la.to_dense(scores)
    if Z.ndim == 1:
        Z = Z.reshape(-1, 1)
    s = _codes(strata)
    c = _codes(psu)
    if not (Z.shape[0] == s.shape[0] == c.shape[0]):
        msg = "scores, strata and psu must have the same number of rows."
        raise ValueError(msg)
    la._assert_all_finite(Z)

    totals, labels = la.group_sum(Z, np.column_stack([s, c]))
    p = Z.shape[1]
    V = np.zeros((p, p), dtype=np.float64)
    stratum_of = labels[:, 0]
    informative = 0
    singletons = 0
    # labels are sorted by (stratum, cluster); unique strata come out sorted too
    for h in np.unique(stratum_of):
        zh = totals[stratum_of == h]
        n_h = zh.shape[0]
        if n_h < 2:
            singletons += 1
            continue
        informative += 1
        centred = zh - zh.mean(axis=0)
        V += (n_h / (n_h - 1.0)) * (centred.T @ centred)
    if informative == 0:
        msg = (
            "Every stratum contains a single cluster; "
            "no design-based variance is estimable."
        )
        raise SingularDesignError(msg)
    if singletons:
        LOGGER.debug("%d singleton stratum/strata contribute zero variance", singletons)
    return la.symmetrize(V)


def sandwich(bread_inv: Any, meat: Any) -> NDArray[np.float64]:
    """Return ``A^{-1} B A^{-1}`` for a symmetric bread inverse ``A^{-1}``."""
    A = la.to_dense(bread_inv)
    B = la.to_dense(meat)
    return la.symmetrize(A @ B @ A)


def estimate_variance(
    statistic_fn: Callable[[pd.DataFrame], Any],
    records: pd.DataFrame,
    design: SurveyDesign,
) -> NDArray[np.float64]:
    """Design-based covariance of a statistic given its linearized contributions.

    ``statistic_fn`` receives the records that enter estimation (positive
    weight) and returns their per-record contributions, shape (n, p), with the
    survey weights already applied. Contributions of records outside the design
    domain are set to zero.
    """
    arrays = design.resolve(records)
    frame = records.loc[arrays.index]
    contrib = la.to_dense(statistic_fn(frame))
    if contrib.ndim == 1:
        contrib = contrib.reshape(-1, 1)
    if contrib.shape[0] != arrays.n_obs:
        msg = (
            f"statistic_fn returned {contrib.shape[0]} rows; "
            f"expected one per record ({arrays.n_obs})."
        )
        raise ValueError(msg)
    contrib = np.where(arrays.domain[:, None], contrib, 0.0)
    return linearized_vcov(contrib, arrays.strata, arrays.psu)


@dataclass(frozen=True)
class SurveyMean:
    """Weighted mean with its linearized standard error."""

    estimate: float
    se: float
    df: int
    n_obs: int
    ci_low: float
    ci_high: float

    def to_dict(self) -> dict[str, float | int]:
        return {
            "estimate": self.estimate,
            "se": self.se,
            "df": self.df,
            "n_obs": self.n_obs,
            "ci_low": self.ci_low,
            "ci_high": self.ci_high,
        }


def _mean_contributions(
    y: NDArray[np.float64], arrays: DesignArrays,
) -> tuple[float, NDArray[np.float64]]:
    w = np.where(arrays.domain, arrays.weights, 0.0)
    W = float(w.sum())
    ybar = float(np.sum(w * y) / W)
    return ybar, w * (y - ybar) / W


def svy_mean(
    records: pd.DataFrame,
    design: SurveyDesign,
    column: str,
    *,
    ci_level: float = 0.95,
) -> SurveyMean:
    """Weighted (ratio) mean of ``column`` over the design domain."""
    if column not in records.columns:
        raise KeyError(f"column {column!r} not found in records")
    arrays = design.resolve(records)
    y = pd.to_numeric(records.loc[arrays.index, column], errors="coerce").to_numpy(
        dtype=np.float64,
    )
    bad = arrays.domain & ~np.isfinite(y)
    if bad.any():
        msg = f"{column!r} has {int(bad.sum())} missing value(s) inside the domain."
        raise ValueError(msg)
    y = np.where(np.isfinite(y), y, 0.0)
    ybar, z = _mean_contributions(y, arrays)
    V = linearized_vcov(z, arrays.strata, arrays.psu)
    se = float(np.sqrt(V[0, 0]))
    lo, hi = confidence_interval(ybar, se, ci_level=ci_level, df=arrays.df)
    return SurveyMean(
        estimate=ybar,
        se=se,
        df=arrays.df,
        n_obs=int(arrays.domain.sum()),
        ci_low=float(lo),
        ci_high=float(hi),
    )
