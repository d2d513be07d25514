"""Two-sided censored (Tobit) regression under survey weights.

The latent model is ``y* = x'b + s e`` with standard normal ``e``; the
observed outcome is ``y*`` clipped to ``[lower, upper]``. Each record falls in
one of three likelihood branches:

====== ================================= ========
branch contribution                      code
====== ================================= ========
lower  ``Phi((lower - x'b) / s)``        ``-1``
upper  ``1 - Phi((upper - x'b) / s)``    ``+1``
inside ``phi((y - x'b) / s) / s``        ``0``
====== ================================= ========

The weighted log-likelihood is maximised jointly over ``b`` and
``ln(s)`` by Newton-Raphson with analytic derivatives and step halving,
starting from weighted least squares.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy import special

from svyreg.core import linalg as la
from svyreg.errors import OptimizationError

from .base import (
    BaseEstimator,
    FittedModel,
    SolverConfig,
    max_relative_change,
    newton_update,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from svyreg.core.design import DesignArrays

__all__ = ["Tobit", "censored_mean", "fit_tobit", "tobit_expectation"]

LOGGER = logging.getLogger(__name__)

_LOG_SQRT_2PI = 0.5 * np.log(2.0 * np.pi)


def _mills(t: NDArray[np.float64]) -> NDArray[np.float64]:
    """Inverse Mills ratio ``phi(t) / Phi(t)`` computed on the log scale."""
    return np.exp(-0.5 * t * t - _LOG_SQRT_2PI - special.log_ndtr(t))


def _branch_terms(
    y: NDArray[np.float64],
    eta: NDArray[np.float64],
    lnsigma: float,
    branch: NDArray[np.int64],
    lower: float,
    upper: float,
) -> tuple[NDArray[np.float64], ...]:
    """Per-record log-likelihood, gradient and Hessian in ``(eta, lnsigma)``.

    Returns ``(ll, g_eta, g_lns, h_ee, h_el, h_ll)``.
    """
    s = np.exp(lnsigma)
    n = y.shape[0]
    ll = np.empty(n)
    g_e = np.empty(n)
    g_l = np.empty(n)
    h_ee = np.empty(n)
    h_el = np.empty(n)
    h_ll = np.empty(n)

    lo = branch == -1
    if lo.any():
        a = (lower - eta[lo]) / s
        lam = _mills(a)
        dlam = -lam * (a + lam)
        ll[lo] = special.log_ndtr(a)
        g_e[lo] = -lam / s
        g_l[lo] = -a * lam
        h_ee[lo] = dlam / s**2
        h_el[lo] = (dlam * a + lam) / s
        h_ll[lo] = a * lam + a * a * dlam

    up = branch == 1
    if up.any():
        c = (eta[up] - upper) / s
        lam = _mills(c)
        dlam = -lam * (c + lam)
        ll[up] = special.log_ndtr(c)
        g_e[up] = lam / s
        g_l[up] = -c * lam
        h_ee[up] = dlam / s**2
        h_el[up] = -(dlam * c + lam) / s
        h_ll[up] = c * lam + c * c * dlam

    mid = branch == 0
    if mid.any():
        z = (y[mid] - eta[mid]) / s
        ll[mid] = -0.5 * z * z - lnsigma - _LOG_SQRT_2PI
        g_e[mid] = z / s
        g_l[mid] = z * z - 1.0
        h_ee[mid] = -1.0 / s**2
        h_el[mid] = -2.0 * z / s
        h_ll[mid] = -2.0 * z * z
    return ll, g_e, g_l, h_ee, h_el, h_ll


def censored_mean(
    eta: Any, sigma: float, lower: float, upper: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """``E[y | x]`` under two-sided censoring with its derivatives.

    Returns ``(E, dE/deta, dE/dln(sigma))`` evaluated at each linear predictor.
    Infinite bounds drop the corresponding censoring term.
    """
    xb = np.asarray(eta, dtype=np.float64)
    s = float(sigma)
    if not s > 0.0:
        msg = "sigma must be positive."
        raise ValueError(msg)
    if np.isneginf(lower):
        cdf_a = np.zeros_like(xb)
        pdf_a = np.zeros_like(xb)
        low_term = np.zeros_like(xb)
    else:
        a = (lower - xb) / s
        cdf_a = special.ndtr(a)
        pdf_a = np.exp(-0.5 * a * a - _LOG_SQRT_2PI)
        low_term = lower * cdf_a
    if np.isposinf(upper):
        cdf_b = np.ones_like(xb)
        pdf_b = np.zeros_like(xb)
        up_term = np.zeros_like(xb)
    else:
        b = (upper - xb) / s
        cdf_b = special.ndtr(b)
        pdf_b = np.exp(-0.5 * b * b - _LOG_SQRT_2PI)
        up_term = upper * (1.0 - cdf_b)
    mean = low_term + up_term + xb * (cdf_b - cdf_a) + s * (pdf_a - pdf_b)
    return mean, cdf_b - cdf_a, s * (pdf_a - pdf_b)


def tobit_expectation(
    params: Any, scale: float, x_row: Any, lower: float = 0.0, upper: float = 1.0,
) -> Any:
    """Expected observed outcome for covariate row(s) ``x_row``.

    ``params`` are the latent coefficients and ``scale`` the latent standard
    deviation. A 1-D ``x_row`` returns a float; a 2-D matrix one value per row.
    """
    b = np.asarray(params, dtype=np.float64).reshape(-1)
    x = np.asarray(x_row, dtype=np.float64)
    if x.shape[-1] != b.shape[0]:
        msg = f"x_row has {x.shape[-1]} entries but params has {b.shape[0]}."
        raise ValueError(msg)
    mean, _, _ = censored_mean(x @ b, scale, lower, upper)
    return float(mean) if np.ndim(mean) == 0 else mean


class Tobit(BaseEstimator):
    """Survey-weighted two-sided Tobit.

    Parameters
    ----------
    y : array-like, shape (n,)
        Outcome in ``[lower, upper]``; values equal to a bound are censored.
    X : array-like or DataFrame, shape (n, p)
    weights : array-like, optional
    lower, upper : float
        Censoring points (``-inf``/``inf`` disable a side).
    design : DesignArrays, optional
    var_names : sequence of str, optional

    Notes
    -----
    ``FittedModel.aux`` holds ``lnsigma``; ``model_info`` reports ``sigma``
    and the fractions of records at each bound, and ``extra["branch"]`` the
    per-record branch code (``-1``, ``0``, ``+1``).

    """

    family = "tobit"
    aux_names = ("lnsigma",)

    def __init__(  # noqa: PLR0913
        self,
        y: Any,
        X: Any,
        weights: Any | None = None,
        *,
        lower: float = 0.0,
        upper: float = 1.0,
        design: DesignArrays | None = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__(y, X, weights, design=design, var_names=var_names)
        lower = float(lower)
        upper = float(upper)
        if not lower < upper:
            msg = f"lower ({lower}) must be below upper ({upper})."
            raise ValueError(msg)
        y_est = self.y_orig[self._est_mask]
        outside = (y_est < lower) | (y_est > upper)
        if outside.any():
            msg = f"{int(outside.sum())} outcome value(s) lie outside [{lower}, {upper}]."
            raise ValueError(msg)
        self.lower = lower
        self.upper = upper

    def _derivatives(
        self,
        theta: NDArray[np.float64],
        y: NDArray[np.float64],
        X: NDArray[np.float64],
        w: NDArray[np.float64],
        branch: NDArray[np.int64],
    ) -> tuple[float, NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
        """Weighted loglik, per-record scores and the joint Hessian."""
        p = X.shape[1]
        ll, g_e, g_l, h_ee, h_el, h_ll = _branch_terms(
            y, X @ theta[:p], float(theta[p]), branch, self.lower, self.upper,
        )
        scores = np.column_stack([X * (w * g_e)[:, None], w * g_l])
        H = np.empty((p + 1, p + 1), dtype=np.float64)
        H[:p, :p] = la.gram(X, w * h_ee)
        H[:p, p] = la.xty(X, h_el, w)
        H[p, :p] = H[:p, p]
        H[p, p] = float(np.sum(w * h_ll))
        return float(np.sum(w * ll)), scores, H, scores.sum(axis=0)

    def fit(self, config: SolverConfig | None = None) -> FittedModel:
        """Maximise the weighted censored log-likelihood."""
        cfg = config or SolverConfig()
        y, X, w, keep = self._estimation_arrays(cfg)
        p = X.shape[1]
        branch = np.where(y == self.lower, -1, np.where(y == self.upper, 1, 0)).astype(np.int64)
        if not np.any(branch == 0) and not (np.any(branch == -1) and np.any(branch == 1)):
            msg = "Every record is censored at the same bound; the Tobit likelihood has no maximum."
            raise OptimizationError(msg)

        sw = np.sqrt(w)
        beta0 = la.solve(X * sw[:, None], y * sw).reshape(-1)
        resid = y - X @ beta0
        sigma0 = float(np.sqrt(np.sum(w * resid**2) / np.sum(w)))
        if not (np.isfinite(sigma0) and sigma0 > 0.0):
            sigma0 = 1.0
        theta = np.append(beta0, np.log(sigma0))

        def objective(t: NDArray[np.float64]) -> float:
            ll = _branch_terms(y, X @ t[:p], float(t[p]), branch, self.lower, self.upper)[0]
            return float(np.sum(w * ll))

        wsum = float(np.sum(w))
        converged = False
        n_iter = 0
        for n_iter in range(1, int(cfg.max_iter) + 1):
            f_old, _scores, H, grad = self._derivatives(theta, y, X, w, branch)
            flat = float(np.max(np.abs(grad))) <= 1e-10 * max(wsum, 1.0)
            neg_h = -H
            if not la.is_nsd(H):
                if flat:
                    msg = "Tobit likelihood is flat: zero gradient with a Hessian that is not negative definite."
                    raise OptimizationError(msg)
                # shift the spectrum until the Newton direction ascends
                eig_min = float(np.linalg.eigvalsh(la.symmetrize(neg_h)).min())
                neg_h = neg_h + (abs(eig_min) + 1e-6 * max(1.0, float(np.abs(neg_h).max()))) * np.eye(p + 1)
            step = la.solve_sym(neg_h, grad)
            theta_new, f_new, improved = newton_update(theta, step, objective, f_old, cfg)
            if not improved:
                if flat:
                    converged = True
                    break
                msg = f"Tobit step halving failed to improve the likelihood at iteration {n_iter}."
                raise OptimizationError(msg)
            change = max_relative_change(theta_new, theta)
            LOGGER.debug("tobit iter %d: loglik=%.10g change=%.3g", n_iter, f_new, change)
            theta = theta_new
            if change < cfg.tol:
                converged = True
                break

        if not converged:
            msg = f"Tobit did not converge in {cfg.max_iter} iterations."
            raise OptimizationError(msg)
        LOGGER.info("Tobit converged in %d iterations", n_iter)

        loglik, scores, H, _grad = self._derivatives(theta, y, X, w, branch)
        if not la.is_nsd(H):
            LOGGER.warning("Tobit Hessian is not negative definite at the optimum")
        n = y.shape[0]
        return self._assemble(
            theta=theta,
            neg_hessian=-H,
            scores=scores,
            keep=keep,
            loglik=loglik,
            converged=converged,
            n_iter=n_iter,
            config=cfg,
            model_info={
                "sigma": float(np.exp(theta[p])),
                "lower": self.lower,
                "upper": self.upper,
                "censored_lower_frac": float(np.sum(branch == -1)) / n,
                "censored_upper_frac": float(np.sum(branch == 1)) / n,
            },
            extra={"branch": branch, "bounds": (self.lower, self.upper)},
        )


def fit_tobit(  # noqa: PLR0913
    y: Any,
    X: Any,
    weights: Any | None = None,
    lower: float = 0.0,
    upper: float = 1.0,
    *,
    design: DesignArrays | None = None,
    config: SolverConfig | None = None,
    var_names: Sequence[str] | None = None,
) -> FittedModel:
    """Fit a survey-weighted two-sided Tobit on arrays."""
    model = Tobit(y, X, weights, lower=lower, upper=upper, design=design, var_names=var_names)
    return model.fit(config)
