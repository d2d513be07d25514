"""Survey-weighted generalized linear models.

Two families are provided:

* ``binomial``: logit link, fitted by weighted IRLS (Newton on the canonical
  link).
* ``negbin``: NB2 with log link, ``Var(y) = mu + alpha * mu**2``. Coefficients
  take a Newton step given ``alpha``; ``ln(alpha)`` is then profiled given the
  coefficients by bounded scalar maximisation and polished with one analytic
  Newton step.

Each record's score and Hessian contribution is scaled by its sampling weight
(pseudo maximum likelihood). The covariance is always the design-based
sandwich ``H^{-1} M H^{-1}`` where ``M`` is the linearized covariance of the
weighted scores; the naive information matrix is never reported.
"""

from __future__ import annotations

import logging
import warnings
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy import optimize, special

from svyreg.core import linalg as la
from svyreg.errors import NonConvergenceWarning, SeparationError

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

__all__ = ["Logit", "NegativeBinomial", "fit_glm"]

LOGGER = logging.getLogger(__name__)

# records whose fitted probability is this close to the observed 0/1 outcome
# count as perfectly predicted
_PERFECT_TOL = 1e-10
_LNALPHA_BOUNDS = (-15.0, 8.0)


# ---------------------------------------------------------------------
# Binomial (logit)
# ---------------------------------------------------------------------
def _logit_loglik(y: NDArray[np.float64], eta: NDArray[np.float64], w: NDArray[np.float64]) -> float:
    # y*eta - log(1 + exp(eta)), stable for large |eta|
    return float(np.sum(w * (y * eta - np.logaddexp(0.0, eta))))


def _perfectly_predicted(y: NDArray[np.float64], mu: NDArray[np.float64]) -> NDArray[np.bool_]:
    return np.abs(y - mu) < _PERFECT_TOL


class Logit(BaseEstimator):
    """Survey-weighted logistic regression.

    Parameters
    ----------
    y : array-like, shape (n,)
        Outcome in [0, 1] (usually a 0/1 indicator).
    X : array-like or DataFrame, shape (n, p)
        Design matrix including the intercept column.
    weights : array-like, optional
        Sampling weights.
    design : DesignArrays, optional
        Aligned stratum/cluster structure; see :class:`BaseEstimator`.
    var_names : sequence of str, optional

    Examples
    --------
    >>> from svyreg import Logit, SurveyDesign
    >>> design = SurveyDesign(stratum="stratum", cluster="cluster", weight="weight")
    >>> res = Logit.from_formula("any_visit ~ poverty + year", df, design).fit()
    >>> res.params

    Raises
    ------
    SeparationError
        When a coefficient exceeds ``SolverConfig.separation_bound`` or any
        record is perfectly predicted when iteration stops (complete or
        quasi-complete separation).

    """

    family = "binomial"

    def __init__(
        self,
        y: Any,
        X: Any,
        weights: Any | None = None,
        *,
        design: DesignArrays | None = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__(y, X, weights, design=design, var_names=var_names)
        y_est = self.y_orig[self._est_mask]
        if np.any((y_est < 0.0) | (y_est > 1.0)):
            msg = "Binomial outcome must lie in [0, 1]."
            raise ValueError(msg)

    def _separated(self, beta: NDArray[np.float64], names: list[str], why: str) -> SeparationError:
        big = np.abs(beta)
        top = [n for n, b in zip(names, big) if b >= 0.5 * float(big.max())] if big.size else []
        msg = f"Logit fit diverged ({why}); outcome is separated by {top}."
        return SeparationError(msg, columns=top)

    def fit(self, config: SolverConfig | None = None) -> FittedModel:
        """Fit by weighted IRLS and return the design-based result."""
        cfg = config or SolverConfig()
        y, X, w, keep = self._estimation_arrays(cfg)
        names = [n for n, k in zip(self._var_names, keep) if k]

        def objective(b: NDArray[np.float64]) -> float:
            return _logit_loglik(y, X @ b, w)

        beta = np.zeros(X.shape[1], dtype=np.float64)
        f_old = objective(beta)
        converged = False
        n_iter = 0
        for n_iter in range(1, int(cfg.max_iter) + 1):
            mu = special.expit(X @ beta)
            if _perfectly_predicted(y, mu).all():
                raise self._separated(beta, names, "every record perfectly predicted")
            score = la.xty(X, y - mu, w)
            info = la.gram(X, w * mu * (1.0 - mu))
            step = la.solve_sym(info, score)
            beta_new, f_new, _ = newton_update(beta, step, objective, f_old, cfg, line_search=False)
            if float(np.max(np.abs(beta_new))) > cfg.separation_bound:
                raise self._separated(beta_new, names, f"|coefficient| > {cfg.separation_bound:g}")
            change = max_relative_change(beta_new, beta)
            LOGGER.debug("logit iter %d: loglik=%.10g change=%.3g", n_iter, f_new, change)
            beta, f_old = beta_new, f_new
            if change < cfg.tol:
                converged = True
                break

        mu = special.expit(X @ beta)
        perfect = _perfectly_predicted(y, mu)
        if perfect.all():
            raise self._separated(beta, names, "every record perfectly predicted")
        if perfect.any():
            # quasi-complete separation: saturated records stop moving the step
            when = "at convergence" if converged else "at the iteration cap"
            raise self._separated(beta, names, f"{int(perfect.sum())} record(s) perfectly predicted {when}")
        if not converged:
            msg = f"Logit did not converge in {cfg.max_iter} iterations."
            warnings.warn(msg, NonConvergenceWarning, stacklevel=2)
        else:
            LOGGER.info("Logit converged in %d iterations", n_iter)

        scores = X * (w * (y - mu))[:, None]
        neg_h = la.gram(X, w * mu * (1.0 - mu))
        return self._assemble(
            theta=beta,
            neg_hessian=neg_h,
            scores=scores,
            keep=keep,
            loglik=objective(beta),
            converged=converged,
            n_iter=n_iter,
            config=cfg,
            model_info={"link": "logit"},
        )


# ---------------------------------------------------------------------
# Negative binomial (NB2)
# ---------------------------------------------------------------------
def _nb_loglik(
    y: NDArray[np.float64], eta: NDArray[np.float64], lnalpha: float, w: NDArray[np.float64],
) -> float:
    r = np.exp(-lnalpha)
    mu = np.exp(eta)
    ll = (
        special.gammaln(y + r)
        - special.gammaln(r)
        - special.gammaln(y + 1.0)
        - r * np.log1p(mu / r)
        + y * (eta - np.log(r + mu))
    )
    return float(np.sum(w * ll))


def _nb_lnalpha_derivatives(
    y: NDArray[np.float64], mu: NDArray[np.float64], lnalpha: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Per-record first and second derivatives of the NB2 log-likelihood in ln(alpha)."""
    r = np.exp(-lnalpha)
    # g = d ll / d r
    g = special.digamma(y + r) - special.digamma(r) - np.log1p(mu / r) + (mu - y) / (r + mu)
    dg = (
        special.polygamma(1, y + r)
        - special.polygamma(1, r)
        + 1.0 / r
        - 1.0 / (r + mu)
        - (mu - y) / (r + mu) ** 2
    )
    return -r * g, r * g + r * r * dg


class NegativeBinomial(BaseEstimator):
    """Survey-weighted NB2 regression (log link, estimated dispersion).

    The ancillary parameter ``lnalpha`` is reported in ``FittedModel.aux``
    and enters ``vcov_full`` jointly with the coefficients.
    """

    family = "negbin"
    aux_names = ("lnalpha",)

    def __init__(
        self,
        y: Any,
        X: Any,
        weights: Any | None = None,
        *,
        design: DesignArrays | None = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__(y, X, weights, design=design, var_names=var_names)
        if np.any(self.y_orig[self._est_mask] < 0.0):
            msg = "Negative binomial outcome must be non-negative."
            raise ValueError(msg)

    @staticmethod
    def _profile_lnalpha(
        y: NDArray[np.float64], eta: NDArray[np.float64], w: NDArray[np.float64], start: float | None,
    ) -> float:
        res = optimize.minimize_scalar(
            lambda a: -_nb_loglik(y, eta, a, w),
            bounds=_LNALPHA_BOUNDS,
            method="bounded",
            options={"xatol": 1e-10},
        )
        lna = float(res.x)
        # one analytic Newton step sharpens the bracketed optimum
        mu = np.exp(eta)
        d1, d2 = _nb_lnalpha_derivatives(y, mu, lna)
        s1, s2 = float(np.sum(w * d1)), float(np.sum(w * d2))
        if s2 < 0.0 and np.isfinite(s1):
            cand = lna - s1 / s2
            if (
                _LNALPHA_BOUNDS[0] <= cand <= _LNALPHA_BOUNDS[1]
                and _nb_loglik(y, eta, cand, w) >= _nb_loglik(y, eta, lna, w)
            ):
                lna = cand
        if start is not None and _nb_loglik(y, eta, start, w) > _nb_loglik(y, eta, lna, w):
            lna = start
        return lna

    def fit(self, config: SolverConfig | None = None) -> FittedModel:
        """Alternate coefficient Newton steps and ln(alpha) profiling."""
        cfg = config or SolverConfig()
        y, X, w, keep = self._estimation_arrays(cfg)
        sw = np.sqrt(w)
        beta = la.solve(X * sw[:, None], np.log(y + 0.5) * sw).reshape(-1)
        lnalpha = self._profile_lnalpha(y, X @ beta, w, None)
        converged = False
        n_iter = 0
        for n_iter in range(1, int(cfg.max_iter) + 1):
            alpha = np.exp(lnalpha)
            mu = np.exp(X @ beta)
            score = X.T @ (w * (y - mu) / (1.0 + alpha * mu))
            info = la.gram(X, w * mu * (1.0 + alpha * y) / (1.0 + alpha * mu) ** 2)
            step = la.solve_sym(info, score)

            def objective(b: NDArray[np.float64], _lna: float = lnalpha) -> float:
                return _nb_loglik(y, X @ b, _lna, w)

            beta_new, _f, _ = newton_update(beta, step, objective, objective(beta), cfg)
            lnalpha_new = self._profile_lnalpha(y, X @ beta_new, w, lnalpha)
            change = max_relative_change(
                np.append(beta_new, lnalpha_new), np.append(beta, lnalpha),
            )
            LOGGER.debug("negbin iter %d: lnalpha=%.8g change=%.3g", n_iter, lnalpha_new, change)
            beta, lnalpha = beta_new, lnalpha_new
            if change < cfg.tol:
                converged = True
                break

        if not converged:
            msg = f"Negative binomial did not converge in {cfg.max_iter} iterations."
            warnings.warn(msg, NonConvergenceWarning, stacklevel=2)
        else:
            LOGGER.info("Negative binomial converged in %d iterations", n_iter)
        if np.isclose(lnalpha, _LNALPHA_BOUNDS[0], atol=1e-6):
            LOGGER.warning("ln(alpha) sits at its lower bound; no overdispersion detected")

        alpha = np.exp(lnalpha)
        r = 1.0 / alpha
        mu = np.exp(X @ beta)
        d1, d2 = _nb_lnalpha_derivatives(y, mu, lnalpha)
        p = X.shape[1]
        neg_h = np.empty((p + 1, p + 1), dtype=np.float64)
        neg_h[:p, :p] = la.gram(X, w * mu * (1.0 + alpha * y) / (1.0 + alpha * mu) ** 2)
        cross = X.T @ (w * r * mu * (y - mu) / (r + mu) ** 2)
        neg_h[:p, p] = cross
        neg_h[p, :p] = cross
        neg_h[p, p] = -float(np.sum(w * d2))
        scores = np.column_stack(
            [X * (w * (y - mu) / (1.0 + alpha * mu))[:, None], w * d1],
        )
        return self._assemble(
            theta=np.append(beta, lnalpha),
            neg_hessian=neg_h,
            scores=scores,
            keep=keep,
            loglik=_nb_loglik(y, X @ beta, lnalpha, w),
            converged=converged,
            n_iter=n_iter,
            config=cfg,
            model_info={"link": "log", "alpha": float(alpha)},
        )


_FAMILY_CLASSES: dict[str, type[BaseEstimator]] = {
    "binomial": Logit,
    "negbin": NegativeBinomial,
}


def fit_glm(  # noqa: PLR0913
    family: str,
    y: Any,
    X: Any,
    weights: Any | None = None,
    *,
    design: DesignArrays | None = None,
    config: SolverConfig | None = None,
    var_names: Sequence[str] | None = None,
) -> FittedModel:
    """Fit a survey-weighted GLM of the given family on arrays.

    ``family`` is ``"binomial"`` or ``"negbin"``. Without ``design`` every
    record is its own cluster in a single stratum, which gives the
    heteroskedasticity-robust linearization.
    """
    fam = str(family).lower()
    if fam not in _FAMILY_CLASSES:
        msg = f"family must be one of {sorted(_FAMILY_CLASSES)}; got {family!r}."
        raise ValueError(msg)
    model = _FAMILY_CLASSES[fam](y, X, weights, design=design, var_names=var_names)
    return model.fit(config)
