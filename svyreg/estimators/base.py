"""Base classes, solver configuration and the fitted-model container.

Every estimator in :mod:`svyreg.estimators` maximises a weighted
pseudo-log-likelihood and reports a design-based sandwich covariance. The
shared pieces live here: :class:`SolverConfig`, the immutable
:class:`FittedModel`, and :class:`BaseEstimator`, which owns row alignment
with the survey design, the collinearity screen, the formula constructor and
the sandwich assembly.
"""

# svyreg/estimators/base.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, ClassVar

import numpy as np
import pandas as pd

from svyreg.core import linalg as la
from svyreg.core.design import DesignArrays, SurveyDesign
from svyreg.core.inference import (
    ci_level_to_alpha,
    confidence_interval,
    normalize_ci_level,
)
from svyreg.core.variance import linearized_vcov, sandwich
from svyreg.errors import OptimizationError
from svyreg.utils.formula import FormulaParser

if TYPE_CHECKING:  # import-only typing
    from collections.abc import Mapping, Sequence

    from numpy.typing import NDArray

__all__ = [
    "FAMILIES",
    "BaseEstimator",
    "FittedModel",
    "max_relative_change",
    "newton_update",
    "SolverConfig",
    "ci_level_to_alpha",
    "normalize_ci_level",
]

LOGGER = logging.getLogger(__name__)

FAMILIES = ("binomial", "negbin", "tobit")


@dataclass(frozen=True)
class SolverConfig:
    """Iteration controls shared by the GLM and Tobit solvers.

    Attributes
    ----------
    tol : float
        Convergence threshold on the maximum absolute relative change of the
        parameters between iterations, ``|d| / (|b| + 1)``.
    max_iter : int
        Iteration cap. Reaching it returns the model with ``converged=False``.
    separation_bound : float
        Coefficient magnitude above which a logit fit is declared separated.
    ci_level : float
        Default confidence level for intervals (0.95 or 95 are both accepted).
    damping : float
        Step multiplier used when a Newton step yields a non-finite update.
    max_step_halvings : int
        Maximum halvings of a Newton step that fails to improve the objective.
    rank_policy : {"stata", "r"}
        Tolerance rule of the pivoted-QR collinearity screen.

    """

    tol: float = 1e-8
    max_iter: int = 100
    separation_bound: float = 1e8
    ci_level: float = 0.95
    damping: float = 0.5
    max_step_halvings: int = 30
    rank_policy: str = "stata"

    def __post_init__(self) -> None:
        if not (self.tol > 0.0 and np.isfinite(self.tol)):
            msg = "tol must be a positive finite number."
            raise ValueError(msg)
        if int(self.max_iter) < 1:
            msg = "max_iter must be at least 1."
            raise ValueError(msg)
        if not self.separation_bound > 0.0:
            msg = "separation_bound must be positive."
            raise ValueError(msg)
        if not (0.0 < self.damping < 1.0):
            msg = "damping must lie in (0, 1)."
            raise ValueError(msg)
        if int(self.max_step_halvings) < 0:
            msg = "max_step_halvings must be non-negative."
            raise ValueError(msg)
        if str(self.rank_policy).lower() not in {"stata", "r"}:
            msg = "rank_policy must be one of {'stata','r'}."
            raise ValueError(msg)
        # normalise percentages such as 95 -> 0.95
        object.__setattr__(self, "ci_level", normalize_ci_level(self.ci_level))


# ---------------------------------------------------------------------
# Results container
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class FittedModel:
    """Immutable result of a survey-weighted fit.

    Coefficients are on the link scale. ``vcov`` is the design-based sandwich
    covariance of the coefficients; ``vcov_full`` extends it with the
    ancillary parameters (``lnalpha`` for ``negbin``, ``lnsigma`` for
    ``tobit``) so predictions that depend on them can be differentiated.

    ``extra`` carries what predictive margins need: the estimation design
    rows ``X``, their ``weights``, and for formula fits the ``frame`` of model
    variables, the patsy ``design_info``, the ``keep_cols`` mask of the
    collinearity screen, ``factor_levels`` and ``variables``.
    """

    family: str
    params: pd.Series
    vcov: pd.DataFrame
    loglik: float
    converged: bool
    n_iter: int
    n_obs: int
    df: int
    column_map: dict[str, tuple[str, ...]] = field(default_factory=dict)
    aux: pd.Series = field(default_factory=lambda: pd.Series(dtype=np.float64))
    vcov_full: pd.DataFrame | None = None
    model_info: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return (
            f"FittedModel(family={self.family!r}, k={len(self.params)}, "
            f"n={self.n_obs}, converged={self.converged})"
        )

    def validate(self) -> None:
        """Check the shape contract between coefficients and covariances."""
        if self.family not in FAMILIES:
            msg = f"family must be one of {FAMILIES}; got {self.family!r}."
            raise ValueError(msg)
        k = len(self.params)
        if self.vcov.shape != (k, k):
            msg = f"vcov has shape {self.vcov.shape}; expected ({k}, {k})."
            raise ValueError(msg)
        if list(self.vcov.index) != list(self.params.index):
            msg = "vcov must be labelled like params."
            raise ValueError(msg)
        if self.vcov_full is not None:
            m = k + len(self.aux)
            if self.vcov_full.shape != (m, m):
                msg = f"vcov_full has shape {self.vcov_full.shape}; expected ({m}, {m})."
                raise ValueError(msg)

    @property
    def se(self) -> pd.Series:
        return pd.Series(
            np.sqrt(np.clip(np.diag(self.vcov.to_numpy()), 0.0, None)),
            index=self.params.index,
            name="se",
        )

    @property
    def aux_se(self) -> pd.Series:
        if self.vcov_full is None or self.aux.empty:
            return pd.Series(dtype=np.float64, name="se")
        V = self.vcov_full.loc[self.aux.index, self.aux.index].to_numpy()
        return pd.Series(np.sqrt(np.clip(np.diag(V), 0.0, None)), index=self.aux.index, name="se")

    @property
    def tvalues(self) -> pd.Series:
        se = self.se
        with np.errstate(divide="ignore", invalid="ignore"):
            return pd.Series(self.params.to_numpy() / se.to_numpy(), index=self.params.index)

    @property
    def theta(self) -> pd.Series:
        """Coefficients followed by ancillary parameters (order of ``vcov_full``)."""
        if self.aux.empty:
            return self.params.rename("theta")
        return pd.concat([self.params, self.aux]).rename("theta")

    def conf_int(self, ci_level: float | None = None) -> pd.DataFrame:
        """Wald intervals using t with the design degrees of freedom."""
        level = normalize_ci_level(ci_level)
        lo, hi = confidence_interval(self.params.to_numpy(), self.se.to_numpy(), ci_level=level, df=self.df)
        return pd.DataFrame({"ci_low": lo, "ci_high": hi}, index=self.params.index)

    def to_dict(self) -> dict[str, Any]:
        """Plain serializable summary (lists, floats and strings only)."""
        out: dict[str, Any] = {
            "family": self.family,
            "params": {str(k): float(v) for k, v in self.params.items()},
            "se": {str(k): float(v) for k, v in self.se.items()},
            "vcov": self.vcov.to_numpy().tolist(),
            "names": [str(c) for c in self.params.index],
            "loglik": float(self.loglik),
            "converged": bool(self.converged),
            "n_iter": int(self.n_iter),
            "n_obs": int(self.n_obs),
            "df": int(self.df),
            "column_map": {str(k): list(v) for k, v in self.column_map.items()},
            "aux": {str(k): float(v) for k, v in self.aux.items()},
        }
        if self.vcov_full is not None:
            out["vcov_full"] = self.vcov_full.to_numpy().tolist()
        info: dict[str, Any] = {}
        for key, val in self.model_info.items():
            if isinstance(val, (str, bool, int, float)) or val is None:
                info[key] = val
            elif isinstance(val, (np.integer, np.floating)):
                info[key] = val.item()
            elif isinstance(val, (list, tuple)):
                info[key] = [str(v) for v in val]
        out["model_info"] = info
        return out


# ---------------------------------------------------------------------
# Iteration helpers
# ---------------------------------------------------------------------
def max_relative_change(new: NDArray[np.float64], old: NDArray[np.float64]) -> float:
    """``max_j |new_j - old_j| / (|old_j| + 1)``."""
    return float(np.max(np.abs(new - old) / (np.abs(old) + 1.0))) if new.size else 0.0


def newton_update(  # noqa: PLR0913
    theta: NDArray[np.float64],
    step: NDArray[np.float64],
    objective: Callable[[NDArray[np.float64]], float],
    f_old: float,
    config: SolverConfig,
    *,
    line_search: bool = True,
) -> tuple[NDArray[np.float64], float, bool]:
    """Apply a Newton step with non-finite retry and optional step halving.

    A step whose update or objective is non-finite is retried once scaled by
    ``config.damping``; a second failure raises :class:`OptimizationError`.
    With ``line_search`` the step is then halved while the objective
    decreases, at most ``config.max_step_halvings`` times.

    Returns ``(theta_new, f_new, improved)``.
    """
    cand = theta + step
    f_new = objective(cand) if np.all(np.isfinite(cand)) else np.nan
    if not np.isfinite(f_new):
        LOGGER.debug("Non-finite Newton update; retrying with damped step")
        step = step * config.damping
        cand = theta + step
        f_new = objective(cand) if np.all(np.isfinite(cand)) else np.nan
        if not np.isfinite(f_new):
            msg = "Newton step produced a non-finite update even after damping."
            raise OptimizationError(msg)
    if not line_search:
        return cand, float(f_new), True
    slack = 1e-12 * (abs(f_old) + 1.0)
    halvings = 0
    while f_new < f_old - slack and halvings < config.max_step_halvings:
        step = 0.5 * step
        cand = theta + step
        f_try = objective(cand)
        f_new = f_try if np.isfinite(f_try) else -np.inf
        halvings += 1
    if halvings:
        LOGGER.debug("Step halved %d time(s)", halvings)
    return cand, float(f_new), bool(f_new >= f_old - slack)


# ---------------------------------------------------------------------
# Base interface
# ---------------------------------------------------------------------
class BaseEstimator(ABC):
    """Abstract base class for survey-weighted maximum-likelihood estimators.

    Parameters
    ----------
    y : array-like, shape (n,)
        Outcome. Non-finite entries drop the record from estimation.
    X : array-like or DataFrame, shape (n, p)
        Design matrix (include an intercept column explicitly).
    weights : array-like, optional
        Sampling weights; defaults to the design weights, else unit weights.
    design : DesignArrays, optional
        Stratum/cluster structure aligned with ``y``. When omitted each
        record is its own cluster in a single stratum.
    var_names : sequence of str, optional
        Column names; taken from ``X.columns`` for DataFrames.

    Notes
    -----
    Records of the design that are out of domain or incomplete keep their
    clusters in the variance computation with zero scores.

    """

    family: ClassVar[str] = ""
    aux_names: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        y: Any,
        X: Any,
        weights: Any | None = None,
        *,
        design: DesignArrays | None = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        self._results: FittedModel | None = None
        if var_names is None and isinstance(X, pd.DataFrame):
            var_names = [str(c) for c in X.columns]
        y_arr = la.to_dense(y).reshape(-1)
        X_arr = la.to_dense(X)
        if X_arr.ndim == 1:
            X_arr = X_arr.reshape(-1, 1)
        n = y_arr.shape[0]
        if X_arr.shape[0] != n:
            msg = f"X has {X_arr.shape[0]} rows but y has {n}."
            raise ValueError(msg)
        if X_arr.shape[1] == 0:
            msg = "X must have at least one column."
            raise ValueError(msg)
        self._var_names = (
            list(var_names) if var_names is not None else [f"x{i}" for i in range(X_arr.shape[1])]
        )
        if len(self._var_names) != X_arr.shape[1]:
            msg = "var_names length must match the number of columns of X."
            raise ValueError(msg)

        if design is None:
            w = np.ones(n) if weights is None else la._validate_weights(weights, n, allow_zero=False)
            design = DesignArrays.from_arrays(w)
        elif not isinstance(design, DesignArrays):
            msg = (
                "design must be DesignArrays aligned with y; "
                "use from_formula(...) to bind a SurveyDesign to a DataFrame."
            )
            raise TypeError(msg)
        elif design.n_obs != n:
            msg = f"design has {design.n_obs} records but y has {n}."
            raise ValueError(msg)
        w = design.weights if weights is None else la._validate_weights(weights, n, allow_zero=False)

        finite = np.isfinite(y_arr) & np.all(np.isfinite(X_arr), axis=1)
        est = design.domain & finite
        n_incomplete = int((design.domain & ~finite).sum())
        if n_incomplete:
            LOGGER.info("%d in-domain record(s) have missing model values and are not estimated", n_incomplete)
        if not est.any():
            msg = "No record remains for estimation."
            raise ValueError(msg)

        self.y_orig: NDArray[np.float64] = y_arr
        self.X_orig: NDArray[np.float64] = X_arr
        self.weights: NDArray[np.float64] = np.asarray(w, dtype=np.float64)
        self.design: DesignArrays = design
        self._est_mask: NDArray[np.bool_] = est
        self._formula_meta: dict[str, Any] = {}

    # -- constructors ---------------------------------------------------
    @classmethod
    def from_formula(
        cls,
        formula: str,
        data: pd.DataFrame,
        design: SurveyDesign | None = None,
        *,
        levels: Mapping[str, Sequence[Any]] | None = None,
        **kwargs: Any,
    ) -> BaseEstimator:
        """Build the estimator from a ``y ~ rhs`` formula and a survey design.

        Categorical covariates are treatment coded with the canonical level
        order (``levels`` overrides it per column). Only in-domain records
        are encoded, so default levels are those observed in the domain.
        """
        design = design or SurveyDesign()
        arrays = design.resolve(data)
        parser = FormulaParser(data.loc[arrays.index[arrays.domain]], levels=levels)
        parsed = parser.parse(formula)

        # out-of-domain and incomplete rows stay as NaN rows so their clusters count
        X_full = parsed["X"].reindex(arrays.index)
        y_full = pd.Series(parsed["y"], index=parsed["row_index_used"]).reindex(arrays.index)
        model = cls(
            y_full.to_numpy(dtype=np.float64),
            X_full.to_numpy(dtype=np.float64),
            design=arrays,
            var_names=parsed["var_names"],
            **kwargs,
        )
        est_labels = arrays.index[model._est_mask]
        model._formula_meta = {
            "formula": formula,
            "outcome": parsed["outcome"],
            "design_info": parsed["design_info"],
            "frame": parsed["frame"].loc[est_labels],
            "factor_levels": parsed["factor_levels"],
            "column_map": parsed["column_map"],
            "variables": parsed["variables"],
            "n_dropped_na": parsed["n_dropped_na"],
        }
        return model

    # -- abstract -------------------------------------------------------
    @abstractmethod
    def fit(self, config: SolverConfig | None = None) -> FittedModel:  # pragma: no cover - abstract
        """Fit the estimator and return a FittedModel (abstract)."""
        ...

    # -- convenience accessors ------------------------------------------
    @property
    def results(self) -> FittedModel:
        if self._results is None:
            msg = "Model has not been fitted yet. Call .fit() first."
            raise RuntimeError(msg)
        return self._results

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def se(self) -> pd.Series:
        return self.results.se

    @property
    def n_obs(self) -> int:
        return int(self._est_mask.sum())

    # -- protected helpers for subclasses -------------------------------
    def _estimation_arrays(
        self, config: SolverConfig,
    ) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64], NDArray[np.bool_]]:
        """Return ``(y, X, w, keep_cols)`` for the estimation rows.

        ``X`` is restricted to the columns kept by a pivoted-QR screen of
        ``sqrt(w) X``; dropped names are logged and reported in diagnostics.
        """
        est = self._est_mask
        y = self.y_orig[est]
        X = self.X_orig[est]
        w = self.weights[est]
        keep = la.drop_collinear_columns(X * np.sqrt(w)[:, None], rank_policy=config.rank_policy)
        if not keep.any():
            msg = "Design matrix has no estimable column."
            raise ValueError(msg)
        dropped = [n for n, k in zip(self._var_names, keep) if not k]
        if dropped:
            LOGGER.warning("Dropping collinear column(s): %s", dropped)
        return y, X[:, keep], w, keep

    def _pad_scores(self, scores: NDArray[np.float64]) -> NDArray[np.float64]:
        """Embed estimation-row scores in the full design (zeros elsewhere)."""
        full = np.zeros((self.design.n_obs, scores.shape[1]), dtype=np.float64)
        full[self._est_mask] = scores
        return full

    def _assemble(  # noqa: PLR0913
        self,
        *,
        theta: NDArray[np.float64],
        neg_hessian: NDArray[np.float64],
        scores: NDArray[np.float64],
        keep: NDArray[np.bool_],
        loglik: float,
        converged: bool,
        n_iter: int,
        config: SolverConfig,
        model_info: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> FittedModel:
        """Build the FittedModel with the design-based sandwich covariance.

        ``theta`` stacks the kept coefficients and the ancillary parameters;
        ``neg_hessian`` is minus the weighted Hessian in the same order and
        ``scores`` are the weighted per-record scores of the estimation rows.
        """
        names = [n for n, k in zip(self._var_names, keep) if k]
        all_names = names + list(self.aux_names)
        bread_inv = la.inv_sym(neg_hessian)
        meat = linearized_vcov(self._pad_scores(scores), self.design.strata, self.design.psu)
        V = sandwich(bread_inv, meat)
        k = len(names)
        vcov_full = pd.DataFrame(V, index=all_names, columns=all_names)

        meta = self._formula_meta
        column_map = dict(meta.get("column_map", {}))
        if not column_map:
            column_map = {n: (n,) for n in self._var_names}
        info: dict[str, Any] = {
            "Estimator": type(self).__name__,
            "Family": self.family,
            "n_strata": self.design.n_strata,
            "n_clusters": self.design.n_clusters,
            "n_design": self.design.n_obs,
            "weighted_n": float(self.weights[self._est_mask].sum()),
            "ci_level": config.ci_level,
        }
        if "formula" in meta:
            info["formula"] = meta["formula"]
            info["n_dropped_na"] = meta["n_dropped_na"]
        info.update(model_info or {})

        payload: dict[str, Any] = {
            "X": self.X_orig[self._est_mask][:, keep],
            "weights": self.weights[self._est_mask],
            "keep_cols": keep,
            "var_names_all": list(self._var_names),
            "design": self.design,
            "est_mask": self._est_mask,
            "diagnostics": {
                "dropped_collinear": [n for n, kk in zip(self._var_names, keep) if not kk],
            },
        }
        for key in ("design_info", "frame", "factor_levels", "variables", "outcome"):
            if key in meta:
                payload[key] = meta[key]
        payload.update(extra or {})

        result = FittedModel(
            family=self.family,
            params=pd.Series(theta[:k], index=names, name="coef"),
            vcov=vcov_full.iloc[:k, :k].copy(),
            loglik=float(loglik),
            converged=bool(converged),
            n_iter=int(n_iter),
            n_obs=int(self._est_mask.sum()),
            df=int(self.design.df),
            column_map={n: column_map.get(n, (n,)) for n in names},
            aux=pd.Series(theta[k:], index=list(self.aux_names), name="aux", dtype=np.float64),
            vcov_full=vcov_full,
            model_info=info,
            extra=payload,
        )
        self._results = result
        return result
