"""Predictive margins with delta-method standard errors.

A margin is the weighted average prediction over the estimation sample after
every record's covariates are overwritten with a cell's levels (and any
``at`` values). Design rows are rebuilt with the fitted patsy encoding, so
interaction columns follow the substituted levels. Standard errors come from
the delta method through the model's joint covariance, ancillary parameters
included when the prediction depends on them (the censored mean of a Tobit).

Nothing is cached on the model; repeated calls return identical results.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import special

from svyreg.core.inference import confidence_interval, normalize_ci_level
from svyreg.errors import InvalidCellError
from svyreg.utils.formula import build_design

from .base import BaseEstimator, FittedModel
from .tobit import censored_mean

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from numpy.typing import NDArray

__all__ = [
    "MarginResult",
    "cells_from_factors",
    "margin_contrast",
    "predict_margins",
]

LOGGER = logging.getLogger(__name__)

_PREDICT = ("mean", "xb")


def _cell_label(cell: Mapping[str, Any]) -> str:
    if not cell:
        return "(all)"
    return ", ".join(f"{k}={v}" for k, v in cell.items())


@dataclass(frozen=True)
class MarginResult:
    """Predictive margins for a list of cells.

    Attributes
    ----------
    table : pd.DataFrame
        Indexed by cell label with columns ``estimate``, ``se``, ``ci_low``
        and ``ci_high``.
    vcov : pd.DataFrame
        Covariance of the margins (same labels on both axes).
    cells : tuple of dict
        Covariate assignments behind each label, in table order.
    df : int
        Design degrees of freedom used for the intervals.
    ci_level : float
    family : str
    predict : {"mean", "xb"}

    """

    table: pd.DataFrame
    vcov: pd.DataFrame
    cells: tuple[dict[str, Any], ...]
    df: int
    ci_level: float
    family: str
    predict: str = "mean"

    def __len__(self) -> int:
        return int(self.table.shape[0])

    @property
    def estimate(self) -> pd.Series:
        return self.table["estimate"]

    @property
    def se(self) -> pd.Series:
        return self.table["se"]

    def position(self, cell: Any) -> int:
        """Row position of ``cell`` given as label, position or assignment dict."""
        if isinstance(cell, (int, np.integer)) and not isinstance(cell, bool):
            if not 0 <= int(cell) < len(self):
                msg = f"Margin position {cell} out of range for {len(self)} cell(s)."
                raise InvalidCellError(msg, cell=cell)
            return int(cell)
        label = _cell_label(cell) if isinstance(cell, dict) else str(cell)
        labels = list(self.table.index)
        if label not in labels:
            msg = f"No margin labelled {label!r}; available: {labels}"
            raise InvalidCellError(msg, cell=cell)
        return labels.index(label)

    def to_dict(self) -> dict[str, Any]:
        """Plain serializable structure."""
        rows = []
        for label, cell, (_, r) in zip(self.table.index, self.cells, self.table.iterrows()):
            rows.append(
                {
                    "label": str(label),
                    "cell": {str(k): (v.item() if hasattr(v, "item") else v) for k, v in cell.items()},
                    "estimate": float(r["estimate"]),
                    "se": float(r["se"]),
                    "ci_low": float(r["ci_low"]),
                    "ci_high": float(r["ci_high"]),
                },
            )
        return {
            "family": self.family,
            "predict": self.predict,
            "df": int(self.df),
            "ci_level": float(self.ci_level),
            "margins": rows,
            "vcov": self.vcov.to_numpy().tolist(),
        }


def _as_model(model: FittedModel | BaseEstimator) -> FittedModel:
    if isinstance(model, BaseEstimator):
        return model.results
    if not isinstance(model, FittedModel):
        msg = "predict_margins expects a FittedModel (or a fitted estimator)."
        raise TypeError(msg)
    return model


def _expand_at(at: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    if not at:
        return [{}]
    keys = list(at)
    grids = []
    for k in keys:
        v = at[k]
        if isinstance(v, (str, bytes)) or np.ndim(v) == 0:
            grids.append([v])
        else:
            vals = list(v)
            if not vals:
                msg = f"at[{k!r}] is an empty sequence."
                raise ValueError(msg)
            grids.append(vals)
    return [dict(zip(keys, combo)) for combo in itertools.product(*grids)]


def _scenarios(
    cells: Mapping[str, Any] | Iterable[Mapping[str, Any]] | None,
    at: Mapping[str, Any] | None,
) -> list[dict[str, Any]]:
    if cells is None:
        base: list[dict[str, Any]] = [{}]
    elif isinstance(cells, dict):
        base = [dict(cells)]
    else:
        base = [dict(c) for c in cells]
        if not base:
            msg = "cells must contain at least one cell."
            raise ValueError(msg)
    out = []
    for cell in base:
        for extra in _expand_at(at):
            clash = set(cell) & set(extra)
            if clash:
                msg = f"Covariate(s) {sorted(clash)} set both in a cell and in at."
                raise ValueError(msg)
            out.append({**cell, **extra})
    return out


def _unfitted_level(extra: Mapping[str, Any], cov: str, val: Any) -> str | None:
    """Why level ``val`` of ``cov`` carries no fitted information (None if it does)."""
    frame = extra.get("frame")
    if frame is not None and cov in frame.columns and not (frame[cov] == val).any():
        return "has no record in the estimation sample"
    keep = extra.get("keep_cols")
    token = f"{cov}[T.{val}]"
    cols = [i for i, n in enumerate(extra.get("var_names_all", [])) if token in str(n).split(":")]
    if cols and keep is not None and not np.asarray(keep, dtype=bool)[cols].any():
        return "lost every indicator column to the collinearity screen"
    return None


def _check_cell(model: FittedModel, cell: dict[str, Any]) -> None:
    extra = model.extra
    if "design_info" in extra:
        variables = extra.get("variables", [])
        levels = extra.get("factor_levels", {})
        for cov, val in cell.items():
            if cov not in variables:
                msg = f"Covariate {cov!r} is not part of the model (covariates: {variables})."
                raise InvalidCellError(msg, cell=cell)
            if cov in levels:
                if val not in levels[cov]:
                    msg = f"Level {val!r} of {cov!r} was not seen when fitting (levels: {levels[cov]})."
                    raise InvalidCellError(msg, cell=cell)
                why = _unfitted_level(extra, cov, val)
                if why is not None:
                    msg = f"Level {val!r} of {cov!r} {why}; it has no fitted effect."
                    raise InvalidCellError(msg, cell=cell)
            elif not np.isfinite(pd.to_numeric(pd.Series([val]), errors="coerce").iloc[0]):
                msg = f"Numeric covariate {cov!r} needs a finite number; got {val!r}."
                raise InvalidCellError(msg, cell=cell)
    else:
        names = list(model.params.index)
        for cov, val in cell.items():
            if cov not in names:
                msg = f"Column {cov!r} is not a model column (columns: {names})."
                raise InvalidCellError(msg, cell=cell)
            if not np.isfinite(pd.to_numeric(pd.Series([val]), errors="coerce").iloc[0]):
                msg = f"Column {cov!r} needs a finite number; got {val!r}."
                raise InvalidCellError(msg, cell=cell)


def _counterfactual_rows(model: FittedModel, cell: dict[str, Any]) -> NDArray[np.float64]:
    """Design rows of the estimation sample with ``cell`` substituted."""
    extra = model.extra
    if "design_info" not in extra:
        X = np.array(extra["X"], dtype=np.float64, copy=True)
        names = list(model.params.index)
        for cov, val in cell.items():
            X[:, names.index(cov)] = float(val)
        return X
    frame = extra["frame"].copy()
    levels = extra.get("factor_levels", {})
    n = frame.shape[0]
    for cov, val in cell.items():
        if cov in levels:
            frame[cov] = pd.Categorical([val] * n, categories=levels[cov])
        else:
            frame[cov] = float(val)
    X = build_design(extra["design_info"], frame).to_numpy(dtype=np.float64)
    return X[:, np.asarray(extra["keep_cols"], dtype=bool)]


def _prediction(
    model: FittedModel, eta: NDArray[np.float64], predict: str,
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """Prediction, its derivative in eta and in the ancillary parameter."""
    zero = np.zeros_like(eta)
    if predict == "xb":
        return eta, np.ones_like(eta), zero
    if model.family == "binomial":
        p = special.expit(eta)
        return p, p * (1.0 - p), zero
    if model.family == "negbin":
        mu = np.exp(eta)
        return mu, mu, zero
    lower, upper = model.extra.get("bounds", (model.model_info["lower"], model.model_info["upper"]))
    sigma = float(np.exp(model.aux["lnsigma"]))
    return censored_mean(eta, sigma, lower, upper)


def predict_margins(
    model: FittedModel | BaseEstimator,
    cells: Mapping[str, Any] | Iterable[Mapping[str, Any]] | None = None,
    at: Mapping[str, Any] | None = None,
    *,
    ci_level: float = 0.95,
    predict: str = "mean",
) -> MarginResult:
    """Predictive margins of a fitted model.

    Parameters
    ----------
    model : FittedModel or fitted estimator
    cells : dict or iterable of dicts, optional
        Covariate assignments, e.g. ``[{"poverty": "Poor"}, {"poverty": "Near"}]``.
        ``None`` gives the single overall margin.
    at : dict, optional
        Extra assignments applied to every cell. Sequence values are crossed
        with the cells (margins at each year, for example).
    ci_level : float
        Confidence level; intervals use t with the design degrees of freedom.
    predict : {"mean", "xb"}
        Response-scale prediction or the linear predictor.

    Raises
    ------
    InvalidCellError
        If a level was not part of the fitted encoding or a covariate is not
        in the model.

    """
    fitted = _as_model(model)
    if predict not in _PREDICT:
        msg = f"predict must be one of {_PREDICT}; got {predict!r}."
        raise ValueError(msg)
    level = normalize_ci_level(ci_level)
    scenarios = _scenarios(cells, at)
    for cell in scenarios:
        _check_cell(fitted, cell)

    theta = fitted.theta
    V = fitted.vcov_full if fitted.vcov_full is not None else fitted.vcov
    V = V.loc[theta.index, theta.index].to_numpy()
    beta = fitted.params.to_numpy()
    k = beta.shape[0]
    w = np.asarray(fitted.extra["weights"], dtype=np.float64)
    wsum = float(w.sum())

    est = np.empty(len(scenarios))
    J = np.zeros((len(scenarios), theta.shape[0]))
    for i, cell in enumerate(scenarios):
        X = _counterfactual_rows(fitted, cell)
        eta = X @ beta
        pred, d_eta, d_aux = _prediction(fitted, eta, predict)
        est[i] = float(np.sum(w * pred) / wsum)
        J[i, :k] = (w * d_eta) @ X / wsum
        if theta.shape[0] > k:
            J[i, k] = float(np.sum(w * d_aux) / wsum)
    Vm = J @ V @ J.T
    Vm = 0.5 * (Vm + Vm.T)
    se = np.sqrt(np.clip(np.diag(Vm), 0.0, None))
    lo, hi = confidence_interval(est, se, ci_level=level, df=fitted.df)

    labels = [_cell_label(c) for c in scenarios]
    if len(set(labels)) != len(labels):
        msg = "Duplicate cells requested."
        raise ValueError(msg)
    LOGGER.debug("Computed %d margin(s) for a %s model", len(labels), fitted.family)
    table = pd.DataFrame(
        {"estimate": est, "se": se, "ci_low": lo, "ci_high": hi},
        index=pd.Index(labels, name="cell"),
    )
    return MarginResult(
        table=table,
        vcov=pd.DataFrame(Vm, index=labels, columns=labels),
        cells=tuple(scenarios),
        df=int(fitted.df),
        ci_level=level,
        family=fitted.family,
        predict=predict,
    )


def cells_from_factors(model: FittedModel | BaseEstimator, *factors: str) -> list[dict[str, Any]]:
    """Every combination of the fitted levels of ``factors`` (first factor slowest).

    Levels without a fitted effect (no record in the estimation sample, or
    every indicator column dropped as collinear) are left out and logged.
    """
    fitted = _as_model(model)
    levels = fitted.extra.get("factor_levels", {})
    if not factors:
        msg = "cells_from_factors needs at least one factor name."
        raise ValueError(msg)
    missing = [f for f in factors if f not in levels]
    if missing:
        msg = f"{missing} are not categorical covariates of the model (factors: {sorted(levels)})."
        raise InvalidCellError(msg, cell=missing)
    grids = []
    for f in factors:
        kept = [v for v in levels[f] if _unfitted_level(fitted.extra, f, v) is None]
        if len(kept) < len(levels[f]):
            LOGGER.warning(
                "Skipping level(s) %s of %r without a fitted effect",
                [v for v in levels[f] if v not in kept], f,
            )
        grids.append(kept)
    return [dict(zip(factors, combo)) for combo in itertools.product(*grids)]


def margin_contrast(
    result: MarginResult, cell_a: Any, cell_b: Any,
) -> pd.Series:
    """Difference ``margin(cell_a) - margin(cell_b)`` with its delta-method SE."""
    i = result.position(cell_a)
    j = result.position(cell_b)
    est = float(result.table["estimate"].iloc[i] - result.table["estimate"].iloc[j])
    V = result.vcov.to_numpy()
    var = float(V[i, i] + V[j, j] - 2.0 * V[i, j])
    se = float(np.sqrt(max(var, 0.0)))
    lo, hi = confidence_interval(est, se, ci_level=result.ci_level, df=result.df)
    return pd.Series(
        {"estimate": est, "se": se, "ci_low": float(lo), "ci_high": float(hi)},
        name=f"{result.table.index[i]} - {result.table.index[j]}",
    )
