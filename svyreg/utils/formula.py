"""Formula parser for svyreg.

Patsy-based design-matrix construction with a fixed categorical convention:
every categorical covariate is converted to a pandas ``Categorical`` whose
category order is canonical (explicit ``levels`` when supplied, the existing
categorical order otherwise, else sorted unique values). Patsy's treatment
coding then omits the first level, so coefficients are deviations from the
reference cell and columns are named ``var[T.level]`` and
``a[T.level]:b[T.level]``.

The parser also records the column -> covariate map and can rebuild design
rows for counterfactual data, which the margins engine relies on.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import patsy

if TYPE_CHECKING:  # pragma: no cover - typing only
    from collections.abc import Mapping, Sequence

__all__ = [
    "FormulaParser",
    "build_design",
    "canonical_levels",
    "interaction_formula",
]

LOGGER = logging.getLogger(__name__)

_TOKEN_PAT = re.compile(r"[A-Za-z_][A-Za-z0-9_\.]*")


def canonical_levels(values: pd.Series, levels: Sequence[Any] | None = None) -> list[Any]:
    """Return the canonical level order of a categorical covariate.

    Explicit ``levels`` win; a pandas Categorical keeps its category order;
    anything else is sorted (booleans as ``[False, True]``).
    """
    if levels is not None:
        out = list(levels)
        if len(set(out)) != len(out):
            msg = f"Duplicate levels supplied for {values.name!r}: {out}"
            raise ValueError(msg)
        return out
    if isinstance(values.dtype, pd.CategoricalDtype):
        return list(values.cat.categories)
    uniq = pd.unique(values.dropna())
    try:
        return sorted(uniq.tolist())
    except TypeError:
        return sorted(uniq.tolist(), key=str)


def _as_categorical(values: pd.Series, levels: list[Any]) -> pd.Series:
    unknown = ~values.isna() & ~values.isin(levels)
    if unknown.any():
        bad = pd.unique(values[unknown]).tolist()
        msg = f"Column {values.name!r} has values outside its levels {levels}: {bad}"
        raise ValueError(msg)
    return pd.Series(
        pd.Categorical(values, categories=levels), index=values.index, name=values.name,
    )


def interaction_formula(
    outcome: str,
    factor_a: str,
    factor_b: str,
    covariates: Sequence[str] = (),
) -> str:
    """``outcome ~ a * b + covariates`` (main effects plus the full cross)."""
    rhs = [f"{factor_a} * {factor_b}", *covariates]
    return f"{outcome} ~ " + " + ".join(rhs)


def _align_rows(X: pd.DataFrame, index: pd.Index) -> pd.DataFrame:
    # a data-free design ("~ 1") may come back with a single row
    if X.shape[0] != len(index):
        if X.shape[0] != 1:
            msg = f"Design has {X.shape[0]} rows for {len(index)} records."
            raise ValueError(msg)
        return pd.DataFrame(
            np.repeat(X.to_numpy(), len(index), axis=0), index=index, columns=X.columns,
        )
    X.index = index
    return X


def build_design(design_info: patsy.DesignInfo, frame: pd.DataFrame) -> pd.DataFrame:
    """Rebuild design rows for ``frame`` using a fitted design encoding."""
    na = patsy.NAAction(NA_types=[])
    (X,) = patsy.build_design_matrices(
        [design_info], frame, NA_action=na, return_type="dataframe",
    )
    return _align_rows(X, frame.index)


class FormulaParser:
    """Build treatment-coded design matrices from ``y ~ rhs`` formulas.

    Parameters
    ----------
    data : pd.DataFrame
        Records to model; the index must be unique.
    levels : mapping, optional
        ``{column: [reference, level2, ...]}``. Columns listed here are treated
        as categorical even when numeric (for example survey year).

    """

    def __init__(
        self,
        data: pd.DataFrame,
        *,
        levels: Mapping[str, Sequence[Any]] | None = None,
    ) -> None:
        if data.index.has_duplicates:
            msg = "Input DataFrame index must be unique for deterministic row mapping."
            raise ValueError(msg)
        self.data = data
        self.levels = {} if levels is None else {k: list(v) for k, v in levels.items()}
        missing = [k for k in self.levels if k not in data.columns]
        if missing:
            msg = f"levels refers to unknown column(s): {missing}"
            raise KeyError(msg)

    def _variables(self, rhs: str) -> list[str]:
        seen: list[str] = []
        for tok in _TOKEN_PAT.findall(rhs):
            if tok in self.data.columns and tok not in seen:
                seen.append(tok)
        return seen

    def _is_categorical(self, name: str) -> bool:
        if name in self.levels:
            return True
        s = self.data[name]
        return bool(
            isinstance(s.dtype, pd.CategoricalDtype)
            or pd.api.types.is_object_dtype(s.dtype)
            or pd.api.types.is_bool_dtype(s.dtype)
            or pd.api.types.is_string_dtype(s.dtype),
        )

    def parse(self, formula: str) -> dict[str, Any]:
        """Parse ``formula`` into design components.

        Returns a dict with keys ``y`` (ndarray), ``X`` (DataFrame),
        ``var_names``, ``design_info``, ``outcome``, ``variables``,
        ``factor_levels``, ``column_map``, ``frame`` (model variables of the
        kept rows, categoricals converted), ``row_index_used`` and
        ``n_dropped_na``.
        """
        if "~" not in formula:
            msg = "Formula must contain '~'."
            raise ValueError(msg)
        y_raw, rhs = (s.strip() for s in formula.split("~", 1))
        if y_raw not in self.data.columns:
            msg = f"Response variable '{y_raw}' not found."
            raise KeyError(msg)
        if not rhs:
            msg = "Formula right-hand side is empty; use '1' for an intercept-only model."
            raise ValueError(msg)

        variables = self._variables(rhs)
        frame = self.data[[y_raw, *[v for v in variables if v != y_raw]]].copy()
        factor_levels: dict[str, list[Any]] = {}
        for v in variables:
            if self._is_categorical(v):
                lv = canonical_levels(frame[v], self.levels.get(v))
                factor_levels[v] = lv
                frame[v] = _as_categorical(frame[v], lv)

        complete = ~frame.isna().any(axis=1).to_numpy()
        n_dropped = int((~complete).sum())
        if n_dropped:
            LOGGER.info("Dropping %d record(s) with missing model variables", n_dropped)
        frame = frame.loc[complete]
        if frame.shape[0] == 0:
            msg = "No complete records remain for the model variables."
            raise ValueError(msg)

        X = patsy.dmatrix(rhs, frame, NA_action="raise", return_type="dataframe")
        design_info = X.design_info
        X = _align_rows(X, frame.index)
        y = frame[y_raw].to_numpy(dtype=np.float64)

        column_map: dict[str, tuple[str, ...]] = {}
        for term in design_info.terms:
            sl = design_info.term_slices[term]
            covs: list[str] = []
            for factor in term.factors:
                for tok in _TOKEN_PAT.findall(factor.name()):
                    if tok in variables and tok not in covs:
                        covs.append(tok)
            for col in design_info.column_names[sl]:
                column_map[col] = tuple(covs)

        return {
            "y": y,
            "X": X,
            "var_names": list(design_info.column_names),
            "design_info": design_info,
            "outcome": y_raw,
            "variables": [v for v in variables if v != y_raw],
            "factor_levels": factor_levels,
            "column_map": column_map,
            "frame": frame.drop(columns=[y_raw]) if y_raw not in variables else frame,
            "row_index_used": frame.index,
            "n_dropped_na": n_dropped,
        }
