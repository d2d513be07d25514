"""Two-factor interaction (trend) models.

Fits ``outcome ~ a * b + covariates`` with treatment coding: the first level
of each factor in canonical order is the omitted reference, so the model
carries ``a[T.level]``, ``b[T.level]`` and ``a[T.level]:b[T.level]`` columns.
The typical use is a group factor crossed with survey year, with predictive
margins reported for every group-year combination.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import pandas as pd

from svyreg.utils.formula import interaction_formula
from svyreg.utils.records import RecordSchema, analytic_sample

from .base import BaseEstimator, FittedModel, SolverConfig
from .glm import Logit, NegativeBinomial
from .margins import MarginResult, cells_from_factors, predict_margins
from .tobit import Tobit

if TYPE_CHECKING:
    from collections.abc import Sequence

    from svyreg.core.design import SurveyDesign

__all__ = ["ESTIMATORS", "InteractionResult", "fit_interaction"]

LOGGER = logging.getLogger(__name__)

ESTIMATORS: dict[str, type[BaseEstimator]] = {
    "binomial": Logit,
    "negbin": NegativeBinomial,
    "tobit": Tobit,
}


@dataclass(frozen=True)
class InteractionResult:
    """Fitted interaction model with margins over the full factor cross."""

    model: FittedModel
    margins: MarginResult
    formula: str
    factor_a: str
    factor_b: str

    @property
    def interaction_terms(self) -> pd.DataFrame:
        """Coefficient rows of the ``a:b`` interaction columns."""
        names = [
            n
            for n, covs in self.model.column_map.items()
            if self.factor_a in covs and self.factor_b in covs
        ]
        out = pd.DataFrame({"estimate": self.model.params, "se": self.model.se}).loc[names]
        return out.join(self.model.conf_int(self.margins.ci_level))

    def margin_grid(self) -> pd.DataFrame:
        """Margins pivoted to ``factor_a`` rows by ``factor_b`` columns."""
        rows = [
            {self.factor_a: c[self.factor_a], self.factor_b: c[self.factor_b], "estimate": e}
            for c, e in zip(self.margins.cells, self.margins.estimate)
        ]
        grid = pd.DataFrame(rows).pivot(index=self.factor_a, columns=self.factor_b, values="estimate")
        levels = self.model.extra["factor_levels"]
        return grid.reindex(index=levels[self.factor_a], columns=levels[self.factor_b])

    def to_dict(self) -> dict[str, Any]:
        return {
            "formula": self.formula,
            "factor_a": self.factor_a,
            "factor_b": self.factor_b,
            "model": self.model.to_dict(),
            "margins": self.margins.to_dict(),
        }


def fit_interaction(  # noqa: PLR0913
    data: pd.DataFrame,
    design: SurveyDesign,
    outcome: str,
    factor_a: str,
    factor_b: str,
    covariates: Sequence[str] = (),
    family: str = "binomial",
    levels_a: Sequence[Any] | None = None,
    levels_b: Sequence[Any] | None = None,
    *,
    config: SolverConfig | None = None,
    schema: RecordSchema | None = None,
    ci_level: float | None = None,
    **fit_kwargs: Any,
) -> InteractionResult:
    """Fit ``outcome ~ factor_a * factor_b + covariates`` and its margins.

    Rows enter through :func:`~svyreg.utils.records.analytic_sample`:
    positive-weight records form the design and ``keep_child`` (when
    present) defines the estimation domain. Default levels of both factors
    are those observed in the domain. ``fit_kwargs`` are forwarded to the
    estimator (``lower``/``upper`` for ``tobit``).
    """
    fam = str(family).lower()
    if fam not in ESTIMATORS:
        msg = f"family must be one of {sorted(ESTIMATORS)}; got {family!r}."
        raise ValueError(msg)
    if factor_a == factor_b:
        msg = "factor_a and factor_b must differ."
        raise ValueError(msg)
    for col in (outcome, factor_a, factor_b, *covariates):
        if col not in data.columns:
            msg = f"Column {col!r} not found in data."
            raise KeyError(msg)

    sample, sample_design = analytic_sample(data, design, schema=schema)
    in_domain = sample.loc[sample[sample_design.subpop].to_numpy()]
    levels: dict[str, Sequence[Any]] = {}
    if levels_a is not None:
        levels[factor_a] = list(levels_a)
    if levels_b is not None:
        levels[factor_b] = list(levels_b)
    # both factors are categorical even when stored as numbers (years)
    for fac in (factor_a, factor_b):
        if fac not in levels and not isinstance(data[fac].dtype, pd.CategoricalDtype):
            levels[fac] = sorted(pd.unique(in_domain[fac].dropna()).tolist())

    formula = interaction_formula(outcome, factor_a, factor_b, covariates)
    LOGGER.info("Fitting %s interaction model %r on %d record(s)", fam, formula, in_domain.shape[0])
    cfg = config or SolverConfig()
    estimator = ESTIMATORS[fam].from_formula(formula, sample, sample_design, levels=levels, **fit_kwargs)
    model = estimator.fit(cfg)
    margins = predict_margins(
        model,
        cells_from_factors(model, factor_a, factor_b),
        ci_level=cfg.ci_level if ci_level is None else ci_level,
    )
    return InteractionResult(
        model=model,
        margins=margins,
        formula=formula,
        factor_a=factor_a,
        factor_b=factor_b,
    )
