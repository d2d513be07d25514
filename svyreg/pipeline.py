"""Run a batch of model specifications against one analytic table.

Each :class:`ModelSpec` names a formula, a family and the margins to report.
Specs are independent, so :func:`run_models` may fit them concurrently on a
thread pool; every fit itself is sequential and deterministic.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from svyreg.estimators.base import FittedModel, SolverConfig
from svyreg.estimators.interaction import ESTIMATORS
from svyreg.estimators.margins import MarginResult, cells_from_factors, predict_margins
from svyreg.utils.records import RecordSchema, analytic_sample

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    import pandas as pd

    from svyreg.core.design import SurveyDesign

__all__ = ["ModelRun", "ModelSpec", "fit_spec", "run_models"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSpec:
    """One model of an analysis plan.

    Attributes
    ----------
    name : str
        Key of the result in :func:`run_models` output.
    formula : str
        ``outcome ~ rhs`` in patsy syntax.
    family : {"binomial", "negbin", "tobit"}
    levels : mapping, optional
        Canonical level order per categorical column.
    margins : tuple of str
        Factors whose full cross is reported as predictive margins.
    at : mapping, optional
        ``at`` overrides forwarded to :func:`predict_margins`.
    sensitivity : {None, "nonzero"}
        Domain variant passed to :func:`analytic_sample`.
    fit_kwargs : mapping
        Estimator keywords (``lower``/``upper`` for ``tobit``).

    """

    name: str
    formula: str
    family: str = "binomial"
    levels: Mapping[str, Sequence[Any]] | None = None
    margins: tuple[str, ...] = ()
    at: Mapping[str, Any] | None = None
    sensitivity: str | None = None
    fit_kwargs: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.family not in ESTIMATORS:
            msg = f"ModelSpec {self.name!r}: family must be one of {sorted(ESTIMATORS)}."
            raise ValueError(msg)
        object.__setattr__(self, "margins", tuple(self.margins))


@dataclass(frozen=True)
class ModelRun:
    """Fitted model of a spec and its margins (``None`` when none were asked)."""

    spec: ModelSpec
    model: FittedModel
    margins: MarginResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.spec.name,
            "formula": self.spec.formula,
            "model": self.model.to_dict(),
            "margins": None if self.margins is None else self.margins.to_dict(),
        }


def fit_spec(
    data: pd.DataFrame,
    design: SurveyDesign,
    spec: ModelSpec,
    *,
    config: SolverConfig | None = None,
    schema: RecordSchema | None = None,
) -> ModelRun:
    """Fit a single spec on its analytic domain and compute its margins."""
    cfg = config or SolverConfig()
    sample, sample_design = analytic_sample(data, design, schema=schema, sensitivity=spec.sensitivity)
    LOGGER.info(
        "Fitting %s (%s) on %d in-domain record(s)",
        spec.name, spec.family, int(sample[sample_design.subpop].sum()),
    )
    estimator = ESTIMATORS[spec.family].from_formula(
        spec.formula, sample, sample_design, levels=spec.levels, **dict(spec.fit_kwargs),
    )
    model = estimator.fit(cfg)
    margins = None
    if spec.margins or spec.at:
        cells = cells_from_factors(model, *spec.margins) if spec.margins else None
        margins = predict_margins(model, cells, spec.at, ci_level=cfg.ci_level)
    return ModelRun(spec=spec, model=model, margins=margins)


def run_models(
    data: pd.DataFrame,
    design: SurveyDesign,
    specs: Sequence[ModelSpec],
    *,
    config: SolverConfig | None = None,
    schema: RecordSchema | None = None,
    max_workers: int | None = 1,
) -> dict[str, ModelRun]:
    """Fit every spec and return results keyed by spec name, in spec order.

    ``max_workers > 1`` fits specs concurrently. The first failing spec's
    exception propagates; results of other specs are discarded.
    """
    names = [s.name for s in specs]
    if len(set(names)) != len(names):
        msg = f"ModelSpec names must be unique; got {names}."
        raise ValueError(msg)
    if max_workers is not None and int(max_workers) < 1:
        msg = "max_workers must be a positive integer or None."
        raise ValueError(msg)
    if max_workers == 1:
        runs = [fit_spec(data, design, s, config=config, schema=schema) for s in specs]
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [
                pool.submit(fit_spec, data, design, s, config=config, schema=schema) for s in specs
            ]
            runs = [f.result() for f in futures]
    return {run.spec.name: run for run in runs}
