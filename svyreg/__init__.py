"""svyreg: design-based estimation for complex survey data.

Survey-weighted logit, negative-binomial and two-sided Tobit models with
linearized (Taylor-series) variance under stratified cluster sampling, and
predictive margins with delta-method standard errors.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "DesignArrays",
    "DesignError",
    "FittedModel",
    "InteractionResult",
    "InvalidCellError",
    "Logit",
    "MarginResult",
    "ModelSpec",
    "NegativeBinomial",
    "NonConvergenceWarning",
    "OptimizationError",
    "SeparationError",
    "SingularDesignError",
    "SolverConfig",
    "SurveyDesign",
    "SvyregError",
    "Tobit",
    "cells_from_factors",
    "coef_table",
    "estimate_variance",
    "fit_glm",
    "fit_interaction",
    "fit_tobit",
    "linearized_vcov",
    "margin_contrast",
    "margins_table",
    "modelsummary",
    "predict_margins",
    "run_models",
    "svy_mean",
    "tobit_expectation",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "SurveyDesign": ("svyreg.core.design", "SurveyDesign"),
    "DesignArrays": ("svyreg.core.design", "DesignArrays"),
    "estimate_variance": ("svyreg.core.variance", "estimate_variance"),
    "linearized_vcov": ("svyreg.core.variance", "linearized_vcov"),
    "svy_mean": ("svyreg.core.variance", "svy_mean"),
    "FittedModel": ("svyreg.estimators.base", "FittedModel"),
    "SolverConfig": ("svyreg.estimators.base", "SolverConfig"),
    "Logit": ("svyreg.estimators.glm", "Logit"),
    "NegativeBinomial": ("svyreg.estimators.glm", "NegativeBinomial"),
    "fit_glm": ("svyreg.estimators.glm", "fit_glm"),
    "Tobit": ("svyreg.estimators.tobit", "Tobit"),
    "fit_tobit": ("svyreg.estimators.tobit", "fit_tobit"),
    "tobit_expectation": ("svyreg.estimators.tobit", "tobit_expectation"),
    "MarginResult": ("svyreg.estimators.margins", "MarginResult"),
    "predict_margins": ("svyreg.estimators.margins", "predict_margins"),
    "cells_from_factors": ("svyreg.estimators.margins", "cells_from_factors"),
    "margin_contrast": ("svyreg.estimators.margins", "margin_contrast"),
    "InteractionResult": ("svyreg.estimators.interaction", "InteractionResult"),
    "fit_interaction": ("svyreg.estimators.interaction", "fit_interaction"),
    "coef_table": ("svyreg.output.summary", "coef_table"),
    "modelsummary": ("svyreg.output.summary", "modelsummary"),
    "margins_table": ("svyreg.output.summary", "margins_table"),
    "ModelSpec": ("svyreg.pipeline", "ModelSpec"),
    "run_models": ("svyreg.pipeline", "run_models"),
    "SvyregError": ("svyreg.errors", "SvyregError"),
    "DesignError": ("svyreg.errors", "DesignError"),
    "SingularDesignError": ("svyreg.errors", "SingularDesignError"),
    "SeparationError": ("svyreg.errors", "SeparationError"),
    "OptimizationError": ("svyreg.errors", "OptimizationError"),
    "InvalidCellError": ("svyreg.errors", "InvalidCellError"),
    "NonConvergenceWarning": ("svyreg.errors", "NonConvergenceWarning"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'svyreg' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
