"""Estimator exports with lazy loading.

Public estimator classes, result containers and margin helpers.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "BaseEstimator",
    "FittedModel",
    "InteractionResult",
    "Logit",
    "MarginResult",
    "NegativeBinomial",
    "SolverConfig",
    "Tobit",
    "cells_from_factors",
    "fit_glm",
    "fit_interaction",
    "fit_tobit",
    "margin_contrast",
    "predict_margins",
    "tobit_expectation",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("svyreg.estimators.base", "BaseEstimator"),
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
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'svyreg.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Expose lazily loaded attributes to ``dir()``."""
    return sorted(set(globals()) | set(__all__))
