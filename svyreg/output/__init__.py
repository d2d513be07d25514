# svyreg/output/__init__.py
"""Presentation tables for fitted models and margins."""
from .summary import coef_table, margins_table, modelsummary

__all__ = ["coef_table", "margins_table", "modelsummary"]
