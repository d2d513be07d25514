# svyreg/utils/__init__.py
"""Utility functions module."""
from .formula import FormulaParser, build_design
from .records import (
    AnalyticRecord,
    RecordSchema,
    analytic_sample,
    derive_share,
    validate_analytic_table,
)

__all__ = [
    "AnalyticRecord",
    "FormulaParser",
    "RecordSchema",
    "analytic_sample",
    "build_design",
    "derive_share",
    "validate_analytic_table",
]
