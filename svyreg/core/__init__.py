# svyreg/core/__init__.py
"""Core computational modules for svyreg."""
from . import design, inference, linalg, variance

__all__ = ["design", "inference", "linalg", "variance"]
