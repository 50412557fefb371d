"""
Core infrastructure for pymixed.

This module provides shared abstractions used by the mixed-model engine.

Key components:
    result: Generic Result[P] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    compute: Timing and linear algebra primitives
"""

from pymixed.core.result import Result
from pymixed.core.exceptions import (
    PyMixedError,
    ValidationError,
    DimensionError,
    ModelStateError,
    NumericalError,
    NotPositiveDefiniteError,
    PatternError,
    ConvergenceError,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "PyMixedError",
    "ValidationError",
    "DimensionError",
    "ModelStateError",
    "NumericalError",
    "NotPositiveDefiniteError",
    "PatternError",
    "ConvergenceError",
]
