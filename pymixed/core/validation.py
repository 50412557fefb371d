"""
Input validation utilities for pymixed.

These validators follow the "fail fast, fail loud" principle. They raise
immediately with clear error messages rather than silently correcting
or making assumptions about user intent.

Design principles:
    - No silent type coercion (except np.asarray on array-likes)
    - No default handling of edge cases
    - Clear, actionable error messages with actual values
    - Each function validates ONE thing
    - Parameter names included in all error messages
"""

import numpy as np
from numpy.typing import ArrayLike, NDArray
from typing import Any

from pymixed.core.exceptions import ValidationError, DimensionError


def check_array(
    array: ArrayLike,
    name: str,
) -> NDArray[np.floating[Any]]:
    """
    Validate and convert input to numpy array.
    
    Accepts any array-like and converts to numpy array. Rejects inputs
    that result in object dtype (indicating mixed types or non-numeric data).
    
    Args:
        array: Input to validate
        name: Parameter name for error messages
        
    Returns:
        numpy.ndarray with numeric dtype
        
    Raises:
        ValidationError: If input cannot be converted to numeric array
    """
    try:
        result = np.asarray(array)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{name}: cannot convert to array: {e}") from e
    
    if result.dtype == object:
        raise ValidationError(
            f"{name}: converted to object dtype, indicating mixed types or non-numeric data"
        )

    # Reject non-numeric dtypes (strings, bytes, datetime, etc.)
    if not np.issubdtype(result.dtype, np.number):
        raise ValidationError(
            f"{name}: non-numeric dtype {result.dtype}, expected numeric data"
        )

    # Ensure floating point for numerical stability
    if not np.issubdtype(result.dtype, np.floating):
        result = result.astype(np.float64)

    return result


def check_finite(array: NDArray[np.floating[Any]], name: str) -> None:
    """
    Verify array contains no NaN or Inf values.
    
    Args:
        array: Array to check
        name: Parameter name for error messages
        
    Raises:
        ValidationError: If array contains non-finite values
    """
    if not np.all(np.isfinite(array)):
        n_nan = int(np.sum(np.isnan(array)))
        n_inf = int(np.sum(np.isinf(array)))
        raise ValidationError(
            f"{name}: contains non-finite values ({n_nan} NaN, {n_inf} Inf)"
        )


def check_weights(weights: ArrayLike | None, n: int, name: str) -> NDArray[np.float64]:
    """
    Validate a prior-weights vector.

    An empty or missing vector means unit weights and is returned as a
    zero-length array, which the blocks treat as "not reweighted".

    Args:
        weights: Prior weights, or None
        n: Number of observations
        name: Parameter name for error messages

    Returns:
        Float array of length n, or of length 0 for unweighted fits

    Raises:
        DimensionError: If the length is neither 0 nor n
        ValidationError: If any weight is negative or non-finite
    """
    if weights is None:
        return np.zeros(0, dtype=np.float64)
    w = check_array(weights, name).ravel()
    if w.size == 0:
        return w
    if w.shape[0] != n:
        raise DimensionError(
            f"{name}: has {w.shape[0]} elements, expected {n} or 0"
        )
    check_finite(w, name)
    if np.any(w < 0):
        raise ValidationError(f"{name}: contains negative weights")
    return w
