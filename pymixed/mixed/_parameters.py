"""
Covariance-parameter vector θ across random-effects blocks.

θ is the concatenation, in block order, of each block's free λ entries
taken in column-major order of the lower triangle. The accessors here
copy out of and into the blocks' λ storage; no block keeps a view of θ.
"""

from __future__ import annotations

from typing import Sequence
import numpy as np
from numpy.typing import NDArray

from pymixed.core.exceptions import DimensionError
from pymixed.mixed._random_effects import RandomEffectsBlock


def n_theta(reterms: Sequence[RandomEffectsBlock]) -> int:
    """Length of θ."""
    return sum(re.ntheta for re in reterms)


def get_theta(reterms: Sequence[RandomEffectsBlock]) -> NDArray:
    """Copy of the current θ."""
    if not reterms:
        return np.zeros(0)
    return np.concatenate([re.get_theta() for re in reterms])


def set_theta(reterms: Sequence[RandomEffectsBlock], theta: NDArray) -> None:
    """Write θ into the blocks' λ in place.

    Raises:
        DimensionError: If ``theta`` does not have ``n_theta(reterms)``
            elements.
    """
    theta = np.asarray(theta, dtype=np.float64).ravel()
    expected = n_theta(reterms)
    if theta.shape[0] != expected:
        raise DimensionError(
            f"theta has {theta.shape[0]} elements, expected {expected}"
        )
    offset = 0
    for re in reterms:
        k = re.ntheta
        re.set_theta(theta[offset:offset + k])
        offset += k


def theta_lower_bounds(reterms: Sequence[RandomEffectsBlock]) -> NDArray:
    """Lower bounds for θ: 0 on λ's diagonal, -inf elsewhere."""
    if not reterms:
        return np.zeros(0)
    return np.concatenate([re.lower_bounds() for re in reterms])


def theta_start(reterms: Sequence[RandomEffectsBlock]) -> NDArray:
    """Starting θ: 1 on λ's diagonal, 0 elsewhere."""
    return np.where(theta_lower_bounds(reterms) == 0.0, 1.0, 0.0)
