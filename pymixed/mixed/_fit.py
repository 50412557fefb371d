"""
Fit driver shared by LMM and GLMM.

Runs the external minimizer over an objective, snaps near-boundary
parameters to their zero lower bound when that does not worsen the fit,
classifies the minimizer's return code and installs the final
parameters on the model.
"""

from __future__ import annotations

import logging
import warnings
from typing import Callable

import numpy as np
from numpy.typing import NDArray

from pymixed.core.exceptions import ModelStateError
from pymixed.mixed._control import MixedControl, DEFAULT_CONTROL
from pymixed.mixed._optimizer import Minimizer, OptSummary, ReturnCode

logger = logging.getLogger(__name__)

_FAILURE_CODES = (
    ReturnCode.FAILURE,
    ReturnCode.INVALID_ARGS,
    ReturnCode.OUT_OF_MEMORY,
    ReturnCode.FORCED_STOP,
    ReturnCode.MAXEVAL_REACHED,
)


def snap_to_bounds(
    xmin: NDArray,
    lowerbd: NDArray,
    epsilon: float,
) -> NDArray:
    """Copy of ``xmin`` with values in (0, epsilon) at a zero bound set to 0."""
    snapped = np.array(xmin, dtype=np.float64)
    near = (lowerbd == 0.0) & (snapped > 0.0) & (snapped < epsilon)
    snapped[near] = 0.0
    return snapped


def fit_model(
    objective: Callable[[NDArray], float],
    optsum: OptSummary,
    minimizer: Minimizer,
    install: Callable[[NDArray], object],
    control: MixedControl = DEFAULT_CONTROL,
) -> list[str]:
    """Minimize ``objective`` from ``optsum.initial`` and record the outcome.

    The objective at ``optsum.initial`` is recorded as ``finitial`` before
    the minimizer runs. After it returns, parameters in
    (0, ``control.snap_epsilon``) whose lower bound is 0 are set to 0 and
    the snapped point replaces the optimum if its objective is within
    ``control.snap_tolerance`` of it. ``install`` is always called with
    the final point.

    Args:
        objective: Maps a parameter vector to the value being minimized.
        optsum: Summary holding initial values and bounds; updated in place.
        minimizer: Bounded minimizer.
        install: Puts the final parameters into the model.
        control: Snapping constants.

    Returns:
        Warning messages issued for the minimizer's return code.

    Raises:
        ModelStateError: If ``optsum`` records a previous fit.
    """
    if optsum.feval > 0:
        raise ModelStateError(
            "This model has already been fitted. Use refit() instead."
        )

    n_evals = 0

    def counted(x: NDArray) -> float:
        nonlocal n_evals
        n_evals += 1
        val = float(objective(np.asarray(x, dtype=np.float64)))
        logger.debug("objective evaluation %d: %.10g", n_evals, val)
        return val

    optsum.finitial = counted(optsum.initial.copy())
    res = minimizer(counted, optsum.initial.copy(), optsum.lowerbd)
    fmin = res.fmin
    xmin = np.array(res.xmin, dtype=np.float64)

    snapped = snap_to_bounds(xmin, optsum.lowerbd, control.snap_epsilon)
    if not np.array_equal(snapped, xmin):
        zeroobj = counted(snapped)
        if zeroobj <= fmin + control.snap_tolerance:
            logger.debug(
                "snapped %d parameter(s) to the boundary",
                int(np.sum(snapped != xmin)),
            )
            fmin = zeroobj
            xmin = snapped

    install(xmin)
    optsum.final = xmin
    optsum.fmin = fmin
    optsum.feval = n_evals
    optsum.returnvalue = res.code

    messages = []
    if res.code is ReturnCode.ROUNDOFF_LIMITED:
        msg = "Minimizer reports that its progress was limited by round-off"
        warnings.warn(msg, RuntimeWarning, stacklevel=3)
        messages.append(msg)
    elif res.code in _FAILURE_CODES:
        msg = f"optimization failure: minimizer returned {res.code.name}"
        warnings.warn(msg, RuntimeWarning, stacklevel=3)
        messages.append(msg)
    return messages
