"""
Bounded derivative-free minimizer interface.

The fit driver only needs an objective value at a parameter vector, so
any minimizer satisfying the ``Minimizer`` protocol can be plugged in.
The default wraps ``scipy.optimize.minimize`` with the bounded Powell
method and translates its status into a ``ReturnCode``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol, runtime_checkable

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import Bounds, minimize

from pymixed.mixed._control import MixedControl, DEFAULT_CONTROL


class ReturnCode(Enum):
    """Minimizer outcome."""
    SUCCESS = 'success'
    ROUNDOFF_LIMITED = 'roundoff_limited'
    FAILURE = 'failure'
    INVALID_ARGS = 'invalid_args'
    OUT_OF_MEMORY = 'out_of_memory'
    FORCED_STOP = 'forced_stop'
    MAXEVAL_REACHED = 'maxeval_reached'


@dataclass(frozen=True)
class OptimizerResult:
    """Outcome of one minimization.

    Attributes:
        fmin: Best objective value found.
        xmin: Parameter vector attaining ``fmin``.
        code: Return code.
        nfev: Objective evaluations made by the minimizer.
    """
    fmin: float
    xmin: NDArray
    code: ReturnCode
    nfev: int


@runtime_checkable
class Minimizer(Protocol):
    """Bounded minimizer called with an objective, a start and lower bounds."""

    def __call__(
        self,
        objective: Callable[[NDArray], float],
        x0: NDArray,
        lower: NDArray,
    ) -> OptimizerResult:
        ...


# scipy Powell status → ReturnCode
_POWELL_CODES = {
    0: ReturnCode.SUCCESS,
    1: ReturnCode.MAXEVAL_REACHED,
    2: ReturnCode.MAXEVAL_REACHED,
    3: ReturnCode.FAILURE,
    4: ReturnCode.FAILURE,
}


class ScipyMinimizer:
    """Bounded Powell search from ``scipy.optimize.minimize``.

    Args:
        control: Supplies ``max_feval``, ``ftol_rel`` and ``xtol_abs``.
    """

    def __init__(self, control: MixedControl = DEFAULT_CONTROL):
        self.control = control

    @property
    def name(self) -> str:
        return 'Powell'

    def __call__(
        self,
        objective: Callable[[NDArray], float],
        x0: NDArray,
        lower: NDArray,
    ) -> OptimizerResult:
        x0 = np.asarray(x0, dtype=np.float64)
        lower = np.asarray(lower, dtype=np.float64)
        if x0.shape != lower.shape or np.any(x0 < lower):
            return OptimizerResult(
                fmin=np.inf, xmin=x0.copy(),
                code=ReturnCode.INVALID_ARGS, nfev=0,
            )
        options = {
            'xtol': self.control.xtol_abs,
            'ftol': self.control.ftol_rel,
        }
        if self.control.max_feval > 0:
            options['maxfev'] = self.control.max_feval
        res = minimize(
            objective,
            x0,
            method='Powell',
            bounds=Bounds(lower, np.full_like(lower, np.inf)),
            options=options,
        )
        code = _POWELL_CODES.get(res.status, ReturnCode.FAILURE)
        return OptimizerResult(
            fmin=float(res.fun),
            xmin=np.atleast_1d(np.asarray(res.x, dtype=np.float64)),
            code=code,
            nfev=int(res.nfev),
        )


@dataclass
class OptSummary:
    """Optimization state persisted on a model.

    Attributes:
        initial: Starting parameter vector.
        final: Parameter vector installed after the last fit.
        lowerbd: Lower bounds aligned with ``initial``.
        finitial: Objective at ``initial``.
        fmin: Objective at ``final``.
        feval: Objective evaluations made by the last fit; 0 when unfitted.
        returnvalue: Minimizer return code of the last fit.
        nAGQ: Quadrature nodes used by the objective.
        fast: Whether only θ was optimized.
    """
    initial: NDArray
    lowerbd: NDArray
    final: NDArray = field(default=None)
    finitial: float = np.inf
    fmin: float = np.inf
    feval: int = 0
    returnvalue: ReturnCode | None = None
    nAGQ: int = 1
    fast: bool = False

    def __post_init__(self):
        self.initial = np.asarray(self.initial, dtype=np.float64).copy()
        self.lowerbd = np.asarray(self.lowerbd, dtype=np.float64).copy()
        if self.final is None:
            self.final = self.initial.copy()

    def reset(self, initial: NDArray, lowerbd: NDArray) -> 'OptSummary':
        """Forget the previous fit so that the model can be fitted again."""
        self.initial = np.asarray(initial, dtype=np.float64).copy()
        self.lowerbd = np.asarray(lowerbd, dtype=np.float64).copy()
        self.final = self.initial.copy()
        self.finitial = np.inf
        self.fmin = np.inf
        self.feval = 0
        self.returnvalue = None
        return self
