"""
Penalized Iteratively Reweighted Least Squares (PIRLS) for GLMM.

For a GLMM with given θ (and hence Λ_θ), PIRLS iteratively finds the
conditional modes of the random effects by solving a sequence of penalized
weighted least squares problems, each linearized at the current linear
predictor. With ``vary_beta`` the fixed effects are updated as well.

This is the inner loop of GLMM estimation. The outer loop optimizes θ
(and, on the full path, β) to minimize the Laplace or AGQ deviance.

Step-halving keeps the deviance sequence non-increasing: a step that
raises the deviance is averaged with the last accepted state until it
does not. Divergence is reported through the result status; the caller
decides whether it is fatal.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), Section 3.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np

from pymixed.mixed._control import MixedControl, DEFAULT_CONTROL

if TYPE_CHECKING:
    from pymixed.mixed._models import GeneralizedLinearMixedModel

logger = logging.getLogger(__name__)


class PIRLSStatus(Enum):
    """Terminal state of a PIRLS run."""
    CONVERGED = 'converged'
    MAX_ITER = 'max_iter'
    ACCEPTED_WITHOUT_IMPROVEMENT = 'accepted_without_improvement'
    DIVERGED = 'diverged'


@dataclass(frozen=True)
class PIRLSResult:
    """Result from a PIRLS run.

    Attributes:
        status: Terminal state.
        n_iter: Outer iterations performed.
        deviance: Laplace deviance of the final state.
        history: Deviance accepted at the end of each outer iteration.
        n_halvings: Total step-halvings performed.
    """
    status: PIRLSStatus
    n_iter: int
    deviance: float
    history: tuple[float, ...]
    n_halvings: int

    @property
    def converged(self) -> bool:
        return self.status is PIRLSStatus.CONVERGED


def _average(new, old) -> None:
    new += old
    new *= 0.5


def pirls(
    glmm: 'GeneralizedLinearMixedModel',
    vary_beta: bool = False,
    control: MixedControl = DEFAULT_CONTROL,
) -> PIRLSResult:
    """Penalized IRLS for the conditional modes at the model's current θ.

    Each iteration:

    1. With ``vary_beta``, solve β against the trailing block of L
    2. Solve the penalized normal equations for u
    3. Re-linearize the response and evaluate the Laplace deviance
    4. While the deviance exceeds the last accepted value, average u
       (and β) with the last accepted state

    Args:
        glmm: Model whose u, u0, β, β₀ and inner factor are updated in place.
        vary_beta: Whether β is updated along with u.
        control: Iteration limits and tolerances.

    Returns:
        PIRLSResult. A step-halving failure on the first iteration leaves
        no accepted state and is reported as DIVERGED; on later iterations
        it stops the halving and the loop continues from the current state.
    """
    u, u0 = glmm.u, glmm.u0
    for ui, u0i in zip(u, u0):
        ui.fill(0.0)
        u0i.fill(0.0)
    if vary_beta:
        np.copyto(glmm.beta0, glmm.beta)

    obj0 = glmm.deviance_update() * control.pirls_obj_inflation
    history = []
    n_halvings = 0
    exhausted = False
    obj = obj0

    for iteration in range(1, control.pirls_max_iter + 1):
        if vary_beta:
            glmm.beta[:] = glmm.lmm.factor.fixef()
        for ui, new in zip(u, glmm.lmm.factor.ranef(glmm.beta, uscale=True)):
            np.copyto(ui, new)
        obj = glmm.deviance_update()
        logger.debug("PIRLS iteration %d: deviance %.8g", iteration, obj)

        nhalf = 0
        exhausted = False
        while obj > obj0:
            nhalf += 1
            if nhalf > control.max_halvings:
                if iteration < 2:
                    logger.debug(
                        "PIRLS diverged: %d step-halvings on the first iteration",
                        control.max_halvings,
                    )
                    return PIRLSResult(
                        status=PIRLSStatus.DIVERGED,
                        n_iter=iteration,
                        deviance=obj,
                        history=tuple(history),
                        n_halvings=n_halvings,
                    )
                exhausted = True
                break
            n_halvings += 1
            for ui, u0i in zip(u, u0):
                _average(ui, u0i)
            if vary_beta:
                _average(glmm.beta, glmm.beta0)
            obj = glmm.deviance_update()
            logger.debug("PIRLS step-halving %d: deviance %.8g", nhalf, obj)

        history.append(obj)
        if abs(obj - obj0) <= control.pirls_tol:
            return PIRLSResult(
                status=PIRLSStatus.CONVERGED,
                n_iter=iteration,
                deviance=obj,
                history=tuple(history),
                n_halvings=n_halvings,
            )
        for ui, u0i in zip(u, u0):
            np.copyto(u0i, ui)
        np.copyto(glmm.beta0, glmm.beta)
        obj0 = obj

    status = (
        PIRLSStatus.ACCEPTED_WITHOUT_IMPROVEMENT if exhausted
        else PIRLSStatus.MAX_ITER
    )
    return PIRLSResult(
        status=status,
        n_iter=control.pirls_max_iter,
        deviance=obj,
        history=tuple(history),
        n_halvings=n_halvings,
    )
