"""
Objective functions for LMM and GLMM.

The profiled deviance is the objective function that the outer optimizer
minimizes. For LMM, β and σ² are analytically profiled out, leaving a
function of θ only. For GLMM, the Laplace approximation replaces the
marginal likelihood integral, optionally refined by adaptive
Gauss-Hermite quadrature when the model has a single scalar
random-effects term.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), Sections 2-3.

    Pinheiro, J. C., & Bates, D. M. (1995). Approximations to the
    log-likelihood function in the nonlinear mixed-effects model.
    Journal of Computational and Graphical Statistics, 4(1), 12-35.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING
import numpy as np
from numpy.polynomial.hermite_e import hermegauss
from numpy.typing import NDArray

from pymixed.core.exceptions import ValidationError
from pymixed.mixed._kernels import Diagonal, diag_of

if TYPE_CHECKING:
    from pymixed.mixed._models import LinearMixedModel, GeneralizedLinearMixedModel


def profiled_deviance(model: 'LinearMixedModel') -> float:
    """Profiled ML or REML deviance at the model's current θ.

    ML:   d(θ) = log|L_θ|² + n × [1 + log(2π × pwrss/n)]

    REML: d(θ) = log|L_θ|² + log|RX|² + (n-p) × [1 + log(2π × pwrss/(n-p))]

    Prior weights subtract Σ log w. The factor must be current
    (``update_L`` called after the last change of θ or weights).
    """
    factor = model.factor
    dof = model.dof_residual() if model.reml else model.nobs()
    pwrss = factor.pwrss()
    val = factor.logdet(model.reml) + dof * (1.0 + np.log(2.0 * np.pi * pwrss / dof))
    if model.weights.size:
        val -= float(np.sum(np.log(model.weights)))
    return float(val)


def laplace_deviance(glmm: 'GeneralizedLinearMixedModel') -> float:
    """Laplace approximation: Σ deviance residuals + log|L_θ|² + ‖u‖²."""
    penalty = sum(float(np.sum(u ** 2)) for u in glmm.u)
    return float(
        np.sum(glmm.resp.devresid) + glmm.lmm.factor.logdet(False) + penalty
    )


@lru_cache(maxsize=None)
def _gh_rule(k: int) -> tuple[NDArray, NDArray]:
    z, w = hermegauss(k)
    z = (z - z[::-1]) / 2.0
    w = (w + w[::-1]) / 2.0
    w = w / np.sum(w)
    z.setflags(write=False)
    w.setflags(write=False)
    return z, w


def gauss_hermite_normal(k: int) -> tuple[NDArray, NDArray]:
    """Gauss-Hermite rule for integrals against the standard normal density.

    Nodes are symmetrized, so the middle node of an odd rule is exactly 0,
    and weights sum to 1.

    Args:
        k: Number of nodes (>= 1).

    Returns:
        (nodes, weights), both read-only arrays of length k.
    """
    if k < 1:
        raise ValidationError(f"number of quadrature nodes must be >= 1, got {k}")
    return _gh_rule(int(k))


def agq_deviance(glmm: 'GeneralizedLinearMixedModel', nAGQ: int) -> float:
    """Adaptive Gauss-Hermite approximation to the GLMM deviance.

    The conditional modes are held at their current optimum and each
    level's mode is perturbed by z × sd along every quadrature node,
    where sd is the reciprocal diagonal of the first block of L. The
    modes and the linear predictor are restored before returning.

    Raises:
        ValidationError: If the model does not have exactly one
            random-effects block of size 1.
    """
    if nAGQ == 1:
        return laplace_deviance(glmm)
    reterms = glmm.lmm.reterms
    if len(reterms) != 1 or reterms[0].vsize != 1:
        raise ValidationError(
            f"nAGQ > 1 requires a single scalar random-effects term, got "
            f"{len(reterms)} term(s) of size {[re.vsize for re in reterms]}"
        )
    L11 = glmm.lmm.factor.L[0][0]
    if not isinstance(L11, Diagonal):
        raise TypeError("first diagonal block of L must be diagonal")

    refs = reterms[0].refs
    nlev = reterms[0].nlevs
    u = glmm.u[0].ravel()
    u0 = glmm.u0[0].ravel()
    np.copyto(u0, u)

    devc0 = glmm.devc0
    devc = glmm.devc
    sd = glmm.sd
    mult = glmm.mult
    np.square(u, out=devc0)
    devc0 += np.bincount(refs, weights=glmm.resp.devresid, minlength=nlev)
    np.reciprocal(diag_of(L11), out=sd)
    mult.fill(0.0)

    z_nodes, weights = gauss_hermite_normal(nAGQ)
    for z, w in zip(z_nodes, weights):
        if w == 0.0:
            continue
        if z == 0.0:
            mult += w
            continue
        np.multiply(sd, z, out=u)
        u += u0
        glmm.update_eta()
        np.square(u, out=devc)
        devc += np.bincount(refs, weights=glmm.resp.devresid, minlength=nlev)
        mult += w * np.exp((z * z + devc0 - devc) / 2.0)

    np.copyto(u, u0)
    glmm.update_eta()
    return float(np.sum(devc0) - 2.0 * (np.sum(np.log(mult)) + np.sum(np.log(sd))))
