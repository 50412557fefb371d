"""
Linear and generalized linear mixed models.

LinearMixedModel owns the fixed-effects and response blocks, the
random-effects blocks and their blocked factor, and evaluates the
profiled deviance for a given θ. GeneralizedLinearMixedModel wraps an
inner LinearMixedModel whose response and weights are the working
response and working weights of the current PIRLS linearization.

The fixed effects β are kept over the full-rank pivoted columns of X;
``coef`` maps them back to the original column order with dropped
columns reported as -0.0.
"""

from __future__ import annotations

import logging
import warnings
from typing import Sequence

import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla
from scipy import sparse

from pymixed.core.exceptions import (
    ConvergenceError, DimensionError, NotPositiveDefiniteError, ValidationError,
)
from pymixed.core.validation import check_weights
from pymixed.families import Family, Gaussian, GlmResponse, IdentityLink, resolve_family
from pymixed.mixed._common import VarCompSummary
from pymixed.mixed._control import MixedControl, DEFAULT_CONTROL
from pymixed.mixed._deviance import agq_deviance, profiled_deviance
from pymixed.mixed._femat import FixedEffectsBlock
from pymixed.mixed._fit import fit_model
from pymixed.mixed._optimizer import Minimizer, OptSummary, ScipyMinimizer
from pymixed.mixed import _parameters as P
from pymixed.mixed._pirls import PIRLSResult, PIRLSStatus, pirls
from pymixed.mixed._pls import BlockedFactor
from pymixed.mixed._random_effects import RandomEffectsBlock, amalgamate

logger = logging.getLogger(__name__)


def _unpivot_coef(beta: NDArray, piv: NDArray, p: int) -> NDArray:
    full = np.full(p, -0.0)
    full[piv[:len(beta)]] = beta
    return full


def _unpivot_vcov(V: NDArray, piv: NDArray, p: int) -> NDArray:
    full = np.full((p, p), np.nan)
    keep = piv[:V.shape[0]]
    full[np.ix_(keep, keep)] = V
    return full


def _inv_crossprod_lower(Lx: NDArray) -> NDArray:
    """(Lx Lx')^{-1} for a lower-triangular Lx."""
    r = Lx.shape[0]
    if r == 0:
        return np.zeros((0, 0))
    Linv = sla.solve_triangular(Lx, np.eye(r), lower=True)
    return Linv.T @ Linv


def var_corr(
    reterms: Sequence[RandomEffectsBlock],
    scale: float,
) -> list[VarCompSummary]:
    """Variance components of every block at scale σ.

    Each term's correlations are with the preceding terms of its block.
    """
    out = []
    for re in reterms:
        sigmas, rhos = re.sigma_rhos(scale)
        S = re.vsize
        rho = np.zeros((S, S))
        k = 0
        for c in range(S):
            for r in range(c + 1, S):
                rho[r, c] = rhos[k]
                k += 1
        for i in range(S):
            out.append(VarCompSummary(
                group=re.name,
                name=re.cnames[i],
                variance=float(sigmas[i] ** 2),
                std_dev=float(sigmas[i]),
                corr=tuple(float(v) for v in rho[i, :i]),
            ))
    return out


class LinearMixedModel:
    """Gaussian linear mixed model with profiled ML or REML deviance.

    Args:
        y: Response (n,).
        fixed: Fixed-effects model matrix or a FixedEffectsBlock.
        reterms: Random-effects blocks. Blocks sharing a grouping factor
            are amalgamated; the result is ordered by decreasing number
            of random effects.
        weights: Prior weights (n,), or None.
        reml: Use the REML criterion instead of ML.
        fixed_names: Column names when ``fixed`` is a matrix.
        control: Engine tuning constants.

    Raises:
        DimensionError: If the blocks disagree on the number of rows.
        ValidationError: If there are no random-effects blocks.
    """

    def __init__(
        self,
        y: NDArray,
        fixed,
        reterms: Sequence[RandomEffectsBlock],
        weights: NDArray | None = None,
        reml: bool = False,
        fixed_names: Sequence[str] | None = None,
        control: MixedControl = DEFAULT_CONTROL,
    ):
        y = np.asarray(y, dtype=np.float64).ravel()
        n = y.shape[0]
        if not isinstance(fixed, FixedEffectsBlock):
            fixed = FixedEffectsBlock(fixed, fixed_names, rank_tol=control.rank_tol)
        if not reterms:
            raise ValidationError("At least one random-effects block is required")
        reterms = sorted(amalgamate(reterms), key=lambda re: re.nranef, reverse=True)

        self.control = control
        self.reml = reml
        self.weights = check_weights(weights, n, "weights")
        self.y = y
        self.xblock = fixed
        self.factor = BlockedFactor(
            reterms,
            fixed,
            FixedEffectsBlock(y.reshape(-1, 1).copy(order='F'), ['y']),
            control,
        )
        if self.weights.size:
            self.factor.reweight(np.sqrt(self.weights))
            self.factor.update_L()
        self.optsum = OptSummary(
            initial=P.theta_start(reterms),
            lowerbd=P.theta_lower_bounds(reterms),
        )
        self.warnings: list[str] = []

    @property
    def reterms(self) -> list[RandomEffectsBlock]:
        return self.factor.reterms

    # --- θ ---

    def get_theta(self) -> NDArray:
        return P.get_theta(self.reterms)

    def set_theta(self, theta: NDArray) -> 'LinearMixedModel':
        """Install θ and refresh the factor."""
        P.set_theta(self.reterms, theta)
        self.factor.update_L()
        return self

    def lower_bounds(self) -> NDArray:
        return P.theta_lower_bounds(self.reterms)

    # --- Objective and fitting ---

    def objective(self) -> float:
        """Profiled deviance (ML) or REML criterion at the current θ."""
        return profiled_deviance(self)

    def fit(self, minimizer: Minimizer | None = None) -> 'LinearMixedModel':
        """Minimize the objective over θ.

        Raises:
            ModelStateError: If the model has already been fitted.
        """
        if minimizer is None:
            minimizer = ScipyMinimizer(self.control)

        def objective(theta: NDArray) -> float:
            return self.set_theta(theta).objective()

        self.warnings = fit_model(
            objective, self.optsum, minimizer, self.set_theta, self.control
        )
        return self

    def is_fitted(self) -> bool:
        return self.optsum.feval > 0

    # --- Estimates ---

    def nobs(self) -> int:
        return self.y.shape[0]

    def rank(self) -> int:
        return self.xblock.rank

    def fixef(self) -> NDArray:
        """β over the full-rank pivoted columns."""
        return self.factor.fixef()

    def coef(self) -> NDArray:
        """β in the original column order; dropped columns are -0.0."""
        return _unpivot_coef(self.fixef(), self.xblock.piv, self.xblock.shape[1])

    def ranef(self, uscale: bool = False) -> list[NDArray]:
        """Conditional modes, one (S, nlevs) array per block."""
        return self.factor.ranef(self.fixef(), uscale=uscale)

    def fitted(self) -> NDArray:
        """Xβ + Zb on the original scale."""
        eta = self.xblock.matmul(self.fixef())
        for re, b in zip(self.reterms, self.ranef()):
            re.add_zb(eta, b)
        return eta

    def residuals(self) -> NDArray:
        return self.y - self.fitted()

    def dof(self) -> int:
        """Number of estimated parameters: β, θ and σ."""
        return self.rank() + P.n_theta(self.reterms) + 1

    def dof_residual(self) -> int:
        return self.nobs() - self.rank()

    def varest(self) -> float:
        """Estimated residual variance σ²."""
        dof = self.dof_residual() if self.reml else self.nobs()
        return self.factor.pwrss() / dof

    def sigma(self) -> float:
        return float(np.sqrt(self.varest()))

    def log_likelihood(self) -> float:
        return -0.5 * self.objective()

    def vcov(self) -> NDArray:
        """Covariance of β in the original column order; NaN for dropped columns."""
        V = self.varest() * _inv_crossprod_lower(self.factor.fe_L())
        return _unpivot_vcov(V, self.xblock.piv, self.xblock.shape[1])

    def stderror(self) -> NDArray:
        return np.sqrt(np.diag(self.vcov()))

    def var_corr(self) -> list[VarCompSummary]:
        return var_corr(self.reterms, self.sigma())


def glm_start(
    X: NDArray,
    y: NDArray,
    family: Family,
    wts: NDArray,
    offset: NDArray | None = None,
    tol: float = 1e-8,
    max_iter: int = 25,
) -> NDArray:
    """Fixed-effects starting values from a GLM fit without random effects.

    IRLS with R's convergence criterion
    |dev - dev_old| / (|dev_old| + 0.1) < tol.

    Args:
        X: Full-rank fixed-effects columns (n, r).
        y: Response (n,).
        family: Response family.
        wts: Prior weights (n,).
        offset: Offset added to the linear predictor (n,), or None.
        tol: Convergence tolerance.
        max_iter: Maximum IRLS iterations.

    Returns:
        Coefficients (r,).
    """
    if sparse.issparse(X):
        X = X.toarray()
    n, r = X.shape
    if r == 0:
        return np.zeros(0)
    link = family.link
    offset = np.zeros(n) if offset is None or offset.size == 0 else offset
    mu = family.initialize(y)
    eta = link.link(mu)
    dev_old = family.deviance(y, mu, wts)
    beta = np.zeros(r)
    for iteration in range(1, max_iter + 1):
        mu_eta_val = link.mu_eta(eta)
        z = eta - offset + (y - mu) / mu_eta_val
        w = np.maximum(wts * mu_eta_val ** 2 / family.variance(mu), 1e-30)
        sqrt_w = np.sqrt(w)
        beta = sla.lstsq(X * sqrt_w[:, np.newaxis], z * sqrt_w)[0]
        eta = X @ beta + offset
        mu = link.linkinv(eta)
        dev = family.deviance(y, mu, wts)
        if abs(dev - dev_old) / (abs(dev_old) + 0.1) < tol:
            break
        dev_old = dev
    else:
        logger.debug("GLM start did not converge in %d iterations", max_iter)
    return beta


class GeneralizedLinearMixedModel:
    """Generalized linear mixed model fitted by PIRLS and Laplace/AGQ.

    Args:
        y: Response (n,).
        fixed: Fixed-effects model matrix or a FixedEffectsBlock.
        reterms: Random-effects blocks.
        family: Response family or its name.
        weights: Prior weights (n,), e.g. binomial trial counts, or None.
        offset: Offset added to the linear predictor (n,), or None.
        fixed_names: Column names when ``fixed`` is a matrix.
        control: Engine tuning constants.

    Raises:
        ValidationError: For the Gaussian family with identity link,
            which is a LinearMixedModel.
    """

    def __init__(
        self,
        y: NDArray,
        fixed,
        reterms: Sequence[RandomEffectsBlock],
        family: str | Family = 'binomial',
        weights: NDArray | None = None,
        offset: NDArray | None = None,
        fixed_names: Sequence[str] | None = None,
        control: MixedControl = DEFAULT_CONTROL,
    ):
        family = resolve_family(family)
        if isinstance(family, Gaussian) and isinstance(family.link, IdentityLink):
            raise ValidationError(
                "Use LinearMixedModel for the Gaussian family with identity link"
            )
        if not family.dispersion_is_fixed:
            warnings.warn(
                "Results for families with a dispersion parameter are not "
                "reliable. Interpret the variance components with care.",
                UserWarning,
                stacklevel=2,
            )

        y = np.array(y, dtype=np.float64).ravel()
        n = y.shape[0]
        self.control = control
        self.family = family
        self.lmm = LinearMixedModel(
            y, fixed, reterms, weights=None, reml=False,
            fixed_names=fixed_names, control=control,
        )
        wts = check_weights(weights, n, "weights")
        self.resp = GlmResponse(y, family, wts=wts, offset=offset)

        reterms = self.lmm.reterms
        self.u = [np.zeros((re.vsize, re.nlevs)) for re in reterms]
        self.u0 = [np.zeros_like(u) for u in self.u]
        self.b = [np.zeros_like(u) for u in self.u]
        nlev = reterms[0].nlevs if len(reterms) == 1 else 0
        self.devc = np.zeros(nlev)
        self.devc0 = np.zeros(nlev)
        self.sd = np.zeros(nlev)
        self.mult = np.zeros(nlev)
        self._eta = np.zeros(n)
        self._wrkresp = np.zeros(n)

        self.beta = self._glm_start()
        self.beta0 = self.beta.copy()
        self._theta0 = P.theta_start(reterms)
        self._theta_lb = P.theta_lower_bounds(reterms)
        self.optsum = OptSummary(initial=self._theta0, lowerbd=self._theta_lb)
        self.last_pirls: PIRLSResult | None = None
        self.warnings: list[str] = []
        self.deviance_update()

    def _glm_start(self) -> NDArray:
        return glm_start(
            self.lmm.xblock.x[:, :self.lmm.rank()],
            self.resp.y,
            self.family,
            self.resp.prior_weights,
            self.resp.offset,
        )

    # --- State updates ---

    def update_eta(self) -> NDArray:
        """η = Xβ + Σ Z_j Λ_j u_j; refreshes μ and the working vectors."""
        eta = self._eta
        eta[:] = self.lmm.xblock.matmul(self.beta)
        for re, u, b in zip(self.lmm.reterms, self.u, self.b):
            np.matmul(np.tril(re.lam), u, out=b)
            re.add_zb(eta, b)
        self.resp.update_mu(eta)
        return eta

    def deviance_update(self, nAGQ: int = 1) -> float:
        """Re-linearize at the current β and u and return the deviance.

        The inner model receives the working response and is reweighted
        by the working weights before the deviance is evaluated.
        """
        self.update_eta()
        factor = self.lmm.factor
        factor.yblock.set_column(0, self.resp.wrkresp(self._wrkresp))
        factor.reweight(np.sqrt(self.resp.wrkwt))
        factor.update_L()
        return self.deviance(nAGQ)

    def deviance(self, nAGQ: int = 1) -> float:
        """Laplace (nAGQ = 1) or adaptive Gauss-Hermite deviance."""
        return agq_deviance(self, nAGQ)

    def set_beta(self, beta: NDArray) -> 'GeneralizedLinearMixedModel':
        beta = np.asarray(beta, dtype=np.float64).ravel()
        if beta.shape[0] != self.beta.shape[0]:
            raise DimensionError(
                f"beta has {beta.shape[0]} elements, expected {self.beta.shape[0]}"
            )
        self.beta[:] = beta
        return self

    def get_theta(self) -> NDArray:
        return P.get_theta(self.lmm.reterms)

    def set_theta(self, theta: NDArray) -> 'GeneralizedLinearMixedModel':
        """Install θ in the blocks; the factor is refreshed by the next PIRLS run."""
        P.set_theta(self.lmm.reterms, theta)
        return self

    def set_beta_theta(self, x: NDArray) -> 'GeneralizedLinearMixedModel':
        """Install the concatenation [β, θ]."""
        x = np.asarray(x, dtype=np.float64).ravel()
        p = self.beta.shape[0]
        expected = p + P.n_theta(self.lmm.reterms)
        if x.shape[0] != expected:
            raise DimensionError(
                f"parameter vector has {x.shape[0]} elements, expected {expected}"
            )
        self.set_beta(x[:p])
        return self.set_theta(x[p:])

    def lower_bounds(self) -> NDArray:
        return self._theta_lb.copy()

    def pirls(self, vary_beta: bool = False) -> 'GeneralizedLinearMixedModel':
        """Run PIRLS at the current θ.

        Raises:
            ConvergenceError: If step-halving fails on the first iteration.
        """
        res = pirls(self, vary_beta=vary_beta, control=self.control)
        self.last_pirls = res
        if res.status is PIRLSStatus.DIVERGED:
            raise ConvergenceError(
                f"PIRLS step-halving exceeded {self.control.max_halvings} "
                f"steps on the first iteration",
                iterations=res.n_iter,
                final_change=None,
                reason='diverging',
                threshold=self.control.pirls_tol,
            )
        return self

    # --- Fitting ---

    def fit(
        self,
        fast: bool = False,
        nAGQ: int = 1,
        minimizer: Minimizer | None = None,
    ) -> 'GeneralizedLinearMixedModel':
        """Minimize the Laplace or AGQ deviance.

        Args:
            fast: Optimize θ alone, with β determined by PIRLS. Otherwise
                β and θ are optimized jointly.
            nAGQ: Quadrature nodes; values above 1 require a single
                scalar random-effects term.
            minimizer: Bounded minimizer; defaults to ScipyMinimizer.

        Raises:
            ModelStateError: If the model has already been fitted.
        """
        reterms = self.lmm.reterms
        if nAGQ > 1 and (len(reterms) != 1 or reterms[0].vsize != 1):
            raise ValidationError(
                "nAGQ > 1 requires a single scalar random-effects term"
            )
        if minimizer is None:
            minimizer = ScipyMinimizer(self.control)
        optsum = self.optsum
        if optsum.feval == 0:
            if fast:
                optsum.reset(self._theta0, self._theta_lb)
            else:
                optsum.reset(
                    np.concatenate([self.beta, self._theta0]),
                    np.concatenate([np.full(self.beta.shape[0], -np.inf), self._theta_lb]),
                )
        set_par = self.set_theta if fast else self.set_beta_theta
        first_eval = True

        def objective(x: NDArray) -> float:
            nonlocal first_eval
            set_par(x)
            try:
                self.pirls(vary_beta=fast)
            except NotPositiveDefiniteError:
                # A failure at the starting values has nothing to fall back on.
                if first_eval:
                    raise
                logger.debug("non positive definite factor; objective set to inf")
                return np.inf
            finally:
                first_eval = False
            return self.deviance(nAGQ)

        def install(x: NDArray) -> None:
            set_par(x)
            self.pirls(vary_beta=fast)

        self.warnings = fit_model(objective, optsum, minimizer, install, self.control)
        optsum.nAGQ = nAGQ
        optsum.fast = fast
        return self

    def refit(
        self,
        y: NDArray | None = None,
        fast: bool = False,
        nAGQ: int = 1,
        minimizer: Minimizer | None = None,
    ) -> 'GeneralizedLinearMixedModel':
        """Forget the previous fit and fit again, optionally to a new response.

        Raises:
            DimensionError: If ``y`` has the wrong length.
        """
        if y is not None:
            y = np.asarray(y, dtype=np.float64).ravel()
            if y.shape[0] != self.resp.y.shape[0]:
                raise DimensionError(
                    f"y has {y.shape[0]} elements, expected {self.resp.y.shape[0]}"
                )
            self.resp.y[:] = y
        self.beta[:] = self._glm_start()
        self.set_theta(self._theta0)
        self.optsum.reset(self._theta0, self._theta_lb)
        for u in self.u:
            u.fill(0.0)
        self.deviance_update()
        return self.fit(fast=fast, nAGQ=nAGQ, minimizer=minimizer)

    def is_fitted(self) -> bool:
        return self.optsum.feval > 0

    # --- Estimates ---

    def nobs(self) -> int:
        return self.resp.y.shape[0]

    def fixef(self) -> NDArray:
        return self.beta.copy()

    def coef(self) -> NDArray:
        """β in the original column order; dropped columns are -0.0."""
        x = self.lmm.xblock
        return _unpivot_coef(self.beta, x.piv, x.shape[1])

    def ranef(self, uscale: bool = False) -> list[NDArray]:
        """Conditional modes, one (S, nlevs) array per block."""
        return [a.copy() for a in (self.u if uscale else self.b)]

    def dof(self) -> int:
        return (
            self.beta.shape[0] + P.n_theta(self.lmm.reterms)
            + int(self.resp.dispersion_parameter)
        )

    def dof_residual(self) -> int:
        return self.nobs() - self.dof()

    def dispersion(self, sqr: bool = False) -> float:
        """Estimated dispersion; 1 for families with a fixed dispersion."""
        if not self.resp.dispersion_parameter:
            return 1.0
        r = self.resp
        s = float(np.sum(r.wrkwt * r.wrkresid ** 2)) / self.dof_residual()
        return s if sqr else float(np.sqrt(s))

    def varest(self) -> float:
        """Residual variance; NaN for families without a dispersion parameter."""
        return self.dispersion(sqr=True) if self.resp.dispersion_parameter else np.nan

    def sdest(self) -> float:
        return float(np.sqrt(self.varest()))

    def log_likelihood(self) -> float:
        """Laplace-approximated marginal log-likelihood."""
        r = self.resp
        phi = r.deviance() / float(np.sum(r.prior_weights))
        penalty = sum(float(np.sum(u ** 2)) for u in self.u)
        return r.log_likelihood(phi) - (penalty + self.lmm.factor.logdet(False)) / 2.0

    def vcov(self) -> NDArray:
        """Covariance of β in the original column order; NaN for dropped columns."""
        x = self.lmm.xblock
        V = self.dispersion(sqr=True) * _inv_crossprod_lower(self.lmm.factor.fe_L())
        return _unpivot_vcov(V, x.piv, x.shape[1])

    def stderror(self) -> NDArray:
        return np.sqrt(np.diag(self.vcov()))

    def var_corr(self) -> list[VarCompSummary]:
        scale = self.sdest() if self.resp.dispersion_parameter else 1.0
        return var_corr(self.lmm.reterms, scale)
