"""
Solver dispatch for mixed models.

Public API:
    lmm()  — fit a linear mixed model (REML or ML)
    glmm() — fit a generalized linear mixed model (Laplace or AGQ)
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import stats

from pymixed.core.result import Result
from pymixed.core.compute.timing import Timer
from pymixed.core.exceptions import DimensionError
from pymixed.families import Family, resolve_family
from pymixed.mixed._common import LMMParams, GLMMParams
from pymixed.mixed._control import MixedControl, DEFAULT_CONTROL
from pymixed.mixed._models import LinearMixedModel, GeneralizedLinearMixedModel
from pymixed.mixed._optimizer import Minimizer, ReturnCode, ScipyMinimizer
from pymixed.mixed._random_effects import RandomEffectsBlock, parse_random_effects
from pymixed.mixed.design import MixedDesign
from pymixed.mixed.solution import LMMSolution, GLMMSolution

_CONVERGED_CODES = (ReturnCode.SUCCESS, ReturnCode.ROUNDOFF_LIMITED)


def lmm(
    y: ArrayLike,
    X: ArrayLike,
    groups: dict[str, ArrayLike],
    *,
    random_effects: dict[str, list] | None = None,
    random_data: dict[str, ArrayLike] | None = None,
    reml: bool = True,
    weights: ArrayLike | None = None,
    zerocorr: bool | Sequence[str] = False,
    fixed_names: Sequence[str] | None = None,
    minimizer: Minimizer | None = None,
    control: MixedControl = DEFAULT_CONTROL,
) -> LMMSolution:
    """Fit a linear mixed model.

    Estimates fixed effects β, random effects variance components,
    and conditional modes (BLUPs) of random effects by minimizing the
    profiled REML/ML deviance over θ (Bates et al., 2015).

    Args:
        y: Response vector (n,).
        X: Fixed effects design matrix (n, p), dense or scipy.sparse.
            Should include an intercept column if desired.
        groups: Dict mapping grouping factor names to group label arrays.
            Example: {'subject': subject_ids}.
        random_effects: Optional dict mapping group names to lists of
            random effect terms. Default: random intercept per group.
            Example: {'subject': ['1', 'time']} for (1 + time | subject).
        random_data: Optional dict mapping variable names to data arrays
            for random slope variables.
            Example: {'time': time_array}.
        reml: If True (default), use REML estimation. If False, use ML.
            Use ML (reml=False) for likelihood ratio tests between models
            with different fixed effects.
        weights: Optional prior weights (n,).
        zerocorr: True to make every random-effects block uncorrelated,
            or the names of the grouping factors to constrain.
        fixed_names: Optional names of the columns of X.
        minimizer: Bounded minimizer. Default: ScipyMinimizer (Powell).
        control: Engine tuning constants.

    Returns:
        LMMSolution with fixed effects, random effects, variance components,
        model fit statistics, and lme4-style summary().

    Examples:
        # Random intercept model
        >>> result = lmm(y, X, groups={'subject': subject_ids})

        # Random intercept + slope
        >>> result = lmm(y, X, groups={'subject': subject_ids},
        ...              random_effects={'subject': ['1', 'time']},
        ...              random_data={'time': time_array})

        # Crossed random effects
        >>> result = lmm(y, X, groups={'subject': subj, 'item': item})
    """
    timer = Timer()
    timer.start()

    design = MixedDesign.validate(
        y, X, groups, random_effects, random_data, weights,
    )
    if minimizer is None:
        minimizer = ScipyMinimizer(control)

    with timer.section('setup'):
        reterms = _build_reterms(design, zerocorr)
        names = _coef_names(fixed_names, design.p)
        model = LinearMixedModel(
            design.y, design.X, reterms,
            weights=design.weights if design.weights.size else None,
            reml=reml, fixed_names=names, control=control,
        )

    with timer.section('optimization'):
        model.fit(minimizer)

    optsum = model.optsum
    converged = optsum.returnvalue in _CONVERGED_CODES

    with timer.section('final_solve'):
        coef = model.coef()
        se = model.stderror()
        fitted = model.fitted()

    with timer.section('summaries'):
        z_vals, p_vals = _wald(coef, se)
        ll = model.log_likelihood()
        dof = model.dof()
        aic, bic = _information_criteria(ll, dof, design.n)
        var_comps = tuple(model.var_corr())
        random_effs = _ranef_dict(model.reterms, model.ranef())
        sigma_sq = model.varest()

    timer.stop()

    params = LMMParams(
        coefficients=coef,
        coefficient_names=tuple(names),
        se=se,
        t_values=z_vals,
        p_values=p_vals,
        rank=model.rank(),
        var_components=var_comps,
        residual_variance=float(sigma_sq),
        residual_std=float(np.sqrt(sigma_sq)),
        objective=float(optsum.fmin),
        log_likelihood=float(ll),
        reml=reml,
        aic=aic,
        bic=bic,
        dof=dof,
        n_obs=design.n,
        n_groups={re.name: re.nlevs for re in model.reterms},
        converged=converged,
        n_feval=optsum.feval,
        return_code=optsum.returnvalue.name,
        random_effects=random_effs,
        fitted_values=fitted,
        residuals=design.y - fitted,
        theta=model.get_theta(),
    )

    result = Result(
        params=params,
        info={
            'method': 'REML' if reml else 'ML',
            'optimizer': getattr(minimizer, 'name', type(minimizer).__name__),
            'return_code': optsum.returnvalue.name,
            'feval': optsum.feval,
            'finitial': optsum.finitial,
            'nAGQ': 1,
            'converged': converged,
        },
        timing=timer.result(),
        backend_name='cpu_lmm',
        warnings=tuple(model.warnings),
    )

    return LMMSolution(_result=result)


def glmm(
    y: ArrayLike,
    X: ArrayLike,
    groups: dict[str, ArrayLike],
    *,
    family: 'str | Family' = 'binomial',
    random_effects: dict[str, list] | None = None,
    random_data: dict[str, ArrayLike] | None = None,
    weights: ArrayLike | None = None,
    offset: ArrayLike | None = None,
    nAGQ: int = 1,
    fast: bool = False,
    zerocorr: bool | Sequence[str] = False,
    fixed_names: Sequence[str] | None = None,
    minimizer: Minimizer | None = None,
    control: MixedControl = DEFAULT_CONTROL,
) -> GLMMSolution:
    """Fit a generalized linear mixed model.

    Uses the Laplace approximation (nAGQ = 1) or adaptive Gauss-Hermite
    quadrature (nAGQ > 1) to the marginal likelihood, with penalized
    IRLS (PIRLS) for the conditional modes of the random effects.

    Args:
        y: Response vector (n,). For binomial responses with ``weights``,
            the observed proportion of successes.
        X: Fixed effects design matrix (n, p).
        groups: Dict mapping grouping factor names to group label arrays.
        family: GLM family specification. String ('binomial', 'bernoulli',
            'poisson') or a Family instance from pymixed.families.
        random_effects: Optional random effects specification.
        random_data: Optional data for random slope variables.
        weights: Optional prior weights, e.g. binomial trial counts.
        offset: Optional offset added to the linear predictor.
        nAGQ: Number of adaptive Gauss-Hermite nodes. Values above 1
            require a single scalar random effects term.
        fast: If True, optimize θ alone with β updated inside PIRLS.
            Otherwise β and θ are optimized jointly.
        zerocorr: True to make every random-effects block uncorrelated,
            or the names of the grouping factors to constrain.
        fixed_names: Optional names of the columns of X.
        minimizer: Bounded minimizer. Default: ScipyMinimizer (Powell).
        control: Engine tuning constants.

    Returns:
        GLMMSolution with fixed effects, random effects, and model fit.
    """
    timer = Timer()
    timer.start()

    design = MixedDesign.validate(
        y, X, groups, random_effects, random_data, weights,
    )
    if minimizer is None:
        minimizer = ScipyMinimizer(control)

    with timer.section('setup'):
        reterms = _build_reterms(design, zerocorr)
        names = _coef_names(fixed_names, design.p)
        family_obj = resolve_family(family)
        model = GeneralizedLinearMixedModel(
            design.y, design.X, reterms,
            family=family_obj,
            weights=design.weights if design.weights.size else None,
            offset=offset,
            fixed_names=names,
            control=control,
        )
        setup_warnings = []
        if not family_obj.dispersion_is_fixed:
            setup_warnings.append(
                f"Family {family_obj.name} has a dispersion parameter; "
                f"variance components may be unreliable"
            )

    with timer.section('optimization'):
        model.fit(fast=fast, nAGQ=nAGQ, minimizer=minimizer)

    optsum = model.optsum
    converged = optsum.returnvalue in _CONVERGED_CODES
    pirls_res = model.last_pirls
    pirls_status = pirls_res.status.name if pirls_res is not None else 'NOT_RUN'

    with timer.section('final_solve'):
        coef = model.coef()
        se = model.stderror()
        eta = model.resp.eta.copy()
        mu = model.resp.mu.copy()

    with timer.section('summaries'):
        z_vals, p_vals = _wald(coef, se)
        ll = model.log_likelihood()
        dof = model.dof()
        aic, bic = _information_criteria(ll, dof, design.n)
        var_comps = tuple(model.var_corr())
        random_effs = _ranef_dict(model.lmm.reterms, model.ranef())

    timer.stop()

    params = GLMMParams(
        coefficients=coef,
        coefficient_names=tuple(names),
        se=se,
        z_values=z_vals,
        p_values=p_vals,
        rank=model.lmm.rank(),
        var_components=var_comps,
        dispersion=model.dispersion(),
        log_likelihood=float(ll),
        deviance=float(optsum.fmin),
        aic=aic,
        bic=bic,
        dof=dof,
        n_obs=design.n,
        n_groups={re.name: re.nlevs for re in model.lmm.reterms},
        nAGQ=nAGQ,
        fast=fast,
        family_name=model.family.name,
        link_name=model.family.link.name,
        converged=converged,
        n_feval=optsum.feval,
        return_code=optsum.returnvalue.name,
        pirls_status=pirls_status,
        random_effects=random_effs,
        fitted_values=mu,
        linear_predictor=eta,
        residuals=design.y - mu,
        theta=model.get_theta(),
        beta_theta=optsum.final.copy(),
    )

    warn_list = setup_warnings + list(model.warnings)
    if pirls_res is not None and not pirls_res.converged:
        warn_list.append(
            f"PIRLS stopped with status {pirls_status} after "
            f"{pirls_res.n_iter} iterations"
        )

    result = Result(
        params=params,
        info={
            'method': 'Laplace' if nAGQ == 1 else f'AGQ({nAGQ})',
            'family': model.family.name,
            'link': model.family.link.name,
            'optimizer': getattr(minimizer, 'name', type(minimizer).__name__),
            'return_code': optsum.returnvalue.name,
            'feval': optsum.feval,
            'finitial': optsum.finitial,
            'nAGQ': nAGQ,
            'fast': fast,
            'converged': converged,
            'pirls_status': pirls_status,
            'pirls_converged': pirls_res is not None and pirls_res.converged,
        },
        timing=timer.result(),
        backend_name='cpu_glmm',
        warnings=tuple(warn_list),
    )

    return GLMMSolution(_result=result)


# =====================================================================
# Helpers
# =====================================================================

def _build_reterms(
    design: MixedDesign,
    zerocorr: bool | Sequence[str],
) -> list[RandomEffectsBlock]:
    """Random-effects blocks for a design, with optional diagonal λ."""
    reterms = parse_random_effects(
        design.groups, design.random_effects, design.random_data, design.n
    )
    if zerocorr is True:
        targets = {re.name for re in reterms}
    elif zerocorr is False or zerocorr is None:
        targets = set()
    else:
        targets = set(zerocorr)
    for re in reterms:
        if re.name in targets:
            re.zerocorr()
    return reterms


def _wald(coef: NDArray, se: NDArray) -> tuple[NDArray, NDArray]:
    """Wald statistics and two-sided normal p-values; NaN where se is NaN."""
    with np.errstate(divide='ignore', invalid='ignore'):
        z = coef / se
    return z, 2.0 * stats.norm.sf(np.abs(z))


def _information_criteria(ll: float, dof: int, n: int) -> tuple[float, float]:
    aic = -2.0 * ll + 2.0 * dof
    bic = -2.0 * ll + np.log(n) * dof
    return float(aic), float(bic)


def _ranef_dict(
    reterms: Sequence[RandomEffectsBlock],
    ranef: Sequence[NDArray],
) -> dict[str, NDArray]:
    """Conditional modes per grouping factor as (nlevs, S) arrays."""
    return {re.name: np.asarray(b).T.copy() for re, b in zip(reterms, ranef)}


def _coef_names(fixed_names: Sequence[str] | None, p: int) -> list[str]:
    """Generate default coefficient names."""
    if fixed_names is not None:
        names = list(fixed_names)
        if len(names) != p:
            raise DimensionError(f"fixed_names has {len(names)} entries, expected {p}")
        return names
    if p == 0:
        return []
    names = ['(Intercept)']
    for i in range(1, p):
        names.append(f'X{i}')
    return names
