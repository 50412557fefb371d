"""
Mixed models: Linear Mixed Models (LMM) and Generalized Linear Mixed Models (GLMM).

Public API:
    lmm()                        — fit a linear mixed model (REML or ML)
    glmm()                       — fit a generalized linear mixed model (Laplace or AGQ)
    LMMSolution                  — result wrapper for LMM
    GLMMSolution                 — result wrapper for GLMM
    LinearMixedModel             — stateful LMM for direct θ evaluation
    GeneralizedLinearMixedModel  — stateful GLMM with PIRLS
    FixedEffectsBlock            — fixed-effects / response block
    RandomEffectsBlock           — random-effects block for one grouping factor
    MixedControl                 — engine tuning constants
"""

from pymixed.mixed.solvers import lmm, glmm
from pymixed.mixed.solution import LMMSolution, GLMMSolution
from pymixed.mixed._models import LinearMixedModel, GeneralizedLinearMixedModel
from pymixed.mixed._femat import FixedEffectsBlock
from pymixed.mixed._random_effects import (
    RandomEffectsBlock, amalgamate, isnested, parse_random_effects,
)
from pymixed.mixed._control import MixedControl, DEFAULT_CONTROL
from pymixed.mixed._optimizer import (
    Minimizer, OptimizerResult, OptSummary, ReturnCode, ScipyMinimizer,
)
from pymixed.mixed._pirls import PIRLSResult, PIRLSStatus

__all__ = [
    "lmm",
    "glmm",
    "LMMSolution",
    "GLMMSolution",
    "LinearMixedModel",
    "GeneralizedLinearMixedModel",
    "FixedEffectsBlock",
    "RandomEffectsBlock",
    "amalgamate",
    "isnested",
    "parse_random_effects",
    "MixedControl",
    "DEFAULT_CONTROL",
    "Minimizer",
    "OptimizerResult",
    "OptSummary",
    "ReturnCode",
    "ScipyMinimizer",
    "PIRLSResult",
    "PIRLSStatus",
]
