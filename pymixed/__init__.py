"""
PyMixed: linear and generalized linear mixed-effects models for Python.

Fits LMMs by minimizing the profiled ML/REML deviance and GLMMs by the
Laplace approximation or adaptive Gauss-Hermite quadrature, using a
blocked Cholesky factor that exploits the structure of the random
effects.

Submodules:
    mixed: Model classes, fit functions and solution wrappers
    families: Response families and link functions
    core: Result envelope, exceptions, validation and numerical helpers
"""

__version__ = "0.1.0"
__author__ = "Hai-Shuo"
__email__ = "contact@sgcx.org"

from pymixed import families
from pymixed import mixed

__all__ = [
    "__version__",
    "families",
    "mixed",
]
