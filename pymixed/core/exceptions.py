"""
Exception hierarchy for pymixed.

All exceptions inherit from PyMixedError to allow catching any
library-specific error. Domain-specific exceptions should inherit from
the appropriate base class here.

Design principles:
    - Exceptions carry diagnostic information as attributes
    - Error messages are actionable with actual vs expected values
    - Never catch and re-raise with less information
"""


class PyMixedError(Exception):
    """Base exception for all pymixed errors."""
    pass


class ValidationError(PyMixedError):
    """
    Input validation failed.

    Raised when user-provided inputs fail validation checks.
    """
    pass


class DimensionError(ValidationError):
    """
    Array dimensions are incorrect or inconsistent.

    Raised when array shapes don't match expected dimensions or
    when cooperating blocks disagree on row or column counts.
    """
    pass


class ModelStateError(PyMixedError):
    """
    Operation is not valid in the model's current state.

    Raised, for example, when ``fit`` is called on a model that has
    already been fitted.
    """
    pass


class NumericalError(PyMixedError):
    """
    Numerical computation failed.

    Base class for errors arising from numerical issues during computation.
    """
    pass


class NotPositiveDefiniteError(NumericalError):
    """
    Matrix is not positive definite.

    Raised when a Cholesky factorization of a diagonal block of the
    blocked factor fails.

    Attributes:
        matrix_name: Name/description of the problematic matrix
        min_eigenvalue: Minimum eigenvalue, if computed
    """

    def __init__(
        self,
        message: str,
        matrix_name: str | None = None,
        min_eigenvalue: float | None = None
    ):
        super().__init__(message)
        self.matrix_name = matrix_name
        self.min_eigenvalue = min_eigenvalue


class PatternError(NumericalError):
    """
    A sparse cross-product update disagrees with its declared pattern.

    The nonzero pattern of every cross-product block is fixed when the
    model is constructed. An update that would place a value outside
    that pattern means the blocks were built inconsistently and is
    never recoverable.

    Attributes:
        block: (row, column) position of the offending block, if known
        n_unexpected: Number of entries outside the declared pattern
    """

    def __init__(
        self,
        message: str,
        block: tuple[int, int] | None = None,
        n_unexpected: int | None = None,
    ):
        super().__init__(message)
        self.block = block
        self.n_unexpected = n_unexpected


class ConvergenceError(PyMixedError):
    """
    Iterative algorithm failed to converge.

    Raised when an iterative method (PIRLS, IRLS) cannot produce any
    acceptable state.

    Attributes:
        iterations: Number of iterations completed
        final_change: Final parameter or objective change
        reason: Why convergence failed (e.g., 'max_iterations', 'diverging')
        threshold: The convergence threshold that was not met
    """

    def __init__(
        self,
        message: str,
        iterations: int,
        final_change: float | None = None,
        reason: str | None = None,
        threshold: float | None = None
    ):
        super().__init__(message)
        self.iterations = iterations
        self.final_change = final_change
        self.reason = reason
        self.threshold = threshold
