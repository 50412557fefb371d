"""
Generic result container for pymixed computations.

The Result class provides a standardized envelope that the LMM and GLMM
solution wrappers use. This enables shared handling of timing, convergence
metadata and non-fatal warnings while each model type defines its own
parameter payload.

Design decisions:
    - Generic over parameter payload P for type safety
    - info dict for flexible metadata (converged, return code, evaluations)
    - timing is optional (don't burden unit tests)
    - Immutable (frozen=True) for reproducibility
"""

from dataclasses import dataclass, field
from typing import TypeVar, Generic, Any

P = TypeVar('P')  # Parameter payload type


@dataclass(frozen=True)
class Result(Generic[P]):
    """
    Immutable result envelope for a fitted mixed model.

    Type Parameters:
        P: The model-specific parameter payload type

    Attributes:
        params: Model-specific parameters (coefficients, θ, deviance, ...)
        info: Structured metadata (method, return code, evaluations)
        timing: Execution timing breakdown, or None if not measured
        backend_name: Identifier of the engine that produced this result
        warnings: Non-fatal issues encountered during computation

    Examples:
        >>> Result(
        ...     params=GLMMParams(...),
        ...     info={'method': 'Laplace', 'returnvalue': 'SUCCESS', 'feval': 41},
        ...     timing={'total_seconds': 0.5, 'optimization': 0.45},
        ...     backend_name='cpu_glmm'
        ... )
    """
    params: P
    info: dict[str, Any]
    timing: dict[str, float] | None
    backend_name: str
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def has_warning(self, substring: str) -> bool:
        """Check if any warning contains the given substring."""
        return any(substring in w for w in self.warnings)
