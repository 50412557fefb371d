"""
Tuning constants for the mixed-model engine.

All numerical thresholds used by PIRLS, the cross-product kernels and the
fit driver are collected in one frozen dataclass so that a caller can
override them for a single fit via ``control=``.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class MixedControl:
    """Engine tuning constants.

    Attributes:
        pirls_max_iter: Maximum PIRLS outer iterations. The last state is
            accepted without error when the limit is reached.
        pirls_tol: Absolute deviance change below which PIRLS has converged.
        max_halvings: Step-halvings allowed per PIRLS iteration.
        pirls_obj_inflation: Factor applied to the starting PIRLS objective
            so that a first step which ties the start is accepted.
        dense_fill_threshold: Fraction of nonzero entries above which a
            random-by-random cross-product is stored dense.
        snap_epsilon: Parameters in (0, snap_epsilon) with a zero lower
            bound are candidates for snapping to the boundary.
        snap_tolerance: Objective increase allowed when accepting a
            snapped solution.
        rank_tol: Absolute tolerance for fixed-effects rank detection.
            None uses max(n, p) * eps * max|diag R|.
        max_feval: Objective evaluation budget for the minimizer,
            -1 for the minimizer's default.
        ftol_rel: Relative objective tolerance passed to the minimizer.
        xtol_abs: Absolute parameter tolerance passed to the minimizer.
    """
    pirls_max_iter: int = 10
    pirls_tol: float = 1e-5
    max_halvings: int = 10
    pirls_obj_inflation: float = 1.0001
    dense_fill_threshold: float = 0.25
    snap_epsilon: float = 1e-3
    snap_tolerance: float = 1e-5
    rank_tol: float | None = None
    max_feval: int = -1
    ftol_rel: float = 1e-12
    xtol_abs: float = 1e-10

    def __post_init__(self):
        if self.pirls_max_iter < 1:
            raise ValueError(
                f"pirls_max_iter must be >= 1, got {self.pirls_max_iter}"
            )
        if self.max_halvings < 0:
            raise ValueError(
                f"max_halvings must be >= 0, got {self.max_halvings}"
            )
        if not 0.0 <= self.dense_fill_threshold <= 1.0:
            raise ValueError(
                f"dense_fill_threshold must be in [0, 1], "
                f"got {self.dense_fill_threshold}"
            )


DEFAULT_CONTROL = MixedControl()
