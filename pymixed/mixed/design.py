"""
Design validation for mixed models.

MixedDesign validates and organizes the inputs for LMM/GLMM: the
response y, fixed effects matrix X, grouping variables, random
effect specifications and prior weights.
"""

from __future__ import annotations

from dataclasses import dataclass
import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from pymixed.core.exceptions import DimensionError, ValidationError
from pymixed.core.validation import check_finite, check_weights


@dataclass(frozen=True)
class MixedDesign:
    """Validated design for a mixed model.

    Attributes:
        y: Response vector (n,).
        X: Fixed effects design matrix (n, p), dense or scipy.sparse.
        groups: Dict of grouping factor name → group labels (n,).
        random_effects: Dict of group name → list of term names, or of
            lists of term names for independent blocks.
        random_data: Dict of variable name → data array (n,).
        weights: Prior weights (n,), or empty for unit weights.
        n: Number of observations.
        p: Number of fixed effect columns.
    """
    y: NDArray
    X: NDArray
    groups: dict[str, NDArray]
    random_effects: dict[str, list] | None
    random_data: dict[str, NDArray] | None
    weights: NDArray
    n: int
    p: int

    @staticmethod
    def validate(
        y: NDArray,
        X: NDArray,
        groups: dict[str, NDArray],
        random_effects: dict[str, list] | None = None,
        random_data: dict[str, NDArray] | None = None,
        weights: NDArray | None = None,
    ) -> 'MixedDesign':
        """Validate inputs and create a MixedDesign.

        Args:
            y: Response vector.
            X: Fixed effects design matrix. If 1-D, treated as single predictor
               (intercept should be included by the user).
            groups: Dict mapping grouping factor names to group label arrays.
            random_effects: Optional dict mapping group names to term lists.
            random_data: Optional dict mapping variable names to data arrays.
            weights: Optional prior weights.

        Returns:
            Validated MixedDesign.

        Raises:
            DimensionError: On length mismatches.
            ValidationError: On other invalid inputs.
        """
        y = np.asarray(y, dtype=np.float64).ravel()
        n = len(y)

        if n < 3:
            raise ValidationError(f"Need at least 3 observations, got {n}")

        if sparse.issparse(X):
            X = sparse.csc_matrix(X, dtype=np.float64)
            check_finite(X.data, 'X')
        else:
            X = np.asarray(X, dtype=np.float64)
            if X.ndim == 1:
                X = X.reshape(-1, 1)
            check_finite(X, 'X')
        if X.shape[0] != n:
            raise DimensionError(
                f"X has {X.shape[0]} rows, expected {n} (matching y)"
            )
        p = X.shape[1]

        if not groups:
            raise ValidationError("At least one grouping factor required")

        groups_validated = {}
        for name, g in groups.items():
            g = np.asarray(g)
            if g.shape[0] != n:
                raise DimensionError(
                    f"Group '{name}' has {g.shape[0]} elements, expected {n}"
                )
            unique = np.unique(g)
            if len(unique) < 2:
                raise ValidationError(
                    f"Group '{name}' has only {len(unique)} level(s), "
                    f"need at least 2"
                )
            groups_validated[name] = g

        if random_effects is not None:
            for name in random_effects:
                if name not in groups:
                    raise ValidationError(
                        f"Random effect group '{name}' not found in groups dict. "
                        f"Available: {list(groups.keys())}"
                    )

        if random_data is not None:
            for name, data in random_data.items():
                data = np.asarray(data, dtype=np.float64)
                if data.shape[0] != n:
                    raise DimensionError(
                        f"Random data '{name}' has {data.shape[0]} elements, "
                        f"expected {n}"
                    )
                check_finite(data, f"random_data['{name}']")

        check_finite(y, 'y')
        w = check_weights(weights, n, 'weights')

        return MixedDesign(
            y=y,
            X=X,
            groups=groups_validated,
            random_effects=random_effects,
            random_data=random_data,
            weights=w,
            n=n,
            p=p,
        )
