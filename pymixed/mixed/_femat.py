"""
Fixed-effects design block.

FixedEffectsBlock wraps the fixed-effects model matrix (and, with one
column, the response) together with the rank/pivot metadata produced by
an order-preserving rank-revealing QR. Columns found to be linearly
dependent on their predecessors are moved to the right and excluded from
every cross-product; their coefficients are reported as dropped.
"""

from __future__ import annotations

import logging
import warnings
from typing import Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from pymixed.core.exceptions import DimensionError
from pymixed.core.compute.linalg import dependent_columns_qr

logger = logging.getLogger(__name__)


class FixedEffectsBlock:
    """Fixed-effects (or response) block with a weighted copy.

    Attributes:
        x: Model matrix with columns in pivoted order (n, p). Dense
            ndarray or a ``scipy.sparse`` CSC matrix.
        piv: Column permutation applied to the original matrix.
        rank: Numerical rank; the first ``rank`` pivoted columns are
            linearly independent.
        cnames: Column names in pivoted order.
    """

    def __init__(
        self,
        x,
        cnames: Sequence[str] | None = None,
        rank_tol: float | None = None,
    ):
        if sparse.issparse(x):
            x = sparse.csc_matrix(x, dtype=np.float64)
        else:
            x = np.asarray(x, dtype=np.float64)
            if x.ndim == 1:
                x = x.reshape(-1, 1)
        if x.ndim != 2:
            raise DimensionError(f"x must be 2-D, got {x.ndim}-D")
        n, p = x.shape

        if cnames is None:
            cnames = [f'x{j}' for j in range(p)]
        cnames = list(cnames)
        if len(cnames) != p:
            raise DimensionError(
                f"cnames has {len(cnames)} entries, expected {p}"
            )

        if p == 0:
            piv = np.zeros(0, dtype=np.intp)
            rank = 0
        elif sparse.issparse(x):
            # Rank detection for sparse input is not implemented.
            logger.debug(
                "sparse fixed-effects block (%d x %d) assumed full rank", n, p
            )
            piv = np.arange(p, dtype=np.intp)
            rank = p
        else:
            qr = dependent_columns_qr(x, tol=rank_tol)
            piv = qr.pivot
            rank = qr.rank
            if rank < p:
                warnings.warn(
                    f"Fixed-effects matrix is rank deficient: rank {rank} "
                    f"< {p} columns. Dropped columns: "
                    f"{[cnames[j] for j in piv[rank:]]}",
                    UserWarning,
                    stacklevel=2,
                )
            if not np.array_equal(piv, np.arange(p)):
                x = np.asfortranarray(x[:, piv])

        self.x = x
        self.piv = piv
        self.rank = int(rank)
        self.cnames = [cnames[j] for j in piv]
        self._wtx = None
        self._sqrtwts = np.zeros(0)
        self._is_weighted = False

    @property
    def shape(self) -> tuple[int, int]:
        return self.x.shape

    @property
    def is_weighted(self) -> bool:
        """Whether ``wtx`` is a separate weighted buffer."""
        return self._is_weighted

    @property
    def wtx(self):
        """Weighted model matrix; ``x`` itself until weights are applied."""
        return self._wtx if self._is_weighted else self.x

    def is_full_rank(self) -> bool:
        return self.rank == self.x.shape[1]

    def full_rank_wtx(self):
        """Weighted columns that take part in the fit, (n, rank)."""
        return self.wtx[:, :self.rank]

    def reweight(self, sqrtwts: NDArray) -> 'FixedEffectsBlock':
        """Overwrite the weighted copy with diag(sqrtwts) @ x.

        The weighted buffer is allocated on the first call with non-empty
        weights. Empty weights leave the block untouched.

        Raises:
            DimensionError: If the weights do not match the row count.
        """
        sqrtwts = np.asarray(sqrtwts, dtype=np.float64)
        if sqrtwts.size == 0:
            return self
        n = self.x.shape[0]
        if sqrtwts.shape[0] != n:
            raise DimensionError(
                f"weights have {sqrtwts.shape[0]} elements, expected {n}"
            )
        if not self._is_weighted:
            self._wtx = self.x.copy()
            self._is_weighted = True
        if sparse.issparse(self.x):
            np.multiply(
                self.x.data, sqrtwts[self.x.indices], out=self._wtx.data
            )
        else:
            np.multiply(self.x, sqrtwts[:, np.newaxis], out=self._wtx)
        self._sqrtwts = sqrtwts.copy()
        return self

    def set_column(self, j: int, values: NDArray) -> None:
        """Overwrite pivoted column j of ``x`` and of the weighted copy."""
        if sparse.issparse(self.x):
            raise TypeError("set_column requires a dense block")
        self.x[:, j] = values
        if self._is_weighted:
            np.multiply(values, self._sqrtwts, out=self._wtx[:, j])

    def crossprod(self, other: 'FixedEffectsBlock') -> NDArray:
        """Dense product other.wtx' @ self.wtx over full-rank columns."""
        if other.x.shape[0] != self.x.shape[0]:
            raise DimensionError(
                f"blocks have {other.x.shape[0]} and {self.x.shape[0]} rows"
            )
        prod = other.full_rank_wtx().T @ self.full_rank_wtx()
        if sparse.issparse(prod):
            prod = prod.toarray()
        return np.asarray(prod, dtype=np.float64)

    def matmul(self, beta: NDArray) -> NDArray:
        """Unweighted X @ beta over the full-rank columns."""
        beta = np.asarray(beta, dtype=np.float64)
        if beta.shape[0] != self.rank:
            raise DimensionError(
                f"beta has {beta.shape[0]} elements, expected rank {self.rank}"
            )
        return np.asarray(self.x[:, :self.rank] @ beta).ravel()

    def __repr__(self) -> str:
        n, p = self.x.shape
        return f"FixedEffectsBlock(n={n}, p={p}, rank={self.rank})"
