"""
Blocked penalized least squares factor for mixed models.

For fixed θ (and hence fixed Λ_θ), the penalized least squares problem

    minimize ‖y - Xβ - ZΛu‖² + ‖u‖²

is solved through the lower Cholesky factor L of the blocked matrix

    [Λ'Z'ZΛ + I   .     .  ]
    [X'ZΛ         X'X   .  ]
    [y'ZΛ         y'X   y'y]

where Z is partitioned by grouping factor. The terms are ordered
``reterms + [X, y]``; entry (i, j), i >= j, of the blocked cross-product
A and of L is stored in the representation chosen by ``_kernels``.
The last diagonal entry of L is sqrt(pwrss), the penalized weighted
residual sum of squares.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), 1-48. Section 3.
"""

from __future__ import annotations

import logging
from typing import Sequence
import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla

from pymixed.core.exceptions import DimensionError
from pymixed.mixed._control import MixedControl, DEFAULT_CONTROL
from pymixed.mixed._femat import FixedEffectsBlock
from pymixed.mixed._random_effects import RandomEffectsBlock, isnested
from pymixed.mixed import _kernels as K

logger = logging.getLogger(__name__)


class BlockedFactor:
    """Blocked cross-product matrix A and its Cholesky factor L.

    Attributes:
        reterms: Random-effects blocks, in factorization order.
        allterms: ``reterms + [xblock, yblock]``.
        A: Lower-triangular list of lists, ``A[i][j] = allterms[i]' allterms[j]``.
        L: Lower-triangular list of lists holding the factor.
    """

    def __init__(
        self,
        reterms: Sequence[RandomEffectsBlock],
        xblock: FixedEffectsBlock,
        yblock: FixedEffectsBlock,
        control: MixedControl = DEFAULT_CONTROL,
    ):
        n = yblock.shape[0]
        if xblock.shape[0] != n:
            raise DimensionError(
                f"X has {xblock.shape[0]} rows, expected {n} (matching y)"
            )
        for re in reterms:
            if re.nobs != n:
                raise DimensionError(
                    f"Random effects '{re.name}' have {re.nobs} "
                    f"observations, expected {n}"
                )
        if yblock.shape[1] != 1:
            raise DimensionError(
                f"response block must have one column, got {yblock.shape[1]}"
            )

        self.reterms = list(reterms)
        self.allterms = self.reterms + [xblock, yblock]
        self.control = control
        self.sqrtwts = np.zeros(0)

        nt = len(self.allterms)
        self.A = [
            [K.crossprod(self.allterms[i], self.allterms[j], control)
             for j in range(i + 1)]
            for i in range(nt)
        ]
        self.L = self._create_L()
        self.update_L()

    def _create_L(self) -> list[list]:
        """Choose storage for every block of L from the fill it receives.

        The first random-effects column keeps A's storage. A later
        diagonal block stays block diagonal only if every earlier block
        is nested in it and itself block diagonal in L; all other
        random-by-random blocks beyond the first column are dense.
        """
        k = len(self.reterms)
        nt = len(self.allterms)
        compact = []
        L = []
        for i in range(nt):
            row = []
            for j in range(i + 1):
                a = self.A[i][j]
                if i == j and i < k:
                    keep = all(
                        compact[m] and isnested(self.reterms[m], self.reterms[i])
                        for m in range(i)
                    )
                    compact.append(keep)
                    row.append(a.copy() if keep else K.to_dense(a))
                    if not keep:
                        logger.debug(
                            "diagonal block %d (%s) of L stored dense",
                            i, self.reterms[i].name,
                        )
                elif j == 0:
                    row.append(a.copy())
                else:
                    row.append(K.to_dense(a))
            L.append(row)
        return L

    @property
    def nterms(self) -> int:
        return len(self.allterms)

    @property
    def xblock(self) -> FixedEffectsBlock:
        return self.allterms[-2]

    @property
    def yblock(self) -> FixedEffectsBlock:
        return self.allterms[-1]

    def reweight(self, sqrtwts: NDArray) -> 'BlockedFactor':
        """Reweight every term and recompute A in place.

        Empty weights leave the terms unweighted. L is not updated.
        """
        sqrtwts = np.asarray(sqrtwts, dtype=np.float64)
        if sqrtwts.size == 0:
            return self
        for term in self.allterms:
            term.reweight(sqrtwts)
        self.sqrtwts = sqrtwts
        self._recompute_A()
        return self

    def _recompute_A(self, rows: Sequence[int] | None = None) -> None:
        rows = range(self.nterms) if rows is None else rows
        for i in rows:
            for j in range(i + 1):
                K.crossprod_into(self.A[i][j], self.allterms[i], self.allterms[j])

    def set_response(self, y: NDArray) -> 'BlockedFactor':
        """Overwrite the response column and the last row of A."""
        y = np.asarray(y, dtype=np.float64)
        if y.shape[0] != self.yblock.shape[0]:
            raise DimensionError(
                f"y has {y.shape[0]} elements, expected {self.yblock.shape[0]}"
            )
        self.yblock.set_column(0, y)
        self._recompute_A([self.nterms - 1])
        return self

    def update_L(self) -> 'BlockedFactor':
        """Refresh L from A and the current λ of every random-effects block."""
        A, L = self.A, self.L
        nt = self.nterms
        for i in range(nt):
            for j in range(i + 1):
                K.copy_into(L[i][j], A[i][j])

        for j, re in enumerate(self.reterms):
            K.scale_inflate(L[j][j], re)
            for i in range(j + 1, nt):
                K.rmul_lambda(L[i][j], re)
            for jj in range(j):
                K.lmul_lambda_t(re, L[j][jj])

        for j in range(nt):
            Ljj = L[j][j]
            for jj in range(j):
                K.rank_update(Ljj, L[j][jj])
            K.chol_inplace(Ljj, name=f'L[{j}, {j}]')
            for i in range(j + 1, nt):
                Lij = L[i][j]
                for jj in range(j):
                    K.sub_product(Lij, L[i][jj], L[j][jj])
                K.rdiv_lower_t(Lij, Ljj)
        return self

    def logdet(self, reml: bool = False) -> float:
        """log of the squared determinant of the random-effects part of L.

        With ``reml`` the fixed-effects diagonal block is included.
        """
        k = len(self.reterms)
        val = sum(K.logdet_block(self.L[j][j]) for j in range(k))
        if reml:
            val += K.logdet_block(self.L[k][k])
        return float(val)

    def pwrss(self) -> float:
        """Penalized weighted residual sum of squares."""
        return float(self.L[-1][-1][0, 0] ** 2)

    def fe_L(self) -> NDArray:
        """Lower Cholesky factor of the fixed-effects block, RX'."""
        return self.L[-2][-1]

    def fixef(self) -> NDArray:
        """Conditional β over the full-rank pivoted columns."""
        RXt = self.fe_L()
        rhs = self.L[-1][-2].ravel()
        if rhs.size == 0:
            return np.zeros(0)
        return sla.solve_triangular(RXt, rhs, lower=True, trans='T')

    def ranef(self, beta: NDArray, uscale: bool = False) -> list[NDArray]:
        """Conditional modes of the random effects for a given β.

        Args:
            beta: Fixed effects over the full-rank pivoted columns.
            uscale: If True, return the spherical u; otherwise b = Λu.

        Returns:
            One (S, nlevs) array per random-effects block.
        """
        k = len(self.reterms)
        L = self.L
        beta = np.asarray(beta, dtype=np.float64)
        v = []
        for j in range(k):
            vj = L[-1][j].ravel().copy()
            if beta.size:
                vj -= K.matvec_t(L[-2][j], beta)
            v.append(vj)
        for i in reversed(range(k)):
            for j in range(i + 1, k):
                v[i] -= K.matvec_t(L[j][i], v[j])
            v[i] = K.ldiv_lower_t(L[i][i], v[i])

        out = []
        for re, vi in zip(self.reterms, v):
            u = vi.reshape((re.vsize, re.nlevs), order='F')
            out.append(u if uscale else np.tril(re.lam) @ u)
        return out
