"""
Cross-product storage and the kernels of the blocked Cholesky factor.

Each (row-block, column-block) entry of the cross-product matrix A and of
its factor L is held in one of four representations:

    Diagonal               self-product of a block of size 1
    UniformBlockDiagonal   self-product of a block of size S > 1,
                           one S × S block per level
    BlockedSparse          product of two distinct random-effects blocks
                           with a fixed pattern of (row level, column level)
                           blocks
    ndarray                everything else, and any sparse product whose
                           fill exceeds ``MixedControl.dense_fill_threshold``

The kernels dispatch on the representation with ``isinstance`` and treat
block size 1 as a separate fast path. Every kernel works in place.
Random-effects columns are level-major: level r of a block of size S owns
columns r*S .. r*S + S - 1.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy import sparse
import scipy.linalg as sla

from pymixed.core.exceptions import (
    DimensionError, NotPositiveDefiniteError, PatternError,
)
from pymixed.mixed._control import MixedControl, DEFAULT_CONTROL
from pymixed.mixed._femat import FixedEffectsBlock
from pymixed.mixed._random_effects import RandomEffectsBlock


# =====================================================================
# Storage types
# =====================================================================

class Diagonal:
    """Diagonal matrix stored as its diagonal vector."""

    def __init__(self, d: NDArray):
        self.d = np.asarray(d, dtype=np.float64)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.d.shape[0], self.d.shape[0])

    def copy(self) -> 'Diagonal':
        return Diagonal(self.d.copy())

    def toarray(self) -> NDArray:
        return np.diag(self.d)


class UniformBlockDiagonal:
    """Block-diagonal matrix with nlevs square blocks of size S.

    Attributes:
        data: Blocks, shape (nlevs, S, S).
    """

    def __init__(self, data: NDArray):
        self.data = np.asarray(data, dtype=np.float64)

    @property
    def blocksize(self) -> int:
        return self.data.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        q = self.data.shape[0] * self.data.shape[1]
        return (q, q)

    def copy(self) -> 'UniformBlockDiagonal':
        return UniformBlockDiagonal(self.data.copy())

    def toarray(self) -> NDArray:
        return sla.block_diag(*self.data) if self.data.shape[0] else np.zeros((0, 0))


class BlockedSparse:
    """Block-compressed sparse matrix with a pattern fixed at construction.

    Nonzero blocks are identified by the pair code
    ``row_level * ncol_levels + col_level``; codes are sorted, which is
    the block-row-major order of the BSR format.

    Attributes:
        codes: Sorted pair codes (nb,).
        block_rows: Row level of each stored block (nb,).
        block_cols: Column level of each stored block (nb,).
        data: Stored blocks (nb, Sr, Sc).
        indptr: BSR row pointer (nrow_levels + 1,).
    """

    def __init__(
        self,
        codes: NDArray,
        data: NDArray,
        nrow_levels: int,
        ncol_levels: int,
    ):
        self.codes = codes
        self.data = data
        self.nrow_levels = nrow_levels
        self.ncol_levels = ncol_levels
        self.block_rows = codes // ncol_levels
        self.block_cols = codes % ncol_levels
        self.indptr = np.concatenate([
            [0], np.cumsum(np.bincount(self.block_rows, minlength=nrow_levels))
        ]).astype(np.intp)

    @property
    def blocksize(self) -> tuple[int, int]:
        return self.data.shape[1], self.data.shape[2]

    @property
    def shape(self) -> tuple[int, int]:
        sr, sc = self.blocksize
        return (self.nrow_levels * sr, self.ncol_levels * sc)

    @property
    def fill(self) -> float:
        total = self.nrow_levels * self.ncol_levels
        return len(self.codes) / total if total else 0.0

    def to_scipy(self) -> sparse.bsr_matrix:
        """BSR view sharing ``data`` with this object."""
        return sparse.bsr_matrix(
            (self.data, self.block_cols, self.indptr), shape=self.shape
        )

    def copy(self) -> 'BlockedSparse':
        return BlockedSparse(
            self.codes, self.data.copy(), self.nrow_levels, self.ncol_levels
        )

    def toarray(self) -> NDArray:
        return self.to_scipy().toarray()


def to_dense(M) -> NDArray:
    """Dense copy of any storage type."""
    if isinstance(M, np.ndarray):
        return M.copy()
    return M.toarray()


def _as_operand(M):
    """ndarray or scipy sparse matrix usable with ``@``."""
    if isinstance(M, BlockedSparse):
        return M.to_scipy()
    if isinstance(M, (Diagonal, UniformBlockDiagonal)):
        return M.toarray()
    return M


def _matmul_t(a, b) -> NDArray:
    """Dense a @ b.T for any mix of dense and sparse operands."""
    a, b = _as_operand(a), _as_operand(b)
    if sparse.issparse(a) and sparse.issparse(b):
        return (a @ b.T).toarray()
    if sparse.issparse(a):
        return np.asarray(a @ b.T)
    if sparse.issparse(b):
        return np.asarray((b @ a.T).T)
    return a @ b.T


# =====================================================================
# Cross-products
# =====================================================================

def _pair_codes(a: RandomEffectsBlock, b: RandomEffectsBlock) -> NDArray:
    return a.refs * b.nlevs + b.refs


def _outer_per_obs(u: NDArray, v: NDArray) -> NDArray:
    """Per-observation outer products u[:, i] v[:, i]', shape (n, Su, Sv)."""
    return np.einsum('ki,li->ikl', u, v)


def _fe_re_product(x: FixedEffectsBlock, re: RandomEffectsBlock, out: NDArray) -> NDArray:
    """x.wtx' Z over full-rank columns, accumulated through ``re.scratch``."""
    wtx = x.full_rank_wtx()
    wtz = re.wtz
    for c in range(x.rank):
        col = wtx[:, c]
        if sparse.issparse(col):
            col = col.toarray().ravel()
        re.scratch.fill(0.0)
        np.add.at(re.scratch, (slice(None), re.refs), wtz * col)
        out[c] = re.scratch.ravel(order='F')
    return out


def crossprod(a, b, control: MixedControl = DEFAULT_CONTROL):
    """Allocate and compute the cross-product a' b.

    Args:
        a: Row term (RandomEffectsBlock or FixedEffectsBlock).
        b: Column term. Random-effects terms precede fixed-effects terms,
            so a random-effects ``a`` requires a random-effects ``b``.
        control: Supplies the dense fill threshold.

    Returns:
        Diagonal or UniformBlockDiagonal for a random-effects
        self-product, BlockedSparse or ndarray for two distinct
        random-effects blocks, ndarray otherwise.
    """
    if a.shape[0] != b.shape[0]:
        raise DimensionError(
            f"Cannot form cross-product: terms have {a.shape[0]} and "
            f"{b.shape[0]} rows"
        )
    if isinstance(a, RandomEffectsBlock):
        if not isinstance(b, RandomEffectsBlock):
            raise TypeError("random-effects rows require a random-effects column term")
        if a is b:
            if a.vsize == 1:
                return Diagonal(np.bincount(
                    a.refs, weights=a.wtz[0] ** 2, minlength=a.nlevs
                ))
            data = np.zeros((a.nlevs, a.vsize, a.vsize))
            np.add.at(data, a.refs, _outer_per_obs(a.wtz, a.wtz))
            return UniformBlockDiagonal(data)
        codes, pos = np.unique(_pair_codes(a, b), return_inverse=True)
        fill = len(codes) / (a.nlevs * b.nlevs)
        if fill > control.dense_fill_threshold:
            return np.asarray((a.adj_a @ b.adj_a.T).toarray())
        data = np.zeros((len(codes), a.vsize, b.vsize))
        np.add.at(data, pos.ravel(), _outer_per_obs(a.wtz, b.wtz))
        return BlockedSparse(codes, data, a.nlevs, b.nlevs)

    if isinstance(b, RandomEffectsBlock):
        return _fe_re_product(a, b, np.zeros((a.rank, b.nranef)))
    return b.crossprod(a)


def crossprod_into(C, a, b):
    """Recompute a' b into existing storage ``C``.

    Raises:
        PatternError: If the (row level, column level) pairs present in
            the terms differ from the pattern stored in ``C``.
    """
    if isinstance(C, Diagonal):
        C.d[:] = np.bincount(a.refs, weights=a.wtz[0] ** 2, minlength=a.nlevs)
    elif isinstance(C, UniformBlockDiagonal):
        C.data.fill(0.0)
        np.add.at(C.data, a.refs, _outer_per_obs(a.wtz, a.wtz))
    elif isinstance(C, BlockedSparse):
        codes = _pair_codes(a, b)
        pos = np.searchsorted(C.codes, codes)
        pos_clipped = np.minimum(pos, len(C.codes) - 1)
        missing = C.codes[pos_clipped] != codes
        if np.any(missing):
            raise PatternError(
                f"Cross-product of '{a.name}' and '{b.name}' has "
                f"{int(missing.sum())} observations outside the stored "
                f"nonzero pattern",
                n_unexpected=int(missing.sum()),
            )
        if len(np.unique(pos)) != len(C.codes):
            raise PatternError(
                f"Cross-product of '{a.name}' and '{b.name}' leaves stored "
                f"blocks without observations",
            )
        C.data.fill(0.0)
        np.add.at(C.data, pos, _outer_per_obs(a.wtz, b.wtz))
    elif isinstance(a, RandomEffectsBlock):
        C[:] = (a.adj_a @ b.adj_a.T).toarray()
    elif isinstance(b, RandomEffectsBlock):
        _fe_re_product(a, b, C)
    else:
        C[:] = b.crossprod(a)
    return C


def copy_into(dst, src):
    """Copy ``src`` into ``dst``, densifying when the storage differs."""
    if isinstance(dst, np.ndarray):
        if isinstance(src, np.ndarray):
            np.copyto(dst, src)
        else:
            dst[:] = src.toarray()
    elif isinstance(dst, Diagonal) and isinstance(src, Diagonal):
        np.copyto(dst.d, src.d)
    elif isinstance(dst, UniformBlockDiagonal) and isinstance(src, UniformBlockDiagonal):
        np.copyto(dst.data, src.data)
    elif isinstance(dst, BlockedSparse) and isinstance(src, BlockedSparse):
        if not np.array_equal(dst.codes, src.codes):
            raise PatternError("Cannot copy between different sparse patterns")
        np.copyto(dst.data, src.data)
    else:
        raise TypeError(
            f"Cannot copy {type(src).__name__} into {type(dst).__name__}"
        )
    return dst


# =====================================================================
# λ scaling
# =====================================================================

def scale_inflate(M, re: RandomEffectsBlock):
    """Overwrite the diagonal block M with λ' M λ + I (per level)."""
    lam = re.lam
    S = re.vsize
    if isinstance(M, Diagonal):
        M.d *= lam[0, 0] ** 2
        M.d += 1.0
    elif isinstance(M, UniformBlockDiagonal):
        M.data[:] = np.einsum('us,luv,vt->lst', lam, M.data, lam)
        M.data += np.eye(S)
    else:
        q = re.nranef
        if S == 1:
            M *= lam[0, 0] ** 2
        else:
            blocks = M.reshape(re.nlevs, S, re.nlevs, S)
            M[:] = np.einsum(
                'us,aubv,vt->asbt', lam, blocks, lam
            ).reshape(q, q)
        M[np.diag_indices(q)] += 1.0
    return M


def rmul_lambda(M, re: RandomEffectsBlock):
    """Overwrite M with M Λ, where the columns of M belong to ``re``."""
    lam = re.lam
    S = re.vsize
    if isinstance(M, BlockedSparse):
        if S == 1:
            M.data *= lam[0, 0]
        else:
            M.data[:] = M.data @ lam
    elif S == 1:
        M *= lam[0, 0]
    else:
        r = M.shape[0]
        M[:] = (M.reshape(r, re.nlevs, S) @ lam).reshape(r, re.nranef)
    return M


def lmul_lambda_t(re: RandomEffectsBlock, M):
    """Overwrite M with Λ' M, where the rows of M belong to ``re``."""
    lam = re.lam
    S = re.vsize
    if isinstance(M, BlockedSparse):
        if S == 1:
            M.data *= lam[0, 0]
        else:
            M.data[:] = lam.T @ M.data
    elif S == 1:
        M *= lam[0, 0]
    else:
        c = M.shape[1]
        M[:] = np.einsum(
            'us,luc->lsc', lam, M.reshape(re.nlevs, S, c)
        ).reshape(re.nranef, c)
    return M


# =====================================================================
# Blocked Cholesky
# =====================================================================

def _check_single_row_level(M, row_block_size: int, nrow_levels: int) -> None:
    """Every column of M must touch at most one level of the row block."""
    if isinstance(M, BlockedSparse):
        hits = np.bincount(M.block_cols, minlength=M.ncol_levels)
        n_bad = int(np.sum(hits > 1))
    else:
        nz = M.reshape(nrow_levels, row_block_size, M.shape[1]) != 0
        n_bad = int(np.sum(nz.any(axis=1).sum(axis=0) > 1))
    if n_bad:
        raise PatternError(
            f"Rank update would fill {n_bad} columns outside the "
            f"block-diagonal pattern",
            n_unexpected=n_bad,
        )


def rank_update(C, M):
    """Overwrite the diagonal block C with C - M M'.

    Raises:
        PatternError: If C is block diagonal and M M' is not.
    """
    if isinstance(C, np.ndarray):
        C -= _matmul_t(M, M)
        return C

    if isinstance(C, Diagonal):
        S, nlev = 1, C.d.shape[0]
    else:
        S, nlev = C.blocksize, C.data.shape[0]
    _check_single_row_level(M, S, nlev)

    if isinstance(M, BlockedSparse):
        prods = np.einsum('bsk,btk->bst', M.data, M.data)
        if isinstance(C, Diagonal):
            np.subtract.at(C.d, M.block_rows, prods[:, 0, 0])
        else:
            np.subtract.at(C.data, M.block_rows, prods)
    else:
        rows = M.reshape(nlev, S, M.shape[1])
        if isinstance(C, Diagonal):
            C.d -= np.sum(rows[:, 0, :] ** 2, axis=1)
        else:
            C.data -= np.einsum('lsc,ltc->lst', rows, rows)
    return C


def chol_inplace(C, name: str = 'L'):
    """Overwrite C with its lower Cholesky factor.

    Raises:
        NotPositiveDefiniteError: If C is not positive definite.
    """
    try:
        if isinstance(C, Diagonal):
            if np.any(C.d <= 0):
                raise np.linalg.LinAlgError("nonpositive diagonal")
            np.sqrt(C.d, out=C.d)
        elif isinstance(C, UniformBlockDiagonal):
            if C.data.shape[0]:
                C.data[:] = np.linalg.cholesky(C.data)
        elif C.size:
            C[:] = sla.cholesky(C, lower=True)
    except np.linalg.LinAlgError as e:
        raise NotPositiveDefiniteError(
            f"Diagonal block {name} of the blocked factor is not "
            f"positive definite: {e}",
            matrix_name=name,
        ) from e
    return C


def rdiv_lower_t(M, Ljj):
    """Overwrite M with M Ljj^{-T}, Ljj lower triangular."""
    if isinstance(Ljj, Diagonal):
        if isinstance(M, BlockedSparse):
            M.data /= Ljj.d[M.block_cols][:, np.newaxis, np.newaxis]
        else:
            M /= Ljj.d[np.newaxis, :]
    elif isinstance(Ljj, UniformBlockDiagonal):
        blocks = Ljj.data
        if isinstance(M, BlockedSparse):
            rhs = np.transpose(M.data, (0, 2, 1))
            M.data[:] = np.transpose(
                np.linalg.solve(blocks[M.block_cols], rhs), (0, 2, 1)
            )
        else:
            S = Ljj.blocksize
            nlev = blocks.shape[0]
            r = M.shape[0]
            rhs = np.transpose(M.reshape(r, nlev, S), (1, 2, 0))
            sol = np.linalg.solve(blocks, rhs)
            M[:] = np.transpose(sol, (2, 0, 1)).reshape(r, nlev * S)
    else:
        if isinstance(M, BlockedSparse):
            raise TypeError("sparse off-diagonal block with a dense diagonal block")
        if M.size:
            M[:] = sla.solve_triangular(Ljj, M.T, lower=True).T
    return M


def sub_product(C: NDArray, A, B) -> NDArray:
    """Overwrite the dense block C with C - A B'."""
    C -= _matmul_t(A, B)
    return C


def ldiv_lower_t(Ljj, v: NDArray) -> NDArray:
    """Solve Ljj' x = v, returning a new vector."""
    if isinstance(Ljj, Diagonal):
        return v / Ljj.d
    if isinstance(Ljj, UniformBlockDiagonal):
        S = Ljj.blocksize
        nlev = Ljj.data.shape[0]
        rhs = v.reshape(nlev, S, 1)
        lt = np.transpose(Ljj.data, (0, 2, 1))
        return np.linalg.solve(lt, rhs).reshape(nlev * S)
    if v.size == 0:
        return v.copy()
    return sla.solve_triangular(Ljj, v, lower=True, trans='T')


def matvec_t(M, v: NDArray) -> NDArray:
    """M' v for a dense or block-sparse off-diagonal block."""
    if isinstance(M, BlockedSparse):
        return np.asarray(M.to_scipy().T @ v).ravel()
    return M.T @ v


def diag_of(C) -> NDArray:
    """Diagonal entries of a diagonal block."""
    if isinstance(C, Diagonal):
        return C.d.copy()
    if isinstance(C, UniformBlockDiagonal):
        return np.diagonal(C.data, axis1=1, axis2=2).ravel()
    return np.diag(C).copy()


def logdet_block(C) -> float:
    """log|C C'| = 2 Σ log diag(C) for a lower Cholesky factor C."""
    return float(2.0 * np.sum(np.log(diag_of(C))))
