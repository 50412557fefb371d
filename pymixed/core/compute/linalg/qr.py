"""
QR decomposition helpers.

Provides the rank-revealing QR used to detect linearly dependent columns
of a fixed-effects design matrix. Independent columns keep their original
order; dependent columns are moved to the right.
"""

from dataclasses import dataclass
from typing import Any
import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla


@dataclass(frozen=True)
class QRResult:
    """
    Result of an order-preserving rank-revealing QR.

    Attributes:
        R: Upper triangular factor of the unpivoted QR (k x p)
        pivot: Column permutation, independent columns first in their
            original order followed by the dependent columns
        rank: Numerical rank determined from R diagonal
    """
    R: NDArray[np.floating[Any]]
    pivot: NDArray[np.intp]
    rank: int


def dependent_columns_qr(
    X: NDArray[np.floating[Any]],
    tol: float | None = None,
) -> QRResult:
    """
    Detect linearly dependent columns with an unpivoted QR.

    For the unpivoted decomposition X = QR, |R[j, j]| is the distance of
    column j from the span of the columns before it, so a column is
    dependent on its predecessors exactly when that diagonal element
    vanishes numerically.

    Args:
        X: Matrix to analyse (n x p)
        tol: Absolute tolerance on |R[j, j]|. Defaults to
            max(n, p) * eps * max|diag(R)|.

    Returns:
        QRResult with the R factor, the pivot and the numerical rank.
        The first ``rank`` entries of the pivot are the independent
        columns, so the pivot stops increasing right after them.
    """
    n, p = X.shape
    R = sla.qr(X, mode='r')[0]
    k = min(n, p)
    diag_R = np.zeros(p, dtype=np.float64)
    diag_R[:k] = np.abs(np.diag(R)[:k])

    if tol is None:
        scale = diag_R.max() if p > 0 else 0.0
        tol = max(n, p) * np.finfo(np.float64).eps * scale

    independent = diag_R > tol
    pivot = np.concatenate([
        np.flatnonzero(independent), np.flatnonzero(~independent)
    ]).astype(np.intp)

    # A single column is never reported as deficient: an all-zero column
    # is the usual placeholder response.
    rank = int(independent.sum()) if p > 1 else p

    return QRResult(R=R, pivot=pivot, rank=rank)
