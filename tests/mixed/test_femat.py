"""Tests for the fixed-effects block."""

import warnings

import numpy as np
import pytest
from scipy import sparse

from pymixed.core.exceptions import DimensionError
from pymixed.mixed._femat import FixedEffectsBlock


class TestRankDetection:
    """Rank-deficient columns are pivoted to the right and reported."""

    def test_full_rank(self, rng):
        X = rng.standard_normal((20, 3))
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            block = FixedEffectsBlock(X, ['a', 'b', 'c'])
        assert block.rank == 3
        assert block.is_full_rank()
        assert block.cnames == ['a', 'b', 'c']

    def test_duplicate_column_warns(self, rng):
        x = rng.standard_normal((20, 2))
        X = np.column_stack([np.ones(20), x[:, 0], x[:, 0], x[:, 1]])
        with pytest.warns(UserWarning, match="rank deficient"):
            block = FixedEffectsBlock(X, ['(Intercept)', 'a', 'a2', 'b'])
        assert block.rank == 3
        assert block.cnames == ['(Intercept)', 'a', 'b', 'a2']
        np.testing.assert_array_equal(block.piv, [0, 1, 3, 2])
        np.testing.assert_array_equal(block.x[:, 2], x[:, 1])

    def test_single_column_never_warns(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            block = FixedEffectsBlock(np.zeros((10, 1)), ['y'])
        assert block.rank == 1

    def test_no_columns(self):
        block = FixedEffectsBlock(np.zeros((5, 0)))
        assert block.rank == 0
        assert block.matmul(np.zeros(0)).shape == (5,)

    def test_sparse_assumed_full_rank(self):
        X = sparse.csc_matrix(np.array([[1.0, 0.0], [1.0, 1.0], [1.0, 0.0]]))
        block = FixedEffectsBlock(X)
        assert block.rank == 2
        np.testing.assert_array_equal(block.piv, [0, 1])

    def test_cnames_length_checked(self):
        with pytest.raises(DimensionError, match="cnames"):
            FixedEffectsBlock(np.ones((4, 2)), ['only'])


class TestWeighting:
    """Weighted copies and cross-products."""

    def test_unweighted_wtx_is_x(self, rng):
        block = FixedEffectsBlock(rng.standard_normal((6, 2)))
        assert not block.is_weighted
        assert block.wtx is block.x

    def test_reweight(self, rng):
        X = rng.standard_normal((6, 2))
        block = FixedEffectsBlock(X)
        w = np.arange(1.0, 7.0)
        block.reweight(w)
        assert block.is_weighted
        np.testing.assert_allclose(block.wtx, X * w[:, np.newaxis])
        np.testing.assert_array_equal(block.x, X)

    def test_reweight_wrong_length(self, rng):
        block = FixedEffectsBlock(rng.standard_normal((6, 2)))
        with pytest.raises(DimensionError):
            block.reweight(np.ones(5))

    def test_sparse_reweight(self):
        X = sparse.csc_matrix(np.array([[1.0, 0.0], [1.0, 2.0], [1.0, 0.0]]))
        block = FixedEffectsBlock(X)
        block.reweight(np.array([1.0, 2.0, 3.0]))
        np.testing.assert_allclose(
            block.wtx.toarray(), [[1.0, 0.0], [2.0, 4.0], [3.0, 0.0]]
        )

    def test_set_column_reweights(self):
        block = FixedEffectsBlock(np.zeros((3, 1)))
        block.reweight(np.array([1.0, 2.0, 3.0]))
        block.set_column(0, np.array([1.0, 1.0, 1.0]))
        np.testing.assert_array_equal(block.x[:, 0], [1.0, 1.0, 1.0])
        np.testing.assert_array_equal(block.wtx[:, 0], [1.0, 2.0, 3.0])

    def test_crossprod(self, rng):
        X = rng.standard_normal((8, 2))
        y = rng.standard_normal((8, 1))
        xb = FixedEffectsBlock(X)
        yb = FixedEffectsBlock(y)
        np.testing.assert_allclose(xb.crossprod(yb), y.T @ X)

    def test_crossprod_excludes_dropped_columns(self, rng):
        x = rng.standard_normal(10)
        with pytest.warns(UserWarning):
            xb = FixedEffectsBlock(np.column_stack([x, x]))
        assert xb.crossprod(xb).shape == (1, 1)

    def test_matmul_checks_rank(self, rng):
        block = FixedEffectsBlock(rng.standard_normal((5, 2)))
        with pytest.raises(DimensionError, match="rank"):
            block.matmul(np.ones(3))
