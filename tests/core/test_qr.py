"""Tests for the order-preserving rank-revealing QR."""

import numpy as np

from pymixed.core.compute.linalg import dependent_columns_qr


class TestDependentColumnsQR:
    """dependent_columns_qr keeps independent columns in their original order."""

    def test_full_rank(self, rng):
        X = rng.standard_normal((30, 4))
        qr = dependent_columns_qr(X)
        assert qr.rank == 4
        np.testing.assert_array_equal(qr.pivot, [0, 1, 2, 3])

    def test_duplicate_column_moved_last(self, rng):
        x = rng.standard_normal((30, 3))
        X = np.column_stack([x[:, 0], x[:, 1], x[:, 1], x[:, 2]])
        qr = dependent_columns_qr(X)
        assert qr.rank == 3
        np.testing.assert_array_equal(qr.pivot, [0, 1, 3, 2])

    def test_linear_combination(self, rng):
        x = rng.standard_normal((40, 2))
        X = np.column_stack([np.ones(40), x, x[:, 0] + 2.0 * x[:, 1]])
        qr = dependent_columns_qr(X)
        assert qr.rank == 3
        assert qr.pivot[-1] == 3

    def test_single_zero_column_is_full_rank(self):
        qr = dependent_columns_qr(np.zeros((10, 1)))
        assert qr.rank == 1
        np.testing.assert_array_equal(qr.pivot, [0])

    def test_pivot_increasing_over_independent_columns(self, rng):
        x = rng.standard_normal((25, 3))
        X = np.column_stack([x[:, 0], x[:, 0], x[:, 1], x[:, 2], x[:, 2]])
        qr = dependent_columns_qr(X)
        kept = qr.pivot[:qr.rank]
        assert np.all(np.diff(kept) > 0)
        np.testing.assert_array_equal(np.sort(qr.pivot), np.arange(5))
