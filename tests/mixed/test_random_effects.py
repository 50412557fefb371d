"""Tests for random-effects blocks, amalgamation and nesting."""

import numpy as np
import pytest

from pymixed.core.exceptions import DimensionError, ValidationError
from pymixed.mixed._random_effects import (
    RandomEffectsBlock,
    amalgamate,
    isnested,
    parse_random_effects,
)


def _block(name, refs, z, cnames=None, nlev=None):
    refs = np.asarray(refs)
    nlev = int(refs.max()) + 1 if nlev is None else nlev
    return RandomEffectsBlock(name, list(range(nlev)), refs, z, cnames=cnames)


class TestParseRandomEffects:
    """Tests for parse_random_effects."""

    def test_intercept_only_default(self):
        """When random_effects is None, default to intercept for each group."""
        groups = {'subject': np.array([0, 0, 1, 1, 2, 2])}
        blocks = parse_random_effects(groups, None, None, 6)
        assert len(blocks) == 1
        re = blocks[0]
        assert re.name == 'subject'
        assert re.cnames == ['(Intercept)']
        assert re.nlevs == 3
        assert re.vsize == 1
        assert re.ntheta == 1

    def test_intercept_and_slope(self):
        """Intercept + slope gives a block of size 2 with 3 parameters."""
        groups = {'subject': np.array([0, 0, 1, 1, 2, 2])}
        re = {'subject': ['1', 'time']}
        rd = {'time': np.array([0., 1., 0., 1., 0., 1.])}

        blocks = parse_random_effects(groups, re, rd, 6)
        assert blocks[0].vsize == 2
        assert blocks[0].cnames == ['(Intercept)', 'time']
        assert blocks[0].ntheta == 3
        np.testing.assert_array_equal(blocks[0].z[1], rd['time'])

    def test_crossed_random_effects(self):
        """Two grouping factors produce two blocks."""
        groups = {
            'subject': np.array([0, 0, 1, 1, 2, 2]),
            'item': np.array([0, 1, 0, 1, 0, 1]),
        }
        blocks = parse_random_effects(groups, None, None, 6)
        assert {b.name for b in blocks} == {'subject', 'item'}

    def test_group_refs_are_consecutive(self):
        """Group labels are mapped to 0-indexed consecutive integers."""
        groups = {'subject': np.array(['B', 'B', 'A', 'A', 'C', 'C'])}
        blocks = parse_random_effects(groups, None, None, 6)
        assert blocks[0].levels == ['A', 'B', 'C']
        np.testing.assert_array_equal(blocks[0].refs, [1, 1, 0, 0, 2, 2])

    def test_independent_term_sets_are_amalgamated(self):
        """A list of lists gives one uncorrelated block per grouping factor."""
        groups = {'subject': np.array([0, 0, 1, 1, 2, 2])}
        re = {'subject': [['1'], ['time']]}
        rd = {'time': np.array([0., 1., 0., 1., 0., 1.])}
        blocks = parse_random_effects(groups, re, rd, 6)
        assert len(blocks) == 1
        assert blocks[0].vsize == 2
        assert blocks[0].ntheta == 2
        np.testing.assert_array_equal(blocks[0].lower_bounds(), [0.0, 0.0])

    def test_missing_random_data_raises(self):
        groups = {'subject': np.array([0, 0, 1, 1])}
        re = {'subject': ['1', 'time']}
        with pytest.raises(ValidationError, match="requires data"):
            parse_random_effects(groups, re, None, 4)

    def test_length_mismatch_raises(self):
        groups = {'subject': np.array([0, 0, 1])}
        with pytest.raises(DimensionError, match="expected 4"):
            parse_random_effects(groups, None, None, 4)


class TestRandomEffectsBlock:
    """Dimensions, θ access and weighting of a single block."""

    def test_dimensions(self):
        z = np.vstack([np.ones(6), np.arange(6.0)])
        re = _block('g', [0, 0, 1, 1, 2, 2], z)
        assert re.vsize == 2
        assert re.nlevs == 3
        assert re.nranef == 6
        assert re.shape == (6, 6)

    def test_refs_out_of_range(self):
        with pytest.raises(ValidationError, match="refs"):
            RandomEffectsBlock('g', [0, 1], np.array([0, 2]), np.ones((1, 2)))

    def test_theta_column_major_lower_triangle(self):
        z = np.ones((3, 4))
        re = _block('g', [0, 0, 1, 1], z)
        theta = np.arange(1.0, 7.0)
        re.set_theta(theta)
        expected = np.array([
            [1.0, 0.0, 0.0],
            [2.0, 4.0, 0.0],
            [3.0, 5.0, 6.0],
        ])
        np.testing.assert_array_equal(np.tril(re.lam), expected)
        np.testing.assert_array_equal(re.get_theta(), theta)

    def test_set_theta_wrong_length(self):
        re = _block('g', [0, 1], np.ones((2, 2)))
        with pytest.raises(DimensionError, match="expected 3"):
            re.set_theta([1.0, 2.0])

    def test_lower_bounds(self):
        re = _block('g', [0, 1], np.ones((2, 2)))
        np.testing.assert_array_equal(re.lower_bounds(), [0.0, -np.inf, 0.0])

    def test_zerocorr(self):
        re = _block('g', [0, 1], np.ones((2, 2)))
        re.set_theta([1.0, 0.5, 2.0])
        re.zerocorr()
        assert re.ntheta == 2
        np.testing.assert_array_equal(re.get_theta(), [1.0, 2.0])
        assert re.lam[1, 0] == 0.0

    def test_to_dense_is_level_major(self):
        z = np.vstack([np.ones(4), [1.0, 2.0, 3.0, 4.0]])
        re = _block('g', [0, 1, 0, 1], z)
        expected = np.array([
            [1.0, 1.0, 0.0, 0.0],
            [0.0, 0.0, 1.0, 2.0],
            [1.0, 3.0, 0.0, 0.0],
            [0.0, 0.0, 1.0, 4.0],
        ])
        np.testing.assert_array_equal(re.to_dense(), expected)

    def test_reweight(self):
        z = np.ones((1, 4))
        re = _block('g', [0, 0, 1, 1], z)
        re.reweight(np.array([1.0, 2.0, 3.0, 4.0]))
        np.testing.assert_array_equal(re.wtz, [[1.0, 2.0, 3.0, 4.0]])
        np.testing.assert_array_equal(re.to_dense()[:, 1], [0.0, 0.0, 3.0, 4.0])
        np.testing.assert_array_equal(re.z, np.ones((1, 4)))

    def test_repeated_reweight_starts_from_design(self):
        """Reweighting twice applies the weights once, to the unweighted z."""
        z = np.array([[1.0, 1.0, 1.0, 1.0]])
        re = _block('g', [0, 0, 1, 1], z)
        assert not np.shares_memory(re.z, re.adj_a.data)
        w = np.array([1.0, 2.0, 3.0, 4.0])
        re.reweight(w)
        re.reweight(w)
        np.testing.assert_array_equal(re.z, np.ones((1, 4)))
        np.testing.assert_array_equal(re.wtz, [[1.0, 2.0, 3.0, 4.0]])
        np.testing.assert_array_equal(
            re.to_dense(), [[1.0, 0.0], [2.0, 0.0], [0.0, 3.0], [0.0, 4.0]]
        )

    def test_empty_weights_noop(self):
        re = _block('g', [0, 1], np.ones((1, 2)))
        re.reweight(np.zeros(0))
        assert re.wtz is re.z

    def test_add_zb(self):
        z = np.vstack([np.ones(4), [0.0, 1.0, 0.0, 1.0]])
        re = _block('g', [0, 0, 1, 1], z)
        b = np.array([[1.0, -1.0], [0.5, 2.0]])
        eta = np.zeros(4)
        re.add_zb(eta, b)
        np.testing.assert_allclose(eta, re.to_dense() @ b.ravel(order='F'))

    def test_sigma_rhos(self):
        re = _block('g', [0, 1], np.ones((2, 2)))
        re.set_theta([1.0, 1.0, 1.0])
        sigmas, rhos = re.sigma_rhos(2.0)
        np.testing.assert_allclose(sigmas, [2.0, 2.0 * np.sqrt(2.0)])
        np.testing.assert_allclose(rhos, [1.0 / np.sqrt(2.0)])

    def test_structural_zero_correlation(self):
        """Amalgamated independent terms report -0.0 correlation."""
        a = _block('g', [0, 1], np.ones((1, 2)))
        b = _block('g', [0, 1], np.array([[1.0, 2.0]]), cnames=['x'])
        merged = amalgamate([a, b])[0]
        _, rhos = merged.sigma_rhos()
        assert rhos[0] == 0.0
        assert np.signbit(rhos[0])

    def test_corrmat(self):
        re = _block('g', [0, 1], np.ones((2, 2)))
        re.set_theta([1.0, 1.0, 1.0])
        C = re.corrmat()
        np.testing.assert_allclose(np.diag(C), [1.0, 1.0])
        np.testing.assert_allclose(C[0, 1], 1.0 / np.sqrt(2.0))

    def test_cond_scalar(self):
        re = _block('g', [0, 1], np.ones((1, 2)))
        assert re.cond() == 1.0


class TestAmalgamate:
    """amalgamate merges blocks sharing a grouping factor."""

    def test_merges_same_name(self):
        a = _block('g', [0, 0, 1, 1], np.ones((1, 4)))
        b = _block('g', [0, 0, 1, 1], np.array([[0.0, 1.0, 0.0, 1.0]]), cnames=['x'])
        c = _block('h', [0, 1, 0, 1], np.ones((1, 4)))
        merged = amalgamate([a, c, b])
        assert [m.name for m in merged] == ['g', 'h']
        assert merged[0].vsize == 2
        assert merged[0].cnames == ['(Intercept)', 'x']
        np.testing.assert_array_equal(merged[0].indmat(), np.eye(2, dtype=bool))

    def test_mismatched_levels_raise(self):
        a = _block('g', [0, 0, 1, 1], np.ones((1, 4)))
        b = _block('g', [0, 1, 0, 1], np.ones((1, 4)))
        with pytest.raises(ValidationError, match="amalgamate"):
            amalgamate([a, b])

    def test_cross_products_match_dense(self):
        """The merged block's Z'Z equals the dense product of its design."""
        refs = np.array([0, 0, 1, 1, 2, 2])
        x = np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
        a = _block('g', refs, np.ones((1, 6)))
        b = _block('g', refs, x[np.newaxis, :], cnames=['x'])
        merged = amalgamate([a, b])[0]
        Z = merged.to_dense()
        expected_cols = np.zeros((6, 6))
        for lev in range(3):
            expected_cols[refs == lev, 2 * lev] = 1.0
            expected_cols[refs == lev, 2 * lev + 1] = x[refs == lev]
        np.testing.assert_array_equal(Z, expected_cols)


class TestIsNested:
    """isnested checks every level of a maps to one level of b."""

    def test_nested(self):
        student = _block('student', [0, 0, 1, 1, 2, 2, 3, 3], np.ones((1, 8)))
        school = _block('school', [0, 0, 0, 0, 1, 1, 1, 1], np.ones((1, 8)))
        assert isnested(student, school)
        assert not isnested(school, student)

    def test_crossed_not_nested(self):
        a = _block('a', [0, 0, 1, 1], np.ones((1, 4)))
        b = _block('b', [0, 1, 0, 1], np.ones((1, 4)))
        assert not isnested(a, b)

    def test_one_changed_reference_breaks_nesting(self):
        student_refs = [0, 0, 1, 1, 2, 2, 3, 3]
        school_refs = np.array([0, 0, 0, 0, 1, 1, 1, 1])
        student = _block('student', student_refs, np.ones((1, 8)))
        assert isnested(student, _block('school', school_refs, np.ones((1, 8))))
        # student 1 now appears in both schools
        school_refs[3] = 1
        assert not isnested(student, _block('school', school_refs, np.ones((1, 8))))

    def test_self_nested(self):
        a = _block('a', [0, 1, 2, 0], np.ones((1, 4)))
        assert isnested(a, a)

    def test_length_mismatch(self):
        a = _block('a', [0, 1], np.ones((1, 2)))
        b = _block('b', [0, 1, 1], np.ones((1, 3)))
        with pytest.raises(DimensionError):
            isnested(a, b)
