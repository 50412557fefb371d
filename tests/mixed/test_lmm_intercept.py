"""Tests for LMM with random intercepts."""

import warnings

import numpy as np
import pytest

from pymixed.core.exceptions import DimensionError, ValidationError
from pymixed.mixed import lmm


@pytest.fixture
def fitted(random_intercept_simple):
    d = random_intercept_simple
    return lmm(d['y'], d['X'], groups={'group': d['group']})


class TestLMMRandomIntercept:
    """Tests for the basic random intercept model."""

    def test_basic_fit(self, fitted):
        assert fitted.converged
        assert len(fitted.coefficients) == 2
        assert fitted.params.rank == 2

    def test_fixed_effects_close_to_truth(self, fitted, random_intercept_simple):
        d = random_intercept_simple
        np.testing.assert_allclose(fitted.coefficients[0], d['beta0'], atol=2.0)
        np.testing.assert_allclose(fitted.coefficients[1], d['beta1'], atol=0.5)

    def test_variance_components(self, fitted):
        vc = fitted.var_components
        assert len(vc) == 1
        assert vc[0].group == 'group'
        assert vc[0].name == '(Intercept)'
        assert vc[0].variance > 0
        assert vc[0].std_dev == pytest.approx(np.sqrt(vc[0].variance))
        assert vc[0].corr == ()

    def test_variance_scale(self, fitted, random_intercept_simple):
        d = random_intercept_simple
        sigma_b = fitted.var_components[0].std_dev
        assert 0.5 * d['sigma_group'] < sigma_b < 2.0 * d['sigma_group']
        assert fitted.params.residual_std == pytest.approx(d['sigma_resid'], rel=0.3)
        assert sigma_b == pytest.approx(fitted.theta[0] * fitted.params.residual_std)

    def test_blups_shape(self, fitted, random_intercept_simple):
        assert fitted.ranef['group'].shape == (random_intercept_simple['n_groups'], 1)

    def test_blups_sum_near_zero(self, fitted):
        assert abs(np.mean(fitted.ranef['group'][:, 0])) < 1.0

    def test_icc(self, fitted):
        assert 0 < fitted.icc['group'] < 1

    def test_fitted_plus_residuals_equals_y(self, fitted, random_intercept_simple):
        np.testing.assert_allclose(
            fitted.fitted_values + fitted.residuals, random_intercept_simple['y'], atol=1e-8
        )

    def test_fitted_values_decompose(self, fitted, random_intercept_simple):
        d = random_intercept_simple
        expected = d['X'] @ fitted.coefficients + fitted.ranef['group'][d['group'], 0]
        np.testing.assert_allclose(fitted.fitted_values, expected, rtol=1e-8)

    def test_model_fit_stats(self, fitted):
        assert np.isfinite(fitted.log_likelihood)
        assert fitted.log_likelihood == pytest.approx(-0.5 * fitted.objective)
        assert fitted.dof == 4
        assert fitted.aic == pytest.approx(-2 * fitted.log_likelihood + 2 * 4)

    def test_reml_vs_ml(self, random_intercept_simple):
        d = random_intercept_simple
        result_reml = lmm(d['y'], d['X'], groups={'group': d['group']}, reml=True)
        result_ml = lmm(d['y'], d['X'], groups={'group': d['group']}, reml=False)
        np.testing.assert_allclose(result_reml.coefficients, result_ml.coefficients, rtol=0.1)
        assert result_reml.params.residual_variance != result_ml.params.residual_variance
        assert result_reml.info['method'] == 'REML'
        assert result_ml.info['method'] == 'ML'

    def test_info_and_timing(self, fitted):
        info = fitted.info
        assert info['optimizer'] == 'Powell'
        assert info['return_code'] == fitted.params.return_code
        assert info['feval'] == fitted.params.n_feval > 1
        assert info['finitial'] >= fitted.objective
        assert set(fitted.timing) >= {'setup', 'optimization', 'final_solve', 'summaries'}

    def test_summary_output(self, fitted):
        s = fitted.summary()
        assert s.startswith('Linear mixed model fit by REML')
        assert 'Random effects:' in s
        assert 'Fixed effects:' in s
        assert 'REML criterion at convergence' in s
        assert 'Number of obs: 200, groups: group: 20' in s

    def test_repr(self, fitted):
        assert repr(fitted) == "LMMSolution(REML, n=200, fixed=2, random=1 var components)"

    def test_p_values_defined(self, fitted):
        assert np.all((fitted.p_values >= 0) & (fitted.p_values <= 1))
        np.testing.assert_allclose(fitted.t_values, fitted.coefficients / fitted.se)

    def test_fixef_dict(self, fitted):
        assert set(fitted.fixef) == {'(Intercept)', 'X1'}

    def test_fixed_names(self, random_intercept_simple):
        d = random_intercept_simple
        result = lmm(d['y'], d['X'], groups={'group': d['group']}, fixed_names=['a', 'x'])
        assert list(result.fixef) == ['a', 'x']
        with pytest.raises(DimensionError, match="fixed_names"):
            lmm(d['y'], d['X'], groups={'group': d['group']}, fixed_names=['a'])


class TestLMMWeightsAndRank:
    """Prior weights and rank-deficient fixed effects."""

    def test_unit_weights_match_unweighted(self, fitted, random_intercept_simple):
        d = random_intercept_simple
        weighted = lmm(
            d['y'], d['X'], groups={'group': d['group']}, weights=np.ones(len(d['y'])),
        )
        np.testing.assert_allclose(weighted.coefficients, fitted.coefficients, rtol=1e-6)
        assert weighted.objective == pytest.approx(fitted.objective, rel=1e-8)

    def test_weights_change_fit(self, fitted, random_intercept_simple, rng):
        d = random_intercept_simple
        w = rng.uniform(0.2, 3.0, len(d['y']))
        weighted = lmm(d['y'], d['X'], groups={'group': d['group']}, weights=w)
        assert weighted.converged
        assert not np.allclose(weighted.coefficients, fitted.coefficients)

    def test_negative_weights_rejected(self, random_intercept_simple):
        d = random_intercept_simple
        w = np.ones(len(d['y']))
        w[0] = -1.0
        with pytest.raises(ValidationError):
            lmm(d['y'], d['X'], groups={'group': d['group']}, weights=w)

    def test_duplicate_column_is_dropped(self, fitted, random_intercept_simple):
        d = random_intercept_simple
        X = np.column_stack([d['X'], d['X'][:, 1]])
        with pytest.warns(UserWarning, match="rank deficient"):
            result = lmm(d['y'], X, groups={'group': d['group']})
        assert result.params.rank == 2
        assert result.coefficients[2] == 0.0
        assert np.signbit(result.coefficients[2])
        assert np.isnan(result.se[2])
        np.testing.assert_allclose(result.coefficients[:2], fitted.coefficients, rtol=1e-6)
        assert '(dropped)' in result.summary()


class TestLMMNoEffect:
    """LMM when there is no fixed effect signal."""

    def test_intercept_only(self, rng):
        group = np.repeat(np.arange(10), 10)
        y = rng.normal(0, 1, 100)
        result = lmm(y, np.ones((100, 1)), groups={'group': group})
        assert result.converged
        assert len(result.coefficients) == 1

    def test_zero_variance_snaps_to_boundary(self, rng):
        """Groups with no shared signal give a variance on the boundary."""
        group = np.tile(np.arange(10), 20)
        x = rng.normal(0, 1, 200)
        x -= np.bincount(group, weights=x)[group] / 20.0
        y = 1.0 + x + rng.normal(0, 1, 200)
        # equal group means leave no between-group variation
        y -= np.bincount(group, weights=y)[group] / 20.0 - np.mean(y)
        X = np.column_stack([np.ones(200), x])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            result = lmm(y, X, groups={'group': group}, reml=False)
        assert result.theta[0] == 0.0
        assert result.var_components[0].variance == 0.0
        np.testing.assert_allclose(result.ranef['group'], 0.0, atol=1e-12)
