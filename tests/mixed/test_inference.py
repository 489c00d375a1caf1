"""
Tests for likelihood ratio tests, simulation, marginal coefficients and
the covariance of the estimates.
"""

from types import SimpleNamespace

import numpy as np
import pytest
from scipy import stats

from zimixed.core.exceptions import FamilyContractError, ValidationError
from zimixed.families import UserFamily
from zimixed.mixed import likelihood_ratio_test, mixed_model, solvers
from zimixed.mixed._inference import (
    marginal_coefficients,
    observed_information_vcov,
    simulate_responses,
    standard_errors,
    wald_tests,
)


def _fit_stub(ll, n_params, n_obs=100):
    return SimpleNamespace(log_likelihood=ll, n_params=n_params, n_obs=n_obs)


# ═══════════════════════════════════════════════════════════════════════
# Likelihood ratio test
# ═══════════════════════════════════════════════════════════════════════


class TestLikelihoodRatio:

    def test_known_values(self):
        result = likelihood_ratio_test(_fit_stub(-100.0, 5), _fit_stub(-103.0, 3))
        assert result.statistic == pytest.approx(6.0)
        assert result.df == 2
        assert result.p_value == pytest.approx(stats.chi2.sf(6.0, 2))
        assert result.nested

    def test_argument_order_does_not_matter(self):
        a = likelihood_ratio_test(_fit_stub(-100.0, 5), _fit_stub(-103.0, 3))
        b = likelihood_ratio_test(_fit_stub(-103.0, 3), _fit_stub(-100.0, 5))
        assert a == b

    def test_statistic_clipped_at_zero(self):
        result = likelihood_ratio_test(_fit_stub(-105.0, 5), _fit_stub(-103.0, 3))
        assert result.statistic == 0.0
        assert result.p_value == 1.0

    def test_non_nested_has_no_p_value(self):
        result = likelihood_ratio_test(_fit_stub(-100.0, 5), _fit_stub(-103.0, 3),
                                       nested=False)
        assert result.p_value is None
        assert "not reported" in result.summary()

    def test_different_data(self):
        with pytest.raises(ValidationError, match="different data"):
            likelihood_ratio_test(_fit_stub(-100.0, 5, n_obs=100),
                                  _fit_stub(-103.0, 3, n_obs=90))

    def test_self_comparison(self, poisson_fit):
        result = poisson_fit.compare(poisson_fit)
        assert result.statistic == 0.0
        assert result.df == 0
        assert result.p_value == 1.0
        assert "LRT = 0.0000" in result.summary()

    def test_zero_inflated_against_hurdle_warns(self, zip_fit):
        hurdle = SimpleNamespace(kind='hurdle', params=_fit_stub(
            zip_fit.log_likelihood - 1.0, zip_fit.n_params, zip_fit.n_obs))
        with pytest.warns(RuntimeWarning, match="not nested"):
            zip_fit.compare(hurdle)

    def test_zero_inflated_against_poisson(self, zip_data, zip_fit):
        d = zip_data
        reduced = mixed_model(d['y'], d['groups'], d['X'], d['Z'], family='poisson')
        result = zip_fit.compare(reduced)
        assert result.df == 2
        assert result.loglik_full == zip_fit.log_likelihood
        # 20% structural zeros are easy to detect with 800 observations
        assert result.p_value < 1e-4


# ═══════════════════════════════════════════════════════════════════════
# Wald tests and covariance
# ═══════════════════════════════════════════════════════════════════════


class TestCovariance:

    def test_wald(self):
        z, p = wald_tests(np.array([1.96, -1.0]), np.array([1.0, 0.5]))
        np.testing.assert_allclose(z, [1.96, -2.0])
        np.testing.assert_allclose(p, 2 * stats.norm.sf([1.96, 2.0]))

    def test_vcov_symmetric_positive_definite(self, poisson_fit):
        vcov = poisson_fit.vcov
        assert vcov.shape == (3, 3)
        np.testing.assert_allclose(vcov, vcov.T, atol=1e-12)
        assert np.all(np.linalg.eigvalsh(vcov) > 0)
        np.testing.assert_allclose(poisson_fit.se, np.sqrt(np.diag(vcov))[:2])

    def test_singular_information_falls_back_to_pinv(self):
        class FlatAssembler:
            def assemble(self, params, states=None, adapt=True):
                return SimpleNamespace(gradient=np.zeros_like(params))

        with pytest.warns(RuntimeWarning, match="pseudo-inverse"):
            vcov, singular = observed_information_vcov(FlatAssembler(), np.ones(2), ())
        assert singular
        np.testing.assert_array_equal(vcov, np.zeros((2, 2)))
        assert np.all(np.isnan(standard_errors(vcov)))

    def test_standard_errors_not_positive_are_nan(self):
        vcov = np.diag([0.04, -3.63e9, 0.0])
        se = standard_errors(vcov)
        assert se[0] == pytest.approx(0.2)
        assert np.isnan(se[1]) and np.isnan(se[2])
        z, p = wald_tests(np.array([0.5, -24.0, 1.0]), se)
        assert np.isnan(z[1]) and np.isnan(p[1])
        assert np.isfinite(p[0])

    def test_non_identified_coefficient_reported_as_na(self, poisson_data, monkeypatch):
        real_vcov = solvers.observed_information_vcov

        def singular_vcov(assembler, params, states):
            vcov, _ = real_vcov(assembler, params, states)
            vcov = vcov.copy()
            vcov[1, 1] = -3.63e9
            return vcov, True

        monkeypatch.setattr(solvers, 'observed_information_vcov', singular_vcov)
        d = poisson_data
        fit = mixed_model(d['y'], d['groups'], d['X'], d['Z'], family='poisson')

        assert fit.info['vcov_singular']
        assert np.isfinite(fit.se[0])
        assert np.isnan(fit.se[1])
        assert np.isnan(fit.params.z_betas[1])
        assert np.isnan(fit.params.p_betas[1])

        text = fit.summary()
        row = next(line for line in text.splitlines() if line.strip().startswith('X1'))
        assert row.split()[2:5] == ['NA', 'NA', 'NA']
        assert '*' not in row
        assert 'not identified' in text


# ═══════════════════════════════════════════════════════════════════════
# Marginal coefficients
# ═══════════════════════════════════════════════════════════════════════


class TestMarginalCoefficients:

    def test_poisson_random_intercept(self, poisson_data, problem_factory):
        """E[exp(xβ + b)] = exp(xβ + D/2): the intercept shifts by D/2."""
        problem = problem_factory(poisson_data, 'poisson')
        theta = problem['parameterization'].encode(np.array([[0.4]]))
        estimates = problem['layout'].pack([0.5, 0.3], [], [], theta)
        result = marginal_coefficients(problem['family'], problem['design'],
                                       problem['layout'], problem['parameterization'],
                                       estimates)
        np.testing.assert_allclose(result.coefficients, [0.7, 0.3], rtol=1e-8)
        assert result.se is None
        assert result.link == 'log'

    def test_standard_errors_from_draws(self, poisson_fit):
        a = poisson_fit.marginal_coefs(std_errors=True, n_draws=100, seed=3)
        b = poisson_fit.marginal_coefs(std_errors=True, n_draws=100, seed=3)
        assert a.se.shape == (2,)
        assert np.all(a.se > 0)
        np.testing.assert_array_equal(a.se, b.se)
        assert a.coefficients[0] > poisson_fit.coefficients[0]

    def test_lognormal_reports_identity_scale(self, hurdle_data, problem_factory):
        problem = problem_factory(hurdle_data, 'hurdle_lognormal', structure='diagonal')
        estimates = problem['layout'].pack([1.0, 0.4], [-0.5], [np.log(0.5)],
                                           np.log([0.6, 0.5]))
        result = marginal_coefficients(problem['family'], problem['design'],
                                       problem['layout'], problem['parameterization'],
                                       estimates)
        assert result.link == 'identity'
        assert result.marginal_means.shape == (problem['design'].n,)

    def test_requires_marginal_mean(self, poisson_data, problem_factory):
        family = UserFamily(lambda y, eta, phis, eta_zi: stats.poisson.logpmf(y, np.exp(eta)))
        problem = problem_factory(poisson_data, family)
        theta = problem['parameterization'].encode(np.array([[0.4]]))
        estimates = problem['layout'].pack([0.5, 0.3], [], [], theta)
        with pytest.raises(FamilyContractError) as exc_info:
            marginal_coefficients(family, problem['design'], problem['layout'],
                                  problem['parameterization'], estimates)
        assert exc_info.value.capability == 'marginal_mean'


# ═══════════════════════════════════════════════════════════════════════
# Simulation
# ═══════════════════════════════════════════════════════════════════════


class TestSimulate:

    def test_shape_and_support(self, zip_fit):
        sims = zip_fit.simulate(4, seed=10)
        assert sims.shape == (zip_fit.n_obs, 4)
        assert np.all(sims >= 0)
        np.testing.assert_array_equal(sims, np.round(sims))

    def test_seed_reproducible(self, poisson_fit):
        np.testing.assert_array_equal(poisson_fit.simulate(2, seed=5),
                                      poisson_fit.simulate(2, seed=5))
        assert not np.array_equal(poisson_fit.simulate(2, seed=5),
                                  poisson_fit.simulate(2, seed=6))

    def test_zero_share_matches_data(self, zip_data, zip_fit):
        sims = zip_fit.simulate(50, seed=1)
        observed = np.mean(zip_data['y'] == 0)
        assert np.mean(sims == 0) == pytest.approx(observed, abs=0.05)

    def test_parameter_uncertainty_and_random_effects(self, poisson_fit):
        sims = poisson_fit.simulate(3, seed=2, account_for_uncertainty=True,
                                    use_random_effects=True)
        assert sims.shape == (poisson_fit.n_obs, 3)

    def test_requires_simulate(self, poisson_data, problem_factory):
        family = UserFamily(lambda y, eta, phis, eta_zi: stats.poisson.logpmf(y, np.exp(eta)))
        problem = problem_factory(poisson_data, family)
        theta = problem['parameterization'].encode(np.array([[0.4]]))
        estimates = problem['layout'].pack([0.5, 0.3], [], [], theta)
        with pytest.raises(FamilyContractError, match="simulate"):
            simulate_responses(family, problem['design'], problem['layout'],
                               problem['parameterization'], estimates, 2)

    def test_invalid_n_sim(self, poisson_fit):
        with pytest.raises(ValidationError, match="n_sim"):
            poisson_fit.simulate(0)
