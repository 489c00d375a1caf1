"""
Tests for outcome families, link functions and the family resolver.

Validates:
    - Every count family's probabilities sum to one
    - Analytic scores agree with central differences of log_dens
    - The hurdle log-normal density against scipy.stats
    - Capability reporting and the UserFamily contract
    - Response validation and simulation
"""

import numpy as np
import pytest
from scipy import stats
from scipy.special import expit

from zimixed.core.capabilities import (
    CAPABILITY_MARGINAL_MEAN,
    CAPABILITY_SCORE_ETA,
    CAPABILITY_SCORE_ETA_ZI,
    CAPABILITY_SIMULATE,
)
from zimixed.core.exceptions import DataError, FamilyContractError
from zimixed.families import (
    HurdleLogNormal,
    HurdleNegativeBinomial,
    HurdlePoisson,
    IdentityLink,
    LogitLink,
    LogLink,
    NegativeBinomial,
    Poisson,
    UserFamily,
    ZeroInflatedNegativeBinomial,
    ZeroInflatedPoisson,
    resolve_family,
)


COUNT_FAMILIES = [
    (Poisson(), np.array([])),
    (NegativeBinomial(), np.array([np.log(2.5)])),
    (ZeroInflatedPoisson(), np.array([])),
    (ZeroInflatedNegativeBinomial(), np.array([np.log(1.5)])),
    (HurdlePoisson(), np.array([])),
    (HurdleNegativeBinomial(), np.array([np.log(0.8)])),
]


def _eta_zi(family, n, value=-0.4):
    return np.full(n, value) if family.has_zero_part else None


# ═══════════════════════════════════════════════════════════════════════
# Links and resolver
# ═══════════════════════════════════════════════════════════════════════


class TestLinks:

    @pytest.mark.parametrize("link", [IdentityLink(), LogitLink(), LogLink()])
    def test_linkinv_inverts_link(self, link):
        mu = np.array([0.1, 0.4, 0.7])
        np.testing.assert_allclose(link.linkinv(link.link(mu)), mu, rtol=1e-10)

    def test_unknown_link_raises(self):
        with pytest.raises(ValueError, match="Unknown link"):
            Poisson(link='probit')


class TestResolveFamily:

    @pytest.mark.parametrize("name,cls", [
        ('poisson', Poisson),
        ('nb', NegativeBinomial),
        ('zip', ZeroInflatedPoisson),
        ('zinb', ZeroInflatedNegativeBinomial),
        ('zero_inflated_poisson', ZeroInflatedPoisson),
        ('hurdle.lognormal', HurdleLogNormal),
        ('hurdle-poisson', HurdlePoisson),
        ('Hurdle_Negative_Binomial', HurdleNegativeBinomial),
    ])
    def test_names_and_aliases(self, name, cls):
        assert isinstance(resolve_family(name), cls)

    def test_instance_passes_through(self):
        fam = ZeroInflatedPoisson()
        assert resolve_family(fam) is fam

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Valid families"):
            resolve_family('zero_inflated_binomial')

    def test_wrong_type(self):
        with pytest.raises(TypeError):
            resolve_family(3)


# ═══════════════════════════════════════════════════════════════════════
# Densities
# ═══════════════════════════════════════════════════════════════════════


class TestDensities:

    @pytest.mark.parametrize("family,phis", COUNT_FAMILIES,
                             ids=lambda f: getattr(f, 'name', None))
    def test_probabilities_sum_to_one(self, family, phis):
        y = np.arange(400, dtype=float)
        eta = np.full(y.shape, 1.2)
        total = np.exp(family.log_dens(y, eta, phis, _eta_zi(family, y.size))).sum()
        assert total == pytest.approx(1.0, abs=1e-10)

    def test_zip_zero_probability(self):
        fam = ZeroInflatedPoisson()
        eta, eta_zi = np.array([0.3]), np.array([-1.0])
        pi, mu = expit(-1.0), np.exp(0.3)
        expected = np.log(pi + (1 - pi) * np.exp(-mu))
        got = fam.log_dens(np.array([0.0]), eta, np.array([]), eta_zi)
        np.testing.assert_allclose(got, [expected], rtol=1e-12)

    def test_hurdle_zero_depends_only_on_zero_part(self):
        fam = HurdlePoisson()
        y = np.zeros(2)
        ld = fam.log_dens(y, np.array([-2.0, 3.0]), np.array([]), np.array([0.5, 0.5]))
        np.testing.assert_allclose(ld, np.log(expit(0.5)) * np.ones(2), rtol=1e-12)

    def test_negative_binomial_matches_scipy(self):
        fam = NegativeBinomial()
        y = np.arange(30, dtype=float)
        eta = np.full(y.shape, 1.5)
        k = 2.5
        mu = np.exp(1.5)
        expected = stats.nbinom.logpmf(y, k, k / (k + mu))
        np.testing.assert_allclose(fam.log_dens(y, eta, np.array([np.log(k)])),
                                   expected, rtol=1e-10)

    def test_hurdle_lognormal_matches_scipy(self):
        fam = HurdleLogNormal()
        y = np.array([0.3, 1.0, 2.7, 12.0])
        eta = np.full(4, 0.4)
        eta_zi = np.full(4, -0.2)
        sigma = 0.7
        expected = (np.log(1 - expit(-0.2))
                    + stats.lognorm.logpdf(y, s=sigma, scale=np.exp(0.4)))
        got = fam.log_dens(y, eta, np.array([np.log(sigma)]), eta_zi)
        np.testing.assert_allclose(got, expected, rtol=1e-10)

    def test_grid_shape_broadcasts(self):
        """A (K, n) grid of predictors evaluates in one call."""
        fam = ZeroInflatedNegativeBinomial()
        y = np.array([0.0, 2.0, 5.0])
        eta = np.linspace(-1, 1, 12).reshape(4, 3)
        out = fam.log_dens(y, eta, np.array([0.2]), eta - 0.5)
        assert out.shape == (4, 3)


# ═══════════════════════════════════════════════════════════════════════
# Scores
# ═══════════════════════════════════════════════════════════════════════


SCORE_CASES = [
    (Poisson(), np.array([])),
    (NegativeBinomial(), np.array([0.3])),
    (ZeroInflatedPoisson(), np.array([])),
    (ZeroInflatedNegativeBinomial(), np.array([-0.2])),
    (HurdlePoisson(), np.array([])),
    (HurdleNegativeBinomial(), np.array([0.5])),
    (HurdleLogNormal(), np.array([-0.3])),
]


class TestScores:

    @pytest.fixture
    def data(self):
        y = np.array([0.0, 0.0, 1.0, 2.0, 4.0, 7.0])
        eta = np.array([-0.5, 0.8, 0.1, 1.1, 1.4, 1.9])
        eta_zi = np.array([-1.2, 0.4, -0.3, 0.0, -2.0, 0.7])
        return {'y': y, 'eta': eta, 'eta_zi': eta_zi}

    @staticmethod
    def _zi(family, data):
        return data['eta_zi'] if family.has_zero_part else None

    @pytest.mark.parametrize("family,phis", SCORE_CASES, ids=lambda f: getattr(f, 'name', None))
    def test_score_eta(self, family, phis, data):
        y, eta, eta_zi = data['y'], data['eta'], self._zi(family, data)
        h = 1e-6
        numeric = (family.log_dens(y, eta + h, phis, eta_zi)
                   - family.log_dens(y, eta - h, phis, eta_zi)) / (2 * h)
        np.testing.assert_allclose(family.score_eta(y, eta, phis, eta_zi), numeric,
                                   rtol=1e-6, atol=1e-7)

    @pytest.mark.parametrize("family,phis",
                             [c for c in SCORE_CASES if c[0].has_zero_part],
                             ids=lambda f: getattr(f, 'name', None))
    def test_score_eta_zi(self, family, phis, data):
        y, eta, eta_zi = data['y'], data['eta'], data['eta_zi']
        h = 1e-6
        numeric = (family.log_dens(y, eta, phis, eta_zi + h)
                   - family.log_dens(y, eta, phis, eta_zi - h)) / (2 * h)
        np.testing.assert_allclose(family.score_eta_zi(y, eta, phis, eta_zi), numeric,
                                   rtol=1e-6, atol=1e-7)

    @pytest.mark.parametrize("family,phis",
                             [c for c in SCORE_CASES if len(c[1])],
                             ids=lambda f: getattr(f, 'name', None))
    def test_score_phis(self, family, phis, data):
        y, eta, eta_zi = data['y'], data['eta'], self._zi(family, data)
        h = 1e-6
        numeric = (family.log_dens(y, eta, phis + h, eta_zi)
                   - family.log_dens(y, eta, phis - h, eta_zi)) / (2 * h)
        got = family.score_phis(y, eta, phis, eta_zi)
        assert got.shape == (y.size, 1)
        np.testing.assert_allclose(got[:, 0], numeric, rtol=1e-6, atol=1e-7)


# ═══════════════════════════════════════════════════════════════════════
# Capabilities and the user-defined family
# ═══════════════════════════════════════════════════════════════════════


def _poisson_log_dens(y, eta, phis, eta_zi):
    return stats.poisson.logpmf(y, np.exp(eta))


class TestCapabilities:

    def test_poisson_has_no_zero_score(self):
        fam = Poisson()
        assert fam.supports(CAPABILITY_SCORE_ETA)
        assert not fam.supports(CAPABILITY_SCORE_ETA_ZI)

    def test_unknown_capability_is_false(self):
        assert not Poisson().supports('hessian')

    def test_missing_capability_raises(self):
        with pytest.raises(FamilyContractError) as exc_info:
            Poisson().score_eta_zi(np.zeros(1), np.zeros(1), np.array([]), np.zeros(1))
        assert exc_info.value.capability == CAPABILITY_SCORE_ETA_ZI

    def test_family_flags(self):
        assert ZeroInflatedPoisson().kind == 'zero_inflated'
        assert not ZeroInflatedPoisson().separable
        assert HurdleNegativeBinomial().separable
        assert HurdleLogNormal().marginal_link == 'identity'
        assert HurdleLogNormal().link.name == 'identity'
        assert NegativeBinomial().default_n_phis == 1


class TestUserFamily:

    def test_log_dens_required(self):
        with pytest.raises(FamilyContractError, match="log_dens"):
            UserFamily(None)

    def test_capabilities_follow_supplied_functions(self):
        fam = UserFamily(_poisson_log_dens, name='my_poisson')
        assert fam.name == 'my_poisson'
        assert fam.kind == 'user'
        assert not fam.supports(CAPABILITY_SCORE_ETA)
        assert not fam.supports(CAPABILITY_SIMULATE)

    def test_missing_simulate_raises(self):
        fam = UserFamily(_poisson_log_dens)
        with pytest.raises(FamilyContractError) as exc_info:
            fam.simulate(3, np.ones(3), np.array([]), None, np.random.default_rng(0))
        assert exc_info.value.capability == CAPABILITY_SIMULATE

    def test_supplied_functions_are_called(self):
        fam = UserFamily(
            _poisson_log_dens,
            marginal_mean=lambda eta, phis, eta_zi: np.exp(eta),
        )
        assert fam.supports(CAPABILITY_MARGINAL_MEAN)
        np.testing.assert_allclose(fam.marginal_mean(np.zeros(2), np.array([])), 1.0)
        np.testing.assert_allclose(
            fam.log_dens(np.array([2.0]), np.array([0.0]), np.array([])),
            stats.poisson.logpmf([2.0], 1.0),
        )

    def test_user_family_allows_negative_outcomes(self):
        fam = UserFamily(_poisson_log_dens)
        fam.validate_response(np.array([-1.0, 0.5]))

    def test_integer_response_flag(self):
        fam = UserFamily(_poisson_log_dens, integer_response=True)
        with pytest.raises(DataError, match="integer-valued"):
            fam.validate_response(np.array([0.5]))


# ═══════════════════════════════════════════════════════════════════════
# Response validation and simulation
# ═══════════════════════════════════════════════════════════════════════


class TestValidateResponse:

    def test_negative_outcome(self):
        with pytest.raises(DataError, match="non-negative"):
            ZeroInflatedPoisson().validate_response(np.array([0.0, -1.0]))

    def test_non_integer_count(self):
        with pytest.raises(DataError, match="integer-valued"):
            HurdlePoisson().validate_response(np.array([0.0, 1.5]))

    def test_lognormal_accepts_continuous(self):
        HurdleLogNormal().validate_response(np.array([0.0, 0.25, 3.7]))


class TestSimulate:

    def test_zip_mean(self):
        fam = ZeroInflatedPoisson()
        rng = np.random.default_rng(0)
        n = 200_000
        draws = fam.simulate(n, np.full(n, 3.0), np.array([]), np.full(n, 0.0), rng)
        assert draws.mean() == pytest.approx(0.5 * 3.0, rel=0.02)
        assert np.mean(draws == 0) == pytest.approx(0.5 + 0.5 * np.exp(-3.0), abs=0.01)

    @pytest.mark.parametrize("family,phis", [
        (HurdlePoisson(), np.array([])),
        (HurdleNegativeBinomial(), np.array([0.0])),
    ])
    def test_hurdle_zero_share(self, family, phis):
        rng = np.random.default_rng(1)
        n = 100_000
        draws = family.simulate(n, np.full(n, 0.4), phis, np.full(n, -1.0), rng)
        assert np.mean(draws == 0) == pytest.approx(expit(-1.0), abs=0.01)
        assert np.all(draws[draws > 0] >= 1)

    def test_hurdle_poisson_positive_mean(self):
        fam = HurdlePoisson()
        rng = np.random.default_rng(2)
        n = 100_000
        eta = np.full(n, np.log(1.5))
        draws = fam.simulate(n, np.exp(eta), np.array([]), np.full(n, -50.0), rng)
        expected = fam.marginal_mean(eta[:1], np.array([]), np.array([-50.0]))[0]
        assert draws.mean() == pytest.approx(expected, rel=0.02)

    def test_simulate_is_seeded(self):
        fam = ZeroInflatedNegativeBinomial()
        a = fam.simulate(50, np.full(50, 2.0), np.array([0.0]), np.zeros(50),
                         np.random.default_rng(7))
        b = fam.simulate(50, np.full(50, 2.0), np.array([0.0]), np.zeros(50),
                         np.random.default_rng(7))
        np.testing.assert_array_equal(a, b)
