"""
Shared fixtures for mixed model tests.

Provides simulated datasets with known structure: a zero-inflated Poisson
longitudinal study, a small Poisson random-intercept dataset and a
two-part log-normal dataset with random effects in both parts.
"""

import numpy as np
import pytest
from scipy.special import expit

from zimixed.families import resolve_family
from zimixed.mixed import mixed_model
from zimixed.mixed._common import FitControl, ParameterLayout
from zimixed.mixed._covariance import CholeskyParameterization
from zimixed.mixed.design import ClusteredDesign


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(2024)


def make_zip_data(seed=2024, n_subjects=100, n_times=8):
    """Zero-inflated Poisson with a random intercept in the count part.

    log μ = 1.5 + 0.05 time + 0.05 sex - 0.03 time:sex + b,  b ~ N(0, 0.5)
    logit π = -1.5 + 0.5 sex
    """
    rng = np.random.default_rng(seed)
    n = n_subjects * n_times
    subject = np.repeat(np.arange(n_subjects), n_times)
    time = np.tile(np.linspace(0, 5, n_times), n_subjects)
    sex = np.repeat(rng.integers(0, 2, n_subjects), n_times).astype(float)

    X = np.column_stack([np.ones(n), time, sex, time * sex])
    X_zi = np.column_stack([np.ones(n), sex])
    Z = np.ones((n, 1))

    betas = np.array([1.5, 0.05, 0.05, -0.03])
    gammas = np.array([-1.5, 0.5])
    D = 0.5

    b = rng.normal(0.0, np.sqrt(D), n_subjects)
    eta = X @ betas + b[subject]
    pi = expit(X_zi @ gammas)
    y = np.where(rng.random(n) < pi, 0.0, rng.poisson(np.exp(eta))).astype(float)

    return {
        'y': y, 'groups': subject, 'X': X, 'Z': Z, 'X_zi': X_zi,
        'betas': betas, 'gammas': gammas, 'D': D,
    }


def make_poisson_data(seed=7, n_clusters=30, n_per=5):
    """Poisson random intercept: log μ = 0.5 + 0.3 x + b, b ~ N(0, 0.4)."""
    rng = np.random.default_rng(seed)
    n = n_clusters * n_per
    groups = np.repeat(np.arange(n_clusters), n_per)
    x = rng.standard_normal(n)
    X = np.column_stack([np.ones(n), x])
    b = rng.normal(0.0, np.sqrt(0.4), n_clusters)
    y = rng.poisson(np.exp(0.5 + 0.3 * x + b[groups])).astype(float)
    return {'y': y, 'groups': groups, 'X': X, 'Z': np.ones((n, 1)),
            'betas': np.array([0.5, 0.3]), 'D': 0.4}


def make_hurdle_lognormal_data(seed=11, n_clusters=40, n_per=6):
    """Two-part log-normal with independent intercepts in both parts."""
    rng = np.random.default_rng(seed)
    n = n_clusters * n_per
    groups = np.repeat(np.arange(n_clusters), n_per)
    x = rng.standard_normal(n)
    X = np.column_stack([np.ones(n), x])
    X_zi = np.ones((n, 1))
    b = rng.normal(0.0, 0.6, n_clusters)
    c = rng.normal(0.0, 0.5, n_clusters)
    zero = rng.random(n) < expit(-0.5 + c[groups])
    positive = np.exp(rng.normal(1.0 + 0.4 * x + b[groups], 0.5))
    y = np.where(zero, 0.0, positive)
    return {'y': y, 'groups': groups, 'X': X, 'Z': np.ones((n, 1)),
            'X_zi': X_zi, 'Z_zi': np.ones((n, 1))}


def build_problem(data, family, structure='unstructured', n_phis=None):
    """Design, layout and parameterization for engine-level tests."""
    family = resolve_family(family)
    design = ClusteredDesign.validate(
        data['y'], data['groups'], data['X'], data['Z'], family,
        data.get('X_zi'), data.get('Z_zi'),
    )
    parameterization = CholeskyParameterization(design.q, structure, q_nz=design.q_nz)
    layout = ParameterLayout(
        p=design.p, p_zi=design.p_zi,
        n_phis=family.default_n_phis if n_phis is None else n_phis,
        n_theta=parameterization.n_params,
    )
    return {
        'family': family, 'design': design,
        'parameterization': parameterization, 'layout': layout,
    }


@pytest.fixture(scope="session")
def zip_data():
    return make_zip_data()


@pytest.fixture(scope="session")
def poisson_data():
    return make_poisson_data()


@pytest.fixture(scope="session")
def hurdle_data():
    return make_hurdle_lognormal_data()


@pytest.fixture(scope="session")
def zip_fit(zip_data):
    d = zip_data
    return mixed_model(d['y'], d['groups'], d['X'], d['Z'],
                       family='zero_inflated_poisson', X_zi=d['X_zi'])


@pytest.fixture(scope="session")
def poisson_fit(poisson_data):
    d = poisson_data
    return mixed_model(d['y'], d['groups'], d['X'], d['Z'], family='poisson')


@pytest.fixture
def small_control():
    """Cheap settings for tests that exercise the optimizer mechanics."""
    return FitControl(quadrature_points=5, max_em_iter=10, max_qn_iter=5)


@pytest.fixture(scope="session")
def problem_factory():
    """Return build_problem for tests that assemble engine pieces by hand."""
    return build_problem


@pytest.fixture(scope="session")
def data_factories():
    return {
        'zip': make_zip_data,
        'poisson': make_poisson_data,
        'hurdle_lognormal': make_hurdle_lognormal_data,
    }
