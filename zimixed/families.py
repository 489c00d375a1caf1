"""
Outcome families and link functions for zero-inflated / hurdle mixed models.

Each Family supplies the per-observation log-density of the outcome given
the two linear predictors of the model:

    eta     non-zero (count / positive) part, mapped to the mean by ``link``
    eta_zi  zero part, mapped to the extra-zero probability by the logit

and, optionally, analytic scores, a simulator and the unconditional mean.
Which optional pieces a family provides is advertised through
``supports()`` with the constants of ``zimixed.core.capabilities``; the
engine falls back to numerical differentiation for missing scores and
refuses operations that need a missing simulator.

Dispersion parameters ``phis`` are always on an unconstrained (log) scale:
the negative binomial carries ``log(size)``, the log-normal ``log(sigma)``.

Array conventions: ``y`` has shape (n,); ``eta`` and ``eta_zi`` have shape
(..., n) so that a whole quadrature grid (K, n) can be evaluated in one
call. ``score_phis`` returns shape (..., n, n_phis).

References:
    Lambert, D. (1992). Zero-inflated Poisson regression.
    Technometrics, 34(1), 1-14.
    Mullahy, J. (1986). Specification and testing of some modified
    count data models. Journal of Econometrics, 33(3), 341-365.
    Rizopoulos, D. GLMMadaptive: Generalized Linear Mixed Models using
    Adaptive Gaussian Quadrature. R package.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

import numpy as np
from numpy.typing import NDArray
from scipy import stats
from scipy.special import digamma, expit, gammaln

from zimixed.core.capabilities import (
    CAPABILITY_LOG_DENS,
    CAPABILITY_SCORE_ETA,
    CAPABILITY_SCORE_ETA_ZI,
    CAPABILITY_SCORE_PHIS,
    CAPABILITY_SIMULATE,
    CAPABILITY_MARGINAL_MEAN,
)
from zimixed.core.exceptions import DataError, FamilyContractError


# =====================================================================
# Link functions
# =====================================================================

class Link(ABC):
    """Abstract link function g(μ) mapping mean to linear predictor."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def link(self, mu: NDArray) -> NDArray:
        """g(μ) → η."""
        ...

    @abstractmethod
    def linkinv(self, eta: NDArray) -> NDArray:
        """g⁻¹(η) → μ."""
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class IdentityLink(Link):
    """Identity link: g(μ) = μ."""

    @property
    def name(self) -> str:
        return 'identity'

    def link(self, mu: NDArray) -> NDArray:
        return np.array(mu, dtype=np.float64, copy=True)

    def linkinv(self, eta: NDArray) -> NDArray:
        return np.array(eta, dtype=np.float64, copy=True)


class LogitLink(Link):
    """Logit link: g(μ) = log(μ/(1-μ)). Used for the zero part."""

    @property
    def name(self) -> str:
        return 'logit'

    def link(self, mu: NDArray) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        return np.log(mu / (1 - mu))

    def linkinv(self, eta: NDArray) -> NDArray:
        return expit(eta)


class LogLink(Link):
    """Log link: g(μ) = log(μ). Default for count families."""

    @property
    def name(self) -> str:
        return 'log'

    def link(self, mu: NDArray) -> NDArray:
        return np.log(np.maximum(mu, 1e-10))

    def linkinv(self, eta: NDArray) -> NDArray:
        # Clip to prevent overflow
        return np.exp(np.clip(eta, -500, 500))


_LINK_CLASSES: dict[str, type[Link]] = {
    'identity': IdentityLink,
    'logit': LogitLink,
    'log': LogLink,
}


def _resolve_link(link: str | Link | None, default: Link) -> Link:
    """Resolve a link argument to a Link instance."""
    if link is None:
        return default
    if isinstance(link, Link):
        return link
    if isinstance(link, str):
        cls = _LINK_CLASSES.get(link.lower())
        if cls is None:
            valid = ', '.join(sorted(_LINK_CLASSES.keys()))
            raise ValueError(f"Unknown link: {link!r}. Valid links: {valid}")
        return cls()
    raise TypeError(f"link must be str or Link, got {type(link).__name__}")


# =====================================================================
# Shared numerics
# =====================================================================

def _log_pi(eta_zi: NDArray) -> NDArray:
    """log π with π = logistic(η_zi), stable for large |η_zi|."""
    return -np.logaddexp(0.0, -eta_zi)


def _log_one_minus_pi(eta_zi: NDArray) -> NDArray:
    """log(1 - π) with π = logistic(η_zi)."""
    return -np.logaddexp(0.0, eta_zi)


def _safe_eta(eta: NDArray) -> NDArray:
    return np.clip(eta, -500.0, 500.0)


def _nb_log_ratio(eta: NDArray, log_k: float) -> tuple[NDArray, NDArray]:
    """Return log(k/(k+μ)) and log(μ/(k+μ)) for μ = exp(η)."""
    log_k_mu = np.logaddexp(log_k, eta)
    return log_k - log_k_mu, eta - log_k_mu


def _nb_logpmf(y: NDArray, eta: NDArray, log_k: float) -> NDArray:
    k = np.exp(log_k)
    log_p0, log_p1 = _nb_log_ratio(eta, log_k)
    return (gammaln(y + k) - gammaln(k) - gammaln(y + 1.0)
            + k * log_p0 + y * log_p1)


def _nb_score_eta(y: NDArray, eta: NDArray, log_k: float) -> NDArray:
    k = np.exp(log_k)
    mu = np.exp(_safe_eta(eta))
    return k * (y - mu) / (k + mu)


def _nb_score_log_k(y: NDArray, eta: NDArray, log_k: float) -> NDArray:
    k = np.exp(log_k)
    mu = np.exp(_safe_eta(eta))
    log_p0, _ = _nb_log_ratio(eta, log_k)
    return k * (digamma(y + k) - digamma(k) + log_p0 + 1.0 - (y + k) / (k + mu))


def _nb_log_zero(eta: NDArray, log_k: float) -> NDArray:
    """log P(Y = 0) = k log(k/(k+μ))."""
    k = np.exp(log_k)
    log_p0, _ = _nb_log_ratio(eta, log_k)
    return k * log_p0


def _nb_dlog_zero_deta(eta: NDArray, log_k: float) -> NDArray:
    k = np.exp(log_k)
    mu = np.exp(_safe_eta(eta))
    return -k * mu / (k + mu)


def _nb_dlog_zero_dlog_k(eta: NDArray, log_k: float) -> NDArray:
    k = np.exp(log_k)
    mu = np.exp(_safe_eta(eta))
    log_p0, _ = _nb_log_ratio(eta, log_k)
    return k * (log_p0 + 1.0 - k / (k + mu))


def _log1mexp(a: NDArray) -> NDArray:
    """log(1 - exp(a)) for a < 0."""
    return np.log(-np.expm1(np.minimum(a, -1e-300)))


def _is_integer_valued(y: NDArray) -> bool:
    return bool(np.all(np.abs(y - np.round(y)) < 1e-8))


# =====================================================================
# Family base class
# =====================================================================

class Family(ABC):
    """
    Outcome distribution for a (zero-inflated / hurdle) mixed model.

    Class attributes describe the structure the engine relies on:

        kind: 'standard', 'zero_inflated', 'hurdle' or 'user'
        has_zero_part: whether ``eta_zi`` enters the density
        separable: whether log_dens splits additively into a term in
            ``eta`` and a term in ``eta_zi`` (true for hurdle models)
        default_n_phis: number of dispersion parameters
        marginal_link: link on which marginalized coefficients are reported
        integer_response: whether the outcome must be a count
        capabilities: which optional functions are implemented
    """

    kind: str = 'standard'
    has_zero_part: bool = False
    separable: bool = False
    default_n_phis: int = 0
    marginal_link: str = 'log'
    integer_response: bool = True
    capabilities: frozenset[str] = frozenset({CAPABILITY_LOG_DENS})

    def __init__(self, link: str | Link | None = None):
        self._link = _resolve_link(link, self._default_link())

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    def _default_link(self) -> Link:
        return LogLink()

    @property
    def link(self) -> Link:
        return self._link

    def supports(self, capability: str) -> bool:
        """Check whether this family implements an optional capability.

        Unknown capabilities return False, never raise.
        """
        return capability in self.capabilities

    @abstractmethod
    def log_dens(
        self, y: NDArray, eta: NDArray, phis: NDArray,
        eta_zi: NDArray | None = None,
    ) -> NDArray:
        """Log-density of each observation, shape broadcast(eta)."""
        ...

    def _missing(self, capability: str):
        raise FamilyContractError(
            f"Family {self.name!r} does not provide {capability!r}",
            capability=capability,
            family_name=self.name,
        )

    def score_eta(self, y, eta, phis, eta_zi=None) -> NDArray:
        """∂ log_dens / ∂η, element-wise."""
        self._missing(CAPABILITY_SCORE_ETA)

    def score_eta_zi(self, y, eta, phis, eta_zi=None) -> NDArray:
        """∂ log_dens / ∂η_zi, element-wise."""
        self._missing(CAPABILITY_SCORE_ETA_ZI)

    def score_phis(self, y, eta, phis, eta_zi=None) -> NDArray:
        """∂ log_dens / ∂φ, shape (..., n, n_phis)."""
        self._missing(CAPABILITY_SCORE_PHIS)

    def simulate(self, n: int, mu: NDArray, phis: NDArray,
                 eta_zi: NDArray | None, rng: np.random.Generator) -> NDArray:
        """Draw n outcomes given the conditional means and zero-part predictor."""
        self._missing(CAPABILITY_SIMULATE)

    def marginal_mean(self, eta: NDArray, phis: NDArray,
                      eta_zi: NDArray | None = None) -> NDArray:
        """(1 - π) × E(Y | non-zero part), or its family-specific transform."""
        self._missing(CAPABILITY_MARGINAL_MEAN)

    def validate_response(self, y: NDArray) -> None:
        """Reject outcomes outside the support of the family."""
        if np.any(y < 0):
            raise DataError(
                f"Family {self.name!r} requires non-negative outcomes, "
                f"got minimum {float(np.min(y))}"
            )
        if self.integer_response and not _is_integer_valued(y):
            raise DataError(
                f"Family {self.name!r} requires integer-valued (count) outcomes"
            )

    def initial_phis(self, y: NDArray, n_phis: int) -> NDArray:
        """Starting values for the dispersion parameters."""
        return np.zeros(n_phis, dtype=np.float64)

    def response_on_link_scale(self, y: NDArray) -> NDArray:
        """Positive outcomes transformed to the scale of η (for starting values)."""
        return self.link.link(y[y > 0])

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(link={self._link.name!r})"


# =====================================================================
# Standard count families
# =====================================================================

class Poisson(Family):
    """Poisson family. Default link: log.

    log f(y) = y η - exp(η) - log(y!)
    """

    capabilities = frozenset({
        CAPABILITY_LOG_DENS, CAPABILITY_SCORE_ETA,
        CAPABILITY_SIMULATE, CAPABILITY_MARGINAL_MEAN,
    })

    @property
    def name(self) -> str:
        return 'poisson'

    def log_dens(self, y, eta, phis, eta_zi=None):
        eta = _safe_eta(eta)
        return y * eta - np.exp(eta) - gammaln(y + 1.0)

    def score_eta(self, y, eta, phis, eta_zi=None):
        return y - np.exp(_safe_eta(eta))

    def simulate(self, n, mu, phis, eta_zi, rng):
        return rng.poisson(mu, size=n).astype(np.float64)

    def marginal_mean(self, eta, phis, eta_zi=None):
        return np.exp(_safe_eta(eta))


class NegativeBinomial(Family):
    """Negative binomial family (NB2). Default link: log.

    Var(Y) = μ + μ²/k with phis = [log k].
    """

    default_n_phis = 1
    capabilities = frozenset({
        CAPABILITY_LOG_DENS, CAPABILITY_SCORE_ETA, CAPABILITY_SCORE_PHIS,
        CAPABILITY_SIMULATE, CAPABILITY_MARGINAL_MEAN,
    })

    @property
    def name(self) -> str:
        return 'negative_binomial'

    def log_dens(self, y, eta, phis, eta_zi=None):
        return _nb_logpmf(y, _safe_eta(eta), phis[0])

    def score_eta(self, y, eta, phis, eta_zi=None):
        return _nb_score_eta(y, eta, phis[0])

    def score_phis(self, y, eta, phis, eta_zi=None):
        return _nb_score_log_k(y, _safe_eta(eta), phis[0])[..., np.newaxis]

    def simulate(self, n, mu, phis, eta_zi, rng):
        k = np.exp(phis[0])
        return rng.negative_binomial(k, k / (k + mu), size=n).astype(np.float64)

    def marginal_mean(self, eta, phis, eta_zi=None):
        return np.exp(_safe_eta(eta))


# =====================================================================
# Zero-inflated families
# =====================================================================

class _ZeroInflatedFamily(Family):
    """Mixture of a point mass at zero (probability π) and a count law.

    y = 0:  log(π + (1-π) f(0))
    y > 0:  log(1-π) + log f(y)

    Subclasses provide the base distribution through the ``_base_*`` hooks.
    """

    kind = 'zero_inflated'
    has_zero_part = True
    capabilities = frozenset({
        CAPABILITY_LOG_DENS, CAPABILITY_SCORE_ETA, CAPABILITY_SCORE_ETA_ZI,
        CAPABILITY_SCORE_PHIS, CAPABILITY_SIMULATE, CAPABILITY_MARGINAL_MEAN,
    })

    @abstractmethod
    def _base_logpmf(self, y, eta, phis): ...

    @abstractmethod
    def _base_log_zero(self, eta, phis): ...

    @abstractmethod
    def _base_score_eta(self, y, eta, phis): ...

    @abstractmethod
    def _base_dlog_zero_deta(self, eta, phis): ...

    @abstractmethod
    def _base_draw(self, n, mu, phis, rng): ...

    def _base_score_phis(self, y, eta, phis):
        return np.zeros(np.broadcast(y, eta).shape + (0,))

    def _base_dlog_zero_dphis(self, eta, phis):
        return np.zeros(np.shape(eta) + (0,))

    def _zero_weights(self, eta, phis, eta_zi):
        """Posterior share of the structural-zero component for y = 0."""
        log_a = _log_pi(eta_zi)
        log_b = _log_one_minus_pi(eta_zi) + self._base_log_zero(eta, phis)
        w_a = np.exp(log_a - np.logaddexp(log_a, log_b))
        return w_a, 1.0 - w_a

    def log_dens(self, y, eta, phis, eta_zi=None):
        eta = _safe_eta(eta)
        log_1m = _log_one_minus_pi(eta_zi)
        zero = np.logaddexp(_log_pi(eta_zi), log_1m + self._base_log_zero(eta, phis))
        positive = log_1m + self._base_logpmf(y, eta, phis)
        return np.where(y == 0, zero, positive)

    def score_eta(self, y, eta, phis, eta_zi=None):
        eta = _safe_eta(eta)
        _, w_b = self._zero_weights(eta, phis, eta_zi)
        zero = w_b * self._base_dlog_zero_deta(eta, phis)
        return np.where(y == 0, zero, self._base_score_eta(y, eta, phis))

    def score_eta_zi(self, y, eta, phis, eta_zi=None):
        eta = _safe_eta(eta)
        pi = expit(eta_zi)
        w_a, w_b = self._zero_weights(eta, phis, eta_zi)
        zero = w_a * (1.0 - pi) - w_b * pi
        return np.where(y == 0, zero, -pi)

    def score_phis(self, y, eta, phis, eta_zi=None):
        eta = _safe_eta(eta)
        _, w_b = self._zero_weights(eta, phis, eta_zi)
        zero = w_b[..., np.newaxis] * self._base_dlog_zero_dphis(eta, phis)
        positive = self._base_score_phis(y, eta, phis)
        return np.where((y == 0)[..., np.newaxis], zero, positive)

    def simulate(self, n, mu, phis, eta_zi, rng):
        structural_zero = rng.random(n) < expit(eta_zi)
        draws = self._base_draw(n, mu, phis, rng)
        return np.where(structural_zero, 0.0, draws)

    def marginal_mean(self, eta, phis, eta_zi=None):
        return (1.0 - expit(eta_zi)) * np.exp(_safe_eta(eta))


class ZeroInflatedPoisson(_ZeroInflatedFamily):
    """Zero-inflated Poisson (Lambert, 1992)."""

    @property
    def name(self) -> str:
        return 'zero_inflated_poisson'

    def _base_logpmf(self, y, eta, phis):
        return y * eta - np.exp(eta) - gammaln(y + 1.0)

    def _base_log_zero(self, eta, phis):
        return -np.exp(eta)

    def _base_score_eta(self, y, eta, phis):
        return y - np.exp(eta)

    def _base_dlog_zero_deta(self, eta, phis):
        return -np.exp(eta)

    def _base_draw(self, n, mu, phis, rng):
        return rng.poisson(mu, size=n).astype(np.float64)


class ZeroInflatedNegativeBinomial(_ZeroInflatedFamily):
    """Zero-inflated negative binomial with phis = [log k]."""

    default_n_phis = 1

    @property
    def name(self) -> str:
        return 'zero_inflated_negative_binomial'

    def _base_logpmf(self, y, eta, phis):
        return _nb_logpmf(y, eta, phis[0])

    def _base_log_zero(self, eta, phis):
        return _nb_log_zero(eta, phis[0])

    def _base_score_eta(self, y, eta, phis):
        return _nb_score_eta(y, eta, phis[0])

    def _base_dlog_zero_deta(self, eta, phis):
        return _nb_dlog_zero_deta(eta, phis[0])

    def _base_score_phis(self, y, eta, phis):
        return _nb_score_log_k(y, eta, phis[0])[..., np.newaxis]

    def _base_dlog_zero_dphis(self, eta, phis):
        return _nb_dlog_zero_dlog_k(eta, phis[0])[..., np.newaxis]

    def _base_draw(self, n, mu, phis, rng):
        k = np.exp(phis[0])
        return rng.negative_binomial(k, k / (k + mu), size=n).astype(np.float64)


# =====================================================================
# Hurdle (two-part) families
# =====================================================================

class _HurdleFamily(Family):
    """Two-part model: zero with probability π, otherwise a positive law.

    y = 0:  log π
    y > 0:  log(1-π) + log f₊(y)

    The log-density is a sum of a term in η_zi and a term in η, which is
    what ``separable = True`` promises to the integrator.
    """

    kind = 'hurdle'
    has_zero_part = True
    separable = True
    capabilities = frozenset({
        CAPABILITY_LOG_DENS, CAPABILITY_SCORE_ETA, CAPABILITY_SCORE_ETA_ZI,
        CAPABILITY_SCORE_PHIS, CAPABILITY_SIMULATE, CAPABILITY_MARGINAL_MEAN,
    })

    @abstractmethod
    def _positive_log_dens(self, y, eta, phis): ...

    @abstractmethod
    def _positive_score_eta(self, y, eta, phis): ...

    @abstractmethod
    def _positive_draw(self, n, mu, phis, rng): ...

    @abstractmethod
    def _positive_mean(self, eta, phis): ...

    def _positive_score_phis(self, y, eta, phis):
        return np.zeros(np.broadcast(y, eta).shape + (0,))

    def log_dens(self, y, eta, phis, eta_zi=None):
        eta = _safe_eta(eta)
        positive = _log_one_minus_pi(eta_zi) + self._positive_log_dens(y, eta, phis)
        return np.where(y == 0, _log_pi(eta_zi) + 0.0 * eta, positive)

    def score_eta(self, y, eta, phis, eta_zi=None):
        eta = _safe_eta(eta)
        return np.where(y == 0, 0.0, self._positive_score_eta(y, eta, phis))

    def score_eta_zi(self, y, eta, phis, eta_zi=None):
        pi = expit(eta_zi)
        return np.where(y == 0, 1.0 - pi, -pi) + 0.0 * eta

    def score_phis(self, y, eta, phis, eta_zi=None):
        eta = _safe_eta(eta)
        s = self._positive_score_phis(y, eta, phis)
        return np.where((y == 0)[..., np.newaxis], 0.0, s)

    def simulate(self, n, mu, phis, eta_zi, rng):
        is_zero = rng.random(n) < expit(eta_zi)
        return np.where(is_zero, 0.0, self._positive_draw(n, mu, phis, rng))

    def marginal_mean(self, eta, phis, eta_zi=None):
        return (1.0 - expit(eta_zi)) * self._positive_mean(_safe_eta(eta), phis)


class HurdlePoisson(_HurdleFamily):
    """Poisson hurdle: zero-truncated Poisson for the positive counts."""

    @property
    def name(self) -> str:
        return 'hurdle_poisson'

    def _positive_log_dens(self, y, eta, phis):
        mu = np.exp(eta)
        return y * eta - mu - gammaln(y + 1.0) - np.log(-np.expm1(-mu))

    def _positive_score_eta(self, y, eta, phis):
        mu = np.exp(eta)
        return y - mu / (-np.expm1(-mu))

    def _positive_draw(self, n, mu, phis, rng):
        # Inverse CDF restricted to (P(0), 1]
        p0 = np.exp(-mu)
        u = p0 + rng.random(n) * (1.0 - p0)
        return np.maximum(stats.poisson.ppf(u, mu), 1.0)

    def _positive_mean(self, eta, phis):
        mu = np.exp(eta)
        return mu / (-np.expm1(-mu))


class HurdleNegativeBinomial(_HurdleFamily):
    """Negative binomial hurdle with phis = [log k]."""

    default_n_phis = 1

    @property
    def name(self) -> str:
        return 'hurdle_negative_binomial'

    def _positive_log_dens(self, y, eta, phis):
        log_f0 = _nb_log_zero(eta, phis[0])
        return _nb_logpmf(y, eta, phis[0]) - _log1mexp(log_f0)

    def _truncation_ratio(self, eta, phis):
        # f(0) / (1 - f(0))
        log_f0 = _nb_log_zero(eta, phis[0])
        return 1.0 / np.expm1(-np.minimum(log_f0, -1e-300))

    def _positive_score_eta(self, y, eta, phis):
        ratio = self._truncation_ratio(eta, phis)
        return (_nb_score_eta(y, eta, phis[0])
                + ratio * _nb_dlog_zero_deta(eta, phis[0]))

    def _positive_score_phis(self, y, eta, phis):
        ratio = self._truncation_ratio(eta, phis)
        s = (_nb_score_log_k(y, eta, phis[0])
             + ratio * _nb_dlog_zero_dlog_k(eta, phis[0]))
        return s[..., np.newaxis]

    def _positive_draw(self, n, mu, phis, rng):
        k = np.exp(phis[0])
        p = k / (k + mu)
        p0 = p ** k
        u = p0 + rng.random(n) * (1.0 - p0)
        return np.maximum(stats.nbinom.ppf(u, k, p), 1.0)

    def _positive_mean(self, eta, phis):
        log_f0 = _nb_log_zero(eta, phis[0])
        return np.exp(eta) / -np.expm1(np.minimum(log_f0, -1e-300))


class HurdleLogNormal(_HurdleFamily):
    """Two-part log-normal: log(Y) | Y > 0 ~ N(η, σ²), phis = [log σ].

    The marginalized quantity is (1 - π) × E(log Y | Y > 0), reported on
    the identity scale.
    """

    default_n_phis = 1
    marginal_link = 'identity'
    integer_response = False

    @property
    def name(self) -> str:
        return 'hurdle_lognormal'

    def _default_link(self) -> Link:
        return IdentityLink()

    @staticmethod
    def _log_y(y):
        return np.log(np.where(y > 0, y, 1.0))

    def _positive_log_dens(self, y, eta, phis):
        log_sigma = phis[0]
        z = (self._log_y(y) - eta) * np.exp(-log_sigma)
        return -self._log_y(y) - log_sigma - 0.5 * np.log(2.0 * np.pi) - 0.5 * z ** 2

    def _positive_score_eta(self, y, eta, phis):
        return (self._log_y(y) - eta) * np.exp(-2.0 * phis[0])

    def _positive_score_phis(self, y, eta, phis):
        z2 = (self._log_y(y) - eta) ** 2 * np.exp(-2.0 * phis[0])
        return (z2 - 1.0)[..., np.newaxis]

    def _positive_draw(self, n, mu, phis, rng):
        return np.exp(rng.normal(mu, np.exp(phis[0]), size=n))

    def _positive_mean(self, eta, phis):
        return eta

    def initial_phis(self, y, n_phis):
        log_y = np.log(y[y > 0])
        sd = np.std(log_y) if log_y.size > 1 else 1.0
        return np.full(n_phis, np.log(max(sd, 1e-2)))

    def response_on_link_scale(self, y):
        return np.log(y[y > 0])


# =====================================================================
# User-defined family
# =====================================================================

class UserFamily(Family):
    """Family assembled from user-supplied functions.

    Only ``log_dens`` is mandatory. Scores that are not supplied are
    approximated numerically by the engine; ``simulate`` and
    ``marginal_mean`` are required only by the operations that use them.

    Args:
        log_dens: ``f(y, eta, phis, eta_zi) -> log-density per observation``.
        score_eta, score_eta_zi, score_phis: Optional analytic derivatives
            with the same signature.
        simulate: Optional ``f(n, mu, phis, eta_zi, rng) -> draws``.
        marginal_mean: Optional ``f(eta, phis, eta_zi) -> E(Y)``.
        n_phis: Number of dispersion parameters.
        has_zero_part: Whether ``eta_zi`` enters the density.
        separable: Whether log_dens is additive in η and η_zi.
        link: Link of the non-zero part.
        marginal_link: Link used for marginalized coefficients.
        integer_response: Whether outcomes must be counts.
        name: Display name.
    """

    kind = 'user'

    def __init__(
        self,
        log_dens: Callable | None,
        *,
        score_eta: Callable | None = None,
        score_eta_zi: Callable | None = None,
        score_phis: Callable | None = None,
        simulate: Callable | None = None,
        marginal_mean: Callable | None = None,
        n_phis: int = 0,
        has_zero_part: bool = False,
        separable: bool = False,
        link: str | Link | None = None,
        marginal_link: str = 'log',
        integer_response: bool = False,
        name: str = 'user_defined',
    ):
        if log_dens is None or not callable(log_dens):
            raise FamilyContractError(
                "A user-defined family must supply a callable log_dens",
                capability=CAPABILITY_LOG_DENS,
                family_name=name,
            )
        super().__init__(link)
        self._name = name
        self._funcs = {
            CAPABILITY_LOG_DENS: log_dens,
            CAPABILITY_SCORE_ETA: score_eta,
            CAPABILITY_SCORE_ETA_ZI: score_eta_zi,
            CAPABILITY_SCORE_PHIS: score_phis,
            CAPABILITY_SIMULATE: simulate,
            CAPABILITY_MARGINAL_MEAN: marginal_mean,
        }
        self.capabilities = frozenset(
            cap for cap, fn in self._funcs.items() if fn is not None
        )
        self.default_n_phis = int(n_phis)
        self.has_zero_part = bool(has_zero_part)
        self.separable = bool(separable)
        self.marginal_link = marginal_link
        self.integer_response = bool(integer_response)

    @property
    def name(self) -> str:
        return self._name

    def _call(self, capability, *args):
        fn = self._funcs[capability]
        if fn is None:
            self._missing(capability)
        return fn(*args)

    def log_dens(self, y, eta, phis, eta_zi=None):
        return self._call(CAPABILITY_LOG_DENS, y, eta, phis, eta_zi)

    def score_eta(self, y, eta, phis, eta_zi=None):
        return self._call(CAPABILITY_SCORE_ETA, y, eta, phis, eta_zi)

    def score_eta_zi(self, y, eta, phis, eta_zi=None):
        return self._call(CAPABILITY_SCORE_ETA_ZI, y, eta, phis, eta_zi)

    def score_phis(self, y, eta, phis, eta_zi=None):
        return self._call(CAPABILITY_SCORE_PHIS, y, eta, phis, eta_zi)

    def simulate(self, n, mu, phis, eta_zi, rng):
        return self._call(CAPABILITY_SIMULATE, n, mu, phis, eta_zi, rng)

    def marginal_mean(self, eta, phis, eta_zi=None):
        return self._call(CAPABILITY_MARGINAL_MEAN, eta, phis, eta_zi)

    def validate_response(self, y):
        if self.integer_response and not _is_integer_valued(y):
            raise DataError(
                f"Family {self.name!r} requires integer-valued (count) outcomes"
            )


# =====================================================================
# Family name → class mapping + resolver
# =====================================================================

_FAMILY_CLASSES: dict[str, type[Family]] = {
    'poisson': Poisson,
    'negative_binomial': NegativeBinomial,
    'nb': NegativeBinomial,
    'zero_inflated_poisson': ZeroInflatedPoisson,
    'zip': ZeroInflatedPoisson,
    'zero_inflated_negative_binomial': ZeroInflatedNegativeBinomial,
    'zinb': ZeroInflatedNegativeBinomial,
    'hurdle_lognormal': HurdleLogNormal,
    'hurdle_poisson': HurdlePoisson,
    'hurdle_negative_binomial': HurdleNegativeBinomial,
}

_ALIASES = frozenset({'nb', 'zip', 'zinb'})


def resolve_family(family: str | Family) -> Family:
    """Resolve a family argument to a Family instance.

    Args:
        family: A registered name (e.g. 'zero_inflated_poisson', 'zip',
                'hurdle_lognormal'; dots and dashes are accepted in place
                of underscores) or a Family instance (passed through).

    Returns:
        Family instance.

    Raises:
        ValueError: If string name is not recognized.
        TypeError: If argument is neither string nor Family.
    """
    if isinstance(family, Family):
        return family
    if isinstance(family, str):
        key = family.lower().replace('.', '_').replace('-', '_')
        cls = _FAMILY_CLASSES.get(key)
        if cls is None:
            valid = ', '.join(
                sorted(k for k in _FAMILY_CLASSES.keys() if k not in _ALIASES)
            )
            raise ValueError(
                f"Unknown family: {family!r}. Valid families: {valid}"
            )
        return cls()
    raise TypeError(f"family must be str or Family, got {type(family).__name__}")
