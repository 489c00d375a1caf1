"""
Inference on a fitted zero-inflated / hurdle mixed model.

    observed_information_vcov   covariance of the estimates from the
                                numerical Hessian of the log-likelihood
    likelihood_ratio_test       comparison of two fits
    marginal_coefficients       population-averaged coefficients
    simulate_responses          replicate outcomes from the fitted model

The covariance matrix is on the unconstrained scale of the parameter
vector [betas, gammas, phis (log), theta (log-Cholesky)].
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from zimixed.core.capabilities import CAPABILITY_MARGINAL_MEAN, CAPABILITY_SIMULATE
from zimixed.core.exceptions import FamilyContractError, ValidationError
from zimixed.families import Family, LogLink, _resolve_link
from zimixed.mixed._assembler import LikelihoodAssembler
from zimixed.mixed._common import ParameterLayout
from zimixed.mixed._covariance import CholeskyParameterization
from zimixed.mixed._integrator import QuadratureState
from zimixed.mixed._quadrature import gauss_hermite_rule, points_for_dimension
from zimixed.mixed.design import ClusteredDesign


# =====================================================================
# Covariance of the estimates
# =====================================================================

def observed_information_vcov(
    assembler: LikelihoodAssembler,
    params: NDArray,
    states: tuple[QuadratureState, ...],
    rel_step: float = 1e-4,
) -> tuple[NDArray, bool]:
    """Inverse observed information at the optimum.

    The Hessian is the central difference of the exact fixed-node
    gradient, symmetrized.

    Returns:
        (vcov, singular): ``singular`` is True when the negative Hessian
        was not positive definite and a pseudo-inverse was used.
    """
    params = np.asarray(params, dtype=np.float64)
    k = params.size
    H = np.empty((k, k))
    for j in range(k):
        h = rel_step * max(1.0, abs(params[j]))
        up = params.copy()
        down = params.copy()
        up[j] += h
        down[j] -= h
        g_up = assembler.assemble(up, states, adapt=False).gradient
        g_down = assembler.assemble(down, states, adapt=False).gradient
        H[:, j] = (g_up - g_down) / (2.0 * h)
    info = -0.5 * (H + H.T)

    try:
        np.linalg.cholesky(info)
    except np.linalg.LinAlgError:
        warnings.warn(
            "Observed information matrix is singular or not positive definite; "
            "using pseudo-inverse. Standard errors may be unreliable.",
            RuntimeWarning,
            stacklevel=3,
        )
        return np.linalg.pinv(info), True
    return np.linalg.inv(info), False


def standard_errors(vcov: NDArray) -> NDArray:
    """Square roots of the variances; NaN where a variance is not positive.

    A pseudo-inverse of a singular information matrix can carry zero or
    negative variances for parameters the data do not identify.
    """
    var = np.diag(np.asarray(vcov, dtype=np.float64))
    se = np.full(var.shape, np.nan)
    positive = var > 0
    se[positive] = np.sqrt(var[positive])
    return se


def wald_tests(estimates: NDArray, se: NDArray) -> tuple[NDArray, NDArray]:
    """z statistics and two-sided p-values."""
    with np.errstate(divide='ignore', invalid='ignore'):
        z = estimates / se
    p = 2.0 * stats.norm.sf(np.abs(z))
    return z, p


# =====================================================================
# Likelihood ratio test
# =====================================================================

@dataclass(frozen=True)
class LRTResult:
    """Likelihood ratio test between two fits.

    Attributes:
        statistic: 2 (ll_full - ll_reduced), clipped at zero.
        df: Difference in the number of parameters.
        p_value: Chi-square p-value; None when the models are not nested.
        loglik_full, loglik_reduced: Log-likelihoods.
        n_params_full, n_params_reduced: Parameter counts.
        nested: Whether the models were declared nested.
    """
    statistic: float
    df: int
    p_value: float | None
    loglik_full: float
    loglik_reduced: float
    n_params_full: int
    n_params_reduced: int
    nested: bool

    def summary(self) -> str:
        lines = [
            "Likelihood ratio test",
            f"  {'':10s} {'#df':>5s} {'logLik':>12s}",
            f"  {'reduced':10s} {self.n_params_reduced:5d} {self.loglik_reduced:12.4f}",
            f"  {'full':10s} {self.n_params_full:5d} {self.loglik_full:12.4f}",
            f"  LRT = {self.statistic:.4f}, df = {self.df}",
        ]
        if self.p_value is None:
            lines.append("  p-value not reported: models declared non-nested")
        else:
            lines.append(f"  p-value = {self.p_value:.4g}")
        return "\n".join(lines)


def likelihood_ratio_test(full, reduced, nested: bool = True) -> LRTResult:
    """Compare two fits by their log-likelihoods.

    The fit with more parameters is treated as the full model, whatever
    the argument order.

    Args:
        full, reduced: Objects exposing ``log_likelihood``, ``n_params``
            and ``n_obs`` (MixedModelParams or MixedModelSolution).
        nested: Whether the reduced model is a special case of the full
            model. When False no p-value is computed.

    Raises:
        ValidationError: If the fits use different numbers of observations.
    """
    if full.n_obs != reduced.n_obs:
        raise ValidationError(
            f"Models were fitted to different data: n_obs {full.n_obs} vs {reduced.n_obs}"
        )
    if reduced.n_params > full.n_params:
        full, reduced = reduced, full

    df = int(full.n_params - reduced.n_params)
    statistic = max(2.0 * (full.log_likelihood - reduced.log_likelihood), 0.0)
    if not nested:
        p_value = None
    elif df == 0:
        p_value = 1.0
    else:
        p_value = float(stats.chi2.sf(statistic, df))

    return LRTResult(
        statistic=float(statistic),
        df=df,
        p_value=p_value,
        loglik_full=float(full.log_likelihood),
        loglik_reduced=float(reduced.log_likelihood),
        n_params_full=int(full.n_params),
        n_params_reduced=int(reduced.n_params),
        nested=nested,
    )


# =====================================================================
# Marginal coefficients
# =====================================================================

@dataclass(frozen=True)
class MarginalCoefficients:
    """Population-averaged coefficients.

    Attributes:
        coefficients: Regression of the marginal mean on X, on the
            family's marginal link scale (p,).
        se: Standard errors from parameter draws, or None.
        marginal_means: E over b of (1-π) E(Y | b) per observation (n,).
        link: Name of the link the coefficients are reported on.
    """
    coefficients: NDArray
    se: NDArray | None
    marginal_means: NDArray
    link: str


def marginal_coefficients(
    family: Family,
    design: ClusteredDesign,
    layout: ParameterLayout,
    parameterization: CholeskyParameterization,
    estimates: NDArray,
    *,
    quadrature_points: int = 11,
    max_quadrature_nodes: int = 1000,
    vcov: NDArray | None = None,
    n_draws: int = 0,
    seed: int | None = None,
) -> MarginalCoefficients:
    """Coefficients of the marginal (population-averaged) mean.

    For every observation the marginal mean (1-π) E(Y) is integrated over
    b ~ N(0, D) on the non-adaptive Gauss-Hermite rule and then regressed
    on X on the scale of ``family.marginal_link``. Standard errors, when
    requested, are the spread of the coefficients over ``n_draws``
    parameter vectors drawn from N(estimates, vcov).

    Raises:
        FamilyContractError: If the family has no ``marginal_mean``.
    """
    if not family.supports(CAPABILITY_MARGINAL_MEAN):
        raise FamilyContractError(
            f"Family {family.name!r} does not provide 'marginal_mean'",
            capability=CAPABILITY_MARGINAL_MEAN,
            family_name=family.name,
        )
    q = parameterization.q
    rule = gauss_hermite_rule(q, points_for_dimension(quadrature_points, q,
                                                      max_quadrature_nodes))
    link = _resolve_link(family.marginal_link, LogLink())
    weights = np.exp(rule.log_weights)

    def _fit(params):
        betas, gammas, phis, theta = layout.unpack(params)
        B = rule.nodes @ parameterization.cholesky(theta).T
        eta = design.X @ betas + B[:, :design.q_nz] @ design.Z.T
        eta_zi = None
        if family.has_zero_part:
            eta_zi = design.X_zi @ gammas + B[:, design.q_nz:] @ design.Z_zi.T
        means = weights @ np.asarray(family.marginal_mean(eta, phis, eta_zi))
        coefs = np.linalg.lstsq(design.X, link.link(means), rcond=None)[0]
        return coefs, means

    coefficients, marginal_means = _fit(np.asarray(estimates, dtype=np.float64))

    se = None
    if vcov is not None and n_draws > 1:
        rng = np.random.default_rng(seed)
        draws = rng.multivariate_normal(estimates, vcov, size=n_draws, method='eigh')
        samples = np.array([_fit(d)[0] for d in draws])
        se = np.std(samples, axis=0, ddof=1)

    return MarginalCoefficients(
        coefficients=coefficients,
        se=se,
        marginal_means=marginal_means,
        link=link.name,
    )


# =====================================================================
# Simulation
# =====================================================================

def simulate_responses(
    family: Family,
    design: ClusteredDesign,
    layout: ParameterLayout,
    parameterization: CholeskyParameterization,
    estimates: NDArray,
    n_sim: int,
    *,
    seed: int | None = None,
    account_for_uncertainty: bool = False,
    vcov: NDArray | None = None,
    random_effects: NDArray | None = None,
) -> NDArray:
    """Replicate outcomes from the fitted model.

    Args:
        family: Outcome family (must provide ``simulate``).
        design: The design the model was fitted to.
        layout, parameterization: Describe ``estimates``.
        estimates: Fitted parameter vector.
        n_sim: Number of replicates.
        seed: Seed for ``numpy.random.default_rng``.
        account_for_uncertainty: Draw a parameter vector from
            N(estimates, vcov) for every replicate.
        vcov: Covariance of the estimates (required with
            ``account_for_uncertainty``).
        random_effects: Use these per-cluster effects (m, q) instead of
            drawing new ones from N(0, D).

    Returns:
        Array of shape (n_obs, n_sim), rows in the original data order.

    Raises:
        FamilyContractError: If the family cannot simulate.
        ValidationError: On invalid arguments.
    """
    if not family.supports(CAPABILITY_SIMULATE):
        raise FamilyContractError(
            f"Family {family.name!r} does not provide 'simulate'",
            capability=CAPABILITY_SIMULATE,
            family_name=family.name,
        )
    if n_sim < 1:
        raise ValidationError(f"n_sim must be >= 1, got {n_sim}")
    if account_for_uncertainty and vcov is None:
        raise ValidationError("account_for_uncertainty=True requires vcov")

    rng = np.random.default_rng(seed)
    q_nz = design.q_nz
    index = design.cluster_index
    out = np.empty((design.n, n_sim))

    for s in range(n_sim):
        params = np.asarray(estimates, dtype=np.float64)
        if account_for_uncertainty:
            params = rng.multivariate_normal(params, vcov, method='eigh')
        betas, gammas, phis, theta = layout.unpack(params)
        if random_effects is None:
            b = rng.multivariate_normal(np.zeros(design.q), parameterization.decode(theta),
                                        size=design.n_clusters)
        else:
            b = random_effects
        b_rows = b[index]
        eta = design.X @ betas + np.sum(design.Z * b_rows[:, :q_nz], axis=1)
        eta_zi = None
        if family.has_zero_part:
            eta_zi = design.X_zi @ gammas + np.sum(design.Z_zi * b_rows[:, q_nz:], axis=1)
        mu = family.link.linkinv(eta)
        out[:, s] = family.simulate(design.n, mu, phis, eta_zi, rng)

    return out
