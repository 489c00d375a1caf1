"""
Fit entry point for zero-inflated / hurdle mixed models.

Public API:
    mixed_model() — maximum likelihood fit by adaptive Gauss-Hermite
                    quadrature (EM warm start, then quasi-Newton)
"""

from __future__ import annotations

import dataclasses
import warnings
from typing import Any, Callable

import numpy as np
from numpy.typing import ArrayLike, NDArray

from zimixed.core.capabilities import CAPABILITY_MARGINAL_MEAN
from zimixed.core.compute.timing import Timer
from zimixed.core.exceptions import ConvergenceWarning, ValidationError
from zimixed.core.result import Result
from zimixed.families import Family, resolve_family
from zimixed.mixed._assembler import Assembly, LikelihoodAssembler
from zimixed.mixed._common import FitControl, MixedModelParams, ParameterLayout
from zimixed.mixed._covariance import CholeskyParameterization
from zimixed.mixed._inference import (
    observed_information_vcov, standard_errors, wald_tests,
)
from zimixed.mixed._optimizer import initial_params, optimize
from zimixed.mixed.design import ClusteredDesign
from zimixed.mixed.solution import FitContext, MixedModelSolution


def mixed_model(
    y: ArrayLike,
    groups: ArrayLike,
    X: ArrayLike,
    Z: ArrayLike,
    *,
    family: str | Family,
    X_zi: ArrayLike | None = None,
    Z_zi: ArrayLike | None = None,
    n_phis: int | None = None,
    initial_values: dict[str, ArrayLike] | None = None,
    control: FitControl | None = None,
    n_jobs: int = 1,
    should_stop: Callable[[], bool] | None = None,
    **control_overrides: Any,
) -> MixedModelSolution:
    """Fit a (zero-inflated / hurdle) generalized linear mixed model.

    The marginal likelihood is integrated over the random effects with
    adaptive Gauss-Hermite quadrature and maximized by an EM warm start
    followed by quasi-Newton rounds.

    Args:
        y: Outcome vector (n,).
        groups: Cluster identifier per observation (n,).
        X: Non-zero-part fixed-effects design matrix (n, p). The first
            column is reported as the intercept.
        Z: Non-zero-part random-effects design matrix (n, q_nz).
        family: Family name ('poisson', 'negative_binomial',
            'zero_inflated_poisson', 'zero_inflated_negative_binomial',
            'hurdle_poisson', 'hurdle_negative_binomial',
            'hurdle_lognormal') or a Family instance (e.g. UserFamily).
        X_zi: Zero-part fixed-effects design matrix (n, p_zi). Required
            for zero-inflated and hurdle families.
        Z_zi: Zero-part random-effects design matrix (n, q_zi).
        n_phis: Number of dispersion parameters; only user-defined
            families may change the family default.
        initial_values: Optional starting values with keys 'betas',
            'gammas', 'phis' (log scale) and 'D'. Missing keys use the
            data-driven defaults.
        control: FitControl settings.
        n_jobs: Threads for the per-cluster integration (1 = sequential).
        should_stop: Callable checked at iteration boundaries; returning
            True stops the fit with the current best iterate.
        **control_overrides: FitControl fields overriding ``control``.

    Returns:
        MixedModelSolution.

    Raises:
        DataError: On invalid inputs (before any fitting).
        ValidationError: On invalid control settings or starting values.
        ClusterIntegrationError: If a cluster cannot be integrated.

    Examples:
        # Zero-inflated Poisson, random intercept per subject
        >>> fit = mixed_model(y, subject, X, np.ones((n, 1)),
        ...                   family='zero_inflated_poisson', X_zi=X_zi)
        >>> print(fit.summary())
    """
    timer = Timer()
    timer.start()

    family_obj = resolve_family(family)
    control = _resolve_control(control, control_overrides)
    if should_stop is not None and not callable(should_stop):
        raise ValidationError("should_stop must be callable")

    design = ClusteredDesign.validate(y, groups, X, Z, family_obj, X_zi, Z_zi)

    with timer.section('setup'):
        n_phis = _resolve_n_phis(family_obj, n_phis)
        parameterization = CholeskyParameterization(
            design.q, control.covariance_structure, q_nz=design.q_nz
        )
        layout = ParameterLayout(
            p=design.p,
            p_zi=design.p_zi,
            n_phis=n_phis,
            n_theta=parameterization.n_params,
        )
        assembler = LikelihoodAssembler(
            design.clusters, layout, family_obj, parameterization, control, n_jobs=n_jobs
        )

    with timer.section('starting_values'):
        start = initial_params(design.y, design.X, design.X_zi, family_obj,
                               layout, parameterization)
        if initial_values:
            start = _apply_initial_values(start, initial_values, layout, parameterization)

    with timer.section('optimization'):
        fit = optimize(assembler, start, control, should_stop)

    warn_list = []
    if fit.stopped:
        msg = "Fit interrupted by should_stop(); returning the best iterate so far"
        warnings.warn(msg, ConvergenceWarning, stacklevel=2)
        warn_list.append(msg)
    elif not fit.converged:
        msg = (f"Model did not converge after {fit.n_em_iter} EM iterations and "
               f"{fit.n_rounds} quasi-Newton rounds; returning the best iterate")
        warnings.warn(msg, ConvergenceWarning, stacklevel=2)
        warn_list.append(msg)

    # Re-center once at the estimate for the empirical-Bayes effects
    with timer.section('random_effects'):
        final = assembler.assemble(fit.params, fit.states, adapt=True)
        estimates = fit.params
        random_effects, random_effects_cov = _empirical_bayes(final)

    with timer.section('inference'):
        vcov, singular = observed_information_vcov(assembler, estimates, final.states)
        if singular:
            warn_list.append("Observed information singular: pseudo-inverse used")
        se_all = standard_errors(vcov)
        se_betas = se_all[layout.betas]
        se_gammas = se_all[layout.gammas]
        betas, gammas, phis, theta = layout.unpack(estimates)
        z_betas, p_betas = wald_tests(betas, se_betas)
        z_gammas, p_gammas = wald_tests(gammas, se_gammas)

    with timer.section('model_fit'):
        ll = final.loglik
        n_params = layout.size
        aic = -2.0 * ll + 2.0 * n_params
        bic = -2.0 * ll + np.log(design.n) * n_params
        eta, eta_zi, fitted = _predictions(design, family_obj, betas, gammas, phis,
                                           random_effects)

    timer.stop()

    params = MixedModelParams(
        betas=betas.copy(),
        gammas=gammas.copy(),
        phis=phis.copy(),
        coefficient_names=tuple(_make_coef_names(design.p)),
        zi_coefficient_names=tuple(
            f'zi_{name}' for name in _make_coef_names(layout.p_zi)
        ) if layout.p_zi else (),
        se_betas=se_betas,
        se_gammas=se_gammas,
        z_betas=z_betas,
        p_betas=p_betas,
        z_gammas=z_gammas,
        p_gammas=p_gammas,
        D=parameterization.decode(theta),
        theta=theta.copy(),
        covariance_structure=control.covariance_structure,
        q_nz=design.q_nz,
        q_zi=design.q_zi,
        estimates=estimates.copy(),
        vcov=vcov,
        log_likelihood=float(ll),
        aic=float(aic),
        bic=float(bic),
        n_obs=design.n,
        n_clusters=design.n_clusters,
        n_params=n_params,
        family_name=family_obj.name,
        kind=family_obj.kind,
        converged=fit.converged,
        n_em_iter=fit.n_em_iter,
        n_qn_iter=fit.n_qn_iter,
        loglik_history=tuple(fit.loglik_history),
        history_tags=tuple(fit.history_tags),
        cluster_ids=tuple(c.cluster_id for c in design.clusters),
        random_effects=random_effects,
        random_effects_cov=random_effects_cov,
        fitted_values=fitted,
        linear_predictor=eta,
        linear_predictor_zi=eta_zi,
    )

    result = Result(
        params=params,
        info={
            'method': 'adaptive_gauss_hermite',
            'family': family_obj.name,
            'link': family_obj.link.name,
            'optimizer': control.optimizer,
            'converged': fit.converged,
            'stopped': fit.stopped,
            'n_em_iter': fit.n_em_iter,
            'n_qn_iter': fit.n_qn_iter,
            'n_qn_rounds': fit.n_rounds,
            'quadrature_points': tuple(r.points for r in assembler.rules),
            'integration_blocks': len(assembler.blocks),
            'n_evaluations': assembler.n_evaluations,
            'n_clamped': final.n_clamped,
            'vcov_singular': singular,
        },
        timing=timer.result(),
        backend_name='cpu_agq',
        warnings=tuple(warn_list),
    )

    context = FitContext(
        family=family_obj,
        design=design,
        layout=layout,
        parameterization=parameterization,
        control=control,
    )
    return MixedModelSolution(_result=result, _context=context)


# =====================================================================
# Helpers
# =====================================================================

def _resolve_control(control: FitControl | None, overrides: dict[str, Any]) -> FitControl:
    if control is None:
        control = FitControl()
    elif not isinstance(control, FitControl):
        raise ValidationError(
            f"control must be a FitControl, got {type(control).__name__}"
        )
    if not overrides:
        return control
    known = {f.name for f in dataclasses.fields(FitControl)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValidationError(
            f"Unknown control setting(s): {', '.join(unknown)}. "
            f"Valid settings: {', '.join(sorted(known))}"
        )
    return dataclasses.replace(control, **overrides)


def _resolve_n_phis(family: Family, n_phis: int | None) -> int:
    if n_phis is None:
        return family.default_n_phis
    if n_phis < 0:
        raise ValidationError(f"n_phis must be >= 0, got {n_phis}")
    if n_phis != family.default_n_phis and family.kind != 'user':
        raise ValidationError(
            f"Family {family.name!r} has {family.default_n_phis} dispersion "
            f"parameter(s), got n_phis={n_phis}"
        )
    return int(n_phis)


def _apply_initial_values(
    start: NDArray,
    values: dict[str, ArrayLike],
    layout: ParameterLayout,
    parameterization: CholeskyParameterization,
) -> NDArray:
    """Overwrite blocks of the default start with caller-supplied values."""
    start = start.copy()
    slots = {'betas': layout.betas, 'gammas': layout.gammas, 'phis': layout.phis}
    unknown = sorted(set(values) - set(slots) - {'D'})
    if unknown:
        raise ValidationError(
            f"Unknown initial value(s): {', '.join(unknown)}. "
            f"Valid keys: betas, gammas, phis, D"
        )
    for key, sl in slots.items():
        if key in values:
            v = np.asarray(values[key], dtype=np.float64).ravel()
            expected = sl.stop - sl.start
            if v.shape != (expected,):
                raise ValidationError(
                    f"initial_values[{key!r}]: expected {expected} value(s), got {v.size}"
                )
            start[sl] = v
    if 'D' in values:
        start[layout.theta] = parameterization.encode(values['D'])
    return start


def _empirical_bayes(final: Assembly) -> tuple[NDArray, NDArray]:
    """Per-cluster modes (posterior means for non-adaptive clusters) and covariances."""
    modes = []
    covs = []
    for c in final.contributions:
        modes.append(c.state.center if c.state.adaptive else c.posterior_mean)
        covs.append(c.posterior_cov)
    return np.array(modes), np.array(covs)


def _predictions(
    design: ClusteredDesign,
    family: Family,
    betas: NDArray,
    gammas: NDArray,
    phis: NDArray,
    random_effects: NDArray,
) -> tuple[NDArray, NDArray | None, NDArray]:
    """Linear predictors and conditional fitted values at the EB effects."""
    b_rows = random_effects[design.cluster_index]
    eta = design.X @ betas + np.sum(design.Z * b_rows[:, :design.q_nz], axis=1)
    eta_zi = None
    if family.has_zero_part:
        eta_zi = design.X_zi @ gammas + np.sum(design.Z_zi * b_rows[:, design.q_nz:], axis=1)
    if family.supports(CAPABILITY_MARGINAL_MEAN):
        fitted = np.asarray(family.marginal_mean(eta, phis, eta_zi), dtype=np.float64)
    else:
        fitted = family.link.linkinv(eta)
    return eta, eta_zi, fitted


def _make_coef_names(p: int) -> list[str]:
    """Generate default coefficient names."""
    if p == 1:
        return ['(Intercept)']
    names = ['(Intercept)']
    for i in range(1, p):
        names.append(f'X{i}')
    return names
