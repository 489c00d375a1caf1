"""
Solution class for zero-inflated / hurdle mixed models.

MixedModelSolution wraps Result[MixedModelParams] and provides an
R-style summary, property accessors, model comparison, simulation and
marginalized coefficients.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray

from zimixed.core.result import Result
from zimixed.families import Family
from zimixed.mixed._common import FitControl, MixedModelParams, ParameterLayout
from zimixed.mixed._covariance import CholeskyParameterization
from zimixed.mixed._inference import (
    LRTResult, MarginalCoefficients,
    likelihood_ratio_test, marginal_coefficients, simulate_responses,
)
from zimixed.mixed.design import ClusteredDesign


# Kind pairs whose log-likelihoods do not nest
_NON_NESTED_KINDS = frozenset({
    frozenset({'zero_inflated', 'hurdle'}),
})


def _significance_stars(p: float) -> str:
    """Return significance stars like R."""
    if p < 0.001:
        return '***'
    elif p < 0.01:
        return '**'
    elif p < 0.05:
        return '*'
    elif p < 0.1:
        return '.'
    else:
        return ' '


def _format_pvalue(p: float) -> str:
    """Format p-value like R."""
    if not np.isfinite(p):
        return 'NA'
    if p < 2e-16:
        return '< 2e-16'
    elif p < 0.001:
        return f'{p:.2e}'
    else:
        return f'{p:.4f}'


def _format_stat(value: float, digits: int) -> str:
    if not np.isfinite(value):
        return f'{"NA":>10s}'
    return f'{value:10.{digits}f}'


@dataclass(frozen=True)
class FitContext:
    """What a fit needs to be re-evaluated: family, data and layout."""
    family: Family
    design: ClusteredDesign
    layout: ParameterLayout
    parameterization: CholeskyParameterization
    control: FitControl


class MixedModelSolution:
    """Solution wrapper for a fitted zero-inflated / hurdle mixed model.

    Provides R-style summary output, property accessors for both model
    parts and the random effects, likelihood ratio comparison, simulation
    from the fitted model and marginalized coefficients.
    """

    def __init__(self, _result: Result[MixedModelParams], _context: FitContext):
        self._result = _result
        self._context = _context

    @property
    def params(self) -> MixedModelParams:
        return self._result.params

    @property
    def info(self) -> dict[str, Any]:
        return self._result.info

    @property
    def timing(self) -> dict[str, float] | None:
        return self._result.timing

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    @property
    def family(self) -> Family:
        return self._context.family

    @property
    def kind(self) -> str:
        return self.params.kind

    # --- Fixed effects ---

    @property
    def coefficients(self) -> NDArray:
        """Non-zero-part fixed effects β̂."""
        return self.params.betas

    @property
    def zi_coefficients(self) -> NDArray:
        """Zero-part fixed effects γ̂ (empty without a zero part)."""
        return self.params.gammas

    @property
    def phis(self) -> NDArray:
        """Dispersion parameters on the log scale."""
        return self.params.phis

    @property
    def fixef(self) -> dict[str, float]:
        return dict(zip(self.params.coefficient_names, self.params.betas))

    @property
    def zi_fixef(self) -> dict[str, float]:
        return dict(zip(self.params.zi_coefficient_names, self.params.gammas))

    @property
    def se(self) -> NDArray:
        return self.params.se_betas

    @property
    def zi_se(self) -> NDArray:
        return self.params.se_gammas

    @property
    def vcov(self) -> NDArray:
        """Covariance of the full unconstrained parameter vector."""
        return self.params.vcov

    # --- Random effects ---

    @property
    def D(self) -> NDArray:
        """Random-effects covariance matrix."""
        return self.params.D

    @property
    def ranef(self) -> dict[Any, NDArray]:
        """Empirical-Bayes random effects per cluster identifier."""
        return dict(zip(self.params.cluster_ids, self.params.random_effects))

    @property
    def random_effects(self) -> NDArray:
        return self.params.random_effects

    # --- Model fit ---

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    @property
    def aic(self) -> float:
        return self.params.aic

    @property
    def bic(self) -> float:
        return self.params.bic

    @property
    def n_obs(self) -> int:
        return self.params.n_obs

    @property
    def n_params(self) -> int:
        return self.params.n_params

    @property
    def fitted_values(self) -> NDArray:
        """Conditional fitted values (1-π) E(Y) at the empirical-Bayes effects."""
        return self.params.fitted_values

    @property
    def converged(self) -> bool:
        return self._result.converged

    @property
    def loglik_history(self) -> tuple[float, ...]:
        return self.params.loglik_history

    @property
    def history_tags(self) -> tuple[str, ...]:
        """Per ``loglik_history`` entry: 'recenter', 'em' or 'qn'."""
        return self.params.history_tags

    # --- Inference ---

    def compare(self, other: 'MixedModelSolution', nested: bool = True) -> LRTResult:
        """Likelihood ratio test against another fit of the same data.

        The fit with more parameters plays the full model.
        """
        if nested and frozenset({self.kind, other.kind}) in _NON_NESTED_KINDS:
            warnings.warn(
                f"Comparing a {self.kind!r} model with a {other.kind!r} model: "
                f"the models are not nested, consider nested=False",
                RuntimeWarning,
                stacklevel=2,
            )
        return likelihood_ratio_test(self.params, other.params, nested=nested)

    def simulate(
        self,
        n_sim: int = 1,
        *,
        seed: int | None = None,
        account_for_uncertainty: bool = False,
        use_random_effects: bool = False,
    ) -> NDArray:
        """Simulate outcomes from the fitted model.

        Args:
            n_sim: Number of replicates.
            seed: Seed for numpy's default_rng.
            account_for_uncertainty: Draw parameters from N(θ̂, vcov)
                for every replicate.
            use_random_effects: Use the empirical-Bayes effects instead of
                drawing new ones from N(0, D).

        Returns:
            (n_obs, n_sim) array aligned with the original rows.
        """
        ctx = self._context
        return simulate_responses(
            ctx.family, ctx.design, ctx.layout, ctx.parameterization,
            self.params.estimates, n_sim,
            seed=seed,
            account_for_uncertainty=account_for_uncertainty,
            vcov=self.params.vcov,
            random_effects=self.params.random_effects if use_random_effects else None,
        )

    def marginal_coefs(self, *, std_errors: bool = False, n_draws: int = 200,
                       seed: int | None = None) -> MarginalCoefficients:
        """Coefficients with a population-averaged interpretation."""
        ctx = self._context
        return marginal_coefficients(
            ctx.family, ctx.design, ctx.layout, ctx.parameterization,
            self.params.estimates,
            quadrature_points=ctx.control.quadrature_points,
            max_quadrature_nodes=ctx.control.max_quadrature_nodes,
            vcov=self.params.vcov if std_errors else None,
            n_draws=n_draws if std_errors else 0,
            seed=seed,
        )

    # --- Summary ---

    def summary(self) -> str:
        """R-style summary in the layout of GLMMadaptive::summary()."""
        params = self.params

        lines = []
        lines.append("Mixed model fit by maximum likelihood "
                     "(adaptive Gauss-Hermite quadrature)")
        lines.append(f" Family: {params.family_name} ( {self.family.link.name} )")
        lines.append("")
        lines.append(f"Number of obs: {params.n_obs}, clusters: {params.n_clusters}")
        lines.append(f" logLik: {params.log_likelihood:.4f}   "
                     f"AIC: {params.aic:.1f}   BIC: {params.bic:.1f}")
        lines.append("")

        lines.append("Random effects covariance matrix:")
        names = _random_effect_names(params.q_nz, params.q_zi)
        sd = np.sqrt(np.diag(params.D))
        header = f" {'':>15s} {'StdDev':>10s}"
        if len(names) > 1:
            header += f" {'Corr':>10s}"
        lines.append(header)
        corr = params.D / np.outer(sd, sd)
        for i, name in enumerate(names):
            row = f" {name:>15s} {sd[i]:10.4f}"
            for j in range(i):
                row += f" {corr[i, j]:10.4f}"
            lines.append(row)
        lines.append("")

        lines.extend(_coef_table("Fixed effects:", params.coefficient_names,
                                 params.betas, params.se_betas,
                                 params.z_betas, params.p_betas))
        if len(params.gammas):
            lines.append("")
            lines.extend(_coef_table("Zero-part coefficients:",
                                     params.zi_coefficient_names, params.gammas,
                                     params.se_gammas, params.z_gammas,
                                     params.p_gammas))
        lines.append("---")
        lines.append("Signif. codes:  0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1")

        if len(params.phis):
            lines.append("")
            phis = ', '.join(f'{v:.4f}' for v in params.phis)
            lines.append(f"log(dispersion) parameters: {phis}")

        lines.append("")
        lines.append(f"Integration: {self.info.get('quadrature_points')} "
                     f"quadrature points per random effect")
        lines.append(f"Optimization: EM iterations {params.n_em_iter}, "
                     f"quasi-Newton iterations {params.n_qn_iter}")
        if self._result.elapsed is not None:
            lines.append(f"Elapsed: {self._result.elapsed:.2f} s")
        if self.info.get('vcov_singular'):
            lines.append("")
            lines.append("NOTE: observed information is singular; parameters "
                         "with NA standard errors are not identified")

        if not params.converged:
            lines.append("")
            lines.append("WARNING: Model did not converge")

        return '\n'.join(lines)

    def __repr__(self) -> str:
        return (
            f"MixedModelSolution({self.params.family_name}, "
            f"n={self.params.n_obs}, "
            f"clusters={self.params.n_clusters}, "
            f"logLik={self.params.log_likelihood:.3f})"
        )


# =====================================================================
# Helpers
# =====================================================================

def _random_effect_names(q_nz: int, q_zi: int) -> list[str]:
    names = ['(Intercept)'] + [f'Z{i}' for i in range(1, q_nz)]
    if q_zi:
        names += ['zi_(Intercept)'] + [f'zi_Z{i}' for i in range(1, q_zi)]
    return names


def _coef_table(title, names, estimates, se, z, p) -> list[str]:
    lines = [title]
    lines.append(f" {'':>15s} {'Estimate':>10s} {'Std. Error':>10s} "
                 f"{'z value':>10s} {'Pr(>|z|)':>10s} {'':>4s}")
    for i, name in enumerate(names):
        lines.append(
            f" {name:>15s} {estimates[i]:10.4f} {_format_stat(se[i], 4)} "
            f"{_format_stat(z[i], 3)} {_format_pvalue(p[i]):>10s} {_significance_stars(p[i])}"
        )
    return lines
