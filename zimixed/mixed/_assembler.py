"""
Total marginal log-likelihood and gradient over all clusters.

Clusters are independent given the parameters, so they are evaluated
either sequentially or on a joblib thread pool (``n_jobs != 1``). The
reduction always runs in cluster order with the same summation order,
so sequential and parallel runs give bit-identical totals.

Each cluster's log-likelihood is clamped into
[LOGLIK_FLOOR, LOGLIK_CEILING]; a clamped cluster contributes no
gradient.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from joblib import Parallel, delayed
from numpy.typing import NDArray

from zimixed.families import Family
from zimixed.mixed._common import Cluster, FitControl, ParameterLayout
from zimixed.mixed._covariance import CholeskyParameterization
from zimixed.mixed._integrator import (
    ClusterContribution, QuadratureState, integrate_cluster, integration_blocks,
)
from zimixed.mixed._quadrature import adaptive_rule, wide_rule


logger = logging.getLogger(__name__)

LOGLIK_FLOOR = -1e8
LOGLIK_CEILING = 1e8


@dataclass(frozen=True)
class Assembly:
    """Result of one pass over all clusters.

    Attributes:
        loglik: Σ_i log L_i after clamping.
        gradient: Σ_i ∂ log L_i / ∂params over non-clamped clusters.
        contributions: Per-cluster contributions in cluster order.
        n_clamped: Number of clusters whose log-likelihood was clamped.
    """
    loglik: float
    gradient: NDArray
    contributions: tuple[ClusterContribution, ...]
    n_clamped: int

    @property
    def states(self) -> tuple[QuadratureState, ...]:
        return tuple(c.state for c in self.contributions)

    @property
    def fixed_hessian(self) -> NDArray:
        """Σ_i of the per-cluster expected complete-data Hessians."""
        total = None
        for c in self.contributions:
            if c.fixed_hessian is None:
                raise ValueError("assemble() was called without curvature=True")
            total = c.fixed_hessian.copy() if total is None else total + c.fixed_hessian
        return total

    def mean_second_moment(self) -> NDArray:
        """mean_i E[b_i b_i' | y_i]."""
        total = np.zeros_like(self.contributions[0].posterior_second_moment)
        for c in self.contributions:
            total += c.posterior_second_moment
        return total / len(self.contributions)


class LikelihoodAssembler:
    """Evaluates the marginal log-likelihood of a clustered design.

    Args:
        clusters: Clusters in a fixed order.
        layout: Parameter layout.
        family: Outcome family.
        parameterization: Covariance parameterization.
        control: Quadrature and mode-search settings.
        n_jobs: Worker threads (1 = sequential, -1 = all cores).
    """

    def __init__(
        self,
        clusters: tuple[Cluster, ...],
        layout: ParameterLayout,
        family: Family,
        parameterization: CholeskyParameterization,
        control: FitControl,
        n_jobs: int = 1,
    ):
        self.clusters = clusters
        self.layout = layout
        self.family = family
        self.parameterization = parameterization
        self.control = control
        self.n_jobs = n_jobs
        self.n_evaluations = 0

        self.blocks = integration_blocks(family, parameterization)
        k = control.quadrature_points
        cap = control.max_quadrature_nodes
        self.rules = tuple(adaptive_rule(len(idx), k, cap) for idx in self.blocks)
        self.fallback_rules = tuple(wide_rule(len(idx), k, cap) for idx in self.blocks)
        for idx, rule in zip(self.blocks, self.rules):
            if rule.points < k:
                logger.info("quadrature points reduced from %d to %d for a block "
                            "of %d random effects", k, rule.points, len(idx))

    def assemble(
        self,
        params: NDArray,
        states: tuple[QuadratureState, ...] | None = None,
        adapt: bool = True,
        curvature: bool = False,
    ) -> Assembly:
        """Evaluate all clusters at ``params``.

        Args:
            params: Flat parameter vector.
            states: Per-cluster QuadratureStates from a previous pass.
            adapt: Re-center the nodes (True) or keep ``states`` fixed.
            curvature: Also compute expected complete-data Hessians.
        """
        self.n_evaluations += 1
        if states is None:
            states = (None,) * len(self.clusters)

        def _one(cluster, state):
            return integrate_cluster(
                cluster, params, self.layout, self.family, self.parameterization,
                self.rules, state=state, adapt=adapt,
                fallback_rule=self.fallback_rules,
                mode_max_iter=self.control.mode_max_iter,
                mode_tol=self.control.mode_tol,
                curvature=curvature,
            )

        if self.n_jobs == 1:
            contributions = [_one(c, s) for c, s in zip(self.clusters, states)]
        else:
            contributions = Parallel(n_jobs=self.n_jobs, prefer="threads")(
                delayed(_one)(c, s) for c, s in zip(self.clusters, states)
            )

        loglik = 0.0
        gradient = np.zeros(self.layout.size)
        n_clamped = 0
        for contribution in contributions:
            ll = contribution.loglik
            if ll < LOGLIK_FLOOR or ll > LOGLIK_CEILING:
                n_clamped += 1
                loglik += float(np.clip(ll, LOGLIK_FLOOR, LOGLIK_CEILING))
                continue
            loglik += ll
            gradient += contribution.gradient

        if n_clamped:
            logger.debug("%d cluster log-likelihood(s) clamped", n_clamped)

        return Assembly(
            loglik=loglik,
            gradient=gradient,
            contributions=tuple(contributions),
            n_clamped=n_clamped,
        )
