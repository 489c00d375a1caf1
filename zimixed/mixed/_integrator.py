"""
Adaptive Gauss-Hermite integration of one cluster's likelihood.

For cluster i with random effects b = [b_nz, b_zi] ~ N(0, D):

    L_i = ∫ Π_j f(y_ij | η_ij(b), φ, η_zi,ij(b)) N(b; 0, D) db

Adaptation finds the mode b̂ of h(b) = Σ_j log f + log N(b; 0, D) by
Newton-Raphson, takes Σ̂ = H⁻¹ from the negative Hessian H at the mode and
places the standard rule nodes at b_k = b̂ + C x_k with C C' = Σ̂:

    log L_i = log|C| + logsumexp_k(log w_k - log φ(x_k) + h(b_k))

The center and scale of that transformation form a QuadratureState. While
a state is held fixed the nodes b_k do not move with the parameters, so
log L_i is a smooth function of (β, γ, φ, θ) whose exact gradient is a
posterior-weighted sum over the nodes (Fisher's identity on the grid).

Separable families (hurdle models) with a covariance that keeps the two
parts independent are integrated block by block: each block runs over its
own grid with the other block held at its mode, and

    log L_i = Σ_blocks S_block - (n_blocks - 1) Σ_j log f(b̂)

which needs k**q_nz + k**q_zi evaluations instead of k**q.

When adaptation fails (mode search does not converge, non-finite values,
Hessian not positive definite) the cluster is retried once on a wider
non-adaptive rule centered at zero and scaled by chol(D). A second failure
raises ClusterIntegrationError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import cho_solve, solve_triangular
from scipy.special import logsumexp

from zimixed.core.exceptions import ClusterIntegrationError, ValidationError
from zimixed.families import Family
from zimixed.mixed._common import Cluster, ParameterLayout
from zimixed.mixed._covariance import CholeskyParameterization
from zimixed.mixed._quadrature import QuadratureRule, wide_rule
from zimixed.mixed import _scores


logger = logging.getLogger(__name__)

_MAX_HALVINGS = 30
_MODE_GRAD_TOL = 1e-6
_LOG_2PI = np.log(2.0 * np.pi)


@dataclass(frozen=True)
class QuadratureState:
    """Where a cluster's nodes sit: b_k = center + scale @ x_k per block.

    Attributes:
        center: Mode b̂ (adaptive) or zero (fallback), shape (q,).
        scale: Block-diagonal factor C with C C' = Σ̂ (adaptive) or D
            (fallback), shape (q, q).
        blocks: Random-effect indices integrated jointly, one tuple per
            grid.
        rules: Standard rule used for each block.
        adaptive: False for the non-adaptive fallback state.
    """
    center: NDArray
    scale: NDArray
    blocks: tuple[tuple[int, ...], ...]
    rules: tuple[QuadratureRule, ...]
    adaptive: bool = True


@dataclass(frozen=True)
class ClusterContribution:
    """One cluster's share of the marginal log-likelihood.

    Attributes:
        loglik: log L_i.
        gradient: ∂ log L_i / ∂params over the full parameter layout.
        posterior_mean: E[b_i | y_i], shape (q,).
        posterior_second_moment: E[b_i b_i' | y_i], shape (q, q).
        weights: Posterior node weights, one array per block.
        state: The QuadratureState the nodes were placed with.
        fixed_hessian: Expected Hessian of the complete-data
            log-likelihood in (β, γ, φ), block-diagonal between (β, γ)
            and φ. Only computed on request (EM M-step).
    """
    loglik: float
    gradient: NDArray
    posterior_mean: NDArray
    posterior_second_moment: NDArray
    weights: tuple[NDArray, ...]
    state: QuadratureState
    fixed_hessian: NDArray | None = None

    @property
    def posterior_cov(self) -> NDArray:
        m = self.posterior_mean
        return self.posterior_second_moment - np.outer(m, m)


class _IntegrationFailure(Exception):
    """Local signal that an integration attempt must be retried."""


def integration_blocks(family: Family,
                       parameterization: CholeskyParameterization) -> tuple[tuple[int, ...], ...]:
    """Random-effect index groups that are integrated on separate grids.

    Two blocks only when the log-density is additive in η and η_zi and
    D keeps the two parts independent; otherwise one joint block.
    """
    q, q_nz = parameterization.q, parameterization.q_nz
    if (family.separable and parameterization.structure != 'unstructured'
            and 0 < q_nz < q):
        return tuple(range(q_nz)), tuple(range(q_nz, q))
    return (tuple(range(q)),)


def integrate_cluster(
    cluster: Cluster,
    params: NDArray,
    layout: ParameterLayout,
    family: Family,
    parameterization: CholeskyParameterization,
    rule: QuadratureRule | tuple[QuadratureRule, ...],
    state: QuadratureState | None = None,
    adapt: bool = True,
    fallback_rule: QuadratureRule | tuple[QuadratureRule, ...] | None = None,
    *,
    mode_max_iter: int = 50,
    mode_tol: float = 1e-8,
    curvature: bool = False,
) -> ClusterContribution:
    """Marginal log-likelihood and gradient of one cluster.

    Args:
        cluster: The cluster's data.
        params: Flat parameter vector [betas, gammas, phis, theta].
        layout: Slices of ``params``.
        family: Outcome family.
        parameterization: Covariance parameterization (theta → D).
        rule: Standard rule, or one rule per integration block (see
            ``integration_blocks``).
        state: Previous QuadratureState; warm-starts the mode search, or
            is reused as-is when ``adapt`` is False.
        adapt: Re-center the nodes at the current mode. With False the
            stored state is reused so the result is smooth in ``params``.
        fallback_rule: Rule(s) for the non-adaptive retry. Defaults to
            roughly twice the points of ``rule``.
        mode_max_iter: Newton-Raphson iterations for the mode.
        mode_tol: Step-size tolerance for the mode.
        curvature: Also return the expected complete-data Hessian in the
            fixed parameters.

    Returns:
        ClusterContribution.

    Raises:
        ClusterIntegrationError: If both the adaptive attempt and the
            non-adaptive retry fail.
    """
    blocks = integration_blocks(family, parameterization)
    rules = _as_rules(rule, blocks)
    if fallback_rule is None:
        fallback_rules = tuple(wide_rule(r.dim, r.points, r.size) for r in rules)
    else:
        fallback_rules = _as_rules(fallback_rule, blocks)

    model = _ClusterModel(cluster, params, layout, family, parameterization)

    if state is not None and not adapt:
        try:
            return model.evaluate(state, curvature)
        except _IntegrationFailure as e:
            logger.warning("cluster %r: fixed nodes failed (%s); re-adapting",
                           cluster.cluster_id, e)

    warm = None if state is None else state.center
    try:
        new_state = model.adapt(blocks, rules, warm, mode_max_iter, mode_tol)
        return model.evaluate(new_state, curvature)
    except _IntegrationFailure as e:
        logger.warning("cluster %r: adaptive quadrature failed (%s); "
                       "retrying without adaptation", cluster.cluster_id, e)

    try:
        return model.evaluate(model.fallback_state(blocks, fallback_rules), curvature)
    except _IntegrationFailure as e:
        raise ClusterIntegrationError(
            f"Cluster {cluster.cluster_id!r}: likelihood integration failed "
            f"after non-adaptive retry ({e})",
            cluster_id=cluster.cluster_id,
            reason=str(e),
        ) from e


class _ClusterModel:
    """One cluster at fixed parameters: linear predictors, prior and h(b)."""

    def __init__(self, cluster: Cluster, params: NDArray, layout: ParameterLayout,
                 family: Family, parameterization: CholeskyParameterization):
        self.cluster = cluster
        self.layout = layout
        self.family = family
        self.parameterization = parameterization
        self.q = parameterization.q
        self.q_nz = parameterization.q_nz

        betas, gammas, phis, theta = layout.unpack(params)
        self.phis = phis
        self.theta = theta
        self.D = parameterization.decode(theta)
        self.eta0 = cluster.X @ betas
        self.eta0_zi = cluster.X_zi @ gammas if family.has_zero_part else None

    # ------------------------------------------------------------------
    # Linear predictors and densities
    # ------------------------------------------------------------------

    def predictors(self, B: NDArray) -> tuple[NDArray, NDArray | None]:
        """η and η_zi at random-effect rows B (K, q) → (K, n) each."""
        c = self.cluster
        eta = self.eta0 + B[:, :self.q_nz] @ c.Z.T
        if self.eta0_zi is None:
            return eta, None
        return eta, self.eta0_zi + B[:, self.q_nz:] @ c.Z_zi.T

    def log_dens(self, B: NDArray) -> NDArray:
        eta, eta_zi = self.predictors(B)
        return np.asarray(
            self.family.log_dens(self.cluster.y, eta, self.phis, eta_zi),
            dtype=np.float64,
        )

    def _prior_factor(self, idx: tuple[int, ...]) -> NDArray:
        D_b = self.D[np.ix_(idx, idx)]
        try:
            return np.linalg.cholesky(D_b)
        except np.linalg.LinAlgError as e:
            raise _IntegrationFailure("D is numerically singular") from e

    # ------------------------------------------------------------------
    # Adaptation
    # ------------------------------------------------------------------

    def _mode_objective(self, b: NDArray, D_inv: NDArray) -> float:
        ld = self.log_dens(b[np.newaxis, :])
        return float(np.sum(ld) - 0.5 * b @ D_inv @ b)

    def _mode_derivatives(self, b: NDArray, D_inv: NDArray) -> tuple[NDArray, NDArray]:
        """Gradient of h and the negative Hessian of h at b."""
        c = self.cluster
        eta, eta_zi = self.predictors(b[np.newaxis, :])
        eta = eta[0]
        eta_zi = None if eta_zi is None else eta_zi[0]

        s_eta = _scores.score_eta(self.family, c.y, eta, self.phis, eta_zi)
        d_ee, d_ez, d_zz = _scores.curvature(self.family, c.y, eta, self.phis, eta_zi)

        grad = -D_inv @ b
        neg_hess = D_inv.copy()
        nz = slice(0, self.q_nz)
        grad[nz] += c.Z.T @ s_eta
        neg_hess[nz, nz] -= c.Z.T @ (d_ee[:, np.newaxis] * c.Z)

        if eta_zi is not None and self.q > self.q_nz:
            zi = slice(self.q_nz, self.q)
            s_zi = _scores.score_eta_zi(self.family, c.y, eta, self.phis, eta_zi)
            grad[zi] += c.Z_zi.T @ s_zi
            cross = c.Z.T @ (d_ez[:, np.newaxis] * c.Z_zi)
            neg_hess[nz, zi] -= cross
            neg_hess[zi, nz] -= cross.T
            neg_hess[zi, zi] -= c.Z_zi.T @ (d_zz[:, np.newaxis] * c.Z_zi)

        return grad, 0.5 * (neg_hess + neg_hess.T)

    def find_mode(self, start: NDArray | None, max_iter: int,
                  tol: float) -> tuple[NDArray, NDArray]:
        """Newton-Raphson with step halving for the mode of h(b).

        Returns:
            (mode, negative Hessian at the mode)
        """
        L = self._prior_factor(tuple(range(self.q)))
        D_inv = cho_solve((L, True), np.eye(self.q))

        b = np.zeros(self.q) if start is None else np.array(start, dtype=np.float64)
        h_val = self._mode_objective(b, D_inv)
        if not np.isfinite(h_val):
            b = np.zeros(self.q)
            h_val = self._mode_objective(b, D_inv)
            if not np.isfinite(h_val):
                raise _IntegrationFailure("non-finite log-density at b = 0")

        for _ in range(max_iter):
            grad, neg_hess = self._mode_derivatives(b, D_inv)
            if not (np.all(np.isfinite(grad)) and np.all(np.isfinite(neg_hess))):
                raise _IntegrationFailure("non-finite derivatives in mode search")
            if np.max(np.abs(grad)) < _MODE_GRAD_TOL:
                break

            step = newton_direction(neg_hess, grad)
            t = 1.0
            for _ in range(_MAX_HALVINGS):
                b_new = b + t * step
                h_new = self._mode_objective(b_new, D_inv)
                if np.isfinite(h_new) and h_new >= h_val:
                    break
                t *= 0.5
            else:
                # No ascent left at working precision
                break

            b, h_val = b_new, h_new
            if np.max(np.abs(t * step)) < tol * (1.0 + np.max(np.abs(b))):
                break
        else:
            raise _IntegrationFailure(f"mode search did not converge in {max_iter} iterations")

        _, neg_hess = self._mode_derivatives(b, D_inv)
        return b, neg_hess

    def adapt(self, blocks, rules, start, max_iter, tol) -> QuadratureState:
        mode, neg_hess = self.find_mode(start, max_iter, tol)
        scale = np.zeros((self.q, self.q))
        for idx in blocks:
            H_b = neg_hess[np.ix_(idx, idx)]
            try:
                L_H = np.linalg.cholesky(H_b)
            except np.linalg.LinAlgError as e:
                raise _IntegrationFailure("Hessian at the mode is not positive definite") from e
            # C = L_H^{-T} gives C C' = H_b^{-1}
            scale[np.ix_(idx, idx)] = solve_triangular(
                L_H, np.eye(len(idx)), lower=True
            ).T
        return QuadratureState(center=mode, scale=scale, blocks=blocks, rules=rules)

    def fallback_state(self, blocks, rules) -> QuadratureState:
        scale = np.zeros((self.q, self.q))
        for idx in blocks:
            scale[np.ix_(idx, idx)] = self._prior_factor(idx)
        return QuadratureState(center=np.zeros(self.q), scale=scale,
                               blocks=blocks, rules=rules, adaptive=False)

    # ------------------------------------------------------------------
    # Evaluation on fixed nodes
    # ------------------------------------------------------------------

    def evaluate(self, state: QuadratureState, curvature: bool = False) -> ClusterContribution:
        q = self.q
        n_blocks = len(state.blocks)

        loglik = 0.0
        mean = state.center.copy()
        second = np.zeros((q, q))
        dF_dD = np.zeros((q, q))
        node_sets = []
        weights = []

        for idx, rule in zip(state.blocks, state.rules):
            C = state.scale[np.ix_(idx, idx)]
            B = np.tile(state.center, (rule.size, 1))
            B[:, idx] = state.center[list(idx)] + rule.nodes @ C.T

            L_b = self._prior_factor(idx)
            Bb = B[:, idx]
            U = solve_triangular(L_b, Bb.T, lower=True)
            log_prior = (-0.5 * len(idx) * _LOG_2PI
                         - np.sum(np.log(np.diag(L_b)))
                         - 0.5 * np.sum(U ** 2, axis=0))

            a = rule.log_kernel + self.log_dens(B).sum(axis=1) + log_prior
            log_int = logsumexp(a)
            if not np.isfinite(log_int):
                raise _IntegrationFailure("non-finite integrand on the quadrature grid")

            log_det_C = np.sum(np.log(np.abs(np.diag(C))))
            loglik += log_det_C + log_int

            pi = np.exp(a - log_int)
            node_sets.append((B, pi))
            weights.append(pi)

            m = pi @ Bb
            S = (Bb * pi[:, np.newaxis]).T @ Bb
            mean[list(idx)] = m
            second[np.ix_(idx, idx)] = S
            D_inv = cho_solve((L_b, True), np.eye(len(idx)))
            dF_dD[np.ix_(idx, idx)] = -0.5 * D_inv + 0.5 * D_inv @ S @ D_inv

        if n_blocks > 1:
            center = state.center[np.newaxis, :]
            loglik -= (n_blocks - 1) * float(np.sum(self.log_dens(center)))
            node_sets.append((center, np.array([-(n_blocks - 1.0)])))
            for i, idx_i in enumerate(state.blocks):
                for idx_j in state.blocks[i + 1:]:
                    cross = np.outer(mean[list(idx_i)], mean[list(idx_j)])
                    second[np.ix_(idx_i, idx_j)] = cross
                    second[np.ix_(idx_j, idx_i)] = cross.T

        gradient = self._fixed_gradient(node_sets)
        gradient[self.layout.theta] = self.parameterization.gradient(self.theta, dF_dD)
        if not (np.isfinite(loglik) and np.all(np.isfinite(gradient))):
            raise _IntegrationFailure("non-finite log-likelihood or gradient")

        return ClusterContribution(
            loglik=float(loglik),
            gradient=gradient,
            posterior_mean=mean,
            posterior_second_moment=second,
            weights=tuple(weights),
            state=state,
            fixed_hessian=self._fixed_hessian(node_sets) if curvature else None,
        )

    def _fixed_gradient(self, node_sets) -> NDArray:
        """Σ over node sets of weighted scores, mapped to (β, γ, φ)."""
        c = self.cluster
        lay = self.layout
        gradient = np.zeros(lay.size)
        for B, w in node_sets:
            eta, eta_zi = self.predictors(B)
            s_eta = _scores.score_eta(self.family, c.y, eta, self.phis, eta_zi)
            gradient[lay.betas] += c.X.T @ (w @ s_eta)
            if eta_zi is not None:
                s_zi = _scores.score_eta_zi(self.family, c.y, eta, self.phis, eta_zi)
                gradient[lay.gammas] += c.X_zi.T @ (w @ s_zi)
            if lay.n_phis:
                sp = _scores.score_phis(self.family, c.y, eta, self.phis, eta_zi)
                gradient[lay.phis] += np.einsum('k,knp->p', w, sp)
        return gradient

    def _fixed_hessian(self, node_sets) -> NDArray:
        """Expected complete-data Hessian in (β, γ) and in φ."""
        c = self.cluster
        lay = self.layout
        n_fixed = lay.p + lay.p_zi + lay.n_phis
        H = np.zeros((n_fixed, n_fixed))
        for B, w in node_sets:
            eta, eta_zi = self.predictors(B)
            d_ee, d_ez, d_zz = _scores.curvature(self.family, c.y, eta, self.phis, eta_zi)
            H[lay.betas, lay.betas] += c.X.T @ ((w @ d_ee)[:, np.newaxis] * c.X)
            if eta_zi is not None:
                cross = c.X.T @ ((w @ d_ez)[:, np.newaxis] * c.X_zi)
                H[lay.betas, lay.gammas] += cross
                H[lay.gammas, lay.betas] += cross.T
                H[lay.gammas, lay.gammas] += c.X_zi.T @ ((w @ d_zz)[:, np.newaxis] * c.X_zi)
            if lay.n_phis:
                hp = _scores.phis_curvature(self.family, c.y, eta, self.phis, eta_zi)
                H[lay.phis, lay.phis] += np.einsum('k,knab->ab', w, hp)
        return H


# =====================================================================
# Helpers
# =====================================================================

def _as_rules(rule, blocks) -> tuple[QuadratureRule, ...]:
    rules = (rule,) if isinstance(rule, QuadratureRule) else tuple(rule)
    if len(rules) != len(blocks):
        raise ValidationError(
            f"Expected {len(blocks)} quadrature rule(s), got {len(rules)}"
        )
    for r, idx in zip(rules, blocks):
        if r.dim != len(idx):
            raise ValidationError(
                f"Quadrature rule of dimension {r.dim} for a block of {len(idx)} random effects"
            )
    return rules


def newton_direction(neg_hess: NDArray, grad: NDArray) -> NDArray:
    """Newton direction, with the Hessian shifted to positive definite if needed."""
    try:
        L = np.linalg.cholesky(neg_hess)
        return cho_solve((L, True), grad)
    except np.linalg.LinAlgError:
        min_eig = float(np.min(np.linalg.eigvalsh(neg_hess)))
        shifted = neg_hess + (abs(min_eig) + 1e-6) * np.eye(len(grad))
        return np.linalg.solve(shifted, grad)
