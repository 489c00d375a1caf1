"""
Maximization of the marginal log-likelihood.

Two phases, both working on one explicit FitState:

1. EM warm start. Posterior node weights from the integrator give the
   E-step. The M-step sets D = mean_i E[b_i b_i'] (projected on the
   covariance structure) in closed form and takes one Newton step for
   the fixed parameters using the expected complete-data Hessian. The
   step is halved until the log-likelihood does not decrease; at t = 0
   only D moves, which is a proper EM update on the fixed grid. Nodes are
   re-centered every ``update_gh_every`` iterations.

2. Quasi-Newton rounds. Each round re-centers the nodes, then runs
   scipy.optimize.minimize (BFGS or L-BFGS-B) on the smooth fixed-node
   objective with its exact gradient.

Convergence is declared between consecutive quasi-Newton rounds when the
relative log-likelihood change is below ``tol_loglik`` and the largest
absolute parameter change is below ``tol_param``.

Starting values come from a fixed-effects-only maximum likelihood fit
(random effects set to zero) and a diagonal D.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize

from zimixed.families import Family
from zimixed.mixed._assembler import Assembly, LikelihoodAssembler
from zimixed.mixed._common import FitControl, ParameterLayout
from zimixed.mixed._covariance import CholeskyParameterization
from zimixed.mixed._integrator import QuadratureState, newton_direction
from zimixed.mixed import _scores


logger = logging.getLogger(__name__)

_MAX_HALVINGS = 20
_D_NZ_BOUNDS = (0.1, 10.0)
_D_ZI_START = 0.5


@dataclass
class FitState:
    """Mutable optimizer state: the only place the parameter vector changes.

    Attributes:
        params: Current parameter vector.
        loglik: Log-likelihood at ``params`` (on ``states``).
        states: Per-cluster QuadratureStates the nodes currently sit at.
        loglik_history: Log-likelihood after every accepted iteration and
            every re-centering of the nodes.
        history_tags: One tag per ``loglik_history`` entry: 'recenter',
            'em' or 'qn'. Values only compare within a run of entries
            between two re-centerings.
        n_em_iter: EM iterations performed.
        n_qn_iter: Quasi-Newton iterations summed over rounds.
        n_rounds: Quasi-Newton rounds performed.
        converged: Convergence criteria met.
        stopped: Interrupted by ``should_stop``.
    """
    params: NDArray
    loglik: float = -np.inf
    states: tuple[QuadratureState, ...] | None = None
    loglik_history: list[float] = field(default_factory=list)
    history_tags: list[str] = field(default_factory=list)
    n_em_iter: int = 0
    n_qn_iter: int = 0
    n_rounds: int = 0
    converged: bool = False
    stopped: bool = False
    best_params: NDArray | None = None
    best_loglik: float = -np.inf
    best_states: tuple[QuadratureState, ...] | None = None

    def accept(self, params: NDArray, loglik: float,
               states: tuple[QuadratureState, ...], tag: str) -> None:
        self.params = np.array(params, dtype=np.float64)
        self.loglik = float(loglik)
        self.states = states
        self.loglik_history.append(self.loglik)
        self.history_tags.append(tag)
        if self.loglik > self.best_loglik:
            self.best_params = self.params.copy()
            self.best_loglik = self.loglik
            self.best_states = states

    def restore_best(self) -> None:
        if self.best_params is not None:
            self.params = self.best_params.copy()
            self.loglik = self.best_loglik
            self.states = self.best_states


# =====================================================================
# Starting values
# =====================================================================

def fit_fixed_effects(
    y: NDArray,
    X: NDArray,
    X_zi: NDArray,
    family: Family,
    n_phis: int,
) -> tuple[NDArray, NDArray, NDArray, float]:
    """Maximum likelihood fit with all random effects set to zero.

    Returns:
        (betas, gammas, phis, log-likelihood)
    """
    p, p_zi = X.shape[1], X_zi.shape[1]
    has_zero = family.has_zero_part

    betas0 = np.zeros(p)
    positive = y > 0
    if np.sum(positive) >= p:
        betas0 = np.linalg.lstsq(X[positive], family.response_on_link_scale(y),
                                 rcond=None)[0]
    x0 = np.concatenate([betas0, np.zeros(p_zi), family.initial_phis(y, n_phis)])

    def negloglik(x):
        betas, gammas, phis = x[:p], x[p:p + p_zi], x[p + p_zi:]
        eta = X @ betas
        eta_zi = X_zi @ gammas if has_zero else None
        ll = float(np.sum(family.log_dens(y, eta, phis, eta_zi)))
        grad = np.empty_like(x)
        grad[:p] = X.T @ _scores.score_eta(family, y, eta, phis, eta_zi)
        if has_zero:
            grad[p:p + p_zi] = X_zi.T @ _scores.score_eta_zi(family, y, eta, phis, eta_zi)
        grad[p + p_zi:] = _scores.score_phis(family, y, eta, phis, eta_zi).sum(axis=0)
        if not np.isfinite(ll):
            return np.inf, np.zeros_like(x)
        return -ll, -grad

    res = minimize(negloglik, x0, jac=True, method='BFGS', options={'maxiter': 500})
    x = res.x
    return x[:p], x[p:p + p_zi], x[p + p_zi:], -float(res.fun)


def initial_d_nz(y: NDArray, family: Family) -> float:
    """Random-intercept variance guess from the link-scale outcome spread."""
    z = family.response_on_link_scale(y)
    if z.size < 2:
        return 1.0
    return float(np.clip(0.5 * np.var(z), *_D_NZ_BOUNDS))


def initial_params(
    y: NDArray,
    X: NDArray,
    X_zi: NDArray,
    family: Family,
    layout: ParameterLayout,
    parameterization: CholeskyParameterization,
) -> NDArray:
    betas, gammas, phis, ll = fit_fixed_effects(y, X, X_zi, family, layout.n_phis)
    logger.info("fixed-effects-only start: loglik=%.6f", ll)
    theta = parameterization.initial(initial_d_nz(y, family), _D_ZI_START)
    return layout.pack(betas, gammas, phis, theta)


# =====================================================================
# EM warm start
# =====================================================================

def run_em(
    assembler: LikelihoodAssembler,
    fit: FitState,
    control: FitControl,
    should_stop: Callable[[], bool] | None = None,
) -> None:
    """EM iterations on the fixed-node likelihood. Updates ``fit`` in place."""
    if control.max_em_iter == 0:
        return
    layout = assembler.layout
    parameterization = assembler.parameterization

    current = assembler.assemble(fit.params, fit.states, adapt=True, curvature=True)
    fit.accept(fit.params, current.loglik, current.states, 'recenter')
    logger.info("EM start: loglik=%.6f", current.loglik)

    for it in range(1, control.max_em_iter + 1):
        if should_stop is not None and should_stop():
            fit.stopped = True
            logger.info("EM interrupted at iteration %d", it)
            return

        if it > 1 and (it - 1) % control.update_gh_every == 0:
            current = assembler.assemble(fit.params, fit.states, adapt=True, curvature=True)
            fit.accept(fit.params, current.loglik, current.states, 'recenter')

        theta_new = parameterization.encode(
            parameterization.project(current.mean_second_moment())
        )
        direction = _fixed_newton_direction(current, layout)

        old_ll = current.loglik
        accepted = None
        t = 1.0
        for _ in range(_MAX_HALVINGS):
            trial = _em_trial(assembler, fit.params, current, direction, t, theta_new)
            if trial[1].loglik >= old_ll:
                accepted = trial
                break
            t *= 0.5
        else:
            # D-only update
            t = 0.0
            trial = _em_trial(assembler, fit.params, current, direction, t, theta_new)
            if trial[1].loglik >= old_ll:
                accepted = trial

        fit.n_em_iter = it
        if accepted is None:
            logger.info("EM: no ascent at iteration %d, handing over", it)
            return

        candidate, current = accepted
        fit.accept(candidate, current.loglik, current.states, 'em')
        rel = (current.loglik - old_ll) / max(abs(old_ll), 1.0)
        logger.debug("EM iter %d: loglik=%.8f step=%.3g rel=%.3g",
                     it, current.loglik, t, rel)
        if rel < control.tol_em:
            logger.info("EM converged after %d iterations", it)
            return


def _em_trial(assembler, params, current, direction, t, theta_new):
    layout = assembler.layout
    candidate = params.copy()
    candidate[layout.fixed] += t * direction
    candidate[layout.theta] = theta_new
    return candidate, assembler.assemble(candidate, current.states, adapt=False,
                                         curvature=True)


def _fixed_newton_direction(current: Assembly, layout: ParameterLayout) -> NDArray:
    """Newton direction for (β, γ) and φ from the expected Hessian."""
    grad = current.gradient[layout.fixed]
    neg_hess = -current.fixed_hessian
    direction = np.zeros_like(grad)
    n_bg = layout.p + layout.p_zi
    bg = slice(0, n_bg)
    direction[bg] = newton_direction(neg_hess[bg, bg], grad[bg])
    if layout.n_phis:
        ph = slice(n_bg, n_bg + layout.n_phis)
        direction[ph] = newton_direction(neg_hess[ph, ph], grad[ph])
    return direction


# =====================================================================
# Quasi-Newton rounds
# =====================================================================

def run_quasi_newton(
    assembler: LikelihoodAssembler,
    fit: FitState,
    control: FitControl,
    should_stop: Callable[[], bool] | None = None,
) -> None:
    """Outer rounds of re-centering plus quasi-Newton. Updates ``fit`` in place."""
    prev_params = fit.params.copy()
    prev_ll = fit.loglik

    for rnd in range(1, control.max_qn_iter + 1):
        if should_stop is not None and should_stop():
            fit.stopped = True
            logger.info("quasi-Newton interrupted before round %d", rnd)
            return

        base = assembler.assemble(fit.params, fit.states, adapt=True)
        states = base.states
        fit.accept(fit.params, base.loglik, states, 'recenter')

        seen: dict[bytes, float] = {}

        def objective(x):
            a = assembler.assemble(x, states, adapt=False)
            seen[x.tobytes()] = a.loglik
            return -a.loglik, -a.gradient

        def record(xk, *args):
            ll = seen.get(np.asarray(xk).tobytes())
            if ll is not None and ll >= fit.loglik:
                fit.accept(xk, ll, states, 'qn')

        res = minimize(
            objective, fit.params, jac=True, method=control.optimizer,
            callback=record, options={'maxiter': control.qn_inner_iter},
        )
        fit.n_rounds = rnd
        fit.n_qn_iter += int(res.nit)

        new_ll = -float(res.fun)
        if np.isfinite(new_ll) and new_ll >= fit.loglik:
            if not np.array_equal(res.x, fit.params):
                fit.accept(res.x, new_ll, states, 'qn')

        d_param = float(np.max(np.abs(fit.params - prev_params)))
        d_ll = abs(fit.loglik - prev_ll) / max(abs(prev_ll), 1.0)
        logger.debug("QN round %d: loglik=%.8f nit=%d d_ll=%.3g d_param=%.3g (%s)",
                     rnd, fit.loglik, res.nit, d_ll, d_param, res.message)
        if d_ll < control.tol_loglik and d_param < control.tol_param:
            fit.converged = True
            logger.info("converged after %d quasi-Newton round(s)", rnd)
            return
        prev_params = fit.params.copy()
        prev_ll = fit.loglik


def optimize(
    assembler: LikelihoodAssembler,
    start: NDArray,
    control: FitControl,
    should_stop: Callable[[], bool] | None = None,
) -> FitState:
    """EM warm start followed by quasi-Newton rounds.

    Returns the final FitState; when convergence was not reached the
    state holds the best iterate seen.
    """
    fit = FitState(params=np.array(start, dtype=np.float64))
    run_em(assembler, fit, control, should_stop)
    if not fit.stopped:
        logger.info("EM finished after %d iteration(s); starting quasi-Newton (%s)",
                    fit.n_em_iter, control.optimizer)
        if fit.states is None:
            first = assembler.assemble(fit.params, adapt=True)
            fit.accept(fit.params, first.loglik, first.states, 'recenter')
        run_quasi_newton(assembler, fit, control, should_stop)
    if not fit.converged:
        fit.restore_best()
    return fit
