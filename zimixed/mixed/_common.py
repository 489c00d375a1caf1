"""
Common data types for zero-inflated / hurdle mixed models.

Contains the per-cluster data container, the layout of the flat parameter
vector, the fit control configuration and the frozen parameter payload
that goes inside the Result[P] envelope.
"""

from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray

from zimixed.core.exceptions import ValidationError


COVARIANCE_STRUCTURES = ('unstructured', 'block_diagonal', 'diagonal')
OPTIMIZERS = ('BFGS', 'L-BFGS-B')


@dataclass(frozen=True)
class Cluster:
    """One grouping unit: all observations sharing a random-effects draw.

    Attributes:
        cluster_id: Original identifier of the cluster.
        rows: Row indices of these observations in the input data (n_i,).
        y: Outcomes (n_i,).
        X: Non-zero-part fixed-effects design (n_i, p).
        Z: Non-zero-part random-effects design (n_i, q_nz).
        X_zi: Zero-part fixed-effects design (n_i, p_zi).
        Z_zi: Zero-part random-effects design (n_i, q_zi).
        n: Cluster size n_i.
    """
    cluster_id: Any
    rows: NDArray
    y: NDArray
    X: NDArray
    Z: NDArray
    X_zi: NDArray
    Z_zi: NDArray
    n: int


@dataclass(frozen=True)
class ParameterLayout:
    """Positions of each parameter block inside the flat parameter vector.

    The vector is laid out as [betas, gammas, phis, theta].
    """
    p: int
    p_zi: int
    n_phis: int
    n_theta: int

    @property
    def betas(self) -> slice:
        return slice(0, self.p)

    @property
    def gammas(self) -> slice:
        return slice(self.p, self.p + self.p_zi)

    @property
    def phis(self) -> slice:
        start = self.p + self.p_zi
        return slice(start, start + self.n_phis)

    @property
    def theta(self) -> slice:
        start = self.p + self.p_zi + self.n_phis
        return slice(start, start + self.n_theta)

    @property
    def fixed(self) -> slice:
        """betas, gammas and phis: everything but theta."""
        return slice(0, self.p + self.p_zi + self.n_phis)

    @property
    def size(self) -> int:
        return self.p + self.p_zi + self.n_phis + self.n_theta

    def pack(self, betas, gammas, phis, theta) -> NDArray:
        return np.concatenate([
            np.asarray(betas, dtype=np.float64).ravel(),
            np.asarray(gammas, dtype=np.float64).ravel(),
            np.asarray(phis, dtype=np.float64).ravel(),
            np.asarray(theta, dtype=np.float64).ravel(),
        ])

    def unpack(self, params: NDArray) -> tuple[NDArray, NDArray, NDArray, NDArray]:
        return (params[self.betas], params[self.gammas],
                params[self.phis], params[self.theta])


@dataclass(frozen=True)
class FitControl:
    """Control settings for the fitting engine.

    Attributes:
        quadrature_points: Gauss-Hermite points per random-effect dimension.
        max_em_iter: EM warm-start iterations (0 skips EM).
        max_qn_iter: Quasi-Newton outer rounds; nodes are re-centered
            before each round.
        tol_loglik: Relative log-likelihood change for convergence.
        tol_param: Maximum absolute parameter change for convergence.
        covariance_structure: 'unstructured', 'block_diagonal' or 'diagonal'.
        tol_em: Relative improvement below which EM hands over early.
        update_gh_every: Re-center quadrature nodes every this many EM
            iterations.
        qn_inner_iter: Quasi-Newton iterations per outer round.
        max_quadrature_nodes: Cap on the total number of grid nodes; the
            points per dimension shrink as the dimension grows.
        optimizer: 'BFGS' or 'L-BFGS-B'.
        mode_max_iter: Newton-Raphson iterations for a cluster mode.
        mode_tol: Step-size tolerance for the cluster mode.
    """
    quadrature_points: int = 11
    max_em_iter: int = 30
    max_qn_iter: int = 10
    tol_loglik: float = 1e-8
    tol_param: float = 1e-4
    covariance_structure: str = 'unstructured'
    tol_em: float = 1e-4
    update_gh_every: int = 5
    qn_inner_iter: int = 50
    max_quadrature_nodes: int = 1000
    optimizer: str = 'BFGS'
    mode_max_iter: int = 50
    mode_tol: float = 1e-8

    def __post_init__(self):
        if self.quadrature_points < 1:
            raise ValidationError(
                f"quadrature_points must be >= 1, got {self.quadrature_points}"
            )
        for name in ('max_em_iter', 'max_qn_iter'):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must be >= 0, got {getattr(self, name)}")
        for name in ('update_gh_every', 'qn_inner_iter', 'mode_max_iter',
                     'max_quadrature_nodes'):
            if getattr(self, name) < 1:
                raise ValidationError(f"{name} must be >= 1, got {getattr(self, name)}")
        for name in ('tol_loglik', 'tol_param', 'tol_em', 'mode_tol'):
            if not getattr(self, name) > 0:
                raise ValidationError(f"{name} must be > 0, got {getattr(self, name)}")
        if self.covariance_structure not in COVARIANCE_STRUCTURES:
            raise ValidationError(
                f"covariance_structure must be one of {COVARIANCE_STRUCTURES}, "
                f"got {self.covariance_structure!r}"
            )
        if self.optimizer not in OPTIMIZERS:
            raise ValidationError(
                f"optimizer must be one of {OPTIMIZERS}, got {self.optimizer!r}"
            )


@dataclass(frozen=True)
class MixedModelParams:
    """
    Parameter payload for a fitted zero-inflated / hurdle mixed model.

    Contains all estimates needed to reconstruct the model summary,
    perform inference and simulate from the fit.
    """
    # Fixed effects
    betas: NDArray                     # non-zero part (p,)
    gammas: NDArray                    # zero part (p_zi,)
    phis: NDArray                      # dispersion, log scale (n_phis,)
    coefficient_names: tuple[str, ...]
    zi_coefficient_names: tuple[str, ...]
    se_betas: NDArray
    se_gammas: NDArray
    z_betas: NDArray
    p_betas: NDArray
    z_gammas: NDArray
    p_gammas: NDArray

    # Random effects
    D: NDArray                         # (q, q)
    theta: NDArray                     # unconstrained Cholesky parameters
    covariance_structure: str
    q_nz: int
    q_zi: int

    # Full parameter vector and its covariance (unconstrained scale)
    estimates: NDArray
    vcov: NDArray

    # Model fit
    log_likelihood: float
    aic: float
    bic: float
    n_obs: int
    n_clusters: int
    n_params: int

    # Family
    family_name: str
    kind: str                          # 'standard', 'zero_inflated', 'hurdle', 'user'

    # Convergence
    converged: bool
    n_em_iter: int
    n_qn_iter: int
    loglik_history: tuple[float, ...]
    history_tags: tuple[str, ...]      # 'recenter', 'em' or 'qn' per history entry

    # Random effects empirical-Bayes estimates per cluster
    cluster_ids: tuple
    random_effects: NDArray            # (m, q) modes
    random_effects_cov: NDArray        # (m, q, q) posterior covariances

    # Predictions
    fitted_values: NDArray             # conditional (1-π) E(Y) at the EB modes (n,)
    linear_predictor: NDArray          # η at the EB modes (n,)
    linear_predictor_zi: NDArray | None
