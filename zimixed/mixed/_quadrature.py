"""
Gauss-Hermite quadrature rules for integrating against a Gaussian kernel.

A rule approximates ∫ f(x) φ_d(x) dx ≈ Σ_k w_k f(x_k) with φ_d the
standard d-variate normal density. Multivariate rules are tensor
products of the 1-D probabilists' Hermite rule. Rules are built once per
(dimension, points) pair, cached, and never modified afterwards; the
integrator only transforms their nodes affinely.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import numpy as np
from numpy.polynomial.hermite_e import hermegauss
from numpy.typing import NDArray


@dataclass(frozen=True)
class QuadratureRule:
    """Tensor-product Gauss-Hermite rule for a standard normal kernel.

    Attributes:
        nodes: Standard-normal nodes x_k, shape (K, dim).
        log_weights: log w_k with Σ w_k = 1, shape (K,).
        log_kernel: log w_k - log φ_d(x_k), shape (K,). Adding
            log|C| + log g(b̂ + C x_k) and taking logsumexp gives
            log ∫ g(b) db.
        points: Points per dimension.
        dim: Dimension d.
    """
    nodes: NDArray
    log_weights: NDArray
    log_kernel: NDArray
    points: int
    dim: int

    @property
    def size(self) -> int:
        return self.nodes.shape[0]


@lru_cache(maxsize=None)
def gauss_hermite_rule(dim: int, points: int) -> QuadratureRule:
    """Build (or fetch from cache) the d-dimensional product rule."""
    if dim < 1 or points < 1:
        raise ValueError(f"dim and points must be >= 1, got dim={dim}, points={points}")
    x, w = hermegauss(points)
    w = w / np.sqrt(2.0 * np.pi)
    log_w1 = np.log(w)

    grids = np.meshgrid(*([np.arange(points)] * dim), indexing='ij')
    idx = np.stack([g.ravel() for g in grids], axis=1)
    nodes = x[idx]
    log_weights = log_w1[idx].sum(axis=1)
    log_phi = -0.5 * dim * np.log(2.0 * np.pi) - 0.5 * np.sum(nodes ** 2, axis=1)
    log_kernel = log_weights - log_phi

    for arr in (nodes, log_weights, log_kernel):
        arr.setflags(write=False)

    return QuadratureRule(
        nodes=nodes,
        log_weights=log_weights,
        log_kernel=log_kernel,
        points=points,
        dim=dim,
    )


def points_for_dimension(points: int, dim: int, max_nodes: int) -> int:
    """Largest number of points per dimension, not above ``points``,
    keeping the grid at most ``max_nodes`` nodes."""
    k = points
    while k > 1 and k ** dim > max_nodes:
        k -= 1
    return k


def adaptive_rule(dim: int, points: int, max_nodes: int) -> QuadratureRule:
    """Rule used for adaptive (mode-centered) integration."""
    return gauss_hermite_rule(dim, points_for_dimension(points, dim, max_nodes))


def wide_rule(dim: int, points: int, max_nodes: int) -> QuadratureRule:
    """Wider rule for the non-adaptive retry centered at zero.

    Roughly twice the points per dimension, allowing a grid four times
    larger than the adaptive cap.
    """
    return gauss_hermite_rule(dim, points_for_dimension(2 * points + 1, dim, 4 * max_nodes))
