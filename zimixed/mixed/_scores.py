"""
Derivatives of a family's log-density in its linear predictors.

Every observation's log-density depends on its own η and η_zi only, so all
derivatives here are element-wise. Analytic scores are used when the
family advertises them; otherwise they are central differences of
``log_dens``. Second derivatives are always central differences of the
scores.
"""

import numpy as np
from numpy.typing import NDArray

from zimixed.core.capabilities import (
    CAPABILITY_SCORE_ETA,
    CAPABILITY_SCORE_ETA_ZI,
    CAPABILITY_SCORE_PHIS,
)
from zimixed.families import Family


SCORE_STEP = 1e-5
CURVATURE_STEP = 1e-4


def score_eta(family: Family, y: NDArray, eta: NDArray, phis: NDArray,
              eta_zi: NDArray | None) -> NDArray:
    """∂ log_dens / ∂η, shape broadcast(y, eta)."""
    if family.supports(CAPABILITY_SCORE_ETA):
        s = family.score_eta(y, eta, phis, eta_zi)
    else:
        h = SCORE_STEP
        s = (family.log_dens(y, eta + h, phis, eta_zi)
             - family.log_dens(y, eta - h, phis, eta_zi)) / (2.0 * h)
    return np.broadcast_to(np.asarray(s, dtype=np.float64), np.broadcast(y, eta).shape)


def score_eta_zi(family: Family, y: NDArray, eta: NDArray, phis: NDArray,
                 eta_zi: NDArray) -> NDArray:
    """∂ log_dens / ∂η_zi, shape broadcast(y, eta)."""
    if family.supports(CAPABILITY_SCORE_ETA_ZI):
        s = family.score_eta_zi(y, eta, phis, eta_zi)
    else:
        h = SCORE_STEP
        s = (family.log_dens(y, eta, phis, eta_zi + h)
             - family.log_dens(y, eta, phis, eta_zi - h)) / (2.0 * h)
    return np.broadcast_to(np.asarray(s, dtype=np.float64), np.broadcast(y, eta).shape)


def score_phis(family: Family, y: NDArray, eta: NDArray, phis: NDArray,
               eta_zi: NDArray | None) -> NDArray:
    """∂ log_dens / ∂φ, shape broadcast(y, eta) + (n_phis,)."""
    shape = np.broadcast(y, eta).shape + (len(phis),)
    if len(phis) == 0:
        return np.zeros(shape)
    if family.supports(CAPABILITY_SCORE_PHIS):
        return np.broadcast_to(
            np.asarray(family.score_phis(y, eta, phis, eta_zi), dtype=np.float64), shape
        )
    h = SCORE_STEP
    out = np.empty(shape)
    for j in range(len(phis)):
        up = np.array(phis, dtype=np.float64)
        down = up.copy()
        up[j] += h
        down[j] -= h
        out[..., j] = (family.log_dens(y, eta, up, eta_zi)
                       - family.log_dens(y, eta, down, eta_zi)) / (2.0 * h)
    return out


def curvature(family: Family, y: NDArray, eta: NDArray, phis: NDArray,
              eta_zi: NDArray | None) -> tuple[NDArray, NDArray | None, NDArray | None]:
    """Element-wise second derivatives (∂²/∂η², ∂²/∂η∂η_zi, ∂²/∂η_zi²).

    The last two are None for families without a zero part.
    """
    h = CURVATURE_STEP
    d_ee = (score_eta(family, y, eta + h, phis, eta_zi)
            - score_eta(family, y, eta - h, phis, eta_zi)) / (2.0 * h)
    if eta_zi is None:
        return d_ee, None, None
    d_ez = (score_eta(family, y, eta, phis, eta_zi + h)
            - score_eta(family, y, eta, phis, eta_zi - h)) / (2.0 * h)
    d_zz = (score_eta_zi(family, y, eta, phis, eta_zi + h)
            - score_eta_zi(family, y, eta, phis, eta_zi - h)) / (2.0 * h)
    return d_ee, d_ez, d_zz


def phis_curvature(family: Family, y: NDArray, eta: NDArray, phis: NDArray,
                   eta_zi: NDArray | None) -> NDArray:
    """∂²/∂φ_j ∂φ_l per observation, shape broadcast(y, eta) + (n_phis, n_phis)."""
    n_phis = len(phis)
    shape = np.broadcast(y, eta).shape
    out = np.zeros(shape + (n_phis, n_phis))
    h = CURVATURE_STEP
    for j in range(n_phis):
        up = np.array(phis, dtype=np.float64)
        down = up.copy()
        up[j] += h
        down[j] -= h
        out[..., :, j] = (score_phis(family, y, eta, up, eta_zi)
                          - score_phis(family, y, eta, down, eta_zi)) / (2.0 * h)
    return out
