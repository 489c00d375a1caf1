"""
Log-Cholesky parameterization of the random-effects covariance matrix D.

theta = [log(diag(L)), free lower off-diagonal entries of L], D = L L'.

Every theta maps to a positive definite D, so the optimizer can move
freely without post-hoc corrections. Structured covariances fix entries
of L at zero:

    unstructured    all lower-triangular entries free
    block_diagonal  non-zero-part effects independent of zero-part
                    effects; each block unstructured
    diagonal        all random effects independent

Off-diagonal entries are ordered row-major over the lower triangle
(np.tril_indices order), restricted to the free positions.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from zimixed.core.exceptions import NotPositiveDefiniteError, ValidationError


class CholeskyParameterization:
    """
    Bijection between unconstrained theta and a positive definite D.

    Parameters
    ----------
    q : int
        Total random-effects dimension (q_nz + q_zi).
    structure : str
        'unstructured', 'block_diagonal' or 'diagonal'.
    q_nz : int, optional
        Number of non-zero-part random effects (the first q_nz
        coordinates). Defaults to q.
    """

    def __init__(self, q: int, structure: str = 'unstructured', q_nz: int | None = None):
        if q < 1:
            raise ValidationError(f"q must be >= 1, got {q}")
        self.q = q
        self.q_nz = q if q_nz is None else q_nz
        self.q_zi = q - self.q_nz
        self.structure = structure

        if structure == 'unstructured':
            blocks = [tuple(range(q))]
        elif structure == 'block_diagonal':
            blocks = [tuple(range(self.q_nz)), tuple(range(self.q_nz, q))]
        elif structure == 'diagonal':
            blocks = [(j,) for j in range(q)]
        else:
            raise ValidationError(f"Unknown covariance structure: {structure!r}")
        self.blocks = tuple(b for b in blocks if len(b) > 0)

        block_of = np.empty(q, dtype=int)
        for k, block in enumerate(self.blocks):
            block_of[list(block)] = k
        self.mask = block_of[:, None] == block_of[None, :]

        rows, cols = np.tril_indices(q, k=-1)
        free = self.mask[rows, cols]
        self._off_rows = rows[free]
        self._off_cols = cols[free]

        self.n_params = q + len(self._off_rows)

    # ------------------------------------------------------------------
    # theta <-> D
    # ------------------------------------------------------------------

    def cholesky(self, theta: NDArray) -> NDArray:
        """Lower-triangular factor L with D = L L'."""
        theta = np.asarray(theta, dtype=np.float64)
        if theta.shape != (self.n_params,):
            raise ValidationError(
                f"theta: expected shape ({self.n_params},), got {theta.shape}"
            )
        L = np.zeros((self.q, self.q))
        np.fill_diagonal(L, np.exp(theta[:self.q]))
        L[self._off_rows, self._off_cols] = theta[self.q:]
        return L

    def decode(self, theta: NDArray) -> NDArray:
        """theta → D."""
        L = self.cholesky(theta)
        return L @ L.T

    def encode(self, D: NDArray) -> NDArray:
        """D → theta.

        Raises:
            NotPositiveDefiniteError: If D is not positive definite.
            ValidationError: If D has non-zero entries the structure fixes at zero.
        """
        D = np.asarray(D, dtype=np.float64)
        if D.shape != (self.q, self.q):
            raise ValidationError(f"D: expected shape ({self.q}, {self.q}), got {D.shape}")
        scale = max(float(np.max(np.abs(D))), 1e-300)
        if np.any(np.abs(D[~self.mask]) > 1e-10 * scale):
            raise ValidationError(
                f"D: non-zero entries outside the {self.structure} structure"
            )
        try:
            L = np.linalg.cholesky(self.project(D))
        except np.linalg.LinAlgError as e:
            raise NotPositiveDefiniteError(
                "D is not positive definite",
                matrix_name='D',
                min_eigenvalue=float(np.min(np.linalg.eigvalsh(D))),
            ) from e
        return np.concatenate([
            np.log(np.diag(L)),
            L[self._off_rows, self._off_cols],
        ])

    # ------------------------------------------------------------------
    # Helpers for the fitting engine
    # ------------------------------------------------------------------

    def project(self, S: NDArray) -> NDArray:
        """Zero the entries of a symmetric matrix that the structure fixes at zero."""
        S = np.asarray(S, dtype=np.float64)
        return np.where(self.mask, 0.5 * (S + S.T), 0.0)

    def gradient(self, theta: NDArray, dF_dD: NDArray) -> NDArray:
        """Chain rule from ∂F/∂D (symmetric) to ∂F/∂theta.

        With D = L L', ∂F/∂L = 2 (∂F/∂D) L; the diagonal entries of L are
        exp(theta), so their derivatives pick up a factor L_jj.
        """
        L = self.cholesky(theta)
        G = 0.5 * (dF_dD + dF_dD.T)
        dL = 2.0 * G @ L
        return np.concatenate([
            np.diag(dL) * np.diag(L),
            dL[self._off_rows, self._off_cols],
        ])

    def initial(self, d_nz: float, d_zi: float = 0.5) -> NDArray:
        """theta for a diagonal D with d_nz / d_zi on the diagonal."""
        diag = np.concatenate([
            np.full(self.q_nz, float(d_nz)),
            np.full(self.q_zi, float(d_zi)),
        ])
        return np.concatenate([
            0.5 * np.log(diag),
            np.zeros(len(self._off_rows)),
        ])

    def __repr__(self) -> str:
        return (f"CholeskyParameterization(q={self.q}, structure={self.structure!r}, "
                f"q_nz={self.q_nz})")
