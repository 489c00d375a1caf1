"""
Design validation for zero-inflated / hurdle mixed models.

ClusteredDesign validates the row-aligned inputs handed over by the
(external) design-matrix provider: the outcome, the cluster identifiers
and the four design matrices. It splits them once into immutable
Cluster objects that the engine reads for the rest of the fit.

All checks run before any fitting begins and raise DataError (or its
subclass DimensionError).
"""

from __future__ import annotations

from dataclasses import dataclass
import numpy as np
from numpy.typing import ArrayLike, NDArray

from zimixed.core.exceptions import DataError
from zimixed.core.validation import (
    check_array, check_finite, check_1d, check_2d,
    check_consistent_length, check_column_rank, check_group_ids,
)
from zimixed.families import Family
from zimixed.mixed._common import Cluster


def _as_matrix(A: ArrayLike | None, name: str, n: int) -> NDArray:
    """Convert to a 2-D float matrix; None becomes an (n, 0) matrix."""
    if A is None:
        return np.zeros((n, 0), dtype=np.float64)
    A = check_array(A, name)
    if A.ndim == 1:
        A = A.reshape(-1, 1)
    check_2d(A, name)
    check_finite(A, name)
    return A


@dataclass(frozen=True)
class ClusteredDesign:
    """Validated, cluster-split design for a mixed model.

    Attributes:
        y: Outcome vector (n,).
        group_ids: Cluster identifier per observation (n,).
        X: Non-zero-part fixed-effects matrix (n, p).
        Z: Non-zero-part random-effects matrix (n, q_nz).
        X_zi: Zero-part fixed-effects matrix (n, p_zi).
        Z_zi: Zero-part random-effects matrix (n, q_zi).
        clusters: Clusters in sorted identifier order.
        n: Number of observations.
        p, p_zi, q_nz, q_zi: Column counts.
    """
    y: NDArray
    group_ids: NDArray
    X: NDArray
    Z: NDArray
    X_zi: NDArray
    Z_zi: NDArray
    clusters: tuple[Cluster, ...]
    n: int
    p: int
    p_zi: int
    q_nz: int
    q_zi: int

    @property
    def q(self) -> int:
        return self.q_nz + self.q_zi

    @property
    def n_clusters(self) -> int:
        return len(self.clusters)

    @property
    def cluster_index(self) -> NDArray:
        """Position in ``clusters`` of each observation's cluster (n,)."""
        index = np.empty(self.n, dtype=np.intp)
        for k, cluster in enumerate(self.clusters):
            index[cluster.rows] = k
        return index

    @staticmethod
    def validate(
        y: ArrayLike,
        groups: ArrayLike,
        X: ArrayLike,
        Z: ArrayLike,
        family: Family,
        X_zi: ArrayLike | None = None,
        Z_zi: ArrayLike | None = None,
    ) -> 'ClusteredDesign':
        """Validate inputs and split them into clusters.

        Args:
            y: Outcome vector.
            groups: Cluster identifier per observation.
            X: Non-zero-part fixed-effects design matrix.
            Z: Non-zero-part random-effects design matrix (at least one
               column; a 1-D input is treated as a single column).
            family: The outcome family; decides whether a zero part is
               allowed or required and which outcomes are valid.
            X_zi: Zero-part fixed-effects design matrix (required for
               zero-inflated and hurdle families).
            Z_zi: Optional zero-part random-effects design matrix.

        Returns:
            Validated ClusteredDesign.

        Raises:
            DataError: On structurally invalid inputs.
            DimensionError: If inputs are not row-aligned.
        """
        y = check_array(y, 'y')
        if y.ndim == 2 and y.shape[1] == 1:
            y = y.ravel()
        check_1d(y, 'y')
        check_finite(y, 'y')
        n = y.shape[0]
        if n < 2:
            raise DataError(f"Need at least 2 observations, got {n}")

        group_ids = check_group_ids(groups, 'groups')

        X = _as_matrix(X, 'X', n)
        if Z is None:
            raise DataError("Z: a random-effects design matrix is required")
        Z = _as_matrix(Z, 'Z', n)
        X_zi = _as_matrix(X_zi, 'X_zi', n)
        Z_zi = _as_matrix(Z_zi, 'Z_zi', n)

        check_consistent_length(
            y, group_ids, X, Z, X_zi, Z_zi,
            names=('y', 'groups', 'X', 'Z', 'X_zi', 'Z_zi'),
        )

        if X.shape[1] == 0:
            raise DataError("X: at least one fixed-effects column is required")
        if Z.shape[1] == 0:
            raise DataError("Z: at least one random-effects column is required")
        check_column_rank(X, 'X')

        if family.has_zero_part:
            if X_zi.shape[1] == 0:
                raise DataError(
                    f"Family {family.name!r} has a zero part: X_zi is required"
                )
            check_column_rank(X_zi, 'X_zi')
        elif X_zi.shape[1] > 0 or Z_zi.shape[1] > 0:
            raise DataError(
                f"Family {family.name!r} has no zero part: X_zi / Z_zi must be omitted"
            )

        family.validate_response(y)

        unique_ids, inverse = np.unique(group_ids, return_inverse=True)
        if len(unique_ids) < 2:
            raise DataError(
                f"groups: need at least 2 clusters, got {len(unique_ids)}"
            )

        clusters = []
        for idx, cid in enumerate(unique_ids):
            rows = np.flatnonzero(inverse == idx)
            clusters.append(Cluster(
                cluster_id=cid.item() if hasattr(cid, 'item') else cid,
                rows=rows,
                y=y[rows],
                X=X[rows],
                Z=Z[rows],
                X_zi=X_zi[rows],
                Z_zi=Z_zi[rows],
                n=len(rows),
            ))

        return ClusteredDesign(
            y=y,
            group_ids=group_ids,
            X=X,
            Z=Z,
            X_zi=X_zi,
            Z_zi=Z_zi,
            clusters=tuple(clusters),
            n=n,
            p=X.shape[1],
            p_zi=X_zi.shape[1],
            q_nz=Z.shape[1],
            q_zi=Z_zi.shape[1],
        )
