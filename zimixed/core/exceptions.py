"""
Exception hierarchy for zimixed.

All exceptions inherit from ZiMixedError to allow catching any
library-specific error. Domain-specific exceptions should inherit from
the appropriate base class here.

Design principles:
    - Exceptions carry diagnostic information as attributes
    - Error messages are actionable with actual vs expected values
    - Never catch and re-raise with less information
    - Structural errors (data, family contract) are never retried;
      numerical errors may be recovered once before escalating
"""


class ZiMixedError(Exception):
    """Base exception for all zimixed errors."""
    pass


class ValidationError(ZiMixedError):
    """
    Input validation failed.

    Raised when user-provided inputs fail validation checks.
    """
    pass


class DataError(ValidationError):
    """
    The data handed to the fitter are structurally unusable.

    Raised before any fitting begins: missing grouping variable, an
    outcome that is invalid for the chosen family, a rank-deficient
    fixed-effects design matrix.
    """
    pass


class DimensionError(DataError):
    """
    Array dimensions are incorrect or inconsistent.

    Raised when the outcome vector, cluster identifiers and design
    matrices are not row-aligned.
    """
    pass


class NumericalError(ZiMixedError):
    """
    Numerical computation failed.

    Base class for errors arising from numerical issues during computation.
    """
    pass


class NotPositiveDefiniteError(NumericalError):
    """
    Matrix is not positive definite.

    Raised when an operation requires a positive definite matrix
    (e.g., Cholesky decomposition) but the matrix fails this requirement.

    Attributes:
        matrix_name: Name/description of the problematic matrix
        min_eigenvalue: Minimum eigenvalue, if computed
    """

    def __init__(
        self,
        message: str,
        matrix_name: str | None = None,
        min_eigenvalue: float | None = None
    ):
        super().__init__(message)
        self.matrix_name = matrix_name
        self.min_eigenvalue = min_eigenvalue


class ClusterIntegrationError(NumericalError):
    """
    The marginal likelihood of one cluster could not be computed.

    Raised only after the conservative (non-adaptive, wider grid) retry
    has also failed. Aborts the fit.

    Attributes:
        cluster_id: Identifier of the offending cluster
        reason: What failed on the last attempt
    """

    def __init__(
        self,
        message: str,
        cluster_id: object = None,
        reason: str | None = None
    ):
        super().__init__(message)
        self.cluster_id = cluster_id
        self.reason = reason


class FamilyContractError(ZiMixedError):
    """
    A family does not provide a capability the requested operation needs.

    Attributes:
        capability: Name of the missing capability (e.g. 'simulate')
        family_name: Name of the family, if known
    """

    def __init__(
        self,
        message: str,
        capability: str | None = None,
        family_name: str | None = None
    ):
        super().__init__(message)
        self.capability = capability
        self.family_name = family_name


class ConvergenceWarning(UserWarning):
    """
    Iteration cap reached without meeting the convergence tolerances.

    Non-fatal: the fit still returns its best iterate with
    ``converged = False``.
    """
    pass
