"""
Tests for the zimixed exception hierarchy.

Validates:
    - Inheritance chain (all exceptions catchable via ZiMixedError)
    - Diagnostic attributes on NotPositiveDefiniteError,
      ClusterIntegrationError, FamilyContractError
    - Default attribute values (None for optional attributes)
    - ConvergenceWarning is a warning, not an error
"""

import warnings

import pytest

from zimixed.core.exceptions import (
    ClusterIntegrationError,
    ConvergenceWarning,
    DataError,
    DimensionError,
    FamilyContractError,
    NotPositiveDefiniteError,
    NumericalError,
    ValidationError,
    ZiMixedError,
)


# ═══════════════════════════════════════════════════════════════════════
# Inheritance hierarchy
# ═══════════════════════════════════════════════════════════════════════


class TestInheritance:
    """Every exception is catchable via ZiMixedError."""

    def test_data_error_is_validation_error(self):
        with pytest.raises(ValidationError):
            raise DataError("bad outcome")

    def test_dimension_error_is_data_error(self):
        with pytest.raises(DataError):
            raise DimensionError("wrong length")

    def test_validation_error_is_zimixed_error(self):
        with pytest.raises(ZiMixedError):
            raise ValidationError("bad input")

    def test_not_positive_definite_is_numerical_error(self):
        with pytest.raises(NumericalError):
            raise NotPositiveDefiniteError("not PD")

    def test_cluster_integration_error_is_numerical_error(self):
        with pytest.raises(NumericalError):
            raise ClusterIntegrationError("cluster 3 failed", cluster_id=3)

    def test_family_contract_error_is_not_numerical(self):
        """Contract errors are structural, never retried as numerical ones."""
        err = FamilyContractError("no simulate", capability='simulate')
        assert isinstance(err, ZiMixedError)
        assert not isinstance(err, NumericalError)
        assert not isinstance(err, ValidationError)

    def test_convergence_warning_is_user_warning(self):
        assert issubclass(ConvergenceWarning, UserWarning)
        assert not issubclass(ConvergenceWarning, ZiMixedError)


# ═══════════════════════════════════════════════════════════════════════
# Diagnostic attributes
# ═══════════════════════════════════════════════════════════════════════


class TestNotPositiveDefiniteError:

    def test_all_attributes(self):
        err = NotPositiveDefiniteError(
            "Cholesky failed",
            matrix_name="D",
            min_eigenvalue=-0.001,
        )
        assert str(err) == "Cholesky failed"
        assert err.matrix_name == "D"
        assert err.min_eigenvalue == -0.001

    def test_defaults_are_none(self):
        err = NotPositiveDefiniteError("not PD")
        assert err.matrix_name is None
        assert err.min_eigenvalue is None


class TestClusterIntegrationError:

    def test_attributes(self):
        err = ClusterIntegrationError(
            "integration failed", cluster_id='subject-7', reason='non-finite integrand'
        )
        assert err.cluster_id == 'subject-7'
        assert err.reason == 'non-finite integrand'
        assert "integration failed" in str(err)

    def test_defaults_are_none(self):
        err = ClusterIntegrationError("failed")
        assert err.cluster_id is None
        assert err.reason is None


class TestFamilyContractError:

    def test_attributes(self):
        with pytest.raises(FamilyContractError) as exc_info:
            raise FamilyContractError(
                "missing simulate", capability='simulate', family_name='mine'
            )
        assert exc_info.value.capability == 'simulate'
        assert exc_info.value.family_name == 'mine'


class TestConvergenceWarning:

    def test_can_be_caught_as_warning(self):
        with pytest.warns(ConvergenceWarning, match="iteration cap"):
            warnings.warn("iteration cap reached", ConvergenceWarning)
