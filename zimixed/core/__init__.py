"""
Core infrastructure for zimixed.

This module provides shared abstractions and utilities used by the
families and the mixed-model engine.

Key components:
    result: Generic Result[P] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    capabilities: Family capability constants
    compute: Timing
"""

from zimixed.core.result import Result
from zimixed.core.exceptions import (
    ZiMixedError,
    ValidationError,
    DataError,
    DimensionError,
    NumericalError,
    NotPositiveDefiniteError,
    ClusterIntegrationError,
    FamilyContractError,
    ConvergenceWarning,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "ZiMixedError",
    "ValidationError",
    "DataError",
    "DimensionError",
    "NumericalError",
    "NotPositiveDefiniteError",
    "ClusterIntegrationError",
    "FamilyContractError",
    "ConvergenceWarning",
]
