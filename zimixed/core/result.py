"""
Generic result container for zimixed computations.

The Result class provides a standardized envelope for fitted models. It
carries timing, convergence metadata and non-fatal warnings alongside the
model-specific parameter payload.

Design decisions:
    - Generic over parameter payload P for type safety
    - info dict for flexible metadata (converged, iterations, diagnostics)
    - timing is optional (don't burden unit tests)
    - Immutable (frozen=True) for reproducibility
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TypeVar, Generic, Any

P = TypeVar('P')  # Parameter payload type


@dataclass(frozen=True)
class Result(Generic[P]):
    """
    Immutable result envelope for a fitted model.

    Type Parameters:
        P: The model-specific parameter payload type

    Attributes:
        params: Model-specific parameters (coefficients, covariance, ...)
        info: Structured metadata (method, convergence, diagnostics)
        timing: Execution timing breakdown, or None if not measured
        backend_name: Identifier of the engine that produced this result
        warnings: Non-fatal issues encountered during computation

    Examples:
        >>> Result(
        ...     params=MixedModelParams(...),
        ...     info={'method': 'adaptive_gh', 'converged': True},
        ...     timing={'total_seconds': 0.5, 'em': 0.3, 'quasi_newton': 0.2},
        ...     backend_name='cpu_agq'
        ... )
    """
    params: P
    info: dict[str, Any]
    timing: dict[str, float] | None
    backend_name: str
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def converged(self) -> bool:
        """Convergence flag recorded by the optimizer; False when absent."""
        return bool(self.info.get('converged', False))

    @property
    def elapsed(self) -> float | None:
        if self.timing is None:
            return None
        return self.timing.get('total_seconds')
