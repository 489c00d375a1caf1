"""
zimixed: zero-inflated and hurdle mixed models by adaptive quadrature.

Maximum likelihood fitting of generalized linear mixed models with an
extra zero-generating part, integrating the random effects with adaptive
Gauss-Hermite quadrature.

Submodules:
    core: Result envelope, exceptions, validation, capabilities
    families: Outcome families and link functions
    mixed: Model fitting, comparison and simulation
"""

__version__ = "0.1.0"

from zimixed import families
from zimixed import mixed
from zimixed.mixed import mixed_model, FitControl, MixedModelSolution

__all__ = [
    "__version__",
    "families",
    "mixed",
    "mixed_model",
    "FitControl",
    "MixedModelSolution",
]
