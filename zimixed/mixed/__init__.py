"""
Zero-inflated and hurdle generalized linear mixed models.

Public API:
    mixed_model()          — fit by adaptive Gauss-Hermite quadrature
    MixedModelSolution     — result wrapper (summary, compare, simulate,
                             marginal_coefs)
    FitControl             — fitting settings
    likelihood_ratio_test  — compare two fits
    LRTResult              — likelihood ratio test result
"""

from zimixed.mixed._common import FitControl
from zimixed.mixed._inference import LRTResult, MarginalCoefficients, likelihood_ratio_test
from zimixed.mixed.solvers import mixed_model
from zimixed.mixed.solution import MixedModelSolution

__all__ = [
    "mixed_model",
    "MixedModelSolution",
    "FitControl",
    "likelihood_ratio_test",
    "LRTResult",
    "MarginalCoefficients",
]
