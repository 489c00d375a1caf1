"""
Family capability string constants for zimixed.

This module is the SINGLE SOURCE OF TRUTH for capability strings.
Import from here, never use raw strings.

Usage:
    from zimixed.core.capabilities import (
        CAPABILITY_SCORE_ETA,
        CAPABILITY_SIMULATE,
    )

    if family.supports(CAPABILITY_SCORE_ETA):
        s = family.score_eta(y, eta, phis, eta_zi)
"""

# Log-density per observation (mandatory for every family)
CAPABILITY_LOG_DENS = 'log_dens'

# Analytic derivative of log_dens w.r.t. the non-zero-part linear predictor
CAPABILITY_SCORE_ETA = 'score_eta'

# Analytic derivative of log_dens w.r.t. the zero-part linear predictor
CAPABILITY_SCORE_ETA_ZI = 'score_eta_zi'

# Analytic derivatives of log_dens w.r.t. the (log-scale) dispersion parameters
CAPABILITY_SCORE_PHIS = 'score_phis'

# Draw outcomes given the linear predictors
CAPABILITY_SIMULATE = 'simulate'

# Unconditional mean (1 - pi) * E(Y) for marginalized coefficients
CAPABILITY_MARGINAL_MEAN = 'marginal_mean'

__all__ = [
    'CAPABILITY_LOG_DENS',
    'CAPABILITY_SCORE_ETA',
    'CAPABILITY_SCORE_ETA_ZI',
    'CAPABILITY_SCORE_PHIS',
    'CAPABILITY_SIMULATE',
    'CAPABILITY_MARGINAL_MEAN',
]
