"""
Compute utilities shared by the fitting engine.
"""

from zimixed.core.compute.timing import Timer

__all__ = [
    "Timer",
]
