"""
Exponential covariance kernel and decomposed field covariances.
"""

from spglm.covariance.kernel import (
    ExponentialKernel,
    FieldCovariance,
    decay_from_range,
    effective_range,
)

__all__ = [
    "ExponentialKernel",
    "FieldCovariance",
    "decay_from_range",
    "effective_range",
]
