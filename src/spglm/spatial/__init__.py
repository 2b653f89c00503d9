"""
Spatial autocorrelation: inverse-distance weights and Moran's I.
"""

from spglm.spatial.autocorrelation import (
    MoranResult,
    build_inverse_distance_weights,
    moran_test,
)

__all__ = [
    "MoranResult",
    "build_inverse_distance_weights",
    "moran_test",
]
