"""
Observation data for the spatial binomial GLM.

**SpatialDataset (dataset.py):**
- Validated, immutable coordinates, trial and success counts
- Censoring of zero-trial units, duplicate-coordinate rejection or jitter

**Synthetic data (synthetic.py):**
- Regular grid coordinates
- Datasets simulated from known (β0, φ, σ²)
"""

from spglm.data.dataset import Observation, SpatialDataset
from spglm.data.synthetic import grid_coordinates, simulate_dataset

__all__ = [
    "Observation",
    "SpatialDataset",
    "grid_coordinates",
    "simulate_dataset",
]
