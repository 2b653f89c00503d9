"""
Shared fixtures: small simulated datasets and a quickly fitted model.
"""

import numpy as np
import pytest

from spglm.config import PriorSpec, SamplerConfig
from spglm.data.dataset import SpatialDataset
from spglm.data.synthetic import grid_coordinates, simulate_dataset
from spglm.inference.sampler import AdaptiveMetropolisSampler


@pytest.fixture
def unit_triangle() -> SpatialDataset:
    """Three observations at the corners of a unit right triangle."""
    return SpatialDataset.from_arrays(
        [[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]],
        trials=[10, 12, 8],
        successes=[3, 6, 1],
    )


@pytest.fixture(scope="session")
def small_dataset():
    """25 sites on a 5 x 5 unit grid, simulated from known parameters."""
    dataset, w_true = simulate_dataset(
        grid_coordinates(5, 5),
        trials=20,
        beta0=0.3,
        phi=0.8,
        sigma_sq=0.7,
        seed=11,
    )
    return dataset, w_true


@pytest.fixture(scope="session")
def quick_fit(small_dataset):
    """Short 2-chain fit (200 iterations each), enough for plumbing tests."""
    dataset, _ = small_dataset
    sampler = AdaptiveMetropolisSampler(priors=PriorSpec(phi_low=0.2, phi_high=2.0))
    config = SamplerConfig(n_chains=2, n_batch=10, batch_len=20, burnin_frac=0.5, seed=3)
    return sampler.fit(dataset, config)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(12345)
