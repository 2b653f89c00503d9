"""
Synthetic datasets simulated from the spatial binomial GLM.

Generates observations from known parameters, for checking that the
sampler recovers them:

    w ~ MVN(0, σ² exp(-φ D))
    r_i ~ Binomial(n_i, logit^{-1}(β0 + w_i))
"""

from typing import Optional, Tuple, Union

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.special import expit

from spglm.covariance.kernel import ExponentialKernel
from spglm.data.dataset import SpatialDataset


def grid_coordinates(nx: int, ny: int, spacing: float = 1.0) -> NDArray[np.float64]:
    """
    Regular lattice of nx * ny points, x varying fastest.

    Returns
    -------
    NDArray[np.float64]
        Shape (nx * ny, 2), first point at the origin.
    """
    if nx <= 0 or ny <= 0:
        raise ValueError(f"Grid dimensions must be positive. Got nx={nx}, ny={ny}")
    if not spacing > 0:
        raise ValueError(f"spacing must be positive. Got {spacing}")

    xs, ys = np.meshgrid(np.arange(nx) * spacing, np.arange(ny) * spacing)
    return np.column_stack([xs.ravel(), ys.ravel()]).astype(np.float64)


def simulate_dataset(
    coords: ArrayLike,
    trials: Union[int, ArrayLike],
    beta0: float,
    phi: float,
    sigma_sq: float,
    seed: Optional[int] = None,
    kernel: Optional[ExponentialKernel] = None,
) -> Tuple[SpatialDataset, NDArray[np.float64]]:
    """
    Simulate binomial observations with a latent exponential-covariance field.

    Parameters
    ----------
    coords : ArrayLike
        Distinct site coordinates, shape (N, 2)
    trials : int or ArrayLike
        Trials per site, scalar or shape (N,); every value must be >= 1.
    beta0 : float
        Intercept on the logit scale
    phi : float
        Decay of the exponential covariance
    sigma_sq : float
        Marginal variance of the field
    seed : int, optional
        Random seed for reproducibility.
    kernel : ExponentialKernel, optional
        Kernel used to build the field covariance. Default jitter 1e-8.

    Returns
    -------
    dataset : SpatialDataset
        Simulated observations, in coordinate order
    w_true : NDArray[np.float64]
        Latent field realisation, shape (N,)
    """
    xy = np.asarray(coords, dtype=np.float64)
    kernel = kernel or ExponentialKernel()
    rng = np.random.default_rng(seed)

    n_trials = np.broadcast_to(np.asarray(trials, dtype=np.int64), (len(xy),))

    field = kernel.decompose(xy, sigma_sq, phi)
    w_true = field.sample(rng)
    successes = rng.binomial(n_trials, expit(beta0 + w_true))

    dataset = SpatialDataset.from_arrays(
        xy, n_trials, successes, drop_zero_trials=False
    )
    return dataset, w_true
