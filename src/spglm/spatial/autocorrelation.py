"""
Moran's I test for spatial autocorrelation.

    I = (N / S0) * (z^T W z) / (z^T z),    z = x - mean(x),  S0 = sum(W)

Under the randomisation null E[I] = -1 / (N - 1); the variance is the
classic randomisation variance. The weights are inverse distances, zero on
the diagonal, row-normalised so every row sums to one.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict

import numpy as np
from esda.moran import Moran
from libpysal.weights import full2W
from numpy.typing import ArrayLike, NDArray
from scipy import stats
from scipy.spatial.distance import cdist

from spglm.errors import DataError

logger = logging.getLogger(__name__)

ALTERNATIVES = ("greater", "less", "two-sided")

# esda's randomisation variance divides by (N - 1)(N - 2)(N - 3)
_MIN_SITES = 4


@dataclass(frozen=True)
class MoranResult:
    """Moran's I with its randomisation-null moments and normal-approximation test."""

    statistic: float
    expectation: float
    variance: float
    z_score: float
    p_value: float
    alternative: str

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


def build_inverse_distance_weights(coords: ArrayLike) -> NDArray[np.float64]:
    """
    Row-normalised inverse-distance weight matrix.

    Parameters
    ----------
    coords : ArrayLike
        Planar coordinates, shape (N, 2)

    Returns
    -------
    NDArray[np.float64]
        W with W[i, j] = (1/d_ij) / sum_k (1/d_ik) for i != j, W[i, i] = 0.

    Raises
    ------
    DataError
        If any two points coincide.
    """
    xy = np.asarray(coords, dtype=np.float64)
    if xy.ndim != 2 or xy.shape[1] != 2:
        raise DataError(f"coords must have shape (N, 2). Got {xy.shape}")
    if len(xy) < 2:
        raise DataError(f"Need at least 2 points for spatial weights. Got {len(xy)}")

    distances = cdist(xy, xy)
    off_diagonal = ~np.eye(len(xy), dtype=bool)
    if np.any(distances[off_diagonal] == 0):
        i, j = np.argwhere((distances == 0) & off_diagonal)[0]
        raise DataError(f"Points {i} and {j} coincide; inverse-distance weight is undefined")

    weights = np.zeros_like(distances)
    weights[off_diagonal] = 1.0 / distances[off_diagonal]
    return weights / weights.sum(axis=1, keepdims=True)


def _p_value(z: float, alternative: str) -> float:
    if alternative == "greater":
        return float(stats.norm.sf(z))
    if alternative == "less":
        return float(stats.norm.cdf(z))
    return float(2.0 * stats.norm.sf(abs(z)))


def moran_test(
    values: ArrayLike,
    weights: ArrayLike,
    alternative: str = "greater",
) -> MoranResult:
    """
    Moran's I of values under the given spatial weights.

    Parameters
    ----------
    values : ArrayLike
        Variable observed at N locations, shape (N,)
    weights : ArrayLike
        Dense weight matrix, shape (N, N); used exactly as given.
    alternative : str
        "greater" tests positive autocorrelation (clustering), "less"
        negative autocorrelation (dispersion), "two-sided" either.

    Returns
    -------
    MoranResult
    """
    if alternative not in ALTERNATIVES:
        raise ValueError(f"alternative must be one of {ALTERNATIVES}. Got {alternative!r}")

    y = np.asarray(values, dtype=np.float64)
    W = np.asarray(weights, dtype=np.float64)
    n = len(y)
    if y.ndim != 1:
        raise DataError(f"values must be one-dimensional. Got shape {y.shape}")
    if W.shape != (n, n):
        raise DataError(f"weights must have shape ({n}, {n}). Got {W.shape}")
    if n < _MIN_SITES:
        raise DataError(f"Moran's I needs at least {_MIN_SITES} locations. Got {n}")
    if not np.all(np.isfinite(y)):
        raise DataError("values must be finite")
    if np.allclose(y, y[0]):
        raise DataError("values are constant; Moran's I is undefined")

    mi = Moran(y, full2W(W), transformation="o", permutations=0)

    statistic = float(mi.I)
    expectation = float(mi.EI)
    variance = float(mi.VI_rand)
    z_score = (statistic - expectation) / np.sqrt(variance)
    p_value = _p_value(z_score, alternative)

    logger.debug(
        "Moran's I=%.4f (E[I]=%.4f, z=%.3f, p=%.4g, %s)",
        statistic,
        expectation,
        z_score,
        p_value,
        alternative,
    )
    return MoranResult(
        statistic=statistic,
        expectation=expectation,
        variance=variance,
        z_score=float(z_score),
        p_value=p_value,
        alternative=alternative,
    )
