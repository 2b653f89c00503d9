"""
Residual checks for predictions at held-out observed sites.
"""

from typing import NamedTuple, Optional, Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray

from spglm.prediction.predictive import SitePrediction
from spglm.spatial.autocorrelation import (
    MoranResult,
    build_inverse_distance_weights,
    moran_test,
)


class PredictionResiduals(NamedTuple):
    """Observed vs predicted values per site, in prediction order."""

    observed_proportion: NDArray[np.float64]
    predicted_probability: NDArray[np.float64]
    residual: NDArray[np.float64]
    count_residual: Optional[NDArray[np.int64]]


def rmse(observed: ArrayLike, predicted: ArrayLike) -> float:
    """
    Root-mean-square error: sqrt(mean((observed - predicted)^2)).

    Parameters
    ----------
    observed, predicted : ArrayLike
        Values of equal shape.

    Returns
    -------
    float
    """
    obs = np.asarray(observed, dtype=np.float64)
    pred = np.asarray(predicted, dtype=np.float64)
    if obs.shape != pred.shape:
        raise ValueError(f"Shapes differ: {obs.shape} vs {pred.shape}")
    if obs.size == 0:
        raise ValueError("rmse of an empty sample is undefined")
    return float(np.sqrt(np.mean((obs - pred) ** 2)))


def prediction_residuals(
    predictions: Sequence[SitePrediction],
    successes: ArrayLike,
    trials: ArrayLike,
) -> PredictionResiduals:
    """
    Residuals of site predictions against held-out binomial observations.

    Parameters
    ----------
    predictions : Sequence[SitePrediction]
        Output of PredictiveSample.summarize, in site order.
    successes, trials : ArrayLike
        Observed counts at the same sites, same order.

    Returns
    -------
    PredictionResiduals
        Probability residuals r/n - p, and count residuals r - r_hat when
        every prediction carries a drawn count (None otherwise).
    """
    r = np.asarray(successes, dtype=np.float64)
    n = np.asarray(trials, dtype=np.float64)
    if not (len(r) == len(n) == len(predictions)):
        raise ValueError(
            f"Need one observation per prediction. Got {len(predictions)} predictions, "
            f"{len(r)} successes, {len(n)} trials"
        )
    if np.any(n <= 0):
        raise ValueError("trials must be positive at every validation site")

    observed = r / n
    predicted = np.array([p.mean_probability for p in predictions], dtype=np.float64)

    count_residual = None
    if predictions and all(p.predicted_count is not None for p in predictions):
        counts = np.array([p.predicted_count for p in predictions], dtype=np.int64)
        count_residual = r.astype(np.int64) - counts

    return PredictionResiduals(
        observed_proportion=observed,
        predicted_probability=predicted,
        residual=observed - predicted,
        count_residual=count_residual,
    )


def residual_autocorrelation(
    coords: ArrayLike,
    residuals: ArrayLike,
    alternative: str = "greater",
) -> MoranResult:
    """Moran's I of residuals under row-normalised inverse-distance weights."""
    weights = build_inverse_distance_weights(coords)
    return moran_test(residuals, weights, alternative=alternative)
