"""
Posterior-predictive simulation at unobserved sites and residual checks.

**Usage:**
```python
from spglm.prediction import PredictiveEngine, prediction_residuals, rmse

sample = PredictiveEngine().predict(fitted, holdout.coords, thinning=5, seed=7)
sites = sample.summarize(trials=holdout.trials, seed=8)
res = prediction_residuals(sites, holdout.successes, holdout.trials)
print(rmse(res.observed_proportion, res.predicted_probability))
```
"""

from spglm.prediction.predictive import PredictiveEngine, PredictiveSample, SitePrediction
from spglm.prediction.residuals import (
    PredictionResiduals,
    prediction_residuals,
    residual_autocorrelation,
    rmse,
)

__all__ = [
    "PredictionResiduals",
    "PredictiveEngine",
    "PredictiveSample",
    "SitePrediction",
    "prediction_residuals",
    "residual_autocorrelation",
    "rmse",
]
