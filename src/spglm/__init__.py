"""
spglm: Bayesian spatial binomial GLM with a latent Gaussian-process field.

    r_i ~ Binomial(n_i, logit^{-1}(β0 + w_i)),    w ~ MVN(0, σ² exp(-φ D))

Subpackages:
- data: SpatialDataset, Observation, synthetic data
- covariance: exponential kernel, Cholesky-decomposed field covariance
- inference: adaptive Metropolis sampler, chains, convergence diagnostics
- prediction: conditional simulation at new sites, residual checks
- spatial: inverse-distance weights and Moran's I

**Usage:**
```python
from spglm import (
    AdaptiveMetropolisSampler, DiagnosticsComputer, PredictiveEngine,
    SamplerConfig, SpatialDataset,
)

dataset = SpatialDataset.from_arrays(coords, trials, successes)
fitted = AdaptiveMetropolisSampler().fit(dataset, SamplerConfig(seed=1))
records = DiagnosticsComputer.summarize(fitted)
sites = PredictiveEngine().predict(fitted, grid, thinning=5, seed=2).summarize()
```
"""

from spglm.config import InitialValues, PriorSpec, SamplerConfig, TuningSpec
from spglm.covariance import ExponentialKernel, FieldCovariance, effective_range
from spglm.data import Observation, SpatialDataset, grid_coordinates, simulate_dataset
from spglm.errors import (
    ChainStalledError,
    ConfigurationError,
    ConvergenceWarning,
    DataError,
    DegenerateCovarianceError,
    InsufficientDrawsError,
    NonPositiveDefiniteProposalError,
    NumericalError,
    PredictionError,
    SpatialGLMError,
)
from spglm.inference import (
    AdaptiveMetropolisSampler,
    Chain,
    DiagnosticRecord,
    DiagnosticsComputer,
    FittedModel,
    PosteriorDraw,
)
from spglm.prediction import (
    PredictiveEngine,
    PredictiveSample,
    SitePrediction,
    prediction_residuals,
    residual_autocorrelation,
    rmse,
)
from spglm.spatial import MoranResult, build_inverse_distance_weights, moran_test

__version__ = "0.1.0"

__all__ = [
    "AdaptiveMetropolisSampler",
    "Chain",
    "ChainStalledError",
    "ConfigurationError",
    "ConvergenceWarning",
    "DataError",
    "DegenerateCovarianceError",
    "DiagnosticRecord",
    "DiagnosticsComputer",
    "ExponentialKernel",
    "FieldCovariance",
    "FittedModel",
    "InitialValues",
    "InsufficientDrawsError",
    "MoranResult",
    "NonPositiveDefiniteProposalError",
    "NumericalError",
    "Observation",
    "PosteriorDraw",
    "PredictionError",
    "PredictiveEngine",
    "PredictiveSample",
    "PriorSpec",
    "SamplerConfig",
    "SitePrediction",
    "SpatialDataset",
    "SpatialGLMError",
    "TuningSpec",
    "build_inverse_distance_weights",
    "effective_range",
    "grid_coordinates",
    "moran_test",
    "prediction_residuals",
    "residual_autocorrelation",
    "rmse",
    "simulate_dataset",
]
