"""
Posterior inference for the spatial binomial GLM.

1. AdaptiveMetropolisSampler: batch-adaptive Metropolis over (β0, φ, σ², w)
2. FittedModel / Chain / PosteriorDraw: sealed, append-only chain storage
3. DiagnosticsComputer: Rhat, bulk/tail ESS, acceptance tables

**Usage:**
```python
from spglm.config import PriorSpec, SamplerConfig
from spglm.inference import AdaptiveMetropolisSampler, DiagnosticsComputer

sampler = AdaptiveMetropolisSampler(priors=PriorSpec.from_effective_range(2, 20))
fitted = sampler.fit(dataset, SamplerConfig(n_chains=4, seed=42))

for record in DiagnosticsComputer.summarize(fitted):
    print(record.parameter, record.rhat, record.ess_bulk)
```
"""

from spglm.inference.chains import Chain, FittedModel, PosteriorDraw
from spglm.inference.diagnostics import DiagnosticRecord, DiagnosticsComputer
from spglm.inference.sampler import AdaptiveMetropolisSampler, binomial_log_likelihood

__all__ = [
    "AdaptiveMetropolisSampler",
    "Chain",
    "DiagnosticRecord",
    "DiagnosticsComputer",
    "FittedModel",
    "PosteriorDraw",
    "binomial_log_likelihood",
]
