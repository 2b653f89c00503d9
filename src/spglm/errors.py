"""
Exception taxonomy for the spatial GLM engine.

- DataError: malformed observations, fatal to the dataset being built
- NumericalError: covariance decomposition failures; recoverable inside the
  sampler (a rejected proposal) unless they persist for a whole batch
- ChainStalledError: fatal to one chain only
- PredictionError: fatal to one prediction call
- ConvergenceWarning: a warning, never raised by the diagnostics
"""

from typing import Optional


class SpatialGLMError(Exception):
    """Base class for all errors raised by spglm."""


class DataError(SpatialGLMError, ValueError):
    """Malformed observation or coordinate input."""


class ConfigurationError(SpatialGLMError, ValueError):
    """Invalid prior, tuning, initial-value or sampler option."""


class NumericalError(SpatialGLMError):
    """Numerical failure in covariance construction or decomposition."""


class DegenerateCovarianceError(NumericalError):
    """Covariance matrix cannot be built or decomposed."""


class NonPositiveDefiniteProposalError(DegenerateCovarianceError):
    """Cholesky decomposition failed even after diagonal jitter."""


class ChainStalledError(NumericalError):
    """A chain made no usable progress for a whole adaptation batch."""

    def __init__(self, message: str, chain: int, block: str, batch: int) -> None:
        super().__init__(message)
        self.chain = chain
        self.block = block
        self.batch = batch


class PredictionError(SpatialGLMError):
    """Posterior-predictive simulation failed."""

    def __init__(
        self,
        message: str,
        site_id: Optional[object] = None,
        n_draws: Optional[int] = None,
        draw_index: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.site_id = site_id
        self.n_draws = n_draws
        self.draw_index = draw_index


class InsufficientDrawsError(PredictionError):
    """Too few retained draws for a stable predictive summary."""

    def __init__(self, n_draws: int, min_draws: int, thinning: int) -> None:
        super().__init__(
            f"Only {n_draws} retained draws after thinning={thinning}; "
            f"at least {min_draws} are required. Reduce thinning or sample longer.",
            n_draws=n_draws,
        )
        self.min_draws = min_draws
        self.thinning = thinning


class ConvergenceWarning(UserWarning):
    """R-hat or ESS suggests the chains have not converged."""
