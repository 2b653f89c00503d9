"""
Sampler configuration: priors, initial values, proposal tuning and run options.

Every recognised option is an explicit keyword argument with its default
stated here; values are validated when the object is constructed.

Model:
    r_i ~ Binomial(n_i, logit^{-1}(β0 + w_i))
    β0  ~ Normal(beta0_mean, beta0_var)
    φ   ~ Uniform(phi_low, phi_high)
    σ²  ~ InverseGamma(sigma_sq_shape, sigma_sq_scale)
    w   ~ MVN(0, σ² exp(-φ D))
"""

from typing import Optional, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

from spglm.errors import ConfigurationError

LATENT_UPDATES = ("elementwise", "joint")


class PriorSpec:
    """Hyperparameters of the priors on β0, φ and σ²."""

    def __init__(
        self,
        beta0_mean: float = 0.0,
        beta0_var: float = 100.0,
        phi_low: float = 0.01,
        phi_high: float = 3.0,
        sigma_sq_shape: float = 2.0,
        sigma_sq_scale: float = 1.0,
    ) -> None:
        """
        Initialize prior specification.

        Parameters
        ----------
        beta0_mean : float
            Prior mean of the intercept. Default 0.0.
        beta0_var : float
            Prior variance of the intercept. Default 100.0 (vague).
        phi_low, phi_high : float
            Support of the uniform prior on φ. Bounds the effective range
            to [3/phi_high, 3/phi_low]. Default (0.01, 3.0).
        sigma_sq_shape : float
            Inverse-gamma shape for σ². Default 2.0 (infinite prior variance).
        sigma_sq_scale : float
            Inverse-gamma scale for σ². Default 1.0 (prior mean 1.0).
        """
        if not np.isfinite(beta0_mean):
            raise ConfigurationError(f"beta0_mean must be finite. Got {beta0_mean}")
        if not beta0_var > 0:
            raise ConfigurationError(f"beta0_var must be positive. Got {beta0_var}")
        if not (0 < phi_low < phi_high < np.inf):
            raise ConfigurationError(
                f"Need 0 < phi_low < phi_high < inf. Got phi_low={phi_low}, phi_high={phi_high}"
            )
        if not (sigma_sq_shape > 0 and sigma_sq_scale > 0):
            raise ConfigurationError(
                f"sigma_sq_shape and sigma_sq_scale must be positive. Got "
                f"shape={sigma_sq_shape}, scale={sigma_sq_scale}"
            )

        self.beta0_mean = float(beta0_mean)
        self.beta0_var = float(beta0_var)
        self.phi_low = float(phi_low)
        self.phi_high = float(phi_high)
        self.sigma_sq_shape = float(sigma_sq_shape)
        self.sigma_sq_scale = float(sigma_sq_scale)

    @classmethod
    def from_effective_range(
        cls,
        range_low: float,
        range_high: float,
        **kwargs,
    ) -> "PriorSpec":
        """Build a prior whose φ support matches an effective-range interval."""
        if not (0 < range_low < range_high):
            raise ConfigurationError(
                f"Need 0 < range_low < range_high. Got {range_low}, {range_high}"
            )
        return cls(phi_low=3.0 / range_high, phi_high=3.0 / range_low, **kwargs)

    @property
    def effective_range_bounds(self) -> Tuple[float, float]:
        """(3/phi_high, 3/phi_low)."""
        return 3.0 / self.phi_high, 3.0 / self.phi_low

    def __repr__(self) -> str:
        return (
            f"PriorSpec(beta0~N({self.beta0_mean}, {self.beta0_var}), "
            f"phi~U({self.phi_low}, {self.phi_high}), "
            f"sigma_sq~IG({self.sigma_sq_shape}, {self.sigma_sq_scale}))"
        )


class InitialValues:
    """Starting state shared by every chain."""

    def __init__(
        self,
        beta0: float = 0.0,
        phi: Optional[float] = None,
        sigma_sq: float = 1.0,
        w: Optional[ArrayLike] = None,
    ) -> None:
        """
        Parameters
        ----------
        beta0 : float
            Starting intercept. Default 0.0.
        phi : float, optional
            Starting decay. None means the midpoint of the φ prior support.
        sigma_sq : float
            Starting variance. Default 1.0.
        w : ArrayLike, optional
            Starting latent field, one value per observation. None means zeros.
        """
        if not np.isfinite(beta0):
            raise ConfigurationError(f"Initial beta0 must be finite. Got {beta0}")
        if phi is not None and not (np.isfinite(phi) and phi > 0):
            raise ConfigurationError(f"Initial phi must be positive. Got {phi}")
        if not (np.isfinite(sigma_sq) and sigma_sq > 0):
            raise ConfigurationError(f"Initial sigma_sq must be positive. Got {sigma_sq}")

        self.beta0 = float(beta0)
        self.phi = None if phi is None else float(phi)
        self.sigma_sq = float(sigma_sq)
        self.w = None if w is None else np.asarray(w, dtype=np.float64).copy()

        if self.w is not None and (self.w.ndim != 1 or not np.all(np.isfinite(self.w))):
            raise ConfigurationError("Initial w must be a finite one-dimensional array")

    def resolve(
        self, priors: PriorSpec, n_obs: int
    ) -> Tuple[float, float, float, NDArray[np.float64]]:
        """
        Concrete (β0, φ, σ², w) for a dataset of n_obs sites.

        Raises
        ------
        ConfigurationError
            If φ lies outside the prior support or w has the wrong length.
        """
        phi = 0.5 * (priors.phi_low + priors.phi_high) if self.phi is None else self.phi
        if not (priors.phi_low < phi < priors.phi_high):
            raise ConfigurationError(
                f"Initial phi must lie strictly inside ({priors.phi_low}, "
                f"{priors.phi_high}). Got {phi}"
            )

        if self.w is None:
            w = np.zeros(n_obs)
        elif self.w.shape != (n_obs,):
            raise ConfigurationError(
                f"Initial w must have shape ({n_obs},). Got {self.w.shape}"
            )
        else:
            w = self.w.copy()

        return self.beta0, phi, self.sigma_sq, w

    def __repr__(self) -> str:
        w_desc = "zeros" if self.w is None else f"array({len(self.w)})"
        return (
            f"InitialValues(beta0={self.beta0}, phi={self.phi}, "
            f"sigma_sq={self.sigma_sq}, w={w_desc})"
        )


class TuningSpec:
    """Initial proposal scales and batch-adaptation targets."""

    def __init__(
        self,
        beta0_scale: float = 0.1,
        phi_scale: float = 0.5,
        sigma_sq_scale: float = 0.5,
        w_scale: float = 0.5,
        latent_update: str = "elementwise",
        target_accept: float = 0.44,
        target_accept_joint: float = 0.234,
        max_adaptation: float = 0.1,
        min_scale: float = 1e-10,
    ) -> None:
        """
        Parameters
        ----------
        beta0_scale : float
            Random-walk sd for β0. Default 0.1.
        phi_scale : float
            Random-walk sd for logit-transformed φ. Default 0.5.
        sigma_sq_scale : float
            Random-walk sd for log σ². Default 0.5.
        w_scale : float
            Random-walk sd for each w_i ("elementwise") or multiplier of the
            Cholesky-preconditioned step ("joint"). Default 0.5.
        latent_update : str
            "elementwise" or "joint". Default "elementwise".
        target_accept : float
            Target acceptance rate for scalar blocks. Default 0.44.
        target_accept_joint : float
            Target acceptance rate for the joint latent block. Default 0.234.
        max_adaptation : float
            Largest per-batch change of a block's log-scale. Default 0.1.
        min_scale : float
            Scale below which a block counts as collapsed. Default 1e-10.
        """
        scales = {
            "beta0_scale": beta0_scale,
            "phi_scale": phi_scale,
            "sigma_sq_scale": sigma_sq_scale,
            "w_scale": w_scale,
        }
        for name, value in scales.items():
            if not (np.isfinite(value) and value > 0):
                raise ConfigurationError(f"{name} must be positive. Got {value}")
        if latent_update not in LATENT_UPDATES:
            raise ConfigurationError(
                f"latent_update must be one of {LATENT_UPDATES}. Got {latent_update!r}"
            )
        for name, value in (
            ("target_accept", target_accept),
            ("target_accept_joint", target_accept_joint),
        ):
            if not (0 < value < 1):
                raise ConfigurationError(f"{name} must be in (0, 1). Got {value}")
        if not max_adaptation > 0:
            raise ConfigurationError(f"max_adaptation must be positive. Got {max_adaptation}")
        if not min_scale > 0:
            raise ConfigurationError(f"min_scale must be positive. Got {min_scale}")

        self.beta0_scale = float(beta0_scale)
        self.phi_scale = float(phi_scale)
        self.sigma_sq_scale = float(sigma_sq_scale)
        self.w_scale = float(w_scale)
        self.latent_update = latent_update
        self.target_accept = float(target_accept)
        self.target_accept_joint = float(target_accept_joint)
        self.max_adaptation = float(max_adaptation)
        self.min_scale = float(min_scale)

    def __repr__(self) -> str:
        return (
            f"TuningSpec(beta0={self.beta0_scale}, phi={self.phi_scale}, "
            f"sigma_sq={self.sigma_sq_scale}, w={self.w_scale}, "
            f"latent_update={self.latent_update!r})"
        )


class SamplerConfig:
    """Run options: chain count, batch schedule, burn-in and seeding."""

    def __init__(
        self,
        n_chains: int = 4,
        n_batch: int = 50,
        batch_len: int = 50,
        burnin_frac: float = 0.5,
        seed: Optional[int] = None,
        n_workers: Optional[int] = None,
        jitter: float = 1e-8,
    ) -> None:
        """
        Parameters
        ----------
        n_chains : int
            Number of independent chains. Default 4.
        n_batch : int
            Number of adaptation batches per chain. Default 50.
        batch_len : int
            Iterations per batch. Default 50.
        burnin_frac : float
            Leading fraction of each chain treated as burn-in downstream.
            Draws are kept, only excluded by default. Default 0.5.
        seed : int, optional
            Top-level seed; each chain gets an independent child stream.
        n_workers : int, optional
            Threads used to run chains. None means one per chain.
        jitter : float
            Relative diagonal jitter for covariance decompositions. Default 1e-8.
        """
        if n_chains < 1:
            raise ConfigurationError(f"n_chains must be >= 1. Got {n_chains}")
        if n_batch < 1 or batch_len < 1:
            raise ConfigurationError(
                f"n_batch and batch_len must be >= 1. Got n_batch={n_batch}, "
                f"batch_len={batch_len}"
            )
        if not (0 <= burnin_frac < 1):
            raise ConfigurationError(f"burnin_frac must be in [0, 1). Got {burnin_frac}")
        if n_workers is not None and n_workers < 1:
            raise ConfigurationError(f"n_workers must be >= 1. Got {n_workers}")
        if not (0 <= jitter < 1):
            raise ConfigurationError(f"jitter must be in [0, 1). Got {jitter}")

        self.n_chains = int(n_chains)
        self.n_batch = int(n_batch)
        self.batch_len = int(batch_len)
        self.burnin_frac = float(burnin_frac)
        self.seed = seed
        self.n_workers = n_workers
        self.jitter = float(jitter)

    @property
    def n_iterations(self) -> int:
        """Draws per chain: n_batch * batch_len."""
        return self.n_batch * self.batch_len

    def __repr__(self) -> str:
        return (
            f"SamplerConfig(n_chains={self.n_chains}, n_batch={self.n_batch}, "
            f"batch_len={self.batch_len}, burnin_frac={self.burnin_frac}, "
            f"seed={self.seed})"
        )
