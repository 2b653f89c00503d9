"""
Exponential covariance kernel for the latent Gaussian field.

Mathematical background:
    For two sites at Euclidean distance d,

        Cov(w_i, w_j) = σ² exp(-φ d)

    where:
        - σ² > 0: marginal (partial sill) variance of the field
        - φ > 0: decay, the inverse of the range

    The effective range 3/φ is the distance at which the correlation
    falls to exp(-3) ≈ 0.05. It is derived from φ, never sampled.

    The exponential family is positive definite in R² for every φ, σ² > 0,
    but close sites or small φ make the matrix nearly singular. A diagonal
    jitter ε σ² is added before every Cholesky decomposition; if the
    decomposition still fails the covariance is treated as degenerate.

Conditioning (kriging):
    [w_obs]        [C_oo   C_on]
    [w_new] ~ N(0, [C_no   C_nn])

    w_new | w_obs ~ N(C_no C_oo^{-1} w_obs,  C_nn - C_no C_oo^{-1} C_on)
"""

from typing import Optional, Tuple, Union

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.linalg import LinAlgError, cho_solve, cholesky, solve_triangular
from scipy.spatial.distance import cdist

from spglm.errors import DegenerateCovarianceError, NonPositiveDefiniteProposalError

_LOG_2PI = np.log(2.0 * np.pi)


def effective_range(phi: Union[float, ArrayLike]) -> Union[float, NDArray[np.float64]]:
    """
    Effective range 3/φ (distance at which correlation ≈ 0.05).

    Parameters
    ----------
    phi : float or ArrayLike
        Decay parameter(s), must be positive.

    Returns
    -------
    float or NDArray[np.float64]
        Effective range(s), same shape as phi.
    """
    phi_arr = np.asarray(phi, dtype=np.float64)
    if np.any(phi_arr <= 0):
        raise ValueError(f"phi must be positive. Got {phi}")
    out = 3.0 / phi_arr
    return float(out) if out.ndim == 0 else out


def decay_from_range(range_: Union[float, ArrayLike]) -> Union[float, NDArray[np.float64]]:
    """Inverse of effective_range: φ = 3 / range."""
    range_arr = np.asarray(range_, dtype=np.float64)
    if np.any(range_arr <= 0):
        raise ValueError(f"range must be positive. Got {range_}")
    out = 3.0 / range_arr
    return float(out) if out.ndim == 0 else out


def _as_coords(coords: ArrayLike, name: str) -> NDArray[np.float64]:
    arr = np.asarray(coords, dtype=np.float64)
    if arr.ndim == 1 and arr.size == 0:
        arr = arr.reshape(0, 2)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"{name} must have shape (N, 2). Got {arr.shape}")
    return arr


class FieldCovariance:
    """
    A decomposed covariance matrix of the latent field.

    Built by ExponentialKernel.decompose for one (σ², φ); holds the jittered
    covariance and its lower Cholesky factor L (C = L L^T). Instances are
    never modified, a new (σ², φ) always produces a new FieldCovariance.
    """

    def __init__(
        self,
        covariance: NDArray[np.float64],
        cholesky_factor: NDArray[np.float64],
        sigma_sq: float,
        phi: float,
    ) -> None:
        self.covariance = covariance
        self.cholesky = cholesky_factor
        self.sigma_sq = sigma_sq
        self.phi = phi
        self.n_sites = covariance.shape[0]
        self._precision: Optional[NDArray[np.float64]] = None
        self._log_det: Optional[float] = None

    def log_det(self) -> float:
        """
        Log determinant via the Cholesky factor:
            log det(C) = 2 * sum(log(diag(L)))
        """
        if self._log_det is None:
            self._log_det = float(2.0 * np.sum(np.log(np.diag(self.cholesky))))
        return self._log_det

    @property
    def precision(self) -> NDArray[np.float64]:
        """Inverse covariance C^{-1} (computed lazily)."""
        if self._precision is None:
            precision = cho_solve((self.cholesky, True), np.eye(self.n_sites))
            self._precision = 0.5 * (precision + precision.T)
        return self._precision

    def solve(self, b: NDArray[np.float64]) -> NDArray[np.float64]:
        """C^{-1} b."""
        return cho_solve((self.cholesky, True), b)

    def whiten(self, b: NDArray[np.float64]) -> NDArray[np.float64]:
        """L^{-1} b."""
        return solve_triangular(self.cholesky, b, lower=True)

    def quad_form(self, x: NDArray[np.float64]) -> float:
        """x^T C^{-1} x."""
        z = self.whiten(x)
        return float(z @ z)

    def log_density(self, w: NDArray[np.float64]) -> float:
        """
        Log-density of a field realisation under N(0, C).

            log p(w) = -0.5 * (N log 2π + log det C + w^T C^{-1} w)
        """
        return -0.5 * (self.n_sites * _LOG_2PI + self.log_det() + self.quad_form(w))

    def sample(
        self,
        rng: np.random.Generator,
        n_samples: Optional[int] = None,
    ) -> NDArray[np.float64]:
        """
        Draw w ~ N(0, C) as w = L z.

        Parameters
        ----------
        rng : np.random.Generator
            Random stream owned by the caller.
        n_samples : int, optional
            Number of samples. If None return a single vector of shape (N,).

        Returns
        -------
        NDArray[np.float64]
            Shape (N,) or (n_samples, N).
        """
        if n_samples is None:
            return self.cholesky @ rng.standard_normal(self.n_sites)
        z = rng.standard_normal((n_samples, self.n_sites))
        return z @ self.cholesky.T

    def condition(
        self,
        values: NDArray[np.float64],
        cross: NDArray[np.float64],
        covariance_new: Optional[NDArray[np.float64]] = None,
        variance_new: Optional[NDArray[np.float64]] = None,
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """
        Conditional distribution of the field at new sites given this field.

        Parameters
        ----------
        values : NDArray[np.float64]
            Field values at the conditioning sites, shape (N,)
        cross : NDArray[np.float64]
            Cross-covariance C_no between new and conditioning sites, shape (M, N)
        covariance_new : NDArray[np.float64], optional
            Covariance among new sites C_nn, shape (M, M). Returns the full
            conditional covariance when given.
        variance_new : NDArray[np.float64], optional
            Marginal variances at new sites, shape (M,). Used when
            covariance_new is None; returns conditional variances only.

        Returns
        -------
        conditional_mean : NDArray[np.float64]
            Shape (M,)
        conditional_cov : NDArray[np.float64]
            Shape (M, M) when covariance_new is given, else shape (M,)
        """
        # μ = C_no C_oo^{-1} w
        conditional_mean = cross @ self.solve(values)

        # Σ = C_nn - G^T G  with  G = L^{-1} C_on
        gamma = self.whiten(cross.T)
        if covariance_new is not None:
            conditional_cov = covariance_new - gamma.T @ gamma
            conditional_cov = 0.5 * (conditional_cov + conditional_cov.T)
        elif variance_new is not None:
            conditional_cov = variance_new - np.sum(gamma * gamma, axis=0)
        else:
            raise ValueError("Either covariance_new or variance_new is required")

        return conditional_mean, conditional_cov

    def __repr__(self) -> str:
        return (
            f"FieldCovariance(n_sites={self.n_sites}, sigma_sq={self.sigma_sq:.4g}, "
            f"phi={self.phi:.4g})"
        )


class ExponentialKernel:
    """
    Isotropic exponential covariance σ² exp(-φ d) on planar coordinates.

    Attributes
    ----------
    jitter : float
        Relative diagonal jitter; ε σ² is added to the diagonal before
        decomposition. Default 1e-8.
    """

    def __init__(self, jitter: float = 1e-8) -> None:
        if not (0 <= jitter < 1):
            raise ValueError(f"jitter must be in [0, 1). Got {jitter}")
        self.jitter = jitter

    @staticmethod
    def _check_parameters(sigma_sq: float, phi: float) -> None:
        if not (np.isfinite(sigma_sq) and np.isfinite(phi)):
            raise DegenerateCovarianceError(
                f"Covariance parameters must be finite. Got sigma_sq={sigma_sq}, phi={phi}"
            )
        if sigma_sq <= 0 or phi <= 0:
            raise ValueError(
                f"sigma_sq and phi must be positive. Got sigma_sq={sigma_sq}, phi={phi}"
            )

    @staticmethod
    def correlation(
        distances: NDArray[np.float64], phi: float
    ) -> NDArray[np.float64]:
        """Correlation exp(-φ d) for an array of distances."""
        return np.exp(-phi * distances)

    def build(
        self,
        coords: ArrayLike,
        sigma_sq: float,
        phi: float,
    ) -> NDArray[np.float64]:
        """
        Covariance matrix C[i, j] = σ² exp(-φ ||x_i - x_j||), without jitter.

        Parameters
        ----------
        coords : ArrayLike
            Site coordinates, shape (N, 2)
        sigma_sq : float
            Marginal variance σ²
        phi : float
            Decay φ

        Returns
        -------
        NDArray[np.float64]
            Symmetric matrix, shape (N, N), diagonal σ².
        """
        self._check_parameters(sigma_sq, phi)
        xy = _as_coords(coords, "coords")
        distances = cdist(xy, xy)
        return sigma_sq * self.correlation(distances, phi)

    def cross_covariance(
        self,
        coords_new: ArrayLike,
        coords_obs: ArrayLike,
        sigma_sq: float,
        phi: float,
    ) -> NDArray[np.float64]:
        """
        Cross-covariance between new and observed sites, shape (M, N).
        """
        self._check_parameters(sigma_sq, phi)
        new = _as_coords(coords_new, "coords_new")
        obs = _as_coords(coords_obs, "coords_obs")
        return sigma_sq * self.correlation(cdist(new, obs), phi)

    def factor(
        self,
        covariance: NDArray[np.float64],
        sigma_sq: float,
        phi: float,
    ) -> FieldCovariance:
        """
        Jitter and Cholesky-decompose an already built covariance matrix.

        Raises
        ------
        DegenerateCovarianceError
            If the matrix has non-finite entries.
        NonPositiveDefiniteProposalError
            If the Cholesky decomposition fails after jitter.
        """
        if not np.all(np.isfinite(covariance)):
            raise DegenerateCovarianceError(
                f"Covariance has non-finite entries (sigma_sq={sigma_sq}, phi={phi})"
            )

        jittered = covariance.copy()
        jittered[np.diag_indices_from(jittered)] += self.jitter * sigma_sq

        try:
            lower = cholesky(jittered, lower=True, check_finite=False)
        except LinAlgError as exc:
            raise NonPositiveDefiniteProposalError(
                f"Covariance not positive definite after jitter "
                f"(sigma_sq={sigma_sq:.4g}, phi={phi:.4g}); coordinates may be "
                f"(near-)duplicated or phi is outside a stable range"
            ) from exc

        return FieldCovariance(jittered, lower, sigma_sq, phi)

    def decompose(
        self,
        coords: ArrayLike,
        sigma_sq: float,
        phi: float,
    ) -> FieldCovariance:
        """
        Build and decompose the covariance of the field at coords.

        Returns
        -------
        FieldCovariance
            Covariance with jitter and its Cholesky factor.
        """
        return self.factor(self.build(coords, sigma_sq, phi), sigma_sq, phi)

    @staticmethod
    def pairwise_distances(coords: ArrayLike) -> NDArray[np.float64]:
        """Euclidean distance matrix, shape (N, N)."""
        xy = _as_coords(coords, "coords")
        return cdist(xy, xy)

    def decompose_distances(
        self,
        distances: NDArray[np.float64],
        sigma_sq: float,
        phi: float,
    ) -> FieldCovariance:
        """
        Same as decompose, from a precomputed distance matrix.

        The covariance is rebuilt from (σ², φ) on every call.
        """
        self._check_parameters(sigma_sq, phi)
        return self.factor(sigma_sq * self.correlation(distances, phi), sigma_sq, phi)

    def __repr__(self) -> str:
        return f"ExponentialKernel(jitter={self.jitter})"
