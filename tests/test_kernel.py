"""
Unit tests for the exponential covariance kernel.

Tests cover:
- Covariance matrix properties (symmetry, diagonal, monotone decay)
- Effective range
- Cholesky decomposition, jitter and failure modes
- Gaussian log-density and conditioning
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy import stats

from spglm.covariance.kernel import (
    ExponentialKernel,
    decay_from_range,
    effective_range,
)
from spglm.data.synthetic import grid_coordinates
from spglm.errors import DegenerateCovarianceError, NonPositiveDefiniteProposalError


class TestBuild:
    """Tests for covariance matrix construction."""

    def test_symmetric_with_variance_diagonal(self) -> None:
        kernel = ExponentialKernel()
        coords = np.random.default_rng(0).uniform(0, 10, size=(15, 2))

        C = kernel.build(coords, sigma_sq=2.5, phi=0.4)
        assert C.shape == (15, 15)
        assert_allclose(C, C.T)
        assert_allclose(np.diag(C), 2.5)

    def test_values_match_formula(self) -> None:
        kernel = ExponentialKernel()
        coords = np.array([[0.0, 0.0], [3.0, 4.0]])

        C = kernel.build(coords, sigma_sq=1.5, phi=0.2)
        assert np.isclose(C[0, 1], 1.5 * np.exp(-0.2 * 5.0))

    def test_strictly_decreasing_in_distance(self) -> None:
        """Off-diagonal covariance decreases as pairwise distance grows."""
        kernel = ExponentialKernel()
        coords = np.array([[0.0, 0.0], [0.5, 0.0], [1.5, 0.0], [4.0, 0.0], [9.0, 0.0]])

        C = kernel.build(coords, sigma_sq=1.0, phi=0.7)
        D = kernel.pairwise_distances(coords)
        off = ~np.eye(len(coords), dtype=bool)
        order = np.argsort(D[off])
        d_sorted, c_sorted = D[off][order], C[off][order]
        distinct = np.diff(d_sorted) > 0
        assert np.all(np.diff(c_sorted)[distinct] < 0)

    def test_cross_covariance_shape(self) -> None:
        kernel = ExponentialKernel()
        cross = kernel.cross_covariance(
            np.zeros((3, 2)), grid_coordinates(2, 2), sigma_sq=1.0, phi=1.0
        )
        assert cross.shape == (3, 4)
        assert np.isclose(cross[0, 0], 1.0)

    def test_invalid_parameters(self) -> None:
        kernel = ExponentialKernel()
        coords = grid_coordinates(2, 2)
        with pytest.raises(ValueError):
            kernel.build(coords, sigma_sq=-1.0, phi=1.0)
        with pytest.raises(ValueError):
            kernel.build(coords, sigma_sq=1.0, phi=0.0)
        with pytest.raises(DegenerateCovarianceError):
            kernel.build(coords, sigma_sq=np.inf, phi=1.0)
        with pytest.raises(ValueError, match="shape"):
            kernel.build(np.zeros((3, 3)), sigma_sq=1.0, phi=1.0)


class TestEffectiveRange:
    """Tests for the derived effective range 3/φ."""

    def test_value(self) -> None:
        assert np.isclose(effective_range(0.3), 10.0)
        assert np.isclose(decay_from_range(10.0), 0.3)

    def test_monotone_decreasing(self) -> None:
        phis = np.linspace(0.05, 5.0, 50)
        ranges = effective_range(phis)
        assert np.all(np.diff(ranges) < 0)

    def test_correlation_at_range(self) -> None:
        """Correlation at the effective range is exp(-3) ≈ 0.05."""
        phi = 0.6
        rho = ExponentialKernel.correlation(np.array([effective_range(phi)]), phi)
        assert_allclose(rho, np.exp(-3.0))

    def test_non_positive_rejected(self) -> None:
        with pytest.raises(ValueError):
            effective_range(0.0)
        with pytest.raises(ValueError):
            decay_from_range(-2.0)


class TestDecomposition:
    """Tests for jittered Cholesky decomposition."""

    def test_factor_reconstructs_jittered_covariance(self) -> None:
        kernel = ExponentialKernel(jitter=1e-6)
        coords = grid_coordinates(3, 3)

        field = kernel.decompose(coords, sigma_sq=2.0, phi=0.5)
        C = kernel.build(coords, sigma_sq=2.0, phi=0.5) + 2e-6 * np.eye(9)
        assert_allclose(field.cholesky @ field.cholesky.T, C, atol=1e-12)
        assert_allclose(field.covariance, C)

    def test_log_det_and_precision(self) -> None:
        kernel = ExponentialKernel()
        field = kernel.decompose(grid_coordinates(3, 3), sigma_sq=1.3, phi=0.9)

        sign, logdet = np.linalg.slogdet(field.covariance)
        assert sign > 0
        assert np.isclose(field.log_det(), logdet)
        assert_allclose(field.precision @ field.covariance, np.eye(9), atol=1e-8)

    def test_log_density_matches_scipy(self, rng) -> None:
        kernel = ExponentialKernel()
        field = kernel.decompose(grid_coordinates(4, 3), sigma_sq=0.8, phi=0.6)
        w = rng.normal(size=12)

        expected = stats.multivariate_normal(np.zeros(12), field.covariance).logpdf(w)
        assert np.isclose(field.log_density(w), expected)

    def test_near_duplicate_coordinates_survive_with_jitter(self) -> None:
        """Jitter keeps almost coincident points decomposable."""
        coords = np.array([[0.0, 0.0], [1e-9, 0.0], [1.0, 1.0]])
        field = ExponentialKernel(jitter=1e-8).decompose(coords, sigma_sq=1.0, phi=0.5)
        assert np.all(np.isfinite(field.cholesky))

    def test_duplicates_without_jitter_fail(self) -> None:
        coords = np.array([[0.0, 0.0], [0.0, 0.0], [1.0, 1.0]])
        with pytest.raises(NonPositiveDefiniteProposalError):
            ExponentialKernel(jitter=0.0).decompose(coords, sigma_sq=1.0, phi=0.5)

    def test_non_finite_matrix_rejected(self) -> None:
        bad = np.array([[1.0, np.nan], [np.nan, 1.0]])
        with pytest.raises(DegenerateCovarianceError):
            ExponentialKernel().factor(bad, sigma_sq=1.0, phi=1.0)

    def test_invalid_jitter(self) -> None:
        with pytest.raises(ValueError):
            ExponentialKernel(jitter=-1e-8)

    def test_sample_covariance(self, rng) -> None:
        """Sample covariance of many field draws approaches C."""
        field = ExponentialKernel().decompose(grid_coordinates(2, 2), sigma_sq=1.0, phi=1.0)
        draws = field.sample(rng, n_samples=20000)
        assert draws.shape == (20000, 4)
        assert_allclose(np.cov(draws.T), field.covariance, atol=0.05)


class TestConditioning:
    """Tests for Gaussian-process conditioning (kriging)."""

    def test_conditioning_at_observed_site_interpolates(self) -> None:
        """At an observed location the conditional mean is the observed value."""
        kernel = ExponentialKernel()
        obs = grid_coordinates(3, 3)
        field = kernel.decompose(obs, sigma_sq=1.0, phi=0.5)
        w = np.linspace(-1.0, 1.0, 9)

        new = obs[[4]]
        cross = kernel.cross_covariance(new, obs, 1.0, 0.5)
        mean, var = field.condition(w, cross, variance_new=np.array([1.0]))
        assert np.isclose(mean[0], w[4], atol=1e-6)
        assert abs(var[0]) < 1e-6

    def test_far_site_reverts_to_prior(self) -> None:
        kernel = ExponentialKernel()
        obs = grid_coordinates(3, 3)
        field = kernel.decompose(obs, sigma_sq=2.0, phi=1.0)
        w = np.ones(9)

        new = np.array([[500.0, 500.0]])
        cross = kernel.cross_covariance(new, obs, 2.0, 1.0)
        mean, cov = field.condition(w, cross, covariance_new=kernel.build(new, 2.0, 1.0))
        assert np.isclose(mean[0], 0.0, atol=1e-10)
        assert np.isclose(cov[0, 0], 2.0)

    def test_joint_and_marginal_variances_agree(self) -> None:
        kernel = ExponentialKernel()
        obs = grid_coordinates(3, 3)
        new = np.array([[0.5, 0.5], [2.5, 1.0], [4.0, 4.0]])
        field = kernel.decompose(obs, sigma_sq=1.0, phi=0.7)
        cross = kernel.cross_covariance(new, obs, 1.0, 0.7)
        w = np.arange(9) / 9.0

        mean_j, cov = field.condition(w, cross, covariance_new=kernel.build(new, 1.0, 0.7))
        mean_m, var = field.condition(w, cross, variance_new=np.ones(3))
        assert_allclose(mean_j, mean_m)
        assert_allclose(np.diag(cov), var)
        assert_allclose(cov, cov.T)

    def test_condition_needs_new_covariance(self) -> None:
        kernel = ExponentialKernel()
        obs = grid_coordinates(2, 2)
        field = kernel.decompose(obs, 1.0, 1.0)
        with pytest.raises(ValueError):
            field.condition(np.zeros(4), kernel.cross_covariance(obs, obs, 1.0, 1.0))
