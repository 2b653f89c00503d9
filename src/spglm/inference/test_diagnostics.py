"""
Tests for convergence diagnostics.

Small tests only: synthetic traces and hand-built fitted models, no
sampling. All complete in well under a second.
"""

import warnings

import numpy as np
import pytest

from spglm.config import InitialValues, PriorSpec, SamplerConfig, TuningSpec
from spglm.covariance.kernel import ExponentialKernel
from spglm.data.dataset import SpatialDataset
from spglm.errors import ConvergenceWarning
from spglm.inference.chains import Chain, FittedModel, PosteriorDraw
from spglm.inference.diagnostics import DiagnosticRecord, DiagnosticsComputer


def _fitted_from_traces(beta0, phi, sigma_sq, burnin_frac=0.5):
    """FittedModel with the given (chains, draws) traces and a 3-site field."""
    dataset = SpatialDataset.from_arrays(
        [[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]], [5, 5, 5], [1, 2, 3]
    )
    chains = []
    for k in range(beta0.shape[0]):
        chain = Chain(k)
        for t in range(beta0.shape[1]):
            chain.append(
                PosteriorDraw.snapshot(beta0[k, t], phi[k, t], sigma_sq[k, t], np.zeros(3))
            )
        chains.append(chain)

    n_batch = beta0.shape[1] // 10
    acceptance = {
        k: {b: np.full(n_batch, 0.4) for b in ("beta0", "phi", "sigma_sq", "w")}
        for k in range(len(chains))
    }
    infeasible = {
        k: {b: np.zeros(n_batch, dtype=np.int64) for b in ("beta0", "phi", "sigma_sq", "w")}
        for k in range(len(chains))
    }
    infeasible[0]["phi"][0] = 3
    return FittedModel(
        chains=chains,
        dataset=dataset,
        kernel=ExponentialKernel(),
        priors=PriorSpec(),
        tuning=TuningSpec(),
        initial=InitialValues(),
        config=SamplerConfig(
            n_chains=len(chains), n_batch=n_batch, batch_len=10, burnin_frac=burnin_frac
        ),
        acceptance=acceptance,
        infeasible=infeasible,
    )


def _mixed_fit(n_chains=2, n_draws=200, seed=0):
    rng = np.random.default_rng(seed)
    shape = (n_chains, n_draws)
    return _fitted_from_traces(
        rng.normal(0.0, 1.0, shape),
        rng.uniform(0.5, 1.5, shape),
        rng.gamma(4.0, 0.25, shape),
    )


# ============================================================================
# SMALL TESTS: Rhat
# ============================================================================

def test_small_rhat_perfect_convergence():
    """Identical constant chains give Rhat = 1.0."""
    chains = np.ones((2, 100))

    rhat = DiagnosticsComputer.rhat(chains)
    assert np.isclose(rhat, 1.0), f"Expected 1.0, got {rhat}"


def test_small_rhat_mixed_chains():
    """Chains drawn from the same distribution give Rhat near 1."""
    rng = np.random.default_rng(42)
    chains = rng.normal(0.0, 1.0, (4, 500))

    rhat = DiagnosticsComputer.rhat(chains)
    assert rhat < 1.02, f"Expected < 1.02, got {rhat}"


def test_small_rhat_poor_convergence():
    """Chains centred far apart give a large Rhat."""
    rng = np.random.default_rng(42)
    chains = np.array([
        rng.normal(-5, 1, 100),
        rng.normal(5, 1, 100),
    ])

    rhat = DiagnosticsComputer.rhat(chains)
    assert rhat > 1.05, f"Expected >1.05, got {rhat}"


def test_small_rhat_requires_multiple_chains():
    """Rhat needs at least 2 chains."""
    single_chain = np.random.default_rng(0).normal(size=(1, 100))

    with pytest.raises(ValueError):
        DiagnosticsComputer.rhat(single_chain)


def test_small_rhat_burnin_excluded():
    """A divergent burn-in prefix does not affect Rhat once truncated."""
    rng = np.random.default_rng(1)
    chains = rng.normal(0.0, 1.0, (2, 200))
    chains[0, :100] += 50.0
    chains[1, :100] -= 50.0

    assert DiagnosticsComputer.rhat(chains) > 1.5
    assert DiagnosticsComputer.rhat(chains, burnin_frac=0.5) < 1.1


def test_small_truncate_burnin_floor():
    """Burn-in length is floor(burnin_frac * draws)."""
    samples = np.arange(20, dtype=float).reshape(2, 10)

    kept = DiagnosticsComputer.truncate_burnin(samples, 0.35)
    assert kept.shape == (2, 7)
    assert kept[0, 0] == 3.0

    with pytest.raises(ValueError):
        DiagnosticsComputer.truncate_burnin(samples, 1.0)


# ============================================================================
# SMALL TESTS: ESS
# ============================================================================

def test_small_ess_high_autocorr():
    """A random walk has ESS far below its length."""
    rng = np.random.default_rng(3)
    n = 1000
    x = np.cumsum(rng.normal(size=n)) / np.sqrt(n)

    ess = DiagnosticsComputer.ess(x)
    assert 0 < ess < 0.3 * n, f"Expected ESS < {0.3 * n}, got {ess}"


def test_small_ess_white_noise():
    """Independent draws pooled across chains give ESS near the total."""
    rng = np.random.default_rng(42)
    x = rng.normal(size=(4, 500))

    ess = DiagnosticsComputer.effective_sample_size(x)
    assert set(ess) == {"bulk", "tail"}
    assert ess["bulk"] > 1000, f"Expected bulk ESS > 1000, got {ess['bulk']}"
    assert ess["tail"] > 500, f"Expected tail ESS > 500, got {ess['tail']}"


def test_small_ess_invalid_method():
    with pytest.raises(ValueError):
        DiagnosticsComputer.ess(np.zeros((2, 10)), method="median")


# ============================================================================
# SMALL TESTS: summaries of fitted models
# ============================================================================

def test_small_summarize_records():
    """One record per parameter, computed on post-burn-in draws."""
    fitted = _mixed_fit()

    with warnings.catch_warnings():
        warnings.simplefilter("error", ConvergenceWarning)
        records = DiagnosticsComputer.summarize(fitted)

    assert [r.parameter for r in records] == ["beta0", "phi", "sigma_sq", "effective_range"]
    assert all(isinstance(r, DiagnosticRecord) for r in records)

    phi = fitted.draws("phi")
    assert phi.shape == (2, 100)
    assert np.isclose(records[1].mean, phi.mean())
    assert records[3].mean > 0
    for r in records:
        assert r.rhat < 1.1
        assert r.ess_bulk > 0 and r.ess_tail > 0


def test_small_summarize_does_not_modify_fit():
    fitted = _mixed_fit()
    before = fitted.draws("beta0", include_burnin=True).copy()

    DiagnosticsComputer.summarize(fitted, burnin_frac=0.2)

    np.testing.assert_array_equal(fitted.draws("beta0", include_burnin=True), before)
    assert fitted.n_draws == 200


def test_small_summarize_warns_on_poor_convergence():
    """Separated chains trigger a ConvergenceWarning instead of an error."""
    rng = np.random.default_rng(5)
    beta0 = rng.normal(0.0, 0.1, (2, 100))
    beta0[1] += 10.0
    fitted = _fitted_from_traces(
        beta0, rng.uniform(0.5, 1.5, (2, 100)), rng.gamma(4.0, 0.25, (2, 100))
    )

    with pytest.warns(ConvergenceWarning):
        records = DiagnosticsComputer.summarize(fitted, params=("beta0",))

    assert records[0].rhat > 1.1


def test_small_summarize_single_chain_rhat_nan():
    fitted = _mixed_fit(n_chains=1)

    records = DiagnosticsComputer.summarize(fitted)
    assert all(np.isnan(r.rhat) for r in records)
    assert all(r.ess_bulk > 0 for r in records)


def test_small_acceptance_table():
    fitted = _mixed_fit()

    table = DiagnosticsComputer.acceptance_table(fitted)
    assert len(table) == 2 * 4
    assert set(table[0]) == {"chain", "block", "acceptance_rate", "infeasible"}

    row = next(r for r in table if r["chain"] == 0 and r["block"] == "phi")
    assert np.isclose(row["acceptance_rate"], 0.4)
    assert row["infeasible"] == 3


def test_small_record_as_dict():
    record = DiagnosticRecord("phi", 1.0, 0.1, 1.01, 350.0, 300.0)
    assert record.as_dict()["ess_tail"] == 300.0


def test_small_to_inference_data():
    """Post-burn-in draws convert to arviz InferenceData for plotting."""
    fitted = _mixed_fit()

    idata = DiagnosticsComputer.to_inference_data(fitted)
    posterior = idata.posterior
    assert posterior["phi"].shape == (2, 100)
    assert posterior["w"].shape == (2, 100, 3)
    np.testing.assert_allclose(posterior["beta0"].values, fitted.draws("beta0"))
