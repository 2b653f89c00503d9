"""
Convergence diagnostics for fitted chains.

Key diagnostics:
- Rhat (potential scale reduction): values near 1.0 indicate the chains agree;
  1.1 is a common alarm level
- Bulk ESS: effective sample size of rank-normalised draws (centre of the
  posterior)
- Tail ESS: effective sample size of the 5% and 95% quantile indicators

Everything here is read-only: no FittedModel is modified. Burn-in removal
is explicit: either pass an already truncated (chains, draws) array, or a
burn-in fraction, never both implicitly.
"""

import logging
import warnings
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

import arviz as az
import numpy as np
from numpy.typing import NDArray

from spglm.errors import ConvergenceWarning
from spglm.inference.chains import DERIVED_PARAMETERS, PARAMETERS, FittedModel

logger = logging.getLogger(__name__)

_ESS_METHODS = ("bulk", "tail")


@dataclass(frozen=True)
class DiagnosticRecord:
    """Posterior summary and convergence statistics for one scalar parameter."""

    parameter: str
    mean: float
    sd: float
    rhat: float
    ess_bulk: float
    ess_tail: float

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


class DiagnosticsComputer:
    """
    Compute convergence diagnostics from posterior samples.

    Includes: Rhat, bulk/tail ESS, acceptance-rate tables.
    """

    @staticmethod
    def truncate_burnin(
        samples: NDArray[np.float64], burnin_frac: float
    ) -> NDArray[np.float64]:
        """
        Drop the leading burn-in fraction of every chain.

        Parameters
        ----------
        samples : NDArray[np.float64]
            Draws, shape (chains, draws)
        burnin_frac : float
            Fraction in [0, 1) of each chain to discard.

        Returns
        -------
        NDArray[np.float64]
            Shape (chains, draws - floor(burnin_frac * draws))
        """
        samples = np.atleast_2d(np.asarray(samples, dtype=np.float64))
        if not (0 <= burnin_frac < 1):
            raise ValueError(f"burnin_frac must be in [0, 1). Got {burnin_frac}")
        start = int(np.floor(burnin_frac * samples.shape[1]))
        return samples[:, start:]

    @staticmethod
    def rhat(samples: NDArray[np.float64], burnin_frac: float = 0.0) -> float:
        """
        Compute Rhat (potential scale reduction factor).

        Rhat compares between-chain and within-chain variance of the
        post-burn-in draws. Values near 1 indicate convergence; no
        threshold is enforced here.

        Parameters
        ----------
        samples : NDArray[np.float64]
            Posterior samples from multiple chains, shape (chains, draws).
        burnin_frac : float
            Leading fraction of each chain to discard first. Default 0.0.

        Returns
        -------
        rhat : float
            Potential scale reduction factor.
        """
        samples = DiagnosticsComputer.truncate_burnin(samples, burnin_frac)
        n_chains, n_draws = samples.shape

        if n_chains < 2:
            raise ValueError("Need at least 2 chains for Rhat")
        if n_draws < 2:
            raise ValueError(f"Need at least 2 draws per chain for Rhat. Got {n_draws}")

        # Between-chain variance
        chain_means = np.mean(samples, axis=1)
        B = n_draws * np.var(chain_means, ddof=1)

        # Within-chain variance
        chain_vars = np.var(samples, axis=1, ddof=1)
        W = np.mean(chain_vars)

        # Estimated posterior variance
        var_hat = ((n_draws - 1) / n_draws) * W + (1 / n_draws) * B

        rhat = np.sqrt(var_hat / W) if W > 0 else 1.0

        return float(rhat)

    @staticmethod
    def ess(samples: NDArray[np.float64], method: str = "bulk") -> float:
        """
        Bulk or tail effective sample size of already truncated draws.

        Parameters
        ----------
        samples : NDArray[np.float64]
            Post-burn-in draws, shape (chains, draws) or (draws,).
            Information is pooled across chains.
        method : str
            "bulk" (rank-normalised) or "tail" (5%/95% quantiles).

        Returns
        -------
        float
            Effective sample size.
        """
        if method not in _ESS_METHODS:
            raise ValueError(f"method must be one of {_ESS_METHODS}. Got {method!r}")
        samples = np.atleast_2d(np.asarray(samples, dtype=np.float64))
        return float(az.ess(samples, method=method))

    @staticmethod
    def effective_sample_size(samples: NDArray[np.float64]) -> Dict[str, float]:
        """
        Bulk and tail ESS of a caller-truncated (chains, draws) array.

        Returns
        -------
        Dict[str, float]
            {"bulk": ..., "tail": ...}
        """
        return {method: DiagnosticsComputer.ess(samples, method) for method in _ESS_METHODS}

    @staticmethod
    def summarize(
        fitted: FittedModel,
        burnin_frac: Optional[float] = None,
        params: Sequence[str] = PARAMETERS + DERIVED_PARAMETERS,
        rhat_threshold: Optional[float] = 1.1,
    ) -> List[DiagnosticRecord]:
        """
        Per-parameter posterior mean, sd, Rhat and bulk/tail ESS.

        Parameters
        ----------
        fitted : FittedModel
            Fitted chains (not modified).
        burnin_frac : float, optional
            Burn-in fraction; defaults to the fraction used at fit time.
        params : Sequence[str]
            Scalar parameters to summarise.
        rhat_threshold : float, optional
            Emit a ConvergenceWarning for parameters whose Rhat exceeds it.
            None disables the warning.

        Returns
        -------
        List[DiagnosticRecord]
            One record per parameter. Rhat is NaN when only one chain is
            available.
        """
        records = []
        for name in params:
            samples = fitted.draws(name, burnin_frac=burnin_frac)
            if samples.shape[1] < 2:
                raise ValueError(
                    f"Need at least 2 post-burn-in draws per chain. Got {samples.shape[1]}"
                )

            rhat = (
                DiagnosticsComputer.rhat(samples) if samples.shape[0] >= 2 else float("nan")
            )
            ess = DiagnosticsComputer.effective_sample_size(samples)
            records.append(
                DiagnosticRecord(
                    parameter=name,
                    mean=float(np.mean(samples)),
                    sd=float(np.std(samples, ddof=1)),
                    rhat=rhat,
                    ess_bulk=ess["bulk"],
                    ess_tail=ess["tail"],
                )
            )

            if rhat_threshold is not None and rhat > rhat_threshold:
                message = (
                    f"Rhat for {name} is {rhat:.3f} (> {rhat_threshold}); "
                    "consider more batches or different tuning"
                )
                logger.warning(message)
                warnings.warn(message, ConvergenceWarning, stacklevel=2)

        return records

    @staticmethod
    def acceptance_table(fitted: FittedModel) -> List[Dict[str, object]]:
        """
        Mean acceptance rate and infeasible-proposal count per chain and block.

        Returns
        -------
        List[Dict[str, object]]
            Records {"chain", "block", "acceptance_rate", "infeasible"}.
        """
        rates = fitted.acceptance_rates()
        table = []
        for chain, blocks in rates.items():
            for block, rate in blocks.items():
                table.append(
                    {
                        "chain": chain,
                        "block": block,
                        "acceptance_rate": rate,
                        "infeasible": int(np.sum(fitted.infeasible[chain][block])),
                    }
                )
        return table

    @staticmethod
    def to_inference_data(
        fitted: FittedModel,
        burnin_frac: Optional[float] = None,
        include_latent: bool = True,
    ) -> az.InferenceData:
        """
        Post-burn-in draws as arviz InferenceData, for plotting layers.
        """
        posterior = {
            name: fitted.draws(name, burnin_frac=burnin_frac)
            for name in PARAMETERS + DERIVED_PARAMETERS
        }
        dims = None
        coords = None
        if include_latent:
            posterior["w"] = fitted.latent_draws(burnin_frac=burnin_frac)
            dims = {"w": ["site"]}
            coords = {"site": list(range(fitted.dataset.n_obs))}
        return az.from_dict(posterior=posterior, dims=dims, coords=coords)
