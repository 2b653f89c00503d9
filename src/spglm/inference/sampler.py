"""
Adaptive random-walk Metropolis sampler for the spatial binomial GLM.

Runs independent chains over the joint posterior of (β0, φ, σ², w):

    r_i | β0, w ~ Binomial(n_i, logit^{-1}(β0 + w_i))
    w | σ², φ   ~ MVN(0, σ² exp(-φ D))

Each iteration updates four blocks in order, each by one Metropolis step
with its own proposal scale:
- β0: random walk on the natural scale
- φ: random walk on logit((φ - φ_low) / (φ_high - φ_low))
- σ²: random walk on log σ²
- w: one step per w_i ("elementwise") or one Cholesky-preconditioned step
  for the whole field ("joint")

Chains run in n_batch batches of batch_len iterations. After batch k each
block's log-scale moves by ±min(max_adaptation, 1/sqrt(k)) towards the
target acceptance rate (0.44 for scalar steps, 0.234 for the joint step).

The φ and σ² steps rebuild and decompose the covariance for the candidate
value. A decomposition that fails is a rejected proposal, not an error;
a block whose every proposal in a batch was infeasible stalls the chain.
A batch in which a block accepts nothing is logged as a warning.
"""

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, NamedTuple, Optional, Union

import numpy as np
from numpy.typing import NDArray
from scipy import stats
from scipy.special import expit, logit

from spglm.config import InitialValues, PriorSpec, SamplerConfig, TuningSpec
from spglm.covariance.kernel import ExponentialKernel, FieldCovariance
from spglm.data.dataset import SpatialDataset
from spglm.errors import ChainStalledError, DegenerateCovarianceError
from spglm.inference.chains import BLOCKS, Chain, FittedModel, PosteriorDraw

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]

_SCALAR_BLOCKS = ("beta0", "phi", "sigma_sq")


def binomial_log_likelihood(
    eta: NDArray[np.float64],
    successes: NDArray[np.float64],
    trials: NDArray[np.float64],
) -> float:
    """
    Binomial log-likelihood with logit link, binomial coefficients dropped.

        sum_i r_i η_i - n_i log(1 + exp(η_i))
    """
    return float(np.sum(successes * eta - trials * np.logaddexp(0.0, eta)))


def _softplus(x: float) -> float:
    return max(x, 0.0) + math.log1p(math.exp(-abs(x)))


class _ChainResult(NamedTuple):
    chain: Chain
    acceptance: Dict[str, NDArray[np.float64]]
    infeasible: Dict[str, NDArray[np.int64]]
    cancelled: bool


class _ChainRunner:
    """Working state and block updates of one chain."""

    def __init__(
        self,
        index: int,
        dataset: SpatialDataset,
        distances: NDArray[np.float64],
        kernel: ExponentialKernel,
        priors: PriorSpec,
        tuning: TuningSpec,
        initial: InitialValues,
        config: SamplerConfig,
        seed: np.random.SeedSequence,
        progress_callback: Optional[ProgressCallback],
        cancel_event: Optional[threading.Event],
    ) -> None:
        self.index = index
        self.distances = distances
        self.kernel = kernel
        self.priors = priors
        self.tuning = tuning
        self.config = config
        self.rng = np.random.default_rng(seed)
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event

        self.successes = dataset.successes.astype(np.float64)
        self.trials = dataset.trials.astype(np.float64)
        self.n_obs = dataset.n_obs

        self._beta0_prior = stats.norm(
            loc=priors.beta0_mean, scale=math.sqrt(priors.beta0_var)
        )
        self._sigma_sq_prior = stats.invgamma(
            priors.sigma_sq_shape, scale=priors.sigma_sq_scale
        )

        self.beta0, self.phi, self.sigma_sq, self.w = initial.resolve(priors, self.n_obs)
        # Factor of the current (σ², φ); replaced whenever either is accepted.
        self.field: FieldCovariance = kernel.decompose_distances(
            distances, self.sigma_sq, self.phi
        )

        self.elementwise = tuning.latent_update == "elementwise"
        self.scales: Dict[str, Union[float, NDArray[np.float64]]] = {
            "beta0": tuning.beta0_scale,
            "phi": tuning.phi_scale,
            "sigma_sq": tuning.sigma_sq_scale,
            "w": (
                np.full(self.n_obs, tuning.w_scale)
                if self.elementwise
                else tuning.w_scale
            ),
        }
        self.w_target = (
            tuning.target_accept if self.elementwise else tuning.target_accept_joint
        )

    # ------------------------------------------------------------------
    # Metropolis steps
    # ------------------------------------------------------------------

    def _accept(self, log_ratio: float) -> bool:
        # log U with U ~ Uniform(0, 1) is -Exponential(1)
        return -self.rng.standard_exponential() < log_ratio

    def _log_likelihood(self, beta0: float, w: NDArray[np.float64]) -> float:
        return binomial_log_likelihood(beta0 + w, self.successes, self.trials)

    def _update_beta0(self) -> bool:
        proposal = self.beta0 + self.scales["beta0"] * self.rng.standard_normal()
        log_ratio = (
            self._log_likelihood(proposal, self.w)
            + self._beta0_prior.logpdf(proposal)
            - self._log_likelihood(self.beta0, self.w)
            - self._beta0_prior.logpdf(self.beta0)
        )
        if self._accept(log_ratio):
            self.beta0 = proposal
            return True
        return False

    def _phi_log_jacobian(self, phi: float) -> float:
        return math.log(phi - self.priors.phi_low) + math.log(self.priors.phi_high - phi)

    def _try_decompose(
        self, sigma_sq: float, phi: float, block: str, infeasible: Dict[str, int]
    ) -> Optional[FieldCovariance]:
        try:
            return self.kernel.decompose_distances(self.distances, sigma_sq, phi)
        except (DegenerateCovarianceError, ValueError) as exc:
            infeasible[block] += 1
            logger.debug("Chain %d: infeasible %s proposal rejected: %s", self.index, block, exc)
            return None

    def _update_phi(self, infeasible: Dict[str, int]) -> bool:
        low, high = self.priors.phi_low, self.priors.phi_high
        theta = logit((self.phi - low) / (high - low))
        theta_new = theta + self.scales["phi"] * self.rng.standard_normal()
        proposal = low + (high - low) * expit(theta_new)
        if not (low < proposal < high):
            return False

        field = self._try_decompose(self.sigma_sq, proposal, "phi", infeasible)
        if field is None:
            return False

        log_ratio = (
            field.log_density(self.w)
            + self._phi_log_jacobian(proposal)
            - self.field.log_density(self.w)
            - self._phi_log_jacobian(self.phi)
        )
        if self._accept(log_ratio):
            self.phi = proposal
            self.field = field
            return True
        return False

    def _update_sigma_sq(self, infeasible: Dict[str, int]) -> bool:
        proposal = self.sigma_sq * math.exp(self.scales["sigma_sq"] * self.rng.standard_normal())
        if not (0.0 < proposal < np.inf):
            infeasible["sigma_sq"] += 1
            return False

        field = self._try_decompose(proposal, self.phi, "sigma_sq", infeasible)
        if field is None:
            return False

        # log σ² random walk: Jacobian term log σ²
        log_ratio = (
            field.log_density(self.w)
            + self._sigma_sq_prior.logpdf(proposal)
            + math.log(proposal)
            - self.field.log_density(self.w)
            - self._sigma_sq_prior.logpdf(self.sigma_sq)
            - math.log(self.sigma_sq)
        )
        if self._accept(log_ratio):
            self.sigma_sq = proposal
            self.field = field
            return True
        return False

    def _update_w_elementwise(self) -> NDArray[np.float64]:
        """One scalar Metropolis step per site; O(N) each through the precision matrix."""
        precision = self.field.precision
        q_w = precision @ self.w
        steps = self.scales["w"] * self.rng.standard_normal(self.n_obs)
        log_u = -self.rng.standard_exponential(self.n_obs)
        accepted = np.zeros(self.n_obs)

        for i in range(self.n_obs):
            delta = float(steps[i])
            eta = self.beta0 + float(self.w[i])
            eta_new = eta + delta
            d_loglik = self.successes[i] * delta - self.trials[i] * (
                _softplus(eta_new) - _softplus(eta)
            )
            d_logprior = -(delta * q_w[i] + 0.5 * delta * delta * precision[i, i])
            if log_u[i] < d_loglik + d_logprior:
                self.w[i] += delta
                q_w += delta * precision[:, i]
                accepted[i] = 1.0

        return accepted

    def _update_w_joint(self) -> float:
        step = self.field.cholesky @ self.rng.standard_normal(self.n_obs)
        proposal = self.w + self.scales["w"] * step
        log_ratio = (
            self._log_likelihood(self.beta0, proposal)
            - 0.5 * self.field.quad_form(proposal)
            - self._log_likelihood(self.beta0, self.w)
            + 0.5 * self.field.quad_form(self.w)
        )
        if self._accept(log_ratio):
            self.w = proposal
            return 1.0
        return 0.0

    # ------------------------------------------------------------------
    # Batch adaptation
    # ------------------------------------------------------------------

    def _adapt(self, batch: int, rates: Dict[str, float], w_rates) -> None:
        delta = min(self.tuning.max_adaptation, 1.0 / math.sqrt(batch))
        for block in _SCALAR_BLOCKS:
            direction = delta if rates[block] > self.tuning.target_accept else -delta
            self.scales[block] *= math.exp(direction)

        if self.elementwise:
            self.scales["w"] = self.scales["w"] * np.exp(
                np.where(w_rates > self.w_target, delta, -delta)
            )
        else:
            self.scales["w"] *= math.exp(delta if w_rates > self.w_target else -delta)

    def _check_stall(self, batch: int, infeasible: Dict[str, int]) -> None:
        for block in ("phi", "sigma_sq"):
            if infeasible[block] >= self.config.batch_len:
                raise ChainStalledError(
                    f"Chain {self.index}: every {block} proposal in batch {batch} "
                    f"was numerically infeasible (phi={self.phi:.4g}, "
                    f"sigma_sq={self.sigma_sq:.4g})",
                    chain=self.index,
                    block=block,
                    batch=batch,
                )

        for block in BLOCKS:
            scale = float(np.min(self.scales[block]))
            if scale < self.tuning.min_scale:
                raise ChainStalledError(
                    f"Chain {self.index}: proposal scale for {block} collapsed to "
                    f"{scale:.3g} after batch {batch}",
                    chain=self.index,
                    block=block,
                    batch=batch,
                )

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self) -> _ChainResult:
        config = self.config
        total = config.n_iterations
        chain = Chain(self.index)
        acceptance: Dict[str, List[float]] = {block: [] for block in BLOCKS}
        infeasible_hist: Dict[str, List[int]] = {block: [] for block in BLOCKS}
        cancelled = False

        for batch in range(1, config.n_batch + 1):
            counts = dict.fromkeys(_SCALAR_BLOCKS, 0)
            w_counts = np.zeros(self.n_obs) if self.elementwise else 0.0
            infeasible = dict.fromkeys(BLOCKS, 0)

            for _ in range(config.batch_len):
                if self.cancel_event is not None and self.cancel_event.is_set():
                    cancelled = True
                    break

                counts["beta0"] += self._update_beta0()
                counts["phi"] += self._update_phi(infeasible)
                counts["sigma_sq"] += self._update_sigma_sq(infeasible)
                if self.elementwise:
                    w_counts += self._update_w_elementwise()
                else:
                    w_counts += self._update_w_joint()

                chain.append(
                    PosteriorDraw.snapshot(self.beta0, self.phi, self.sigma_sq, self.w)
                )

            if cancelled:
                logger.warning(
                    "Chain %d cancelled after %d of %d iterations", self.index, len(chain), total
                )
                break

            rates = {block: counts[block] / config.batch_len for block in _SCALAR_BLOCKS}
            w_rates = w_counts / config.batch_len
            for block in _SCALAR_BLOCKS:
                acceptance[block].append(rates[block])
            acceptance["w"].append(float(np.mean(w_rates)))
            for block in BLOCKS:
                infeasible_hist[block].append(infeasible[block])
                if acceptance[block][-1] == 0.0:
                    logger.warning(
                        "Chain %d batch %d: no %s proposal accepted (scale %.3g, "
                        "%d infeasible)",
                        self.index,
                        batch,
                        block,
                        float(np.mean(self.scales[block])),
                        infeasible[block],
                    )

            self._check_stall(batch, infeasible)
            self._adapt(batch, rates, w_rates)

            logger.debug(
                "Chain %d batch %d/%d: acceptance beta0=%.2f phi=%.2f sigma_sq=%.2f w=%.2f",
                self.index,
                batch,
                config.n_batch,
                rates["beta0"],
                rates["phi"],
                rates["sigma_sq"],
                acceptance["w"][-1],
            )
            if self.progress_callback is not None:
                self.progress_callback(self.index, len(chain), total)

        chain.seal()
        return _ChainResult(
            chain=chain,
            acceptance={b: np.asarray(v, dtype=np.float64) for b, v in acceptance.items()},
            infeasible={b: np.asarray(v, dtype=np.int64) for b, v in infeasible_hist.items()},
            cancelled=cancelled,
        )


class AdaptiveMetropolisSampler:
    """
    Batch-adaptive Metropolis sampler for the spatial binomial GLM.

    Holds the model configuration (priors, tuning, initial values); every
    call to fit() runs fresh, independently seeded chains.
    """

    def __init__(
        self,
        priors: Optional[PriorSpec] = None,
        tuning: Optional[TuningSpec] = None,
        initial: Optional[InitialValues] = None,
        kernel: Optional[ExponentialKernel] = None,
    ) -> None:
        """
        Initialize sampler.

        Parameters
        ----------
        priors : PriorSpec, optional
            Prior hyperparameters. If None, use defaults.
        tuning : TuningSpec, optional
            Initial proposal scales and adaptation targets. If None, use defaults.
        initial : InitialValues, optional
            Starting state of every chain. If None, use defaults.
        kernel : ExponentialKernel, optional
            Covariance kernel. If None, one is built per fit with the
            configured jitter.
        """
        self.priors = priors or PriorSpec()
        self.tuning = tuning or TuningSpec()
        self.initial = initial or InitialValues()
        self.kernel = kernel

    def fit(
        self,
        dataset: SpatialDataset,
        config: Optional[SamplerConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FittedModel:
        """
        Sample the posterior with config.n_chains independent chains.

        Parameters
        ----------
        dataset : SpatialDataset
            Observations to fit.
        config : SamplerConfig, optional
            Run options. If None, use defaults.
        progress_callback : callable, optional
            Called as f(chain_index, iterations_done, total_iterations)
            after every batch, from the worker thread running the chain.
        cancel_event : threading.Event, optional
            When set, every chain stops before its next iteration.

        Returns
        -------
        FittedModel
            Chains of equal length n_batch * batch_len (shorter if cancelled).

        Raises
        ------
        DegenerateCovarianceError
            If the initial (σ², φ) cannot be decomposed.
        ChainStalledError
            If every chain stalls.
        """
        config = config or SamplerConfig()
        kernel = self.kernel or ExponentialKernel(jitter=config.jitter)
        distances = kernel.pairwise_distances(dataset.coords)

        seeds = np.random.SeedSequence(config.seed).spawn(config.n_chains)
        runners = [
            _ChainRunner(
                index=k,
                dataset=dataset,
                distances=distances,
                kernel=kernel,
                priors=self.priors,
                tuning=self.tuning,
                initial=self.initial,
                config=config,
                seed=seeds[k],
                progress_callback=progress_callback,
                cancel_event=cancel_event,
            )
            for k in range(config.n_chains)
        ]

        logger.info(
            "Sampling %d chains x %d iterations (%d batches of %d) on %d observations",
            config.n_chains,
            config.n_iterations,
            config.n_batch,
            config.batch_len,
            dataset.n_obs,
        )
        start_time = time.time()

        n_workers = config.n_workers or config.n_chains
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = [pool.submit(runner.run) for runner in runners]

        results: List[_ChainResult] = []
        failed: Dict[int, ChainStalledError] = {}
        for k, future in enumerate(futures):
            try:
                results.append(future.result())
            except ChainStalledError as exc:
                logger.warning("Chain %d stalled and was dropped: %s", k, exc)
                failed[k] = exc

        if not results:
            raise failed[min(failed)]

        sampling_time = time.time() - start_time

        cancelled = any(r.cancelled for r in results)
        chains = [r.chain for r in results]
        if cancelled:
            shortest = min(len(c) for c in chains)
            chains = [c.truncated(shortest) for c in chains]

        for result in results:
            logger.info(
                "Chain %d finished: %d draws, mean acceptance %s",
                result.chain.index,
                len(result.chain),
                {b: round(float(np.mean(v)), 3) for b, v in result.acceptance.items() if len(v)},
            )

        return FittedModel(
            chains=chains,
            dataset=dataset,
            kernel=kernel,
            priors=self.priors,
            tuning=self.tuning,
            initial=self.initial,
            config=config,
            acceptance={r.chain.index: r.acceptance for r in results},
            infeasible={r.chain.index: r.infeasible for r in results},
            failed_chains=failed,
            complete=not cancelled,
            sampling_time=sampling_time,
        )

    def __repr__(self) -> str:
        return (
            f"AdaptiveMetropolisSampler(priors={self.priors}, tuning={self.tuning})"
        )
