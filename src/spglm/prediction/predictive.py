"""
Posterior-predictive conditional simulation at new locations.

For every retained posterior draw d = (β0, φ, σ², w) the latent field at new
sites is drawn from its Gaussian conditional given the field at the
observed sites:

    w_new | w ~ N(C_no C_oo^{-1} w,  C_nn - C_no C_oo^{-1} C_on)
    p_new = logit^{-1}(β0 + w_new)

The result holds one predicted probability per retained draw per site.
Summaries across draws are deterministic given the posterior; binomial
count draws are a separate, explicitly seeded step taken afterwards.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Dict, Hashable, List, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.special import expit

from spglm.covariance.kernel import ExponentialKernel
from spglm.errors import (
    DataError,
    DegenerateCovarianceError,
    InsufficientDrawsError,
    PredictionError,
)
from spglm.inference.chains import FittedModel, PosteriorDraw

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SitePrediction:
    """Summary of the predictive distribution at one site."""

    site_id: Hashable
    mean_probability: float
    median_probability: float
    sd_probability: float
    predicted_count: Optional[int] = None

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


def _broadcast_trials(trials: Union[int, ArrayLike], n_sites: int) -> NDArray[np.int64]:
    arr = np.broadcast_to(np.asarray(trials), (n_sites,))
    if np.any(arr < 0) or np.any(arr != np.round(arr)):
        raise ValueError(f"trials must be non-negative whole numbers. Got {trials}")
    return arr.astype(np.int64)


class PredictiveSample:
    """
    Draws of the predictive distribution at new sites.

    Attributes
    ----------
    probabilities : NDArray[np.float64]
        Success probabilities, shape (n_draws, n_sites)
    latent : NDArray[np.float64]
        Latent field draws, shape (n_draws, n_sites)
    site_ids : Tuple
        Identifier per site, in input order
    coords : NDArray[np.float64]
        Site coordinates, shape (n_sites, 2)
    thinning : int
        Thinning applied to the retained posterior draws
    """

    def __init__(
        self,
        probabilities: NDArray[np.float64],
        latent: NDArray[np.float64],
        site_ids: Sequence[Hashable],
        coords: NDArray[np.float64],
        thinning: int = 1,
    ) -> None:
        if probabilities.shape != latent.shape:
            raise ValueError(
                f"probabilities and latent must have the same shape. Got "
                f"{probabilities.shape} and {latent.shape}"
            )
        if probabilities.shape[1] != len(site_ids):
            raise ValueError(
                f"Expected {probabilities.shape[1]} site ids. Got {len(site_ids)}"
            )
        self.probabilities = probabilities
        self.latent = latent
        self.site_ids = tuple(site_ids)
        self.coords = coords
        self.thinning = thinning
        for array in (self.probabilities, self.latent, self.coords):
            array.setflags(write=False)

    @property
    def n_draws(self) -> int:
        return self.probabilities.shape[0]

    @property
    def n_sites(self) -> int:
        return self.probabilities.shape[1]

    def mean_probability(self) -> NDArray[np.float64]:
        return np.mean(self.probabilities, axis=0)

    def summarize(
        self,
        trials: Optional[Union[int, ArrayLike]] = None,
        seed: Optional[int] = None,
    ) -> List[SitePrediction]:
        """
        Per-site mean, median and sd of the predicted probability.

        Parameters
        ----------
        trials : int or ArrayLike, optional
            Trials n_new per site. When given, a count Binomial(n_new,
            mean_probability) is drawn per site after summarising.
        seed : int, optional
            Seed for the count draw.

        Returns
        -------
        List[SitePrediction]
            One record per site, in input order.
        """
        if self.n_sites == 0:
            return []

        mean = self.mean_probability()
        median = np.median(self.probabilities, axis=0)
        ddof = 1 if self.n_draws > 1 else 0
        sd = np.std(self.probabilities, axis=0, ddof=ddof)

        counts: List[Optional[int]] = [None] * self.n_sites
        if trials is not None:
            n_new = _broadcast_trials(trials, self.n_sites)
            rng = np.random.default_rng(seed)
            counts = [int(c) for c in rng.binomial(n_new, mean)]

        return [
            SitePrediction(
                site_id=self.site_ids[j],
                mean_probability=float(mean[j]),
                median_probability=float(median[j]),
                sd_probability=float(sd[j]),
                predicted_count=counts[j],
            )
            for j in range(self.n_sites)
        ]

    def draw_counts(
        self,
        trials: Union[int, ArrayLike],
        seed: Optional[int] = None,
    ) -> NDArray[np.int64]:
        """
        One Binomial(n_new, p) count per draw per site.

        Returns
        -------
        NDArray[np.int64]
            Shape (n_draws, n_sites)
        """
        n_new = _broadcast_trials(trials, self.n_sites)
        rng = np.random.default_rng(seed)
        return rng.binomial(n_new, self.probabilities).astype(np.int64)

    def __repr__(self) -> str:
        return (
            f"PredictiveSample(n_draws={self.n_draws}, n_sites={self.n_sites}, "
            f"thinning={self.thinning})"
        )


class PredictiveEngine:
    """
    Conditional simulation of the latent field and probabilities at new sites.

    Draws are processed independently, each with its own random stream
    spawned from one top-level seed, so results do not depend on how the
    work is scheduled across threads.
    """

    def __init__(
        self,
        min_draws: int = 10,
        jitter: float = 1e-8,
        n_workers: Optional[int] = None,
    ) -> None:
        """
        Parameters
        ----------
        min_draws : int
            Fewest retained draws accepted for a prediction. Default 10.
        jitter : float
            Relative diagonal jitter added to the conditional covariance
            before it is decomposed. Default 1e-8.
        n_workers : int, optional
            Threads used for per-draw conditioning. None lets the executor choose.
        """
        if min_draws < 1:
            raise ValueError(f"min_draws must be >= 1. Got {min_draws}")
        if n_workers is not None and n_workers < 1:
            raise ValueError(f"n_workers must be >= 1. Got {n_workers}")
        self.min_draws = min_draws
        self.conditional_kernel = ExponentialKernel(jitter=jitter)
        self.n_workers = n_workers

    def _condition_draw(
        self,
        index: int,
        draw: PosteriorDraw,
        seed: np.random.SeedSequence,
        fitted: FittedModel,
        new_coords: NDArray[np.float64],
        site_ids: Sequence[Hashable],
        n_draws: int,
        joint: bool,
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        rng = np.random.default_rng(seed)
        obs_coords = fitted.dataset.coords
        sigma_sq, phi = draw.sigma_sq, draw.phi

        try:
            field = fitted.kernel.decompose(obs_coords, sigma_sq, phi)
        except DegenerateCovarianceError as exc:
            raise PredictionError(
                f"Covariance of the observed field could not be decomposed for draw "
                f"{index} (sigma_sq={sigma_sq:.4g}, phi={phi:.4g})",
                n_draws=n_draws,
                draw_index=index,
            ) from exc

        cross = fitted.kernel.cross_covariance(new_coords, obs_coords, sigma_sq, phi)

        if joint:
            covariance_new = fitted.kernel.build(new_coords, sigma_sq, phi)
            mean, cov = field.condition(draw.w, cross, covariance_new=covariance_new)
            try:
                conditional = self.conditional_kernel.factor(cov, sigma_sq, phi)
            except DegenerateCovarianceError as exc:
                # The site with the smallest conditional variance is the degenerate one
                site_id = site_ids[int(np.argmin(np.diag(cov)))]
                raise PredictionError(
                    f"Conditional covariance at the new sites is singular for draw "
                    f"{index} (sigma_sq={sigma_sq:.4g}, phi={phi:.4g}, site {site_id!r}); "
                    f"try joint=False or remove coincident prediction sites",
                    site_id=site_id,
                    n_draws=n_draws,
                    draw_index=index,
                ) from exc
            latent = mean + conditional.sample(rng)
        else:
            variance_new = np.full(len(new_coords), sigma_sq)
            mean, var = field.condition(draw.w, cross, variance_new=variance_new)
            # Rounding can push variances at observed sites slightly below zero
            sd = np.sqrt(np.clip(var, 0.0, None))
            latent = mean + sd * rng.standard_normal(len(new_coords))

        return latent, expit(draw.beta0 + latent)

    def predict(
        self,
        fitted: FittedModel,
        new_coords: ArrayLike,
        thinning: int = 1,
        seed: Optional[int] = None,
        chains: Optional[Sequence[int]] = None,
        site_ids: Optional[Sequence[Hashable]] = None,
        joint: bool = True,
    ) -> PredictiveSample:
        """
        Posterior-predictive probabilities at new coordinates.

        Parameters
        ----------
        fitted : FittedModel
            Fitted chains; burn-in is excluded using the fit's burnin_frac.
        new_coords : ArrayLike
            Prediction sites, shape (M, 2). M = 0 gives an empty result.
        thinning : int
            Keep every k-th retained draw of each chain. Default 1.
        seed : int, optional
            Top-level seed; each draw gets an independent child stream.
        chains : Sequence[int], optional
            Chain positions to use. Default all.
        site_ids : Sequence, optional
            Identifier per site. Defaults to the row index.
        joint : bool
            Draw the sites jointly from the full conditional covariance
            (True), or each site from its marginal conditional (False).

        Returns
        -------
        PredictiveSample
            Probabilities and latent values, shape (n_draws, M).

        Raises
        ------
        InsufficientDrawsError
            If fewer than min_draws draws remain after thinning.
        PredictionError
            If a covariance decomposition fails for some draw.
        """
        new = np.array(new_coords, dtype=np.float64)
        if new.size == 0:
            new = new.reshape(0, 2)
        if new.ndim != 2 or new.shape[1] != 2:
            raise DataError(f"new_coords must have shape (M, 2). Got {new.shape}")
        if not np.all(np.isfinite(new)):
            raise DataError("new_coords must be finite")

        if site_ids is None:
            site_ids = list(range(len(new)))
        elif len(site_ids) != len(new):
            raise DataError(f"site_ids must have length {len(new)}. Got {len(site_ids)}")

        draws = fitted.retained(thinning=thinning, chains=chains)
        if len(draws) < self.min_draws:
            raise InsufficientDrawsError(len(draws), self.min_draws, thinning)

        n_draws, n_sites = len(draws), len(new)
        if n_sites == 0:
            empty = np.empty((n_draws, 0))
            return PredictiveSample(empty, empty.copy(), site_ids, new, thinning)

        logger.info(
            "Predicting %d sites from %d posterior draws (thinning=%d, joint=%s)",
            n_sites,
            n_draws,
            thinning,
            joint,
        )

        seeds = np.random.SeedSequence(seed).spawn(n_draws)
        with ThreadPoolExecutor(max_workers=self.n_workers) as pool:
            # map() yields results in submission order
            results = list(
                pool.map(
                    lambda args: self._condition_draw(
                        *args, fitted, new, site_ids, n_draws, joint
                    ),
                    zip(range(n_draws), draws, seeds),
                )
            )

        latent = np.stack([r[0] for r in results])
        probabilities = np.stack([r[1] for r in results])
        return PredictiveSample(probabilities, latent, site_ids, new, thinning)

    def __repr__(self) -> str:
        return (
            f"PredictiveEngine(min_draws={self.min_draws}, "
            f"jitter={self.conditional_kernel.jitter}, n_workers={self.n_workers})"
        )
