"""
Posterior draws, chains and the fitted model.

A PosteriorDraw is one immutable sample (β0, φ, σ², w) from one chain at one
iteration. A Chain is the ordered, append-only sequence of draws produced by
one sampler run; it is sealed once sampling finishes. A FittedModel owns the
chains of one fit together with the configuration that produced them and a
reference to the (read-only) dataset.

Burn-in draws are stored but excluded by default from every accessor that
feeds diagnostics or prediction.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from spglm.config import InitialValues, PriorSpec, SamplerConfig, TuningSpec
from spglm.covariance.kernel import ExponentialKernel
from spglm.data.dataset import SpatialDataset
from spglm.errors import ChainStalledError

PARAMETERS = ("beta0", "phi", "sigma_sq")
DERIVED_PARAMETERS = ("effective_range",)
BLOCKS = ("beta0", "phi", "sigma_sq", "w")


@dataclass(frozen=True)
class PosteriorDraw:
    """One posterior sample; the latent vector is a read-only array."""

    beta0: float
    phi: float
    sigma_sq: float
    w: NDArray[np.float64]

    @classmethod
    def snapshot(
        cls, beta0: float, phi: float, sigma_sq: float, w: NDArray[np.float64]
    ) -> "PosteriorDraw":
        """Copy the sampler's working state into an immutable draw."""
        w_copy = np.array(w, dtype=np.float64, copy=True)
        w_copy.setflags(write=False)
        return cls(float(beta0), float(phi), float(sigma_sq), w_copy)

    @property
    def effective_range(self) -> float:
        return 3.0 / self.phi

    def value(self, name: str) -> float:
        """Scalar parameter by name, including the derived effective range."""
        if name in PARAMETERS or name in DERIVED_PARAMETERS:
            return getattr(self, name)
        raise KeyError(f"Unknown parameter {name!r}")


class Chain:
    """Ordered, append-only sequence of draws from one sampler run."""

    def __init__(self, index: int, draws: Optional[Sequence[PosteriorDraw]] = None) -> None:
        self.index = index
        self._draws: List[PosteriorDraw] = list(draws) if draws is not None else []
        self._sealed = False

    def append(self, draw: PosteriorDraw) -> None:
        if self._sealed:
            raise RuntimeError(f"Chain {self.index} is sealed; draws cannot be added")
        self._draws.append(draw)

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def truncated(self, n_draws: int) -> "Chain":
        """New sealed chain holding the first n_draws draws."""
        chain = Chain(self.index, self._draws[:n_draws])
        chain.seal()
        return chain

    def values(self, name: str) -> NDArray[np.float64]:
        """Trace of a scalar parameter, shape (n_draws,)."""
        return np.array([d.value(name) for d in self._draws], dtype=np.float64)

    def latent(self) -> NDArray[np.float64]:
        """Trace of the latent field, shape (n_draws, N)."""
        if not self._draws:
            return np.empty((0, 0))
        return np.stack([d.w for d in self._draws])

    def __len__(self) -> int:
        return len(self._draws)

    def __getitem__(self, item):
        return self._draws[item]

    def __iter__(self) -> Iterator[PosteriorDraw]:
        return iter(self._draws)

    def __repr__(self) -> str:
        return f"Chain(index={self.index}, n_draws={len(self)}, sealed={self._sealed})"


class FittedModel:
    """
    Output of one sampler run: equal-length chains plus their provenance.

    Attributes
    ----------
    chains : List[Chain]
        Surviving chains (stalled chains are listed in failed_chains)
    dataset : SpatialDataset
        The observations the model was fitted to (not copied)
    kernel : ExponentialKernel
        Kernel used to build the latent-field covariance
    priors, tuning, initial, config
        Configuration of the run
    acceptance : Dict[int, Dict[str, NDArray]]
        Acceptance rate per chain, per block, per batch
    infeasible : Dict[int, Dict[str, NDArray]]
        Numerically infeasible (rejected) proposals per chain, block, batch
    failed_chains : Dict[int, ChainStalledError]
        Chains that stalled, by chain index
    complete : bool
        False when the run was cancelled and chains hold a prefix only
    sampling_time : float
        Wall-clock seconds
    """

    def __init__(
        self,
        chains: List[Chain],
        dataset: SpatialDataset,
        kernel: ExponentialKernel,
        priors: PriorSpec,
        tuning: TuningSpec,
        initial: InitialValues,
        config: SamplerConfig,
        acceptance: Dict[int, Dict[str, NDArray[np.float64]]],
        infeasible: Dict[int, Dict[str, NDArray[np.int64]]],
        failed_chains: Optional[Dict[int, ChainStalledError]] = None,
        complete: bool = True,
        sampling_time: float = 0.0,
    ) -> None:
        if not chains:
            raise ValueError("A fitted model needs at least one chain")
        lengths = {len(c) for c in chains}
        if len(lengths) != 1:
            raise ValueError(f"All chains must have the same length. Got {sorted(lengths)}")

        for chain in chains:
            chain.seal()

        self.chains = list(chains)
        self.dataset = dataset
        self.kernel = kernel
        self.priors = priors
        self.tuning = tuning
        self.initial = initial
        self.config = config
        self.acceptance = acceptance
        self.infeasible = infeasible
        self.failed_chains = dict(failed_chains or {})
        self.complete = complete
        self.sampling_time = sampling_time

    @property
    def n_chains(self) -> int:
        return len(self.chains)

    @property
    def n_draws(self) -> int:
        """Draws per chain, burn-in included."""
        return len(self.chains[0])

    def n_burnin(self, burnin_frac: Optional[float] = None) -> int:
        """Number of leading draws per chain treated as burn-in."""
        frac = self.config.burnin_frac if burnin_frac is None else burnin_frac
        if not (0 <= frac < 1):
            raise ValueError(f"burnin_frac must be in [0, 1). Got {frac}")
        return int(np.floor(frac * self.n_draws))

    def _start(self, burnin_frac: Optional[float], include_burnin: bool) -> int:
        return 0 if include_burnin else self.n_burnin(burnin_frac)

    def draws(
        self,
        name: str,
        burnin_frac: Optional[float] = None,
        include_burnin: bool = False,
    ) -> NDArray[np.float64]:
        """
        Trace of a scalar parameter across chains.

        Parameters
        ----------
        name : str
            "beta0", "phi", "sigma_sq" or "effective_range"
        burnin_frac : float, optional
            Overrides the configured burn-in fraction.
        include_burnin : bool
            Return every stored draw. Default False.

        Returns
        -------
        NDArray[np.float64]
            Shape (n_chains, n_retained)
        """
        if name not in PARAMETERS and name not in DERIVED_PARAMETERS:
            raise KeyError(
                f"Unknown parameter {name!r}; expected one of "
                f"{PARAMETERS + DERIVED_PARAMETERS}"
            )
        start = self._start(burnin_frac, include_burnin)
        return np.stack([chain.values(name)[start:] for chain in self.chains])

    def latent_draws(
        self,
        burnin_frac: Optional[float] = None,
        include_burnin: bool = False,
    ) -> NDArray[np.float64]:
        """Latent field draws, shape (n_chains, n_retained, N)."""
        start = self._start(burnin_frac, include_burnin)
        return np.stack([chain.latent()[start:] for chain in self.chains])

    def retained(
        self,
        thinning: int = 1,
        chains: Optional[Sequence[int]] = None,
        burnin_frac: Optional[float] = None,
    ) -> List[PosteriorDraw]:
        """
        Post-burn-in draws, every `thinning`-th, chain-major in iteration order.

        Parameters
        ----------
        thinning : int
            Keep every k-th post-burn-in draw. Default 1.
        chains : Sequence[int], optional
            Positions in `self.chains` to use. Default all.
        burnin_frac : float, optional
            Overrides the configured burn-in fraction.
        """
        if thinning < 1:
            raise ValueError(f"thinning must be >= 1. Got {thinning}")
        positions = range(self.n_chains) if chains is None else chains
        start = self.n_burnin(burnin_frac)
        out: List[PosteriorDraw] = []
        for pos in positions:
            if not (0 <= pos < self.n_chains):
                raise IndexError(f"Chain position {pos} out of range [0, {self.n_chains})")
            out.extend(self.chains[pos][start::thinning])
        return out

    def acceptance_rates(self) -> Dict[int, Dict[str, float]]:
        """Mean acceptance rate per chain and block over all batches."""
        return {
            chain: {
                block: float(np.mean(rates)) if len(rates) else float("nan")
                for block, rates in blocks.items()
            }
            for chain, blocks in self.acceptance.items()
        }

    def __repr__(self) -> str:
        return (
            f"FittedModel(n_chains={self.n_chains}, n_draws={self.n_draws}, "
            f"n_obs={self.dataset.n_obs}, complete={self.complete}, "
            f"failed_chains={sorted(self.failed_chains)})"
        )
