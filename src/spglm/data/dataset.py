"""
Point-referenced binomial observations.

A SpatialDataset holds N spatial units, each with a planar (projected)
coordinate, a trial count n_i and a success count r_i:

    r_i ~ Binomial(n_i, p_i),    0 <= r_i <= n_i,    n_i >= 1

Units with n_i = 0 carry no information and are censored before the
dataset is built. Coordinates must be finite and pairwise distinct,
otherwise the covariance matrix of the latent field is singular; exact
duplicates are either rejected or jittered.

The dataset is immutable: all arrays are read-only views.
"""

import logging
from dataclasses import dataclass
from typing import Hashable, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

from spglm.errors import DataError

logger = logging.getLogger(__name__)

_DUPLICATE_POLICIES = ("raise", "jitter")


@dataclass(frozen=True)
class Observation:
    """One spatial unit: coordinate, trials and successes."""

    x: float
    y: float
    trials: int
    successes: int
    site_id: Optional[Hashable] = None


def _read_only(array: NDArray) -> NDArray:
    array.setflags(write=False)
    return array


def _as_count_array(values: ArrayLike, name: str) -> NDArray[np.int64]:
    arr = np.asarray(values)
    if arr.ndim != 1:
        raise DataError(f"{name} must be one-dimensional. Got shape {arr.shape}")
    if arr.size and not np.issubdtype(arr.dtype, np.integer):
        arr = arr.astype(np.float64)
        if not np.all(np.isfinite(arr)) or np.any(arr != np.round(arr)):
            raise DataError(f"{name} must contain whole numbers. Got {arr}")
    return arr.astype(np.int64)


class SpatialDataset:
    """
    Immutable collection of binomial observations on a planar grid.

    Attributes
    ----------
    coords : NDArray[np.float64]
        Observation coordinates, shape (N, 2)
    trials : NDArray[np.int64]
        Trial counts n_i, shape (N,)
    successes : NDArray[np.int64]
        Success counts r_i, shape (N,)
    site_ids : Tuple
        Identifier per observation (defaults to the positional index)
    """

    def __init__(
        self,
        observations: Sequence[Observation],
        duplicates: str = "raise",
        jitter_scale: float = 1e-6,
        seed: Optional[int] = None,
    ) -> None:
        """
        Build a dataset from observation records.

        Parameters
        ----------
        observations : Sequence[Observation]
            Ordered observation records. Order is preserved.
        duplicates : str
            "raise" rejects coincident coordinates, "jitter" perturbs every
            repeated coordinate by N(0, jitter_scale^2) noise. Default "raise".
        jitter_scale : float
            Standard deviation of the jitter, in coordinate units.
        seed : int, optional
            Seed for the jitter noise.

        Raises
        ------
        DataError
            If any record is malformed or coordinates coincide under "raise".
        """
        if duplicates not in _DUPLICATE_POLICIES:
            raise DataError(
                f"duplicates must be one of {_DUPLICATE_POLICIES}. Got {duplicates!r}"
            )
        if len(observations) == 0:
            raise DataError("A dataset needs at least one observation")

        coords = np.array(
            [[float(o.x), float(o.y)] for o in observations], dtype=np.float64
        )
        trials = _as_count_array([o.trials for o in observations], "trials")
        successes = _as_count_array([o.successes for o in observations], "successes")
        site_ids = tuple(
            i if o.site_id is None else o.site_id for i, o in enumerate(observations)
        )

        self._validate(coords, trials, successes, site_ids)

        if duplicates == "jitter":
            coords = self._jitter_duplicates(coords, jitter_scale, seed)
        else:
            n_dup = len(self._duplicate_indices(coords))
            if n_dup:
                raise DataError(
                    f"{n_dup} observations share coordinates with an earlier one; "
                    "the latent-field covariance would be singular. "
                    "Remove them or build the dataset with duplicates='jitter'."
                )

        self._coords = _read_only(coords)
        self._trials = _read_only(trials)
        self._successes = _read_only(successes)
        self._site_ids = site_ids

    @staticmethod
    def _validate(
        coords: NDArray[np.float64],
        trials: NDArray[np.int64],
        successes: NDArray[np.int64],
        site_ids: Tuple,
    ) -> None:
        if not np.all(np.isfinite(coords)):
            bad = np.where(~np.all(np.isfinite(coords), axis=1))[0]
            raise DataError(f"Coordinates must be finite. Non-finite rows: {bad.tolist()}")

        if np.any(trials < 0) or np.any(successes < 0):
            raise DataError("Trial and success counts must be non-negative")

        if np.any(trials == 0):
            bad = np.where(trials == 0)[0]
            raise DataError(
                f"Observations {bad.tolist()} have zero trials; censor them before "
                "building the dataset (from_arrays drops them by default)"
            )

        if np.any(successes > trials):
            bad = np.where(successes > trials)[0]
            raise DataError(f"successes exceed trials at observations {bad.tolist()}")

        if len(set(site_ids)) != len(site_ids):
            raise DataError("site_ids must be unique")

    @staticmethod
    def _duplicate_indices(coords: NDArray[np.float64]) -> NDArray[np.int64]:
        """Indices of rows repeating an earlier row exactly."""
        _, first = np.unique(coords, axis=0, return_index=True)
        mask = np.ones(len(coords), dtype=bool)
        mask[first] = False
        return np.where(mask)[0]

    def _jitter_duplicates(
        self,
        coords: NDArray[np.float64],
        jitter_scale: float,
        seed: Optional[int],
    ) -> NDArray[np.float64]:
        if jitter_scale <= 0:
            raise DataError(f"jitter_scale must be positive. Got {jitter_scale}")

        rng = np.random.default_rng(seed)
        coords = coords.copy()
        for _ in range(10):
            dup = self._duplicate_indices(coords)
            if len(dup) == 0:
                return coords
            logger.info("Jittering %d duplicated coordinates", len(dup))
            coords[dup] += rng.normal(0.0, jitter_scale, size=(len(dup), 2))

        raise DataError("Could not separate duplicated coordinates by jittering")

    @classmethod
    def from_arrays(
        cls,
        coords: ArrayLike,
        trials: ArrayLike,
        successes: ArrayLike,
        site_ids: Optional[Sequence[Hashable]] = None,
        drop_zero_trials: bool = True,
        duplicates: str = "raise",
        jitter_scale: float = 1e-6,
        seed: Optional[int] = None,
    ) -> "SpatialDataset":
        """
        Build a dataset from parallel arrays.

        Parameters
        ----------
        coords : ArrayLike
            Planar coordinates, shape (N, 2)
        trials, successes : ArrayLike
            Counts, shape (N,)
        site_ids : Sequence, optional
            Identifier per row. Defaults to the row index.
        drop_zero_trials : bool
            Censor rows with zero trials instead of rejecting them. Default True.
        duplicates, jitter_scale, seed
            Passed to the constructor.

        Returns
        -------
        SpatialDataset
        """
        coords = np.asarray(coords, dtype=np.float64)
        if coords.ndim != 2 or coords.shape[1] != 2:
            raise DataError(f"coords must have shape (N, 2). Got {coords.shape}")

        trials = _as_count_array(trials, "trials")
        successes = _as_count_array(successes, "successes")
        if not (len(coords) == len(trials) == len(successes)):
            raise DataError(
                f"coords, trials and successes must have equal length. Got "
                f"{len(coords)}, {len(trials)}, {len(successes)}"
            )

        if site_ids is None:
            site_ids = list(range(len(coords)))
        elif len(site_ids) != len(coords):
            raise DataError(
                f"site_ids must have length {len(coords)}. Got {len(site_ids)}"
            )

        keep = np.ones(len(coords), dtype=bool)
        if drop_zero_trials:
            keep = trials != 0
            n_dropped = int(np.sum(~keep))
            if n_dropped:
                logger.info("Censoring %d observations with zero trials", n_dropped)

        observations = [
            Observation(
                x=coords[i, 0],
                y=coords[i, 1],
                trials=int(trials[i]),
                successes=int(successes[i]),
                site_id=site_ids[i],
            )
            for i in np.where(keep)[0]
        ]
        return cls(observations, duplicates=duplicates, jitter_scale=jitter_scale, seed=seed)

    @property
    def coords(self) -> NDArray[np.float64]:
        return self._coords

    @property
    def trials(self) -> NDArray[np.int64]:
        return self._trials

    @property
    def successes(self) -> NDArray[np.int64]:
        return self._successes

    @property
    def site_ids(self) -> Tuple:
        return self._site_ids

    @property
    def n_obs(self) -> int:
        return len(self._trials)

    @property
    def proportions(self) -> NDArray[np.float64]:
        """Observed success proportions r_i / n_i."""
        return self._successes / self._trials

    def observations(self) -> Tuple[Observation, ...]:
        """Records in dataset order."""
        return tuple(
            Observation(
                x=float(self._coords[i, 0]),
                y=float(self._coords[i, 1]),
                trials=int(self._trials[i]),
                successes=int(self._successes[i]),
                site_id=self._site_ids[i],
            )
            for i in range(self.n_obs)
        )

    def subset(self, indices: ArrayLike) -> "SpatialDataset":
        """
        Dataset restricted to the given rows (e.g. a held-out validation region).

        Parameters
        ----------
        indices : ArrayLike
            Integer positions or a boolean mask of length N.
        """
        idx = np.asarray(indices)
        if idx.dtype == bool:
            if idx.shape != (self.n_obs,):
                raise DataError(f"Boolean mask must have shape ({self.n_obs},)")
            idx = np.where(idx)[0]
        records = self.observations()
        return SpatialDataset([records[int(i)] for i in idx])

    def __len__(self) -> int:
        return self.n_obs

    def __repr__(self) -> str:
        return (
            f"SpatialDataset(n_obs={self.n_obs}, "
            f"total_trials={int(self._trials.sum())}, "
            f"total_successes={int(self._successes.sum())})"
        )
