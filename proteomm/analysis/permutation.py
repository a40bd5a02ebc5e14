"""Seeded permutation machinery shared by the DE and presence/absence engines.

Permutation `b` of dataset `d` draws from its own generator seeded with
`(seed, d, b)`, so every null statistic is addressable by index: results do
not depend on execution order, chunking or the number of workers, and the
first N permutations of a 2N run are the N permutations of an N run.

Two restricted schemes are available:
  - "rows": each peptide row is shuffled independently across samples
  - "columns": one sample permutation per dataset, shared by all rows
In both, a row's observed values are only moved among that row's observed
cells, so missing positions, row sums and group sizes are preserved.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Event
from typing import List, Optional, Protocol, Sequence, Tuple

import numpy as np

from proteomm.utils.utils import log_warning

PERMUTE_MODES = ("rows", "columns")
RECOMMENDED_PERMUTATIONS = 500


class PermutationCancelled(Exception):
    """Raised inside workers once the cancel event is set."""


class PermutationModel(Protocol):
    rows: np.ndarray

    def statistic(self, block: np.ndarray) -> float:
        ...


@dataclass
class PermutationTask:
    key: str
    parts: List[Tuple[int, PermutationModel]] = field(default_factory=list)

    def statistic(self, blocks: Sequence[np.ndarray]) -> float:
        return float(sum(model.statistic(blocks[d][model.rows]) for d, model in self.parts))


def validate_permutation_args(n_permutations: int, seed: int, mode: str, n_jobs: int) -> None:
    if int(n_permutations) != n_permutations or n_permutations < 1:
        raise ValueError(f"n_permutations must be an integer >= 1, got {n_permutations}")
    if int(seed) != seed or seed < 0:
        raise ValueError(f"seed must be a non-negative integer, got {seed}")
    if mode not in PERMUTE_MODES:
        raise ValueError(f"Invalid permutation mode '{mode}'. Options: {', '.join(PERMUTE_MODES)}")
    if n_jobs < 1:
        raise ValueError(f"n_jobs must be >= 1, got {n_jobs}")
    if n_permutations < RECOMMENDED_PERMUTATIONS:
        log_warning(
            f"{n_permutations} permutations: smallest attainable p-value is "
            f"{1.0 / (n_permutations + 1):.4g} (>= {RECOMMENDED_PERMUTATIONS} recommended)."
        )


def permutation_rng(seed: int, dataset_index: int, permutation_index: int) -> np.random.Generator:
    return np.random.default_rng([int(seed), int(dataset_index), int(permutation_index)])


def permutation_keys(seed: int, dataset_index: int, permutation_index: int,
                     shape: Tuple[int, int], mode: str = "rows") -> np.ndarray:
    """Random sort keys (n_rows x n_samples) defining permutation `permutation_index`."""
    rng = permutation_rng(seed, dataset_index, permutation_index)
    n_rows, n_samples = shape
    if mode == "rows":
        return rng.random((n_rows, n_samples))
    if mode == "columns":
        return np.broadcast_to(rng.random(n_samples), (n_rows, n_samples))
    raise ValueError(f"Invalid permutation mode '{mode}'. Options: {', '.join(PERMUTE_MODES)}")


def permute_within_rows(values: np.ndarray, keys: np.ndarray) -> np.ndarray:
    """Reorder each row's observed values by `keys`; NaN cells stay in place."""
    mask = ~np.isnan(values)
    if mask.all():
        order = np.argsort(keys, axis=1, kind="stable")
        return np.take_along_axis(values, order, axis=1)

    # missing cells sort last, so the first n_obs entries of each row are its observed values
    order = np.argsort(np.where(mask, keys, np.inf), axis=1, kind="stable")
    shuffled = np.take_along_axis(values, order, axis=1)
    out = np.full_like(values, np.nan)
    out[mask] = shuffled[~np.isnan(shuffled)]
    return out


def permutation_null(
    datasets: Sequence[np.ndarray],
    tasks: Sequence[PermutationTask],
    n_permutations: int,
    seed: int,
    mode: str = "rows",
    n_jobs: int = 1,
    cancel_event: Optional[Event] = None,
) -> Optional[np.ndarray]:
    """
    Null statistics of every task under `n_permutations` permutations.

    Returns an (n_tasks x n_permutations) array, or None if `cancel_event`
    was set before all permutations finished.
    """
    datasets = [np.asarray(v, dtype=np.float64) for v in datasets]

    def run_chunk(indices: np.ndarray) -> np.ndarray:
        out = np.empty((len(tasks), len(indices)))
        for c, b in enumerate(indices):
            if cancel_event is not None and cancel_event.is_set():
                raise PermutationCancelled(int(b))
            permuted = [
                permute_within_rows(v, permutation_keys(seed, d, b, v.shape, mode))
                for d, v in enumerate(datasets)
            ]
            for t, task in enumerate(tasks):
                out[t, c] = task.statistic(permuted)
        return out

    indices = np.arange(n_permutations)
    try:
        if n_jobs == 1:
            chunks = [run_chunk(indices)]
        else:
            splits = np.array_split(indices, min(n_permutations, 4 * n_jobs))
            with ThreadPoolExecutor(max_workers=n_jobs) as pool:
                chunks = list(pool.map(run_chunk, splits))
    except PermutationCancelled as exc:
        log_warning(f"Permutation loop cancelled at permutation {exc.args[0]}; p-values not computed.")
        return None
    return np.concatenate(chunks, axis=1)


def empirical_pvalues(observed: np.ndarray, null: np.ndarray) -> np.ndarray:
    """
    Add-one smoothed upper-tail p-values, (1 + #{null >= observed}) / (N + 1).

    Never 0; the floor is 1 / (N + 1).
    """
    observed = np.asarray(observed, dtype=np.float64)
    null = np.asarray(null, dtype=np.float64)
    slack = 1e-9 * np.maximum(1.0, np.abs(np.where(np.isfinite(observed), observed, 0.0)))
    threshold = np.where(np.isfinite(observed), observed - slack, observed)
    n_extreme = np.sum(null >= threshold[:, None], axis=1)
    return (n_extreme + 1.0) / (null.shape[1] + 1.0)
