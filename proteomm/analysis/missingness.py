from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class MissingnessResult:
    df: pd.DataFrame          # features x groups, missing counts
    group_sizes: pd.Series    # samples per group
    rule: str = "nan-is-missing"

    @property
    def fully_missing_group(self) -> pd.Series:
        """True where a feature has no observation at all in at least one group."""
        return (self.df >= self.group_sizes).any(axis=1)


def _as_array(matrix) -> np.ndarray:
    return np.asarray(matrix, dtype=np.float64)


def _row_index(matrix, n_rows: int):
    return matrix.index if isinstance(matrix, pd.DataFrame) else pd.RangeIndex(n_rows)


def count_missing_rows(matrix) -> pd.Series:
    """Number of missing samples per peptide."""
    values = _as_array(matrix)
    return pd.Series(np.isnan(values).sum(axis=1), index=_row_index(matrix, values.shape[0]), name="n_missing")


def count_missing_columns(matrix) -> pd.Series:
    """Number of missing peptides per sample."""
    values = _as_array(matrix)
    index = matrix.columns if isinstance(matrix, pd.DataFrame) else pd.RangeIndex(values.shape[1])
    return pd.Series(np.isnan(values).sum(axis=0), index=index, name="n_missing")


def _missingness_counts(intensity_matrix: np.ndarray, groups: Sequence) -> dict:
    group_arr = np.asarray(groups, dtype=object)
    out = {}
    for group in pd.unique(group_arr):
        mask = group_arr == group
        out[group] = np.isnan(intensity_matrix[:, mask]).sum(axis=1)
    return out


def count_observed_per_group(matrix, treatment: Sequence) -> pd.DataFrame:
    """Observed (non-missing) values per peptide and treatment group."""
    values = _as_array(matrix)
    if len(treatment) != values.shape[1]:
        raise ValueError(f"Treatment has {len(treatment)} labels for {values.shape[1]} samples.")
    missing = _missingness_counts(values, treatment)
    sizes = pd.Series(np.asarray(treatment, dtype=object)).value_counts()
    observed = {g: sizes[g] - counts for g, counts in missing.items()}
    return pd.DataFrame(observed, index=_row_index(matrix, values.shape[0]))


def compute_missingness(matrix, treatment: Sequence) -> MissingnessResult:
    """Per-feature missing counts per treatment group."""
    values = _as_array(matrix)
    if len(treatment) != values.shape[1]:
        raise ValueError(f"Treatment has {len(treatment)} labels for {values.shape[1]} samples.")
    counts = _missingness_counts(values, treatment)
    df = pd.DataFrame(counts, index=_row_index(matrix, values.shape[0]))
    sizes = pd.Series(np.asarray(treatment, dtype=object)).value_counts().reindex(df.columns)
    return MissingnessResult(df=df, group_sizes=sizes)
