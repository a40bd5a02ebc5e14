from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, NamedTuple, Sequence, Tuple

import numpy as np
import pandas as pd

from proteomm.dataset.peptidedata import PeptideData, PeptideMetadata


@dataclass(frozen=True)
class Exclusion:
    identifier: str
    level: str    # "peptide" | "protein"
    stage: str    # "normalization" | "imputation" | "differential_expression" | "presence_absence"
    reason: str


def exclusions_frame(exclusions: Sequence[Exclusion]) -> pd.DataFrame:
    return pd.DataFrame(
        [(e.identifier, e.level, e.stage, e.reason) for e in exclusions],
        columns=["identifier", "level", "stage", "reason"],
    )


class _StageResult:
    """Shared accessors for results carrying a `PeptideData` bundle."""

    data: PeptideData

    @property
    def matrix(self) -> pd.DataFrame:
        return self.data.matrix

    @property
    def treatment(self) -> pd.Categorical:
        return self.data.treatment

    @property
    def metadata(self) -> PeptideMetadata:
        return self.data.metadata

    @property
    def excluded_ids(self) -> List[str]:
        return [e.identifier for e in self.excluded]


@dataclass(frozen=True)
class TrendAnalysis(_StageResult):
    """
    Output of `identify_trends`.

    `data` holds every peptide retained for normalization (complete or not);
    `complete_rows` indexes the fully observed subset the decompositions were
    computed on. Trend vectors live in sample space (n_samples x n_trends).
    """
    data: PeptideData
    complete_rows: np.ndarray
    residuals: pd.DataFrame
    singular_values: np.ndarray
    trends: np.ndarray
    variance_explained: np.ndarray
    raw_singular_values: np.ndarray
    raw_trends: np.ndarray
    raw_variance_explained: np.ndarray
    trend_pvalues: np.ndarray
    n_significant_trends: int
    suggested_trends: int
    excluded: Tuple[Exclusion, ...] = ()

    @property
    def max_trends(self) -> int:
        return self.trends.shape[1]


@dataclass(frozen=True)
class NormalizedResult(_StageResult):
    data: PeptideData
    n_trends: int
    bias: pd.DataFrame
    excluded: Tuple[Exclusion, ...] = ()


@dataclass(frozen=True)
class ImputedResult(_StageResult):
    data: PeptideData
    imputed_mask: pd.DataFrame
    pi_mcar: float
    pi_estimated: bool
    excluded: Tuple[Exclusion, ...] = ()

    @property
    def n_imputed(self) -> int:
        return int(self.imputed_mask.to_numpy().sum())


@dataclass(frozen=True)
class ProteinDEResult:
    """
    One row per tested protein: fold_change, statistic, p_value, p_adjusted,
    n_peptides, n_datasets, status and the propagated protein attributes.
    """
    table: pd.DataFrame
    method: str
    n_permutations: int = 0
    excluded: Tuple[Exclusion, ...] = ()

    @property
    def excluded_ids(self) -> List[str]:
        return [e.identifier for e in self.excluded]

    def to_frame(self) -> pd.DataFrame:
        return self.table.reset_index()

    def significant(self, fc_cutoff: float = 1.0, p_cutoff: float = 0.05, adjusted: bool = True) -> pd.DataFrame:
        """Rows passing |fold_change| >= fc_cutoff and p <= p_cutoff."""
        pcol = "p_adjusted" if adjusted else "p_value"
        t = self.table
        keep = (t["status"] == "ok") & (t["fold_change"].abs() >= fc_cutoff) & (t[pcol] <= p_cutoff)
        return t.loc[keep]


class DatasetSlice(NamedTuple):
    matrix: pd.DataFrame
    metadata: PeptideMetadata


@dataclass(frozen=True)
class PartitionResult:
    common: List[DatasetSlice]
    unique_per_dataset: List[DatasetSlice]
    common_ids: List[str] = field(default_factory=list)
    unique_ids: List[List[str]] = field(default_factory=list)

    def dataset_ids(self, index: int) -> List[str]:
        return sorted(set(self.common_ids) | set(self.unique_ids[index]))
