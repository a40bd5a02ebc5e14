"""Multi-dataset reconciliation by a shared identifier."""
from __future__ import annotations

from typing import Collection, Sequence

import numpy as np
import pandas as pd

from proteomm.dataset.peptidedata import PeptideData
from proteomm.dataset.results import DatasetSlice, PartitionResult
from proteomm.utils.exceptions import AlignmentError
from proteomm.utils.utils import log_debug, log_info, log_time


def _as_data(matrix, metadata, id_column, name) -> PeptideData:
    # treatment is irrelevant here, a placeholder keeps the bundle validated
    n_samples = matrix.shape[1]
    return PeptideData.build(matrix, ["_"] * n_samples, metadata, protein_col=id_column, name=name)


def _slice(data: PeptideData, keep: np.ndarray) -> DatasetSlice:
    sub = data.take(np.flatnonzero(keep))
    return DatasetSlice(matrix=sub.matrix, metadata=sub.metadata)


@log_time("Reconciliation")
def partition(matrices: Sequence, metadatas: Sequence, id_column=1) -> PartitionResult:
    """
    Split every dataset into rows whose identifier is present in all datasets
    (`common`) and rows whose identifier is not (`unique_per_dataset`).

    With two datasets the second part is exactly what only that dataset
    holds; with more, it also holds identifiers shared by some but not all
    datasets. For each dataset, common + unique rows are the full dataset,
    row order is preserved and matrix/metadata stay aligned.
    """
    if len(matrices) != len(metadatas):
        raise AlignmentError(f"Got {len(matrices)} matrices and {len(metadatas)} metadata tables.")
    if len(matrices) == 0:
        raise ValueError("At least one dataset is required.")

    datasets = [
        _as_data(m, md, id_column, f"dataset{i + 1}")
        for i, (m, md) in enumerate(zip(matrices, metadatas))
    ]
    id_sets = [set(data.metadata.protein_ids) for data in datasets]
    shared = set.intersection(*id_sets)
    common_ids = [p for p in pd.unique(datasets[0].metadata.protein_ids) if p in shared]

    common, unique, unique_ids = [], [], []
    for data in datasets:
        ids = data.metadata.protein_ids
        in_common = np.isin(ids, list(shared))
        common.append(_slice(data, in_common))
        unique.append(_slice(data, ~in_common))
        own = list(pd.unique(ids[~in_common]))
        unique_ids.append(own)
        log_info(f"[{data.name}] {len(shared)} common and {len(own)} unique identifier(s).")
        log_debug(f"[{data.name}] unique: {own[:20]}")

    return PartitionResult(common=common, unique_per_dataset=unique, common_ids=common_ids, unique_ids=unique_ids)


def presence_absence_candidates(matrix, metadata, analysed_proteins: Collection[str], protein_col=1) -> DatasetSlice:
    """Rows of proteins that are missing from `analysed_proteins`, e.g. dropped by normalization or imputation."""
    data = _as_data(matrix, metadata, protein_col, "dataset")
    analysed = {str(p) for p in analysed_proteins}
    keep = ~np.isin(data.metadata.protein_ids, list(analysed))
    log_info(f"{len(pd.unique(data.metadata.protein_ids[keep]))} protein(s) left for presence/absence analysis.")
    return _slice(data, keep)


def scope_labels(partition_result: PartitionResult) -> pd.Series:
    """Scope label ("common" or "unique") of every identifier seen in any dataset."""
    common = set(partition_result.common_ids)
    ids = sorted(common.union(*map(set, partition_result.unique_ids)))
    return pd.Series(["common" if p in common else "unique" for p in ids], index=pd.Index(ids, name="protein"), name="scope")
