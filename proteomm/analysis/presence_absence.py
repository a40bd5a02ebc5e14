"""Presence/absence testing for proteins without enough quantitative data.

The per-sample quantity is whether a peptide was observed at all. For each
protein and dataset the observed cells are counted per treatment group and
compared with a likelihood-ratio (G) statistic on the 2 x k presence table.
Across datasets the G statistics are summed and tested with the same
seeded permutation machinery as the quantitative engine.
"""
from __future__ import annotations

from threading import Event
from typing import Collection, Dict, List, Optional, Sequence

import numpy as np

from proteomm.analysis.peptide_de import build_datasets, protein_attributes, require_groups, result_table
from proteomm.analysis.permutation import (
    PermutationTask,
    empirical_pvalues,
    permutation_null,
    validate_permutation_args,
)
from proteomm.analysis.stats_ops import chi2_pvalue, g_statistic
from proteomm.dataset.peptidedata import PeptideData
from proteomm.dataset.results import Exclusion, ProteinDEResult
from proteomm.utils.utils import log_info, log_time, log_warning

STAGE = "presence_absence"


def presence_matrix(data: PeptideData) -> np.ndarray:
    return (~np.isnan(data.values)).astype(np.float64)


class PresenceModel:
    """Group-wise presence counts and G statistic of one protein in one dataset."""

    def __init__(self, rows: np.ndarray, codes: np.ndarray, n_groups: int):
        self.rows = rows
        self.indicator = np.zeros((codes.size, n_groups))
        self.indicator[np.arange(codes.size), codes] = 1.0
        self.totals = rows.size * self.indicator.sum(axis=0)

    def counts(self, block: np.ndarray) -> np.ndarray:
        return block.sum(axis=0) @ self.indicator

    def statistic(self, block: np.ndarray) -> float:
        return g_statistic(self.counts(block), self.totals)

    def fold_change(self, block: np.ndarray) -> float:
        """log2 ratio of smoothed presence frequencies vs the reference group."""
        freq = np.log2((self.counts(block) + 0.5) / (self.totals + 1.0))
        diffs = freq - freq[0]
        if diffs.size < 2:
            return 0.0
        return float(diffs[1 + int(np.argmax(np.abs(diffs[1:])))])


@log_time("Presence/absence - single dataset")
def peptide_level_presence_absence_test(matrix, treatment, metadata, protein_col=1) -> ProteinDEResult:
    """G test of presence vs treatment group per protein (chi-square reference, k-1 df)."""
    data = PeptideData.build(matrix, treatment, metadata, protein_col=protein_col)
    require_groups(data)
    presence = presence_matrix(data)
    codes, n_groups = data.group_codes, len(data.groups)

    records, excluded = [], []
    for protein, rows in data.protein_rows().items():
        block = presence[rows]
        if not block.any():
            excluded.append(Exclusion(str(protein), "protein", STAGE, "never observed"))
            continue
        model = PresenceModel(rows, codes, n_groups)
        stat = model.statistic(block)
        records.append({
            "protein": str(protein),
            "fold_change": model.fold_change(block),
            "statistic": stat,
            "p_value": chi2_pvalue(stat, n_groups - 1),
            "n_peptides": int(rows.size),
            "n_datasets": 1,
            "status": "ok",
        })
    return ProteinDEResult(
        table=result_table(records, protein_attributes([data])),
        method="presence_absence_g",
        excluded=tuple(excluded),
    )


@log_time("Presence/absence - multi-dataset permutation test")
def presence_absence_test(
    matrices: Sequence,
    treatments: Sequence,
    metadatas: Sequence,
    protein_id_col=1,
    n_permutations: int = 500,
    seed: int = 171717,
    permute: str = "rows",
    n_jobs: int = 1,
    cancel_event: Optional[Event] = None,
    dataset_names: Optional[Sequence[str]] = None,
    scored_proteins: Optional[Collection[str]] = None,
) -> ProteinDEResult:
    """
    Permutation test on presence patterns, summed over datasets.

    Meant for raw (pre-normalization) rows of proteins that did not survive
    normalization/imputation; see
    `proteomm.workflow.reconciliation.presence_absence_candidates`. Proteins
    listed in `scored_proteins` (already tested quantitatively) are refused
    and reported, so no protein is counted twice.
    """
    validate_permutation_args(n_permutations, seed, permute, n_jobs)
    datasets = build_datasets(matrices, treatments, metadatas, protein_id_col, dataset_names)
    scored = {str(p) for p in (scored_proteins or ())}

    presences = [presence_matrix(data) for data in datasets]
    tasks: Dict[str, PermutationTask] = {}
    info: Dict[str, dict] = {}
    excluded: List[Exclusion] = []
    refused = set()
    for d, data in enumerate(datasets):
        codes, n_groups = data.group_codes, len(data.groups)
        for protein, rows in data.protein_rows().items():
            protein = str(protein)
            if protein in scored:
                refused.add(protein)
                continue
            block = presences[d][rows]
            if not block.any():
                continue
            model = PresenceModel(rows, codes, n_groups)
            tasks.setdefault(protein, PermutationTask(protein)).parts.append((d, model))
            entry = info.setdefault(protein, {"fc": {}, "stat": {}, "n_peptides": 0})
            entry["fc"][data.name] = model.fold_change(block)
            entry["stat"][data.name] = model.statistic(block)
            entry["n_peptides"] += int(rows.size)

    for protein in sorted(refused):
        excluded.append(Exclusion(protein, "protein", STAGE, "already scored by differential expression"))
    seen = {str(p) for data in datasets for p in data.protein_rows()}
    for protein in sorted(seen - set(tasks) - refused):
        excluded.append(Exclusion(protein, "protein", STAGE, "never observed"))
    if refused:
        log_warning(f"{len(refused)} protein(s) already scored quantitatively were skipped.")

    task_list = list(tasks.values())
    observed = np.array([sum(info[t.key]["stat"].values()) for t in task_list])
    null = permutation_null(
        presences, task_list, n_permutations, seed, permute, n_jobs, cancel_event
    ) if task_list else np.empty((0, n_permutations))
    if null is None:
        pvalues, status = np.full(len(task_list), np.nan), "not_computed"
    else:
        pvalues, status = empirical_pvalues(observed, null), "ok"

    names = [data.name for data in datasets]
    records = []
    for task, stat, p in zip(task_list, observed, pvalues):
        entry = info[task.key]
        record = {
            "protein": task.key,
            "fold_change": float(np.mean(list(entry["fc"].values()))),
            "statistic": float(stat),
            "p_value": p,
            "n_peptides": entry["n_peptides"],
            "n_datasets": len(entry["stat"]),
            "status": status,
        }
        for name in names:
            record[f"fold_change_{name}"] = entry["fc"].get(name, np.nan)
            record[f"statistic_{name}"] = entry["stat"].get(name, np.nan)
        records.append(record)

    log_info(f"Presence/absence tested {len(records)} protein(s).")
    return ProteinDEResult(
        table=result_table(records, protein_attributes(datasets)),
        method=f"presence_absence_permutation_{permute}",
        n_permutations=n_permutations,
        excluded=tuple(excluded),
    )
