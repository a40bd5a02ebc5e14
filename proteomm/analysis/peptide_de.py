"""Peptide-level differential expression, single- and multi-dataset.

Every protein is tested with the two-way model of `LinearModelFitter`: the F
statistic compares peptide + treatment against peptide alone. On one dataset
the F reference distribution gives the p-value. Across datasets the
per-dataset F statistics are summed and the sum is referred to its own
permutation null (see `proteomm.analysis.permutation`), then BH-adjusted.
"""
from __future__ import annotations

from dataclasses import replace
from threading import Event
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from proteomm.analysis.linearmodelfitter import LinearModelFitter, column_basis, f_from_rss
from proteomm.analysis.permutation import (
    PermutationTask,
    empirical_pvalues,
    permutation_null,
    validate_permutation_args,
)
from proteomm.analysis.stats_ops import bh_adjust, f_pvalue
from proteomm.dataset.peptidedata import PeptideData
from proteomm.dataset.results import Exclusion, ProteinDEResult
from proteomm.utils.exceptions import AlignmentError, DegenerateStatisticError, InsufficientDataError
from proteomm.utils.utils import log_info, log_time, log_warning

STAGE = "differential_expression"
BASE_COLUMNS = ["fold_change", "statistic", "p_value", "p_adjusted", "n_peptides", "n_datasets", "status"]


class ProteinFModel:
    """F statistic of one protein in one dataset, recomputed without refitting."""

    def __init__(self, rows: np.ndarray, fitter: LinearModelFitter):
        self.rows = rows
        self.mask = fitter.mask
        self.basis = column_basis(fitter.design_full)
        # values only move within their peptide row, so the peptide-only fit never changes
        self.rss_reduced = fitter.rss_reduced
        self.df_num = fitter.df_reduced - fitter.df_residual
        self.df_den = fitter.df_residual

    def statistic(self, block: np.ndarray) -> float:
        y = block[self.mask]
        resid = y - self.basis @ (self.basis.T @ y)
        return f_from_rss(self.rss_reduced, float(resid @ resid), self.df_num, self.df_den)


def require_groups(data: PeptideData) -> None:
    if len(data.groups) < 2:
        raise AlignmentError(f"[{data.name}] differential testing needs at least 2 treatment groups, got {data.groups}")


def build_datasets(matrices, treatments, metadatas, protein_col, dataset_names=None) -> List[PeptideData]:
    if not (len(matrices) == len(treatments) == len(metadatas)):
        raise AlignmentError(
            f"Got {len(matrices)} matrices, {len(treatments)} treatments and {len(metadatas)} metadata tables."
        )
    if len(matrices) == 0:
        raise ValueError("At least one dataset is required.")
    names = list(dataset_names) if dataset_names is not None else [f"dataset{i + 1}" for i in range(len(matrices))]
    if len(set(names)) != len(names) or len(names) != len(matrices):
        raise ValueError(f"Dataset names must be unique, one per dataset: {names}")
    datasets = [
        PeptideData.build(m, t, md, protein_col=protein_col, name=n)
        for m, t, md, n in zip(matrices, treatments, metadatas, names)
    ]
    for data in datasets:
        require_groups(data)
    reference = datasets[0].groups
    for i, data in enumerate(datasets[1:], start=1):
        if set(data.groups) != set(reference):
            log_warning(
                f"[{data.name}] treatment groups {data.groups} differ from {reference}; "
                "groups are matched by position."
            )
        elif data.groups != reference:
            # same labels, other column order: match groups by label
            treatment = pd.Categorical(np.asarray(data.treatment, dtype=object), categories=reference)
            datasets[i] = replace(data, treatment=treatment)
    return datasets


def fit_protein(data: PeptideData, rows: np.ndarray) -> LinearModelFitter:
    if rows.size < 2:
        raise DegenerateStatisticError(f"{rows.size} peptide(s); the F statistic needs at least 2")
    return LinearModelFitter(
        data.values[rows],
        np.asarray(data.treatment, dtype=object),
        data.metadata.peptide_ids[rows],
        data.groups,
    ).fit()


def protein_attributes(datasets: Sequence[PeptideData]) -> pd.DataFrame:
    attrs = None
    for data in datasets:
        frame = data.metadata.protein_attributes()
        attrs = frame if attrs is None else attrs.combine_first(frame)
    return attrs


def result_table(records: List[dict], attributes: Optional[pd.DataFrame]) -> pd.DataFrame:
    """Assemble the per-protein table and BH-adjust the computed p-values."""
    table = pd.DataFrame.from_records(records)
    if table.empty:
        table = pd.DataFrame(columns=["protein"] + BASE_COLUMNS)
    table = table.set_index("protein")
    table["p_adjusted"] = bh_adjust(table["p_value"].to_numpy(dtype=np.float64))
    extra = [c for c in table.columns if c not in BASE_COLUMNS]
    table = table[BASE_COLUMNS + extra]
    if attributes is not None and not attributes.empty:
        table = table.join(attributes.reindex(table.index))
    return table


@log_time("Differential expression - single dataset")
def peptide_level_test(matrix, treatment, metadata, protein_col=1) -> ProteinDEResult:
    """
    F test of the treatment effect for every protein of one dataset.

    Proteins with fewer than 2 peptides (degenerate F) or without residual
    degrees of freedom are excluded and listed in `excluded`.
    """
    data = PeptideData.build(matrix, treatment, metadata, protein_col=protein_col)
    require_groups(data)

    records, excluded = [], []
    for protein, rows in data.protein_rows().items():
        try:
            fitter = fit_protein(data, rows)
            stat = fitter.f_statistic()
        except (DegenerateStatisticError, InsufficientDataError) as exc:
            excluded.append(Exclusion(str(protein), "protein", STAGE, str(exc)))
            continue
        records.append({
            "protein": protein,
            "fold_change": fitter.fold_change(),
            "statistic": stat,
            "p_value": f_pvalue(stat, fitter.df_reduced - fitter.df_residual, fitter.df_residual),
            "n_peptides": int(rows.size),
            "n_datasets": 1,
            "status": "ok",
        })

    log_info(f"Tested {len(records)} protein(s), excluded {len(excluded)}.")
    return ProteinDEResult(
        table=result_table(records, protein_attributes([data])),
        method="peptide_level_f",
        excluded=tuple(excluded),
    )


@log_time("Differential expression - multi-dataset permutation test")
def multi_dataset_test(
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
) -> ProteinDEResult:
    """
    Combined differential expression over several datasets.

    The statistic of a protein is the sum of its per-dataset F statistics over
    the datasets where it is testable. Its p-value is
    (1 + #{permuted sums >= observed}) / (n_permutations + 1), where each
    permutation shuffles every dataset independently (scheme `permute`).
    The p-value floor is 1 / (n_permutations + 1): keep n_permutations >= 500.

    Treatment labels must mean the same thing in every dataset (e.g. control
    vs treated); this is the caller's responsibility. Groups are matched by
    label, so the first dataset's group order sets the reference everywhere.

    If `cancel_event` is set while permuting, all p-values are NaN with
    status "not_computed".
    """
    validate_permutation_args(n_permutations, seed, permute, n_jobs)
    datasets = build_datasets(matrices, treatments, metadatas, protein_id_col, dataset_names)

    tasks: Dict[str, PermutationTask] = {}
    info: Dict[str, dict] = {}
    notes: Dict[str, List[Exclusion]] = {}
    for d, data in enumerate(datasets):
        values = data.values
        for protein, rows in data.protein_rows().items():
            protein = str(protein)
            try:
                fitter = fit_protein(data, rows)
                model = ProteinFModel(rows, fitter)
                stat = model.statistic(values[rows])
            except (DegenerateStatisticError, InsufficientDataError) as exc:
                notes.setdefault(protein, []).append(
                    Exclusion(protein, "dataset", STAGE, f"{data.name}: {exc}")
                )
                continue
            tasks.setdefault(protein, PermutationTask(protein)).parts.append((d, model))
            entry = info.setdefault(protein, {"fc": {}, "stat": {}, "n_peptides": 0})
            entry["fc"][data.name] = fitter.fold_change()
            entry["stat"][data.name] = stat
            entry["n_peptides"] += int(rows.size)

    excluded = []
    for protein, items in notes.items():
        if protein in tasks:
            excluded.extend(items)
        else:
            reasons = "; ".join(e.reason for e in items)
            excluded.append(Exclusion(protein, "protein", STAGE, reasons))

    task_list = list(tasks.values())
    if not task_list:
        log_warning("No testable protein in any dataset.")
    observed = np.array([sum(info[t.key]["stat"].values()) for t in task_list])
    null = permutation_null(
        [data.values for data in datasets], task_list, n_permutations, seed, permute, n_jobs, cancel_event
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

    log_info(f"Tested {len(records)} protein(s) over {len(datasets)} dataset(s) with {n_permutations} permutations.")
    return ProteinDEResult(
        table=result_table(records, protein_attributes(datasets)),
        method=f"multi_dataset_permutation_{permute}",
        n_permutations=n_permutations,
        excluded=tuple(excluded),
    )
