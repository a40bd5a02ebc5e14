"""
EigenMS bias-trend normalization (Karpievitch et al. 2009).

Two explicit calls keep the human-in-the-loop step visible:

    analysis = identify_trends(matrix, treatment, metadata)
    # inspect analysis.variance_explained / analysis.suggested_trends
    normalized = apply_removal(None, analysis, n_trends=2)

Bias trends are the right singular vectors (sample space) of the matrix of
treatment residuals of fully observed peptides. Removal regresses every
peptide's observed residuals on the leading trends and subtracts the fit, so
treatment group differences are left untouched.
"""
from typing import Optional

import numpy as np
import pandas as pd
from sklearn.utils.extmath import svd_flip

from proteomm.analysis.missingness import compute_missingness
from proteomm.dataset.peptidedata import PeptideData
from proteomm.dataset.results import Exclusion, NormalizedResult, TrendAnalysis
from proteomm.utils.exceptions import InsufficientDataError
from proteomm.utils.utils import log_info, log_time, log_warning

STAGE = "normalization"


def _treatment_residuals(values: np.ndarray, codes: np.ndarray, n_groups: int) -> np.ndarray:
    """Subtract each row's treatment-group means (computed on observed values)."""
    means = np.full((values.shape[0], n_groups), np.nan)
    for g in range(n_groups):
        block = values[:, codes == g]
        n_obs = (~np.isnan(block)).sum(axis=1)
        sums = np.nansum(block, axis=1)
        np.divide(sums, n_obs, out=means[:, g], where=n_obs > 0)
    return values - means[:, codes]


def _decompose(M: np.ndarray):
    """SVD with a fixed sign convention; trailing null components are dropped."""
    U, s, Vt = np.linalg.svd(M, full_matrices=False)
    U, Vt = svd_flip(U, Vt, u_based_decision=False)
    # residuals of values around 20 carry rounding noise well above eps * s[0]
    tol = s[0] * 1e-10 if s.size else 0.0
    rank = int(np.sum(s > tol))
    return s[:rank], Vt[:rank].T


def _percent_variance(s: np.ndarray) -> np.ndarray:
    total = np.sum(s ** 2)
    if total <= 0:
        return np.zeros_like(s)
    return 100.0 * s ** 2 / total


def _trend_pvalues(resid: np.ndarray, codes: np.ndarray, n_groups: int,
                   observed_pct: np.ndarray, n_permutations: int, seed: int) -> np.ndarray:
    """
    Row-permutation null for the share of variance of every trend: each
    residual row is shuffled across samples, re-centred on its group means and
    decomposed again.
    """
    exceed = np.zeros(observed_pct.size)
    for b in range(n_permutations):
        rng = np.random.default_rng([int(seed), b])
        permuted = _treatment_residuals(rng.permuted(resid, axis=1), codes, n_groups)
        s = np.linalg.svd(permuted, compute_uv=False)
        pct = _percent_variance(s)[: observed_pct.size]
        pct = np.pad(pct, (0, observed_pct.size - pct.size))
        exceed += pct >= observed_pct
    return (exceed + 1.0) / (n_permutations + 1.0)


@log_time("EigenMS - identifying bias trends")
def identify_trends(
    matrix,
    treatment,
    metadata,
    protein_col=1,
    min_complete_rows: int = 10,
    n_permutations: int = 20,
    alpha: float = 0.05,
    seed: int = 0,
) -> TrendAnalysis:
    """
    Find bias trends on the fully observed peptides.

    Args:
        matrix: peptides x samples log2 intensities (NaN = missing).
        treatment: group label per sample.
        metadata: peptide table (id, protein, passthrough columns...).
        protein_col: metadata column holding the protein identifier.
        min_complete_rows: fewest fully observed peptides accepted for the SVD.
        n_permutations: row permutations used to call trends significant.
        alpha: significance level of a trend's share of variance.
        seed: seed of the permutation streams.

    Returns:
        TrendAnalysis. `suggested_trends` is 1 when the top trend is
        significant and 0 otherwise; it is only a suggestion.

    Raises:
        InsufficientDataError: too few fully observed peptides.
    """
    if n_permutations < 1:
        raise ValueError(f"n_permutations must be >= 1, got {n_permutations}")
    data = PeptideData.build(matrix, treatment, metadata, protein_col=protein_col)
    groups = data.groups

    missingness = compute_missingness(data.values, np.asarray(data.treatment, dtype=object))
    counts = missingness.df.reindex(columns=groups)
    empty = (counts >= missingness.group_sizes.reindex(groups)).to_numpy()
    drop = missingness.fully_missing_group.to_numpy()
    excluded = tuple(
        Exclusion(pid, "peptide", STAGE, f"no observation in treatment group(s) {[g for g, e in zip(groups, row) if e]}")
        for pid, row in zip(data.metadata.peptide_ids[drop], empty[drop])
    )
    if drop.any():
        log_info(f"{int(drop.sum())} peptide(s) fully missing in a treatment group set aside.")

    keep = np.flatnonzero(~drop)
    if keep.size == 0:
        raise InsufficientDataError("Every peptide is fully missing in at least one treatment group.")
    kept = data.take(keep)
    values = kept.values
    complete = np.flatnonzero(~np.isnan(values).any(axis=1))
    if complete.size < max(int(min_complete_rows), 1):
        raise InsufficientDataError(
            f"{complete.size} fully observed peptides; at least {min_complete_rows} needed for the decomposition."
        )
    log_info(f"Decomposing {complete.size} fully observed peptides x {kept.n_samples} samples.")

    Y = values[complete]
    codes = kept.group_codes
    n_groups = len(groups)
    resid = _treatment_residuals(Y, codes, n_groups)
    raw = Y - Y.mean(axis=1, keepdims=True)

    s, trends = _decompose(resid)
    raw_s, raw_trends = _decompose(raw)
    pct = _percent_variance(s)
    if s.size == 0:
        log_warning("Treatment residuals are identically zero; no bias trend to remove.")
        pvals = np.array([])
    else:
        pvals = _trend_pvalues(resid, codes, n_groups, pct, n_permutations, seed)

    n_sig = 0
    for p in pvals:
        if p > alpha:
            break
        n_sig += 1
    suggested = 1 if n_sig >= 1 else 0
    log_info(f"{n_sig} significant bias trend(s); suggested number to remove: {suggested}.")

    return TrendAnalysis(
        data=kept,
        complete_rows=complete,
        residuals=pd.DataFrame(resid, index=kept.matrix.index[complete], columns=kept.matrix.columns),
        singular_values=s,
        trends=trends,
        variance_explained=pct,
        raw_singular_values=raw_s,
        raw_trends=raw_trends,
        raw_variance_explained=_percent_variance(raw_s),
        trend_pvalues=pvals,
        n_significant_trends=n_sig,
        suggested_trends=suggested,
        excluded=excluded,
    )


def _align_matrix(matrix, analysis: TrendAnalysis) -> PeptideData:
    """Replace the analysed values with `matrix` (rows must be analysed peptides)."""
    data = analysis.data
    frame = matrix if isinstance(matrix, pd.DataFrame) else pd.DataFrame(
        np.asarray(matrix, dtype=np.float64), index=data.matrix.index, columns=data.matrix.columns
    )
    if frame.shape[1] != data.n_samples:
        raise ValueError(f"Matrix has {frame.shape[1]} samples, trends were computed on {data.n_samples}.")
    positions = data.matrix.index.get_indexer(frame.index.astype(str))
    if (positions < 0).any():
        raise KeyError(f"{int((positions < 0).sum())} row(s) are not among the analysed peptides.")
    return data.take(positions).with_values(frame.to_numpy(dtype=np.float64))


@log_time("EigenMS - removing bias trends")
def apply_removal(matrix, analysis: TrendAnalysis, n_trends: int) -> NormalizedResult:
    """
    Project the leading `n_trends` bias trends out of every peptide.

    `matrix` defaults to the peptides retained by `identify_trends` when None.
    Peptides with fewer observed values than `n_trends` cannot be fit and are
    excluded (and reported).
    """
    if int(n_trends) != n_trends or not 0 <= n_trends <= analysis.max_trends:
        raise ValueError(f"n_trends must be an integer in [0, {analysis.max_trends}], got {n_trends}")
    n_trends = int(n_trends)
    data = analysis.data if matrix is None else _align_matrix(matrix, analysis)
    values = data.values

    if n_trends == 0:
        log_info("0 trends requested; matrix left unchanged.")
        bias = pd.DataFrame(0.0, index=data.matrix.index, columns=data.matrix.columns)
        return NormalizedResult(data=data, n_trends=0, bias=bias)

    T = analysis.trends[:, :n_trends]
    mask = ~np.isnan(values)
    resid = _treatment_residuals(values, data.group_codes, len(data.groups))
    fit_rows = mask.sum(axis=1) >= n_trends
    bias = np.zeros_like(values)

    complete = fit_rows & mask.all(axis=1)
    if complete.any():
        coef, *_ = np.linalg.lstsq(T, resid[complete].T, rcond=None)
        bias[complete] = (T @ coef).T
    for i in np.flatnonzero(fit_rows & ~complete):
        obs = mask[i]
        coef, *_ = np.linalg.lstsq(T[obs], resid[i, obs], rcond=None)
        bias[i] = T @ coef

    excluded = tuple(
        Exclusion(pid, "peptide", STAGE, f"{int(n)} observed value(s) for {n_trends} trend(s)")
        for pid, n in zip(data.metadata.peptide_ids[~fit_rows], mask.sum(axis=1)[~fit_rows])
    )
    keep = np.flatnonzero(fit_rows)
    if keep.size == 0:
        raise InsufficientDataError(f"No peptide has at least {n_trends} observed values.")
    if excluded:
        log_info(f"{len(excluded)} peptide(s) with too few observations excluded.")

    normalized = values - bias
    out = data.take(keep).with_values(normalized[keep])
    bias_df = pd.DataFrame(bias[keep], index=out.matrix.index, columns=out.matrix.columns)
    return NormalizedResult(data=out, n_trends=n_trends, bias=bias_df, excluded=excluded)


def remove_trends(analysis: TrendAnalysis, n_trends: Optional[int] = None) -> NormalizedResult:
    """Remove `n_trends` trends (the suggested count when None)."""
    k = analysis.suggested_trends if n_trends is None else n_trends
    return apply_removal(None, analysis, k)
