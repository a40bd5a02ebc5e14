from __future__ import annotations

import numpy as np
from scipy.stats import chi2, f as f_dist
from statsmodels.stats.multitest import multipletests


def bh_adjust(p: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values; NaN entries stay NaN and are not counted."""
    p = np.asarray(p, dtype=np.float64)
    if p.ndim != 1:
        raise ValueError(f"Expected 1D p-value array, got shape {p.shape}")
    out = np.full_like(p, np.nan)
    ok = np.isfinite(p)
    if ok.any():
        out[ok] = multipletests(p[ok], method="fdr_bh")[1]
    return out


_P_FLOOR = np.finfo(float).tiny


def f_pvalue(f_stat: float, df_num: int, df_den: int) -> float:
    if np.isinf(f_stat):
        return _P_FLOOR
    return max(float(f_dist.sf(f_stat, df_num, df_den)), _P_FLOOR)


def chi2_pvalue(stat: float, df: int) -> float:
    return max(float(chi2.sf(stat, df)), _P_FLOOR)


def g_statistic(present: np.ndarray, totals: np.ndarray) -> float:
    """
    Likelihood-ratio (G) statistic of a 2 x k presence/absence table.

    present[g] observations out of totals[g] cells in group g; 0 when presence
    does not depend on the group.
    """
    present = np.asarray(present, dtype=np.float64)
    totals = np.asarray(totals, dtype=np.float64)
    absent = totals - present
    grand = totals.sum()
    if grand <= 0:
        return 0.0
    table = np.vstack([present, absent])
    expected = np.outer(table.sum(axis=1), totals) / grand
    with np.errstate(divide="ignore", invalid="ignore"):
        terms = np.where(table > 0, table * np.log(table / expected), 0.0)
    return float(max(2.0 * terms.sum(), 0.0))
