from typing import Optional, Sequence

import numpy as np
import pandas as pd
import patsy

from proteomm.utils.exceptions import DegenerateStatisticError, InsufficientDataError

_TOL = 1e-10


def f_from_rss(rss_reduced: float, rss_full: float, df_num: int, df_den: int) -> float:
    """
    F statistic of nested models. A perfect full fit gives 0 when the reduced
    model is perfect too (no signal at all) and +inf otherwise.
    """
    if df_num <= 0 or df_den <= 0:
        raise DegenerateStatisticError(f"F statistic undefined (df_num={df_num}, df_den={df_den}).")
    explained = max(rss_reduced - rss_full, 0.0)
    floor = _TOL * max(rss_reduced, 1.0)
    if rss_full <= floor:
        return 0.0 if explained <= floor else np.inf
    return (explained / df_num) / (rss_full / df_den)


def column_basis(X: np.ndarray) -> np.ndarray:
    """Orthonormal basis of the column space of X (rank-deficient designs allowed)."""
    U, s, _ = np.linalg.svd(X, full_matrices=False)
    if s.size == 0:
        return U[:, :0]
    keep = s > s[0] * _TOL
    return U[:, keep]


class LinearModelFitter:
    def __init__(
        self,
        values: np.ndarray,
        treatment: Sequence,
        peptide_ids: Optional[Sequence[str]] = None,
        groups: Optional[Sequence[str]] = None,
    ):
        """
        Two-way additive model for the peptides of one protein,

            y_ij = mu + peptide_i + treatment_g(j) + e_ij,

        fitted by OLS on the observed cells only.

        Parameters:
        - values: (n_peptides x n_samples) log2 intensities, NaN = missing
        - treatment: group label per sample
        - peptide_ids: row labels (defaults to positions)
        - groups: group levels; the first one is the fold-change reference
        """
        self.Y = np.asarray(values, dtype=np.float64)
        if self.Y.ndim != 2:
            raise ValueError(f"Expected a 2-D block, got shape {self.Y.shape}")
        self.treatment = np.asarray(treatment, dtype=object)
        if len(self.treatment) != self.Y.shape[1]:
            raise ValueError(f"Treatment has {len(self.treatment)} labels for {self.Y.shape[1]} samples.")
        self.groups = list(groups) if groups is not None else list(pd.unique(self.treatment))
        self.peptides = [str(p) for p in peptide_ids] if peptide_ids is not None else [str(i) for i in range(self.Y.shape[0])]
        self.mask = ~np.isnan(self.Y)

        self.coefficients = None
        self.fitted = None
        self.residuals = None
        self.rss = None
        self.df_residual = None
        self.rss_reduced = None
        self.df_reduced = None
        self.design_full = None
        self.design_reduced = None

    def _formulas(self):
        reduced = "1 + C(peptide)" if len(self.peptides) > 1 else "1"
        full = reduced + (" + C(treatment)" if len(self.groups) > 1 else "")
        return full, reduced

    def _long_frame(self, mask: np.ndarray) -> pd.DataFrame:
        # row-major order of cells, matching self.Y[mask]
        rows, cols = np.nonzero(mask)
        return pd.DataFrame({
            "peptide": pd.Categorical(np.asarray(self.peptides, dtype=object)[rows], categories=self.peptides),
            "treatment": pd.Categorical(self.treatment[cols], categories=self.groups),
        })

    def _check_estimable(self):
        n_obs_rows = self.mask.sum(axis=1)
        if (n_obs_rows == 0).any():
            empty = [p for p, n in zip(self.peptides, n_obs_rows) if n == 0]
            raise InsufficientDataError(f"peptides without observations: {empty[:5]}")
        observed_groups = set(self.treatment[self.mask.any(axis=0)])
        missing_groups = [g for g in self.groups if g not in observed_groups]
        if missing_groups:
            raise InsufficientDataError(f"no observation in treatment group(s) {missing_groups}")

    def fit(self):
        """OLS fit of the full and the peptide-only (reduced) model."""
        self._check_estimable()
        full_formula, reduced_formula = self._formulas()
        frame = self._long_frame(self.mask)
        y = self.Y[self.mask]

        X = patsy.dmatrix(full_formula, frame)
        X0 = np.asarray(patsy.dmatrix(reduced_formula, frame))
        self.design_info = X.design_info
        X = np.asarray(X)

        beta, _, rank, _ = np.linalg.lstsq(X, y, rcond=None)
        self.df_residual = int(y.size - rank)
        if self.df_residual < 1:
            raise InsufficientDataError(
                f"{y.size} observations for {rank} model parameters; no residual degrees of freedom"
            )
        beta0, _, rank0, _ = np.linalg.lstsq(X0, y, rcond=None)

        self.coefficients = beta
        self.residuals = y - X @ beta
        self.rss = float(np.sum(self.residuals ** 2))
        self.rss_reduced = float(np.sum((y - X0 @ beta0) ** 2))
        self.df_reduced = int(y.size - rank0)
        self.design_full = X
        self.design_reduced = X0

        all_cells = self._long_frame(np.ones_like(self.mask))
        X_all = np.asarray(patsy.build_design_matrices([self.design_info], all_cells)[0])
        self.fitted = (X_all @ beta).reshape(self.Y.shape)
        return self

    @property
    def sigma(self) -> float:
        return float(np.sqrt(self.rss / self.df_residual))

    def group_effects(self) -> pd.Series:
        """Peptide-adjusted mean of every group relative to the reference group."""
        row = self.fitted[0]
        means = np.array([row[self.treatment == g].mean() for g in self.groups])
        return pd.Series(means - means[0], index=self.groups)

    def fold_change(self) -> float:
        """log2 fold change vs the reference group (largest contrast when >2 groups)."""
        diffs = self.group_effects().to_numpy()
        if diffs.size < 2:
            return 0.0
        k = 1 + int(np.argmax(np.abs(diffs[1:])))
        return float(diffs[k])

    def f_statistic(self) -> float:
        return f_from_rss(
            self.rss_reduced,
            self.rss,
            self.df_reduced - self.df_residual,
            self.df_residual,
        )

    def get_results(self) -> dict:
        return {
            "coefficients": self.coefficients,
            "fitted": self.fitted,
            "residuals": self.residuals,
            "rss": self.rss,
            "df_residual": self.df_residual,
            "rss_reduced": self.rss_reduced,
            "df_reduced": self.df_reduced,
        }
