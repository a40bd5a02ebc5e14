"""Tests for the per-protein two-way linear model."""

import numpy as np
import pytest

from proteomm.analysis.linearmodelfitter import LinearModelFitter, column_basis, f_from_rss
from proteomm.utils.exceptions import DegenerateStatisticError, InsufficientDataError

TREATMENT = np.array(["ctrl"] * 3 + ["treated"] * 3, dtype=object)


def _block(shift=1.5, noise=0.1, n_peptides=4, seed=0):
    rng = np.random.default_rng(seed)
    base = rng.uniform(18, 26, size=(n_peptides, 1))
    return base + shift * (TREATMENT == "treated") + rng.normal(0, noise, size=(n_peptides, 6))


class TestFit:
    """Coefficients, residuals and fitted values."""

    def test_fold_change_recovered(self):
        fitter = LinearModelFitter(_block(shift=1.5), TREATMENT).fit()
        assert fitter.fold_change() == pytest.approx(1.5, abs=0.15)

    def test_reference_is_first_group(self):
        fitter = LinearModelFitter(_block(shift=1.5), TREATMENT, groups=["treated", "ctrl"]).fit()
        assert fitter.fold_change() == pytest.approx(-1.5, abs=0.15)

    def test_fitted_covers_missing_cells(self):
        Y = _block()
        Y[0, 1] = np.nan
        Y[2, 4] = np.nan
        fitter = LinearModelFitter(Y, TREATMENT).fit()
        assert fitter.fitted.shape == Y.shape
        assert np.isfinite(fitter.fitted).all()
        assert fitter.residuals.size == np.isfinite(Y).sum()

    def test_degrees_of_freedom(self):
        fitter = LinearModelFitter(_block(n_peptides=4), TREATMENT).fit()
        # 24 cells - (1 + 3 peptide + 1 treatment)
        assert fitter.df_residual == 19
        assert fitter.df_reduced == 20

    def test_residuals_sum_to_rss(self):
        fitter = LinearModelFitter(_block(), TREATMENT).fit()
        assert fitter.rss == pytest.approx(float(np.sum(fitter.residuals ** 2)))
        assert fitter.rss_reduced >= fitter.rss

    def test_results_dict(self):
        results = LinearModelFitter(_block(), TREATMENT).fit().get_results()
        assert {"coefficients", "fitted", "residuals", "rss", "df_residual"} <= set(results)

    def test_unobserved_group(self):
        Y = _block()
        Y[:, 3:] = np.nan
        with pytest.raises(InsufficientDataError):
            LinearModelFitter(Y, TREATMENT).fit()

    def test_empty_peptide(self):
        Y = _block()
        Y[1] = np.nan
        with pytest.raises(InsufficientDataError):
            LinearModelFitter(Y, TREATMENT).fit()


class TestFStatistic:
    """Nested-model F statistic."""

    def test_large_for_real_shift(self):
        fitter = LinearModelFitter(_block(shift=2.0), TREATMENT).fit()
        assert fitter.f_statistic() > 100

    def test_small_without_shift(self):
        fitter = LinearModelFitter(_block(shift=0.0, seed=4), TREATMENT).fit()
        assert fitter.f_statistic() < 20

    def test_no_signal_at_all(self):
        assert f_from_rss(0.0, 0.0, 1, 10) == 0.0

    def test_perfect_full_fit(self):
        assert f_from_rss(5.0, 0.0, 1, 10) == np.inf

    def test_formula(self):
        assert f_from_rss(12.0, 10.0, 2, 20) == pytest.approx((2.0 / 2) / (10.0 / 20))

    def test_invalid_df(self):
        with pytest.raises(DegenerateStatisticError):
            f_from_rss(1.0, 1.0, 0, 10)


class TestColumnBasis:
    def test_rank_deficient(self):
        X = np.array([[1.0, 1.0, 0.0], [1.0, 0.0, 1.0], [1.0, 1.0, 0.0], [1.0, 0.0, 1.0]])
        Q = column_basis(X)
        assert Q.shape == (4, 2)
        np.testing.assert_allclose(Q.T @ Q, np.eye(2), atol=1e-12)
