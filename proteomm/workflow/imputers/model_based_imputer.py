import numpy as np
import pandas as pd
from scipy.stats import truncnorm
from sklearn.base import BaseEstimator, TransformerMixin

from proteomm.analysis.linearmodelfitter import LinearModelFitter
from proteomm.analysis.missingness import count_missing_rows
from proteomm.dataset.peptidedata import PeptideData
from proteomm.dataset.results import Exclusion, ImputedResult
from proteomm.utils.exceptions import EstimationError, InsufficientDataError
from proteomm.utils.utils import log_info, log_time

_EPS = 1e-8
STAGE = "imputation"


def _impute_block(Y: np.ndarray, fitter: LinearModelFitter, pi_mcar: float, rng: np.random.Generator) -> np.ndarray:
    """
    Fill the missing cells of one protein.

    Each missing cell is MCAR with probability `pi_mcar`: its value is the
    fitted peptide + treatment value plus an empirical quantile of the
    protein's residuals, capped at the peptide's largest observation.
    Otherwise it is censored: a draw from N(fitted, sigma) truncated above at
    the peptide's smallest observation.
    """
    out = Y.copy()
    rows, cols = np.nonzero(np.isnan(Y))
    if rows.size == 0:
        return out

    is_mcar = rng.random(rows.size) < pi_mcar
    u = rng.random(rows.size)
    mu = fitter.fitted[rows, cols]
    pep_max = np.nanmax(Y, axis=1)[rows]
    pep_min = np.nanmin(Y, axis=1)[rows]

    mcar = np.minimum(mu + np.quantile(fitter.residuals, u), pep_max)

    sigma = max(fitter.sigma, _EPS)
    upper = (pep_min - mu) / sigma
    with np.errstate(over="ignore", invalid="ignore"):
        censored = truncnorm.ppf(u, -np.inf, upper, loc=mu, scale=sigma)
    censored = np.where(np.isfinite(censored), np.minimum(censored, pep_min), pep_min)

    out[rows, cols] = np.where(is_mcar, mcar, censored)
    return out


class ModelBasedImputer(BaseEstimator, TransformerMixin):
    """
    Protein-level model-based imputation for log-scale peptide data.
    Shape: X is (n_peptides, n_samples); rows sharing a protein id are modeled together.

    For every protein with missing cells a two-way model (peptide + treatment)
    is fitted on its observed cells. Missing cells are then drawn from a
    mixture of an MCAR component (probability pi_mcar) and a left-censored
    component (abundance below detection). Proteins whose model cannot be fit
    are left untouched and listed in `excluded_`; peptides without a single
    observation are listed in `excluded_peptides_` and never modelled.

    The MCAR proportion is either fixed (`compute_pi=False`) or estimated:
    censoring cannot explain missing cells whose fitted abundance sits above
    the `pi_quantile` quantile of the observed intensities, and MCAR cells are
    spread like the observed ones, so

        pi = share(missing cells fitted above the quantile) / (1 - pi_quantile)

    Randomness comes from one stream per protein, seeded with
    (random_state, protein position), so results do not depend on the order
    in which proteins are processed.
    """

    def __init__(
        self,
        treatment,
        protein_ids,
        peptide_ids=None,
        pi_mcar=0.05,
        compute_pi=False,
        min_observed=3,
        pi_quantile=0.5,
        min_missing=20,
        random_state=171717,
    ):
        self.treatment = treatment
        self.protein_ids = protein_ids
        self.peptide_ids = peptide_ids
        self.pi_mcar = pi_mcar
        self.compute_pi = compute_pi
        self.min_observed = min_observed
        self.pi_quantile = pi_quantile
        self.min_missing = min_missing
        self.random_state = random_state

    def fit(self, X, y=None):
        X = np.asarray(X, dtype=np.float64)
        if not 0.0 <= float(self.pi_mcar) <= 1.0:
            raise ValueError(f"pi_mcar must lie in [0, 1], got {self.pi_mcar}")
        proteins = np.asarray(self.protein_ids, dtype=object)
        if proteins.size != X.shape[0]:
            raise ValueError(f"{proteins.size} protein ids for {X.shape[0]} rows.")
        treatment = np.asarray(self.treatment, dtype=object)
        if isinstance(self.treatment, pd.Categorical):
            groups = list(self.treatment.categories)
        else:
            groups = list(pd.unique(treatment))
        peptides = np.asarray(self.peptide_ids if self.peptide_ids is not None else np.arange(X.shape[0]), dtype=object)

        # peptides without any observation are set aside on their own
        self.empty_rows_ = count_missing_rows(X).to_numpy() == X.shape[1]
        self.excluded_peptides_ = list(peptides[self.empty_rows_])

        codes, uniques = pd.factorize(proteins, sort=False)
        self.models_ = {}
        self.excluded_ = []
        for index, protein in enumerate(uniques):
            rows = np.flatnonzero((codes == index) & ~self.empty_rows_)
            if rows.size == 0:
                continue
            block = X[rows]
            mask = ~np.isnan(block)
            if mask.all():
                continue
            if mask.sum() < self.min_observed:
                self.excluded_.append((protein, f"{int(mask.sum())} observed value(s), {self.min_observed} required"))
                continue
            try:
                fitter = LinearModelFitter(block, treatment, peptides[rows], groups).fit()
            except InsufficientDataError as exc:
                self.excluded_.append((protein, str(exc)))
                continue
            self.models_[protein] = (index, rows, fitter)

        self.pi_estimated_ = False
        self.pi_mcar_ = float(self.pi_mcar)
        if self.compute_pi:
            n_missing = sum(int((~f.mask).sum()) for _, _, f in self.models_.values())
            if n_missing == 0:
                log_info("No missing value to model; using the supplied pi_mcar.")
            else:
                self.pi_mcar_ = self._estimate_pi(X, n_missing)
                self.pi_estimated_ = True
        return self

    def _estimate_pi(self, X: np.ndarray, n_missing: int) -> float:
        if n_missing < self.min_missing:
            raise EstimationError(
                f"{n_missing} missing value(s) in modelled proteins; at least {self.min_missing} needed to estimate pi_mcar."
            )
        if not 0.0 < self.pi_quantile < 1.0:
            raise ValueError(f"pi_quantile must lie in (0, 1), got {self.pi_quantile}")
        threshold = np.quantile(X[~np.isnan(X)], self.pi_quantile)
        fitted_missing = np.concatenate([f.fitted[~f.mask] for _, _, f in self.models_.values()])
        share_above = float(np.mean(fitted_missing > threshold))
        pi = float(np.clip(share_above / (1.0 - self.pi_quantile), 0.0, 1.0))
        log_info(f"Estimated pi_mcar={pi:.3f} from {n_missing} missing value(s).")
        return pi

    def transform(self, X):
        X = np.asarray(X, dtype=np.float64)
        X_imp = X.copy()
        for index, rows, fitter in self.models_.values():
            rng = np.random.default_rng([int(self.random_state), int(index)])
            X_imp[rows] = _impute_block(X[rows], fitter, self.pi_mcar_, rng)
        return X_imp

    def fit_transform(self, X, y=None):
        return self.fit(X).transform(X)


@log_time("Model-based imputation")
def impute(
    matrix,
    treatment,
    metadata,
    protein_col=1,
    pi_mcar: float = 0.05,
    compute_pi: bool = False,
    seed: int = 171717,
    min_observed: int = 3,
) -> ImputedResult:
    """
    Impute missing peptide intensities protein by protein.

    Args:
        matrix: peptides x samples log2 intensities (NaN = missing).
        treatment: group label per sample.
        metadata: peptide table; `protein_col` names the grouping column.
        pi_mcar: MCAR proportion used when `compute_pi` is False.
        compute_pi: estimate the MCAR proportion from the data.
        seed: master seed; each protein draws from its own derived stream.
        min_observed: fewest observed values a protein needs to be modelled.

    Raises:
        EstimationError: `compute_pi` requested on too few missing values.
            Callers may retry with `compute_pi=False`.
        InsufficientDataError: no protein survives.
    """
    data = PeptideData.build(matrix, treatment, metadata, protein_col=protein_col)
    imputer = ModelBasedImputer(
        treatment=data.treatment,
        protein_ids=data.metadata.protein_ids,
        peptide_ids=data.metadata.peptide_ids,
        pi_mcar=pi_mcar,
        compute_pi=compute_pi,
        min_observed=min_observed,
        random_state=seed,
    )
    values = data.values
    imputed = imputer.fit_transform(values)

    dropped = {protein for protein, _ in imputer.excluded_}
    excluded = tuple(
        Exclusion(str(p), "peptide", STAGE, "no observed value") for p in imputer.excluded_peptides_
    ) + tuple(Exclusion(str(p), "protein", STAGE, reason) for p, reason in imputer.excluded_)
    keep = np.flatnonzero(~np.isin(data.metadata.protein_ids, list(dropped)) & ~imputer.empty_rows_)
    if keep.size == 0:
        raise InsufficientDataError("No protein could be modelled for imputation.")
    if excluded:
        log_info(f"{len(excluded)} peptide/protein record(s) excluded ({values.shape[0] - keep.size} peptide rows).")

    out = data.take(keep).with_values(imputed[keep])
    was_missing = np.isnan(values[keep])
    mask = pd.DataFrame(was_missing, index=out.matrix.index, columns=out.matrix.columns)
    log_info(f"Imputed {int(was_missing.sum())} value(s) with pi_mcar={imputer.pi_mcar_:.3f}.")
    return ImputedResult(
        data=out,
        imputed_mask=mask,
        pi_mcar=imputer.pi_mcar_,
        pi_estimated=imputer.pi_estimated_,
        excluded=excluded,
    )
