from dataclasses import replace
from typing import Dict, List, Optional

from proteomm.analysis.peptide_de import multi_dataset_test, peptide_level_test
from proteomm.analysis.presence_absence import presence_absence_test
from proteomm.dataset.peptidedata import PeptideData
from proteomm.dataset.results import Exclusion, ProteinDEResult
from proteomm.export.de_exporter import DEExporter
from proteomm.utils.exceptions import EstimationError
from proteomm.utils.utils import log_indent, log_info, log_time, log_warning
from proteomm.workflow.dataset import load_datasets
from proteomm.workflow.imputers.model_based_imputer import impute
from proteomm.workflow.normalizers.eigenms import identify_trends, remove_trends
from proteomm.workflow.reconciliation import partition, presence_absence_candidates, scope_labels

DE_METHODS = ("permutation", "f_test")


def _tag(exclusions, dataset_name: str) -> List[Exclusion]:
    return [replace(e, reason=f"[{dataset_name}] {e.reason}") for e in exclusions]


def _n_trends(value):
    if value is None or value == "auto":
        return None
    return int(value)


def preprocess(data: PeptideData, config: dict, exclusions: List[Exclusion]) -> PeptideData:
    """EigenMS normalization then (optionally) imputation of one dataset."""
    norm_cfg = config.get("normalization", {}) or {}
    imp_cfg = config.get("imputation", {}) or {}
    seed = int(config.get("seed", 171717))

    log_info(f"Preprocessing '{data.name}'")
    with log_indent():
        analysis = identify_trends(
            data.matrix,
            data.treatment,
            data.metadata,
            min_complete_rows=norm_cfg.get("min_complete_rows", 10),
            n_permutations=norm_cfg.get("n_trend_permutations", 20),
            seed=seed,
        )
        pct = ", ".join(f"{v:.1f}%" for v in analysis.variance_explained[:5])
        log_info(f"Variance explained by leading trends: {pct}")
        normalized = remove_trends(analysis, _n_trends(norm_cfg.get("n_trends", "auto")))
        exclusions += _tag(analysis.excluded + normalized.excluded, data.name)
        out = replace(normalized.data, name=data.name)

        if not imp_cfg.get("enabled", True):
            return out

        compute_pi = bool(imp_cfg.get("compute_pi", False))
        kwargs = dict(
            pi_mcar=float(imp_cfg.get("pi_mcar", 0.05)),
            seed=seed,
            min_observed=int(imp_cfg.get("min_observed", 3)),
        )
        try:
            imputed = impute(out.matrix, out.treatment, out.metadata, compute_pi=compute_pi, **kwargs)
        except EstimationError as exc:
            log_warning(f"{exc} Falling back to pi_mcar={kwargs['pi_mcar']}.")
            imputed = impute(out.matrix, out.treatment, out.metadata, compute_pi=False, **kwargs)
        exclusions += _tag(imputed.excluded, data.name)
        return replace(imputed.data, name=data.name)


def run_presence_absence(
    raw: List[PeptideData], processed: List[PeptideData], config: dict
) -> Optional[ProteinDEResult]:
    """Presence/absence on the raw rows of proteins with no peptide left after preprocessing."""
    analysis_cfg = config.get("analysis", {}) or {}
    scored = sorted({str(p) for d in processed for p in d.metadata.protein_ids})
    slices = [presence_absence_candidates(d.matrix, d.metadata, scored) for d in raw]
    if all(len(s.matrix) == 0 for s in slices):
        log_info("Every protein kept peptides after preprocessing; presence/absence skipped.")
        return None
    return presence_absence_test(
        [s.matrix for s in slices],
        [d.treatment for d in raw],
        [s.metadata for s in slices],
        n_permutations=int(analysis_cfg.get("n_permutations", 500)),
        seed=int(config.get("seed", 171717)),
        permute=analysis_cfg.get("permute", "rows"),
        n_jobs=int(analysis_cfg.get("n_jobs", 1)),
        dataset_names=[d.name for d in raw],
        scored_proteins=scored,
    )


@log_time("proteomm Pipeline")
def run_pipeline(config: dict) -> Dict[str, object]:
    """
    Load -> EigenMS -> imputation -> reconciliation -> differential expression
    (+ presence/absence) -> export. Returns the intermediate results by name.
    """
    analysis_cfg = config.get("analysis", {}) or {}
    export_cfg = config.get("exports", {}) or {}
    seed = int(config.get("seed", 171717))
    method = analysis_cfg.get("method", "permutation")
    if method not in DE_METHODS:
        raise ValueError(f"Invalid analysis method '{method}'. Options: {', '.join(DE_METHODS)}")

    raw = load_datasets(config)
    if method == "f_test" and len(raw) > 1:
        raise ValueError("method 'f_test' tests a single dataset; use 'permutation' for several.")

    exclusions: List[Exclusion] = []
    processed = [preprocess(data, config, exclusions) for data in raw]

    parts = partition([d.matrix for d in processed], [d.metadata for d in processed], id_column=1)
    scope = scope_labels(parts)

    if method == "f_test":
        d = processed[0]
        de = peptide_level_test(d.matrix, d.treatment, d.metadata)
    else:
        de = multi_dataset_test(
            [d.matrix for d in processed],
            [d.treatment for d in processed],
            [d.metadata for d in processed],
            n_permutations=int(analysis_cfg.get("n_permutations", 500)),
            seed=seed,
            permute=analysis_cfg.get("permute", "rows"),
            n_jobs=int(analysis_cfg.get("n_jobs", 1)),
            dataset_names=[d.name for d in processed],
        )

    pa = run_presence_absence(raw, processed, config) if analysis_cfg.get("presence_absence", False) else None

    if export_cfg.get("path_table"):
        DEExporter(
            de,
            output_path=export_cfg["path_table"],
            use_tsv=bool(export_cfg.get("use_tsv", False)),
            fc_cutoff=float(analysis_cfg.get("fc_cutoff", 1.0)),
            p_cutoff=float(analysis_cfg.get("p_cutoff", 0.05)),
            presence_absence=pa,
            exclusions=exclusions,
            scope=scope,
            peptides={d.name: d for d in processed},
        ).export()

    return {
        "datasets": processed,
        "partition": parts,
        "differential_expression": de,
        "presence_absence": pa,
        "exclusions": exclusions,
    }
