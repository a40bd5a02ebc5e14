"""End-to-end runs: normalization -> DE, and the YAML-configured pipeline."""

import numpy as np
import pandas as pd
import pytest
import yaml
from typer.testing import CliRunner

from proteomm.analysis.peptide_de import multi_dataset_test
from proteomm.cli import app
from proteomm.main import run_pipeline
from proteomm.workflow.imputers.model_based_imputer import impute
from proteomm.workflow.normalizers.eigenms import identify_trends, remove_trends


class TestTwoProteinScenario:
    """3 vs 3 design, one shifted protein and one flat protein."""

    def test_only_shifted_protein_is_significant(self, two_protein_dataset):
        matrix, treatment, meta = two_protein_dataset
        analysis = identify_trends(matrix, treatment, meta)
        normalized = remove_trends(analysis, 0)
        result = multi_dataset_test(
            [normalized.matrix], [normalized.treatment], [normalized.metadata],
            n_permutations=200, seed=171717,
        )
        table = result.table
        assert table.loc["A", "p_adjusted"] < 0.05
        assert table.loc["B", "p_adjusted"] > 0.2
        assert table.loc["A", "fold_change"] == pytest.approx(2.0, abs=0.1)
        assert list(result.significant(fc_cutoff=1.0).index) == ["A"]

    def test_chain_with_imputation(self, two_protein_dataset):
        matrix, treatment, meta = two_protein_dataset
        matrix = matrix.copy()
        matrix.iloc[[3, 60], [1, 4]] = np.nan
        analysis = identify_trends(matrix, treatment, meta)
        normalized = remove_trends(analysis, 0)
        imputed = impute(normalized.matrix, normalized.treatment, normalized.metadata)
        assert imputed.n_imputed == 4
        result = multi_dataset_test(
            [imputed.matrix], [imputed.treatment], [imputed.metadata], n_permutations=200
        )
        assert result.table.loc["A", "p_adjusted"] < 0.05


def _write_raw(path, matrix, meta, extra_missing_protein=True, single_peptide_protein=False):
    """Write raw (2 ** log2) intensities with blank cells for missing values."""
    raw = np.exp2(matrix.to_numpy())
    frame = meta.copy()
    for j, col in enumerate(matrix.columns):
        frame[f"Int_{col}"] = raw[:, j]
    if extra_missing_protein:
        # protein C is only seen in the treated group
        extra = pd.DataFrame({
            "peptide": ["C_pep0", "C_pep1", "C_pep2"],
            "protein": ["C"] * 3,
            "gene": ["GENEC"] * 3,
            **{f"Int_{col}": [np.nan] * 3 if j < 3 else [2.0 ** 21] * 3 for j, col in enumerate(matrix.columns)},
        })
        frame = pd.concat([frame, extra], ignore_index=True)
    if single_peptide_protein:
        # protein D: one complete peptide, kept by preprocessing but untestable by the F test
        lone = pd.DataFrame({
            "peptide": ["D_pep0"], "protein": ["D"], "gene": ["GENED"],
            **{f"Int_{col}": [2.0 ** 20] for col in matrix.columns},
        })
        frame = pd.concat([frame, lone], ignore_index=True)
    frame.to_csv(path, index=False, na_rep="")
    return path


@pytest.fixture
def config(tmp_path, two_protein_dataset):
    matrix, treatment, meta = two_protein_dataset
    path = _write_raw(tmp_path / "peptides.csv", matrix, meta)
    return {
        "datasets": [{
            "name": "run1",
            "input_file": str(path),
            "intensity_prefix": "Int_",
            "id_column": "peptide",
            "protein_column": "protein",
            "treatment": treatment,
            "log2": True,
        }],
        "normalization": {"n_trends": 0},
        "imputation": {"enabled": True, "pi_mcar": 0.05},
        "analysis": {"n_permutations": 200, "presence_absence": True, "fc_cutoff": 1.0, "p_cutoff": 0.05},
        "exports": {"path_table": str(tmp_path / "out" / "results.csv")},
        "seed": 171717,
    }


class TestRunPipeline:
    """YAML-configured pipeline."""

    def test_results(self, config):
        results = run_pipeline(config)
        de = results["differential_expression"]
        assert set(de.table.index) == {"A", "B"}
        assert de.table.loc["A", "p_adjusted"] < 0.05
        pa = results["presence_absence"]
        assert list(pa.table.index) == ["C"]
        assert any(e.identifier == "C_pep0" for e in results["exclusions"])

    def test_preprocessed_protein_not_scored_on_presence(self, config, tmp_path, two_protein_dataset):
        matrix, _, meta = two_protein_dataset
        _write_raw(tmp_path / "peptides.csv", matrix, meta, single_peptide_protein=True)
        results = run_pipeline(config)
        kept = {p for d in results["datasets"] for p in d.metadata.protein_ids}
        assert "D" in kept
        de = results["differential_expression"]
        assert "D" not in de.table.index
        assert "D" in de.excluded_ids
        assert list(results["presence_absence"].table.index) == ["C"]

    def test_exported_tables(self, config, tmp_path):
        run_pipeline(config)
        out = tmp_path / "out"
        summary = pd.read_csv(out / "results_Summary.csv")
        assert set(summary["protein"]) == {"A", "B"}
        assert summary.set_index("protein").loc["A", "significant"]
        assert not summary.set_index("protein").loc["B", "significant"]
        assert (summary["scope"] == "common").all()
        assert (out / "results_PresenceAbsence.csv").exists()
        assert (out / "results_Exclusions.csv").exists()
        assert (out / "results_Peptides_run1.csv").exists()
        assert (out / "results_README.txt").exists()

    def test_tsv_export(self, config, tmp_path):
        config["exports"]["use_tsv"] = True
        run_pipeline(config)
        summary = pd.read_csv(tmp_path / "out" / "results_Summary.tsv", sep="\t")
        assert len(summary) == 2

    def test_invalid_method(self, config):
        config["analysis"]["method"] = "bayes"
        with pytest.raises(ValueError):
            run_pipeline(config)


class TestCli:
    def test_init_writes_template(self, tmp_path):
        target = tmp_path / "cfg.yaml"
        result = CliRunner().invoke(app, ["init", "--path", str(target)])
        assert result.exit_code == 0
        loaded = yaml.safe_load(target.read_text())
        assert {"datasets", "normalization", "imputation", "analysis", "exports", "seed"} <= set(loaded)

    def test_run(self, config, tmp_path):
        cfg_path = tmp_path / "cfg.yaml"
        cfg_path.write_text(yaml.safe_dump(config))
        result = CliRunner().invoke(app, ["run", "--config", str(cfg_path)])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "out" / "results_Summary.csv").exists()
