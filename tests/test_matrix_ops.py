"""Tests for matrix utilities, missingness counters and the validated containers."""

import numpy as np
import pandas as pd
import polars as pl
import pytest

from proteomm.analysis.missingness import (
    compute_missingness,
    count_missing_columns,
    count_missing_rows,
    count_observed_per_group,
)
from proteomm.dataset.peptidedata import PeptideData, PeptideMetadata, as_treatment
from proteomm.utils.exceptions import AlignmentError
from proteomm.utils.matrix_ops import log2_transform, split_intensities, split_metadata


class TestLog2Transform:
    """Zeros and negatives never survive as observations."""

    def test_zero_becomes_missing(self):
        m = np.array([[1.0, 2.0, 0.0], [8.0, -1.0, 4.0]])
        out = log2_transform(m)
        assert out[0, 1] == pytest.approx(1.0)
        assert np.isnan(out[0, 2])
        assert np.isnan(out[1, 1])
        assert out[1, 0] == pytest.approx(3.0)

    def test_strict_mode_raises(self):
        with pytest.raises(ValueError, match="non-positive"):
            log2_transform(np.array([[1.0, 0.0]]), zero_is_missing=False)

    def test_dataframe_keeps_labels(self):
        df = pd.DataFrame({"a": [2.0, 4.0], "b": [np.nan, 16.0]}, index=["x", "y"])
        out = log2_transform(df)
        assert list(out.columns) == ["a", "b"]
        assert list(out.index) == ["x", "y"]
        assert np.isnan(out.loc["x", "b"])
        assert out.loc["y", "b"] == pytest.approx(4.0)


class TestSplitTable:
    """Splitting a wide table into intensities and metadata."""

    @pytest.fixture
    def wide(self):
        return pd.DataFrame({
            "peptide": ["p1", "p2", "p3"],
            "protein": ["A", "A", "B"],
            "gene": ["g1", "g1", "g2"],
            "S1": [1.0, "NA", 3.0],
            "S2": [4.0, 5.0, None],
        })

    def test_intensities_by_name_and_position(self, wide):
        by_name = split_intensities(wide, ["S1", "S2"])
        by_pos = split_intensities(wide, [3, 4])
        pd.testing.assert_frame_equal(by_name, by_pos)
        assert by_name.dtypes.tolist() == [np.float64, np.float64]
        assert np.isnan(by_name.loc[1, "S1"])
        assert np.isnan(by_name.loc[2, "S2"])

    def test_metadata_requires_two_columns(self, wide):
        with pytest.raises(ValueError):
            split_metadata(wide, ["peptide"])

    def test_metadata_as_strings(self, wide):
        meta = split_metadata(wide, ["peptide", "protein", "gene"])
        assert list(meta.columns) == ["peptide", "protein", "gene"]
        assert meta["protein"].tolist() == ["A", "A", "B"]

    def test_polars_input(self, wide):
        frame = pl.DataFrame({"peptide": ["p1", "p2"], "protein": ["A", "B"], "S1": [1.0, None]})
        out = split_intensities(frame, ["S1"])
        assert out.shape == (2, 1)
        assert np.isnan(out.iloc[1, 0])

    def test_unknown_column(self, wide):
        with pytest.raises(KeyError):
            split_intensities(wide, ["S9"])


class TestMissingness:
    """Row, column and per-group missing counts."""

    def test_counts(self):
        m = np.array([[1.0, np.nan, 3.0, np.nan], [np.nan, np.nan, 1.0, 2.0]])
        treatment = ["a", "a", "b", "b"]
        assert count_missing_rows(m).tolist() == [2, 2]
        assert count_missing_columns(m).tolist() == [1, 2, 0, 1]

        observed = count_observed_per_group(m, treatment)
        assert list(observed.columns) == ["a", "b"]
        assert observed["a"].tolist() == [1, 0]
        assert observed["b"].tolist() == [1, 2]

    def test_fully_missing_group(self):
        m = np.array([[1.0, 2.0, np.nan, np.nan], [1.0, np.nan, 2.0, 3.0]])
        result = compute_missingness(m, ["a", "a", "b", "b"])
        assert result.fully_missing_group.tolist() == [True, False]

    def test_treatment_length_mismatch(self):
        with pytest.raises(ValueError):
            count_observed_per_group(np.ones((2, 3)), ["a", "b"])


class TestPeptideData:
    """Alignment between matrix rows, metadata rows and treatment labels."""

    def test_build_aligns_index(self, synthetic_dataset):
        matrix, treatment, metadata = synthetic_dataset(n_proteins=2, peptides_per_protein=3)
        data = PeptideData.build(matrix, treatment, metadata)
        assert list(data.matrix.index) == metadata["peptide"].tolist()
        assert data.groups == ["ctrl", "treated"]
        assert data.n_peptides == 6
        assert data.n_samples == 6

    def test_row_mismatch(self, synthetic_dataset):
        matrix, treatment, metadata = synthetic_dataset(n_proteins=2, peptides_per_protein=3)
        with pytest.raises(AlignmentError):
            PeptideData.build(matrix.iloc[:-1], treatment, metadata)

    def test_treatment_mismatch(self, synthetic_dataset):
        matrix, treatment, metadata = synthetic_dataset(n_proteins=2, peptides_per_protein=3)
        with pytest.raises(AlignmentError):
            PeptideData.build(matrix, treatment[:-1], metadata)

    def test_duplicate_peptide_ids(self):
        meta = pd.DataFrame({"peptide": ["p1", "p1"], "protein": ["A", "A"]})
        with pytest.raises(AlignmentError, match="unique"):
            PeptideMetadata.from_frame(meta)

    def test_infinite_values_rejected(self):
        meta = pd.DataFrame({"peptide": ["p1"], "protein": ["A"]})
        with pytest.raises(ValueError, match="infinite"):
            PeptideData.build(np.array([[1.0, np.inf]]), ["a", "b"], meta)

    def test_take_keeps_alignment(self, synthetic_dataset):
        matrix, treatment, metadata = synthetic_dataset(n_proteins=3, peptides_per_protein=2)
        data = PeptideData.build(matrix, treatment, metadata)
        sub = data.take([5, 0, 2])
        assert list(sub.matrix.index) == list(sub.metadata.peptide_ids)
        np.testing.assert_array_equal(sub.values, matrix.to_numpy()[[5, 0, 2]])

    def test_protein_rows_first_appearance(self):
        meta = pd.DataFrame({"peptide": ["a", "b", "c", "d"], "protein": ["Z", "A", "Z", "A"]})
        data = PeptideData.build(np.ones((4, 2)), ["x", "y"], meta)
        rows = data.protein_rows()
        assert list(rows) == ["Z", "A"]
        assert rows["Z"].tolist() == [0, 2]
        assert rows["A"].tolist() == [1, 3]

    def test_protein_column_by_name(self, synthetic_dataset):
        matrix, treatment, metadata = synthetic_dataset(n_proteins=2, peptides_per_protein=2)
        data = PeptideData.build(matrix, treatment, metadata, protein_col="gene")
        assert set(data.metadata.protein_ids) == {"GENE0", "GENE1"}

    def test_treatment_first_appearance_order(self):
        cat = as_treatment(["b", "a", "b", "a"])
        assert list(cat.categories) == ["b", "a"]

    def test_records_carry_attributes(self, synthetic_dataset):
        _, _, metadata = synthetic_dataset(n_proteins=1, peptides_per_protein=2)
        records = list(PeptideMetadata.from_frame(metadata).records())
        assert records[0].peptide_id == "P0_pep0"
        assert records[0].protein_id == "P0"
        assert records[1].attributes == {"gene": "GENE0"}
