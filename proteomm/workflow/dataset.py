from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import pandas as pd
import polars as pl

from proteomm.analysis.missingness import count_missing_columns, count_observed_per_group
from proteomm.dataset.peptidedata import PeptideData, PeptideMetadata
from proteomm.utils.matrix_ops import log2_transform, split_intensities, split_metadata
from proteomm.utils.utils import log_debug, log_info, log_time


class Dataset:
    """Loads one wide peptide table (one row per peptide) into a `PeptideData` bundle."""

    def __init__(self, **dataset_cfg):
        """
        Args:
            dataset_cfg: one entry of the `datasets:` config list. Keys:
                name, input_file, intensity_columns or intensity_prefix,
                id_column, protein_column, metadata_columns, treatment,
                log2, separator.
        """
        self.file_path = dataset_cfg.get("input_file")
        if not self.file_path:
            raise ValueError("Every dataset needs an 'input_file'.")
        self.name = str(dataset_cfg.get("name") or Path(self.file_path).stem)
        self.intensity_columns = dataset_cfg.get("intensity_columns")
        self.intensity_prefix = dataset_cfg.get("intensity_prefix")
        self.id_column = dataset_cfg.get("id_column", 0)
        self.protein_column = dataset_cfg.get("protein_column", 1)
        self.metadata_columns = dataset_cfg.get("metadata_columns")
        self.treatment = dataset_cfg.get("treatment")
        self.log2 = bool(dataset_cfg.get("log2", True))
        self.separator = dataset_cfg.get("separator")

        if self.treatment is None:
            raise ValueError(f"[{self.name}] 'treatment' (one label per intensity column) is required.")
        if (self.intensity_columns is None) == (self.intensity_prefix is None):
            raise ValueError(f"[{self.name}] set exactly one of 'intensity_columns' or 'intensity_prefix'.")

        self._data: Optional[PeptideData] = None

    def _load_rawdata(self, file_path: str) -> pl.DataFrame:
        """Load a CSV or TSV file with polars; empty and NA-like cells become null."""
        if self.separator is None and not file_path.endswith((".csv", ".tsv", ".txt")):
            raise ValueError("Only CSV or TSV files are supported.")
        delimiter = self.separator or ("," if file_path.endswith(".csv") else "\t")
        return pl.read_csv(
            file_path,
            separator=delimiter,
            infer_schema_length=10000,
            null_values=["NA", "NaN", "N/A", ""],
        )

    def _intensity_columns(self, df: pl.DataFrame) -> List[Union[int, str]]:
        if self.intensity_columns is not None:
            return list(self.intensity_columns)
        cols = [c for c in df.columns if c.startswith(self.intensity_prefix)]
        if not cols:
            raise ValueError(f"[{self.name}] no column starts with '{self.intensity_prefix}'.")
        return cols

    def _metadata_columns(self, df: pl.DataFrame, intensity_cols: list) -> list:
        names = [df.columns[c] if isinstance(c, int) else c for c in intensity_cols]
        id_col = df.columns[self.id_column] if isinstance(self.id_column, int) else self.id_column
        prot_col = df.columns[self.protein_column] if isinstance(self.protein_column, int) else self.protein_column
        rest = self.metadata_columns
        if rest is None:
            rest = [c for c in df.columns if c not in names]
        # identifier first, protein second, passthrough columns after
        return [id_col, prot_col] + [c for c in rest if c not in (id_col, prot_col)]

    @log_time("Loading dataset")
    def load(self) -> PeptideData:
        df = self._load_rawdata(str(self.file_path))
        intensity_cols = self._intensity_columns(df)
        matrix = split_intensities(df, intensity_cols)
        metadata = split_metadata(df, self._metadata_columns(df, intensity_cols))

        if self.log2:
            n_non_positive = int((matrix.to_numpy() <= 0).sum())
            matrix = log2_transform(matrix)
            if n_non_positive:
                log_info(f"[{self.name}] {n_non_positive} non-positive intensities set to missing.")

        meta = PeptideMetadata.from_frame(metadata, 0, 1)
        self._data = PeptideData.build(matrix, self.treatment, meta, name=self.name)
        per_sample = count_missing_columns(self._data.matrix)
        observed = count_observed_per_group(self._data.values, np.asarray(self._data.treatment, dtype=object)).sum()
        log_info(
            f"[{self.name}] {self._data.n_peptides} peptides x {self._data.n_samples} samples, "
            f"{int(per_sample.sum())} missing value(s), groups {self._data.groups}."
        )
        log_debug(f"[{self.name}] missing per sample: {per_sample.to_dict()}")
        log_debug(f"[{self.name}] observed per group: {observed.to_dict()}")
        return self._data

    def get_peptide_data(self) -> PeptideData:
        if self._data is None:
            self.load()
        return self._data


def load_datasets(config: dict) -> List[PeptideData]:
    """Load every entry of the `datasets:` config section."""
    entries = config.get("datasets") or []
    if not entries:
        raise ValueError("Config has no 'datasets' entry.")
    loaded = [Dataset(**entry).get_peptide_data() for entry in entries]
    names = [d.name for d in loaded]
    if len(set(names)) != len(names):
        raise ValueError(f"Dataset names must be unique: {names}")
    return loaded


def raw_frame(data: PeptideData) -> pd.DataFrame:
    """Metadata and intensities side by side, as written to disk."""
    return pd.concat([data.metadata.frame, data.matrix.reset_index(drop=True)], axis=1)
