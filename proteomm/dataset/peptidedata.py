"""
Validated peptide-level containers.

`PeptideMetadata` is the typed form of the metadata table: a unique peptide
identifier, a protein identifier and a bag of passthrough attributes that are
carried along but never interpreted. `PeptideData` bundles it with the
intensity matrix and the treatment vector and checks their alignment once, so
that downstream stages can assume it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from proteomm.utils.exceptions import AlignmentError

ColumnRef = Union[int, str]


@dataclass(frozen=True)
class PeptideRecord:
    peptide_id: str
    protein_id: str
    attributes: Mapping[str, str] = field(default_factory=dict)


def _column_name(frame: pd.DataFrame, ref: ColumnRef) -> str:
    if isinstance(ref, (int, np.integer)) and not isinstance(ref, bool):
        if ref < 0 or ref >= frame.shape[1]:
            raise AlignmentError(f"Metadata column position {ref} out of range (n_columns={frame.shape[1]}).")
        return frame.columns[ref]
    if ref not in frame.columns:
        raise AlignmentError(f"Metadata column '{ref}' not found.")
    return ref


@dataclass(frozen=True)
class PeptideMetadata:
    frame: pd.DataFrame
    id_column: str
    protein_column: str

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        id_column: ColumnRef = 0,
        protein_column: ColumnRef = 1,
    ) -> "PeptideMetadata":
        if frame.shape[1] < 2:
            raise AlignmentError("Metadata needs an identifier column and a protein column.")
        id_name = _column_name(frame, id_column)
        prot_name = _column_name(frame, protein_column)
        df = frame.reset_index(drop=True).copy()
        if df[id_name].isna().any() or df[prot_name].isna().any():
            raise AlignmentError("Peptide and protein identifiers must not be missing.")
        df = df.astype({c: str for c in df.columns})
        dup = df[id_name].duplicated()
        if dup.any():
            raise AlignmentError(f"Peptide identifiers must be unique; duplicated: {df.loc[dup, id_name].head(5).tolist()}")
        return cls(frame=df, id_column=id_name, protein_column=prot_name)

    def __len__(self) -> int:
        return len(self.frame)

    @property
    def peptide_ids(self) -> np.ndarray:
        return self.frame[self.id_column].to_numpy()

    @property
    def protein_ids(self) -> np.ndarray:
        return self.frame[self.protein_column].to_numpy()

    @property
    def attributes(self) -> pd.DataFrame:
        return self.frame.drop(columns=[self.id_column, self.protein_column])

    def take(self, positions) -> "PeptideMetadata":
        return PeptideMetadata(
            frame=self.frame.iloc[np.asarray(positions, dtype=int)].reset_index(drop=True),
            id_column=self.id_column,
            protein_column=self.protein_column,
        )

    def regroup(self, protein_column: ColumnRef) -> "PeptideMetadata":
        """Same rows, grouped by another metadata column."""
        if isinstance(protein_column, str) and protein_column == self.protein_column:
            return self
        return PeptideMetadata.from_frame(self.frame, self.id_column, protein_column)

    def records(self) -> Iterator[PeptideRecord]:
        attrs = self.attributes
        for i, (pep, prot) in enumerate(zip(self.peptide_ids, self.protein_ids)):
            yield PeptideRecord(pep, prot, attrs.iloc[i].to_dict())

    def protein_attributes(self) -> pd.DataFrame:
        """First value of every passthrough attribute per protein."""
        attrs = self.attributes
        attrs.insert(0, "protein", self.protein_ids)
        return attrs.groupby("protein", sort=False).first()


def as_metadata(metadata, protein_col: ColumnRef = 1) -> PeptideMetadata:
    # an already validated table keeps its grouping unless another column is named
    if isinstance(metadata, PeptideMetadata):
        if protein_col == 1 or protein_col == metadata.protein_column:
            return metadata
        return metadata.regroup(protein_col)
    if isinstance(metadata, pd.DataFrame):
        return PeptideMetadata.from_frame(metadata, 0, protein_col)
    raise TypeError(f"Unsupported metadata type: {type(metadata).__name__}")


def as_treatment(treatment) -> pd.Categorical:
    """Categorical labels; levels keep order of first appearance unless already categorical."""
    if isinstance(treatment, pd.Categorical):
        return treatment.remove_unused_categories()
    if isinstance(treatment, pd.Series) and isinstance(treatment.dtype, pd.CategoricalDtype):
        return pd.Categorical(treatment).remove_unused_categories()
    values = np.asarray(treatment, dtype=object).astype(str)
    return pd.Categorical(values, categories=pd.unique(values))


@dataclass(frozen=True)
class PeptideData:
    matrix: pd.DataFrame
    treatment: pd.Categorical
    metadata: PeptideMetadata
    name: str = "dataset"

    def __post_init__(self):
        n_rows, n_cols = self.matrix.shape
        if n_rows != len(self.metadata):
            raise AlignmentError(
                f"[{self.name}] intensity matrix has {n_rows} rows but metadata has {len(self.metadata)}."
            )
        if len(self.treatment) != n_cols:
            raise AlignmentError(
                f"[{self.name}] treatment has {len(self.treatment)} labels for {n_cols} samples."
            )
        if not np.array_equal(self.matrix.index.to_numpy().astype(str), self.metadata.peptide_ids):
            raise AlignmentError(f"[{self.name}] matrix rows and metadata identifiers are out of order.")

    @classmethod
    def build(
        cls,
        matrix,
        treatment,
        metadata,
        protein_col: ColumnRef = 1,
        name: str = "dataset",
        sample_names: Optional[Sequence[str]] = None,
    ) -> "PeptideData":
        """Coerce matrix / treatment / metadata into a validated bundle."""
        meta = as_metadata(metadata, protein_col)
        if isinstance(matrix, pd.DataFrame):
            values = matrix.apply(pd.to_numeric, errors="coerce").to_numpy(dtype=np.float64)
            columns = [str(c) for c in matrix.columns]
        else:
            values = np.asarray(matrix, dtype=np.float64)
            if values.ndim != 2:
                raise AlignmentError(f"[{name}] intensity matrix must be 2-D, got shape {values.shape}.")
            columns = list(sample_names) if sample_names is not None else [f"S{j + 1}" for j in range(values.shape[1])]
        if values.shape[0] != len(meta):
            raise AlignmentError(f"[{name}] intensity matrix has {values.shape[0]} rows but metadata has {len(meta)}.")
        if np.isinf(values).any():
            raise ValueError(f"[{name}] intensity matrix contains infinite values; use NaN for missing.")
        df = pd.DataFrame(values, index=pd.Index(meta.peptide_ids, name=meta.id_column), columns=columns)
        return cls(matrix=df, treatment=as_treatment(treatment), metadata=meta, name=name)

    @property
    def values(self) -> np.ndarray:
        return self.matrix.to_numpy(dtype=np.float64)

    @property
    def groups(self) -> list:
        return list(self.treatment.categories)

    @property
    def group_codes(self) -> np.ndarray:
        return np.asarray(self.treatment.codes)

    @property
    def n_peptides(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[1]

    def take(self, positions) -> "PeptideData":
        positions = np.asarray(positions, dtype=int)
        return PeptideData(
            matrix=self.matrix.iloc[positions],
            treatment=self.treatment,
            metadata=self.metadata.take(positions),
            name=self.name,
        )

    def with_values(self, values: np.ndarray) -> "PeptideData":
        return PeptideData(
            matrix=pd.DataFrame(values, index=self.matrix.index, columns=self.matrix.columns),
            treatment=self.treatment,
            metadata=self.metadata,
            name=self.name,
        )

    def protein_rows(self) -> Dict[str, np.ndarray]:
        """Row positions of each protein, proteins in order of first appearance."""
        prot = self.metadata.protein_ids
        codes, uniques = pd.factorize(prot, sort=False)
        order = np.argsort(codes, kind="stable")
        bounds = np.cumsum(np.bincount(codes, minlength=len(uniques)))[:-1]
        return {p: rows for p, rows in zip(uniques, np.split(order, bounds))}
