from typing import Sequence, Union

import numpy as np
import pandas as pd
import polars as pl

ColumnSpec = Sequence[Union[int, str]]


def _to_pandas(frame) -> pd.DataFrame:
    if isinstance(frame, pl.DataFrame):
        return frame.to_pandas()
    if isinstance(frame, pd.DataFrame):
        return frame
    raise TypeError(f"Expected a pandas or polars DataFrame, got {type(frame).__name__}")


def _resolve_columns(frame: pd.DataFrame, columns: ColumnSpec) -> list:
    """Map a mix of column names and positions to column names."""
    resolved = []
    for col in columns:
        if isinstance(col, (int, np.integer)) and not isinstance(col, bool):
            if col < 0 or col >= frame.shape[1]:
                raise IndexError(f"Column position {col} out of range (n_columns={frame.shape[1]})")
            resolved.append(frame.columns[col])
        elif col in frame.columns:
            resolved.append(col)
        else:
            raise KeyError(f"Column '{col}' not found in table.")
    return resolved


def split_intensities(frame, columns: ColumnSpec) -> pd.DataFrame:
    """
    Extract the numeric intensity block (peptides x samples) from a wide table.

    Non-numeric cells become NaN, which is the only missing-value marker used
    downstream.
    """
    df = _to_pandas(frame)
    cols = _resolve_columns(df, columns)
    out = df[cols].apply(pd.to_numeric, errors="coerce").astype(np.float64)
    return out.reset_index(drop=True)


def split_metadata(frame, columns: ColumnSpec) -> pd.DataFrame:
    """Extract metadata columns as strings; first = peptide id, second = protein id."""
    df = _to_pandas(frame)
    cols = _resolve_columns(df, columns)
    if len(cols) < 2:
        raise ValueError("Metadata needs at least an identifier and a protein column.")
    return df[cols].astype(str).reset_index(drop=True)


def log2_transform(matrix, zero_is_missing: bool = True):
    """
    log2 of raw intensities. Zeros and negatives are never kept as observations:
    they become NaN (or raise when `zero_is_missing=False`).
    """
    values = np.asarray(matrix, dtype=np.float64)
    non_positive = values <= 0
    if non_positive.any() and not zero_is_missing:
        raise ValueError(f"{int(non_positive.sum())} non-positive intensities cannot be log-transformed.")
    with np.errstate(divide="ignore", invalid="ignore"):
        logged = np.where(non_positive, np.nan, np.log2(values))
    if isinstance(matrix, pd.DataFrame):
        return pd.DataFrame(logged, index=matrix.index, columns=matrix.columns)
    return logged
