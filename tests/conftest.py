"""Shared fixtures: small synthetic peptide datasets with known structure."""

import numpy as np
import pandas as pd
import pytest

TREATMENT_3V3 = ["ctrl", "ctrl", "ctrl", "treated", "treated", "treated"]


def _synthetic(
    n_proteins=4,
    peptides_per_protein=5,
    effects=None,
    noise=0.2,
    missing_rate=0.0,
    treatment=TREATMENT_3V3,
    seed=0,
    prefix="P",
):
    """
    log2 intensities = peptide baseline + protein effect on the second group + noise.

    Returns (matrix, treatment, metadata). metadata columns: peptide, protein, gene.
    """
    rng = np.random.default_rng(seed)
    treatment = list(treatment)
    second = np.array([t != treatment[0] for t in treatment])
    effects = np.zeros(n_proteins) if effects is None else np.asarray(effects, dtype=float)

    rows, meta = [], []
    for p in range(n_proteins):
        for k in range(peptides_per_protein):
            base = rng.uniform(18, 26)
            row = base + effects[p] * second + rng.normal(0, noise, len(treatment))
            rows.append(row)
            meta.append((f"{prefix}{p}_pep{k}", f"{prefix}{p}", f"GENE{p}"))
    values = np.array(rows)
    if missing_rate > 0:
        drop = rng.random(values.shape) < missing_rate
        values[drop] = np.nan

    metadata = pd.DataFrame(meta, columns=["peptide", "protein", "gene"])
    matrix = pd.DataFrame(values, columns=[f"S{j + 1}" for j in range(len(treatment))])
    return matrix, treatment, metadata


@pytest.fixture
def synthetic_dataset():
    """Factory fixture building a synthetic dataset (see `_synthetic`)."""
    return _synthetic


@pytest.fixture
def two_protein_dataset():
    """
    3 vs 3 design, 100 peptides: protein A (50 peptides) shifted by 2 log2
    units in the treated group, protein B (50 peptides) with group means
    exactly equal in every row.
    """
    rng = np.random.default_rng(7)
    rows, meta = [], []
    for k in range(50):
        base = rng.uniform(18, 26)
        rows.append(base + np.array([0, 0, 0, 2, 2, 2]) + rng.normal(0, 0.2, 6))
        meta.append((f"A_pep{k}", "A", "GENEA"))
    for k in range(50):
        base = rng.uniform(18, 26)
        e = rng.normal(0, 0.2, 3)
        # treated noise is a rotation of the control noise: equal group means
        rows.append(base + np.concatenate([e, np.roll(e, 1)]))
        meta.append((f"B_pep{k}", "B", "GENEB"))
    matrix = pd.DataFrame(np.array(rows), columns=[f"S{j + 1}" for j in range(6)])
    metadata = pd.DataFrame(meta, columns=["peptide", "protein", "gene"])
    return matrix, list(TREATMENT_3V3), metadata
