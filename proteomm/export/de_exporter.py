"""Export protein-level results to CSV/TSV.

Cutoffs are applied here only, as a `significant` column: the tables
themselves always hold every tested protein.
"""
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from proteomm.dataset.peptidedata import PeptideData
from proteomm.dataset.results import Exclusion, ProteinDEResult, exclusions_frame
from proteomm.utils.utils import log_info, log_time
from proteomm.workflow.dataset import raw_frame


def _package_version() -> str:
    try:
        return _pkg_version("proteomm")
    except PackageNotFoundError:
        return "unknown"


class DEExporter:
    def __init__(
        self,
        de_result: ProteinDEResult,
        output_path,
        use_tsv: bool = False,
        fc_cutoff: float = 1.0,
        p_cutoff: float = 0.05,
        presence_absence: Optional[ProteinDEResult] = None,
        exclusions: Sequence[Exclusion] = (),
        scope: Optional[pd.Series] = None,
        peptides: Optional[Dict[str, PeptideData]] = None,
    ):
        """CSV/TSV exporter for differential expression and presence/absence results."""
        self.de_result = de_result
        self.output_path = Path(output_path)
        self.use_tsv = use_tsv
        self.fc_cutoff = fc_cutoff
        self.p_cutoff = p_cutoff
        self.presence_absence = presence_absence
        self.exclusions = list(exclusions)
        self.scope = scope
        self.peptides = peptides or {}

    def _annotate(self, result: ProteinDEResult, with_scope: bool = False) -> pd.DataFrame:
        """Result table with a `significant` column (and `scope` when asked and known)."""
        df = result.to_frame()
        hits = set(result.significant(self.fc_cutoff, self.p_cutoff).index)
        df.insert(df.columns.get_loc("status") + 1, "significant", df["protein"].isin(hits))
        if with_scope and self.scope is not None:
            df.insert(1, "scope", df["protein"].map(self.scope))
        return df

    def tables(self) -> Dict[str, Optional[pd.DataFrame]]:
        tables = {"Summary": self._annotate(self.de_result, with_scope=True)}
        tables["PresenceAbsence"] = (
            self._annotate(self.presence_absence) if self.presence_absence is not None else None
        )
        exclusions = self.exclusions + list(self.de_result.excluded)
        if self.presence_absence is not None:
            exclusions += list(self.presence_absence.excluded)
        tables["Exclusions"] = exclusions_frame(exclusions)
        for name, data in self.peptides.items():
            tables[f"Peptides_{name}"] = raw_frame(data)
        return tables

    def _readme(self) -> str:
        return (
            f"proteomm {_package_version()} - exported {datetime.now().isoformat(timespec='seconds')}\n"
            f"Differential expression: {self.de_result.method}"
            f" ({self.de_result.n_permutations} permutations)\n"
            f"significant: |fold_change| >= {self.fc_cutoff} and p_adjusted <= {self.p_cutoff}\n"
            "Files:\n"
            "- Summary: one row per protein tested for differential expression.\n"
            "- PresenceAbsence: proteins tested on presence/absence only, if run.\n"
            "- Exclusions: peptides/proteins set aside, with stage and reason.\n"
            "- Peptides_<dataset>: analysed peptide intensities (log2).\n"
        )

    @log_time("Exporting tables")
    def export(self) -> Path:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        prefix = self.output_path.with_suffix("")
        sep, ext = ("\t", "tsv") if self.use_tsv else (",", "csv")

        written = 0
        for name, df in self.tables().items():
            if df is None:
                continue
            df.replace([np.inf, -np.inf], np.nan).to_csv(f"{prefix}_{name}.{ext}", sep=sep, index=False)
            written += 1
        Path(f"{prefix}_README.txt").write_text(self._readme())

        n_sig = int(self._annotate(self.de_result)["significant"].sum())
        log_info(f"{written} table(s) written to {prefix}_*.{ext}; {n_sig} significant protein(s).")
        return Path(f"{prefix}_Summary.{ext}")
