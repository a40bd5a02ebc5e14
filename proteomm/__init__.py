from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("proteomm")
except PackageNotFoundError:
    __version__ = "0+unknown"  # e.g. running from source without install

from proteomm.analysis.peptide_de import multi_dataset_test, peptide_level_test
from proteomm.analysis.presence_absence import peptide_level_presence_absence_test, presence_absence_test
from proteomm.workflow.imputers.model_based_imputer import ModelBasedImputer, impute
from proteomm.workflow.normalizers.eigenms import apply_removal, identify_trends, remove_trends
from proteomm.workflow.reconciliation import partition, presence_absence_candidates

__all__ = [
    "__version__",
    "identify_trends",
    "apply_removal",
    "remove_trends",
    "impute",
    "ModelBasedImputer",
    "peptide_level_test",
    "multi_dataset_test",
    "presence_absence_test",
    "peptide_level_presence_absence_test",
    "partition",
    "presence_absence_candidates",
]
