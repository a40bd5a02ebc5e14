"""
Error taxonomy shared by all pipeline stages.

Per-entity failures (one peptide, one protein) are caught by the loop owning
the entity and recorded as an `Exclusion`; they only surface to the caller
when a whole stage input ends up empty.
"""


class ProteoMMError(Exception):
    """Base class for every error raised by proteomm."""


class InsufficientDataError(ProteoMMError):
    """Too few complete rows, peptides or observations to fit a model."""


class AlignmentError(ProteoMMError, ValueError):
    """Row, metadata or treatment dimensions do not line up."""


class EstimationError(ProteoMMError):
    """The MCAR proportion could not be estimated; callers may fall back to a constant."""


class DegenerateStatisticError(ProteoMMError):
    """A protein's F statistic is undefined (fewer than two peptides)."""
