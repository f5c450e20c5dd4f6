"""
Exception classes for st_purification.

Fatal errors abort a run before any output is produced; per-unit errors are
caught where they occur and turned into a status flag.
"""


class PurificationError(Exception):
    """Base exception for all st_purification errors."""

    pass


class MalformedDecompositionError(PurificationError, ValueError):
    """Decomposition table is structurally invalid (fatal)."""

    pass


class MissingReferenceProfile(PurificationError, KeyError):
    """No reference profile for a requested cell type (per-unit, recoverable)."""

    def __init__(self, cell_type):
        self.cell_type = cell_type
        super().__init__(cell_type)

    def __str__(self):
        return f"no reference profile for cell type {self.cell_type!r}"


class UndefinedNeighborhoodScore(PurificationError):
    """A unit has no scorable neighbors (per-unit, recoverable)."""

    def __init__(self, unit_id):
        self.unit_id = unit_id
        super().__init__(f"neighborhood score is undefined for unit {unit_id!r}")
