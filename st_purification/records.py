"""Typed records passed between stages.

Every stage receives these as read-only inputs and returns new objects;
nothing here is mutated after construction.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace, field
from typing import Any, Optional

import numpy as np

class SpotClass(str, enum.Enum):
    REJECT = "reject"
    SINGLET = "singlet"
    DOUBLET_CERTAIN = "doublet_certain"
    DOUBLET_UNCERTAIN = "doublet_uncertain"

    @property
    def is_doublet(self) -> bool:
        return self in (SpotClass.DOUBLET_CERTAIN, SpotClass.DOUBLET_UNCERTAIN)

class PurificationStatus(str, enum.Enum):
    UNCHANGED = "unchanged"
    PURIFIED = "purified"
    EXCLUDED_REJECT = "excluded_reject"
    EXCLUDED_UNKNOWN = "excluded_unknown"
    MISSING_REFERENCE = "missing_reference"

    @property
    def is_excluded(self) -> bool:
        return self in (PurificationStatus.EXCLUDED_REJECT, PurificationStatus.EXCLUDED_UNKNOWN)

@dataclass(frozen=True)
class DecompositionRecord:
    """Per-unit decomposition outcome (owned upstream, read-only here).

    `weight_first` + `weight_second` need not sum to 1; the remainder is
    attributed to noise / other types.
    """

    unit_id: str
    spot_class: SpotClass
    first_type: Optional[str]
    second_type: Optional[str] = None
    weight_first: float = 0.0
    weight_second: float = 0.0
    confidence: Optional[bool] = None

    @property
    def has_secondary(self) -> bool:
        """True if there is a secondary signal to subtract."""
        return self.second_type is not None and self.weight_second > 0.0

    @property
    def is_reject(self) -> bool:
        return self.spot_class is SpotClass.REJECT

    def swapped(self) -> "DecompositionRecord":
        """Copy with primary/secondary type labels (and weights) exchanged."""
        return replace(
            self,
            first_type=self.second_type,
            second_type=self.first_type,
            weight_first=self.weight_second,
            weight_second=self.weight_first,
        )

    def with_weight_second(self, w: float) -> "DecompositionRecord":
        return replace(self, weight_second=float(w))

@dataclass(frozen=True)
class PurifiedProfile:
    """Output of the Purifier for one unit. `counts` is None for excluded units."""

    unit_id: str
    counts: Optional[np.ndarray]
    status: PurificationStatus

@dataclass(frozen=True)
class BalancedUnit:
    """Final per-unit decision from the Balancer.

    `counts` is a 1-D array, or a 1 x G CSR row when the input counts are sparse.
    `source` names the matrix the row was taken from: "raw", "default" (the
    Purifier's own decision) or "candidate" (purified regardless of spot class).
    """

    unit_id: str
    counts: Any
    status: PurificationStatus
    swap: bool
    record: DecompositionRecord
    score: float = field(default=float("nan"))
    source: str = "raw"
