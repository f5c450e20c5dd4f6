"""Spillover purification for spatial transcriptomics.

Design goals
------------
- Keep `import st_purification` lightweight (no anndata/scanpy at import time).
- Expose keys and the typed records eagerly (tiny, used everywhere).
- Provide lazy access to submodules via attribute access: `st_purification.purify`, etc.
"""
from __future__ import annotations

import importlib
from typing import Any

# Keys (single source of truth)
from .keys import * # noqa: F401,F403
from .exceptions import (
    PurificationError,
    MalformedDecompositionError,
    MissingReferenceProfile,
    UndefinedNeighborhoodScore,
)
from .records import SpotClass, PurificationStatus, DecompositionRecord

__version__ = "0.1.0"

# Submodules that may be heavy; loaded lazily.
_LAZY = {
    "array_ops",
    "balance",
    "decomposition",
    "graph",
    "neighborhood",
    "prep",
    "purify",
    "reference",
    "run_pipeline",
}

def __getattr__(name: str) -> Any:
    if name in _LAZY:
        return importlib.import_module(f"{__name__}.{name}")
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
