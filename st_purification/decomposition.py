# st_purification/decomposition.py
"""
Decomposition result adapter.

Turns the external decomposition output (one row per unit; RCTD doublet-mode
style) into a uniform mapping unit_id -> DecompositionRecord.

Validation policy
-----------------
- Every row must carry a recognized `spot_class`.
- Weights must be finite and within [0, 1] whenever their type is present.
- Types must belong to `known_types` when that universe is given.
- Any violation raises MalformedDecompositionError (fatal; nothing downstream runs).

Units that exist in the count matrix but not in the table are "unknown": they are
reported by `find_unknown_units` and excluded, never zero-filled.
"""

from __future__ import annotations

import warnings
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from .exceptions import MalformedDecompositionError
from .keys import (
    COL_UNIT_ID,
    COL_SPOT_CLASS,
    COL_FIRST_TYPE,
    COL_SECOND_TYPE,
    COL_WEIGHT_FIRST,
    COL_WEIGHT_SECOND,
    COL_CONFIDENCE,
    DECOMPOSITION_COLUMNS,
)
from .records import DecompositionRecord, SpotClass

WEIGHT_TOL = 1e-6

# ============================================================
# 0) basic helpers
# ============================================================

def _is_missing(v) -> bool:
    if v is None:
        return True
    if isinstance(v, float) and np.isnan(v):
        return True
    if v is pd.NA or v is pd.NaT:
        return True
    return isinstance(v, str) and v.strip() in ("", "NA", "nan", "None")

def _parse_spot_class(v, unit_id) -> SpotClass:
    if _is_missing(v):
        raise MalformedDecompositionError(
            f"[normalize_decomposition] unit {unit_id!r} has no spot_class."
        )
    s = str(v).strip().lower()
    try:
        return SpotClass(s)
    except ValueError:
        allowed = ", ".join(c.value for c in SpotClass)
        raise MalformedDecompositionError(
            f"[normalize_decomposition] unit {unit_id!r} has unknown spot_class {v!r} (allowed: {allowed})."
        ) from None

def _parse_type(v) -> Optional[str]:
    if _is_missing(v):
        return None
    return str(v).strip()

def _parse_weight(v, *, unit_id, name: str, type_present: bool) -> float:
    if _is_missing(v):
        if type_present and name == COL_WEIGHT_FIRST:
            raise MalformedDecompositionError(
                f"[normalize_decomposition] unit {unit_id!r} has a first_type but no {name}."
            )
        return 0.0
    try:
        w = float(v)
    except (TypeError, ValueError):
        raise MalformedDecompositionError(
            f"[normalize_decomposition] unit {unit_id!r}: {name}={v!r} is not numeric."
        ) from None
    if not np.isfinite(w):
        if type_present:
            raise MalformedDecompositionError(
                f"[normalize_decomposition] unit {unit_id!r}: {name} is not finite."
            )
        return 0.0
    if w < 0.0:
        raise MalformedDecompositionError(
            f"[normalize_decomposition] unit {unit_id!r}: negative {name}={w}."
        )
    if w > 1.0 + WEIGHT_TOL:
        raise MalformedDecompositionError(
            f"[normalize_decomposition] unit {unit_id!r}: {name}={w} exceeds 1."
        )
    return min(w, 1.0)

def _parse_confidence(v) -> Optional[bool]:
    if _is_missing(v):
        return None
    if isinstance(v, (bool, np.bool_)):
        return bool(v)
    if isinstance(v, str):
        s = v.strip().lower()
        if s in ("true", "t", "yes", "1"):
            return True
        if s in ("false", "f", "no", "0"):
            return False
        raise MalformedDecompositionError(f"[normalize_decomposition] unparseable confidence {v!r}.")
    return bool(v)

def _unit_id_column(table: pd.DataFrame) -> np.ndarray:
    if COL_UNIT_ID in table.columns:
        ids = table[COL_UNIT_ID]
    else:
        ids = pd.Series(table.index, index=table.index)
    if ids.isna().any():
        raise MalformedDecompositionError("[normalize_decomposition] table contains missing unit ids.")
    ids = ids.astype(str).to_numpy(dtype=object)
    dup = pd.Index(ids)[pd.Index(ids).duplicated()].unique()
    if len(dup) > 0:
        raise MalformedDecompositionError(
            f"[normalize_decomposition] duplicated unit ids: {list(dup[:5])}"
        )
    return ids

def _apply_weights_doublet(table: pd.DataFrame, ids: np.ndarray, weights_doublet: pd.DataFrame) -> pd.DataFrame:
    """Take weight_first / weight_second from a spacexr-style `weights_doublet` frame.

    `weights_doublet` is indexed by unit id with columns `first_type` and
    `second_type` holding the weights of the respective types.
    """
    for c in (COL_FIRST_TYPE, COL_SECOND_TYPE):
        if c not in weights_doublet.columns:
            raise MalformedDecompositionError(f"[normalize_decomposition] weights_doublet missing column {c!r}.")
    wd = weights_doublet.copy()
    wd.index = wd.index.astype(str)
    missing = [u for u in ids if u not in wd.index]
    if missing:
        raise MalformedDecompositionError(
            f"[normalize_decomposition] weights_doublet lacks {len(missing)} units, e.g. {missing[:5]}"
        )
    out = table.copy()
    out[COL_WEIGHT_FIRST] = wd.loc[list(ids), COL_FIRST_TYPE].to_numpy(dtype=float)
    out[COL_WEIGHT_SECOND] = wd.loc[list(ids), COL_SECOND_TYPE].to_numpy(dtype=float)
    return out

# ============================================================
# 1) normalize (public)
# ============================================================

def normalize_decomposition(
    table: pd.DataFrame,
    *,
    known_types: Optional[Iterable[str]] = None,
    unit_ids: Optional[Iterable[str]] = None,
    weights_doublet: Optional[pd.DataFrame] = None,
) -> Dict[str, DecompositionRecord]:
    """
    Normalize an external decomposition table into DecompositionRecords.

    Parameters
    ----------
    table:
        One row per unit. Unit ids come from column `unit_id` if present,
        otherwise from the index. Required: `spot_class`, `first_type`.
        Optional: `second_type`, `weight_first`, `weight_second`, `confidence`.
    known_types:
        The cell-type universe of the decomposition run. If given, every
        first/second type must belong to it.
    unit_ids:
        Optional unit universe (e.g. the count matrix rows). Table rows outside
        it are dropped with a RuntimeWarning; universe units absent from the
        table stay unknown (see `find_unknown_units`).
    weights_doublet:
        Optional frame (index = unit id, columns first_type/second_type) with
        the per-type weights, as produced by doublet-mode decomposition.

    Returns
    -------
    dict[unit_id -> DecompositionRecord], in table order.
    """
    if not isinstance(table, pd.DataFrame):
        raise TypeError(f"[normalize_decomposition] expected a DataFrame, got {type(table).__name__}")
    for c in (COL_SPOT_CLASS, COL_FIRST_TYPE):
        if c not in table.columns:
            raise MalformedDecompositionError(f"[normalize_decomposition] missing column {c!r}.")

    ids = _unit_id_column(table)
    if weights_doublet is not None:
        table = _apply_weights_doublet(table, ids, weights_doublet)

    known = None if known_types is None else {str(t) for t in known_types}
    universe = None if unit_ids is None else {str(u) for u in unit_ids}
    n_outside = 0

    def _col(name):
        if name in table.columns:
            return table[name].to_numpy(dtype=object)
        return np.full(len(table), None, dtype=object)

    sc_col = _col(COL_SPOT_CLASS)
    t1_col = _col(COL_FIRST_TYPE)
    t2_col = _col(COL_SECOND_TYPE)
    w1_col = _col(COL_WEIGHT_FIRST)
    w2_col = _col(COL_WEIGHT_SECOND)
    conf_col = _col(COL_CONFIDENCE)

    records: Dict[str, DecompositionRecord] = {}
    for i, uid in enumerate(ids):
        if universe is not None and uid not in universe:
            n_outside += 1
            continue
        spot_class = _parse_spot_class(sc_col[i], uid)
        t1 = _parse_type(t1_col[i])
        t2 = _parse_type(t2_col[i])

        if t1 is None and spot_class is not SpotClass.REJECT:
            raise MalformedDecompositionError(
                f"[normalize_decomposition] unit {uid!r} ({spot_class.value}) has no first_type."
            )
        if known is not None:
            for t in (t1, t2):
                if t is not None and t not in known:
                    raise MalformedDecompositionError(
                        f"[normalize_decomposition] unit {uid!r} references unknown type {t!r}."
                    )

        w1 = _parse_weight(w1_col[i], unit_id=uid, name=COL_WEIGHT_FIRST, type_present=t1 is not None)
        w2 = _parse_weight(w2_col[i], unit_id=uid, name=COL_WEIGHT_SECOND, type_present=t2 is not None)
        if t2 is None:
            w2 = 0.0

        records[str(uid)] = DecompositionRecord(
            unit_id=str(uid),
            spot_class=spot_class,
            first_type=t1,
            second_type=t2,
            weight_first=w1,
            weight_second=w2,
            confidence=_parse_confidence(conf_col[i]),
        )
    if n_outside:
        warnings.warn(
            f"[normalize_decomposition] {n_outside} table rows are not in unit_ids; dropped.",
            RuntimeWarning,
        )
    return records

# ============================================================
# 2) helpers on the normalized mapping
# ============================================================

def find_unknown_units(records: Dict[str, DecompositionRecord], unit_ids: Iterable[str]) -> List[str]:
    """Unit ids (in input order) that have no decomposition record."""
    return [str(u) for u in unit_ids if str(u) not in records]

def records_to_frame(records: Dict[str, DecompositionRecord]) -> pd.DataFrame:
    """Tabular view of records (index = unit_id)."""
    rows = []
    for uid, r in records.items():
        rows.append({
            COL_UNIT_ID: uid,
            COL_SPOT_CLASS: r.spot_class.value,
            COL_FIRST_TYPE: r.first_type,
            COL_SECOND_TYPE: r.second_type,
            COL_WEIGHT_FIRST: float(r.weight_first),
            COL_WEIGHT_SECOND: float(r.weight_second),
            COL_CONFIDENCE: r.confidence,
        })
    df = pd.DataFrame(rows, columns=[COL_UNIT_ID, *DECOMPOSITION_COLUMNS])
    return df.set_index(COL_UNIT_ID)

def referenced_types(records: Dict[str, DecompositionRecord]) -> List[str]:
    """Sorted set of every first/second type referenced by non-reject records."""
    out = set()
    for r in records.values():
        if r.is_reject:
            continue
        if r.first_type is not None:
            out.add(r.first_type)
        if r.second_type is not None:
            out.add(r.second_type)
    return sorted(out)

def summarize_decomposition(records: Dict[str, DecompositionRecord]) -> pd.DataFrame:
    """Counts per spot_class plus how many carry a secondary signal."""
    df = records_to_frame(records)
    if df.empty:
        return pd.DataFrame(columns=["n_units", "n_secondary"])
    has2 = pd.Series({u: r.has_secondary for u, r in records.items()})
    out = pd.DataFrame({
        "n_units": df.groupby(COL_SPOT_CLASS).size(),
        "n_secondary": has2.groupby(df[COL_SPOT_CLASS]).sum().astype(int),
    })
    return out.sort_index()
