"""
Balancer: merge raw and purified profiles into one final dataset.

Your core policy
----------------
- Start from the Purifier's per-unit status; excluded units never come back.
- If the spatial neighborhood score is undefined, keep the Purifier's default.
- If score >= threshold, take the purified candidate (even for a singlet).
- Otherwise keep the raw profile.
- Optionally swap first/second type labels when the transcriptomic
  neighborhood agrees more with the second type (labels only, never counts).

Lowering `threshold` can only move units from raw to purified.
"""

from __future__ import annotations

import warnings
from typing import Dict, Mapping, Optional

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .keys import (
    COL_FIRST_TYPE,
    COL_SECOND_TYPE,
    COL_SPOT_CLASS,
    OBS_PURIFICATION_STATUS,
    OBS_SWAP,
    OBS_SPATIAL_SCORE,
    OBS_FINAL_TOTAL,
)
from .purify import PurificationResult
from .records import BalancedUnit, DecompositionRecord, PurificationStatus

def _raw_row(raw_profiles, uid: str):
    if isinstance(raw_profiles, pd.DataFrame):
        return raw_profiles.loc[uid].to_numpy(dtype=np.float64)
    row = raw_profiles[uid]
    if sp.issparse(row):
        return row.tocsr()
    return np.asarray(row, dtype=np.float64)

def _result_row(result: PurificationResult, M, uid: str):
    """Row of a PurificationResult matrix; sparse matrices give a 1 x G CSR row."""
    i = result.row_index[uid]
    if sp.issparse(M):
        return M[i:i + 1]
    return np.array(M[i], dtype=np.float64)

def _should_swap(rec: DecompositionRecord, h: Optional[pd.DataFrame], min_frac: float) -> bool:
    if rec.second_type is None or h is None or rec.unit_id not in h.index:
        return False
    f1 = float(h.at[rec.unit_id, "first_type_fraction"])
    f2 = float(h.at[rec.unit_id, "second_type_fraction"])
    if not (np.isfinite(f1) and np.isfinite(f2)):
        return False
    return f2 > f1 and f2 >= min_frac

def balance(
    raw_profiles,
    purified_profiles: PurificationResult,
    records: Mapping[str, DecompositionRecord],
    scores: pd.Series,
    threshold: float,
    swap_enabled: bool,
    *,
    homogeneity: Optional[pd.DataFrame] = None,
    swap_min_fraction: float = 0.5,
    verbose: bool = True,
    logger=print,
) -> Dict[str, BalancedUnit]:
    """
    Parameters
    ----------
    raw_profiles : Mapping[unit_id -> counts] or DataFrame (index = unit_id)
      Unmodified counts of every included unit.
    purified_profiles : PurificationResult
      Output of `purify_counts` (default profiles, candidates, statuses).
    scores : pd.Series
      Spatial neighborhood score per unit (NaN = undefined).
    homogeneity : DataFrame
      `compute_type_homogeneity` output on the transcriptomic graph;
      required when swap_enabled.

    Returns
    -------
    dict[unit_id -> BalancedUnit] for every non-excluded unit, in input order.
    """
    def _log(msg: str):
        if bool(verbose):
            logger(msg)

    threshold = float(threshold)
    if not np.isfinite(threshold):
        raise ValueError(f"[balance] threshold must be finite, got {threshold}.")
    swap_min_fraction = float(swap_min_fraction)
    if not (0.0 <= swap_min_fraction <= 1.0):
        raise ValueError(f"[balance] swap_min_fraction must be in [0, 1], got {swap_min_fraction}.")
    if swap_enabled and homogeneity is None:
        raise ValueError("[balance] swap_enabled=True requires `homogeneity`.")
    if homogeneity is not None:
        for c in ("first_type_fraction", "second_type_fraction"):
            if c not in homogeneity.columns:
                raise KeyError(f"[balance] homogeneity missing column {c!r}.")
        homogeneity = homogeneity.copy()
        homogeneity.index = homogeneity.index.astype(str)

    scores = pd.Series(scores, dtype=float)
    scores.index = scores.index.astype(str)

    out: Dict[str, BalancedUnit] = {}
    n_undefined = n_override = n_kept_raw = n_swap = 0

    for uid, st in purified_profiles.status.items():
        uid = str(uid)
        if st.is_excluded:
            continue
        rec = records[uid]
        score = float(scores.get(uid, np.nan))

        if st is PurificationStatus.MISSING_REFERENCE:
            counts, status, source = _raw_row(raw_profiles, uid), st, "raw"
        elif not np.isfinite(score):
            n_undefined += 1
            counts, status = _result_row(purified_profiles, purified_profiles.counts, uid), st
            source = "default"
        elif score >= threshold:
            counts = _result_row(purified_profiles, purified_profiles.candidate_counts, uid)
            source = "candidate"
            status = PurificationStatus.PURIFIED if rec.has_secondary else PurificationStatus.UNCHANGED
            if status is PurificationStatus.PURIFIED and st is not PurificationStatus.PURIFIED:
                n_override += 1
        else:
            counts, status, source = _raw_row(raw_profiles, uid), PurificationStatus.UNCHANGED, "raw"
            if st is PurificationStatus.PURIFIED:
                n_kept_raw += 1

        swap = bool(swap_enabled) and _should_swap(rec, homogeneity, swap_min_fraction)
        if swap:
            rec = rec.swapped()
            n_swap += 1

        out[uid] = BalancedUnit(unit_id=uid, counts=counts, status=status, swap=swap, record=rec, score=score,
                               source=source)

    if n_undefined:
        warnings.warn(
            f"[balance] {n_undefined} units have an undefined neighborhood score; default decision used.",
            RuntimeWarning,
        )
    _log(f"[balance] units={len(out)}, undefined_scores={n_undefined}, "
         f"purified_by_score={n_override}, kept_raw_by_score={n_kept_raw}, swapped={n_swap}")
    return out

def balanced_to_frame(balanced: Mapping[str, BalancedUnit], *, score_key: str = OBS_SPATIAL_SCORE) -> pd.DataFrame:
    """Per-unit metadata table (index = unit_id)."""
    rows = []
    for uid, b in balanced.items():
        rows.append({
            "unit_id": uid,
            OBS_PURIFICATION_STATUS: b.status.value,
            OBS_SWAP: bool(b.swap),
            COL_FIRST_TYPE: b.record.first_type,
            COL_SECOND_TYPE: b.record.second_type,
            COL_SPOT_CLASS: b.record.spot_class.value,
            score_key: float(b.score),
            OBS_FINAL_TOTAL: float(b.counts.sum()),
        })
    cols = ["unit_id", OBS_PURIFICATION_STATUS, OBS_SWAP, COL_FIRST_TYPE, COL_SECOND_TYPE,
            COL_SPOT_CLASS, score_key, OBS_FINAL_TOTAL]
    return pd.DataFrame(rows, columns=cols).set_index("unit_id")
