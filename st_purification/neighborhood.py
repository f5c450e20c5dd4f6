"""
Neighborhood metric aggregation over a NeighborGraph.

score(u) = mean over scorable neighbors v of metric(record_v, record_u)

- A neighbor is scorable if it has a record and is not a reject.
- Units with zero scorable neighbors get NaN ("undefined"); NaN is propagated
  and must be excluded from threshold comparisons downstream.

Built-in metrics (vectorized over edges):
  "weight_second"      neighbor.weight_second          (spatial diffusion)
  "type_mismatch"      neighbor.first_type != center.first_type
  "first_type_match"   neighbor.first_type == center.first_type
  "second_type_match"  neighbor.first_type == center.second_type
A callable is evaluated per edge, either as `metric(neighbor_record)` or, when it
takes two positional arguments, as `metric(neighbor_record, center_record)`.
"""

from __future__ import annotations

import inspect
from typing import Callable, Dict, Union

import numpy as np
import pandas as pd

from .exceptions import UndefinedNeighborhoodScore
from .graph import NeighborGraph
from .records import DecompositionRecord

BUILTIN_METRICS = ("weight_second", "type_mismatch", "first_type_match", "second_type_match")

# metrics that need the center unit's own record
_CENTER_METRICS = {"type_mismatch", "first_type_match", "second_type_match"}

def _record_arrays(graph: NeighborGraph, records: Dict[str, DecompositionRecord]):
    n = graph.n_units
    scorable = np.zeros(n, dtype=bool)
    has_record = np.zeros(n, dtype=bool)
    t1 = np.full(n, None, dtype=object)
    t2 = np.full(n, None, dtype=object)
    w2 = np.zeros(n, dtype=np.float64)
    for i, uid in enumerate(graph.unit_ids):
        r = records.get(str(uid))
        if r is None:
            continue
        has_record[i] = True
        t1[i] = r.first_type
        t2[i] = r.second_type
        w2[i] = r.weight_second
        scorable[i] = not r.is_reject
    return scorable, has_record, t1, t2, w2

def _takes_center(metric) -> bool:
    """True if a metric callable accepts (neighbor, center) rather than (neighbor)."""
    try:
        params = list(inspect.signature(metric).parameters.values())
    except (TypeError, ValueError):
        return False
    if any(p.kind is p.VAR_POSITIONAL for p in params):
        return True
    positional = [p for p in params if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)]
    return len(positional) >= 2

def _edge_values(metric, graph, records, src, dst, arrays):
    scorable, has_record, t1, t2, w2 = arrays
    if metric == "weight_second":
        return w2[dst]
    if metric == "type_mismatch":
        return (t1[dst] != t1[src]).astype(np.float64)
    if metric == "first_type_match":
        return (t1[dst] == t1[src]).astype(np.float64)
    if metric == "second_type_match":
        ok = np.array([x is not None for x in t2[src]], dtype=bool)
        return (ok & (t1[dst] == t2[src])).astype(np.float64)
    if callable(metric):
        ids = graph.unit_ids
        with_center = _takes_center(metric)
        vals = np.empty(src.shape[0], dtype=np.float64)
        for e, (a, b) in enumerate(zip(src, dst)):
            nb = records[str(ids[b])]
            if with_center:
                vals[e] = float(metric(nb, records.get(str(ids[a]))))
            else:
                vals[e] = float(metric(nb))
        return vals
    raise ValueError(f"metric must be callable or one of {BUILTIN_METRICS}, got {metric!r}")

def aggregate(
    graph: NeighborGraph,
    records: Dict[str, DecompositionRecord],
    metric: Union[str, Callable[..., float]],
) -> pd.Series:
    """
    Unweighted mean of `metric` over each unit's scorable neighbors.

    Returns
    -------
    pd.Series indexed by unit_id (graph order); NaN = undefined.
    """
    if isinstance(metric, str) and metric not in BUILTIN_METRICS:
        raise ValueError(f"[aggregate] unknown metric {metric!r}; use one of {BUILTIN_METRICS} or a callable.")

    n = graph.n_units
    arrays = _record_arrays(graph, records)
    scorable, has_record = arrays[0], arrays[1]

    src = np.repeat(np.arange(n, dtype=np.int64), graph.n_neighbors)
    dst = graph.indices
    ok = scorable[dst]
    if isinstance(metric, str) and metric in _CENTER_METRICS:
        ok &= has_record[src]
    src, dst = src[ok], dst[ok]

    vals = _edge_values(metric, graph, records, src, dst, arrays)
    sums = np.bincount(src, weights=vals, minlength=n)
    cnt = np.bincount(src, minlength=n)

    score = np.full(n, np.nan, dtype=np.float64)
    defined = cnt > 0
    score[defined] = sums[defined] / cnt[defined]

    name = metric if isinstance(metric, str) else getattr(metric, "__name__", "score")
    return pd.Series(score, index=pd.Index(graph.unit_ids.astype(str), name="unit_id"), name=name)

def compute_type_homogeneity(graph: NeighborGraph, records: Dict[str, DecompositionRecord]) -> pd.DataFrame:
    """
    Per unit: fraction of scorable neighbors whose first_type equals the unit's
    own first_type / second_type, plus the number of scorable neighbors.
    """
    first = aggregate(graph, records, "first_type_match")
    second = aggregate(graph, records, "second_type_match")
    scorable = _record_arrays(graph, records)[0]
    src = np.repeat(np.arange(graph.n_units, dtype=np.int64), graph.n_neighbors)
    n_valid = np.bincount(src[scorable[graph.indices]], minlength=graph.n_units)
    return pd.DataFrame({
        "first_type_fraction": first.to_numpy(),
        "second_type_fraction": second.to_numpy(),
        "n_neighbors": n_valid.astype(int),
    }, index=first.index)

def require_defined_score(scores: pd.Series, unit_id) -> float:
    """Return the score of `unit_id`, raising UndefinedNeighborhoodScore if NaN/absent."""
    v = scores.get(str(unit_id), np.nan)
    if v is None or not np.isfinite(v):
        raise UndefinedNeighborhoodScore(unit_id)
    return float(v)

def count_undefined(scores: pd.Series) -> int:
    return int(pd.isna(scores).sum())
