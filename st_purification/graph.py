"""
Neighbor graph builder (spatial or transcriptomic kNN) on a cKDTree.

Determinism
-----------
- Ties at the k-th distance are broken by unit identifier order (rank of the
  id in sorted order), so the graph does not depend on input row order.
- To honor that, each query collects *every* candidate within the k-th
  distance (inclusive) and keeps the first k by (distance, id rank).
- Self is removed by index, so duplicate coordinates stay neighbors at 0.
- The tree is built once and queried read-only; chunks may run in threads.
  Output is independent of `workers` / `chunk_size`.

Pruning
-------
Edges with distance > radius are removed AFTER the k-nearest set is fixed.
Pruning never adds edges; a unit may end with fewer than k or zero neighbors.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.sparse import csr_matrix
from scipy.spatial import cKDTree

# relative slack on the k-th distance when collecting tie candidates
_TIE_RTOL = 1e-9
_TIE_ATOL = 1e-12

# -----------------------------
# container
# -----------------------------

@dataclass(frozen=True)
class NeighborGraph:
    """
    Directed kNN graph in CSR layout.

    Row i (unit_ids[i]) has neighbors indices[indptr[i]:indptr[i+1]] with the
    matching distances, ordered by (distance, id rank). No self-loops.
    """

    unit_ids: np.ndarray
    indptr: np.ndarray
    indices: np.ndarray
    distances: np.ndarray
    k: int
    radius: Optional[float] = None

    @property
    def n_units(self) -> int:
        return int(self.unit_ids.shape[0])

    @property
    def n_edges(self) -> int:
        return int(self.indices.shape[0])

    @property
    def n_neighbors(self) -> np.ndarray:
        return np.diff(self.indptr)

    def neighbors(self, unit_id) -> List[Tuple[str, float]]:
        """[(neighbor_id, distance), ...] for one unit."""
        hits = np.where(self.unit_ids == str(unit_id))[0]
        if hits.size == 0:
            raise KeyError(f"[NeighborGraph] unknown unit {unit_id!r}")
        i = int(hits[0])
        a, b = int(self.indptr[i]), int(self.indptr[i + 1])
        return [(str(self.unit_ids[j]), float(d)) for j, d in zip(self.indices[a:b], self.distances[a:b])]

    def prune(self, radius: float) -> "NeighborGraph":
        """New graph keeping only edges with distance <= radius."""
        radius = _check_radius(radius)
        keep = self.distances <= radius
        rows = np.repeat(np.arange(self.n_units, dtype=np.int64), self.n_neighbors)
        counts = np.bincount(rows[keep], minlength=self.n_units)
        indptr = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)
        r = radius if self.radius is None else min(radius, float(self.radius))
        return NeighborGraph(
            unit_ids=self.unit_ids,
            indptr=indptr,
            indices=self.indices[keep],
            distances=self.distances[keep],
            k=self.k,
            radius=r,
        )

    def subset(self, unit_ids: Sequence[str]) -> "NeighborGraph":
        """Induced subgraph on `unit_ids` (edges to dropped units are removed, none added)."""
        wanted = {str(u) for u in unit_ids}
        keep_node = np.array([str(u) in wanted for u in self.unit_ids], dtype=bool)
        new_pos = np.full(self.n_units, -1, dtype=np.int64)
        new_pos[keep_node] = np.arange(int(keep_node.sum()), dtype=np.int64)

        rows = np.repeat(np.arange(self.n_units, dtype=np.int64), self.n_neighbors)
        keep_edge = keep_node[rows] & keep_node[self.indices]
        counts = np.bincount(new_pos[rows[keep_edge]], minlength=int(keep_node.sum()))
        indptr = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)
        return NeighborGraph(
            unit_ids=self.unit_ids[keep_node],
            indptr=indptr,
            indices=new_pos[self.indices[keep_edge]],
            distances=self.distances[keep_edge],
            k=self.k,
            radius=self.radius,
        )

    def edge_set(self) -> Set[Tuple[str, str]]:
        src = np.repeat(self.unit_ids, self.n_neighbors)
        dst = self.unit_ids[self.indices]
        return {(str(a), str(b)) for a, b in zip(src, dst)}

    def to_sparse(self) -> csr_matrix:
        """(n, n) CSR distance matrix (explicit zeros kept for duplicate coords)."""
        n = self.n_units
        return csr_matrix((self.distances, self.indices, self.indptr), shape=(n, n))

    def to_edge_frame(self) -> pd.DataFrame:
        src = np.repeat(self.unit_ids, self.n_neighbors)
        return pd.DataFrame({
            "src": src.astype(str),
            "dst": self.unit_ids[self.indices].astype(str),
            "distance": self.distances.astype(float),
        })

# -----------------------------
# helpers
# -----------------------------

def _check_radius(radius) -> float:
    if radius is None:
        raise ValueError("prune=True requires a radius.")
    radius = float(radius)
    if not np.isfinite(radius) or radius < 0:
        raise ValueError(f"radius must be finite and >= 0, got {radius}.")
    return radius

def _id_ranks(unit_ids: np.ndarray) -> np.ndarray:
    order = np.argsort(unit_ids.astype(str), kind="stable")
    rank = np.empty(unit_ids.shape[0], dtype=np.int64)
    rank[order] = np.arange(unit_ids.shape[0], dtype=np.int64)
    return rank

def _knn_chunk(tree: cKDTree, X: np.ndarray, rank: np.ndarray, start: int, stop: int, k: int, workers: int = 1):
    """Exact kNN with id-rank tie-breaking for rows [start, stop); `workers` goes to cKDTree."""
    Q = X[start:stop]
    dist, _ = tree.query(Q, k=k + 1, workers=workers)
    dist = np.asarray(dist, dtype=np.float64).reshape(Q.shape[0], k + 1)
    # self (distance 0) is the smallest entry, so the (k+1)-th overall distance
    # is the k-th non-self distance
    r_k = dist[:, k]
    balls = tree.query_ball_point(Q, r=r_k * (1.0 + _TIE_RTOL) + _TIE_ATOL, workers=workers)

    nbr_idx, nbr_dist, counts = [], [], np.zeros(Q.shape[0], dtype=np.int64)
    for row, cand in enumerate(balls):
        i = start + row
        cand = np.asarray(cand, dtype=np.int64)
        cand = cand[cand != i]
        d = np.sqrt(((X[cand] - X[i]) ** 2).sum(axis=1))
        order = np.lexsort((rank[cand], d))[:k]
        nbr_idx.append(cand[order])
        nbr_dist.append(d[order])
        counts[row] = order.size
    return counts, nbr_idx, nbr_dist

# -----------------------------
# public API
# -----------------------------

def build_graph(
    coordinates,
    k: int,
    *,
    prune: bool = False,
    radius: Optional[float] = None,
    unit_ids: Optional[Sequence[str]] = None,
    workers: int = 1,
    chunk_size: int = 50000,
    verbose: bool = False,
    logger=print,
) -> NeighborGraph:
    """
    Build a kNN graph over `coordinates` (n, d) by Euclidean distance.

    Parameters
    ----------
    coordinates:
        2D spatial coordinates or a transcriptomic embedding (n, d).
    k:
        Neighbors per unit (capped at n-1 with a RuntimeWarning).
    prune / radius:
        If prune, drop edges with distance > radius after k-selection.
    unit_ids:
        Identifiers (default: "0".."n-1"); also define tie-break order.
    workers / chunk_size:
        Thread count and rows per query chunk; never change the result.
    """
    def _log(msg: str):
        if bool(verbose):
            logger(msg)

    X = np.asarray(coordinates, dtype=np.float64)
    if X.ndim != 2:
        raise ValueError(f"[build_graph] coordinates must be 2D, got shape {X.shape}.")
    X = np.ascontiguousarray(X)
    n = X.shape[0]
    if not np.isfinite(X).all():
        raise ValueError("[build_graph] coordinates contain NaN/Inf.")

    k = int(k)
    if k <= 0:
        raise ValueError("[build_graph] k must be >= 1.")
    if prune:
        radius = _check_radius(radius)

    if unit_ids is None:
        ids = np.asarray([str(i) for i in range(n)], dtype=object)
    else:
        ids = np.asarray([str(u) for u in unit_ids], dtype=object)
        if ids.shape[0] != n:
            raise ValueError(f"[build_graph] {ids.shape[0]} unit ids for {n} coordinates.")
        if len(set(ids.tolist())) != n:
            raise ValueError("[build_graph] unit ids must be unique.")

    k_eff = min(k, max(n - 1, 0))
    if k_eff < k:
        warnings.warn(f"[build_graph] k={k} capped to n-1={k_eff}.", RuntimeWarning)

    if k_eff == 0:
        empty = NeighborGraph(
            unit_ids=ids,
            indptr=np.zeros(n + 1, dtype=np.int64),
            indices=np.zeros(0, dtype=np.int64),
            distances=np.zeros(0, dtype=np.float64),
            k=k,
        )
        return empty.prune(radius) if prune else empty

    rank = _id_ranks(ids)
    tree = cKDTree(X)
    chunk_size = max(1, int(chunk_size))
    bounds = [(s, min(n, s + chunk_size)) for s in range(0, n, chunk_size)]

    _log(f"[build_graph] n={n}, d={X.shape[1]}, k={k_eff}, chunks={len(bounds)}, workers={workers}")
    # one chunk: cKDTree threads; several chunks: joblib threads, one cKDTree worker each
    if int(workers) == 1 or len(bounds) == 1:
        parts = [_knn_chunk(tree, X, rank, a, b, k_eff, workers=int(workers)) for a, b in bounds]
    else:
        parts = Parallel(n_jobs=int(workers), prefer="threads")(
            delayed(_knn_chunk)(tree, X, rank, a, b, k_eff) for a, b in bounds
        )

    counts = np.concatenate([p[0] for p in parts])
    indices = np.concatenate([a for p in parts for a in p[1]]).astype(np.int64)
    distances = np.concatenate([d for p in parts for d in p[2]]).astype(np.float64)
    indptr = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)

    graph = NeighborGraph(unit_ids=ids, indptr=indptr, indices=indices, distances=distances, k=k_eff)
    if prune:
        graph = graph.prune(radius)
        _log(f"[build_graph] pruned at radius={radius}: edges={graph.n_edges}, "
             f"isolated={int((graph.n_neighbors == 0).sum())}")
    return graph
