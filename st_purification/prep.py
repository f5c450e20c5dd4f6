"""
Preparation / ensure utilities.

This module groups the representations the neighbor graphs are built on:
- Spatial coordinates (raw, and normalized by the median kNN distance)
- A transcriptomic embedding (log1p library-size normalization + PCA)

Design:
- Array-level helpers (`normalize_spatial_coords`, `compute_transcriptomic_embedding`)
  have no AnnData dependency and are what the runner uses.
- "ensure_*" functions work on AnnData and are idempotent: by default they DO NOT
  overwrite existing representations unless overwrite=True.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp

try:
    import scanpy as sc
except ImportError: # pragma: no cover
    sc = None

from sklearn.decomposition import PCA
from sklearn.neighbors import NearestNeighbors

from .array_ops import log1p_library_normalize
from .keys import (
    OBSM_SPATIAL,
    OBSM_SPATIAL_NORMED,
    OBSM_EMBEDDING,
    UNS_SPATIAL_NORM_INFO,
)

# ============================================================
# Spatial helpers
# ============================================================

def get_spatial_coords(adata, spatial_key=OBSM_SPATIAL, xy_cols=None) -> np.ndarray:
    if spatial_key in adata.obsm:
        return np.asarray(adata.obsm[spatial_key], dtype=float)
    if xy_cols is not None:
        return np.asarray(adata.obs[list(xy_cols)], dtype=float)
    raise ValueError(
        f"Spatial coordinates not found. Provide adata.obsm['{spatial_key}'] "
        "or specify xy_cols from adata.obs."
    )

def spatial_scale_median_knn(X, k: int = 10) -> float:
    """Median distance to the k nearest (non-self) neighbors."""
    X = np.asarray(X, dtype=float)
    if X.ndim != 2 or X.shape[0] < 2:
        raise ValueError(f"[spatial_scale_median_knn] need >= 2 points in 2D array, got shape {X.shape}.")
    k = int(min(max(1, k), X.shape[0] - 1))
    nn = NearestNeighbors(n_neighbors=k + 1, metric="euclidean").fit(X)
    dist, _ = nn.kneighbors(X)
    return float(np.median(dist[:, 1:]))

def normalize_spatial_coords(X, *, k: int = 10) -> Tuple[np.ndarray, float]:
    """
    spatial_normed = spatial / median_knn_dist

    With this scale, a pruning radius of ~1.5 means "about one spot spacing".
    """
    X = np.asarray(X, dtype=float)
    scale = spatial_scale_median_knn(X, k=k)
    if not np.isfinite(scale) or scale <= 0:
        raise ValueError(f"Invalid spatial scale computed: {scale}")
    return X / scale, scale

def ensure_spatial_normed(
    adata,
    *,
    spatial_key=OBSM_SPATIAL,
    xy_cols=None,
    k=10,
    out_key=OBSM_SPATIAL_NORMED,
    info_key=UNS_SPATIAL_NORM_INFO,
    overwrite=False,
):
    """
    Ensure normalized spatial coordinates exist in adata.obsm[out_key].

    Stores metadata in adata.uns[info_key].

    Returns
    -------
    scale : float
        The median kNN distance used for normalization.
    """
    if (not overwrite) and (out_key in adata.obsm):
        info = adata.uns.get(info_key, {})
        return float(info.get("scale_median_knn", np.nan))

    X = get_spatial_coords(adata, spatial_key=spatial_key, xy_cols=xy_cols)
    Xn, scale = normalize_spatial_coords(X, k=k)

    adata.obsm[out_key] = Xn.astype(float, copy=False)
    adata.uns[info_key] = {
        "spatial_key": spatial_key if spatial_key in adata.obsm else None,
        "xy_cols": list(xy_cols) if xy_cols is not None else None,
        "k": int(k),
        "scale_median_knn": float(scale),
    }
    return float(scale)

# ============================================================
# Transcriptomic embedding
# ============================================================

def _cap_n_comps(n_comps: int, n_obs: int, n_vars: int) -> int:
    n_comps = int(n_comps)
    if n_comps < 1:
        raise ValueError("n_comps must be >= 1.")
    return max(1, min(n_comps, n_obs - 1, n_vars - 1))

def compute_transcriptomic_embedding(
    counts,
    *,
    n_comps: int = 30,
    target_sum: float = 1e4,
    random_state: int = 0,
) -> np.ndarray:
    """
    log1p(counts / total * target_sum) -> PCA(n_comps).

    `counts` is (units x genes), dense or sparse. n_comps is capped by the data shape.
    Sparse input stays sparse: PCA centers it implicitly (arpack).
    """
    Xl = log1p_library_normalize(counts, target_sum=target_sum)
    if Xl.shape[0] < 2 or Xl.shape[1] < 2:
        raise ValueError(f"[compute_transcriptomic_embedding] need >= 2 units and genes, got {Xl.shape}.")
    n_comps = _cap_n_comps(n_comps, *Xl.shape)
    solver = "arpack" if sp.issparse(Xl) else "full"
    pca = PCA(n_components=n_comps, svd_solver=solver, random_state=int(random_state))
    return np.asarray(pca.fit_transform(Xl), dtype=np.float64)

def ensure_transcriptomic_embedding(
    adata,
    *,
    key=OBSM_EMBEDDING,
    layer: Optional[str] = None,
    n_comps: int = 30,
    target_sum: float = 1e4,
    overwrite: bool = False,
):
    """
    Ensure adata.obsm[key] holds a PCA embedding of log-normalized counts.

    Works on a copy of the counts (adata.X or adata.layers[layer]); the
    original matrix is not modified.
    """
    if sc is None:
        raise ImportError("scanpy is required for ensure_transcriptomic_embedding")

    if (not overwrite) and (key in adata.obsm):
        return np.asarray(adata.obsm[key])

    tmp = adata.copy()
    if layer is not None:
        if layer not in tmp.layers:
            raise KeyError(f"[ensure_transcriptomic_embedding] layer {layer!r} not found.")
        tmp.X = tmp.layers[layer].copy()
    tmp.X = tmp.X.astype(np.float64)
    sc.pp.normalize_total(tmp, target_sum=float(target_sum))
    sc.pp.log1p(tmp)
    n_comps = _cap_n_comps(n_comps, tmp.n_obs, tmp.n_vars)
    sc.pp.pca(tmp, n_comps=n_comps, svd_solver="arpack")

    Z = np.asarray(tmp.obsm["X_pca"], dtype=np.float64)
    adata.obsm[key] = Z
    return Z

