"""Small array utilities used across the package.

Centralizing these avoids subtle drift (dtype/eps handling) across modules.
"""

from __future__ import annotations

import numpy as np
from scipy.sparse import diags, issparse

def to_dense(X, *, dtype=None):
    """Convert sparse matrix to dense ndarray (copy only if needed)."""
    if issparse(X):
        X = X.toarray()
    X = np.asarray(X)
    if dtype is not None and X.dtype != dtype:
        X = X.astype(dtype, copy=False)
    return X

def row_sums(X) -> np.ndarray:
    """Row totals as a flat float64 vector (works for sparse and dense)."""
    if issparse(X):
        return np.asarray(X.sum(axis=1), dtype=np.float64).ravel()
    return np.asarray(X, dtype=np.float64).sum(axis=1)

def row_unit_sum(X: np.ndarray, *, eps: float = 1e-12):
    """Row-wise unit-sum normalization.

    Rows with total <= eps are left as zeros.

    Returns
    -------
    Xn : np.ndarray
        Normalized matrix.
    totals : np.ndarray
        Row totals (before normalization).
    """
    X = np.asarray(X, dtype=np.float64)
    totals = X.sum(axis=1)
    out = np.zeros_like(X)
    ok = np.isfinite(totals) & (totals > eps)
    out[ok] = X[ok] / totals[ok, None]
    return out, totals

def log1p_library_normalize(X, *, target_sum: float = 1e4, eps: float = 1e-12):
    """Library-size normalize each row to `target_sum`, then log1p.

    Sparse input returns CSR with the same sparsity pattern (log1p(0) == 0).
    """
    if issparse(X):
        X = X.tocsr().astype(np.float64)
        totals = np.asarray(X.sum(axis=1), dtype=np.float64).ravel()
        scale = np.zeros_like(totals)
        ok = np.isfinite(totals) & (totals > eps)
        scale[ok] = float(target_sum) / totals[ok]
        Xn = (diags(scale) @ X).tocsr()
        Xn.data = np.log1p(Xn.data)
        return Xn
    X = to_dense(X, dtype=np.float64)
    Xn, _ = row_unit_sum(X, eps=eps)
    return np.log1p(Xn * float(target_sum))
