from __future__ import annotations

import warnings
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .array_ops import to_dense, row_sums
from .balance import balance, balanced_to_frame
from .decomposition import normalize_decomposition, find_unknown_units
from .graph import build_graph
from .neighborhood import aggregate, compute_type_homogeneity
from .prep import spatial_scale_median_knn, compute_transcriptomic_embedding
from .purify import purify_counts
from .records import DecompositionRecord
from .reference import ReferenceProfileStore
from . import keys as K

@dataclass
class PurificationConfig:
    """
    Run parameters. Spatial radii are in normalized units (median kNN distance = 1)
    when `normalize_spatial` is on.
    """
    # purifier
    purify_singlets: bool = False
    chunk_size: int = 10000
    n_jobs: int = 1

    # spatial graph
    spatial_k: int = 6
    spatial_prune: bool = True
    spatial_radius: Optional[float] = 1.5
    normalize_spatial: bool = True
    spatial_norm_k: int = 6

    # transcriptomic graph
    transcriptomic_k: int = 15
    transcriptomic_prune: bool = False
    transcriptomic_radius: Optional[float] = None
    embedding_n_comps: int = 30

    # balancer
    threshold: float = 0.05
    swap_enabled: bool = False
    swap_min_fraction: float = 0.5

    graph_workers: int = 1

# ------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------

class _RawRows:
    """Read-only unit_id -> raw row view over the count matrix (sparse rows stay sparse)."""

    def __init__(self, counts, row_of: Mapping[str, int]):
        self._X = counts
        self._row_of = row_of

    def __getitem__(self, unit_id) -> np.ndarray:
        i = self._row_of[str(unit_id)]
        if sp.issparse(self._X):
            return self._X[i:i + 1]
        return np.array(self._X[i], dtype=np.float64)

def _assemble_counts(balanced, counts, row_of: Mapping[str, int], result):
    """
    Final (units x genes) matrix in `balanced` order, taken row by row from the
    raw, default and candidate matrices. Sparse input is never densified.
    """
    sources = {
        "raw": (counts, row_of),
        "default": (result.counts, result.row_index),
        "candidate": (result.candidate_counts, result.row_index),
    }
    units = list(balanced.values())
    order = np.empty(len(units), dtype=np.int64)
    blocks, offset = [], 0
    for name, (M, index) in sources.items():
        pos = np.asarray([k for k, b in enumerate(units) if b.source == name], dtype=np.int64)
        rows = np.asarray([index[units[k].unit_id] for k in pos], dtype=np.int64)
        blocks.append(M[rows])
        order[pos] = offset + np.arange(pos.size)
        offset += pos.size
    if sp.issparse(counts):
        stacked = sp.vstack([sp.csr_matrix(b, dtype=np.float64) for b in blocks], format="csr")
        return stacked[order]
    stacked = np.vstack([np.asarray(b, dtype=np.float64) for b in blocks])
    return stacked[order]

def _validate_cfg(cfg: PurificationConfig):
    for name in ("chunk_size", "spatial_k", "transcriptomic_k", "spatial_norm_k", "embedding_n_comps"):
        if int(getattr(cfg, name)) < 1:
            raise ValueError(f"[run_purification] cfg.{name} must be >= 1.")
    if cfg.spatial_prune and cfg.spatial_radius is None:
        raise ValueError("[run_purification] cfg.spatial_prune=True requires cfg.spatial_radius.")
    if cfg.transcriptomic_prune and cfg.transcriptomic_radius is None:
        raise ValueError("[run_purification] cfg.transcriptomic_prune=True requires cfg.transcriptomic_radius.")
    if not np.isfinite(float(cfg.threshold)):
        raise ValueError("[run_purification] cfg.threshold must be finite.")
    if not (0.0 <= float(cfg.swap_min_fraction) <= 1.0):
        raise ValueError("[run_purification] cfg.swap_min_fraction must be in [0, 1].")

def _coerce_counts(counts, unit_ids, genes, genes_by_units: bool):
    if isinstance(counts, pd.DataFrame):
        df = counts.T if genes_by_units else counts
        if unit_ids is None:
            unit_ids = df.index
        if genes is None:
            genes = df.columns
        counts = df.to_numpy()
    elif genes_by_units:
        counts = counts.T
    if unit_ids is None or genes is None:
        raise ValueError("[run_purification] unit_ids and genes are required for array input.")
    unit_ids = np.asarray([str(u) for u in unit_ids], dtype=object)
    genes = [str(g) for g in genes]
    if sp.issparse(counts):
        counts = counts.tocsr()
    else:
        counts = np.asarray(counts)
    if counts.ndim != 2 or counts.shape != (unit_ids.shape[0], len(genes)):
        raise ValueError(
            f"[run_purification] counts shape {getattr(counts, 'shape', None)} != "
            f"({unit_ids.shape[0]}, {len(genes)})."
        )
    return counts, unit_ids, genes

def _coerce_reference(reference, genes) -> ReferenceProfileStore:
    if isinstance(reference, ReferenceProfileStore):
        if reference.genes == list(genes):
            return reference
        return ReferenceProfileStore.from_frame(reference.to_frame(), genes=genes)
    if isinstance(reference, pd.DataFrame):
        return ReferenceProfileStore.from_frame(reference, genes=genes)
    raise TypeError(f"[run_purification] unsupported reference type {type(reference).__name__}")

def _coerce_coords(X, n: int, name: str) -> Optional[np.ndarray]:
    if X is None:
        return None
    X = np.asarray(X, dtype=float)
    if X.ndim != 2 or X.shape[0] != n:
        raise ValueError(f"[run_purification] {name} must have shape ({n}, d), got {X.shape}.")
    if not np.isfinite(X).all():
        raise ValueError(f"[run_purification] {name} contains NaN/Inf.")
    return X

def summarize_purification(status_table: pd.DataFrame) -> Dict[str, Any]:
    """Counts per status, swaps, undefined scores and the median purified fraction."""
    st = status_table[K.OBS_PURIFICATION_STATUS].astype(str)
    included = status_table[~st.str.startswith("excluded")]

    def _num(col):
        if col not in included.columns:
            return pd.Series(np.nan, index=included.index, dtype=float)
        return pd.to_numeric(included[col], errors="coerce")

    frac = _num(K.OBS_PURIFIED_FRACTION)
    purified = frac[st.loc[included.index] == "purified"].dropna()
    swap = included[K.OBS_SWAP].fillna(False).astype(bool) if K.OBS_SWAP in included.columns else None
    return {
        "n_units": int(status_table.shape[0]),
        "n_output": int(included.shape[0]),
        "status_counts": {str(k): int(v) for k, v in st.value_counts().sort_index().items()},
        "n_swapped": int(swap.sum()) if swap is not None else 0,
        "n_undefined_score": int(_num(K.OBS_SPATIAL_SCORE).isna().sum()),
        "median_purified_fraction": float(purified.median()) if purified.size else float("nan"),
    }

# ------------------------------------------------------------
# Runner
# ------------------------------------------------------------

def run_purification(
    counts,
    unit_ids: Optional[Sequence[str]],
    genes: Optional[Sequence[str]],
    decomposition,
    reference,
    *,
    spatial=None,
    embedding=None,
    cfg: PurificationConfig = PurificationConfig(),
    known_types=None,
    weights_doublet: Optional[pd.DataFrame] = None,
    genes_by_units: bool = False,
    verbose: bool = True,
    logger=print,
) -> Dict[str, Any]:
    """
    Purify -> score neighborhoods -> balance, end-to-end.

    Parameters
    ----------
    counts:
        (units x genes) dense / sparse / DataFrame. With genes_by_units=True a
        (genes x units) input is transposed first.
    decomposition:
        Decomposition table (DataFrame) or already normalized records.
    reference:
        ReferenceProfileStore or DataFrame (types x genes); aligned to `genes`.
    spatial / embedding:
        (units x d) arrays aligned to the count rows. Without `spatial` every
        score is undefined and the Purifier's default decision is kept.
        Without `embedding`, one is computed when swapping is enabled.

    Returns
    -------
    out : dict with the final matrix, metadata, status table and intermediates.

    Nothing is computed until every input has been validated.
    """
    def _log(msg: str):
        if bool(verbose):
            logger(msg)

    out: Dict[str, Any] = {"cfg": asdict(cfg)}
    n_steps = 6

    # 1) validate everything
    _log(f"[run_purification] Step 1/{n_steps}: validate inputs")
    _validate_cfg(cfg)
    counts, unit_ids, genes = _coerce_counts(counts, unit_ids, genes, genes_by_units)
    n = unit_ids.shape[0]
    if len(set(unit_ids.tolist())) != n:
        raise ValueError("[run_purification] unit ids must be unique.")
    spatial = _coerce_coords(spatial, n, "spatial")
    embedding = _coerce_coords(embedding, n, "embedding")
    store = _coerce_reference(reference, genes)

    if isinstance(decomposition, pd.DataFrame):
        records: Dict[str, DecompositionRecord] = normalize_decomposition(
            decomposition, known_types=known_types, unit_ids=unit_ids, weights_doublet=weights_doublet,
        )
    else:
        universe = set(unit_ids.tolist())
        records = {str(u): r for u, r in dict(decomposition).items() if str(u) in universe}
    unknown = find_unknown_units(records, unit_ids)
    out["records"] = records
    out["unknown_units"] = unknown
    _log(f"[run_purification] units={n}, genes={len(genes)}, records={len(records)}, unknown={len(unknown)}")

    # 2) purify
    _log(f"[run_purification] Step 2/{n_steps}: purify")
    result = purify_counts(
        counts, unit_ids, records, store,
        genes=genes,
        purify_singlets=cfg.purify_singlets,
        chunk_size=cfg.chunk_size,
        n_jobs=cfg.n_jobs,
        verbose=verbose,
        logger=logger,
    )
    out["purification"] = result

    row_of = {u: i for i, u in enumerate(unit_ids.tolist())}
    incl_ids = [str(u) for u in result.unit_ids]
    incl_rows = np.asarray([row_of[u] for u in incl_ids], dtype=np.int64)

    # 3) spatial graph + contamination score
    _log(f"[run_purification] Step 3/{n_steps}: spatial neighborhood score")
    if spatial is None or incl_rows.size == 0:
        scores = pd.Series(np.nan, index=pd.Index(incl_ids, name="unit_id"), name="weight_second", dtype=float)
        out["spatial_graph"] = None
        _log("[run_purification] no spatial coordinates; all scores undefined.")
    else:
        coords = spatial[incl_rows]
        if cfg.normalize_spatial and coords.shape[0] >= 2:
            scale = spatial_scale_median_knn(coords, k=cfg.spatial_norm_k)
            if np.isfinite(scale) and scale > 0:
                coords = coords / scale
                out["spatial_scale"] = float(scale)
                _log(f"[run_purification] spatial scale (median kNN) = {scale:.4g}")
            else:
                warnings.warn(
                    f"[run_purification] degenerate spatial scale {scale}; coordinates left unnormalized.",
                    RuntimeWarning,
                )
        g_sp = build_graph(
            coords, cfg.spatial_k,
            prune=cfg.spatial_prune, radius=cfg.spatial_radius,
            unit_ids=incl_ids, workers=cfg.graph_workers,
            verbose=verbose, logger=logger,
        )
        scores = aggregate(g_sp, records, "weight_second")
        out["spatial_graph"] = g_sp
    out["scores"] = scores

    # 4) transcriptomic graph + homogeneity (swap only)
    _log(f"[run_purification] Step 4/{n_steps}: transcriptomic homogeneity")
    homogeneity = None
    out["transcriptomic_graph"] = None
    if cfg.swap_enabled and incl_rows.size > 0:
        if embedding is not None:
            Z = embedding[incl_rows]
        else:
            Z = compute_transcriptomic_embedding(counts[incl_rows], n_comps=cfg.embedding_n_comps)
        g_tx = build_graph(
            Z, cfg.transcriptomic_k,
            prune=cfg.transcriptomic_prune, radius=cfg.transcriptomic_radius,
            unit_ids=incl_ids, workers=cfg.graph_workers,
            verbose=verbose, logger=logger,
        )
        homogeneity = compute_type_homogeneity(g_tx, records)
        out["transcriptomic_graph"] = g_tx
    out["homogeneity"] = homogeneity

    # 5) balance
    _log(f"[run_purification] Step 5/{n_steps}: balance (threshold={cfg.threshold}, swap={cfg.swap_enabled})")
    balanced = balance(
        _RawRows(counts, row_of),
        result,
        records,
        scores,
        cfg.threshold,
        bool(cfg.swap_enabled) and homogeneity is not None,
        homogeneity=homogeneity,
        swap_min_fraction=cfg.swap_min_fraction,
        verbose=verbose,
        logger=logger,
    )
    out["balanced"] = balanced

    # 6) assemble
    _log(f"[run_purification] Step 6/{n_steps}: assemble")
    final_ids = list(balanced.keys())
    final = _assemble_counts(balanced, counts, row_of, result)

    meta = balanced_to_frame(balanced)
    raw_tot = row_sums(counts[incl_rows]) if incl_rows.size else np.zeros(0)
    meta[K.OBS_RAW_TOTAL] = pd.Series(raw_tot, index=incl_ids).reindex(meta.index).to_numpy(dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        frac = 1.0 - meta[K.OBS_FINAL_TOTAL].to_numpy() / meta[K.OBS_RAW_TOTAL].to_numpy()
    meta[K.OBS_PURIFIED_FRACTION] = np.where(meta[K.OBS_RAW_TOTAL].to_numpy() > 0, frac, 0.0)
    if homogeneity is not None:
        meta[K.OBS_FIRST_TYPE_FRACTION] = homogeneity["first_type_fraction"].reindex(meta.index).to_numpy()
        meta[K.OBS_SECOND_TYPE_FRACTION] = homogeneity["second_type_fraction"].reindex(meta.index).to_numpy()

    status_table = pd.DataFrame(
        {K.OBS_PURIFICATION_STATUS: [s.value for s in result.status.to_numpy()]},
        index=pd.Index(unit_ids, name="unit_id"),
    )
    status_table = status_table.join(meta.drop(columns=[K.OBS_PURIFICATION_STATUS]), how="left")
    status_table.loc[meta.index, K.OBS_PURIFICATION_STATUS] = meta[K.OBS_PURIFICATION_STATUS]

    out["unit_ids"] = final_ids
    out["genes"] = list(genes)
    out["counts"] = final
    out["metadata"] = meta
    out["status_table"] = status_table
    out["summary"] = summarize_purification(status_table)
    _log(f"[run_purification] done: {out['summary']['status_counts']}")
    return out

def run_purification_adata(
    adata,
    decomposition,
    reference,
    *,
    cfg: PurificationConfig = PurificationConfig(),
    layer: Optional[str] = None,
    spatial_key: str = K.OBSM_SPATIAL,
    embedding_key: Optional[str] = None,
    known_types=None,
    weights_doublet: Optional[pd.DataFrame] = None,
    verbose: bool = True,
    logger=print,
) -> Tuple[Any, Dict[str, Any]]:
    """
    AnnData wrapper around `run_purification`. The input is never modified.

    Returns a NEW AnnData (excluded units dropped) with:
      .X                                final counts
      .layers["raw_counts"]             unmodified counts
      .layers["purified_counts"]        purified candidate for every unit
      .obs                              input obs + per-unit metadata
      .obsm                             input obsm rows for the kept units
      .uns["purification_info"]         cfg + summary
      .uns["purification_status_table"] every input unit incl. excluded ones
    """
    import anndata as ad

    X = adata.layers[layer] if layer is not None else adata.X
    spatial = np.asarray(adata.obsm[spatial_key]) if spatial_key in adata.obsm else None
    embedding = None
    if embedding_key is not None:
        if embedding_key not in adata.obsm:
            raise KeyError(f"[run_purification_adata] adata.obsm[{embedding_key!r}] not found.")
        embedding = np.asarray(adata.obsm[embedding_key])

    out = run_purification(
        X, adata.obs_names, adata.var_names, decomposition, reference,
        spatial=spatial, embedding=embedding, cfg=cfg,
        known_types=known_types, weights_doublet=weights_doublet,
        verbose=verbose, logger=logger,
    )

    ids = out["unit_ids"]
    pos = adata.obs_names.get_indexer(pd.Index(ids))
    obs = adata.obs.iloc[pos].copy()
    obs.index = pd.Index(ids)
    meta = out["metadata"]
    for c in meta.columns:
        obs[c] = meta[c].reindex(obs.index).to_numpy()

    new = ad.AnnData(X=out["counts"], obs=obs, var=adata.var.copy())
    raw = X[pos]
    new.layers[K.LAYER_RAW_COUNTS] = sp.csr_matrix(raw) if sp.issparse(X) else to_dense(raw, dtype=np.float64)
    res = out["purification"]
    row = res.row_index
    cand_pos = np.asarray([row[u] for u in ids], dtype=np.int64)
    cand = res.candidate_counts[cand_pos]
    new.layers[K.LAYER_PURIFIED_COUNTS] = cand if sp.issparse(cand) else np.asarray(cand)
    for key in adata.obsm.keys():
        new.obsm[key] = np.asarray(adata.obsm[key])[pos]

    new.uns[K.UNS_PURIFICATION_INFO] = {"cfg": out["cfg"], "summary": out["summary"]}
    new.uns[K.UNS_STATUS_TABLE] = out["status_table"]
    return new, out
