"""
Reference profile store: one mean expression profile per cell type.

The Purifier only needs the *shape* of each profile (unit-sum normalized), which
it rescales to each unit's library size. Raw means are kept for inspection.
"""

from __future__ import annotations

import warnings
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .array_ops import to_dense, row_sums, row_unit_sum
from .exceptions import MissingReferenceProfile

class ReferenceProfileStore:
    """
    Read-only mapping cell type -> nonnegative mean expression vector.

    Profiles are aligned to `genes` (the count matrix gene order). Built once,
    then shared read-only across workers.
    """

    def __init__(self, profiles: np.ndarray, cell_types: Sequence[str], genes: Sequence[str]):
        P = np.array(profiles, dtype=np.float64)
        if P.ndim != 2:
            raise ValueError("[ReferenceProfileStore] profiles must be 2D (types x genes).")
        if P.shape != (len(cell_types), len(genes)):
            raise ValueError(
                f"[ReferenceProfileStore] shape {P.shape} != ({len(cell_types)}, {len(genes)})."
            )
        if not np.isfinite(P).all():
            raise ValueError("[ReferenceProfileStore] profiles contain NaN/Inf.")
        if (P < 0).any():
            raise ValueError("[ReferenceProfileStore] profiles must be nonnegative.")

        self._types = [str(t) for t in cell_types]
        if len(set(self._types)) != len(self._types):
            raise ValueError("[ReferenceProfileStore] duplicated cell types.")
        self._genes = [str(g) for g in genes]
        self._type_idx = {t: i for i, t in enumerate(self._types)}

        self._means = P
        self._means.setflags(write=False)
        normed, totals = row_unit_sum(P)
        self._normed = normed
        self._normed.setflags(write=False)

        empty = [t for t, s in zip(self._types, totals) if s <= 0]
        if empty:
            warnings.warn(
                f"[ReferenceProfileStore] {len(empty)} profiles sum to 0 on this gene panel: {empty[:5]}",
                RuntimeWarning,
            )

    # ----------------------------------------------------------
    # construction
    # ----------------------------------------------------------

    @classmethod
    def from_frame(cls, df: pd.DataFrame, *, genes: Optional[Sequence[str]] = None) -> "ReferenceProfileStore":
        """
        Build from a DataFrame (index = cell types, columns = genes).

        If `genes` is given, columns are aligned to it; genes absent from the
        reference are filled with 0 (warned), extra reference genes are dropped.
        """
        df = df.copy()
        df.index = df.index.astype(str)
        df.columns = df.columns.astype(str)
        if genes is None:
            genes = list(df.columns)
        genes = [str(g) for g in genes]
        missing = [g for g in genes if g not in df.columns]
        if len(missing) == len(genes) and len(genes) > 0:
            raise ValueError("[ReferenceProfileStore.from_frame] zero overlap between reference and count genes.")
        if missing:
            warnings.warn(
                f"[ReferenceProfileStore.from_frame] {len(missing)} genes absent from reference; filled with 0.",
                RuntimeWarning,
            )
        aligned = df.reindex(columns=genes, fill_value=0.0).astype(float)
        return cls(aligned.to_numpy(), list(aligned.index), genes)

    # ----------------------------------------------------------
    # access
    # ----------------------------------------------------------

    @property
    def cell_types(self) -> List[str]:
        return list(self._types)

    @property
    def genes(self) -> List[str]:
        return list(self._genes)

    def __contains__(self, cell_type) -> bool:
        return str(cell_type) in self._type_idx

    def __len__(self) -> int:
        return len(self._types)

    def get(self, cell_type) -> np.ndarray:
        """Raw mean profile (read-only view). Raises MissingReferenceProfile."""
        i = self._type_idx.get(str(cell_type))
        if i is None:
            raise MissingReferenceProfile(cell_type)
        return self._means[i]

    def normalized(self, cell_type) -> np.ndarray:
        """Unit-sum profile (read-only view). Raises MissingReferenceProfile."""
        i = self._type_idx.get(str(cell_type))
        if i is None:
            raise MissingReferenceProfile(cell_type)
        return self._normed[i]

    def missing_types(self, cell_types: Iterable[str]) -> List[str]:
        return sorted({str(t) for t in cell_types if t is not None and str(t) not in self._type_idx})

    def to_frame(self, *, normalized: bool = False) -> pd.DataFrame:
        M = self._normed if normalized else self._means
        return pd.DataFrame(np.array(M), index=self._types, columns=self._genes)

# ============================================================
# Building a store from a labelled single-cell reference
# ============================================================

def build_reference_profiles(
    counts,
    cell_types,
    *,
    genes: Sequence[str],
    min_umi: int = 100,
    min_cells: int = 1,
    verbose: bool = True,
    logger=print,
) -> ReferenceProfileStore:
    """
    Compute UMI-normalized mean expression per cell type.

    counts: (n_cells, n_genes) dense or sparse; cell_types: (n_cells,) labels.
    Each cell is divided by its total UMI before averaging, so the profile of a
    type is its expected per-UMI expression.

    Cells with total < `min_umi` (and empty cells) and types with fewer than `min_cells`
    surviving cells are dropped (warned).
    """
    def _log(msg: str):
        if bool(verbose):
            logger(msg)

    X = to_dense(counts, dtype=np.float64)
    labels = pd.Series(np.asarray(cell_types, dtype=object))
    if X.shape[0] != len(labels):
        raise ValueError(f"[build_reference_profiles] counts has {X.shape[0]} rows but {len(labels)} labels.")
    if X.shape[1] != len(genes):
        raise ValueError(f"[build_reference_profiles] counts has {X.shape[1]} genes but {len(genes)} names.")

    valid = labels.notna() & (labels.astype(str).str.strip() != "")
    umi = row_sums(X)
    keep = valid.to_numpy() & (umi >= float(min_umi)) & (umi > 0)
    _log(f"[build_reference_profiles] keeping {int(keep.sum())}/{X.shape[0]} cells (min_umi={min_umi})")

    labels_k = labels[keep].astype(str).to_numpy()
    Xn = X[keep] / umi[keep, None]

    types = sorted(pd.unique(labels_k).tolist())
    rows, kept_types, dropped = [], [], []
    for ct in types:
        m = labels_k == ct
        if int(m.sum()) < int(min_cells):
            dropped.append(ct)
            continue
        rows.append(Xn[m].mean(axis=0))
        kept_types.append(ct)

    if dropped:
        warnings.warn(
            f"[build_reference_profiles] dropped {len(dropped)} types with < {min_cells} cells: {dropped[:5]}",
            RuntimeWarning,
        )
    if not rows:
        raise ValueError("[build_reference_profiles] no cell type survived filtering.")

    return ReferenceProfileStore(np.vstack(rows), kept_types, list(genes))
