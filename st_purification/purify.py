"""
Purifier: subtract the estimated secondary-type signal from each unit.

Core idea
---------
For a unit with raw counts x (total n), secondary type t2 and weight w2:

  contamination = w2 * n * r(t2)         r(t2): unit-sum reference profile of t2
  purified      = max(x - contamination, 0)   (elementwise)

The purified total is NOT renormalized: removed contaminating signal shrinks
the library size, and downstream consumers must expect that.

Policy by spot class
--------------------
- reject:                       excluded (never purified, never passed through)
- doublet_certain / uncertain:  purified
- singlet with secondary:       purified only if purify_singlets
- no secondary signal:          unchanged (output == input exactly)

A unit whose secondary type has no reference profile is flagged
`missing_reference` and passed through; it never aborts a batch.

Units are independent. `purify_counts` processes them in chunks (optionally
with joblib workers); results do not depend on chunk size or worker count.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from functools import cached_property
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp
from joblib import Parallel, delayed
from tqdm import tqdm

from .array_ops import to_dense, row_sums
from .exceptions import MissingReferenceProfile
from .records import DecompositionRecord, PurificationStatus, PurifiedProfile, SpotClass
from .reference import ReferenceProfileStore

# ============================================================
# 0) single unit
# ============================================================

def default_should_purify(record: DecompositionRecord, *, purify_singlets: bool = False) -> bool:
    """The Purifier's own (non-spatial) decision for a non-reject unit."""
    if record.is_reject or not record.has_secondary:
        return False
    if record.spot_class.is_doublet:
        return True
    return bool(purify_singlets)

def contamination_vector(raw_counts, record: DecompositionRecord, reference: ReferenceProfileStore) -> np.ndarray:
    """Expected secondary-type contribution, scaled to the unit's library size.

    Raises MissingReferenceProfile if the secondary type has no profile.
    """
    x = np.asarray(raw_counts, dtype=np.float64)
    if not record.has_secondary:
        return np.zeros_like(x)
    r = reference.normalized(record.second_type)
    if r.shape[0] != x.shape[0]:
        raise ValueError(f"[contamination_vector] reference has {r.shape[0]} genes, counts have {x.shape[0]}.")
    return float(record.weight_second) * float(x.sum()) * r

def subtract_contamination(raw_counts, record: DecompositionRecord, reference: ReferenceProfileStore) -> np.ndarray:
    """raw - contamination, clamped at 0. No renormalization."""
    x = np.asarray(raw_counts, dtype=np.float64)
    if not record.has_secondary:
        return x.copy()
    return np.maximum(x - contamination_vector(x, record, reference), 0.0)

def purify(
    unit_id,
    raw_counts,
    record: Optional[DecompositionRecord],
    reference: ReferenceProfileStore,
    *,
    purify_singlets: bool = False,
) -> PurifiedProfile:
    """Purify one unit according to its spot class (see module docstring)."""
    uid = str(unit_id)
    if record is None:
        return PurifiedProfile(uid, None, PurificationStatus.EXCLUDED_UNKNOWN)
    if record.is_reject:
        return PurifiedProfile(uid, None, PurificationStatus.EXCLUDED_REJECT)

    x = np.asarray(raw_counts, dtype=np.float64)
    if not record.has_secondary:
        return PurifiedProfile(uid, x.copy(), PurificationStatus.UNCHANGED)

    try:
        cleaned = subtract_contamination(x, record, reference)
    except MissingReferenceProfile:
        return PurifiedProfile(uid, x.copy(), PurificationStatus.MISSING_REFERENCE)

    if default_should_purify(record, purify_singlets=purify_singlets):
        return PurifiedProfile(uid, cleaned, PurificationStatus.PURIFIED)
    return PurifiedProfile(uid, x.copy(), PurificationStatus.UNCHANGED)

# ============================================================
# 1) batch container
# ============================================================

@dataclass(frozen=True)
class PurificationResult:
    """
    Batch output of the Purifier.

    `unit_ids`/`counts`/`candidate_counts`/`raw_totals` cover the *included*
    units only (rejects and unknown units have no rows). `status` covers every
    input unit.

    counts:           default-policy profiles (units x genes)
    candidate_counts: every unit with a secondary signal purified, regardless
                      of `purify_singlets` (used by the Balancer's override)
    """

    unit_ids: np.ndarray
    genes: List[str]
    counts: object
    candidate_counts: object
    raw_totals: np.ndarray
    status: pd.Series
    purify_singlets: bool = False

    @cached_property
    def row_index(self) -> Dict[str, int]:
        return {str(u): i for i, u in enumerate(self.unit_ids)}

    def _row(self, M, i: int) -> np.ndarray:
        if sp.issparse(M):
            return np.asarray(M[i].toarray(), dtype=np.float64).ravel()
        return np.array(M[i], dtype=np.float64)

    def profile(self, unit_id) -> PurifiedProfile:
        uid = str(unit_id)
        st = self.status[uid]
        if st.is_excluded:
            return PurifiedProfile(uid, None, st)
        return PurifiedProfile(uid, self._row(self.counts, self.row_index[uid]), st)

    def candidate(self, unit_id) -> Optional[np.ndarray]:
        uid = str(unit_id)
        if self.status[uid].is_excluded:
            return None
        return self._row(self.candidate_counts, self.row_index[uid])

    def status_counts(self) -> pd.Series:
        return self.status.map(lambda s: s.value).value_counts()

# ============================================================
# 2) chunk kernel (pure; safe for process workers)
# ============================================================

def _purify_chunk(X_chunk, totals, w2, type_idx, default_mask, R_norm, keep_sparse: bool):
    """
    X_chunk:      (b, G) counts
    totals:       (b,)   raw library sizes (computed once globally)
    w2:           (b,)   secondary weights
    type_idx:     (b,)   row in R_norm for the secondary type, -1 = nothing to subtract
    default_mask: (b,)   True where the default policy purifies
    """
    X = to_dense(X_chunk, dtype=np.float64)
    cand = X.copy()
    elig = type_idx >= 0
    if np.any(elig):
        C = (w2[elig] * totals[elig])[:, None] * R_norm[type_idx[elig]]
        cand[elig] = np.maximum(X[elig] - C, 0.0)

    default = X.copy()
    sel = default_mask & elig
    default[sel] = cand[sel]

    if keep_sparse:
        return sp.csr_matrix(default), sp.csr_matrix(cand)
    return default, cand

# ============================================================
# 3) batch (public)
# ============================================================

def purify_counts(
    counts,
    unit_ids: Sequence[str],
    records: Dict[str, DecompositionRecord],
    reference: ReferenceProfileStore,
    *,
    genes: Optional[Sequence[str]] = None,
    purify_singlets: bool = False,
    chunk_size: int = 10000,
    n_jobs: int = 1,
    verbose: bool = True,
    logger=print,
) -> PurificationResult:
    """
    Purify every unit of a (units x genes) count matrix.

    Parameters
    ----------
    counts:
        (n_units, n_genes), dense or scipy.sparse. Sparse input gives CSR output.
    unit_ids:
        Row identifiers (n_units,).
    records:
        Output of `normalize_decomposition`. Units without a record are
        `excluded_unknown`.
    reference:
        Profiles aligned to the count genes (same order).
    chunk_size / n_jobs:
        Throughput knobs only; the output is identical for any values.

    Returns
    -------
    PurificationResult
    """
    def _log(msg: str):
        if bool(verbose):
            logger(msg)

    unit_ids = np.asarray([str(u) for u in unit_ids], dtype=object)
    n, G = counts.shape
    if unit_ids.shape[0] != n:
        raise ValueError(f"[purify_counts] counts has {n} rows but {unit_ids.shape[0]} unit ids.")
    if len(set(unit_ids.tolist())) != n:
        raise ValueError("[purify_counts] unit ids must be unique.")
    if len(reference.genes) != G:
        raise ValueError(f"[purify_counts] reference has {len(reference.genes)} genes, counts have {G}.")
    if genes is not None and [str(g) for g in genes] != reference.genes:
        raise ValueError("[purify_counts] reference genes are not aligned to count genes.")
    chunk_size = int(chunk_size)
    if chunk_size < 1:
        raise ValueError("[purify_counts] chunk_size must be >= 1.")

    if sp.issparse(counts):
        counts = counts.tocsr()
        data_min = counts.data.min() if counts.nnz > 0 else 0.0
    else:
        counts = np.asarray(counts)
        data_min = counts.min() if counts.size > 0 else 0.0
    if data_min < 0:
        raise ValueError("[purify_counts] counts must be nonnegative.")

    # ---- per-unit decisions (main process; cheap) ----
    ref_types = reference.cell_types
    ref_idx = {t: i for i, t in enumerate(ref_types)}
    status = {}
    keep = np.zeros(n, dtype=bool)
    w2 = np.zeros(n, dtype=np.float64)
    type_idx = np.full(n, -1, dtype=np.int64)
    default_mask = np.zeros(n, dtype=bool)
    missing_types = set()

    for i, uid in enumerate(unit_ids):
        rec = records.get(uid)
        if rec is None:
            status[uid] = PurificationStatus.EXCLUDED_UNKNOWN
            continue
        if rec.spot_class is SpotClass.REJECT:
            status[uid] = PurificationStatus.EXCLUDED_REJECT
            continue
        keep[i] = True
        if not rec.has_secondary:
            status[uid] = PurificationStatus.UNCHANGED
            continue
        j = ref_idx.get(rec.second_type)
        if j is None:
            status[uid] = PurificationStatus.MISSING_REFERENCE
            missing_types.add(rec.second_type)
            continue
        w2[i] = rec.weight_second
        type_idx[i] = j
        do = default_should_purify(rec, purify_singlets=purify_singlets)
        default_mask[i] = do
        status[uid] = PurificationStatus.PURIFIED if do else PurificationStatus.UNCHANGED

    n_unknown = sum(1 for s in status.values() if s is PurificationStatus.EXCLUDED_UNKNOWN)
    if n_unknown:
        warnings.warn(f"[purify_counts] {n_unknown} units have no decomposition record; excluded.", RuntimeWarning)
    if missing_types:
        warnings.warn(
            f"[purify_counts] no reference profile for {sorted(missing_types)}; affected units passed through.",
            RuntimeWarning,
        )

    idx_keep = np.where(keep)[0]
    X = counts[idx_keep] if sp.issparse(counts) else counts[idx_keep]
    totals = row_sums(X)
    w2_k, tidx_k, dmask_k = w2[idx_keep], type_idx[idx_keep], default_mask[idx_keep]
    R_norm = np.asarray(reference.to_frame(normalized=True).to_numpy(), dtype=np.float64)
    keep_sparse = sp.issparse(counts)

    _log(f"[purify_counts] n_units={n}, kept={idx_keep.size}, genes={G}, chunk_size={chunk_size}, n_jobs={n_jobs}")

    starts = list(range(0, idx_keep.size, chunk_size))
    tasks = (
        delayed(_purify_chunk)(
            X[s:s + chunk_size],
            totals[s:s + chunk_size],
            w2_k[s:s + chunk_size],
            tidx_k[s:s + chunk_size],
            dmask_k[s:s + chunk_size],
            R_norm,
            keep_sparse,
        )
        for s in tqdm(starts, desc="purify chunks", disable=not verbose)
    )
    if int(n_jobs) == 1:
        parts = [fn(*args, **kw) for fn, args, kw in tasks]
    else:
        parts = Parallel(n_jobs=int(n_jobs))(tasks)

    if keep_sparse:
        empty = sp.csr_matrix((0, G), dtype=np.float64)
        default = sp.vstack([p[0] for p in parts], format="csr") if parts else empty
        cand = sp.vstack([p[1] for p in parts], format="csr") if parts else empty
    else:
        empty = np.zeros((0, G), dtype=np.float64)
        default = np.vstack([p[0] for p in parts]) if parts else empty
        cand = np.vstack([p[1] for p in parts]) if parts else empty

    status_s = pd.Series([status[u] for u in unit_ids], index=pd.Index(unit_ids, name="unit_id"), dtype=object)
    out = PurificationResult(
        unit_ids=unit_ids[idx_keep],
        genes=list(reference.genes),
        counts=default,
        candidate_counts=cand,
        raw_totals=totals,
        status=status_s,
        purify_singlets=bool(purify_singlets),
    )
    _log(f"[purify_counts] status: {out.status_counts().to_dict()}")
    return out
