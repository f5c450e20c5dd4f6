"""
Single source of truth for AnnData / table keys used across the package.

Rule
----
- All modules must import keys from here.
- Raw vs purified counts must be explicitly separated.
"""

# ============================================================
# Decomposition table columns (external input)
# ============================================================

COL_UNIT_ID = "unit_id"
COL_SPOT_CLASS = "spot_class"
COL_FIRST_TYPE = "first_type"
COL_SECOND_TYPE = "second_type"
COL_WEIGHT_FIRST = "weight_first"
COL_WEIGHT_SECOND = "weight_second"
COL_CONFIDENCE = "confidence"

DECOMPOSITION_COLUMNS = (
    COL_SPOT_CLASS,
    COL_FIRST_TYPE,
    COL_SECOND_TYPE,
    COL_WEIGHT_FIRST,
    COL_WEIGHT_SECOND,
    COL_CONFIDENCE,
)

# ============================================================
# AnnData .obsm keys
# ============================================================

OBSM_SPATIAL = "spatial"
"""
Raw spatial coordinates of units.

- NEVER normalized
- Dataset-dependent units (pixel / micron)
"""

OBSM_SPATIAL_NORMED = "spatial_normed"
"""
Spatial coordinates divided by the median kNN distance.

- Used for the spatial neighbor graph so pruning radii are unitless
"""

OBSM_EMBEDDING = "X_pca"
"""Transcriptomic embedding (top principal components)."""

# Optional metadata for normalization
UNS_SPATIAL_NORM_INFO = "spatial_norm_info"

# ============================================================
# AnnData .layers keys
# ============================================================

LAYER_RAW_COUNTS = "raw_counts"
LAYER_PURIFIED_COUNTS = "purified_counts"

# ============================================================
# AnnData .obs keys (outputs)
# ============================================================

OBS_PURIFICATION_STATUS = "purification_status"
OBS_SWAP = "swap"
OBS_SPATIAL_SCORE = "spatial_neighborhood_score"
OBS_FIRST_TYPE_FRACTION = "transcriptomic_first_type_fraction"
OBS_SECOND_TYPE_FRACTION = "transcriptomic_second_type_fraction"
OBS_RAW_TOTAL = "raw_total"
OBS_FINAL_TOTAL = "final_total"
OBS_PURIFIED_FRACTION = "purified_fraction"

# ============================================================
# AnnData .uns keys
# ============================================================

UNS_PURIFICATION_INFO = "purification_info"
UNS_STATUS_TABLE = "purification_status_table"
