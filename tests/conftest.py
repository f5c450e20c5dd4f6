"""
Pytest configuration and shared synthetic fixtures for st_purification tests.
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from st_purification.reference import ReferenceProfileStore

warnings.filterwarnings("ignore", category=FutureWarning)
warnings.filterwarnings("ignore", category=DeprecationWarning)


def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks end-to-end tests")
    config.addinivalue_line("markers", "requires_scanpy: marks tests that need scanpy/anndata")


def pytest_collection_modifyitems(config, items):
    """Mark integration tests based on test names"""
    for item in items:
        if "end_to_end" in item.name or "pipeline" in item.name:
            item.add_marker(pytest.mark.integration)


def make_table(rows):
    """rows: list of (unit_id, spot_class, first_type, second_type, w1, w2)."""
    return pd.DataFrame(
        rows,
        columns=["unit_id", "spot_class", "first_type", "second_type", "weight_first", "weight_second"],
    )


@pytest.fixture
def two_gene_reference():
    """Reference over genes (g1, g2): B has unit-sum profile (0.4, 0.6)."""
    profiles = np.array([[0.9, 0.1], [4.0, 6.0]])
    return ReferenceProfileStore(profiles, ["A", "B"], ["g1", "g2"])


@pytest.fixture
def small_dataset():
    """
    Six units on a line, three genes, types A/B/C.

    u0..u3 are doublets A+B (u3 has no B reference -> uses C); u4 reject;
    u5 singlet A with a weak B signal.
    """
    genes = ["g1", "g2", "g3"]
    ref = pd.DataFrame(
        [[8.0, 1.0, 1.0], [1.0, 8.0, 1.0]],
        index=["A", "B"],
        columns=genes,
    )
    counts = np.array([
        [50, 30, 20],
        [40, 40, 20],
        [60, 20, 20],
        [30, 30, 40],
        [10, 10, 10],
        [70, 20, 10],
    ], dtype=float)
    unit_ids = [f"u{i}" for i in range(6)]
    table = make_table([
        ("u0", "doublet_certain", "A", "B", 0.7, 0.3),
        ("u1", "doublet_uncertain", "A", "B", 0.6, 0.4),
        ("u2", "doublet_certain", "A", "B", 0.8, 0.2),
        ("u3", "doublet_certain", "A", "C", 0.5, 0.5),
        ("u4", "reject", None, None, None, None),
        ("u5", "singlet", "A", "B", 0.9, 0.1),
    ])
    spatial = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [3.0, 0.0], [4.0, 0.0], [5.0, 0.0]])
    return {
        "genes": genes,
        "reference": ref,
        "counts": counts,
        "unit_ids": unit_ids,
        "table": table,
        "spatial": spatial,
        "known_types": ["A", "B", "C"],
    }


@pytest.fixture
def random_counts():
    """Reproducible Poisson counts (40 units x 12 genes) with a 3-type reference."""
    rng = np.random.default_rng(0)
    genes = [f"g{i}" for i in range(12)]
    types = ["T0", "T1", "T2"]
    profiles = rng.gamma(2.0, 1.0, size=(3, 12))
    counts = rng.poisson(5.0, size=(40, 12)).astype(float)
    unit_ids = [f"spot{i:03d}" for i in range(40)]
    t1 = rng.integers(0, 3, size=40)
    t2 = (t1 + 1) % 3
    classes = np.array(["singlet", "doublet_certain", "doublet_uncertain", "reject"])[rng.integers(0, 4, size=40)]
    w2 = rng.uniform(0.0, 0.5, size=40)
    rows = []
    for i, u in enumerate(unit_ids):
        if classes[i] == "reject":
            rows.append((u, "reject", None, None, None, None))
        else:
            rows.append((u, classes[i], types[t1[i]], types[t2[i]], 1.0 - w2[i], w2[i]))
    return {
        "genes": genes,
        "types": types,
        "reference": ReferenceProfileStore(profiles, types, genes),
        "counts": counts,
        "unit_ids": unit_ids,
        "table": make_table(rows),
        "spatial": rng.uniform(0.0, 10.0, size=(40, 2)),
    }


@pytest.fixture
def table_factory():
    return make_table
