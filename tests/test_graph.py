"""
Tests for the neighbor graph builder.
"""

import numpy as np
import pytest
from scipy.spatial import cKDTree

import st_purification.graph as graph_mod
from st_purification.graph import NeighborGraph, build_graph


@pytest.fixture
def grid_coords():
    """5 x 5 unit grid with ids p00..p24"""
    xs, ys = np.meshgrid(np.arange(5.0), np.arange(5.0))
    coords = np.column_stack([xs.ravel(), ys.ravel()])
    ids = [f"p{i:02d}" for i in range(coords.shape[0])]
    return coords, ids


class TestBuildGraph:
    """Structure and determinism"""

    def test_no_self_loops_and_degree(self, grid_coords):
        coords, ids = grid_coords
        g = build_graph(coords, 4, unit_ids=ids)
        assert isinstance(g, NeighborGraph)
        assert (g.n_neighbors == 4).all()
        src = np.repeat(np.arange(g.n_units), g.n_neighbors)
        assert not np.any(src == g.indices)

    def test_distances_sorted_and_exact(self, grid_coords):
        coords, ids = grid_coords
        g = build_graph(coords, 6, unit_ids=ids)
        for i in range(g.n_units):
            a, b = g.indptr[i], g.indptr[i + 1]
            d = g.distances[a:b]
            assert np.all(np.diff(d) >= 0)
            expected = np.linalg.norm(coords[g.indices[a:b]] - coords[i], axis=1)
            np.testing.assert_allclose(d, expected)

    def test_tie_break_by_id(self):
        """Center point with four equidistant neighbors keeps the smallest ids"""
        coords = np.array([[0.0, 0.0], [1.0, 0.0], [-1.0, 0.0], [0.0, 1.0], [0.0, -1.0]])
        ids = ["c", "e", "b", "d", "a"]
        g = build_graph(coords, 2, unit_ids=ids)
        assert [u for u, _ in g.neighbors("c")] == ["a", "b"]

    @pytest.mark.parametrize("workers,chunk_size", [(1, 1), (2, 3), (4, 7), (2, 100000)])
    def test_independent_of_workers_and_chunks(self, grid_coords, workers, chunk_size):
        coords, ids = grid_coords
        base = build_graph(coords, 5, unit_ids=ids)
        other = build_graph(coords, 5, unit_ids=ids, workers=workers, chunk_size=chunk_size)
        np.testing.assert_array_equal(base.indptr, other.indptr)
        np.testing.assert_array_equal(base.indices, other.indices)
        np.testing.assert_array_equal(base.distances, other.distances)

    def test_workers_reach_kdtree(self, grid_coords, monkeypatch):
        seen = []

        class RecordingTree(cKDTree):
            def query(self, *args, **kw):
                seen.append(kw.get("workers"))
                return super().query(*args, **kw)

        monkeypatch.setattr(graph_mod, "cKDTree", RecordingTree)
        coords, ids = grid_coords
        build_graph(coords, 3, unit_ids=ids, workers=2)
        assert seen == [2]

    def test_independent_of_row_order(self, grid_coords):
        coords, ids = grid_coords
        perm = np.random.default_rng(1).permutation(len(ids))
        a = build_graph(coords, 5, unit_ids=ids)
        b = build_graph(coords[perm], 5, unit_ids=[ids[i] for i in perm])
        assert a.edge_set() == b.edge_set()
        for uid in ids:
            assert a.neighbors(uid) == b.neighbors(uid)

    def test_duplicate_coordinates(self):
        coords = np.zeros((3, 2))
        g = build_graph(coords, 2, unit_ids=["x", "y", "z"])
        assert g.neighbors("x") == [("y", 0.0), ("z", 0.0)]

    def test_k_capped(self):
        with pytest.warns(RuntimeWarning, match="capped"):
            g = build_graph(np.array([[0.0, 0.0], [1.0, 0.0]]), 5)
        assert g.k == 1
        assert g.n_edges == 2

    def test_single_unit_has_no_neighbors(self):
        with pytest.warns(RuntimeWarning):
            g = build_graph(np.array([[0.0, 0.0]]), 3, unit_ids=["only"])
        assert g.n_edges == 0
        assert g.neighbors("only") == []

    @pytest.mark.parametrize(
        "coords,k,kwargs",
        [
            (np.array([[0.0, np.nan], [1.0, 1.0]]), 1, {}),
            (np.array([0.0, 1.0]), 1, {}),
            (np.zeros((3, 2)), 0, {}),
            (np.zeros((3, 2)), 1, {"prune": True}),
            (np.zeros((3, 2)), 1, {"prune": True, "radius": -1.0}),
            (np.zeros((3, 2)), 1, {"unit_ids": ["a", "a", "b"]}),
        ],
    )
    def test_invalid_inputs(self, coords, k, kwargs):
        with pytest.raises(ValueError):
            build_graph(coords, k, **kwargs)


class TestPruning:
    """Pruning after k-selection"""

    def test_edges_within_radius(self, grid_coords):
        coords, ids = grid_coords
        g = build_graph(coords, 8, prune=True, radius=1.0, unit_ids=ids)
        assert (g.distances <= 1.0).all()
        assert g.radius == 1.0
        # corners keep 2 axis neighbors, interior points 4
        assert g.n_neighbors[0] == 2
        assert g.n_neighbors[12] == 4

    def test_prune_never_adds_edges(self, grid_coords):
        coords, ids = grid_coords
        full = build_graph(coords, 3, unit_ids=ids)
        pruned = build_graph(coords, 3, prune=True, radius=100.0, unit_ids=ids)
        assert pruned.edge_set() == full.edge_set()

    def test_monotone_in_radius(self, grid_coords):
        coords, ids = grid_coords
        g = build_graph(coords, 8, unit_ids=ids)
        radii = [0.0, 0.5, 1.0, 1.5, 2.0, 3.0]
        sets = [g.prune(r).edge_set() for r in radii]
        for small, large in zip(sets, sets[1:]):
            assert small <= large

    def test_isolated_units(self):
        coords = np.array([[0.0, 0.0], [0.5, 0.0], [10.0, 0.0]])
        g = build_graph(coords, 1, prune=True, radius=1.0, unit_ids=["a", "b", "far"])
        assert g.neighbors("far") == []
        assert g.neighbors("a") == [("b", 0.5)]
        np.testing.assert_array_equal(g.n_neighbors, [1, 1, 0])

    def test_trailing_empty_rows(self):
        coords = np.array([[0.0, 0.0], [0.1, 0.0], [5.0, 0.0], [9.0, 0.0]])
        g = build_graph(coords, 1, unit_ids=["a", "b", "c", "d"]).prune(0.5)
        np.testing.assert_array_equal(g.indptr, [0, 1, 2, 2, 2])


class TestGraphViews:
    """Conversions and subsetting"""

    def test_to_sparse_and_edge_frame(self, grid_coords):
        coords, ids = grid_coords
        g = build_graph(coords, 3, unit_ids=ids)
        M = g.to_sparse()
        assert M.shape == (25, 25)
        assert M.nnz == g.n_edges
        df = g.to_edge_frame()
        assert list(df.columns) == ["src", "dst", "distance"]
        assert len(df) == g.n_edges

    def test_subset(self):
        coords = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [3.0, 0.0]])
        g = build_graph(coords, 2, unit_ids=["a", "b", "c", "d"])
        sub = g.subset(["a", "c", "d"])
        assert list(sub.unit_ids) == ["a", "c", "d"]
        assert sub.neighbors("c") == [("d", 1.0)]
        assert sub.neighbors("a") == [("c", 2.0)]
        assert sub.edge_set() <= g.edge_set()

    def test_unknown_unit(self, grid_coords):
        coords, ids = grid_coords
        g = build_graph(coords, 3, unit_ids=ids)
        with pytest.raises(KeyError):
            g.neighbors("nope")
