"""
Tests for neighborhood metric aggregation.
"""

import numpy as np
import pandas as pd
import pytest

from st_purification.exceptions import UndefinedNeighborhoodScore
from st_purification.graph import build_graph
from st_purification.neighborhood import (
    aggregate,
    compute_type_homogeneity,
    count_undefined,
    require_defined_score,
)
from st_purification.records import DecompositionRecord, SpotClass


def _line_records():
    return {
        "a": DecompositionRecord("a", SpotClass.SINGLET, "A", "B", 0.9, 0.1),
        "b": DecompositionRecord("b", SpotClass.DOUBLET_CERTAIN, "B", "A", 0.6, 0.4),
        "c": DecompositionRecord("c", SpotClass.REJECT, None),
        "d": DecompositionRecord("d", SpotClass.DOUBLET_UNCERTAIN, "A", "B", 0.7, 0.3),
    }


@pytest.fixture
def line_graph():
    """a - b - c - d on a line, 1 apart, k=2"""
    coords = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [3.0, 0.0]])
    return build_graph(coords, 2, unit_ids=["a", "b", "c", "d"])


class TestAggregate:
    """Mean over scorable neighbors"""

    def test_weight_second(self, line_graph):
        # a: b, c(reject) -> 0.4 ; b: a, c -> 0.1 ; d: c, b -> 0.4
        s = aggregate(line_graph, _line_records(), "weight_second")
        assert s.index.tolist() == ["a", "b", "c", "d"]
        assert s["a"] == pytest.approx(0.4)
        assert s["b"] == pytest.approx(0.1)
        assert s["d"] == pytest.approx(0.4)

    def test_type_mismatch(self, line_graph):
        s = aggregate(line_graph, _line_records(), "type_mismatch")
        assert s["a"] == pytest.approx(1.0)
        assert s["b"] == pytest.approx(1.0)

    def test_callable_matches_builtin(self, line_graph):
        records = _line_records()

        def w2(neighbor, center):
            return neighbor.weight_second

        s1 = aggregate(line_graph, records, w2)
        s2 = aggregate(line_graph, records, "weight_second")
        pd.testing.assert_series_equal(s1, s2, check_names=False)
        assert s1.name == "w2"

    def test_single_argument_callable(self, line_graph):
        records = _line_records()
        s1 = aggregate(line_graph, records, lambda nb: nb.weight_second)
        s2 = aggregate(line_graph, records, "weight_second")
        np.testing.assert_allclose(s1.to_numpy(), s2.to_numpy())

    def test_two_argument_callable_sees_center(self, line_graph):
        records = _line_records()

        def same_first(neighbor, center):
            return float(neighbor.first_type == center.first_type)

        s1 = aggregate(line_graph, records, same_first)
        s2 = aggregate(line_graph, records, "first_type_match")
        np.testing.assert_allclose(s1.to_numpy(), s2.to_numpy())

    def test_no_neighbors_is_undefined(self):
        """A unit with zero neighbors gets NaN, not 0"""
        coords = np.array([[0.0, 0.0], [0.5, 0.0], [10.0, 0.0]])
        g = build_graph(coords, 1, prune=True, radius=1.0, unit_ids=["a", "b", "v"])
        records = {
            u: DecompositionRecord(u, SpotClass.DOUBLET_CERTAIN, "A", "B", 0.5, 0.5) for u in ("a", "b", "v")
        }
        s = aggregate(g, records, "weight_second")
        assert np.isnan(s["v"])
        assert s["a"] == pytest.approx(0.5)
        assert count_undefined(s) == 1

    def test_only_reject_neighbors_is_undefined(self, line_graph):
        records = _line_records()
        records["a"] = DecompositionRecord("a", SpotClass.REJECT, None)
        records["d"] = DecompositionRecord("d", SpotClass.REJECT, None)
        s = aggregate(line_graph, records, "weight_second")
        # b's neighbors are a and c, both rejects
        assert np.isnan(s["b"])

    def test_neighbors_without_record_skipped(self, line_graph):
        records = _line_records()
        del records["b"]
        s = aggregate(line_graph, records, "weight_second")
        # a's neighbors: b (no record), c (reject)
        assert np.isnan(s["a"])

    def test_unknown_metric(self, line_graph):
        with pytest.raises(ValueError):
            aggregate(line_graph, _line_records(), "nope")


class TestTypeHomogeneity:
    """Fractions used for swapping"""

    def test_fractions(self):
        coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [-1.0, 0.0]])
        ids = ["x", "n1", "n2", "n3"]
        records = {
            "x": DecompositionRecord("x", SpotClass.DOUBLET_CERTAIN, "A", "B", 0.6, 0.4),
            "n1": DecompositionRecord("n1", SpotClass.SINGLET, "B"),
            "n2": DecompositionRecord("n2", SpotClass.SINGLET, "B"),
            "n3": DecompositionRecord("n3", SpotClass.SINGLET, "A"),
        }
        g = build_graph(coords, 3, unit_ids=ids)
        h = compute_type_homogeneity(g, records)
        assert list(h.columns) == ["first_type_fraction", "second_type_fraction", "n_neighbors"]
        assert h.loc["x", "first_type_fraction"] == pytest.approx(1 / 3)
        assert h.loc["x", "second_type_fraction"] == pytest.approx(2 / 3)
        assert h.loc["x", "n_neighbors"] == 3
        # singlets without a second type never match it
        assert h.loc["n1", "second_type_fraction"] == 0.0


class TestRequireDefinedScore:
    """Explicit failure for undefined scores"""

    def test_raises_on_nan(self):
        s = pd.Series([0.2, np.nan], index=["a", "b"])
        assert require_defined_score(s, "a") == pytest.approx(0.2)
        with pytest.raises(UndefinedNeighborhoodScore) as exc:
            require_defined_score(s, "b")
        assert exc.value.unit_id == "b"
        with pytest.raises(UndefinedNeighborhoodScore):
            require_defined_score(s, "missing")
