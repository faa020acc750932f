"""Tests for PathDiscovery — graph construction, enumeration, truncation."""

import pytest

from processmap.services.path_discovery import PathDiscovery, ScenarioPath, path_hash

from tests.sample_maps import BRANCHING_EDGES, BRANCHING_STEPS, LINEAR_STEPS


class TestGraphShape:
    def test_dependencies_become_edges(self):
        d = PathDiscovery(LINEAR_STEPS)
        assert d.successors("s1") == ["s2"]
        assert d.entry_nodes() == ["s1"]
        assert d.exit_nodes() == ["s3"]
        assert d.branch_points() == []

    def test_explicit_edges_and_labels(self):
        d = PathDiscovery(BRANCHING_STEPS, BRANCHING_EDGES)
        assert d.branch_points() == ["check"]
        assert d.branches() == [
            {"from": "check", "to": "big", "label": "large"},
            {"from": "check", "to": "small", "label": "small"},
        ]

    def test_unknown_references_are_ignored(self):
        steps = [{"id": "a", "name": "A", "dependencies": ["ghost"]}, {"id": "b", "name": "B"}]
        d = PathDiscovery(steps, [{"source": "a", "target": "nowhere"}])
        assert d.successors("a") == []
        assert d.entry_nodes() == ["a", "b"]

    def test_duplicate_edge_keeps_first_and_fills_label(self):
        steps = [{"id": "a", "name": "A"}, {"id": "b", "name": "B", "dependencies": ["a"]}]
        d = PathDiscovery(steps, [{"source": "a", "target": "b", "label": "yes"}])
        assert d.successors("a") == ["b"]
        assert d._labels[("a", "b")] == "yes"

    def test_max_paths_must_be_positive(self):
        with pytest.raises(ValueError):
            PathDiscovery(LINEAR_STEPS, max_paths=0)


class TestDiscoverPaths:
    def test_linear_map_has_one_path(self):
        result = PathDiscovery(LINEAR_STEPS).discover_paths()
        assert [p.step_ids for p in result.paths] == [["s1", "s2", "s3"]]
        assert result.truncated is False

    def test_branching_map_paths_in_successor_order(self):
        result = PathDiscovery(BRANCHING_STEPS, BRANCHING_EDGES).discover_paths()
        assert [p.step_ids for p in result.paths] == [
            ["start", "check", "big", "done"],
            ["start", "check", "small", "done"],
        ]
        assert result.paths[1].branch_choices == [
            {"from": "check", "to": "small", "label": "small"},
        ]

    def test_cycle_is_cut(self):
        steps = [
            {"id": "a", "name": "A"},
            {"id": "b", "name": "B", "dependencies": ["a"]},
            {"id": "c", "name": "C", "dependencies": ["b"]},
        ]
        edges = [{"source": "c", "target": "b", "label": "retry"}]
        result = PathDiscovery(steps, edges).discover_paths()
        assert [p.step_ids for p in result.paths] == [["a", "b", "c"]]

    def test_pure_cycle_starts_at_first_step(self):
        steps = [{"id": "a", "name": "A", "dependencies": ["b"]},
                 {"id": "b", "name": "B", "dependencies": ["a"]}]
        result = PathDiscovery(steps).discover_paths()
        assert [p.step_ids for p in result.paths] == [["a", "b"]]

    def test_loop_back_does_not_end_a_path(self):
        steps = [
            {"id": "a", "name": "A"},
            {"id": "b", "name": "B", "dependencies": ["a"]},
            {"id": "c", "name": "C", "dependencies": ["b"]},
            {"id": "d", "name": "D", "dependencies": ["b"]},
        ]
        edges = [{"source": "c", "target": "b", "label": "retry"}]
        discovery = PathDiscovery(steps, edges)
        result = discovery.discover_paths()
        assert discovery.exit_nodes() == ["d"]
        assert [p.step_ids for p in result.paths] == [["a", "b", "d"]]
        assert all(p.step_ids[-1] in discovery.exit_nodes() for p in result.paths)

    def test_truncates_at_max_paths(self):
        # Three independent 2-way branches → 8 paths
        steps = [{"id": "n0", "name": "n0"}]
        edges = []
        prev = "n0"
        for i in range(3):
            left, right, join = f"l{i}", f"r{i}", f"j{i}"
            steps += [{"id": left, "name": left}, {"id": right, "name": right},
                      {"id": join, "name": join}]
            edges += [{"source": prev, "target": left}, {"source": prev, "target": right},
                      {"source": left, "target": join}, {"source": right, "target": join}]
            prev = join

        full = PathDiscovery(steps, edges).discover_paths()
        assert len(full.paths) == 8
        assert full.truncated is False

        capped = PathDiscovery(steps, edges, max_paths=3).discover_paths()
        assert len(capped.paths) == 3
        assert capped.truncated is True
        assert capped.to_dict()["max_paths"] == 3

    def test_empty_map(self):
        result = PathDiscovery([]).discover_paths()
        assert result.paths == []
        assert result.truncated is False


class TestPathHash:
    def test_hash_is_stable_and_order_sensitive(self):
        assert path_hash(["a", "b"]) == path_hash(["a", "b"])
        assert path_hash(["a", "b"]) != path_hash(["b", "a"])
        assert len(path_hash(["a"])) == 16

    def test_scenario_path_to_dict(self):
        p = ScenarioPath(step_ids=["a", "b"])
        assert p.to_dict() == {"step_ids": ["a", "b"], "path_hash": path_hash(["a", "b"]),
                               "branch_choices": []}
        assert p.edges() == [("a", "b")]
