"""Tests for the workflow graph model."""

import pytest

from core.exceptions import ConfigurationError
from workflow.graph import WorkflowGraph


def _graph(steps, edges=(), entry=None):
    payload = {
        "steps": [{"id": s, "type": t} for s, t in steps],
        "edges": [
            {"source": e[0], "target": e[1], "sourceHandle": e[2] if len(e) > 2 else None}
            for e in edges
        ],
    }
    if entry:
        payload["entry"] = entry
    return WorkflowGraph.from_dict(payload)


@pytest.mark.unit
class TestEntry:
    def test_start_step_is_entry(self):
        graph = _graph([("a", "log"), ("s", "start")], [("s", "a")])
        assert graph.entry == "s"

    def test_single_root_is_entry(self):
        graph = _graph([("a", "log"), ("b", "log")], [("a", "b")])
        assert graph.entry == "a"

    def test_explicit_entry(self):
        graph = _graph([("a", "log"), ("b", "log")], [("a", "b")], entry="a")
        assert graph.entry == "a"

    def test_ambiguous_roots(self):
        with pytest.raises(ConfigurationError, match="entry"):
            _graph([("a", "log"), ("b", "log")])

    def test_two_start_steps(self):
        with pytest.raises(ConfigurationError):
            _graph([("s1", "start"), ("s2", "start")])


@pytest.mark.unit
class TestValidation:
    def test_empty(self):
        with pytest.raises(ConfigurationError):
            WorkflowGraph.from_dict({"steps": []})

    def test_duplicate_ids(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            _graph([("a", "start"), ("a", "log")])

    def test_unknown_edge_endpoint(self):
        with pytest.raises(ConfigurationError, match="unknown step"):
            _graph([("s", "start")], [("s", "ghost")])

    def test_single_input_per_step(self):
        with pytest.raises(ConfigurationError, match="incoming edges"):
            _graph([("s", "start"), ("a", "log"), ("b", "log")], [("s", "a"), ("s", "b"), ("a", "b")])

    def test_cycle_rejected(self):
        with pytest.raises(ConfigurationError, match="cycle"):
            _graph(
                [("s", "start"), ("a", "log"), ("b", "log"), ("c", "log")],
                [("s", "a"), ("b", "c"), ("c", "b")],
            )

    def test_edge_into_entry_rejected(self):
        with pytest.raises(ConfigurationError):
            _graph([("a", "log"), ("b", "log")], [("b", "a")], entry="a")

    def test_property_edges_are_ignored(self):
        graph = WorkflowGraph.from_dict({
            "steps": [{"id": "s", "type": "start"}, {"id": "a", "type": "log"}, {"id": "v", "type": "setVariable"}],
            "edges": [
                {"source": "s", "target": "a"},
                {"source": "v", "target": "a", "targetHandle": "message"},
            ],
            "entry": "s",
        })
        assert [e.source for e in graph.edges] == ["s"]

    def test_editor_format(self):
        graph = WorkflowGraph.from_dict({
            "nodes": [{"id": "s", "type": "start", "data": {"label": "Begin"}}],
            "edges": [],
        })
        assert graph.get_step("s").config == {"label": "Begin"}
        assert graph.get_step("s").label == "Begin"


@pytest.mark.unit
class TestNavigation:
    @pytest.fixture
    def graph(self):
        return _graph(
            [("s", "start"), ("sw", "switch"), ("a", "log"), ("b", "log"), ("d", "log"), ("after", "log")],
            [("s", "sw"), ("sw", "a", "case-a"), ("sw", "b", "case-b"), ("sw", "d", "default"), ("a", "after")],
        )

    def test_switch_edges(self, graph):
        assert [e.target for e in graph.switch_edges("sw", "case-b")] == ["b"]
        assert [e.target for e in graph.switch_edges("sw", "case-z")] == ["d"]
        assert [e.target for e in graph.switch_edges("sw", None)] == ["d"]

    def test_descendants(self, graph):
        assert graph.descendants("sw") == {"a", "b", "d", "after"}
        assert graph.descendants("after") == set()
        assert graph.reachable_from(graph.switch_edges("sw", "case-a")) == {"a", "after"}

    def test_loop_edges(self):
        graph = _graph(
            [("s", "start"), ("l", "loop"), ("body", "log"), ("done", "log")],
            [("s", "l"), ("l", "body", "output"), ("l", "done", "done")],
        )
        assert [e.target for e in graph.loop_body_edges("l")] == ["body"]
        assert [e.target for e in graph.loop_done_edges("l")] == ["done"]
