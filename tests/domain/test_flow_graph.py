"""
Tests for the flow graph: structure queries, validation and traversal.

Covers:
- next_nodes / is_terminal / entry_node / topological_order
- Every validation failure (empty, duplicate, dangling edge, self-loop,
  duplicate edge, cycle, bad entry, unreachable node)
- Property: next_nodes returns graph nodes only and is deterministic
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from refinery_kernel.domain.flow_graph import (
    FlowGraph,
    is_terminal,
    next_nodes,
    validate,
)
from refinery_kernel.domain.values import TERMINAL_NODE_ID, NodeKind
from refinery_kernel.exceptions import GraphError


def make_graph(node_ids, edges, entry_node_id=None) -> FlowGraph:
    return FlowGraph.from_definition(
        "test-flow@v1",
        [{"id": n} for n in node_ids],
        [{"source_node_id": s, "target_node_id": t} for s, t in edges],
        entry_node_id,
    )


class TestStructure:
    def test_next_nodes_in_declaration_order(self):
        graph = make_graph(
            ["a", "b", "c", "d"], [("a", "c"), ("a", "b"), ("b", "d"), ("c", "d")]
        )

        assert next_nodes(graph, "a") == ("c", "b")
        assert next_nodes(graph, "b") == ("d",)

    def test_terminal_node_has_no_successors(self):
        graph = make_graph(["a", "b"], [("a", "b")])

        assert is_terminal(graph, "b")
        assert not is_terminal(graph, "a")
        assert next_nodes(graph, "b") == ()

    def test_unknown_node_raises(self):
        graph = make_graph(["a"], [])

        with pytest.raises(GraphError) as exc_info:
            next_nodes(graph, "zz")
        assert "unknown node zz" in exc_info.value.reason
        assert exc_info.value.code == "FLOW_GRAPH_INVALID"
        assert not graph.has_node("zz")

    def test_entry_node_is_the_single_source(self):
        graph = make_graph(["b", "a"], [("a", "b")])

        assert graph.entry_node().id == "a"

    def test_declared_entry_wins(self):
        graph = make_graph(["a", "b"], [("a", "b")], entry_node_id="a")

        assert graph.entry_node().id == "a"

    def test_topological_order_breaks_ties_by_declaration(self):
        graph = make_graph(
            ["start", "x", "y", "end"],
            [("start", "y"), ("start", "x"), ("x", "end"), ("y", "end")],
        )

        assert graph.topological_order() == ("start", "x", "y", "end")

    def test_node_kind_defaults_to_station(self):
        graph = FlowGraph.from_definition(
            "f@1", [{"id": "a"}, {"id": "b", "kind": "check"}], []
        )

        assert graph.node("a").kind == NodeKind.STATION
        assert graph.node("b").kind == NodeKind.CHECK

    def test_unknown_kind_rejected_at_parse(self):
        with pytest.raises(GraphError, match="unknown kind"):
            FlowGraph.from_definition("f@1", [{"id": "a", "kind": "robot"}], [])

    def test_definition_round_trips_through_dicts(self):
        graph = FlowGraph.from_definition(
            "f@1",
            [{"id": "a", "template_id": "tpl-1", "layout_hint": {"x": 10}}],
            [],
        )

        assert graph.nodes_definition() == [
            {"id": "a", "kind": "station", "template_id": "tpl-1", "layout_hint": {"x": 10}}
        ]


class TestValidation:
    def test_valid_linear_graph_passes(self):
        graph = make_graph(["a", "b", "c"], [("a", "b"), ("b", "c")])

        assert validate(graph) is graph

    @pytest.mark.parametrize(
        "node_ids, edges, entry, reason",
        [
            ([], [], None, "no nodes"),
            (["a", "a"], [], None, "duplicate node id a"),
            (["a"], [("a", "b")], None, "references missing node b"),
            (["a", "b"], [("a", "a")], None, "self-loop on node a"),
            (["a", "b"], [("a", "b"), ("a", "b")], None, "duplicate edge a -> b"),
            (["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "b")], None, "cycle"),
            (["a", "b"], [("a", "b")], "zz", "entry node zz does not exist"),
            (["a", "b"], [("a", "b")], "b", "entry node b has incoming edges"),
            (["a", "b"], [], None, "exactly one node without incoming edges"),
            ([TERMINAL_NODE_ID], [], None, "reserved"),
        ],
    )
    def test_rejects(self, node_ids, edges, entry, reason):
        graph = make_graph(node_ids, edges, entry)

        with pytest.raises(GraphError) as exc_info:
            validate(graph)
        assert reason in exc_info.value.reason

    def test_unreachable_node_with_declared_entry(self):
        graph = make_graph(["a", "b", "c"], [("a", "b")], entry_node_id="a")

        with pytest.raises(GraphError, match="not reachable from entry a: c"):
            validate(graph)

    def test_cycle_reported_before_entry_problems(self):
        # No source at all: the cycle is the real problem
        graph = make_graph(["a", "b"], [("a", "b"), ("b", "a")])

        with pytest.raises(GraphError, match="cycle"):
            validate(graph)


@st.composite
def dags(draw):
    """Connected DAGs rooted at n0, with edges only from lower to higher index."""
    size = draw(st.integers(min_value=1, max_value=8))
    ids = [f"n{i}" for i in range(size)]
    pairs = [(i, j) for i in range(size) for j in range(i + 1, size)]
    chosen = draw(st.lists(st.sampled_from(pairs), unique=True)) if pairs else []
    targets = {j for _, j in chosen}
    for j in range(1, size):
        if j not in targets:
            chosen.append((0, j))
    return make_graph(ids, [(ids[i], ids[j]) for i, j in chosen])


class TestGraphProperties:
    @given(dags())
    @settings(max_examples=75)
    def test_generated_dags_validate(self, graph):
        assert validate(graph) is graph
        assert graph.entry_node().id == "n0"

    @given(dags())
    @settings(max_examples=75)
    def test_next_nodes_returns_graph_nodes_deterministically(self, graph):
        node_ids = set(graph.node_ids)
        for node_id in graph.node_ids:
            first = next_nodes(graph, node_id)
            assert set(first) <= node_ids
            assert next_nodes(graph, node_id) == first
            assert len(set(first)) == len(first)

    @given(dags())
    @settings(max_examples=75)
    def test_topological_order_respects_every_edge(self, graph):
        order = graph.topological_order()
        position = {node_id: i for i, node_id in enumerate(order)}

        assert sorted(order) == sorted(graph.node_ids)
        for edge in graph.edges:
            assert position[edge.source_node_id] < position[edge.target_node_id]
