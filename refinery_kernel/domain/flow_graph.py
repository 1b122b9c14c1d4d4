"""
Flow Graph -- Immutable process definition for one pipeline version.

Responsibility:
    Represents the directed graph of stations and checks an administrator
    authored for a pipeline, validates its shape, and answers "what comes
    after node N".

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The Flow ORM model
    stores the definition as JSON and rebuilds a FlowGraph on demand via
    ``FlowGraph.from_definition``.

Invariants enforced by ``validate``:
    - At least one node; node ids are non-empty, unique and never the
      reserved terminal sentinel.
    - Every edge references existing nodes; no self-loops, no duplicate
      edges.
    - The graph is acyclic, so every batch makes monotonic progress.
    - The entry node is the declared ``entry_node_id`` (which must have no
      incoming edges) or, when none is declared, the single node with
      in-degree 0.
    - Every node is reachable from the entry node.

Failure modes:
    - GraphError with the flow reference and a human-readable reason.

Audit relevance:
    Validation runs when a flow is activated and again when a batch binds to
    it, because a draft may have been edited into an invalid shape after it
    was last checked.
"""

import heapq
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

from refinery_kernel.domain.values import TERMINAL_NODE_ID, NodeKind
from refinery_kernel.exceptions import GraphError


@dataclass(frozen=True)
class FlowNode:
    """A station or check step within a flow."""

    id: str
    kind: NodeKind
    template_id: str | None = None
    layout_hint: Mapping[str, Any] | None = field(
        default=None, compare=False, hash=False
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "template_id": self.template_id,
            "layout_hint": dict(self.layout_hint) if self.layout_hint else None,
        }


@dataclass(frozen=True)
class FlowEdge:
    source_node_id: str
    target_node_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "source_node_id": self.source_node_id,
            "target_node_id": self.target_node_id,
        }


@dataclass(frozen=True)
class FlowGraph:
    """
    Immutable directed graph of a flow version.

    Node order and edge order are the declaration order; ``next_nodes``
    preserves edge order so branch candidates are presented consistently.
    """

    flow_ref: str
    nodes: tuple[FlowNode, ...]
    edges: tuple[FlowEdge, ...]
    entry_node_id: str | None = None

    @classmethod
    def from_definition(
        cls,
        flow_ref: str,
        nodes: Iterable[Mapping[str, Any]],
        edges: Iterable[Mapping[str, Any]],
        entry_node_id: str | None = None,
    ) -> "FlowGraph":
        """
        Build a graph from plain mappings (as stored in the flows table).

        Raises:
            GraphError: A node has no id or an unknown kind, or an edge is
                missing an endpoint.
        """
        parsed_nodes = []
        for raw in nodes:
            node_id = raw.get("id")
            if not node_id:
                raise GraphError(flow_ref, "node without an id")
            try:
                kind = NodeKind(raw.get("kind", NodeKind.STATION.value))
            except ValueError:
                raise GraphError(
                    flow_ref, f"node {node_id} has unknown kind {raw.get('kind')!r}"
                ) from None
            parsed_nodes.append(
                FlowNode(
                    id=str(node_id),
                    kind=kind,
                    template_id=raw.get("template_id"),
                    layout_hint=raw.get("layout_hint"),
                )
            )

        parsed_edges = []
        for raw in edges:
            source = raw.get("source_node_id")
            target = raw.get("target_node_id")
            if not source or not target:
                raise GraphError(flow_ref, "edge without source or target")
            parsed_edges.append(FlowEdge(str(source), str(target)))

        return cls(
            flow_ref=flow_ref,
            nodes=tuple(parsed_nodes),
            edges=tuple(parsed_edges),
            entry_node_id=entry_node_id,
        )

    # -- structure -----------------------------------------------------------

    @cached_property
    def _nodes_by_id(self) -> dict[str, FlowNode]:
        return {node.id: node for node in self.nodes}

    @cached_property
    def _successors(self) -> dict[str, tuple[str, ...]]:
        succ: dict[str, list[str]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            succ.setdefault(edge.source_node_id, []).append(edge.target_node_id)
        return {node_id: tuple(targets) for node_id, targets in succ.items()}

    @cached_property
    def _in_degree(self) -> dict[str, int]:
        degree = {node.id: 0 for node in self.nodes}
        for edge in self.edges:
            if edge.target_node_id in degree:
                degree[edge.target_node_id] += 1
        return degree

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(node.id for node in self.nodes)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes_by_id

    def node(self, node_id: str) -> FlowNode:
        """Return the node with ``node_id``; GraphError if unknown."""
        try:
            return self._nodes_by_id[node_id]
        except KeyError:
            raise GraphError(self.flow_ref, f"unknown node {node_id}") from None

    def next_nodes(self, node_id: str) -> tuple[str, ...]:
        """Ordered targets of the edges leaving ``node_id``."""
        if not self.has_node(node_id):
            raise GraphError(self.flow_ref, f"unknown node {node_id}")
        return self._successors.get(node_id, ())

    def is_terminal(self, node_id: str) -> bool:
        return not self.next_nodes(node_id)

    def entry_node(self) -> FlowNode:
        """
        The node a new batch starts at.

        Raises:
            GraphError: No declared entry and not exactly one source node.
        """
        if self.entry_node_id is not None:
            return self.node(self.entry_node_id)
        sources = [node for node in self.nodes if self._in_degree[node.id] == 0]
        if len(sources) != 1:
            found = ", ".join(node.id for node in sources) or "none"
            raise GraphError(
                self.flow_ref,
                f"expected exactly one node without incoming edges, found {found}",
            )
        return sources[0]

    def topological_order(self) -> tuple[str, ...]:
        """
        Node ids in a topological order, ties broken by declaration order.

        Raises:
            GraphError: The graph contains a cycle.
        """
        position = {node.id: index for index, node in enumerate(self.nodes)}
        remaining = dict(self._in_degree)
        ready = [position[node_id] for node_id, deg in remaining.items() if deg == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            node_id = self.nodes[heapq.heappop(ready)].id
            order.append(node_id)
            for target in self._successors.get(node_id, ()):
                if target not in remaining:
                    continue
                remaining[target] -= 1
                if remaining[target] == 0:
                    heapq.heappush(ready, position[target])

        if len(order) != len(self.nodes):
            stuck = sorted(set(self.node_ids) - set(order), key=position.__getitem__)
            raise GraphError(
                self.flow_ref, f"cycle detected involving {', '.join(stuck)}"
            )
        return tuple(order)

    def reachable_from(self, node_id: str) -> frozenset[str]:
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for target in self._successors.get(current, ()):
                if target not in seen:
                    seen.add(target)
                    queue.append(target)
        return frozenset(seen)

    def nodes_definition(self) -> list[dict[str, Any]]:
        return [node.to_dict() for node in self.nodes]

    def edges_definition(self) -> list[dict[str, str]]:
        return [edge.to_dict() for edge in self.edges]


def validate(graph: FlowGraph) -> FlowGraph:
    """
    Check that ``graph`` is a well-formed, acyclic, connected process.

    Returns the graph unchanged so callers can chain.

    Raises:
        GraphError: On the first violation found.
    """
    ref = graph.flow_ref
    if not graph.nodes:
        raise GraphError(ref, "flow has no nodes")

    seen: set[str] = set()
    for node in graph.nodes:
        if node.id == TERMINAL_NODE_ID:
            raise GraphError(ref, f"node id {TERMINAL_NODE_ID} is reserved")
        if node.id in seen:
            raise GraphError(ref, f"duplicate node id {node.id}")
        seen.add(node.id)

    seen_edges: set[tuple[str, str]] = set()
    for edge in graph.edges:
        for endpoint in (edge.source_node_id, edge.target_node_id):
            if endpoint not in seen:
                raise GraphError(
                    ref,
                    f"edge {edge.source_node_id} -> {edge.target_node_id} "
                    f"references missing node {endpoint}",
                )
        if edge.source_node_id == edge.target_node_id:
            raise GraphError(ref, f"self-loop on node {edge.source_node_id}")
        key = (edge.source_node_id, edge.target_node_id)
        if key in seen_edges:
            raise GraphError(
                ref,
                f"duplicate edge {edge.source_node_id} -> {edge.target_node_id}",
            )
        seen_edges.add(key)

    graph.topological_order()

    if graph.entry_node_id is not None:
        if graph.entry_node_id not in seen:
            raise GraphError(ref, f"entry node {graph.entry_node_id} does not exist")
        if graph._in_degree[graph.entry_node_id] != 0:
            raise GraphError(
                ref, f"entry node {graph.entry_node_id} has incoming edges"
            )
    entry = graph.entry_node()

    reachable = graph.reachable_from(entry.id)
    unreachable = [node_id for node_id in graph.node_ids if node_id not in reachable]
    if unreachable:
        raise GraphError(
            ref,
            f"nodes not reachable from entry {entry.id}: {', '.join(unreachable)}",
        )
    return graph


def next_nodes(graph: FlowGraph, node_id: str) -> tuple[str, ...]:
    """Ordered successors of ``node_id``; empty means terminal."""
    return graph.next_nodes(node_id)


def is_terminal(graph: FlowGraph, node_id: str) -> bool:
    return graph.is_terminal(node_id)
