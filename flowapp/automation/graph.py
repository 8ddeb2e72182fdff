from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from flowapp.automation.errors import MALFORMED_NODE_CONFIG, StepError
from flowapp.automation.schemas import FlowEdge, FlowNode, flow_node_adapter


_WHITE = 0
_GRAY = 1
_BLACK = 2


def find_cycles(node_ids: Iterable[str], adjacency: Mapping[str, list[str]]) -> list[list[str]]:
    """Return one path per back-edge found, e.g. ["a", "b", "a"].

    Iterative white/gray/black DFS; every node is visited once overall so
    disconnected subgraphs are covered.
    """
    color: dict[str, int] = {node_id: _WHITE for node_id in node_ids}
    cycles: list[list[str]] = []

    for root in list(color):
        if color[root] != _WHITE:
            continue
        path: list[str] = [root]
        position: dict[str, int] = {root: 0}
        stack: list[tuple[str, int]] = [(root, 0)]
        color[root] = _GRAY

        while stack:
            node_id, next_index = stack[-1]
            targets = adjacency.get(node_id, [])
            if next_index >= len(targets):
                stack.pop()
                path.pop()
                position.pop(node_id, None)
                color[node_id] = _BLACK
                continue

            stack[-1] = (node_id, next_index + 1)
            target = targets[next_index]
            state = color.get(target)
            if state is None:
                continue
            if state == _GRAY:
                cycles.append(path[position[target]:] + [target])
            elif state == _WHITE:
                color[target] = _GRAY
                position[target] = len(path)
                path.append(target)
                stack.append((target, 0))

    return cycles


def reachable_from(start: str, adjacency: Mapping[str, list[str]]) -> set[str]:
    seen = {start}
    pending = [start]
    while pending:
        current = pending.pop()
        for target in adjacency.get(current, []):
            if target not in seen:
                seen.add(target)
                pending.append(target)
    return seen


class FlowGraph:
    """Adjacency index over a persisted (already validated) flow definition."""

    def __init__(self, nodes: list[dict[str, Any]], edges: list[dict[str, Any]]) -> None:
        self._raw_nodes: dict[str, dict[str, Any]] = {}
        for raw in nodes:
            node_id = str(raw.get("id") or "")
            if node_id:
                self._raw_nodes[node_id] = raw
        self._parsed: dict[str, FlowNode] = {}
        self.outgoing: dict[str, list[FlowEdge]] = {node_id: [] for node_id in self._raw_nodes}
        for raw in edges:
            edge = FlowEdge.model_validate(raw)
            self.outgoing.setdefault(edge.source, []).append(edge)

    @property
    def trigger_node_id(self) -> str | None:
        for node_id, raw in self._raw_nodes.items():
            if raw.get("type") == "trigger":
                return node_id
        return None

    def node(self, node_id: str) -> FlowNode:
        cached = self._parsed.get(node_id)
        if cached is not None:
            return cached
        raw = self._raw_nodes.get(node_id)
        if raw is None:
            raise StepError(MALFORMED_NODE_CONFIG, f"Node {node_id} does not exist in the flow")
        try:
            parsed = flow_node_adapter.validate_python(raw)
        except ValidationError as exc:
            raise StepError(MALFORMED_NODE_CONFIG, f"Node {node_id} has malformed config: {exc.errors()[0]['msg']}") from exc
        self._parsed[node_id] = parsed
        return parsed

    def edges_from(self, node_id: str) -> list[FlowEdge]:
        return self.outgoing.get(node_id, [])

    def sole_successor(self, node_id: str) -> str | None:
        edges = [edge for edge in self.edges_from(node_id) if not edge.label]
        if not edges:
            edges = self.edges_from(node_id)
        if len(edges) != 1:
            return None
        return edges[0].target

    def labeled_successor(self, node_id: str, label: str) -> str | None:
        wanted = label.strip().lower()
        for edge in self.edges_from(node_id):
            if (edge.label or "").strip().lower() == wanted:
                return edge.target
        return None

    def default_successor(self, node_id: str, excluded_labels: Iterable[str] = ()) -> str | None:
        excluded = {label.strip().lower() for label in excluded_labels}
        for edge in self.edges_from(node_id):
            if (edge.label or "").strip().lower() not in excluded:
                return edge.target
        return None
