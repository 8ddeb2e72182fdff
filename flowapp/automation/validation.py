from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from flowapp.automation.graph import find_cycles, reachable_from
from flowapp.automation.schemas import (
    DEFAULT_LABELS,
    ERROR_LABEL,
    FALSE_LABEL,
    KEYWORD_MATCH_TYPES,
    MESSAGE_TYPES,
    NODE_TYPES,
    TRIGGER_TYPES,
    TRUE_LABEL,
    BranchNode,
    FlowNode,
    FlowValidationResult,
    flow_node_adapter,
)


_CLOCK_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

_SINGLE_SUCCESSOR_TYPES = {"trigger", "wait", "send_message", "add_tag", "remove_tag", "update_field", "join"}
_ERROR_EDGE_TYPES = {"http_request", "ai_chatbot"}


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _label(edge: Mapping[str, Any]) -> str:
    raw = edge.get("label")
    return raw.strip().lower() if isinstance(raw, str) else ""


def validate_flow(definition: Mapping[str, Any]) -> FlowValidationResult:
    errors: list[str] = []

    if _is_blank(definition.get("name")):
        errors.append("Flow name is required")

    trigger_type = definition.get("trigger_type")
    if _is_blank(trigger_type):
        errors.append("Flow trigger type is required")
    elif trigger_type not in TRIGGER_TYPES:
        errors.append(f"Invalid trigger type: {trigger_type}")

    raw_nodes = definition.get("nodes")
    raw_edges = definition.get("edges")
    if not isinstance(raw_nodes, list):
        errors.append("Flow must have a nodes array")
        raw_nodes = []
    if not isinstance(raw_edges, list):
        errors.append("Flow must have an edges array")
        raw_edges = []

    nodes, parsed = _check_nodes(raw_nodes, errors)
    edges = _check_edges(raw_edges, nodes, errors)

    adjacency: dict[str, list[str]] = {node_id: [] for node_id in nodes}
    incoming: dict[str, int] = {node_id: 0 for node_id in nodes}
    for edge in edges:
        adjacency[edge["source"]].append(edge["target"])
        incoming[edge["target"]] += 1

    for cycle in find_cycles(nodes, adjacency):
        errors.append(f"Cycle detected: {' -> '.join(cycle)}")

    _check_degrees(nodes, parsed, edges, adjacency, incoming, errors)

    trigger_ids = [node_id for node_id, node in nodes.items() if node.get("type") == "trigger"]
    if not trigger_ids:
        errors.append("Flow must have at least one trigger node")
    elif len(trigger_ids) > 1:
        errors.append(f"Flow must have exactly one trigger node, found {len(trigger_ids)}")
    else:
        reachable = reachable_from(trigger_ids[0], adjacency)
        for node_id in nodes:
            if node_id not in reachable and (incoming[node_id] or adjacency[node_id]):
                errors.append(f"Node {node_id} is not reachable from the trigger node")

    if isinstance(trigger_type, str) and trigger_type in TRIGGER_TYPES:
        trigger_config = definition.get("trigger_config")
        _check_trigger_config(trigger_type, trigger_config if isinstance(trigger_config, Mapping) else {}, errors)

    return FlowValidationResult(valid=not errors, errors=errors)


def _check_nodes(raw_nodes: list[Any], errors: list[str]) -> tuple[dict[str, Mapping[str, Any]], dict[str, FlowNode]]:
    nodes: dict[str, Mapping[str, Any]] = {}
    parsed: dict[str, FlowNode] = {}
    for index, node in enumerate(raw_nodes):
        if not isinstance(node, Mapping):
            errors.append(f"Node at index {index} must be an object")
            continue
        node_id = node.get("id")
        if _is_blank(node_id):
            errors.append(f"Node at index {index} must have an id")
            continue
        if node_id in nodes:
            errors.append(f"Duplicate node id: {node_id}")
            continue
        nodes[node_id] = node

        node_type = node.get("type")
        if node_type not in NODE_TYPES:
            errors.append(f"Node {node_id} has invalid type: {node_type}")
            continue
        try:
            parsed[node_id] = flow_node_adapter.validate_python(node)
        except ValidationError as exc:
            for error in exc.errors():
                # loc starts with the discriminator tag, e.g. ("wait", "config", "duration")
                where = ".".join(str(part) for part in error["loc"][1:])
                errors.append(f"Node {node_id} {where}: {error['msg']}")
    return nodes, parsed


def _check_edges(
    raw_edges: list[Any],
    nodes: Mapping[str, Mapping[str, Any]],
    errors: list[str],
) -> list[Mapping[str, Any]]:
    edges: list[Mapping[str, Any]] = []
    seen_ids: set[str] = set()
    for index, edge in enumerate(raw_edges):
        if not isinstance(edge, Mapping):
            errors.append(f"Edge at index {index} must be an object")
            continue
        edge_id = edge.get("id")
        if _is_blank(edge_id):
            errors.append(f"Edge at index {index} must have an id")
            edge_id = f"#{index}"
        elif edge_id in seen_ids:
            errors.append(f"Duplicate edge id: {edge_id}")
        seen_ids.add(edge_id)

        source = edge.get("source")
        target = edge.get("target")
        resolved = True
        if source not in nodes:
            errors.append(f"Edge {edge_id} references non-existent source node: {source}")
            resolved = False
        if target not in nodes:
            errors.append(f"Edge {edge_id} references non-existent target node: {target}")
            resolved = False
        if resolved:
            edges.append(edge)
    return edges


def _check_degrees(
    nodes: Mapping[str, Mapping[str, Any]],
    parsed: Mapping[str, FlowNode],
    edges: list[Mapping[str, Any]],
    adjacency: Mapping[str, list[str]],
    incoming: Mapping[str, int],
    errors: list[str],
) -> None:
    outgoing_edges: dict[str, list[Mapping[str, Any]]] = {node_id: [] for node_id in nodes}
    for edge in edges:
        outgoing_edges[edge["source"]].append(edge)

    for node_id, node in nodes.items():
        node_type = node.get("type")
        out_degree = len(adjacency[node_id])
        in_degree = incoming[node_id]

        if node_type == "trigger":
            if out_degree == 0:
                errors.append(f"Trigger node {node_id} has no outgoing edges")
            if in_degree:
                errors.append(f"Trigger node {node_id} must not have incoming edges")
        elif node_type == "end":
            if in_degree == 0:
                errors.append(f"End node {node_id} has no incoming edges")
            if out_degree:
                errors.append(f"End node {node_id} must not have outgoing edges")
        elif in_degree == 0 and out_degree == 0:
            errors.append(f"Node {node_id} is orphaned (no incoming or outgoing edges)")
        elif in_degree == 0:
            errors.append(f"Node {node_id} has no incoming edges")
        elif out_degree == 0:
            errors.append(f"Node {node_id} has no outgoing edges")

        if not out_degree:
            continue
        labels = [_label(edge) for edge in outgoing_edges[node_id]]
        if node_type in _SINGLE_SUCCESSOR_TYPES and out_degree > 1:
            errors.append(f"Node {node_id} must have exactly one outgoing edge")
        elif node_type in _ERROR_EDGE_TYPES:
            defaults = [label for label in labels if label != ERROR_LABEL]
            if len(defaults) != 1 or labels.count(ERROR_LABEL) > 1:
                errors.append(f"Node {node_id} must have exactly one default edge and at most one error edge")
        elif node_type == "condition":
            if any(label not in (TRUE_LABEL, FALSE_LABEL) for label in labels):
                errors.append(f"Condition node {node_id} edges must be labeled 'true' or 'false'")
            elif labels.count(TRUE_LABEL) != 1 or labels.count(FALSE_LABEL) != 1:
                errors.append(f"Condition node {node_id} must have exactly one 'true' edge and one 'false' edge")
        elif node_type == "branch":
            branch = parsed.get(node_id)
            if isinstance(branch, BranchNode):
                _check_branch_edges(branch, labels, errors)


def _check_branch_edges(node: BranchNode, labels: list[str], errors: list[str]) -> None:
    declared: set[str] = set()
    for branch in node.config.branches:
        label = branch.label.strip().lower()
        if label in declared:
            errors.append(f"Branch node {node.id} has duplicate branch label: {branch.label}")
        declared.add(label)

    allowed = declared | set(DEFAULT_LABELS)
    if node.config.default_label and node.config.default_label.strip():
        allowed.add(node.config.default_label.strip().lower())

    for label in labels:
        if not label:
            errors.append(f"Branch node {node.id} edges must be labeled")
        elif label not in allowed:
            errors.append(f"Branch node {node.id} edge label does not match any branch: {label}")
    if len(set(labels)) != len(labels):
        errors.append(f"Branch node {node.id} has duplicate edge labels")


def _check_schedule(schedule: Mapping[str, Any], errors: list[str]) -> None:
    for key in ("start", "end"):
        value = schedule.get(key)
        if not isinstance(value, str) or not _CLOCK_RE.match(value):
            errors.append(f"Trigger schedule has invalid {key} time: {value}")
    timezone_name = schedule.get("timezone")
    if timezone_name is not None:
        try:
            ZoneInfo(str(timezone_name))
        except (ZoneInfoNotFoundError, ValueError, OSError):
            errors.append(f"Trigger schedule has unknown timezone: {timezone_name}")


def _check_trigger_config(trigger_type: str, config: Mapping[str, Any], errors: list[str]) -> None:
    window = config.get("continuation_window_seconds")
    if window is not None and (not _is_number(window) or window < 0):
        errors.append(f"Invalid continuation_window_seconds: {window}")

    schedule = config.get("schedule")
    if trigger_type == "time_based" and (not isinstance(schedule, Mapping) or not schedule):
        errors.append("Time-based trigger must have a schedule")
    elif schedule is not None:
        if isinstance(schedule, Mapping):
            _check_schedule(schedule, errors)
        else:
            errors.append("Trigger schedule must be an object")

    if trigger_type == "keyword":
        keywords = config.get("keywords")
        if not isinstance(keywords, list) or not any(not _is_blank(item) for item in keywords):
            errors.append("Keyword trigger must have at least one keyword")
        match_type = config.get("match_type", "contains")
        if match_type not in KEYWORD_MATCH_TYPES:
            errors.append(f"Keyword trigger has invalid match_type: {match_type}")
    elif trigger_type in ("tag_added", "tag_removed"):
        if _is_blank(config.get("tag_id")):
            errors.append(f"{trigger_type} trigger must have a tag_id")
    elif trigger_type == "field_updated":
        if _is_blank(config.get("field")):
            errors.append("Field updated trigger must have a field name")
    elif trigger_type == "webhook":
        if _is_blank(config.get("webhook_url")):
            errors.append("Webhook trigger must have a webhook_url")
    elif trigger_type == "message_received":
        message_types = config.get("message_types")
        if message_types is not None and (
            not isinstance(message_types, list) or any(item not in MESSAGE_TYPES for item in message_types)
        ):
            errors.append(f"Message received trigger has invalid message_types: {message_types}")
