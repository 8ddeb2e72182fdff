from __future__ import annotations

from typing import Any

import pytest

from flowapp.automation.graph import find_cycles
from flowapp.automation.validation import validate_flow


def _node(node_id: str, node_type: str, **config: Any) -> dict[str, Any]:
    return {"id": node_id, "type": node_type, "config": config}


def _edge(edge_id: str, source: str, target: str, label: str | None = None) -> dict[str, Any]:
    edge: dict[str, Any] = {"id": edge_id, "source": source, "target": target}
    if label is not None:
        edge["label"] = label
    return edge


def _welcome_flow(**overrides: Any) -> dict[str, Any]:
    definition: dict[str, Any] = {
        "name": "Welcome",
        "trigger_type": "message_received",
        "trigger_config": {},
        "nodes": [
            _node("t", "trigger"),
            _node("m", "send_message", message="Welcome!"),
            _node("e", "end"),
        ],
        "edges": [_edge("e1", "t", "m"), _edge("e2", "m", "e")],
    }
    definition.update(overrides)
    return definition


def test_valid_linear_flow_has_no_errors() -> None:
    result = validate_flow(_welcome_flow())
    assert result.valid is True
    assert result.errors == []


def test_missing_name_trigger_type_and_arrays_are_all_reported() -> None:
    result = validate_flow({"name": "  ", "nodes": None, "edges": "nope"})
    assert result.valid is False
    assert "Flow name is required" in result.errors
    assert "Flow trigger type is required" in result.errors
    assert "Flow must have a nodes array" in result.errors
    assert "Flow must have an edges array" in result.errors
    assert "Flow must have at least one trigger node" in result.errors


def test_unknown_trigger_type_is_rejected() -> None:
    result = validate_flow(_welcome_flow(trigger_type="carrier_pigeon"))
    assert "Invalid trigger type: carrier_pigeon" in result.errors


def test_dangling_edge_references_are_reported() -> None:
    definition = _welcome_flow()
    definition["edges"].append(_edge("e3", "m", "ghost"))
    result = validate_flow(definition)
    assert "Edge e3 references non-existent target node: ghost" in result.errors


def test_duplicate_node_ids_are_reported() -> None:
    definition = _welcome_flow()
    definition["nodes"].append(_node("m", "end"))
    result = validate_flow(definition)
    assert "Duplicate node id: m" in result.errors


def test_cycle_is_reported_with_path() -> None:
    definition = {
        "name": "Loop",
        "trigger_type": "message_received",
        "nodes": [
            _node("t", "trigger"),
            _node("a", "join"),
            _node("b", "join"),
            _node("e", "end"),
        ],
        "edges": [
            _edge("e1", "t", "a"),
            _edge("e2", "a", "b"),
            _edge("e3", "b", "a"),
            _edge("e4", "b", "e"),
        ],
    }
    result = validate_flow(definition)
    assert result.valid is False
    assert "Cycle detected: a -> b -> a" in result.errors


def test_find_cycles_handles_long_chains_without_recursion() -> None:
    node_ids = [f"n{index}" for index in range(5000)]
    adjacency = {node_id: [node_ids[index + 1]] if index + 1 < len(node_ids) else [] for index, node_id in enumerate(node_ids)}
    assert find_cycles(node_ids, adjacency) == []

    adjacency[node_ids[-1]] = [node_ids[0]]
    cycles = find_cycles(node_ids, adjacency)
    assert len(cycles) == 1
    assert cycles[0][0] == cycles[0][-1] == "n0"


def test_orphan_node_is_reported() -> None:
    definition = _welcome_flow()
    definition["nodes"].append(_node("lonely", "add_tag", tag_id="vip"))
    result = validate_flow(definition)
    assert "Node lonely is orphaned (no incoming or outgoing edges)" in result.errors


def test_end_node_without_incoming_edges_is_reported() -> None:
    definition = _welcome_flow()
    definition["nodes"].append(_node("e2", "end"))
    result = validate_flow(definition)
    assert "End node e2 has no incoming edges" in result.errors


def test_multiple_trigger_nodes_are_rejected() -> None:
    definition = _welcome_flow()
    definition["nodes"].append(_node("t2", "trigger"))
    definition["edges"].append(_edge("e9", "t2", "e"))
    result = validate_flow(definition)
    assert "Flow must have exactly one trigger node, found 2" in result.errors


def _errors_about(errors: list[str], prefix: str) -> list[str]:
    return [error for error in errors if error.startswith(prefix)]


def test_node_config_errors_are_accumulated() -> None:
    definition = {
        "name": "Broken",
        "trigger_type": "message_received",
        "nodes": [
            _node("t", "trigger"),
            _node("w", "wait", duration=0, unit="fortnights"),
            _node("h", "http_request", url="", method="FETCH"),
            _node("e", "end"),
        ],
        "edges": [_edge("e1", "t", "w"), _edge("e2", "w", "h"), _edge("e3", "h", "e")],
    }
    result = validate_flow(definition)
    assert _errors_about(result.errors, "Node w config.duration:")
    assert _errors_about(result.errors, "Node w config.unit:")
    assert _errors_about(result.errors, "Node h config.url:")
    assert _errors_about(result.errors, "Node h config.method:")


def test_node_config_is_checked_against_runtime_node_schema() -> None:
    definition = {
        "name": "Loose types",
        "trigger_type": "message_received",
        "nodes": [
            _node("t", "trigger"),
            _node("h", "http_request", url="https://example.test/hook", method="GET", headers={"X-Retry": 3}),
            _node("m", "send_message", message="Hi", media_url=5),
            _node("bot", "ai_chatbot", chatbot_id="support", output_variable=7),
            _node("e", "end"),
        ],
        "edges": [
            _edge("e1", "t", "h"),
            _edge("e2", "h", "m"),
            _edge("e3", "m", "bot"),
            _edge("e4", "bot", "e"),
        ],
    }
    result = validate_flow(definition)
    assert result.valid is False
    assert "Node h config.headers.X-Retry: Input should be a valid string" in result.errors
    assert _errors_about(result.errors, "Node m config.media_url:")
    assert _errors_about(result.errors, "Node bot config.output_variable:")


def test_branch_default_label_must_be_a_string() -> None:
    definition = {
        "name": "Branch",
        "trigger_type": "message_received",
        "nodes": [
            _node("t", "trigger"),
            _node(
                "br",
                "branch",
                branches=[{"label": "vip", "conditions": [{"field": "tier", "operator": "equals", "value": "gold"}]}],
                default_label=1,
            ),
            _node("a", "end"),
        ],
        "edges": [_edge("e1", "t", "br"), _edge("e2", "br", "a", "vip")],
    }
    result = validate_flow(definition)
    assert _errors_about(result.errors, "Node br config.default_label:")


def test_condition_edges_must_be_true_or_false() -> None:
    definition = {
        "name": "Cond",
        "trigger_type": "message_received",
        "nodes": [
            _node("t", "trigger"),
            _node("c", "condition", conditions=[{"field": "contact.first_name", "operator": "equals", "value": "A"}]),
            _node("a", "end"),
            _node("b", "end"),
        ],
        "edges": [
            _edge("e1", "t", "c"),
            _edge("e2", "c", "a", "true"),
            _edge("e3", "c", "b", "maybe"),
        ],
    }
    result = validate_flow(definition)
    assert "Condition node c edges must be labeled 'true' or 'false'" in result.errors


def test_condition_needs_both_true_and_false_edges() -> None:
    definition = {
        "name": "Cond",
        "trigger_type": "message_received",
        "nodes": [
            _node("t", "trigger"),
            _node("c", "condition", conditions=[{"field": "contact.first_name", "operator": "equals", "value": "Node"}]),
            _node("e", "end"),
        ],
        "edges": [_edge("e1", "t", "c"), _edge("e2", "c", "e", "true")],
    }
    result = validate_flow(definition)
    assert "Condition node c must have exactly one 'true' edge and one 'false' edge" in result.errors


@pytest.mark.parametrize(
    "node",
    [
        _node("n", "http_request", url="https://example.test/hook", method="POST"),
        _node("n", "ai_chatbot", chatbot_id="support"),
    ],
)
def test_error_edge_alone_is_not_a_default_edge(node: dict[str, Any]) -> None:
    definition = {
        "name": "Only error",
        "trigger_type": "message_received",
        "nodes": [_node("t", "trigger"), node, _node("e", "end")],
        "edges": [_edge("e1", "t", "n"), _edge("e2", "n", "e", "error")],
    }
    result = validate_flow(definition)
    assert "Node n must have exactly one default edge and at most one error edge" in result.errors


def test_branch_edge_labels_must_match_declared_branches() -> None:
    definition = {
        "name": "Branch",
        "trigger_type": "message_received",
        "nodes": [
            _node("t", "trigger"),
            _node(
                "br",
                "branch",
                branches=[{"label": "vip", "conditions": [{"field": "tier", "operator": "equals", "value": "gold"}]}],
            ),
            _node("a", "end"),
            _node("b", "end"),
            _node("c", "end"),
        ],
        "edges": [
            _edge("e1", "t", "br"),
            _edge("e2", "br", "a", "vip"),
            _edge("e3", "br", "b", "default"),
            _edge("e4", "br", "c", "gold"),
        ],
    }
    result = validate_flow(definition)
    assert "Branch node br edge label does not match any branch: gold" in result.errors


def test_http_request_node_allows_default_and_error_edges() -> None:
    definition = {
        "name": "Webhook call",
        "trigger_type": "message_received",
        "nodes": [
            _node("t", "trigger"),
            _node("h", "http_request", url="https://example.test/hook", method="POST"),
            _node("ok", "end"),
            _node("bad", "end"),
        ],
        "edges": [_edge("e1", "t", "h"), _edge("e2", "h", "ok"), _edge("e3", "h", "bad", "error")],
    }
    assert validate_flow(definition).valid is True


def test_keyword_trigger_requires_keywords() -> None:
    result = validate_flow(_welcome_flow(trigger_type="keyword", trigger_config={"keywords": []}))
    assert "Keyword trigger must have at least one keyword" in result.errors


def test_field_updated_trigger_requires_field_name() -> None:
    result = validate_flow(_welcome_flow(trigger_type="field_updated", trigger_config={}))
    assert "Field updated trigger must have a field name" in result.errors


def test_time_based_trigger_requires_valid_schedule() -> None:
    missing = validate_flow(_welcome_flow(trigger_type="time_based", trigger_config={}))
    assert "Time-based trigger must have a schedule" in missing.errors

    invalid = validate_flow(
        _welcome_flow(
            trigger_type="time_based",
            trigger_config={"schedule": {"start": "25:00", "end": "17:00", "timezone": "Mars/Olympus"}},
        )
    )
    assert "Trigger schedule has invalid start time: 25:00" in invalid.errors
    assert "Trigger schedule has unknown timezone: Mars/Olympus" in invalid.errors


def test_negative_continuation_window_is_rejected() -> None:
    result = validate_flow(_welcome_flow(trigger_config={"continuation_window_seconds": -5}))
    assert "Invalid continuation_window_seconds: -5" in result.errors
