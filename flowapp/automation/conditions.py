from __future__ import annotations

from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any

from flowapp.automation.schemas import ConditionRule
from flowapp.automation.templating import resolve_path


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _loose_equals(left: Any, right: Any) -> bool:
    left_number = _as_number(left)
    right_number = _as_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    if isinstance(left, (list, dict)) or isinstance(right, (list, dict)):
        return left == right
    return _as_text(left) == _as_text(right)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return not value
    return False


def _contains(current: Any, target: Any) -> bool:
    if isinstance(current, (list, tuple, set)):
        return any(_loose_equals(item, target) for item in current)
    return _as_text(target) in _as_text(current)


def evaluate_rule(rule: ConditionRule, variables: Mapping[str, Any]) -> bool:
    exists, current = resolve_path(variables, rule.field)
    if not exists:
        return False

    op = rule.operator
    target = rule.value

    if op == "equals":
        return _loose_equals(current, target)
    if op == "not_equals":
        return not _loose_equals(current, target)
    if op == "contains":
        return _contains(current, target)
    if op == "not_contains":
        return not _contains(current, target)
    if op == "starts_with":
        return _as_text(current).startswith(_as_text(target))
    if op == "ends_with":
        return _as_text(current).endswith(_as_text(target))
    if op == "is_empty":
        return _is_empty(current)
    if op == "is_not_empty":
        return not _is_empty(current)

    left = _as_number(current)
    right = _as_number(target)
    if left is None or right is None:
        return False
    if op == "greater_than":
        return left > right
    if op == "less_than":
        return left < right
    if op == "greater_than_or_equal":
        return left >= right
    if op == "less_than_or_equal":
        return left <= right
    return False


def evaluate_rules(rules: Sequence[ConditionRule], operator: str, variables: Mapping[str, Any]) -> bool:
    results = (evaluate_rule(rule, variables) for rule in rules)
    if operator == "OR":
        return any(results)
    return all(results)
