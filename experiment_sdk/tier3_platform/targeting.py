"""
experiment_sdk.tier3_platform.targeting
────────────────────────────────────────
Targeting-rule evaluation against a caller-supplied user context.

Rules are ANDed. Each rule reads ``user_context[rule.type]`` and compares it
with ``rule.value``. Unknown operators, and ``in``/``not_in`` rules whose
value is not list-shaped, evaluate to False: the evaluator fails closed and
never raises.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping

from experiment_sdk.tier2_reliability.storage import TargetingRule

_LIST_SHAPED = (list, tuple, set, frozenset)


def _strict_equals(a: Any, b: Any) -> bool:
    # A boolean never equals a number, even though True == 1 in Python.
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def _contains(values: Iterable[Any], item: Any) -> bool:
    return any(_strict_equals(v, item) for v in values)


def evaluate_rule(rule: TargetingRule, user_context: Mapping[str, Any]) -> bool:
    user_value = user_context.get(rule.type)
    op = rule.operator

    if op == "equals":
        return _strict_equals(user_value, rule.value)
    if op == "not_equals":
        return not _strict_equals(user_value, rule.value)
    if op == "in":
        return isinstance(rule.value, _LIST_SHAPED) and _contains(rule.value, user_value)
    if op == "not_in":
        return isinstance(rule.value, _LIST_SHAPED) and not _contains(rule.value, user_value)
    return False


def is_eligible(
    user_context: Mapping[str, Any] | None,
    rules: Iterable[TargetingRule] | None,
) -> bool:
    """True when every rule passes. No rules means everyone is eligible."""
    if not rules:
        return True
    context = user_context or {}
    return all(evaluate_rule(rule, context) for rule in rules)


__all__ = ["evaluate_rule", "is_eligible"]
