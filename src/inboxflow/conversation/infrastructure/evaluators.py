from __future__ import annotations

import re
from typing import Any, Callable, Dict, Mapping

from inboxflow.conversation.domain.value_objects import ConditionOperator


def _text(v: Any) -> str:
    return "" if v is None else str(v).lower()


def _number(v: Any) -> float:
    # absent or blank counts as 0
    if v is None or (isinstance(v, str) and not v.strip()):
        return 0.0
    return float(v)


def _numeric(cmp: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def check(a: Any, b: Any) -> bool:
        try:
            return cmp(_number(a), _number(b))
        except (TypeError, ValueError):
            return False
    return check


OPS: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: lambda a, b: _text(a) == _text(b),
    ConditionOperator.CONTAINS: lambda a, b: _text(b) in _text(a),
    ConditionOperator.STARTS_WITH: lambda a, b: _text(a).startswith(_text(b)),
    ConditionOperator.ENDS_WITH: lambda a, b: _text(a).endswith(_text(b)),
    ConditionOperator.GREATER_THAN: _numeric(lambda a, b: a > b),
    ConditionOperator.LESS_THAN: _numeric(lambda a, b: a < b),
}

TEMPLATE_RE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


def _dot_get(ctx: Mapping[str, Any], path: str) -> Any:
    if path in ctx:
        return ctx[path]
    cur: Any = ctx
    for part in path.split("."):
        part = part.strip()
        if isinstance(cur, Mapping) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


def evaluate_condition(field: str, operator: ConditionOperator, value: Any, scope: Mapping[str, Any]) -> bool:
    """Missing fields compare as the empty string, which numeric operators read as 0."""
    fn = OPS[operator]
    return bool(fn(_dot_get(scope, field), value))


def render_template(text: str, scope: Mapping[str, Any]) -> str:
    """Replace ``{{path}}`` placeholders; unknown paths render empty."""
    def repl(m: re.Match) -> str:
        v = _dot_get(scope, m.group(1))
        return "" if v is None else str(v)
    return TEMPLATE_RE.sub(repl, text)
