# ABOUTME: Trigger condition expressions for notification channels
# ABOUTME: Parses and evaluates small boolean expressions against an event context

"""
Trigger conditions.

A notification trigger may carry a condition that narrows when it fires.
Conditions are a deliberately small language:

    app.health == 'degraded'
    app.project in ['prod', 'staging'] and operation.kind != 'rollback'
    app.name == 'web' or app.name == 'api'

Grammar (``and`` binds tighter than ``or``, no parentheses):

    expr       := conjunction ("or" conjunction)*
    conjunction:= comparison ("and" comparison)*
    comparison := path ("==" | "!=") literal
                | path ("in" | "not in") "[" literal ("," literal)* "]"
    literal    := 'quoted' | "quoted" | number | true | false | null

Conditions are parsed when a channel is configured. Evaluation never raises:
a path that does not exist resolves to None.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

_COMPARISON = re.compile(
    r"^\s*(?P<path>[A-Za-z_][\w.]*)\s*(?P<op>==|!=|not\s+in|in)\s*(?P<rhs>.+?)\s*$"
)
_SPLIT_OR = re.compile(r"\s+or\s+")
_SPLIT_AND = re.compile(r"\s+and\s+")
_LIST_ITEM = re.compile(r"""'[^']*'|"[^"]*"|[^,\s]+""")


@dataclass(frozen=True)
class Comparison:
    path: str
    op: str
    value: Any

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        actual = resolve_path(context, self.path)
        if self.op == "==":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        if self.op == "in":
            return actual in self.value
        return actual not in self.value


@dataclass(frozen=True)
class Condition:
    """Disjunction of conjunctions of comparisons."""

    source: str
    clauses: tuple[tuple[Comparison, ...], ...]

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return any(all(c.evaluate(context) for c in clause) for clause in self.clauses)


def _parse_literal(text: str) -> Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in ("null", "none"):
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"invalid literal {text!r}") from None


def _parse_comparison(text: str) -> Comparison:
    match = _COMPARISON.match(text)
    if not match:
        raise ValueError(f"invalid comparison {text.strip()!r}")
    op = " ".join(match.group("op").split())
    rhs = match.group("rhs")
    if op in ("in", "not in"):
        if not (rhs.startswith("[") and rhs.endswith("]")):
            raise ValueError(f"'{op}' expects a [list] in {text.strip()!r}")
        items = _LIST_ITEM.findall(rhs[1:-1])
        return Comparison(match.group("path"), op, tuple(_parse_literal(i) for i in items))
    return Comparison(match.group("path"), op, _parse_literal(rhs))


@lru_cache(maxsize=256)
def parse_condition(source: str) -> Condition:
    """Parse a condition; raises ValueError when malformed."""
    if not source or not source.strip():
        raise ValueError("condition is empty")
    clauses = []
    for disjunct in _SPLIT_OR.split(source.strip()):
        clauses.append(tuple(_parse_comparison(part) for part in _SPLIT_AND.split(disjunct)))
    return Condition(source=source, clauses=tuple(clauses))


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
        if current is None:
            return None
    return current
