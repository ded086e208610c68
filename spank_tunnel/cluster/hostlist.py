"""Compact host-range expansion and tunnel target selection."""

from __future__ import annotations

import re

from spank_tunnel.exceptions import EmptyNodeSet, InvalidExpression
from spank_tunnel.types import ForwardMode

_RANGE = re.compile(r"^(\d+)(?:-(\d+))?$")


def _split_top_level(expr: str) -> list[str]:
    """Split on commas that are not inside brackets."""
    items = []
    depth = 0
    current = []
    for ch in expr:
        if ch == "[":
            depth += 1
            if depth > 1:
                raise InvalidExpression(f"Nested brackets in host expression: {expr!r}")
        elif ch == "]":
            depth -= 1
            if depth < 0:
                raise InvalidExpression(f"Unbalanced ']' in host expression: {expr!r}")
        if ch == "," and depth == 0:
            items.append("".join(current))
            current = []
        else:
            current.append(ch)
    if depth != 0:
        raise InvalidExpression(f"Unbalanced '[' in host expression: {expr!r}")
    items.append("".join(current))
    return [item.strip() for item in items if item.strip()]


def _expand_ranges(body: str, expr: str) -> list[str]:
    """Expand '01-03,7' into ['01', '02', '03', '7'], keeping zero padding."""
    values = []
    for part in body.split(","):
        m = _RANGE.match(part.strip())
        if not m:
            raise InvalidExpression(f"Bad range {part!r} in host expression: {expr!r}")
        start, end = m.group(1), m.group(2)
        if end is None:
            values.append(start)
            continue
        lo, hi = int(start), int(end)
        if hi < lo:
            raise InvalidExpression(f"Descending range {part!r} in host expression: {expr!r}")
        width = len(start) if start.startswith("0") else 0
        values.extend(str(n).zfill(width) for n in range(lo, hi + 1))
    return values


def _expand_item(item: str, expr: str) -> list[str]:
    # Every bracket group multiplies the hosts produced so far
    hosts = [""]
    pos = 0
    for m in re.finditer(r"\[([^\]]*)\]", item):
        literal = item[pos:m.start()]
        hosts = [h + literal for h in hosts]
        values = _expand_ranges(m.group(1), expr)
        hosts = [h + v for h in hosts for v in values]
        pos = m.end()
    tail = item[pos:]
    if "[" in tail or "]" in tail:
        raise InvalidExpression(f"Unbalanced brackets in host expression: {expr!r}")
    return [h + tail for h in hosts]


def expand_hostlist(expr: str) -> list[str]:
    """Expand a compact host-range expression, preserving scheduler order.

    >>> expand_hostlist("node[01-03],gpu5")
    ['node01', 'node02', 'node03', 'gpu5']
    """
    if expr is None:
        raise InvalidExpression("Host expression is missing")
    hosts = []
    for item in _split_top_level(expr.strip()):
        hosts.extend(_expand_item(item, expr))
    return hosts


def resolve_targets(node_expr: str, mode: ForwardMode) -> list[str]:
    """Select the node(s) that need a tunnel for the given forward mode.

    Returns an empty list for ForwardMode.NONE (and BATCH, which the submit
    side never tunnels for); callers treat that as "skip tunnel setup".

    Raises:
        InvalidExpression: If the expression cannot be parsed
        EmptyNodeSet: If the expression expands to zero hosts
    """
    mode = ForwardMode(mode)
    if mode in (ForwardMode.NONE, ForwardMode.BATCH):
        return []

    hosts = expand_hostlist(node_expr)
    if not hosts:
        raise EmptyNodeSet(f"Host expression {node_expr!r} has no hosts")

    if mode == ForwardMode.FIRST:
        return hosts[:1]
    if mode == ForwardMode.LAST:
        return hosts[-1:]
    return hosts
