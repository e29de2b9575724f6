"""CSS-like selectors over element attributes.

A selector is a comma separated union of simple selectors. Each simple
selector optionally names the element group, optionally an id, and then
any number of bracketed attribute clauses, all of which must hold:

    node[type = "domain"]
    #ipv4:1a2b3c, edge[type = "resolves"]
    [props.port >= 1024][label @*= "corp"]
    node[?props.ssl][!parent]

Attribute names are dotted paths into nested mappings. Operators are
=, !=, *=, ^=, $=, >, >=, <, <=; a leading @ makes string comparison
case insensitive. Unary clauses are [name] (present), [!name] (absent),
[?name] (truthy) and [^name] (falsy).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Optional

from recongraph.errors import SelectorSyntaxError

NODE_GROUP = "node"
EDGE_GROUP = "edge"

RE_GROUP = re.compile(r"^(node|edge|\*)(?![\w-])")
RE_ID = re.compile(r"""^#(?:"((?:[^"\\]|\\.)*)"|'((?:[^'\\]|\\.)*)'|([^\s\[\],#"']+))""")
RE_BINARY = re.compile(
    r"^\s*([\w.:\-]+)\s*(@?)(!=|\*=|\^=|\$=|>=|<=|=|>|<)\s*(.+?)\s*$"
)
RE_UNARY = re.compile(r"^\s*([!?^]?)\s*([\w.:\-]+)\s*$")
RE_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

_MISSING = object()


def _split_outside_quotes(text: str, sep: str) -> list[str]:
    """Split on ``sep`` except inside quotes or brackets."""
    parts: list[str] = []
    current: list[str] = []
    quote: Optional[str] = None
    depth = 0
    escaped = False

    for ch in text:
        if escaped:
            current.append(ch)
            escaped = False
            continue
        if ch == "\\":
            current.append(ch)
            escaped = True
            continue
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)

    if quote or depth:
        raise SelectorSyntaxError(f"Unbalanced selector {text!r}")
    parts.append("".join(current))
    return parts


def _unquote(raw: str) -> Any:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return re.sub(r"\\(.)", r"\1", raw[1:-1])
    if RE_NUMBER.match(raw):
        number = float(raw)
        return int(number) if number.is_integer() and "." not in raw else number
    return raw


def resolve_path(data: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    """Follow a dotted path through nested mappings."""
    value: Any = data
    for key in path:
        if isinstance(value, Mapping) and key in value:
            value = value[key]
        else:
            return _MISSING
    return value


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and RE_NUMBER.match(value.strip()):
        return float(value)
    return None


@dataclass(frozen=True)
class Clause:
    """One bracketed attribute test."""
    path: tuple[str, ...]
    op: str
    value: Any = None
    ignore_case: bool = False

    def test(self, data: Mapping[str, Any]) -> bool:
        actual = resolve_path(data, self.path)
        present = actual is not _MISSING and actual is not None

        if self.op == "present":
            return present
        if self.op == "absent":
            return not present
        if self.op == "truthy":
            return present and bool(actual)
        if self.op == "falsy":
            return not present or not bool(actual)

        if self.op == "=":
            return present and self._equals(actual)
        if self.op == "!=":
            return not present or not self._equals(actual)

        if not present:
            return False

        if self.op in ("*=", "^=", "$="):
            left, right = str(actual), str(self.value)
            if self.ignore_case:
                left, right = left.casefold(), right.casefold()
            if self.op == "*=":
                return right in left
            if self.op == "^=":
                return left.startswith(right)
            return left.endswith(right)

        left_num, right_num = _as_number(actual), _as_number(self.value)
        if left_num is None or right_num is None:
            return False
        if self.op == ">":
            return left_num > right_num
        if self.op == ">=":
            return left_num >= right_num
        if self.op == "<":
            return left_num < right_num
        return left_num <= right_num

    def _equals(self, actual: Any) -> bool:
        if isinstance(self.value, (int, float)):
            number = _as_number(actual)
            return number is not None and number == float(self.value)
        left, right = str(actual), str(self.value)
        if isinstance(actual, bool):
            left = "true" if actual else "false"
        if self.ignore_case:
            return left.casefold() == right.casefold()
        return left == right


@dataclass(frozen=True)
class SimpleSelector:
    group: Optional[str] = None
    element_id: Optional[str] = None
    clauses: tuple[Clause, ...] = ()

    def matches(self, group: str, data: Mapping[str, Any]) -> bool:
        if self.group and self.group != group:
            return False
        if self.element_id is not None and data.get("id") != self.element_id:
            return False
        return all(clause.test(data) for clause in self.clauses)


@dataclass(frozen=True)
class Selector:
    """A compiled selector; matches when any alternative matches."""
    source: str
    alternatives: tuple[SimpleSelector, ...]

    @property
    def matches_everything(self) -> bool:
        return any(
            not alt.group and alt.element_id is None and not alt.clauses
            for alt in self.alternatives
        )

    def matches(self, group: str, data: Mapping[str, Any]) -> bool:
        return any(alt.matches(group, data) for alt in self.alternatives)

    def matches_node(self, data: Mapping[str, Any]) -> bool:
        return self.matches(NODE_GROUP, data)

    def matches_edge(self, data: Mapping[str, Any]) -> bool:
        return self.matches(EDGE_GROUP, data)


def _parse_clause(body: str, text: str) -> Clause:
    m = RE_BINARY.match(body)
    if m:
        name, ci, op, raw = m.groups()
        return Clause(
            path=tuple(name.split(".")),
            op=op,
            value=_unquote(raw),
            ignore_case=bool(ci),
        )

    m = RE_UNARY.match(body)
    if m:
        prefix, name = m.groups()
        op = {"": "present", "!": "absent", "?": "truthy", "^": "falsy"}[prefix]
        return Clause(path=tuple(name.split(".")), op=op)

    raise SelectorSyntaxError(f"Invalid attribute clause [{body}] in {text!r}")


def _parse_simple(part: str, text: str) -> SimpleSelector:
    rest = part.strip()
    group: Optional[str] = None
    element_id: Optional[str] = None
    clauses: list[Clause] = []

    m = RE_GROUP.match(rest)
    if m:
        group = None if m.group(1) == "*" else m.group(1)
        rest = rest[m.end():]

    while rest:
        if rest.startswith("#"):
            m = RE_ID.match(rest)
            if not m:
                raise SelectorSyntaxError(f"Invalid id in {text!r}")
            raw = next(g for g in m.groups() if g is not None)
            element_id = re.sub(r"\\(.)", r"\1", raw)
            rest = rest[m.end():]
        elif rest.startswith("["):
            end = _clause_end(rest, text)
            clauses.append(_parse_clause(rest[1:end], text))
            rest = rest[end + 1:]
        else:
            raise SelectorSyntaxError(
                f"Unexpected {rest[:20]!r} in selector {text!r}"
            )

    return SimpleSelector(group=group, element_id=element_id, clauses=tuple(clauses))


def _clause_end(rest: str, text: str) -> int:
    quote: Optional[str] = None
    escaped = False
    for i, ch in enumerate(rest[1:], start=1):
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "]":
            return i
    raise SelectorSyntaxError(f"Unterminated attribute clause in {text!r}")


@lru_cache(maxsize=256)
def compile_selector(text: str) -> Selector:
    """Parse a selector string. Empty text selects everything."""
    text = (text or "").strip()
    if not text:
        return Selector(source="", alternatives=(SimpleSelector(),))

    alternatives = []
    for part in _split_outside_quotes(text, ","):
        if not part.strip():
            raise SelectorSyntaxError(f"Empty alternative in {text!r}")
        alternatives.append(_parse_simple(part, text))

    return Selector(source=text, alternatives=tuple(alternatives))
