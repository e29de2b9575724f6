"""Graph element specs and the working-set selection.

NodeSpec and EdgeSpec describe what a caller (or a transform) wants the
graph to contain. They are inputs to the store's upsert, not views of
stored elements: ids may be missing and are derived on insert, and any
attribute beyond the declared fields is carried through as an extra.

Selection is the working set. It only holds ids, keeps the order in
which elements were matched, and is never mutated in place; every query
returns a new one.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator, Optional, Union

from pydantic import BaseModel, Field, field_validator


class NodeType(str, Enum):
    """Well known node types.

    Node types are open strings; transforms are free to introduce their
    own namespaced types (e.g. ``shodan:account``). These are the ones
    the label detector can infer and the bundled transforms consume.
    """
    BRAND = "brand"
    ORG = "org"
    DOMAIN = "domain"
    EMAIL = "email"
    IPV4 = "ipv4"
    IPV6 = "ipv6"
    PORT = "port"
    NICK = "nick"
    URI = "uri"
    GROUP = "group"


class EdgeSpec(BaseModel):
    """An edge declared under a node spec; the target is that node."""
    source: str = Field(
        default="",
        description="Id of the node the edge starts from"
    )
    type: str = Field(
        default="",
        description="Relationship kind (may be empty)"
    )

    class Config:
        extra = "allow"

    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class NodeSpec(BaseModel):
    """A node to create or merge into the graph."""
    id: Optional[str] = Field(
        default=None,
        description="Explicit id; derived from (type, label) when missing"
    )
    type: Optional[str] = Field(
        default=None,
        description="Classification, required when the node is new"
    )
    label: Optional[str] = Field(
        default=None,
        description="Human readable value"
    )
    props: Optional[dict[str, Any]] = Field(
        default=None,
        description="Open-ended properties, shallow merged on upsert"
    )
    edges: list[Union[str, EdgeSpec]] = Field(
        default_factory=list,
        description="Edges pointing at this node, by source id or full spec"
    )
    parent: Optional[str] = Field(
        default=None,
        description="Group node id this node belongs to"
    )

    class Config:
        extra = "allow"

    @field_validator("label", mode="before")
    @classmethod
    def _label_as_text(cls, value: Any) -> Any:
        # labels are display values; numbers (ports, ASNs) arrive unquoted
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float, bool)):
            return str(value)
        return value

    @classmethod
    def coerce(cls, obj: Union["NodeSpec", dict[str, Any]]) -> "NodeSpec":
        """Accept either a NodeSpec or the equivalent plain dict."""
        if isinstance(obj, cls):
            return obj
        return cls.model_validate(obj)

    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


@dataclass(frozen=True)
class Selection:
    """An ordered, immutable set of node and edge ids."""
    nodes: tuple[str, ...] = ()
    edges: tuple[str, ...] = ()

    @classmethod
    def of(
        cls,
        nodes: Iterable[str] = (),
        edges: Iterable[str] = (),
    ) -> "Selection":
        """Build a selection, dropping duplicate ids but keeping first order."""
        return cls(
            nodes=tuple(dict.fromkeys(nodes)),
            edges=tuple(dict.fromkeys(edges)),
        )

    @property
    def is_empty(self) -> bool:
        return not self.nodes and not self.edges

    def union(self, other: "Selection") -> "Selection":
        return Selection.of(self.nodes + other.nodes, self.edges + other.edges)

    def __len__(self) -> int:
        return len(self.nodes) + len(self.edges)

    def __iter__(self) -> Iterator[str]:
        yield from self.nodes
        yield from self.edges

    def __contains__(self, element_id: object) -> bool:
        return element_id in self.nodes or element_id in self.edges


EMPTY_SELECTION = Selection()
