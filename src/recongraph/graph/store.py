"""In-memory graph store.

Owns the element collection (a networkx MultiDiGraph whose edges are
keyed by their derived id) and implements node identity and merge
semantics on top of it:

- a node spec without an id is keyed by make_id(type, label);
- re-adding an existing id merges instead of duplicating: a non-empty
  type/label replaces the old one, props and extra attributes are
  shallow merged;
- edges are keyed by make_edge_id(type, source, target) and merged the
  same way.

Every mutation runs inside batch(), a re-entrant lock that readers also
take, so an observer in another thread never sees half of an upsert.
Within a batch, a bad element is reported and skipped; it never aborts
the rest of the batch.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping, Optional, Union

import networkx as nx
from pydantic import ValidationError

from recongraph.errors import InvalidElementError
from recongraph.graph.identity import make_edge_id, make_id
from recongraph.graph.selectors import compile_selector
from recongraph.models.elements import EdgeSpec, NodeSpec, Selection
from recongraph.models.events import Diagnostic, DiagnosticLog

logger = logging.getLogger("recongraph.graph.store")

RESERVED_EDGE_KEYS = frozenset({"id", "source", "target", "type"})

NodeInput = Union[NodeSpec, Mapping[str, Any]]


@dataclass
class UpsertResult:
    """Outcome of one upsert batch."""
    selection: Selection
    diagnostics: list[Diagnostic] = field(default_factory=list)


class GraphStore:
    """Element collection with id-based upsert and selector queries."""

    def __init__(self):
        self._graph = nx.MultiDiGraph()
        self._edges: dict[str, tuple[str, str]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def batch(self) -> Iterator["GraphStore"]:
        """Hold the store lock for a group of reads or writes."""
        with self._lock:
            yield self

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def has_node(self, node_id: str) -> bool:
        return self._graph.has_node(node_id)

    def has_edge(self, edge_id: str) -> bool:
        return edge_id in self._edges

    def node(self, node_id: str) -> dict[str, Any]:
        """Return a detached copy of a node's attributes."""
        with self._lock:
            if not self._graph.has_node(node_id):
                raise KeyError(node_id)
            return copy.deepcopy(dict(self._graph.nodes[node_id]))

    def edge(self, edge_id: str) -> dict[str, Any]:
        """Return a detached copy of an edge's attributes."""
        with self._lock:
            source, target = self._edges[edge_id]
            return copy.deepcopy(dict(self._graph.edges[source, target, edge_id]))

    def node_attrs(self, node_id: str) -> Mapping[str, Any]:
        """Live attribute map of a node. Read-only by convention."""
        return self._graph.nodes[node_id]

    def edge_attrs(self, edge_id: str) -> Mapping[str, Any]:
        """Live attribute map of an edge. Read-only by convention."""
        source, target = self._edges[edge_id]
        return self._graph.edges[source, target, edge_id]

    def node_ids(self) -> list[str]:
        return list(self._graph.nodes)

    def edge_ids(self) -> list[str]:
        return list(self._edges)

    def endpoints(self, edge_id: str) -> tuple[str, str]:
        return self._edges[edge_id]

    def out_edges(self, node_id: str) -> list[str]:
        return [key for _, _, key in self._graph.out_edges(node_id, keys=True)]

    def in_edges(self, node_id: str) -> list[str]:
        return [key for _, _, key in self._graph.in_edges(node_id, keys=True)]

    def incident_edges(self, node_id: str) -> list[str]:
        return list(dict.fromkeys(self.in_edges(node_id) + self.out_edges(node_id)))

    def degree(self, node_id: str) -> int:
        """Number of distinct edges touching the node, in either direction."""
        with self._lock:
            return len(self.incident_edges(node_id))

    def children(self, node_id: str) -> list[str]:
        return [
            n for n, data in self._graph.nodes(data=True)
            if data.get("parent") == node_id
        ]

    @property
    def node_count(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    # ------------------------------------------------------------------
    # Selector queries
    # ------------------------------------------------------------------

    def query(self, selector: str, include_edges: bool = False) -> Selection:
        """Match every node (and optionally edge) against a selector."""
        compiled = compile_selector(selector)
        with self._lock:
            nodes = [
                n for n, data in self._graph.nodes(data=True)
                if compiled.matches_node(data)
            ]
            edges: list[str] = []
            if include_edges:
                edges = [e for e in self._edges if compiled.matches_edge(self.edge_attrs(e))]
        return Selection.of(nodes, edges)

    def filter(self, selection: Selection, selector: str) -> Selection:
        """Keep the members of ``selection`` that match ``selector``."""
        compiled = compile_selector(selector)
        if compiled.matches_everything:
            return self.prune(selection)
        with self._lock:
            nodes = [
                n for n in selection.nodes
                if self.has_node(n) and compiled.matches_node(self.node_attrs(n))
            ]
            edges = [
                e for e in selection.edges
                if self.has_edge(e) and compiled.matches_edge(self.edge_attrs(e))
            ]
        return Selection.of(nodes, edges)

    def everything(self) -> Selection:
        with self._lock:
            return Selection.of(self._graph.nodes, self._edges)

    def prune(self, selection: Selection) -> Selection:
        """Drop ids that are no longer present in the store."""
        with self._lock:
            return Selection.of(
                (n for n in selection.nodes if self.has_node(n)),
                (e for e in selection.edges if self.has_edge(e)),
            )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def upsert(
        self,
        specs: Iterable[NodeInput],
        log: Optional[DiagnosticLog] = None,
    ) -> UpsertResult:
        """Create or merge nodes and their declared edges in one batch.

        Nodes are applied first and edges afterwards, so an edge may name
        a source created anywhere in the same batch. The returned
        selection holds the created or merged nodes, in input order.
        """
        log = log or DiagnosticLog("recongraph.graph.store")
        start = len(log.entries)
        affected: list[str] = []
        pending_edges: list[tuple[str, Union[str, EdgeSpec]]] = []

        with self._lock:
            for raw in specs:
                try:
                    spec = NodeSpec.coerce(raw)
                except ValidationError as e:
                    log.error("Skipping malformed node spec", detail=str(e))
                    continue

                node_id = spec.id or make_id(spec.type, spec.label)
                try:
                    if self._graph.has_node(node_id):
                        self._merge_node(node_id, spec)
                    else:
                        self._insert_node(node_id, spec)
                except InvalidElementError as e:
                    log.error(f"Skipping node {node_id}", detail=str(e))
                    continue

                affected.append(node_id)
                pending_edges.extend((node_id, edge) for edge in spec.edges)

            for target, edge in pending_edges:
                try:
                    self._upsert_edge(target, edge)
                except InvalidElementError as e:
                    log.error(f"Skipping edge into {target}", detail=str(e))

        logger.debug(
            "Upserted %d nodes and %d edge declarations",
            len(affected), len(pending_edges),
        )
        return UpsertResult(Selection.of(affected), log.entries[start:])

    def _validate_parent(self, node_id: str, parent: Optional[str]) -> None:
        if parent is None:
            return
        if parent == node_id:
            raise InvalidElementError(f"Node {node_id} cannot be its own parent")
        if not self._graph.has_node(parent):
            raise InvalidElementError(f"Parent {parent} does not exist")

    def _insert_node(self, node_id: str, spec: NodeSpec) -> None:
        if not spec.type:
            raise InvalidElementError("Node type is not specified")
        self._validate_parent(node_id, spec.parent)

        data: dict[str, Any] = {
            **spec.extras(),
            "id": node_id,
            "type": spec.type,
            "label": spec.label if spec.label is not None else "",
            "props": dict(spec.props or {}),
        }
        if spec.parent is not None:
            data["parent"] = spec.parent
        self._graph.add_node(node_id, **data)

    def _merge_node(self, node_id: str, spec: NodeSpec) -> None:
        self._validate_parent(node_id, spec.parent)

        current = self._graph.nodes[node_id]
        updates: dict[str, Any] = dict(spec.extras())
        updates.pop("id", None)
        if spec.type:
            updates["type"] = spec.type
        if spec.label:
            updates["label"] = spec.label
        if spec.props:
            updates["props"] = {**(current.get("props") or {}), **spec.props}
        if spec.parent is not None:
            updates["parent"] = spec.parent
        current.update(updates)

    def _upsert_edge(self, target: str, edge: Union[str, EdgeSpec]) -> str:
        if isinstance(edge, str):
            source, edge_type, extras = edge, "", {}
        else:
            source, edge_type = edge.source, edge.type
            extras = {k: v for k, v in edge.extras().items() if k not in RESERVED_EDGE_KEYS}

        if not source:
            raise InvalidElementError("Edge source is not specified")
        if not self._graph.has_node(source):
            raise InvalidElementError(f"Edge source {source} does not exist")

        edge_id = make_edge_id(edge_type, source, target)
        if edge_id in self._edges:
            self.edge_attrs(edge_id).update(extras)
            return edge_id

        self._graph.add_edge(source, target, key=edge_id)
        self._graph.edges[source, target, edge_id].update({
            **extras,
            "id": edge_id,
            "source": source,
            "target": target,
            "type": edge_type,
        })
        self._edges[edge_id] = (source, target)
        return edge_id

    def set_node_attr(self, node_id: str, key: str, value: Any) -> None:
        with self._lock:
            self._graph.nodes[node_id][key] = value

    def set_parent(self, node_id: str, parent: Optional[str]) -> None:
        """Move a node under ``parent``, or detach it when parent is None."""
        with self._lock:
            if parent is None:
                self._graph.nodes[node_id].pop("parent", None)
                return
            self._validate_parent(node_id, parent)
            self._graph.nodes[node_id]["parent"] = parent

    def remove(self, selection: Selection) -> Selection:
        """Remove nodes and edges, cascading to everything that depends on them.

        Edges incident to a removed node go with it, and children of a
        removed node are detached rather than removed. Returns what was
        actually removed.
        """
        with self._lock:
            nodes = [n for n in selection.nodes if self._graph.has_node(n)]
            edges = [e for e in selection.edges if e in self._edges]
            for node_id in nodes:
                edges.extend(self.incident_edges(node_id))
            edges = list(dict.fromkeys(edges))

            removed_nodes = set(nodes)
            for child, data in self._graph.nodes(data=True):
                if data.get("parent") in removed_nodes and child not in removed_nodes:
                    del data["parent"]

            for edge_id in edges:
                source, target = self._edges.pop(edge_id)
                self._graph.remove_edge(source, target, key=edge_id)
            self._graph.remove_nodes_from(nodes)

        logger.info("Removed %d nodes and %d edges", len(nodes), len(edges))
        return Selection.of(nodes, edges)

    def clear(self) -> None:
        with self._lock:
            self._graph.clear()
            self._edges.clear()

    # ------------------------------------------------------------------
    # Structural form
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Plain nodes+edges form suitable for JSON persistence."""
        with self._lock:
            return {
                "elements": {
                    "nodes": [
                        {"data": copy.deepcopy(dict(data))}
                        for _, data in self._graph.nodes(data=True)
                    ],
                    "edges": [
                        {"data": copy.deepcopy(dict(self.edge_attrs(e)))}
                        for e in self._edges
                    ],
                }
            }

    def load_dict(self, payload: Mapping[str, Any]) -> None:
        """Replace the store contents with a structural form.

        Parents are applied after all nodes exist. Raises
        InvalidElementError if the payload is not a consistent graph, in
        which case the previous contents are kept.
        """
        elements = payload.get("elements", payload)
        if not isinstance(elements, Mapping):
            raise InvalidElementError("Graph payload must be a mapping")

        graph = nx.MultiDiGraph()
        edges: dict[str, tuple[str, str]] = {}

        for entry in elements.get("nodes", []) or []:
            data = _entry_data(entry, "node")
            node_id = data.get("id")
            if not node_id:
                raise InvalidElementError("Serialized node without id")
            data.setdefault("props", {})
            graph.add_node(node_id, **data)

        for node_id, data in graph.nodes(data=True):
            parent = data.get("parent")
            if parent is not None and not graph.has_node(parent):
                raise InvalidElementError(f"Node {node_id} has unknown parent {parent}")

        for entry in elements.get("edges", []) or []:
            data = _entry_data(entry, "edge")
            source, target = data.get("source"), data.get("target")
            if not graph.has_node(source) or not graph.has_node(target):
                raise InvalidElementError(f"Edge {data.get('id')} has a dangling endpoint")
            data.setdefault("type", "")
            edge_id = data.get("id") or make_edge_id(data["type"], source, target)
            data["id"] = edge_id
            graph.add_edge(source, target, key=edge_id)
            graph.edges[source, target, edge_id].update(data)
            edges[edge_id] = (source, target)

        with self._lock:
            self._graph = graph
            self._edges = edges

        logger.info("Loaded %d nodes and %d edges", graph.number_of_nodes(), len(edges))


def _entry_data(entry: Any, kind: str) -> dict[str, Any]:
    """Attribute map of one serialized element, bare or wrapped in ``data``."""
    if not isinstance(entry, Mapping):
        raise InvalidElementError(f"Serialized {kind} must be a mapping, got {entry!r}")
    data = entry.get("data", entry)
    if not isinstance(data, Mapping):
        raise InvalidElementError(f"Serialized {kind} data must be a mapping, got {data!r}")
    return dict(data)
