"""Traversal primitives and pipeline evaluation.

A pipeline is written as steps separated by ``|``, each step being a
function name followed by an optional selector argument:

    nodes [type = "domain"] | outgoers node | successors [type = "port"]

Evaluation starts from every element in the store and feeds each step's
output into the next. Function names are case insensitive. The selector
argument filters the step's output and defaults to ``*``.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable

from recongraph.errors import UnknownTraversalError
from recongraph.graph.selectors import compile_selector
from recongraph.graph.store import GraphStore
from recongraph.models.elements import Selection

logger = logging.getLogger("recongraph.graph.traverse")

TraverseFunction = Callable[[GraphStore, Selection, str], Selection]

RE_STEP_SEPARATOR = re.compile(r"\|+")

WILDCARD = "*"


def _finish(
    store: GraphStore,
    nodes: Iterable[str],
    edges: Iterable[str],
    arg: str,
) -> Selection:
    return store.filter(Selection.of(nodes, edges), arg)


def _filter(store, sel, arg):
    return store.filter(sel, arg)


def _not(store, sel, arg):
    matched = set(store.filter(sel, arg))
    return Selection.of(
        (n for n in sel.nodes if n not in matched),
        (e for e in sel.edges if e not in matched),
    )


def _nodes(store, sel, arg):
    return _finish(store, sel.nodes, (), arg)


def _edges(store, sel, arg):
    return _finish(store, (), sel.edges, arg)


def _open_neighborhood(store, sel, arg):
    nodes: list[str] = []
    edges: list[str] = []
    for node_id in sel.nodes:
        for edge_id in store.incident_edges(node_id):
            edges.append(edge_id)
            source, target = store.endpoints(edge_id)
            nodes.append(target if source == node_id else source)
    return _finish(store, nodes, edges, arg)


def _closed_neighborhood(store, sel, arg):
    opened = _open_neighborhood(store, sel, WILDCARD)
    return _finish(store, sel.nodes + opened.nodes, opened.edges, arg)


def _incomers(store, sel, arg):
    nodes: list[str] = []
    edges: list[str] = []
    for node_id in sel.nodes:
        for edge_id in store.in_edges(node_id):
            edges.append(edge_id)
            nodes.append(store.endpoints(edge_id)[0])
    return _finish(store, nodes, edges, arg)


def _outgoers(store, sel, arg):
    nodes: list[str] = []
    edges: list[str] = []
    for node_id in sel.nodes:
        for edge_id in store.out_edges(node_id):
            edges.append(edge_id)
            nodes.append(store.endpoints(edge_id)[1])
    return _finish(store, nodes, edges, arg)


def _walk(store, sel, step, arg):
    """Repeat a one-hop step until no new nodes appear."""
    seen_nodes: dict[str, None] = {}
    seen_edges: dict[str, None] = {}
    frontier = Selection.of(sel.nodes)
    while frontier.nodes:
        hop = step(store, frontier, WILDCARD)
        seen_edges.update(dict.fromkeys(hop.edges))
        fresh = [n for n in hop.nodes if n not in seen_nodes]
        seen_nodes.update(dict.fromkeys(fresh))
        frontier = Selection.of(fresh)
    return _finish(store, seen_nodes, seen_edges, arg)


def _predecessors(store, sel, arg):
    return _walk(store, sel, _incomers, arg)


def _successors(store, sel, arg):
    return _walk(store, sel, _outgoers, arg)


def _connected_edges(store, sel, arg):
    edges: list[str] = []
    for node_id in sel.nodes:
        edges.extend(store.incident_edges(node_id))
    return _finish(store, (), edges, arg)


def _connected_nodes(store, sel, arg):
    nodes: list[str] = []
    for edge_id in sel.edges:
        nodes.extend(store.endpoints(edge_id))
    return _finish(store, nodes, (), arg)


def _sources(store, sel, arg):
    return _finish(store, (store.endpoints(e)[0] for e in sel.edges), (), arg)


def _targets(store, sel, arg):
    return _finish(store, (store.endpoints(e)[1] for e in sel.edges), (), arg)


def _roots(store, sel, arg):
    return _finish(store, (n for n in sel.nodes if not store.in_edges(n)), (), arg)


def _leaves(store, sel, arg):
    return _finish(store, (n for n in sel.nodes if not store.out_edges(n)), (), arg)


def _parent_of(store, node_id):
    parent = store.node_attrs(node_id).get("parent")
    if parent is not None and store.has_node(parent):
        return parent
    return None


def _parent(store, sel, arg):
    parents = (_parent_of(store, n) for n in sel.nodes)
    return _finish(store, (p for p in parents if p is not None), (), arg)


def _ancestors(store, sel, arg):
    found: list[str] = []
    for node_id in sel.nodes:
        parent = _parent_of(store, node_id)
        while parent is not None and parent not in found:
            found.append(parent)
            parent = _parent_of(store, parent)
    return _finish(store, found, (), arg)


def _children(store, sel, arg):
    found: list[str] = []
    for node_id in sel.nodes:
        found.extend(store.children(node_id))
    return _finish(store, found, (), arg)


def _descendants(store, sel, arg):
    found: dict[str, None] = {}
    frontier = list(sel.nodes)
    while frontier:
        fresh = [
            child for node_id in frontier for child in store.children(node_id)
            if child not in found
        ]
        found.update(dict.fromkeys(fresh))
        frontier = fresh
    return _finish(store, found, (), arg)


def _siblings(store, sel, arg):
    found: list[str] = []
    for node_id in sel.nodes:
        parent = _parent_of(store, node_id)
        found.extend(
            other for other in store.node_ids()
            if other != node_id and _parent_of(store, other) == parent
        )
    return _finish(store, found, (), arg)


def _orphans(store, sel, arg):
    return _finish(store, (n for n in sel.nodes if _parent_of(store, n) is None), (), arg)


def _first(store, sel, arg):
    members = list(store.filter(sel, arg))
    return _split(store, members[:1])


def _last(store, sel, arg):
    members = list(store.filter(sel, arg))
    return _split(store, members[-1:])


def _split(store, ids):
    return Selection.of(
        (i for i in ids if store.has_node(i)),
        (i for i in ids if store.has_edge(i)),
    )


TRAVERSE_FUNCTIONS: dict[str, TraverseFunction] = {
    "filter": _filter,
    "not": _not,
    "nodes": _nodes,
    "edges": _edges,
    "neighborhood": _open_neighborhood,
    "openNeighborhood": _open_neighborhood,
    "closedNeighborhood": _closed_neighborhood,
    "incomers": _incomers,
    "outgoers": _outgoers,
    "predecessors": _predecessors,
    "successors": _successors,
    "connectedEdges": _connected_edges,
    "connectedNodes": _connected_nodes,
    "sources": _sources,
    "targets": _targets,
    "roots": _roots,
    "leaves": _leaves,
    "parent": _parent,
    "parents": _ancestors,
    "ancestors": _ancestors,
    "children": _children,
    "descendants": _descendants,
    "siblings": _siblings,
    "orphans": _orphans,
    "first": _first,
    "last": _last,
}

_LOOKUP = {name.lower(): fn for name, fn in TRAVERSE_FUNCTIONS.items()}


def parse_pipeline(*expressions: str) -> list[tuple[TraverseFunction, str]]:
    """Resolve every step of the given expressions.

    Raises UnknownTraversalError for the first unknown function name and
    compiles each argument, so a bad pipeline fails before touching the
    store.
    """
    steps: list[tuple[TraverseFunction, str]] = []
    for expression in expressions:
        for part in RE_STEP_SEPARATOR.split(expression):
            part = part.strip()
            if not part:
                continue
            name, _, arg = part.partition(" ")
            name = name.strip().lower()
            arg = arg.strip() or WILDCARD
            fn = _LOOKUP.get(name)
            if fn is None:
                raise UnknownTraversalError(name)
            compile_selector(arg)
            steps.append((fn, arg))
    return steps


def run_pipeline(store: GraphStore, *expressions: str) -> Selection:
    """Evaluate a traversal pipeline from the whole graph."""
    steps = parse_pipeline(*expressions)
    with store.batch():
        selection = store.everything()
        for fn, arg in steps:
            selection = fn(store, selection, arg)
    logger.debug(
        "Traversal of %d steps selected %d nodes and %d edges",
        len(steps), len(selection.nodes), len(selection.edges),
    )
    return selection
