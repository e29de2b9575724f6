"""Parent grouping and degree weighting over a selection."""

from __future__ import annotations

import logging

from recongraph.graph.identity import GROUP_TYPE, make_group_id
from recongraph.graph.store import GraphStore
from recongraph.models.elements import Selection

logger = logging.getLogger("recongraph.graph.grouping")


def group(store: GraphStore, label: str, selection: Selection) -> str:
    """Reparent every node of the selection under the group named ``label``.

    The group node is created on first use and reused afterwards. A node
    that already belongs to another group is moved, never shared.
    Returns the group node id.
    """
    parent_id = make_group_id(label)
    with store.batch():
        if not store.has_node(parent_id):
            store.upsert([{
                "id": parent_id, "type": GROUP_TYPE, "label": label, "props": {},
            }])
        moved = 0
        for node_id in selection.nodes:
            if node_id != parent_id and store.has_node(node_id):
                store.set_parent(node_id, parent_id)
                moved += 1
    logger.debug("Grouped %d nodes under %s", moved, label)
    return parent_id


def ungroup(store: GraphStore, selection: Selection) -> None:
    """Detach every node of the selection from its group.

    Groups left without members are kept; removing them is up to the
    caller.
    """
    with store.batch():
        for node_id in selection.nodes:
            if store.has_node(node_id):
                store.set_parent(node_id, None)


def measure(store: GraphStore, selection: Selection) -> None:
    """Set each node's weight to its current number of incident edges."""
    with store.batch():
        for node_id in selection.nodes:
            if store.has_node(node_id):
                store.set_node_attr(node_id, "weight", store.degree(node_id))


def unmeasure(store: GraphStore, selection: Selection) -> None:
    with store.batch():
        for node_id in selection.nodes:
            if store.has_node(node_id):
                store.set_node_attr(node_id, "weight", 0)
