"""Deterministic element ids.

Re-discovering the same entity must land on the same node, so nodes
without an explicit id are keyed by a hash of their (type, label) pair
and edges by their (type, source, target) triple.
"""

from __future__ import annotations

import hashlib
import json

GROUP_TYPE = "group"


def make_id(type: str | None, label: str | None) -> str:
    """Derive a node id from its type and label.

    The pair is JSON encoded before hashing so that ("a:b", "c") and
    ("a", "b:c") never collide the way a plain concatenation would.
    """
    type = type or ""
    label = label or ""
    payload = json.dumps([type, label], ensure_ascii=False)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]
    return f"{type}:{digest}"


def make_group_id(label: str) -> str:
    return make_id(GROUP_TYPE, label)


def make_edge_id(type: str | None, source: str, target: str) -> str:
    return f"edge:{type or ''}:{source}:{target}"
