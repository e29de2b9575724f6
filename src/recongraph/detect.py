"""Label type detection.

Classifies a node label as a URL, email address, IPv4/IPv6 address or
domain name. Wildcard transform runs add the inferred type to the
explicit node types when deciding which transforms are applicable.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Optional

from recongraph.models.elements import NodeType

RE_URL = re.compile(
    r"^[a-z][a-z0-9+.\-]*://[^\s/?#@]+(@[^\s/?#]+)?([/?#]\S*)?$",
    re.IGNORECASE,
)
RE_EMAIL = re.compile(
    r"^[A-Za-z0-9._%+\-]+@([A-Za-z0-9](?:[A-Za-z0-9\-]{0,61}[A-Za-z0-9])?\.)+"
    r"[A-Za-z]{2,63}$"
)
RE_DOMAIN = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9_](?:[A-Za-z0-9_\-]{0,61}[A-Za-z0-9])?\.)+"
    r"([A-Za-z]{2,63}|xn--[A-Za-z0-9\-]{1,59})$"
)


def is_url(value: str) -> bool:
    return bool(RE_URL.match(value))


def is_email(value: str) -> bool:
    return bool(RE_EMAIL.match(value))


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def is_ipv6(value: str) -> bool:
    try:
        ipaddress.IPv6Address(value)
    except ValueError:
        return False
    return True


def is_domain(value: str) -> bool:
    return bool(RE_DOMAIN.match(value.rstrip(".")))


_DETECTORS = (
    (is_url, NodeType.URI),
    (is_email, NodeType.EMAIL),
    (is_ipv4, NodeType.IPV4),
    (is_ipv6, NodeType.IPV6),
    (is_domain, NodeType.DOMAIN),
)


def detect_label_type(label: str) -> Optional[str]:
    """Return the first matching inferred type for a label, if any."""
    label = label.strip()
    if not label:
        return None
    for detector, node_type in _DETECTORS:
        if detector(label):
            return node_type.value
    return None


def infer_types(type: Optional[str], label: Optional[str]) -> list[str]:
    """Explicit type plus the type inferred from the label."""
    types: list[str] = []
    if type:
        types.append(type)
    if label:
        inferred = detect_label_type(str(label))
        if inferred and inferred not in types:
            types.append(inferred)
    return types
