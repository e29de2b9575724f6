"""Pytest configuration for the recongraph test suite."""

import os

# Ensure test environment variables are set before any imports
os.environ.setdefault("RECON_LOG_LEVEL", "warning")
os.environ.setdefault("RECON_MAX_NODES_WARN", "0")
os.environ.setdefault("RECON_MAX_NODES_CAP", "0")
os.environ.pop("SHODAN_KEY", None)

import asyncio

import pytest

from recongraph.engine import Recon
from recongraph.graph.identity import make_id
from recongraph.graph.store import GraphStore
from recongraph.transforms.base import Transform, TransformDescriptor
from recongraph.transforms.registry import TransformRegistry


class StaticTransform(Transform):
    """Returns whatever the supplied function builds for each node."""

    def __init__(self, build, delay: float = 0.0):
        super().__init__()
        self._build = build
        self._delay = delay

    async def handle(self, node, options):
        if self._delay:
            await asyncio.sleep(self._delay)
        return self._build(node, options)


class FailingTransform(Transform):
    async def handle(self, node, options):
        raise RuntimeError("upstream exploded")


def make_descriptor(
    name: str,
    types: list[str],
    build=None,
    *,
    title: str | None = None,
    alias: list[str] | None = None,
    tags: list[str] | None = None,
    noise: int = 1,
    priority: int = 1,
    group: str = "",
    delay: float = 0.0,
    factory=None,
) -> TransformDescriptor:
    """Build a descriptor around a StaticTransform."""
    build = build or (lambda node, options: [])
    return TransformDescriptor(
        name=name,
        title=title or name.title(),
        description=f"{name} test transform",
        alias=alias or [],
        tags=tags or [],
        types=types,
        noise=noise,
        priority=priority,
        group=group,
        factory=factory or (lambda: StaticTransform(build, delay)),
    )


def resolve_ip(node, options):
    """domain -> ipv4 result with an edge back to the domain."""
    return [{
        "type": "ipv4",
        "label": "93.184.216.34",
        "props": {"ipv4": "93.184.216.34"},
        "edges": [node["id"]],
    }]


@pytest.fixture
def store():
    return GraphStore()


@pytest.fixture
def registry():
    return TransformRegistry(
        make_descriptor("resolve", ["domain"], resolve_ip, alias=["dns", "resolve_a"]),
    )


@pytest.fixture
def recon(registry):
    return Recon(registry=registry, max_nodes_warn=0, max_nodes_cap=0, heartbeat_interval=0)


@pytest.fixture
def domain_id():
    return make_id("domain", "example.com")


@pytest.fixture
def descriptor_factory():
    return make_descriptor


@pytest.fixture
def failing_factory():
    return FailingTransform
