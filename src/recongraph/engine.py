"""Reconnaissance engine and sessions.

Recon is the shared engine: it owns the graph store, the transform
registry and the orchestrator. It holds no "current selection": every
operation is handed the selection it works on and returns the selection
that results, so one engine can serve several callers at once.

Session is the interactive view on top of it: it remembers one caller's
working set and replaces it wholesale after each select, traverse, add
or transform call. Concurrent callers each use their own Session.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from recongraph.graph import grouping
from recongraph.graph.store import GraphStore, NodeInput, UpsertResult
from recongraph.graph.traverse import run_pipeline
from recongraph.models.elements import EMPTY_SELECTION, Selection
from recongraph.models.events import DiagnosticLog, Subscriber
from recongraph.transforms.orchestrator import (
    TransformOrchestrator,
    TransformReport,
    TransformSettings,
)
from recongraph.transforms.registry import TransformRegistry, default_registry

logger = logging.getLogger("recongraph.engine")


class Recon:
    """Graph store, transform registry and orchestrator behind one facade."""

    def __init__(
        self,
        store: Optional[GraphStore] = None,
        registry: Optional[TransformRegistry] = None,
        max_nodes_warn: Optional[int] = None,
        max_nodes_cap: Optional[int] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.store = store or GraphStore()
        self.registry = registry if registry is not None else default_registry()
        self.subscribers: list[Subscriber] = []
        self.orchestrator = TransformOrchestrator(
            self.registry,
            max_nodes_warn=max_nodes_warn,
            max_nodes_cap=max_nodes_cap,
            heartbeat_interval=heartbeat_interval,
            subscribers=self.subscribers,
        )

    def subscribe(self, callback: Subscriber) -> None:
        """Receive every diagnostic the engine produces."""
        self.subscribers.append(callback)

    def session(self) -> "Session":
        return Session(self)

    # ------------------------------------------------------------------
    # Elements
    # ------------------------------------------------------------------

    def add_nodes(self, specs: Iterable[NodeInput]) -> UpsertResult:
        log = DiagnosticLog("recongraph.graph.store", self.subscribers)
        return self.store.upsert(specs, log)

    def remove(self, selection: Selection) -> Selection:
        return self.store.remove(selection)

    # ------------------------------------------------------------------
    # Selection and traversal
    # ------------------------------------------------------------------

    def select(self, *expressions: str) -> Selection:
        """Union of the nodes matched by each selector expression."""
        expressions = tuple(e for e in expressions if e and e.strip())
        if not expressions:
            return EMPTY_SELECTION
        selection = self.store.query(",".join(expressions))
        logger.debug("Selected %d nodes with %s", len(selection.nodes), expressions)
        return selection

    def unselect(self) -> Selection:
        return EMPTY_SELECTION

    def traverse(self, *expressions: str) -> Selection:
        """Evaluate a traversal pipeline starting from the whole graph."""
        return run_pipeline(self.store, *expressions)

    def untraverse(self) -> Selection:
        return EMPTY_SELECTION

    # ------------------------------------------------------------------
    # Grouping and measurement
    # ------------------------------------------------------------------

    def group(self, label: str, selection: Selection) -> str:
        return grouping.group(self.store, label, selection)

    def ungroup(self, selection: Selection) -> None:
        grouping.ungroup(self.store, selection)

    def measure(self, selection: Selection) -> None:
        grouping.measure(self.store, selection)

    def unmeasure(self, selection: Selection) -> None:
        grouping.unmeasure(self.store, selection)

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    async def transform(
        self,
        name: str,
        selection: Selection,
        options: Optional[dict[str, Any]] = None,
        settings: Optional[TransformSettings] = None,
    ) -> TransformReport:
        return await self.orchestrator.run(
            self.store, name, selection, options=options, settings=settings,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def serialize(self) -> dict[str, Any]:
        return self.store.to_dict()

    def deserialize(self, data: dict[str, Any]) -> None:
        self.store.load_dict(data)


class Session:
    """One caller's working set over a shared Recon engine."""

    def __init__(self, recon: Recon, selection: Selection = EMPTY_SELECTION):
        self.recon = recon
        self.selection = selection

    def _replace(self, selection: Selection) -> Selection:
        self.selection = selection
        return selection

    def refresh(self) -> Selection:
        """Drop ids that are no longer in the store."""
        return self._replace(self.recon.store.prune(self.selection))

    def add_nodes(self, specs: Iterable[NodeInput]) -> UpsertResult:
        result = self.recon.add_nodes(specs)
        self._replace(result.selection)
        return result

    def remove(self, selection: Optional[Selection] = None) -> Selection:
        removed = self.recon.remove(self.selection if selection is None else selection)
        self.refresh()
        return removed

    def select(self, *expressions: str) -> Selection:
        return self._replace(self.recon.select(*expressions))

    def unselect(self) -> Selection:
        return self._replace(self.recon.unselect())

    def traverse(self, *expressions: str) -> Selection:
        return self._replace(self.recon.traverse(*expressions))

    def untraverse(self) -> Selection:
        return self._replace(self.recon.untraverse())

    def group(self, label: str, selection: Optional[Selection] = None) -> str:
        return self.recon.group(label, self.selection if selection is None else selection)

    def ungroup(self, selection: Optional[Selection] = None) -> None:
        self.recon.ungroup(self.selection if selection is None else selection)

    def measure(self, selection: Optional[Selection] = None) -> None:
        self.recon.measure(self.selection if selection is None else selection)

    def unmeasure(self, selection: Optional[Selection] = None) -> None:
        self.recon.unmeasure(self.selection if selection is None else selection)

    async def transform(
        self,
        name: str,
        options: Optional[dict[str, Any]] = None,
        settings: Optional[TransformSettings] = None,
    ) -> TransformReport:
        report = await self.recon.transform(
            name, self.selection, options=options, settings=settings,
        )
        self._replace(report.selection)
        return report

    def deserialize(self, data: dict[str, Any]) -> None:
        self.recon.deserialize(data)
        self.refresh()

    def nodes(self) -> list[dict[str, Any]]:
        """Attribute copies of the nodes in the working set."""
        with self.recon.store.batch():
            return [
                self.recon.store.node(n) for n in self.selection.nodes
                if self.recon.store.has_node(n)
            ]
