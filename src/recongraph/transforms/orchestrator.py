"""Transform orchestration.

Resolves which transforms run for a request, runs them concurrently
against the working set, applies growth limits and merges the combined
output back into the graph store.

A request names either a single transform (by canonical name or alias)
or the wildcard ``*``. Wildcard runs are filtered three ways before
anything is launched:

1. Applicability: only transforms whose declared types intersect the
   types present in the input (explicit node types plus types inferred
   from labels) are kept, and each one only sees the input nodes whose
   explicit type it declares.
2. Noise: when a filter is given, transforms noisier than its threshold
   are dropped.
3. Metadata: when name/alias/title/tag patterns are given, a transform
   must match at least one of them.

Each job's outcome is captured as a value (results or error), so one
failing transform never cancels or fails its siblings.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field, ValidationError

from recongraph.config import settings as default_settings
from recongraph.detect import infer_types
from recongraph.graph.grouping import measure
from recongraph.graph.identity import GROUP_TYPE, make_group_id
from recongraph.graph.store import GraphStore
from recongraph.models.elements import NodeSpec, Selection
from recongraph.models.events import Diagnostic, DiagnosticLog, Subscriber
from recongraph.transforms.base import TransformDescriptor, TransformReporter
from recongraph.transforms.registry import TransformRegistry

logger = logging.getLogger("recongraph.transforms.orchestrator")

WILDCARD = "*"


class TransformFilter(BaseModel):
    """Narrows a wildcard run by noise level and metadata patterns."""
    noise: int = Field(
        default_factory=lambda: default_settings.noise_threshold,
        description="Drop transforms whose noise exceeds this level"
    )
    name: Optional[str] = Field(
        default=None,
        description="Regex tested against the canonical name"
    )
    alias: Optional[str] = Field(
        default=None,
        description="Regex tested against each alias"
    )
    title: Optional[str] = Field(
        default=None,
        description="Regex tested against the title"
    )
    tag: Optional[str] = Field(
        default=None,
        description="Regex tested against each tag"
    )

    def admits(self, descriptor: TransformDescriptor) -> bool:
        if descriptor.noise > self.noise:
            return False
        if not (self.name or self.alias or self.title or self.tag):
            return True
        return (
            _search(self.name, [descriptor.name])
            or _search(self.alias, descriptor.alias)
            or _search(self.title, [descriptor.title])
            or _search(self.tag, descriptor.tags)
        )


def _search(pattern: Optional[str], values: list[str]) -> bool:
    if not pattern:
        return False
    regex = re.compile(pattern)
    return any(regex.search(value) for value in values)


class Extraction(BaseModel):
    """Rewrites input labels from a dotted path inside node props."""
    property: str = Field(
        default="",
        description="Dotted path into props, e.g. 'ssl.cert.subject'"
    )
    prefix: str = ""
    suffix: str = ""

    def apply(self, node: dict[str, Any]) -> dict[str, Any]:
        value: Any = node.get("props") or {}
        for key in self.property.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                value = None
                break
        text = "" if value is None else str(value)
        return {**node, "label": f"{self.prefix}{text}{self.suffix}"}


class TransformSettings(BaseModel):
    """Per-call orchestration settings."""
    group: bool = Field(
        default=False,
        description="Parent each job's results under a group node for that job"
    )
    weight: bool = Field(
        default=False,
        description="Recompute degree weight of the input nodes afterwards"
    )
    filter: Optional[TransformFilter] = None
    extract: Optional[Extraction] = None
    max_nodes_warn: Optional[int] = Field(
        default=None,
        ge=0,
        description="Warn when a job returns more results (overrides the default)"
    )
    max_nodes_cap: Optional[int] = Field(
        default=None,
        ge=0,
        description="Truncate a job's results to this many (overrides the default)"
    )


@dataclass
class JobOutcome:
    """What happened to one transform job."""
    name: str
    title: str
    input_count: int
    result_count: int = 0
    error: Optional[str] = None
    capped: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class TransformReport:
    """Result of one orchestration call."""
    results: list[NodeSpec] = field(default_factory=list)
    selection: Selection = field(default_factory=Selection)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    jobs: list[JobOutcome] = field(default_factory=list)


@dataclass
class JobProgress:
    """Latest (step, total) pushed by a running job."""
    step: int = 0
    total: int = 0

    def update(self, step: int, total: int) -> None:
        self.step = step
        self.total = total


class TransformOrchestrator:
    """Runs registered transforms against a selection of the graph."""

    def __init__(
        self,
        registry: TransformRegistry,
        max_nodes_warn: Optional[int] = None,
        max_nodes_cap: Optional[int] = None,
        heartbeat_interval: Optional[float] = None,
        subscribers: Optional[list[Subscriber]] = None,
    ):
        self.registry = registry
        self.max_nodes_warn = (
            default_settings.max_nodes_warn if max_nodes_warn is None else max_nodes_warn
        )
        self.max_nodes_cap = (
            default_settings.max_nodes_cap if max_nodes_cap is None else max_nodes_cap
        )
        self.heartbeat_interval = (
            default_settings.heartbeat_interval
            if heartbeat_interval is None else heartbeat_interval
        )
        self.subscribers: list[Subscriber] = subscribers if subscribers is not None else []

    def resolve(self, name: str) -> list[TransformDescriptor]:
        """Descriptors a request names; raises UnknownTransformError."""
        if name == WILDCARD:
            return self.registry.descriptors()
        return [self.registry.resolve(name)]

    def applicable(
        self,
        descriptors: list[TransformDescriptor],
        nodes: list[dict[str, Any]],
        transform_filter: Optional[TransformFilter] = None,
    ) -> list[TransformDescriptor]:
        """Wildcard filtering by input types, noise and metadata."""
        present: set[str] = set()
        for node in nodes:
            present.update(infer_types(node.get("type"), node.get("label")))

        kept = [d for d in descriptors if present.intersection(d.types)]
        if transform_filter is not None:
            kept = [d for d in kept if transform_filter.admits(d)]
        return kept

    async def run(
        self,
        store: GraphStore,
        name: str,
        selection: Selection,
        options: Optional[dict[str, Any]] = None,
        settings: Optional[TransformSettings] = None,
    ) -> TransformReport:
        """Run a transform (or every applicable one) and merge the output.

        The returned report's selection is the set of merged nodes, which
        becomes the caller's new working set.
        """
        run_settings = settings or TransformSettings()
        options = dict(options or {})
        log = DiagnosticLog("recongraph.transforms.orchestrator", self.subscribers)
        wildcard = name == WILDCARD

        descriptors = self.resolve(name)

        with store.batch():
            nodes = [store.node(n) for n in selection.nodes if store.has_node(n)]

        if wildcard:
            descriptors = self.applicable(descriptors, nodes, run_settings.filter)

        extract = run_settings.extract
        if extract is not None and extract.property:
            nodes = [extract.apply(node) for node in nodes]

        descriptors = sorted(descriptors, key=lambda d: d.priority)

        warn_limit = run_settings.max_nodes_warn or self.max_nodes_warn
        cap_limit = run_settings.max_nodes_cap or self.max_nodes_cap

        jobs = []
        for descriptor in descriptors:
            if wildcard:
                job_nodes = [n for n in nodes if n.get("type") in descriptor.types]
            else:
                job_nodes = nodes
            jobs.append(self._run_job(
                descriptor, job_nodes, options, log,
                run_settings.group, warn_limit, cap_limit,
            ))

        outcomes = await asyncio.gather(*jobs)

        results = [spec for _, specs in outcomes for spec in specs]
        log.info(f"Attempting to add {len(results)} elements")

        upsert = store.upsert(results, log)

        if run_settings.weight:
            measure(store, selection)

        return TransformReport(
            results=results,
            selection=upsert.selection,
            diagnostics=list(log.entries),
            jobs=[outcome for outcome, _ in outcomes],
        )

    async def _run_job(
        self,
        descriptor: TransformDescriptor,
        nodes: list[dict[str, Any]],
        options: dict[str, Any],
        log: DiagnosticLog,
        group: bool,
        warn_limit: int,
        cap_limit: int,
    ) -> tuple[JobOutcome, list[NodeSpec]]:
        title = descriptor.title
        quoted = json.dumps(title)
        outcome = JobOutcome(name=descriptor.name, title=title, input_count=len(nodes))
        progress = JobProgress()
        reporter = TransformReporter(log, title, progress.update)

        log.info(f"Starting transform {quoted} on {len(nodes)} nodes...")

        results: list[NodeSpec] = []
        try:
            transform = descriptor.create()
            transform.bind(reporter)
            async with self._heartbeat(log, quoted, progress):
                raw = await transform.run(copy.deepcopy(nodes), dict(options))
            results = self._coerce(raw, log, title)
        except Exception as e:
            results = []
            outcome.error = f"{type(e).__name__}: {e}"
            log.warn(f"Transform {quoted} failed")
            log.error(f"{title} raised an error", source=title, detail=outcome.error)
            logger.debug("Transform %s failed", title, exc_info=True)
        finally:
            reporter.close()

        log.info(f"Transform {quoted} finished with {len(results)} results")

        if results and group:
            results = self._group(descriptor, results)

        if warn_limit and len(results) > warn_limit:
            log.warn(f"Transform {quoted} will add {len(results)} nodes")

        if cap_limit and len(results) > cap_limit:
            log.warn(f"Transform {quoted} nodes capped to {cap_limit}")
            results = results[:cap_limit]
            outcome.capped = True

        outcome.result_count = len(results)
        return outcome, results

    @asynccontextmanager
    async def _heartbeat(
        self, log: DiagnosticLog, quoted: str, progress: JobProgress,
    ) -> AsyncIterator[None]:
        """Report a still-running notice every interval while the block runs."""
        if self.heartbeat_interval <= 0:
            yield
            return

        async def beat() -> None:
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                log.info(
                    f"Transform {quoted} still running {progress.step}/{progress.total}..."
                )

        task = asyncio.ensure_future(beat())
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    @staticmethod
    def _coerce(raw: Any, log: DiagnosticLog, title: str) -> list[NodeSpec]:
        results: list[NodeSpec] = []
        for item in raw or []:
            try:
                results.append(NodeSpec.coerce(item))
            except ValidationError as e:
                log.error("Dropping malformed result", source=title, detail=str(e))
        return results

    @staticmethod
    def _group(
        descriptor: TransformDescriptor, results: list[NodeSpec],
    ) -> list[NodeSpec]:
        label = descriptor.group_label
        parent_id = make_group_id(label)
        group_node = NodeSpec(
            id=parent_id,
            type=GROUP_TYPE,
            label=label,
            props={
                "group": label,
                "title": descriptor.title,
                "description": descriptor.description,
            },
        )
        return [group_node] + [
            result.model_copy(update={"parent": parent_id}) for result in results
        ]
