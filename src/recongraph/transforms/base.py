"""Transform plugin contract.

A transform is an enrichment job: it takes nodes from the working set
and returns node specs (with edges back to its inputs) to merge into the
graph. The contract has two halves:

- TransformDescriptor: static metadata (title, aliases, consumable node
  types, noise, priority, option schema) plus a factory producing a
  fresh Transform for every run. Registries and the orchestrator only
  ever look at descriptors.
- Transform: the per-run worker. Subclasses implement handle() for a
  single node; run() fans handle() out over all input nodes with bounded
  concurrency and reports progress after each one.

Transforms never log or print directly. They report through the
TransformReporter the orchestrator binds to them, which turns every
notice into a diagnostic and every progress call into an update on the
job's progress channel.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, Field

from recongraph.config import settings
from recongraph.graph.identity import make_id
from recongraph.models.elements import NodeSpec
from recongraph.models.events import DiagnosticLog

ResultSpec = Union[NodeSpec, dict[str, Any]]
ProgressCallback = Callable[[int, int], None]


class TransformOption(BaseModel):
    """Declared configuration option of a transform."""
    type: str = Field(
        default="string",
        description="Value type (string, number, boolean)"
    )
    description: str = Field(
        default="",
    )


class TransformDescriptor(BaseModel):
    """Static metadata and factory for one transform type."""
    name: str = Field(
        description="Canonical identifier, also registered as an alias"
    )
    title: str = Field(
        description="Display title, used to prefix the job's diagnostics"
    )
    description: str = Field(
        default="",
    )
    alias: list[str] = Field(
        default_factory=list,
        description="Short names the transform can be invoked by"
    )
    group: str = Field(
        default="",
        description="Label of the group node results are parented under (defaults to title)"
    )
    tags: list[str] = Field(
        default_factory=list,
    )
    types: list[str] = Field(
        default_factory=list,
        description="Node types this transform consumes"
    )
    priority: int = Field(
        default=1,
        description="Lower values are scheduled and reported first"
    )
    noise: int = Field(
        default=1,
        ge=0,
        description="0 = always safe to auto-run, higher = more likely to flood the graph"
    )
    options: dict[str, TransformOption] = Field(
        default_factory=dict,
    )
    factory: Callable[[], "Transform"] = Field(
        exclude=True,
        description="Builds a fresh Transform instance for one run"
    )

    @property
    def group_label(self) -> str:
        return self.group or self.title

    def create(self) -> "Transform":
        transform = self.factory()
        transform.descriptor = self
        return transform


class TransformReporter:
    """Channel a running transform reports notices and progress through."""

    def __init__(
        self,
        log: DiagnosticLog,
        source: str,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.log = log
        self.source = source
        self._on_progress = on_progress

    def info(self, message: str) -> None:
        self.log.info(message, source=self.source)

    def warn(self, message: str) -> None:
        self.log.warn(message, source=self.source)

    def error(self, message: str, detail: Optional[str] = None) -> None:
        self.log.error(message, source=self.source, detail=detail)

    def debug(self, message: str) -> None:
        self.log.debug(message, source=self.source)

    def progress(self, step: int, total: int) -> None:
        if self._on_progress is not None:
            self._on_progress(step, total)

    def close(self) -> None:
        """Stop forwarding progress; later calls are ignored."""
        self._on_progress = None


class Transform(ABC):
    """Base class for enrichment jobs.

    Instances are created per run by TransformDescriptor.create() and
    are free to keep state for the duration of that run only.
    """

    concurrency: int = 0

    def __init__(self):
        self.descriptor: Optional[TransformDescriptor] = None
        self._reporter: Optional[TransformReporter] = None

    def bind(self, reporter: TransformReporter) -> None:
        self._reporter = reporter

    def info(self, message: str) -> None:
        if self._reporter:
            self._reporter.info(message)

    def warn(self, message: str) -> None:
        if self._reporter:
            self._reporter.warn(message)

    def error(self, message: str, detail: Optional[str] = None) -> None:
        if self._reporter:
            self._reporter.error(message, detail)

    def debug(self, message: str) -> None:
        if self._reporter:
            self._reporter.debug(message)

    def progress(self, step: int, total: int) -> None:
        if self._reporter:
            self._reporter.progress(step, total)

    @staticmethod
    def make_id(type: str, label: str) -> str:
        return make_id(type, label)

    @abstractmethod
    async def handle(
        self, node: dict[str, Any], options: dict[str, Any]
    ) -> list[ResultSpec]:
        """Produce result specs for a single input node."""
        ...

    async def run(
        self, nodes: list[dict[str, Any]], options: dict[str, Any]
    ) -> list[ResultSpec]:
        """Run handle() over every node and concatenate the results.

        At most ``concurrency`` nodes are in flight at once (falling back
        to RECON_TRANSFORM_CONCURRENCY). Results keep input node order.
        An exception from any node fails the whole run.
        """
        total = len(nodes)
        limit = self.concurrency or settings.transform_concurrency or 1
        semaphore = asyncio.Semaphore(limit)
        done = 0

        self.progress(0, total)

        async def one(node: dict[str, Any]) -> list[ResultSpec]:
            nonlocal done
            async with semaphore:
                results = await self.handle(node, dict(options))
            done += 1
            self.progress(done, total)
            return list(results or [])

        tasks = [asyncio.ensure_future(one(node)) for node in nodes]
        try:
            batches = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        return [result for batch in batches for result in batch]


TransformDescriptor.model_rebuild()
