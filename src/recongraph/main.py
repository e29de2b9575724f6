"""recongraph application entrypoint.

Serves one engine and one working-set session over HTTP. When
RECON_STATE_PATH is set the graph is loaded from that file at startup
and written back after every request that changes it.
"""

import json
import logging
import os
import re
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from recongraph.config import settings
from recongraph.engine import Recon, Session
from recongraph.errors import (
    InvalidElementError,
    SelectorSyntaxError,
    UnknownTransformError,
    UnknownTraversalError,
)
from recongraph.models.elements import Selection
from recongraph.transforms.orchestrator import TransformSettings
from recongraph.utils.logging import configure_logging

configure_logging(settings.log_level)
logger = logging.getLogger("recongraph")

app = FastAPI(
    title="recongraph",
    description="Reconnaissance graph engine",
    version=settings.version,
)

recon = Recon()
session = recon.session()


class NodesRequest(BaseModel):
    nodes: list[dict[str, Any]] = Field(
        description="Node specs; malformed entries are skipped and reported"
    )


class ExpressionsRequest(BaseModel):
    expressions: list[str] = Field(default_factory=list)


class TransformRequest(BaseModel):
    options: dict[str, Any] = Field(default_factory=dict)
    settings: TransformSettings = Field(default_factory=TransformSettings)


class GroupRequest(BaseModel):
    label: str


def _current() -> Session:
    return session


def _selection_payload(selection: Selection) -> dict[str, Any]:
    return {
        "nodes": list(selection.nodes),
        "edges": list(selection.edges),
        "count": len(selection),
    }


def _save_state() -> None:
    if not settings.state_path:
        return
    tmp_path = f"{settings.state_path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(recon.serialize(), fh)
    os.replace(tmp_path, settings.state_path)


@app.on_event("startup")
async def startup():
    logger.info("recongraph v%s starting", settings.version)
    logger.info("Log level: %s", settings.log_level)
    logger.info(
        "Node limits: warn=%d cap=%d", settings.max_nodes_warn, settings.max_nodes_cap,
    )
    logger.info("Transforms: %s", ", ".join(d.name for d in recon.registry))

    if settings.state_path and os.path.exists(settings.state_path):
        with open(settings.state_path, encoding="utf-8") as fh:
            _current().deserialize(json.load(fh))
        logger.info(
            "Loaded graph state from %s: %d nodes, %d edges",
            settings.state_path, recon.store.node_count, recon.store.edge_count,
        )


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": settings.version,
        "nodes": recon.store.node_count,
        "edges": recon.store.edge_count,
    }


@app.get("/graph")
async def get_graph():
    return recon.serialize()


@app.put("/graph")
async def put_graph(payload: dict[str, Any]):
    try:
        _current().deserialize(payload)
    except InvalidElementError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _save_state()
    return {"nodes": recon.store.node_count, "edges": recon.store.edge_count}


@app.post("/nodes")
async def add_nodes(req: NodesRequest):
    result = _current().add_nodes(req.nodes)
    _save_state()
    return {
        "selection": _selection_payload(result.selection),
        "diagnostics": [d.model_dump(mode="json") for d in result.diagnostics],
    }


@app.get("/selection")
async def get_selection():
    current = _current()
    return {**_selection_payload(current.selection), "elements": current.nodes()}


@app.delete("/selection")
async def clear_selection():
    return _selection_payload(_current().unselect())


@app.post("/select")
async def select(req: ExpressionsRequest):
    try:
        selection = _current().select(*req.expressions)
    except SelectorSyntaxError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _selection_payload(selection)


@app.post("/traverse")
async def traverse(req: ExpressionsRequest):
    try:
        selection = _current().traverse(*req.expressions)
    except (SelectorSyntaxError, UnknownTraversalError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _selection_payload(selection)


@app.get("/transforms")
async def list_transforms():
    return [d.model_dump() for d in recon.registry]


@app.post("/transforms/{name}")
async def run_transform(name: str, req: Optional[TransformRequest] = None):
    req = req or TransformRequest()
    try:
        report = await _current().transform(name, options=req.options, settings=req.settings)
    except UnknownTransformError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except re.error as e:
        raise HTTPException(status_code=400, detail=f"Invalid filter pattern: {e}")
    _save_state()
    return {
        "selection": _selection_payload(report.selection),
        "results": len(report.results),
        "jobs": [
            {
                "name": job.name,
                "title": job.title,
                "input_count": job.input_count,
                "result_count": job.result_count,
                "error": job.error,
                "capped": job.capped,
            }
            for job in report.jobs
        ],
        "diagnostics": [d.model_dump(mode="json") for d in report.diagnostics],
    }


@app.post("/group")
async def group(req: GroupRequest):
    parent_id = _current().group(req.label)
    _save_state()
    return {"group": parent_id}


@app.post("/ungroup")
async def ungroup():
    _current().ungroup()
    _save_state()
    return _selection_payload(_current().selection)


@app.post("/measure")
async def measure():
    _current().measure()
    _save_state()
    return _selection_payload(_current().selection)


@app.post("/unmeasure")
async def unmeasure():
    _current().unmeasure()
    _save_state()
    return _selection_payload(_current().selection)
