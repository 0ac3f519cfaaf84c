"""REST API — message box and event posting over HTTP (FastAPI)."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cardscript.errors import ScriptError

if TYPE_CHECKING:
    from cardscript.engine import Engine

log = logging.getLogger(__name__)

app = FastAPI(title="cardscript API", version="0.1.0")

# Engine reference, set by start_api()
_engine: Engine | None = None


def get_engine() -> Engine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Engine not ready")
    return _engine


class MessageRequest(BaseModel):
    text: str


class EventRequest(BaseModel):
    event: str
    object_id: str | None = None


# ── REST endpoints ────────────────────────────────────────────────

@app.get("/api/card")
async def api_card() -> JSONResponse:
    """Summary of the current card."""
    scene = get_engine().scene
    card = scene.current_card()
    objects = []
    for obj in scene.card_objects(scene.current_index):
        objects.append({
            "id": obj.id,
            "kind": obj.kind.value,
            "name": obj.name,
            "layer": obj.layer,
            "visible": obj.visible,
        })
    return JSONResponse({
        "index": scene.current_index + 1,
        "count": len(scene.cards),
        "id": card.id,
        "name": card.name,
        "objects": objects,
    })


@app.post("/api/message")
async def api_message(req: MessageRequest) -> JSONResponse:
    """Message box: evaluate an expression or run command lines."""
    engine = get_engine()
    try:
        result = await engine.message(req.text)
    except (ScriptError, ValueError, KeyError) as e:
        log.info("Message box error: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse({"result": result, "it": engine.registers.it})


@app.post("/api/event")
async def api_event(req: EventRequest) -> JSONResponse:
    """Post an event through the object → card → background → stack hierarchy."""
    engine = get_engine()
    handled = await engine.post_event(req.event, req.object_id)
    return JSONResponse({"event": req.event, "handled": handled})


@app.get("/api/registers")
async def api_registers() -> JSONResponse:
    engine = get_engine()
    return JSONResponse({"it": engine.registers.it, "globals": dict(engine.registers.globals)})


# ── Server start/stop ──────────────────────────────────────────────

_server_task: asyncio.Task | None = None


async def start_api(engine: Engine, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Start FastAPI server in background."""
    global _engine, _server_task
    _engine = engine

    import uvicorn

    config = uvicorn.Config(
        app, host=host, port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    _server_task = asyncio.create_task(server.serve())
    log.info("API server starting on %s:%d", host, port)


async def stop_api() -> None:
    """Stop FastAPI server."""
    global _engine, _server_task
    if _server_task:
        _server_task.cancel()
        try:
            await _server_task
        except asyncio.CancelledError:
            pass
        _server_task = None
    _engine = None
    log.info("API server stopped")
