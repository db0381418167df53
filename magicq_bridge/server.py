from __future__ import annotations

"""
MagicQ Bridge - magicq_bridge/server.py
---------------------------------------
Client-facing surface.

- Websocket at "/" (and "/ws"): push events + commands, see messages.py.
  Each socket is wrapped in a small adapter and handed to the hub; the hub
  decides when a client counts as connected (after the connection ack).
- /healthz: liveness + hub state
- /state:   executor runtime state (debug view)

Startup builds the hub from config/config.yaml unless a hub is already
attached to app.state.hub (tests do that).
"""

import logging
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .hub import RealtimeHub, build_hub

log = logging.getLogger("mqb.server")

app = FastAPI(title="MagicQ Bridge", version="0.1.0")


class WebSocketClient:
    """Adapter exposing a Starlette WebSocket the way the hub expects."""

    def __init__(self, ws: WebSocket):
        self.ws = ws
        client = ws.client
        self.label = f"{client.host}:{client.port}" if client else "unknown"

    async def send_text(self, text: str) -> None:
        await self.ws.send_text(text)

    async def close(self) -> None:
        await self.ws.close(code=1001)

    def __repr__(self) -> str:
        return f"<WebSocketClient {self.label}>"


def _hub() -> Optional[RealtimeHub]:
    return getattr(app.state, "hub", None)


@app.on_event("startup")
async def start_hub() -> None:
    """Build (if needed) and start the realtime hub."""
    hub = _hub()
    if hub is None:
        hub = build_hub()
        app.state.hub = hub
    await hub.start()


@app.on_event("shutdown")
async def stop_hub() -> None:
    hub = _hub()
    if hub is None:
        return
    try:
        await hub.stop()
    except Exception:
        log.exception("Error stopping hub")


async def _serve_socket(ws: WebSocket) -> None:
    hub = _hub()
    await ws.accept()
    if hub is None or not hub.accepting:
        await ws.close(code=1013)
        return

    client = WebSocketClient(ws)
    hub.attach(client)
    try:
        while True:
            msg = await ws.receive()
            if msg["type"] == "websocket.disconnect":
                break
            raw = msg.get("text")
            if raw is None:
                raw = msg.get("bytes")
            if raw is not None:
                hub.receive(client, raw)
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # socket closed underneath us during shutdown
        log.debug("Websocket receive ended: %s", e)
    finally:
        hub.detach(client)
        log.info("Client disconnected: %s", client.label)


@app.websocket("/")
async def ws_root(ws: WebSocket) -> None:
    await _serve_socket(ws)


@app.websocket("/ws")
async def ws_alias(ws: WebSocket) -> None:
    await _serve_socket(ws)


@app.get("/healthz")
async def healthz():
    hub = _hub()
    if hub is None:
        return JSONResponse({"ok": False, "state": None}, status_code=503)
    return {"ok": hub.accepting, "state": hub.state.value, "clients": len(hub.clients)}


@app.get("/state")
async def state():
    hub = _hub()
    if hub is None:
        return JSONResponse({"detail": "hub not running"}, status_code=503)
    return hub.snapshot()
