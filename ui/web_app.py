"""
ui/web_app.py — FastAPI presentation sink for Attune.

Serves a minimal caregiver dashboard at http://localhost:<port>/ and streams
live controller events to the browser over a WebSocket at /ws.

REST endpoints
--------------
GET    /health   JSON health check
GET    /state    Latest signals, phase label, tone, output + daily summary
GET    /log      Conversation log, newest first, with icons
GET    /export   Export artifact ``{patient, exportedAt, entries}`` as a download
DELETE /log      Clear the conversation log
POST   /commit   Manual mood / need  {"category": "mood"|"need", "choice": "..."}
POST   /speak    Replay the current output
POST   /sound    Speech toggle  {"enabled": true|false}
POST   /camera   Camera toggle  {"on": true|false}
POST   /mic      Microphone toggle  {"on": true|false}

WebSocket
---------
ws://<host>:<port>/ws

Messages pushed by server (JSON):
  {"type": "snapshot", ...}                      ← on connect
  {"type": "signals",  "signals": {...}, "phase_label": "stabilizing 40%", ...}
  {"type": "phase",    "from": "IDLE", "to": "STABILIZING"}
  {"type": "output",   "label": "Yes", "category": "signal"}
  {"type": "commit",   "label": "Yes", "spoken": true, "entry": {...}}
  {"type": "log",      "entries": 12}
  {"type": "device",   "device": "camera", "on": false}
  {"type": "tick",     "timestamp_ms": ...}      ← heartbeat every second
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from core.constants import Category
from core.errors import AttuneError, PersistenceFailure
from core.logger import get_logger
from pipeline.controller import (
    ON_COMMIT,
    ON_DEVICE,
    ON_LOG_CHANGED,
    ON_OUTPUT,
    ON_PHASE_CHANGE,
    ON_SIGNALS,
    AttuneController,
)

_log = get_logger()

# Live signal updates are forwarded at ~6 Hz (every 5th tick)
_SIGNAL_PUSH_EVERY: int = 5

# ── FastAPI app ───────────────────────────────────────────────────────────────
app = FastAPI(title="Attune", version="1.0")

# ── Shared state ──────────────────────────────────────────────────────────────
_controller: Optional[AttuneController] = None
_connected_clients: Set[WebSocket] = set()
_clients_lock = threading.Lock()
_signal_counter = [0]

# asyncio event loop running in the uvicorn thread
_loop: Optional[asyncio.AbstractEventLoop] = None


# ── Request bodies ────────────────────────────────────────────────────────────

class CommitRequest(BaseModel):
    category: Category
    choice: str


class SoundRequest(BaseModel):
    enabled: bool


class DeviceRequest(BaseModel):
    on: bool


# ── WebSocket helpers ─────────────────────────────────────────────────────────

def _push(msg: Dict[str, Any]) -> None:
    """Thread-safe push of a JSON message to every connected WebSocket client."""
    if _loop is None:
        return
    asyncio.run_coroutine_threadsafe(_broadcast(msg), _loop)


async def _broadcast(msg: Dict[str, Any]) -> None:
    text = json.dumps(msg, default=str)
    with _clients_lock:
        clients = list(_connected_clients)
    dead: List[WebSocket] = []
    for ws in clients:
        try:
            await ws.send_text(text)
        except Exception:  # noqa: BLE001
            dead.append(ws)
    if dead:
        with _clients_lock:
            for ws in dead:
                _connected_clients.discard(ws)


# ── EventBus → WebSocket bridge ───────────────────────────────────────────────

def wire_controller(ctrl: AttuneController) -> None:
    """Register EventBus callbacks so the controller feeds the WS stream."""
    global _controller
    _controller = ctrl
    ctrl.subscribe(ON_SIGNALS, _on_signals)
    ctrl.subscribe(ON_PHASE_CHANGE, lambda d: _push({"type": "phase", **d}))
    ctrl.subscribe(ON_OUTPUT, lambda d: _push({"type": "output", **d}))
    ctrl.subscribe(ON_COMMIT, lambda d: _push({"type": "commit", **d}))
    ctrl.subscribe(ON_LOG_CHANGED, lambda d: _push({"type": "log", **d}))
    ctrl.subscribe(ON_DEVICE, lambda d: _push({"type": "device", **d}))
    _log.info("web_app", "controller_wired", {})


def _on_signals(data: Dict[str, Any]) -> None:
    _signal_counter[0] += 1
    if _signal_counter[0] % _SIGNAL_PUSH_EVERY == 0:
        _push({"type": "signals", **data})


def _require_controller() -> AttuneController:
    if _controller is None:
        raise HTTPException(status_code=503, detail="controller not ready")
    return _controller


# ── Heartbeat ─────────────────────────────────────────────────────────────────

async def _heartbeat() -> None:
    """Push a tick message every second so the client can detect disconnects."""
    while True:
        await asyncio.sleep(1.0)
        _push({"type": "tick", "timestamp_ms": round(time.time() * 1000)})


# ── App lifecycle ─────────────────────────────────────────────────────────────

@app.on_event("startup")
async def _on_startup() -> None:
    global _loop
    _loop = asyncio.get_running_loop()
    asyncio.create_task(_heartbeat())
    _log.info("web_app", "startup", {})


# ── Routes ────────────────────────────────────────────────────────────────────

_INDEX_HTML = """<!doctype html>
<html><head><meta charset="utf-8"><title>Attune</title>
<style>body{font-family:sans-serif;margin:2rem}#output{font-size:3rem}</style></head>
<body>
<div id="output">—</div>
<div id="phase">waiting</div>
<div id="tone"></div>
<ul id="log"></ul>
<script>
const ws = new WebSocket(`ws://${location.host}/ws`);
ws.onmessage = (ev) => {
  const m = JSON.parse(ev.data);
  if (m.type === "signals" || m.type === "snapshot") {
    document.getElementById("phase").textContent = m.phase_label;
    if (m.tone) document.getElementById("tone").textContent = m.tone.label;
  }
  if (m.type === "output") document.getElementById("output").textContent = m.label;
  if (m.type === "commit" && m.entry) {
    const li = document.createElement("li");
    li.textContent = `${m.entry.isoTimestamp} ${m.entry.message}`;
    document.getElementById("log").prepend(li);
  }
};
</script>
</body></html>
"""


@app.get("/", response_class=HTMLResponse)
async def index() -> HTMLResponse:
    """Serve the single-page dashboard."""
    return HTMLResponse(_INDEX_HTML)


@app.get("/health")
async def health() -> JSONResponse:
    ctrl_ok = _controller is not None
    return JSONResponse({
        "status": "ok" if ctrl_ok else "controller_not_ready",
        "clients": len(_connected_clients),
    })


@app.get("/state")
async def state() -> JSONResponse:
    ctrl = _require_controller()
    return JSONResponse({
        **ctrl.snapshot(),
        "summary": ctrl.conversation_log.summary(),
    })


@app.get("/log")
async def get_log() -> JSONResponse:
    ctrl = _require_controller()
    book = ctrl.conversation_log
    return JSONResponse({
        "patient": book.patient_id,
        "entries": [{**e.to_dict(), "icon": e.icon} for e in book.entries],
        "summary": book.summary(),
    })


@app.get("/export")
async def export_log() -> JSONResponse:
    ctrl = _require_controller()
    book = ctrl.conversation_log
    filename = book.export_filename()
    return JSONResponse(
        book.export_payload(),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.delete("/log")
def clear_log() -> JSONResponse:
    ctrl = _require_controller()
    try:
        ctrl.clear_log()
    except PersistenceFailure as exc:
        _log.error("web_app", "clear_log_failed", {"error": str(exc)})
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return JSONResponse({"ok": True})


@app.post("/commit")
def commit(body: CommitRequest) -> JSONResponse:
    ctrl = _require_controller()
    if body.category is Category.SIGNAL:
        raise HTTPException(status_code=400, detail="signal messages cannot be committed manually")
    try:
        outcome = ctrl.commit_manual(body.category, body.choice)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AttuneError as exc:
        _log.error("web_app", "commit_failed", {"error": str(exc)})
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return JSONResponse({
        "ok": True,
        "label": outcome.suggestion.label,
        "spoken": outcome.spoken,
        "persisted": outcome.persisted,
    })


@app.post("/speak")
def speak() -> JSONResponse:
    ctrl = _require_controller()
    return JSONResponse({"ok": ctrl.replay()})


@app.post("/sound")
def sound(body: SoundRequest) -> JSONResponse:
    ctrl = _require_controller()
    ctrl.set_speech_enabled(body.enabled)
    return JSONResponse({"ok": True, "enabled": body.enabled})


@app.post("/camera")
def camera(body: DeviceRequest) -> JSONResponse:
    ctrl = _require_controller()
    if body.on:
        ok = ctrl.start_camera()
    else:
        ctrl.stop_camera()
        ok = True
    return JSONResponse({"ok": ok, "on": ctrl.camera_on})


@app.post("/mic")
def mic(body: DeviceRequest) -> JSONResponse:
    ctrl = _require_controller()
    if body.on:
        ok = ctrl.start_mic()
    else:
        ctrl.stop_mic()
        ok = True
    return JSONResponse({"ok": ok, "on": ctrl.mic_on})


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket) -> None:
    await ws.accept()
    with _clients_lock:
        _connected_clients.add(ws)

    # Send current snapshot on connect
    snapshot = _controller.snapshot() if _controller is not None else {}
    await ws.send_text(json.dumps({"type": "snapshot", **snapshot}, default=str))
    _log.info("web_app", "ws_connected", {"total": len(_connected_clients)})

    try:
        while True:
            msg = await ws.receive_text()
            try:
                data = json.loads(msg)
                await _handle_client_msg(data)
            except (ValueError, KeyError, TypeError) as exc:
                _log.warn("web_app", "ws_bad_message", {"error": str(exc)})
            except AttuneError as exc:
                _log.error("web_app", "ws_action_failed", {"error": str(exc)})
    except WebSocketDisconnect:
        pass
    finally:
        with _clients_lock:
            _connected_clients.discard(ws)
        _log.info("web_app", "ws_disconnected", {"total": len(_connected_clients)})


async def _handle_client_msg(data: Dict[str, Any]) -> None:
    """
    Handle incoming WS messages from the browser (commit / speak / sound).

    Controller calls take the controller lock and may speak, so they run in a
    worker thread rather than on the event loop.
    """
    if _controller is None:
        return
    action = data.get("action")
    if action == "commit":
        category, choice = Category(data["category"]), str(data["choice"])
        await asyncio.to_thread(_controller.commit_manual, category, choice)
    elif action == "speak":
        await asyncio.to_thread(_controller.replay)
    elif action == "sound":
        await asyncio.to_thread(_controller.set_speech_enabled, bool(data.get("enabled", True)))


# ── Public launcher ───────────────────────────────────────────────────────────

def start_web_server(
    controller: AttuneController,
    host: str = "0.0.0.0",
    port: int = 7860,
) -> None:
    """
    Wire *controller* to the WS bridge and start uvicorn in the current thread.

    Blocking — call from a dedicated thread if the controller is already running.

    Args:
        controller: Fully initialised :class:`~pipeline.controller.AttuneController`.
        host:       Bind address (default ``0.0.0.0`` — all interfaces).
        port:       TCP port (default ``7860``).
    """
    wire_controller(controller)

    import uvicorn  # type: ignore
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    _log.info("web_app", "server_start", {"host": host, "port": port})
    server.run()
