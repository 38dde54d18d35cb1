"""
Countdown Sync Service

Hosts any number of timer contexts that share one envelope through a
storage key. Each context runs its own engine; they converge only through
the replication channel.
"""

import asyncio
import contextlib
import logging
import uuid
from contextlib import asynccontextmanager
from enum import StrEnum

from fastapi import FastAPI, HTTPException, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from .channel import ReplicationChannel
from .config import (
    HOST,
    MAX_CLIENTS_PER_CONTEXT,
    MAX_CONTEXTS,
    PORT,
    STORAGE_KEY,
    STORAGE_PATH,
    STORAGE_POLL_INTERVAL,
    TICK_INTERVAL,
)
from .engine import TimerEngine, TimerSnapshot
from .envelope import MAX_LABEL_LENGTH, EnvelopeError, deserialize, now_ms
from .storage import FileSharedStorage, InMemorySharedStorage, SharedStorage, StorageError

logger = logging.getLogger(__name__)

# ============================================================
# MODELS
# ============================================================


class TimerAction(StrEnum):
    START = "start"
    PAUSE = "pause"
    RESET = "reset"
    RECONFIGURE = "reconfigure"
    RELABEL = "relabel"


class ControlRequest(BaseModel):
    action: TimerAction = Field(..., description="Timer control action")
    minutes: int | float | str | None = Field(
        None, description="New duration for reconfigure; coerced to at least 1"
    )
    label: str | None = Field(
        None, max_length=MAX_LABEL_LENGTH, description="Display label for relabel"
    )


class EnvelopeResponse(BaseModel):
    key: str
    remaining_seconds: int
    configured_minutes: int
    running: bool
    deadline: int | None
    written_at: int
    paused: bool | None
    label: str | None
    origin: str | None


def apply_action(engine: TimerEngine, request: ControlRequest):
    if request.action == TimerAction.START:
        engine.start()
    elif request.action == TimerAction.PAUSE:
        engine.pause()
    elif request.action == TimerAction.RESET:
        engine.reset()
    elif request.action == TimerAction.RECONFIGURE:
        engine.reconfigure(request.minutes)
    elif request.action == TimerAction.RELABEL:
        engine.relabel(request.label)


# ============================================================
# CONTEXT
# ============================================================


class TimerContext:
    """One independent context: an engine plus the sockets watching it."""

    def __init__(self, context_id: str, engine: TimerEngine):
        self.id = context_id
        self.engine = engine

        # Connected WebSocket clients
        self.clients: dict[str, WebSocket] = {}

        self._pending: set[asyncio.Task] = set()
        self._remove_listener = engine.add_listener(self._on_state)

    def _on_state(self, snapshot: TimerSnapshot):
        if not self.clients:
            return
        task = asyncio.get_running_loop().create_task(
            self.broadcast({"type": "state", "timer": snapshot.model_dump()})
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def add_client(self, client_id: str, websocket: WebSocket):
        """Add a client connection."""
        if len(self.clients) >= MAX_CLIENTS_PER_CONTEXT:
            await websocket.close(code=4029, reason="Too many connections")
            return False

        await websocket.accept()
        self.clients[client_id] = websocket

        # Send current state
        await self._send_to_client(
            client_id, {"type": "connected", "timer": self.engine.snapshot().model_dump()}
        )
        return True

    def remove_client(self, client_id: str):
        """Remove a client connection."""
        if client_id in self.clients:
            del self.clients[client_id]

    async def broadcast(self, message: dict):
        """Send message to all connected clients."""
        disconnected = []

        for client_id, ws in list(self.clients.items()):
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append(client_id)

        for client_id in disconnected:
            self.remove_client(client_id)

    async def _send_to_client(self, client_id: str, message: dict):
        """Send message to specific client."""
        if client_id in self.clients:
            try:
                await self.clients[client_id].send_json(message)
            except Exception:
                self.remove_client(client_id)

    async def cleanup(self):
        """Stop the engine and disconnect all clients. Called before removal."""
        self._remove_listener()
        self.engine.close()

        await self.broadcast({"type": "context_closed"})

        for _client_id, ws in list(self.clients.items()):
            with contextlib.suppress(Exception):
                await ws.close(code=4000, reason="Context closed")
        self.clients.clear()

        for task in list(self._pending):
            task.cancel()


# ============================================================
# CONTEXT MANAGER
# ============================================================


class ContextManager:
    """Owns the shared storage and every open context."""

    def __init__(self, storage: SharedStorage, key: str = STORAGE_KEY):
        self.storage = storage
        self.key = key
        self.contexts: dict[str, TimerContext] = {}

    def create_context(self, tick_interval: float = TICK_INTERVAL) -> TimerContext:
        if len(self.contexts) >= MAX_CONTEXTS:
            raise ValueError("Maximum context limit reached")

        context_id = f"ctx_{uuid.uuid4().hex[:8]}"
        channel = ReplicationChannel(self.storage, context_id, key=self.key)
        engine = TimerEngine(channel, tick_interval=tick_interval)
        engine.bootstrap()

        context = TimerContext(context_id, engine)
        self.contexts[context_id] = context
        logger.info("Opened context %s", context_id)
        return context

    def get_context(self, context_id: str) -> TimerContext | None:
        return self.contexts.get(context_id)

    async def close_context(self, context_id: str) -> bool:
        context = self.contexts.pop(context_id, None)
        if context is None:
            return False
        await context.cleanup()
        logger.info("Closed context %s", context_id)
        return True

    def list_contexts(self) -> list[TimerContext]:
        return list(self.contexts.values())

    async def close_all(self):
        for context_id in list(self.contexts):
            await self.close_context(context_id)


def build_storage() -> SharedStorage:
    if STORAGE_PATH:
        return FileSharedStorage(STORAGE_PATH)
    return InMemorySharedStorage()


# Global manager
manager = ContextManager(build_storage())


# ============================================================
# FASTAPI APP
# ============================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    if isinstance(manager.storage, FileSharedStorage):
        manager.storage.start_polling(STORAGE_POLL_INTERVAL)
    logger.info("Countdown Sync Service started")
    yield
    await manager.close_all()
    manager.storage.close()
    logger.info("Countdown Sync Service stopped")


app = FastAPI(
    title="Countdown Sync Service",
    description="Countdown timer replicated across independent contexts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================
# HEALTH CHECK
# ============================================================


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "contexts_open": len(manager.contexts)}


# ============================================================
# REST ENDPOINTS
# ============================================================


@app.post("/contexts", response_model=TimerSnapshot, status_code=201)
async def open_context():
    """Open a new context, seeded from whatever is stored."""
    try:
        context = manager.create_context()
    except ValueError as e:
        raise HTTPException(status_code=429, detail=str(e)) from None
    return context.engine.snapshot()


@app.get("/contexts", response_model=list[TimerSnapshot])
async def list_contexts():
    """List every open context's view of the timer."""
    return [c.engine.snapshot() for c in manager.list_contexts()]


@app.get("/contexts/{context_id}", response_model=TimerSnapshot)
async def get_context(context_id: str):
    """Get one context's view of the timer."""
    context = manager.get_context(context_id)
    if not context:
        raise HTTPException(status_code=404, detail="Context not found")
    return context.engine.snapshot()


@app.post("/contexts/{context_id}/control", response_model=TimerSnapshot)
async def control_context(context_id: str, request: ControlRequest):
    """Issue a command from a context (start, pause, reset, reconfigure, relabel)."""
    context = manager.get_context(context_id)
    if not context:
        raise HTTPException(status_code=404, detail="Context not found")

    apply_action(context.engine, request)
    return context.engine.snapshot()


@app.delete("/contexts/{context_id}", status_code=204)
async def close_context(context_id: str):
    """Tear down a context."""
    if not await manager.close_context(context_id):
        raise HTTPException(status_code=404, detail="Context not found")
    return Response(status_code=204)


@app.get("/envelope", response_model=EnvelopeResponse)
async def get_envelope():
    """The envelope as currently persisted in shared storage."""
    try:
        raw = manager.storage.get(manager.key)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e)) from None
    if raw is None:
        raise HTTPException(status_code=404, detail="Nothing stored yet")
    try:
        envelope = deserialize(raw)
    except EnvelopeError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None
    return EnvelopeResponse(key=manager.key, **envelope.model_dump())


# ============================================================
# WEBSOCKET ENDPOINT
# ============================================================


@app.websocket("/ws/{context_id}")
async def websocket_endpoint(websocket: WebSocket, context_id: str):
    """
    WebSocket connection to one context.

    Messages received:
    - connected: Initial state when connected
    - state: Every state change, local or replicated
    - context_closed: The context was torn down

    Messages accepted:
    - ping, sync, and control (same fields as the REST control body)
    """
    context = manager.get_context(context_id)
    if not context:
        await websocket.close(code=4004, reason="Context not found")
        return

    client_id = f"client_{uuid.uuid4().hex[:8]}"

    try:
        accepted = await context.add_client(client_id, websocket)
        if not accepted:
            return

        # Keep connection alive
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_json(), timeout=30)

                # Handle ping
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

                # Handle sync request
                elif data.get("type") == "sync":
                    await websocket.send_json(
                        {
                            "type": "sync_response",
                            "server_time": now_ms(),
                            "time_left": context.engine.time_left,
                            "state": context.engine.state,
                        }
                    )

                # Handle command
                elif data.get("type") == "control":
                    try:
                        request = ControlRequest.model_validate(data)
                    except ValidationError as e:
                        await websocket.send_json(
                            {
                                "type": "error",
                                "message": f"Invalid control: {e.error_count()} error(s)",
                            }
                        )
                        continue
                    apply_action(context.engine, request)

                else:
                    await websocket.send_json(
                        {
                            "type": "error",
                            "message": f"Unknown message type: {data.get('type')}",
                        }
                    )

            except TimeoutError:
                # Send keepalive
                await websocket.send_json(
                    {"type": "keepalive", "time_left": context.engine.time_left}
                )

    except WebSocketDisconnect:
        context.remove_client(client_id)
    except Exception:
        logger.warning("WebSocket error for client %s on context %s", client_id, context_id)
        context.remove_client(client_id)


# ============================================================
# MAIN
# ============================================================


def main():
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
