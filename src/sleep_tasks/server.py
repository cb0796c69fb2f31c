"""
Shared State Store: FastAPI server holding the one authoritative document.

This server provides:
- GET /state, POST /state (replace, answers {"ok": true})
- GET /api/v1/state, PUT /api/v1/state (replace, 409 + currentState when stale)
- Websocket push at / and /ws: every accepted write is broadcast as
  {"type": "state", "payload": ...} to all subscribers, the writer included
- Optional SQLite persistence of the document (SLEEP_TASKS_DB)

Replace-whole-document, last writer wins. The server stamps every accepted
document with its own clock; it never merges or validates task contents.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import aiosqlite
import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Settings, get_settings
from .logs import configure_logging, install_buffer_handler, recent_logs
from .model import DEFAULT_BEDTIME, now_ms

logger = logging.getLogger("sleep_tasks.server")


def default_document() -> dict:
    return {"bedtime": DEFAULT_BEDTIME, "tasks": [], "updatedAt": 0}


def document_version(doc: dict) -> int:
    """updatedAt of a raw document, 0 when missing or not a number."""
    value = doc.get("updatedAt")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if value != value or value in (float("inf"), float("-inf")):
        return 0
    return int(value)


# Pydantic Models
class SaveAck(BaseModel):
    ok: bool = True


class LogEntry(BaseModel):
    timestamp: str
    level: str
    message: str


class LogsResponse(BaseModel):
    logs: List[LogEntry]
    count: int


# ============ Persistence ============

class StateRepository:
    """One-row SQLite table holding the document as JSON."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def init(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA busy_timeout=5000")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS shared_state (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    state TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await db.commit()

    async def fetch(self) -> Optional[dict]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT state FROM shared_state WHERE id = 1") as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        try:
            doc = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Stored state is not valid JSON, starting from the default document")
            return None
        return doc if isinstance(doc, dict) else None

    async def update(self, doc: dict) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO shared_state (id, state, updated_at) VALUES (1, ?, CURRENT_TIMESTAMP) "
                "ON CONFLICT(id) DO UPDATE SET state = excluded.state, updated_at = CURRENT_TIMESTAMP",
                (json.dumps(doc),),
            )
            await db.commit()


# ============ Store ============

class StateStore:
    """The authoritative document plus its websocket subscribers."""

    def __init__(self, repository: Optional[StateRepository] = None, clock=now_ms):
        self.repository = repository
        self.clock = clock
        self.document: dict = default_document()
        self.subscribers: set = set()
        # Serializes replace + broadcast so subscribers see writes in arrival order
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        if self.repository is None:
            return
        await self.repository.init()
        stored = await self.repository.fetch()
        if stored is not None:
            self.document = stored
        logger.info(f"Loaded shared state v{document_version(self.document)} from {self.repository.db_path}")

    @property
    def version(self) -> int:
        return document_version(self.document)

    def is_stale(self, doc: dict) -> bool:
        return document_version(doc) < self.version

    async def _replace_locked(self, doc: dict) -> dict:
        stamped = {**doc, "updatedAt": max(self.clock(), self.version + 1)}
        if self.repository is not None:
            await self.repository.update(stamped)
        self.document = stamped
        sent = await self._broadcast(stamped)
        logger.info(f"Accepted shared state v{stamped['updatedAt']}, broadcast to {sent} subscriber(s)")
        return stamped

    async def replace(self, doc: dict) -> dict:
        """Unconditional replace (last writer wins)."""
        async with self._lock:
            return await self._replace_locked(doc)

    async def replace_if_current(self, doc: dict) -> tuple[bool, dict]:
        """Replace unless ``doc`` is older than the stored document.

        Returns (accepted, document): the persisted document, or the current
        one when the write was rejected.
        """
        async with self._lock:
            if self.is_stale(doc):
                logger.warning(
                    f"Rejected stale write v{document_version(doc)} (current v{self.version})"
                )
                return False, self.document
            return True, await self._replace_locked(doc)

    @staticmethod
    def _message(doc: dict) -> str:
        return json.dumps({"type": "state", "payload": doc})

    async def _broadcast(self, doc: dict) -> int:
        message = self._message(doc)
        sent = 0
        for ws in list(self.subscribers):
            try:
                await ws.send_text(message)
                sent += 1
            except Exception as e:
                # Dead connection: drop it, the client resyncs on reconnect
                logger.debug(f"Dropping subscriber after failed send: {e}")
                self.subscribers.discard(ws)
        return sent

    async def subscribe(self, ws: WebSocket) -> None:
        """Register a subscriber and send it the current document."""
        async with self._lock:
            self.subscribers.add(ws)
            await ws.send_text(self._message(self.document))
        logger.info(f"Subscriber connected ({len(self.subscribers)} total)")

    def unsubscribe(self, ws: WebSocket) -> None:
        self.subscribers.discard(ws)
        logger.info(f"Subscriber disconnected ({len(self.subscribers)} total)")


# ============ App ============

async def _read_document(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="state must be an object") from None
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="state must be an object")
    return body


def create_app(store: Optional[StateStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI app around ``store`` (one is created from settings if omitted)."""
    if store is None:
        settings = settings or get_settings()
        repository = StateRepository(settings.db_path) if settings.db_path else None
        store = StateStore(repository)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        install_buffer_handler()
        await store.start()
        logger.info("Shared state store started")
        yield
        logger.info("Shared state store stopping")

    app = FastAPI(
        title="Sleep Tasks Sync",
        description="Shared task list and bedtime store with websocket push",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/state")
    async def get_state():
        return store.document

    @app.post("/state", response_model=SaveAck)
    async def post_state(request: Request):
        """Replace the document; answers a bare acknowledgement."""
        doc = await _read_document(request)
        await store.replace(doc)
        return SaveAck()

    @app.get("/api/v1/state")
    async def get_state_v1():
        return store.document

    @app.put("/api/v1/state")
    async def put_state_v1(request: Request):
        """Replace the document unless it is stale; returns the persisted document."""
        doc = await _read_document(request)
        accepted, current = await store.replace_if_current(doc)
        if not accepted:
            return JSONResponse(status_code=409, content={"currentState": current})
        return current

    async def state_socket(websocket: WebSocket):
        await websocket.accept()
        await store.subscribe(websocket)
        try:
            while True:
                # Inbound frames carry nothing; reading detects the disconnect
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            store.unsubscribe(websocket)

    app.add_api_websocket_route("/", state_socket)
    app.add_api_websocket_route("/ws", state_socket)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "timestamp": datetime.now().isoformat(), "version": store.version}

    @app.get("/api/logs/recent", response_model=LogsResponse)
    async def get_recent_logs(limit: int = 50):
        """Recent server logs from the circular buffer (max 100)."""
        logs = recent_logs(limit)
        return {"logs": logs, "count": len(logs)}

    @app.get("/")
    async def root():
        return {
            "name": "Sleep Tasks Sync",
            "version": "0.1.0",
            "subscribers": len(store.subscribers),
            "endpoints": ["/state", "/api/v1/state", "/ws", "/health", "/api/logs/recent"],
        }

    return app


def run_server(settings: Optional[Settings] = None) -> None:
    """Run the store with uvicorn (blocking)."""
    settings = settings or get_settings()
    configure_logging()
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)
