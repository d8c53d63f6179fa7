from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketDisconnect

from ..config import BrokerConfig
from ..errors import PatchError
from ..observability.metrics import metrics_middleware_factory
from ..services.session_broker import Generator, SessionBroker

load_dotenv()  # Load PATCHBRIDGE_* settings from .env if present

logger = logging.getLogger("patchbridge.api")

VERSION = "0.1.0"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def create_app(
    config: Optional[BrokerConfig] = None,
    broker: Optional[SessionBroker] = None,
    generator: Optional[Generator] = None,
) -> FastAPI:
    cfg = config or BrokerConfig.from_env()
    broker = broker or SessionBroker.from_config(cfg, generator=generator)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(
            broker.run_sweeper(cfg.session_sweep_interval_seconds, cfg.session_idle_timeout_seconds)
        )
        logger.info(
            "patchbridge listening on ws://%s:%s (backend %s, model %s)",
            cfg.host,
            cfg.port,
            cfg.backend_url,
            cfg.model,
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            logger.info("patchbridge stopped")

    app = FastAPI(title="patchbridge", version=VERSION, lifespan=lifespan)
    app.state.config = cfg
    app.state.broker = broker
    app.state.started_at = time.monotonic()

    # Observability: request latency histogram
    app.middleware("http")(metrics_middleware_factory())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept", "x-api-key"],
    )

    @app.get("/")
    def root():
        return {"name": "patchbridge", "version": VERSION}

    @app.get("/health")
    async def health(request: Request):
        backend_ok = await run_in_threadpool(request.app.state.broker.generator.health)
        return {
            "status": "ok",
            "timestamp": _now_iso(),
            "backend": "ok" if backend_ok else "unreachable",
        }

    @app.get("/status")
    def status(request: Request):
        b: SessionBroker = request.app.state.broker
        return {
            "activeSessions": b.active_sessions(),
            "conversations": b.conversations.count(),
            "serverTime": _now_iso(),
            "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        }

    @app.get("/files/{file_path:path}")
    def read_file(file_path: str, request: Request):
        b: SessionBroker = request.app.state.broker
        try:
            path = b.patcher.normalize_path(file_path)
            content = b.patcher.read_file(path)
        except PatchError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        if content is None:
            raise HTTPException(status_code=404, detail="File not found")
        return {"filePath": path, "content": content}

    @app.get("/metrics")
    def metrics() -> Response:
        data = generate_latest(REGISTRY)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    async def serve(websocket: WebSocket, api_key: Optional[str]) -> None:
        b: SessionBroker = websocket.app.state.broker
        credential = api_key if api_key is not None else websocket.headers.get("x-api-key")
        session = await b.connect(websocket, credential)
        if session is None:
            client = websocket.client.host if websocket.client else "unknown"
            logger.warning("Rejected unauthenticated connection from %s", client)
            return
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    raw = (frame.get("bytes") or b"").decode("utf-8", errors="replace")
                await b.handle_message(session.session_id, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await b.disconnect(session.session_id)

    @app.websocket("/")
    async def ws_root(websocket: WebSocket, api_key: Optional[str] = Query(None)):
        await serve(websocket, api_key)

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket, api_key: Optional[str] = Query(None)):
        await serve(websocket, api_key)

    return app


app = create_app()
