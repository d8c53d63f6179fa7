from __future__ import annotations

"""Session broker: owns live connections and drives each request end to end.

For every inbound frame the broker refreshes the session's activity stamp,
checks its quota, parses and validates the message and dispatches on the
command keyword. A ``generate``/``chat`` request is streamed from the
generation client to the socket chunk by chunk; only once the backend
reports completion is the full text handed to the command extractor and
the resulting commands applied by the patch engine.

Errors are recovered at the session boundary and sent to the one client
that caused them. Nothing here terminates the process.
"""

import asyncio
import json
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketDisconnect

from ..config import BrokerConfig
from ..domain.models import (
    Chunk,
    ClientMessage,
    Done,
    Failure,
    GenerationRequest,
    PatchResult,
    StreamEvent,
)
from ..errors import AdmissionError, PatchError, ProtocolError
from ..infrastructure.file_system import LocalFileSystem
from ..observability.metrics import ACTIVE_SESSIONS, GENERATIONS, PATCHES, REJECTIONS
from ..security.auth import AccessGate
from .command_extractor import CommandExtractor, TaggedBlockExtractor
from .conversation_store import ConversationStore
from .generation_client import GenerationClient
from .patch_engine import PatchEngine


logger = logging.getLogger("patchbridge.broker")

# Raised by Starlette/uvicorn when writing to a socket the peer already closed.
TRANSPORT_ERRORS = (WebSocketDisconnect, RuntimeError, OSError)


class Transport(Protocol):
    async def accept(self) -> None: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class Generator(Protocol):
    def events(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]: ...

    def health(self) -> bool: ...


@dataclass
class Session:
    session_id: str
    transport: Transport
    last_activity: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionBroker:
    def __init__(
        self,
        gate: AccessGate,
        conversations: ConversationStore,
        generator: Generator,
        extractor: CommandExtractor,
        patcher: PatchEngine,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gate = gate
        self.conversations = conversations
        self.generator = generator
        self.extractor = extractor
        self.patcher = patcher
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._registry_lock = asyncio.Lock()
        self._handlers: Dict[str, Callable[[Session, ClientMessage], Awaitable[None]]] = {
            "generate": self._handle_generate,
            "chat": self._handle_generate,
            "reset": self._handle_reset,
            "revert": self._handle_revert,
        }
        logger.info("Session broker ready")

    @classmethod
    def from_config(cls, cfg: BrokerConfig, generator: Optional[Generator] = None) -> "SessionBroker":
        patcher = PatchEngine(
            LocalFileSystem(cfg.project_root),
            target_root=cfg.target_root,
            default_extension=cfg.default_extension,
            recognized_extensions=cfg.recognized_extensions,
            backups_enabled=cfg.backups_enabled,
        )
        return cls(
            gate=AccessGate.from_config(cfg),
            conversations=ConversationStore(cfg.max_history_length),
            generator=generator or GenerationClient.from_config(cfg),
            extractor=TaggedBlockExtractor(),
            patcher=patcher,
        )

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    @staticmethod
    def _new_session_id() -> str:
        return f"session_{uuid.uuid4().hex[:16]}"

    @staticmethod
    def _new_conversation_id() -> str:
        return f"conv_{uuid.uuid4().hex[:16]}"

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def active_sessions(self) -> int:
        return len(self._sessions)

    async def connect(self, transport: Transport, credential: Optional[str]) -> Optional[Session]:
        """Admit a new connection; returns ``None`` when the credential is rejected."""

        if not self.gate.authenticate(credential):
            REJECTIONS.labels(reason="auth").inc()
            await transport.close(code=1008, reason="Unauthorized")
            return None

        await transport.accept()
        session = Session(session_id=self._new_session_id(), transport=transport, last_activity=self._clock())
        async with self._registry_lock:
            self._sessions[session.session_id] = session
            ACTIVE_SESSIONS.set(len(self._sessions))
        logger.info("Session %s connected", session.session_id)

        await self._send(
            session,
            {"status": "success", "sessionId": session.session_id, "message": "Connected to patchbridge"},
        )
        return session

    async def disconnect(self, session_id: str) -> None:
        async with self._registry_lock:
            session = self._sessions.pop(session_id, None)
            ACTIVE_SESSIONS.set(len(self._sessions))
        if session is not None:
            self.gate.forget(session_id)
            logger.info("Session %s disconnected", session_id)

    async def sweep_idle_sessions(self, threshold_seconds: float) -> int:
        now = self._clock()
        async with self._registry_lock:
            stale = [s for s in self._sessions.values() if now - s.last_activity > threshold_seconds]
            for session in stale:
                del self._sessions[session.session_id]
            ACTIVE_SESSIONS.set(len(self._sessions))

        for session in stale:
            self.gate.forget(session.session_id)
            try:
                await session.transport.close(code=1000, reason="Session timed out")
            except TRANSPORT_ERRORS as exc:
                logger.debug("Closing idle session %s failed: %s", session.session_id, exc)

        if stale:
            logger.info("Session sweep removed %d inactive session(s)", len(stale))
        return len(stale)

    async def run_sweeper(self, interval_seconds: float, threshold_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep_idle_sessions(threshold_seconds)
            except Exception:
                logger.exception("Session sweep failed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def _send(self, session: Session, payload: Dict[str, Any]) -> bool:
        try:
            await session.transport.send_text(json.dumps(payload))
        except TRANSPORT_ERRORS as exc:
            logger.debug("Send to session %s failed: %s", session.session_id, exc)
            return False
        return True

    async def _send_error(self, session: Session, error: str, conversation_id: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"type": "error", "error": error, "sessionId": session.session_id}
        if conversation_id:
            payload["conversationId"] = conversation_id
        await self._send(session, payload)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    @staticmethod
    def _parse(raw: str | bytes) -> ClientMessage:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProtocolError(f"Invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ProtocolError("Message must be a JSON object")
        try:
            return ClientMessage.model_validate(data)
        except ValidationError as exc:
            first = exc.errors()[0]
            where = ".".join(str(p) for p in first.get("loc", ())) or "message"
            raise ProtocolError(
                f"Invalid message: {where}: {first.get('msg')}",
                conversation_id=data.get("conversationId") if isinstance(data.get("conversationId"), str) else None,
            ) from exc

    async def handle_message(self, session_id: str, raw: str | bytes) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("Message for unknown session %s ignored", session_id)
            return

        async with session.lock:
            session.last_activity = self._clock()

            try:
                self.gate.require_quota(session_id)
            except AdmissionError as exc:
                REJECTIONS.labels(reason="quota").inc()
                await self._send_error(session, str(exc))
                return

            message: Optional[ClientMessage] = None
            try:
                message = self._parse(raw)
                logger.debug("Session %s received %s", session_id, message.command)
                handler = self._handlers.get(message.command.strip().lower())
                if handler is None:
                    raise ProtocolError(f"Unknown command: {message.command}", conversation_id=message.conversation_id)
                await handler(session, message)
            except ProtocolError as exc:
                await self._send_error(session, str(exc), exc.conversation_id)
            except PatchError as exc:
                await self._send_error(session, str(exc), message.conversation_id if message else None)
            except Exception as exc:
                logger.exception("Failed to process message for session %s", session_id)
                await self._send_error(
                    session,
                    f"Failed to process message: {exc}",
                    message.conversation_id if message else None,
                )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def _handle_generate(self, session: Session, message: ClientMessage) -> None:
        conversation_id = message.conversation_id or self._new_conversation_id()
        if not message.message.strip():
            raise ProtocolError("Empty prompt", conversation_id=conversation_id)

        self.conversations.append(conversation_id, "user", message.message)
        opts = message.options
        request = GenerationRequest(
            conversation_id=conversation_id,
            prompt=message.message,
            stream=opts.stream,
            temperature=opts.temperature,
            max_tokens=opts.max_tokens,
            model=opts.model,
            continuation_token=self.conversations.get_continuation_token(conversation_id),
        )

        parts: List[str] = []
        async with aclosing(self.generator.events(request)) as events:
            async for event in events:
                if isinstance(event, Chunk):
                    parts.append(event.text)
                    sent = await self._send(
                        session,
                        {
                            "type": "generation_chunk",
                            "chunk": event.text,
                            "done": False,
                            "conversationId": conversation_id,
                            "sessionId": session.session_id,
                        },
                    )
                    if not sent:
                        GENERATIONS.labels(outcome="aborted").inc()
                        logger.info("Session %s went away mid-stream", session.session_id)
                        return
                elif isinstance(event, Done):
                    text = "".join(parts) if parts else event.final_text
                    await self._complete(session, conversation_id, text, event)
                    return
                elif isinstance(event, Failure):
                    GENERATIONS.labels(outcome="failure").inc()
                    logger.warning(
                        "generation_failed",
                        extra={"session_id": session.session_id, "conversation_id": conversation_id, "err": event.error},
                    )
                    await self._send_error(session, f"Generation failed: {event.error}", conversation_id)
                    return

        GENERATIONS.labels(outcome="failure").inc()
        await self._send_error(session, "Generation failed: backend produced no result", conversation_id)

    async def _complete(self, session: Session, conversation_id: str, text: str, done: Done) -> None:
        self.conversations.append(conversation_id, "assistant", text)
        if done.continuation_token:
            self.conversations.set_continuation_token(conversation_id, done.continuation_token)
        GENERATIONS.labels(outcome="success").inc()

        sent = await self._send(
            session,
            {
                "type": "generation",
                "content": text,
                "done": True,
                "model": done.model,
                "timingMetadata": done.timing,
                "conversationId": conversation_id,
                "sessionId": session.session_id,
            },
        )
        if not sent:
            logger.info("Session %s went away before completion; skipping file commands", session.session_id)
            return

        commands = self.extractor.extract(text)
        if not commands:
            return
        logger.info("Applying %d file command(s) for conversation %s", len(commands), conversation_id)
        results: List[PatchResult] = await run_in_threadpool(self.patcher.apply_all, commands)
        for result in results:
            PATCHES.labels(operation=result.operation.value, success=str(result.success).lower()).inc()

        await self._send(
            session,
            {
                "type": "code_modification",
                "conversationId": conversation_id,
                "sessionId": session.session_id,
                "modifications": [r.to_wire() for r in results],
            },
        )

    async def _handle_reset(self, session: Session, message: ClientMessage) -> None:
        conversation_id = message.conversation_id
        if not conversation_id:
            raise ProtocolError("Reset requires a conversationId")
        self.conversations.reset(conversation_id)
        await self._send(
            session,
            {
                "type": "reset",
                "status": "success",
                "message": "Conversation reset",
                "conversationId": conversation_id,
                "sessionId": session.session_id,
            },
        )

    async def _handle_revert(self, session: Session, message: ClientMessage) -> None:
        if not message.file_path:
            raise ProtocolError("Revert requires a filePath", conversation_id=message.conversation_id)
        original = self.patcher.normalize_path(message.file_path)
        record = self.patcher.latest_backup(original)
        if record is None:
            raise ProtocolError(f"No backup available for {original}", conversation_id=message.conversation_id)

        result = await run_in_threadpool(self.patcher.restore_from_backup, record.backup_path, original)
        PATCHES.labels(operation=result.operation.value, success=str(result.success).lower()).inc()
        payload: Dict[str, Any] = {
            "type": "revert",
            "sessionId": session.session_id,
            "modification": result.to_wire(),
        }
        if message.conversation_id:
            payload["conversationId"] = message.conversation_id
        await self._send(session, payload)
