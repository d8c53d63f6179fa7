from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from src.patchbridge.config import BrokerConfig
from src.patchbridge.domain.models import GenerationRequest, StreamEvent
from src.patchbridge.infrastructure.file_system import LocalFileSystem
from src.patchbridge.security.auth import AccessGate
from src.patchbridge.security.rate_limit import SlidingWindowLimiter
from src.patchbridge.services.command_extractor import TaggedBlockExtractor
from src.patchbridge.services.conversation_store import ConversationStore
from src.patchbridge.services.patch_engine import PatchEngine
from src.patchbridge.services.session_broker import SessionBroker


class ScriptedGenerator:
    """Generator stub replaying one scripted event list per request."""

    def __init__(self, *scripts: Sequence[StreamEvent]) -> None:
        self._scripts: List[Sequence[StreamEvent]] = list(scripts)
        self.requests: List[GenerationRequest] = []

    def add(self, events: Sequence[StreamEvent]) -> None:
        self._scripts.append(events)

    async def events(self, request: GenerationRequest):
        self.requests.append(request)
        script = self._scripts.pop(0) if self._scripts else []
        for event in script:
            yield event

    def health(self) -> bool:
        return True


class FakeTransport:
    """In-memory stand-in for a WebSocket."""

    def __init__(self, fail_after: Optional[int] = None) -> None:
        self.accepted = False
        self.closed: Optional[Dict[str, Any]] = None
        self.sent: List[Dict[str, Any]] = []
        self._fail_after = fail_after

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, data: str) -> None:
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            raise RuntimeError("Cannot call 'send' once a close message has been sent.")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = {"code": code, "reason": reason}

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == kind]


def make_broker(
    root: Path,
    generator: Any,
    *,
    auth_enabled: bool = False,
    secret: str = "",
    max_requests: int = 20,
    window_seconds: float = 60.0,
    max_history: int = 10,
    clock=None,
) -> SessionBroker:
    limiter_kwargs = {"clock": clock} if clock else {}
    gate = AccessGate(
        enabled=auth_enabled,
        secret=secret,
        limiter=SlidingWindowLimiter(max_requests, window_seconds, **limiter_kwargs),
    )
    broker_kwargs = {"clock": clock} if clock else {}
    return SessionBroker(
        gate=gate,
        conversations=ConversationStore(max_history),
        generator=generator,
        extractor=TaggedBlockExtractor(),
        patcher=PatchEngine(LocalFileSystem(root)),
        **broker_kwargs,
    )


def broker_config(root: Path, **overrides: Any) -> BrokerConfig:
    values: Dict[str, Any] = {"project_root": str(root)}
    values.update(overrides)
    return BrokerConfig(**values)


def chunks(text: str, size: int = 7) -> Iterable[str]:
    for i in range(0, len(text), size):
        yield text[i : i + size]
