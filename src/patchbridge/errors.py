from __future__ import annotations

"""Error taxonomy shared by the broker and its services."""

from typing import Optional


class PatchBridgeError(Exception):
    """Base class for every error the broker reports to a client."""


class AdmissionError(PatchBridgeError):
    """Bad credential or exhausted request quota."""

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ProtocolError(PatchBridgeError):
    """Malformed inbound message or unknown command."""

    def __init__(self, message: str, conversation_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.conversation_id = conversation_id


class BackendError(PatchBridgeError):
    """Generation backend unreachable, non-2xx, or produced an unparseable stream."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PatchError(PatchBridgeError):
    """File-system failure or refused operation while applying a command."""
