from __future__ import annotations

"""Connection admission: shared-secret authentication and per-session quota.

The gate has two checks:
- ``authenticate`` compares a provided credential with one configured secret
  (no hashing, no user store);
- ``check_quota`` counts requests per session in a fixed window.

Both are called by the session broker; nothing here touches the transport.
"""

import hmac
import logging
from typing import Optional

from ..config import BrokerConfig
from ..errors import AdmissionError
from .rate_limit import SlidingWindowLimiter


logger = logging.getLogger("patchbridge.auth")


class AccessGate:
    def __init__(self, enabled: bool, secret: str, limiter: SlidingWindowLimiter) -> None:
        self.enabled = enabled
        self._secret = secret or ""
        self.limiter = limiter
        if enabled and not self._secret:
            logger.warning("Authentication is enabled but no API key is configured")

    @classmethod
    def from_config(cls, cfg: BrokerConfig) -> "AccessGate":
        limiter = SlidingWindowLimiter(
            max_requests=cfg.rate_limit_max_requests,
            window_seconds=cfg.rate_limit_window_seconds,
        )
        return cls(enabled=cfg.auth_enabled, secret=cfg.api_key, limiter=limiter)

    def authenticate(self, provided: Optional[str]) -> bool:
        if not self.enabled:
            return True
        if provided is None:
            logger.warning("Connection attempt without an API key")
            return False
        ok = hmac.compare_digest(provided.encode("utf-8"), self._secret.encode("utf-8"))
        if not ok:
            logger.warning("Connection attempt with an invalid API key")
        return ok

    def check_quota(self, session_id: str) -> bool:
        admitted = self.limiter.hit(session_id)
        if not admitted:
            logger.warning("Rate limit exceeded for session %s", session_id)
        return admitted

    def retry_after(self, session_id: str) -> int:
        return self.limiter.retry_after(session_id)

    def forget(self, session_id: str) -> None:
        self.limiter.reset(session_id)

    def require_quota(self, session_id: str) -> None:
        """Raise ``AdmissionError`` when the session has used up its window."""

        if not self.check_quota(session_id):
            retry = self.retry_after(session_id)
            raise AdmissionError(f"Rate limit exceeded. Try again in {retry}s.", retry_after_seconds=retry)
