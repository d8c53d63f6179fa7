import logging

import pytest

from src.patchbridge.config import BrokerConfig
from src.patchbridge.security.auth import AccessGate
from src.patchbridge.security.rate_limit import SlidingWindowLimiter


def _gate(enabled: bool, secret: str = "s3cret", max_requests: int = 2) -> AccessGate:
    return AccessGate(enabled=enabled, secret=secret, limiter=SlidingWindowLimiter(max_requests, 60))


@pytest.mark.parametrize("credential", [None, "", "anything", "s3cret"])
def test_disabled_gate_accepts_any_credential(credential):
    assert _gate(enabled=False).authenticate(credential) is True


def test_enabled_gate_requires_exact_secret():
    gate = _gate(enabled=True)
    assert gate.authenticate("s3cret") is True
    assert gate.authenticate(None) is False
    assert gate.authenticate("") is False
    assert gate.authenticate("s3cret ") is False
    assert gate.authenticate("S3CRET") is False
    assert gate.authenticate("s3cre") is False


def test_enabled_without_secret_warns(caplog):
    with caplog.at_level(logging.WARNING, logger="patchbridge.auth"):
        gate = _gate(enabled=True, secret="")
    assert "no API key" in caplog.text
    assert gate.authenticate("x") is False


def test_quota_is_per_session_and_forgettable():
    gate = _gate(enabled=False, max_requests=2)
    assert gate.check_quota("s1")
    assert gate.check_quota("s1")
    assert not gate.check_quota("s1")
    assert gate.retry_after("s1") >= 1
    assert gate.check_quota("s2")

    gate.forget("s1")
    assert gate.check_quota("s1")


def test_from_config_wires_limits():
    cfg = BrokerConfig(auth_enabled=True, api_key="k", rate_limit_max_requests=5, rate_limit_window_seconds=30)
    gate = AccessGate.from_config(cfg)
    assert gate.enabled is True
    assert gate.authenticate("k")
    assert gate.limiter.max_requests == 5
    assert gate.limiter.window_seconds == 30.0
