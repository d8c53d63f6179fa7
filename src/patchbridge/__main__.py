from __future__ import annotations

from .config import BrokerConfig


def run() -> None:
    import uvicorn

    cfg = BrokerConfig.from_env()
    # Logging is configured by the package itself; keep uvicorn from replacing it.
    uvicorn.run("src.patchbridge.api.main:app", host=cfg.host, port=cfg.port, log_config=None)


if __name__ == "__main__":
    run()
