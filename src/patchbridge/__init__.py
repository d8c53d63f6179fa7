# patchbridge package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("PATCHBRIDGE_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("patchbridge")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[PATCHBRIDGE][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    backend_level_name = (os.getenv("PATCHBRIDGE_BACKEND_LOG_LEVEL") or level_name).upper()
    backend_level = getattr(logging, backend_level_name, level)
    logging.getLogger("patchbridge.backend").setLevel(backend_level)


_configure_logging()
