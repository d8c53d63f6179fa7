from __future__ import annotations

"""Runtime configuration loaded from ``PATCHBRIDGE_*`` environment variables.

Every setting has a working default so the broker starts against a local
Ollama instance with no environment at all. Integers that fail to parse or
are not positive fall back to their defaults instead of aborting startup.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

DEFAULT_RECOGNIZED_EXTENSIONS: Tuple[str, ...] = (".cs", ".js", ".shader", ".compute", ".json")

DEFAULT_SYSTEM_PROMPT = """You are a coding assistant that edits files in the user's project.

When you want to create or fully replace a file, use this format:
[CODE:relative/path/File.cs]
// file content
[/CODE]

When you want to change one named section of an existing file, use this format:
[MODIFY:relative/path/File.cs:SectionName]
// new section content
[/MODIFY]

Sections are delimited in files by the marker lines `// BEGIN SectionName` and
`// END SectionName`. Never emit the markers yourself inside a MODIFY block.

Rules:
1. Paths may only contain letters, digits, underscores, '/' and '.'.
2. Keep each file self-contained and compilable.
3. Explain briefly what you changed outside of the tagged blocks.
"""

_TRUTHY = {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_extensions(env: Mapping[str, str], name: str) -> Tuple[str, ...]:
    raw = env.get(name)
    if not raw:
        return DEFAULT_RECOGNIZED_EXTENSIONS
    parts = []
    for item in raw.split(","):
        item = item.strip().lower()
        if not item:
            continue
        parts.append(item if item.startswith(".") else f".{item}")
    return tuple(parts) or DEFAULT_RECOGNIZED_EXTENSIONS


@dataclass
class BrokerConfig:
    host: str = "0.0.0.0"
    port: int = 8765

    backend_url: str = "http://localhost:11434"
    model: str = "gemma:12b"
    backend_connect_timeout: float = 3.0
    backend_read_timeout: float = 120.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 20

    auth_enabled: bool = False
    api_key: str = ""

    max_history_length: int = 10

    project_root: str = "."
    target_root: str = "Assets/Scripts"
    default_extension: str = ".cs"
    recognized_extensions: Tuple[str, ...] = field(default=DEFAULT_RECOGNIZED_EXTENSIONS)
    backups_enabled: bool = True

    session_sweep_interval_seconds: int = 1800
    session_idle_timeout_seconds: int = 3600

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "BrokerConfig":
        env = os.environ if env is None else env
        defaults = BrokerConfig()
        default_extension = (env.get("PATCHBRIDGE_DEFAULT_EXTENSION") or defaults.default_extension).strip()
        if not default_extension.startswith("."):
            default_extension = f".{default_extension}"
        return BrokerConfig(
            host=env.get("PATCHBRIDGE_HOST", defaults.host),
            port=_env_int(env, "PATCHBRIDGE_PORT", defaults.port),
            backend_url=env.get("PATCHBRIDGE_BACKEND_URL", defaults.backend_url).rstrip("/"),
            model=env.get("PATCHBRIDGE_MODEL", defaults.model),
            backend_connect_timeout=_env_float(env, "PATCHBRIDGE_BACKEND_CONNECT_TIMEOUT", defaults.backend_connect_timeout),
            backend_read_timeout=_env_float(env, "PATCHBRIDGE_BACKEND_READ_TIMEOUT", defaults.backend_read_timeout),
            system_prompt=env.get("PATCHBRIDGE_SYSTEM_PROMPT") or defaults.system_prompt,
            rate_limit_window_seconds=_env_int(env, "PATCHBRIDGE_RATE_LIMIT_WINDOW_SECONDS", defaults.rate_limit_window_seconds),
            rate_limit_max_requests=_env_int(env, "PATCHBRIDGE_RATE_LIMIT_MAX_REQUESTS", defaults.rate_limit_max_requests),
            auth_enabled=_env_bool(env, "PATCHBRIDGE_AUTH_ENABLED", defaults.auth_enabled),
            api_key=env.get("PATCHBRIDGE_API_KEY", defaults.api_key),
            max_history_length=_env_int(env, "PATCHBRIDGE_MAX_HISTORY_LENGTH", defaults.max_history_length),
            project_root=env.get("PATCHBRIDGE_PROJECT_ROOT", defaults.project_root),
            target_root=(env.get("PATCHBRIDGE_TARGET_ROOT", defaults.target_root) or "").strip("/"),
            default_extension=default_extension,
            recognized_extensions=_env_extensions(env, "PATCHBRIDGE_RECOGNIZED_EXTENSIONS"),
            backups_enabled=_env_bool(env, "PATCHBRIDGE_BACKUPS_ENABLED", defaults.backups_enabled),
            session_sweep_interval_seconds=_env_int(
                env, "PATCHBRIDGE_SESSION_SWEEP_INTERVAL_SECONDS", defaults.session_sweep_interval_seconds
            ),
            session_idle_timeout_seconds=_env_int(
                env, "PATCHBRIDGE_SESSION_IDLE_TIMEOUT_SECONDS", defaults.session_idle_timeout_seconds
            ),
        )
