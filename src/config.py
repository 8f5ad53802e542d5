"""Relay configuration.

Everything comes from the environment; call ``load_env()`` first to pull a
local ``.env`` file into ``os.environ``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RelayConfig:
    opencode_server_url: str
    opencode_username: str
    opencode_password: str | None
    opencode_model: str | None
    opencode_agent: str | None
    http_timeout_s: float
    working_dir: str
    cache_size: int
    log_level: str


def load_env(env_path: Path | None = None) -> None:
    """Load .env file into os.environ. Handles quoted values and spaces."""
    if env_path is None:
        env_path = Path(__file__).parent.parent / ".env"

    if not env_path.exists():
        return

    for line in env_path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, val = line.split("=", 1)
            val = val.strip().strip('"').strip("'")
            os.environ[key.strip()] = val


def _resolve_server_url() -> str:
    base_url = os.getenv("OPENCODE_SERVER_URL")
    if base_url:
        return base_url.rstrip("/")

    host = os.getenv("OPENCODE_SERVER_HOST", "127.0.0.1")
    port = os.getenv("OPENCODE_SERVER_PORT", "4096")
    return f"http://{host}:{port}"


def get_relay_config() -> RelayConfig:
    password = (os.getenv("OPENCODE_SERVER_PASSWORD") or "").strip() or None
    model = (os.getenv("OPENCODE_MODEL") or "").strip() or None
    agent = (os.getenv("OPENCODE_AGENT") or "").strip() or None
    cache_size = int(os.getenv("RELAY_CACHE_SIZE", "1000"))
    if cache_size < 1:
        raise ValueError(f"RELAY_CACHE_SIZE must be >= 1, got {cache_size}")

    return RelayConfig(
        opencode_server_url=_resolve_server_url(),
        opencode_username=os.getenv("OPENCODE_SERVER_USERNAME", "opencode"),
        opencode_password=password,
        opencode_model=model,
        opencode_agent=agent,
        http_timeout_s=float(os.getenv("OPENCODE_HTTP_TIMEOUT_S", "600")),
        working_dir=os.getenv("RELAY_WORKING_DIR", str(Path.home())),
        cache_size=cache_size,
        log_level=(os.getenv("RELAY_LOG_LEVEL") or "INFO").strip().upper(),
    )
