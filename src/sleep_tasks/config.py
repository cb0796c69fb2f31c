"""Configuration management, read from the environment at startup."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# API variants: which endpoints the store exposes for load/save
API_VARIANTS = {
    "classic": {"path": "/state", "save_method": "POST"},
    "v1": {"path": "/api/v1/state", "save_method": "PUT"},
}

DEFAULT_API_BASE = "http://localhost:3001"
DEFAULT_CACHE_PATH = Path.home() / ".sleep-tasks" / "cache.db"
DEFAULT_PUSH_TIMEOUT = 10.0


@dataclass
class Settings:
    """Base URLs, file locations and timeouts for one process."""

    api_base: str = DEFAULT_API_BASE
    ws_base: str = "ws://localhost:3001"
    api_variant: str = "classic"
    cache_path: Path = DEFAULT_CACHE_PATH
    db_path: Optional[Path] = None
    host: str = "0.0.0.0"
    port: int = 3001
    push_timeout: float = DEFAULT_PUSH_TIMEOUT

    @property
    def state_path(self) -> str:
        return API_VARIANTS[self.api_variant]["path"]

    def validate(self) -> None:
        if self.api_variant not in API_VARIANTS:
            valid = ", ".join(API_VARIANTS)
            raise ValueError(f"Invalid API variant '{self.api_variant}'. Valid options: {valid}")


def _ws_from_http(url: str) -> str:
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


def get_settings(env: Optional[dict] = None) -> Settings:
    """Build settings from ``env`` (defaults to os.environ plus ./.env)."""
    if env is None:
        # Variables already set in the environment take precedence
        load_dotenv(Path.cwd() / ".env")
        env = os.environ
    api_base = env.get("SLEEP_TASKS_API_BASE", DEFAULT_API_BASE).rstrip("/")
    db_path = env.get("SLEEP_TASKS_DB")

    settings = Settings(
        api_base=api_base,
        ws_base=env.get("SLEEP_TASKS_WS_BASE") or _ws_from_http(api_base),
        api_variant=env.get("SLEEP_TASKS_API_VARIANT", "classic").lower(),
        cache_path=Path(env.get("SLEEP_TASKS_CACHE", str(DEFAULT_CACHE_PATH))).expanduser(),
        db_path=Path(db_path).expanduser() if db_path else None,
        host=env.get("SLEEP_TASKS_HOST", "0.0.0.0"),
        port=int(env.get("SLEEP_TASKS_PORT", "3001")),
        push_timeout=float(env.get("SLEEP_TASKS_PUSH_TIMEOUT", str(DEFAULT_PUSH_TIMEOUT))),
    )
    settings.validate()
    return settings
