from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from flakeguard.executor.retry import Backoff

TRUTHY = {"1", "true", "yes", "on"}
DEFAULT_SERVER_ARGS = "-y chrome-devtools-mcp@latest"


@dataclass(frozen=True, slots=True)
class Settings:
    max_attempts: int = 3
    backoff: Backoff = Backoff.FIXED
    backoff_interval: float = 0.25
    timeout_per_attempt: float = 10.0
    poll_interval: float = 0.2
    busy_selector: str | None = None
    step_timeout: float = 20.0
    server_command: str = "npx"
    server_args: tuple[str, ...] = tuple(shlex.split(DEFAULT_SERVER_ARGS))
    chrome_path: str | None = None
    verbose: bool = False
    log_level: str = "WARNING"


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _backoff(name: str, default: Backoff) -> Backoff:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    try:
        return Backoff(raw)
    except ValueError as exc:
        choices = ", ".join(b.value for b in Backoff)
        raise ValueError(f"{name} must be one of {choices}, got {raw!r}") from exc


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Read settings from the environment, after loading ``.env`` if present."""
    load_dotenv(env_file)
    verbose = os.getenv("VERBOSE", "0").strip().lower() in TRUTHY
    chrome_path = os.getenv("CHROME_PATH", "").strip().strip('"') or None
    return Settings(
        max_attempts=_int("RETRY_MAX_ATTEMPTS", 3),
        backoff=_backoff("RETRY_BACKOFF", Backoff.FIXED),
        backoff_interval=_float("RETRY_BACKOFF_SECONDS", 0.25),
        timeout_per_attempt=_float("RETRY_TIMEOUT_SECONDS", 10.0),
        poll_interval=_float("POLL_INTERVAL_SECONDS", 0.2),
        busy_selector=os.getenv("BUSY_SELECTOR", "").strip() or None,
        step_timeout=_float("STEP_TIMEOUT_SECONDS", 20.0),
        server_command=os.getenv("MCP_SERVER_COMMAND", "npx").strip() or "npx",
        server_args=tuple(shlex.split(os.getenv("MCP_SERVER_ARGS", DEFAULT_SERVER_ARGS))),
        chrome_path=chrome_path,
        verbose=verbose,
        log_level=os.getenv("LOG_LEVEL", "").strip().upper() or ("INFO" if verbose else "WARNING"),
    )
