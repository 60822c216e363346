"""
Stream Client Configuration

Backend location, timeouts and retention limits for the workflow stream
client. Values come from the environment (a `.env` file is loaded by the
application shell).
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


DEFAULT_LOCAL_API_URL = "http://localhost:8010"
DEFAULT_STREAM_PATH = "/recruiter-workflow/generate-stream"
DEFAULT_GENERATE_PATH = "/recruiter-workflow/generate"
DEFAULT_MAX_HISTORY = 20
DEFAULT_IDLE_TIMEOUT = 300.0  # seconds without a decoded event


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def resolve_api_base_url(env: Optional[Mapping[str, str]] = None) -> str:
    """
    Pick the backend base URL.

    Order of preference:
    - RECRUITER_API_FORCE_REMOTE: remote, then internal, then local
    - otherwise: internal, then remote, then local
    """
    env = os.environ if env is None else env
    remote = env.get("RECRUITER_API_URL")
    internal = env.get("RECRUITER_API_URL_INTERNAL")
    local = env.get("RECRUITER_API_URL_LOCAL") or DEFAULT_LOCAL_API_URL

    if _truthy(env.get("RECRUITER_API_FORCE_REMOTE")):
        candidates = (remote, internal, local)
    else:
        candidates = (internal, remote, local)

    for url in candidates:
        if url:
            return url.rstrip("/")
    return local.rstrip("/")


@dataclass
class StreamConfig:
    """Workflow stream client configuration."""
    api_base_url: str = DEFAULT_LOCAL_API_URL
    stream_path: str = DEFAULT_STREAM_PATH
    generate_path: str = DEFAULT_GENERATE_PATH
    save_path: Optional[str] = None  # None = completed results are not persisted
    request_timeout: float = 30.0
    idle_timeout_seconds: Optional[float] = DEFAULT_IDLE_TIMEOUT
    max_history: int = DEFAULT_MAX_HISTORY
    benign_error_codes: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if self.max_history < 1:
            raise ValueError("max_history must be at least 1")
        if self.idle_timeout_seconds is not None and self.idle_timeout_seconds <= 0:
            self.idle_timeout_seconds = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "StreamConfig":
        """Build a config from RECRUITER_* environment variables."""
        env = os.environ if env is None else env

        codes = env.get("RECRUITER_BENIGN_ERROR_CODES", "")
        idle = env.get("RECRUITER_IDLE_TIMEOUT")

        return cls(
            api_base_url=resolve_api_base_url(env),
            stream_path=env.get("RECRUITER_STREAM_PATH", DEFAULT_STREAM_PATH),
            generate_path=env.get("RECRUITER_GENERATE_PATH", DEFAULT_GENERATE_PATH),
            save_path=env.get("RECRUITER_SAVE_PATH") or None,
            request_timeout=float(env.get("RECRUITER_REQUEST_TIMEOUT", "30")),
            idle_timeout_seconds=float(idle) if idle else DEFAULT_IDLE_TIMEOUT,
            max_history=int(env.get("RECRUITER_MAX_HISTORY", str(DEFAULT_MAX_HISTORY))),
            benign_error_codes=frozenset(c.strip() for c in codes.split(",") if c.strip()),
        )
