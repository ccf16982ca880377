"""
Relay configuration.

Settings is a plain frozen dataclass handed to create_app(), so tests can
build one directly without touching os.environ. from_env() is the
production entry point.
"""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

SESSION_COOKIE_MAX_AGE = 86400


def _split_tokens(raw: str) -> tuple[str, ...]:
    return tuple(t.strip() for t in raw.split(",") if t.strip())


@dataclass(frozen=True)
class Settings:
    user_secrets: tuple[str, ...] = ()
    admin_secrets: tuple[str, ...] = ()

    store_backend: str = "redis"       # "redis" or "memory"
    redis_url: str = "redis://localhost:6379"

    public_base_url: str = ""          # Empty: use the request's base URL
    generate_requires_token: bool = False

    max_concurrent_streams: int = 64
    upstream_connect_timeout: float = 10.0
    upstream_read_timeout: float = 60.0

    cookie_max_age: int = SESSION_COOKIE_MAX_AGE

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.user_secrets:
            errors.append("SECRET_TOKEN must be set")
        if not self.admin_secrets:
            errors.append("ADMIN_TOKEN must be set")
        if self.store_backend not in ("redis", "memory"):
            errors.append(f"Unknown STORE_BACKEND: {self.store_backend!r}")
        if self.max_concurrent_streams < 1:
            errors.append("MAX_CONCURRENT_STREAMS must be >= 1")
        return errors

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None) -> Settings:
        if env is None:
            env = dict(os.environ)

        return cls(
            user_secrets=_split_tokens(env.get("SECRET_TOKEN", "")),
            admin_secrets=_split_tokens(env.get("ADMIN_TOKEN", "")),
            store_backend=env.get("STORE_BACKEND", "redis").strip().lower(),
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            public_base_url=env.get("PUBLIC_BASE_URL", "").rstrip("/"),
            generate_requires_token=env.get("GENERATE_REQUIRES_TOKEN", "0") == "1",
            max_concurrent_streams=int(env.get("MAX_CONCURRENT_STREAMS", "64")),
            upstream_connect_timeout=float(env.get("UPSTREAM_CONNECT_TIMEOUT", "10")),
            upstream_read_timeout=float(env.get("UPSTREAM_READ_TIMEOUT", "60")),
            cookie_max_age=int(env.get("COOKIE_MAX_AGE", str(SESSION_COOKIE_MAX_AGE))),
        )


def load_settings() -> Settings:
    """Read settings from the environment. Crash loudly if incomplete."""
    settings = Settings.from_env()
    errors = settings.validate()
    if errors:
        raise RuntimeError("Invalid configuration: " + "; ".join(errors))
    return settings


def setup_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    root = logging.getLogger()
    if getattr(setup_logging, "_configured", False):
        root.setLevel(level)
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt))
    root.handlers[:] = [handler]
    root.setLevel(level)
    setup_logging._configured = True
