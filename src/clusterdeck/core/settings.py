"""Centralized settings for clusterdeck processes.

The coordinator, workers and the submission client read the same
``ClusterSettings`` object so that timing knobs and the shared volume root
are spelled identically everywhere.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Liveness and scheduling durations are not guessed in code: they are
    settings with documented defaults that every process can override.

    - **Pydantic validation:** Type-checked at startup
    - **Environment-driven:** ``CLUSTERDECK_*`` env vars and ``.env`` files
    - **Sensible defaults:** A single-host dev cluster works out of the box

Examples:
    >>> from clusterdeck.core.settings import ClusterSettings
    >>> s = ClusterSettings(liveness_timeout=10)
    >>> s.liveness_timeout
    10.0

Tags:
    settings, configuration, pydantic, environment, clusterdeck

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClusterSettings(BaseSettings):
    """Settings shared by the coordinator, workers and submission client.

    Order of precedence (highest → lowest):
        1. Constructor keyword arguments
        2. Environment variables (``CLUSTERDECK_LIVENESS_TIMEOUT``, ...)
        3. ``.env`` file
        4. Defaults below
    """

    model_config = SettingsConfigDict(
        env_prefix="CLUSTERDECK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Coordinator server ───────────────────────────────────────
    host: str = Field(default="0.0.0.0", description="Coordinator bind address")
    port: int = Field(default=7077, description="Coordinator bind port")
    api_prefix: str = Field(default="/api/v1", description="URL prefix for all endpoints")
    debug: bool = Field(default=False, description="Expose exception details in 500 responses")

    # ── Client side ──────────────────────────────────────────────
    coordinator_url: str = Field(
        default="http://localhost:7077",
        description="Base URL workers and clients use to reach the coordinator",
    )
    request_timeout: float = Field(default=10.0, description="HTTP timeout in seconds")

    # ── Shared data volume ───────────────────────────────────────
    shared_root: Path = Field(
        default=Path("/data"),
        description="Logical mount path of the shared volume, identical in every process",
    )

    # ── Liveness / scheduling ────────────────────────────────────
    liveness_timeout: float = Field(default=30.0, gt=0, description="Max worker silence before LOST")
    heartbeat_interval: float = Field(default=5.0, gt=0, description="Seconds between worker heartbeats")
    scheduling_interval: float = Field(default=1.0, gt=0, description="Seconds between scheduling cycles")
    scheduling_timeout: float = Field(
        default=300.0,
        ge=0,
        description="Max seconds a submission may wait for a worker (0 = forever)",
    )
    cancel_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Max seconds for a worker to acknowledge a cancel before LOST",
    )

    # ── Submission client polling ────────────────────────────────
    poll_interval: float = Field(default=2.0, gt=0)
    poll_timeout: float = Field(default=3600.0, gt=0, description="Polling ceiling before reporting Timeout")

    # ── Worker capacity ──────────────────────────────────────────
    worker_cores: int = Field(default=2, ge=1)
    worker_memory_mb: int = Field(default=2048, ge=1)

    # ── External database (opaque to clusterdeck) ────────────────
    database_url: str | None = Field(
        default=None,
        description="Forwarded to every task as CLUSTERDECK_DATABASE_URL",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="auto", description="json | console | auto")

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value not in {"json", "console", "auto"}:
            raise ValueError(f"log_format must be json, console or auto, got {value!r}")
        return value

    @property
    def json_logs(self) -> bool | None:
        """Map ``log_format`` onto :func:`configure_logging`'s ``json_format``."""
        return {"json": True, "console": False}.get(self.log_format)


@lru_cache(maxsize=1)
def get_settings() -> ClusterSettings:
    """Cached settings — loaded once per process."""
    return ClusterSettings()


__all__ = ["ClusterSettings", "get_settings"]
