"""Runtime configuration for the dispatch console."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class GatewaySettings:
    """Agent runtime gateway connection settings."""

    url: str = "http://127.0.0.1:18789"
    token: str | None = None
    connect_timeout_seconds: float = 10.0
    call_timeout_seconds: float = 30.0


@dataclass(slots=True)
class ConsoleSettings:
    """Values embedded into task messages sent to agents."""

    projects_path: str = "~/projects"
    console_url: str = "http://localhost:3000"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".mission_dispatch.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    console: ConsoleSettings = field(default_factory=ConsoleSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("MISSION_DISPATCH_DB_PATH", ".mission_dispatch.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("MISSION_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            log_level=os.getenv("MISSION_DISPATCH_LOG_LEVEL", "WARNING").strip().upper(),
            gateway=GatewaySettings(
                url=os.getenv("MISSION_DISPATCH_GATEWAY_URL", "http://127.0.0.1:18789").strip(),
                token=os.getenv("MISSION_DISPATCH_GATEWAY_TOKEN") or None,
                connect_timeout_seconds=float(
                    os.getenv("MISSION_DISPATCH_GATEWAY_CONNECT_TIMEOUT_SECONDS", "10"),
                ),
                call_timeout_seconds=float(
                    os.getenv("MISSION_DISPATCH_GATEWAY_CALL_TIMEOUT_SECONDS", "30"),
                ),
            ),
            console=ConsoleSettings(
                projects_path=os.getenv("MISSION_DISPATCH_PROJECTS_PATH", "~/projects"),
                console_url=os.getenv(
                    "MISSION_DISPATCH_CONSOLE_URL",
                    "http://localhost:3000",
                ).rstrip("/"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for unusable gateway or store settings."""

        _validate_http_url("MISSION_DISPATCH_GATEWAY_URL", self.gateway.url)
        _validate_http_url("MISSION_DISPATCH_CONSOLE_URL", self.console.console_url)
        if self.gateway.connect_timeout_seconds <= 0:
            raise ValueError("MISSION_DISPATCH_GATEWAY_CONNECT_TIMEOUT_SECONDS must be > 0.")
        if self.gateway.call_timeout_seconds <= 0:
            raise ValueError("MISSION_DISPATCH_GATEWAY_CALL_TIMEOUT_SECONDS must be > 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("MISSION_DISPATCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Unknown MISSION_DISPATCH_LOG_LEVEL: {self.log_level!r}")


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"{name} must be an http(s) URL: {value!r}")
