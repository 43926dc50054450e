from __future__ import annotations

import os
from dataclasses import dataclass, field

SUPPORTED_VERSIONS = ("v1", "v2")
# Names both logging and uvicorn accept.
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw


def _env_optional(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_log_level(default: str = "INFO") -> str:
    level = _env_str("LOG_LEVEL", default).strip().upper()
    return "WARNING" if level == "WARN" else level


def check_log_level(level: str) -> None:
    if level not in LOG_LEVELS:
        raise ValueError(f"Unsupported LOG_LEVEL={level}; use one of {', '.join(LOG_LEVELS)}.")


def split_bind_addr(bind_addr: str) -> tuple[str, int]:
    """Split "host:port" into its parts. An empty host binds all interfaces."""
    host, sep, port = bind_addr.rpartition(":")
    if not sep:
        raise ValueError(f"Invalid bind address {bind_addr!r}: expected host:port.")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"Invalid bind address {bind_addr!r}: port must be a number.") from None
    if not 0 < port_num < 65536:
        raise ValueError(f"Invalid bind address {bind_addr!r}: port out of range.")
    return host.strip("[]") or "0.0.0.0", port_num


@dataclass(frozen=True)
class BackendSettings:
    bind_addr: str = field(default_factory=lambda: _env_str("BIND_ADDR", "0.0.0.0:7000"))
    tracing_url: str | None = field(default_factory=lambda: _env_optional("TRACING_URL"))
    # v1 serves the canonical dataset, v2 the canary one.
    version: str = field(default_factory=lambda: _env_str("VERSION", "v1"))
    log_level: str = field(default_factory=_env_log_level)

    def validate(self) -> None:
        if self.version not in SUPPORTED_VERSIONS:
            raise ValueError(f"Unsupported VERSION={self.version}; only v1 and v2 are supported.")
        split_bind_addr(self.bind_addr)
        check_log_level(self.log_level)


@dataclass(frozen=True)
class FrontendSettings:
    bind_addr: str = field(default_factory=lambda: _env_str("BIND_ADDR", "0.0.0.0:6060"))
    backend_url: str = field(
        default_factory=lambda: _env_str("BACKEND_URL", "http://localhost:7000").rstrip("/")
    )
    tracing_url: str | None = field(default_factory=lambda: _env_optional("TRACING_URL"))
    # 0 disables the timeout.
    backend_timeout_s: float = field(default_factory=lambda: _env_float("BACKEND_TIMEOUT_S", 0.0))
    log_level: str = field(default_factory=_env_log_level)

    def validate(self) -> None:
        if not self.backend_url.startswith(("http://", "https://")):
            raise ValueError(f"BACKEND_URL must be an http(s) URL, got {self.backend_url!r}.")
        split_bind_addr(self.bind_addr)
        check_log_level(self.log_level)

    @property
    def backend_timeout(self) -> float | None:
        return self.backend_timeout_s if self.backend_timeout_s > 0 else None
