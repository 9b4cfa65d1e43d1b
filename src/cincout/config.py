"""Pydantic settings for cincout configuration loaded from environment variables."""

from __future__ import annotations

import tempfile

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cincout.errors import ConfigurationError


class CinCoutConfig(BaseSettings):
    """Main service configuration loaded from CINCOUT_ prefixed environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CINCOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 9527
    log_level: str = "INFO"
    log_format: str | None = None  # "json" or "console"
    debug: bool = False
    allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Input ceilings
    max_code_chars: int = 50_000
    max_code_lines: int = 1_000

    # Execution envelope
    memory_limit_mb: int = 100
    stack_limit_mb: int = 8
    cpu_time_limit_seconds: int = 10
    wall_timeout_seconds: float = 12.0
    max_output_bytes: int = 1_048_576  # 1MB

    # Toolchain
    tool_timeout_seconds: float = 30.0
    format_style: str = "WebKit"
    c_standard: str = "c11"
    cpp_standard: str = "c++20"
    allowed_optimizations: list[str] = Field(
        default_factory=lambda: ["-O0", "-O1", "-O2", "-O3", "-Os", "-Og", "-Ofast"]
    )

    # Workspaces
    workspace_root: str = Field(default_factory=tempfile.gettempdir)
    workspace_prefix: str = "cincout-"

    # Sessions
    heartbeat_interval_seconds: float = 30.0
    pong_grace_seconds: float = 10.0
    idle_timeout_seconds: float = 180.0
    debug_session_timeout_seconds: float = 600.0

    # Host-wide hardening
    max_concurrent_jobs: int = 8

    @model_validator(mode="after")
    def _check_envelope(self) -> CinCoutConfig:
        if self.wall_timeout_seconds <= self.cpu_time_limit_seconds:
            raise ValueError(
                "wall_timeout_seconds must be strictly larger than cpu_time_limit_seconds "
                f"({self.wall_timeout_seconds} <= {self.cpu_time_limit_seconds})"
            )
        if self.pong_grace_seconds >= self.heartbeat_interval_seconds:
            raise ValueError("pong_grace_seconds must be shorter than heartbeat_interval_seconds")
        if self.max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        return self


def load_config() -> CinCoutConfig:
    """Load and return the cincout configuration.

    Returns:
        Populated CinCoutConfig instance.

    Raises:
        ConfigurationError: If the environment describes an invalid configuration.
    """
    try:
        return CinCoutConfig()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
