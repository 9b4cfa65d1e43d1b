"""Shared pytest fixtures for cincout test suite."""

from __future__ import annotations

from pathlib import Path

import pytest
from helpers import FakeChannel, FakeToolchain

from cincout.config import CinCoutConfig
from cincout.runtime.pipeline import JobPipeline


@pytest.fixture
def cincout_config(tmp_path: Path) -> CinCoutConfig:
    """Return a test CinCoutConfig with a private workspace root and short limits."""
    return CinCoutConfig(
        workspace_root=str(tmp_path / "workspaces"),
        cpu_time_limit_seconds=1,
        wall_timeout_seconds=2.0,
        tool_timeout_seconds=20.0,
        heartbeat_interval_seconds=0.2,
        pong_grace_seconds=0.1,
        idle_timeout_seconds=60.0,
        max_concurrent_jobs=2,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def pipeline(cincout_config: CinCoutConfig) -> JobPipeline:
    return JobPipeline(cincout_config)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def fake_toolchain(pipeline: JobPipeline, monkeypatch: pytest.MonkeyPatch) -> FakeToolchain:
    """Replace the pipeline's tool runner with shell-script stand-ins."""
    toolchain = FakeToolchain()
    monkeypatch.setattr(pipeline.toolchain, "run", toolchain.run)
    return toolchain
