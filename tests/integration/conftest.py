"""Fixtures for tests that drive the real compilers and tools."""

from __future__ import annotations

import pytest

from cincout.config import CinCoutConfig


@pytest.fixture
def cincout_config(cincout_config: CinCoutConfig) -> CinCoutConfig:
    """Leak checkers and debuggers burn a second of CPU just starting up."""
    return cincout_config.model_copy(update={"cpu_time_limit_seconds": 3, "wall_timeout_seconds": 5.0})
