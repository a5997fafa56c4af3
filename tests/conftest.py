"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provider_mock import FakeProvider  # noqa: E402

from provisioner.executor import ExecutorSettings  # noqa: E402
from provisioner.state import MemoryStateBackend, StateStore  # noqa: E402


@pytest.fixture
def backend() -> MemoryStateBackend:
    return MemoryStateBackend()


@pytest.fixture
def store(backend: MemoryStateBackend) -> StateStore:
    return StateStore(backend)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def settings() -> ExecutorSettings:
    """Serial execution with near-zero backoff so retries stay fast."""
    return ExecutorSettings(
        max_concurrency=1,
        max_attempts=3,
        retry_backoff_base_seconds=0.001,
        retry_backoff_max_seconds=0.01,
        operation_timeout_seconds=5,
        apply_timeout_seconds=30,
    )
