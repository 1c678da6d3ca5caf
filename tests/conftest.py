"""
Pytest configuration for the PNR Ops tests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


@pytest.fixture(autouse=True)
def _propagate_pnr_ops_logs() -> Iterator[None]:
    """Let caplog see pnr_ops records even after setup_logging() ran."""
    logger = logging.getLogger("pnr_ops")
    previous = logger.propagate
    logger.propagate = True
    yield
    logger.propagate = previous


@pytest.fixture
def status_lines() -> list[str]:
    """Collects status callback lines."""
    return []


@pytest.fixture
def collect(status_lines: list[str]):
    """Status callback appending to status_lines."""
    return status_lines.append
