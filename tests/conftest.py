"""Shared test configuration."""

import pytest

from customer_rfv.observability import configure_logging


@pytest.fixture(autouse=True)
def _quiet_logging():
    """Send structlog output to stderr so it stays out of doctest output."""
    configure_logging("WARNING")
