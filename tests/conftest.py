"""Pytest configuration and fixtures for fetch-harness tests."""

import pytest
from pathlib import Path
import tempfile
import shutil

from fetch_harness.logging import EventLogger


@pytest.fixture
def temp_project_dir():
    """Create a temporary directory for testing project operations."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def sample_fetch_yaml():
    """Return a sample .fetch.yaml configuration."""
    return """
pool:
  max_concurrent: 3
  default_timeout_ms: 60000

tasks:
  timeout_ms: 120000
  max_retries: 2

agents:
  default: gemini
  enabled:
    - claude
    - gemini

logging:
  level: important
"""


@pytest.fixture
def logs_dir(temp_project_dir):
    """Log directory inside the temporary project."""
    return temp_project_dir / ".fetch" / "logs"


@pytest.fixture
def event_logger(logs_dir):
    """EventLogger writing into the temporary project."""
    return EventLogger(logs_dir)
