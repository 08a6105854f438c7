"""Test configuration."""
import os
from datetime import UTC, datetime
from pathlib import Path

import pytest
from dotenv import load_dotenv

# Set test environment before any imports
os.environ["ENV"] = "test"

# Load test environment variables
test_env_path = Path(__file__).parent.parent.parent.parent / ".env.test"
load_dotenv(test_env_path)


@pytest.fixture
def now() -> datetime:
    """A fixed, timezone-aware review time."""
    return datetime(2025, 3, 10, 9, 0, tzinfo=UTC)

