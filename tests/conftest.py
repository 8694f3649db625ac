"""
Global pytest configuration and fixtures for paycore tests.
"""

import os

import pytest

# Keep developer .env files and databases out of the test run
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "console")


@pytest.fixture
def reset_global_settings():
    """Drop the cached settings before and after a test that changes env vars."""
    from paycore.settings import reset_settings

    reset_settings()
    yield
    reset_settings()
