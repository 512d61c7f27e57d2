"""Pytest collection helpers for backend test runs.

This file sits at the backend/ directory root so pytest picks it up early during
collection, before any test module builds the process-wide cache or router.
"""
import pytest

from role_overrides.core.config import settings


@pytest.fixture(scope="session", autouse=True)
def force_testing_mode():
    """Force TESTING=True early in the test session so the global cache stays in-process."""
    settings.TESTING = True
