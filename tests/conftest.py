"""Pytest configuration and fixtures.

Sets up environment variables before any test modules are imported
so settings resolve to test values during collection.
"""

import os

# Set environment variables BEFORE any imports that use settings
# This must happen at module level during pytest collection
os.environ.setdefault("REGISTER_BASE_URL", "https://register.example")
os.environ.setdefault("HOUSE_PRICES_BASE_URL", "https://prices.example")
os.environ.setdefault("HTTP_TIMEOUT_SECONDS", "30")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("NOTIFY_WEBHOOK_URL", None)

import pytest


@pytest.fixture
def mock_env(monkeypatch):
    """Set up environment variables for tests.

    This fixture can be used to override default test environment variables
    for specific test cases.
    """
    monkeypatch.setenv("REGISTER_BASE_URL", "https://register.example")
    monkeypatch.setenv("HOUSE_PRICES_BASE_URL", "https://prices.example")
    monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
