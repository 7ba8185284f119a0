"""
Pytest configuration and shared fixtures.
"""

import os
import pytest


@pytest.fixture(autouse=True, scope="function")
def isolate_queue_environment(monkeypatch):
    """
    Hide JOBQUEUE_* variables before each test.

    Tests that read configuration from the environment see only the
    values they set themselves, never the developer's shell or .env.
    """
    for key in list(os.environ):
        if key.startswith("JOBQUEUE_"):
            monkeypatch.delenv(key)

    yield
