"""
tests/conftest.py — Shared fixtures for the Attune test suite.

JSONL logs are redirected to a throwaway directory before any project module
creates the logger singleton.
"""

from __future__ import annotations

import os
import tempfile

os.environ.setdefault("ATTUNE_LOG_DIR", tempfile.mkdtemp(prefix="attune-test-logs-"))

import pytest  # noqa: E402

from helpers import FakeClock  # noqa: E402


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
