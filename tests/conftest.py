from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

_RELAY_ENV = (
    "PROXY_SERVER",
    "PROXY_USERNAME",
    "PROXY_PASSWORD",
    "PROXY_WS_ENDPOINT",
    "BROWSER_MODE",
    "CONTENT_NORMALIZER",
)


@pytest.fixture(autouse=True)
def isolate_relay_env(monkeypatch):
    """
    Keep a developer's .env or shell proxy settings out of unit tests.
    """
    for key in _RELAY_ENV:
        if key in os.environ:
            monkeypatch.delenv(key)
