"""
Top-level test configuration for DocklyTask identity.
"""

import base64
import json
import os
from collections.abc import Callable
from typing import Any

import pytest

# Ensure test-friendly defaults
os.environ.setdefault("DOCKLYTASK_JSON_LOGS", "false")
os.environ.setdefault("DOCKLYTASK_LOG_LEVEL", "DEBUG")
os.environ.setdefault("DOCKLYTASK_ENVIRONMENT", "test")


def _make_jwt(payload: dict[str, Any]) -> str:
    def segment(data: dict[str, Any]) -> str:
        raw = json.dumps(data).encode()
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()

    return f"{segment({'alg': 'none', 'typ': 'JWT'})}.{segment(payload)}.signature"


@pytest.fixture
def make_jwt() -> Callable[[dict[str, Any]], str]:
    """Build an unsigned compact JWT carrying a payload."""
    return _make_jwt
