"""Fixtures shared by the tiles tests."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from tiles.keys import CacheKey
from tiles.store import KeyedStore


@pytest.fixture
def store(tmp_path):
    """KeyedStore rooted in a temporary directory."""
    return KeyedStore(tmp_path / 'cache')


@pytest.fixture
def key():
    return CacheKey.for_tile(12, 3263, 2112)


@pytest.fixture
def make_response():
    """Factory for aiohttp-like responses."""

    def _make(status: int = 200, body: bytes = b'', headers: dict | None = None):
        resp = MagicMock()
        resp.status = status
        resp.headers = dict(headers or {})
        resp.read = AsyncMock(return_value=body)
        resp.close = MagicMock()
        resp.release = MagicMock()
        return resp

    return _make
