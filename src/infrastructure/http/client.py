from __future__ import annotations

import ssl

import aiohttp
import certifi

from shared.constants import HTTP_CONNECTION_LIMIT, USER_AGENT


def make_ssl_context() -> ssl.SSLContext:
    """SSL context backed by the certifi CA bundle."""
    return ssl.create_default_context(cafile=certifi.where())


def make_http_session(
    *,
    connection_limit: int = HTTP_CONNECTION_LIMIT,
    user_agent: str = USER_AGENT,
) -> aiohttp.ClientSession:
    """Plain (uncached) session for tile downloads.

    Responses must reach the fetcher untouched: range requests and
    partial content cannot go through an HTTP response cache.
    """
    connector = aiohttp.TCPConnector(ssl=make_ssl_context(), limit=connection_limit)
    return aiohttp.ClientSession(
        connector=connector,
        headers={'User-Agent': user_agent},
    )
