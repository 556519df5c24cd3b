from __future__ import annotations

from dataclasses import dataclass

import aiohttp
from aiohttp_retry import RetryClient

from usage_monitor.core.config.settings import get_settings


@dataclass(slots=True)
class HttpClient:
    session: aiohttp.ClientSession
    retry_client: RetryClient


_http_client: HttpClient | None = None


async def init_http_client() -> HttpClient:
    global _http_client
    if _http_client is not None:
        return _http_client

    # trust_env=True picks up HTTP_PROXY / HTTPS_PROXY / NO_PROXY from the environment.
    settings = get_settings()
    connector = aiohttp.TCPConnector(
        limit=settings.http_client_connector_limit,
        limit_per_host=settings.http_client_connector_limit_per_host,
        keepalive_timeout=settings.http_client_keepalive_timeout_seconds,
        ttl_dns_cache=settings.http_client_dns_cache_ttl_seconds,
    )
    # Per-request timeouts are set by the callers.
    session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None),
        connector=connector,
        trust_env=True,
    )
    retry_client = RetryClient(client_session=session, raise_for_status=False)
    _http_client = HttpClient(session=session, retry_client=retry_client)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is None:
        return
    await _http_client.retry_client.close()
    _http_client = None


def get_http_client() -> HttpClient:
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized")
    return _http_client
