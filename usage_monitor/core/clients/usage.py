from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Protocol

import aiohttp
from aiohttp_retry import ExponentialRetry
from pydantic import ValidationError

from usage_monitor.core.clients.http import get_http_client
from usage_monitor.core.config.settings import get_settings
from usage_monitor.core.usage.models import UsagePayload

logger = logging.getLogger(__name__)

_AUTH_STATUSES = frozenset({401, 403})
_RETRY_STATUSES = {500, 502, 503, 504}


class UsageFetchErrorKind(str, Enum):
    AUTH_FAILED = "auth_failed"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    DECODE_ERROR = "decode_error"


class UsageFetchError(Exception):
    def __init__(self, kind: UsageFetchErrorKind, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code


class _RequestClient(Protocol):
    def request(self, method: str, url: str, **kwargs: Any) -> Any: ...


async def fetch_usage(
    *,
    org_id: str,
    session_key: str,
    base_url: str | None = None,
    timeout_seconds: float | None = None,
    total_timeout_seconds: float | None = None,
    max_retries: int | None = None,
    client: _RequestClient | None = None,
) -> UsagePayload:
    settings = get_settings()
    usage_base = (base_url or settings.usage_api_base_url).rstrip("/")
    url = f"{usage_base}/organizations/{org_id}/usage"
    connect_timeout = timeout_seconds if timeout_seconds is not None else settings.usage_fetch_timeout_seconds
    total_timeout = (
        total_timeout_seconds if total_timeout_seconds is not None else settings.usage_fetch_total_timeout_seconds
    )
    retries = max_retries if max_retries is not None else settings.usage_fetch_max_retries
    timeout = aiohttp.ClientTimeout(total=total_timeout, sock_connect=connect_timeout, sock_read=connect_timeout)
    retry_options = ExponentialRetry(attempts=retries + 1, start_timeout=0.5, statuses=_RETRY_STATUSES)
    retry_client = client or get_http_client().retry_client

    try:
        async with retry_client.request(
            "GET",
            url,
            headers=_usage_headers(session_key),
            timeout=timeout,
            retry_options=retry_options,
        ) as resp:
            if resp.status in _AUTH_STATUSES:
                raise UsageFetchError(
                    UsageFetchErrorKind.AUTH_FAILED,
                    f"Authentication failed (HTTP {resp.status}). Session key may be expired.",
                    status_code=resp.status,
                )
            if resp.status != 200:
                raise UsageFetchError(
                    UsageFetchErrorKind.HTTP_ERROR,
                    f"HTTP Error {resp.status}",
                    status_code=resp.status,
                )
            try:
                data = await resp.json(content_type=None)
            except ValueError as exc:
                raise UsageFetchError(
                    UsageFetchErrorKind.DECODE_ERROR,
                    f"Failed to decode response: {exc}",
                    status_code=resp.status,
                ) from exc
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        message = str(exc) or exc.__class__.__name__
        raise UsageFetchError(UsageFetchErrorKind.NETWORK_ERROR, f"Network error: {message}") from exc

    try:
        return UsagePayload.model_validate(data)
    except ValidationError as exc:
        logger.debug("Usage payload rejected org_id=%s errors=%s", org_id, exc.errors())
        raise UsageFetchError(
            UsageFetchErrorKind.DECODE_ERROR,
            f"Failed to decode response: {exc.error_count()} invalid field(s)",
            status_code=200,
        ) from exc


async def fetch_account_usage(account_id: str, credential: str) -> UsagePayload:
    return await fetch_usage(org_id=account_id, session_key=credential)


def _usage_headers(session_key: str) -> dict[str, str]:
    return {
        "Accept": "*/*",
        "Content-Type": "application/json",
        "Cookie": f"sessionKey={session_key}",
    }
