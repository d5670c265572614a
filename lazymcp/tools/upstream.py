"""Helpers for tools that call third-party HTTP services."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from ..errors import ErrorKind, ExecutionError

logger = logging.getLogger(__name__)


def error_for_status(provider: str, response: httpx.Response) -> ExecutionError:
    """Map a non-2xx provider response onto the execution error taxonomy."""
    status = response.status_code
    body = response.text[:200]
    if status == 404:
        return ExecutionError(
            ErrorKind.INVALID_TARGET, f"{provider}: not found ({body})", retryable=False
        )
    if status == 429:
        return ExecutionError(
            ErrorKind.UPSTREAM_ERROR, f"{provider}: rate limit exceeded", retryable=True
        )
    if status in (401, 403):
        return ExecutionError(
            ErrorKind.UPSTREAM_ERROR,
            f"{provider}: request rejected (status {status})",
            retryable=False,
        )
    if status >= 500:
        return ExecutionError(
            ErrorKind.UNREACHABLE,
            f"{provider}: service unavailable (status {status})",
            retryable=True,
        )
    return ExecutionError(
        ErrorKind.UPSTREAM_ERROR,
        f"{provider}: unexpected status {status} ({body})",
        retryable=False,
    )


def error_for_exception(provider: str, exc: httpx.HTTPError) -> ExecutionError:
    if isinstance(exc, httpx.TimeoutException):
        return ExecutionError(
            ErrorKind.TIMEOUT, f"{provider}: request timed out", retryable=True
        )
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return ExecutionError(
            ErrorKind.INVALID_TARGET, f"{provider}: invalid url ({exc})", retryable=False
        )
    return ExecutionError(
        ErrorKind.UNREACHABLE, f"{provider}: request failed ({exc})", retryable=True
    )


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    provider: str,
    params: Mapping[str, Any] | None = None,
) -> Any:
    """GET ``url`` and decode its JSON body, raising ``ExecutionError`` on failure."""
    try:
        response = await client.get(url, params=params)
    except httpx.HTTPError as exc:
        raise error_for_exception(provider, exc) from exc
    if response.status_code >= 400:
        logger.warning(
            "upstream error provider=%s status=%s", provider, response.status_code
        )
        raise error_for_status(provider, response)
    try:
        return response.json()
    except ValueError as exc:
        raise ExecutionError(
            ErrorKind.UPSTREAM_ERROR,
            f"{provider}: response is not valid JSON",
            retryable=False,
        ) from exc
