"""Upstream transport for Tribunal."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx

from .errors import (
    ProviderTimeoutError,
    StallError,
    TransientProviderError,
    classify_status,
)
from .router import Dispatch

logger = logging.getLogger(__name__)


def error_message(content: bytes) -> str:
    """Pull a readable message out of an upstream error body."""
    text = content.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text[:500]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if payload.get("message"):
            return str(payload["message"])
    return text[:500]


async def open_stream(
    dispatch: Dispatch,
    timeout: float,
    idle_timeout: float,
    client: Optional[httpx.AsyncClient] = None,
) -> AsyncIterator[bytes]:
    """
    Open a streaming call to the provider and yield raw response bytes.

    Args:
        dispatch: Prepared upstream call
        timeout: Wall-clock limit for the whole attempt, in seconds
        idle_timeout: Longest allowed gap between two chunks, in seconds
        client: Shared client; a private one is created and closed otherwise

    Raises:
        ProviderError: Non-2xx status (classified), connection failure,
            deadline exceeded or stall
    """
    label = dispatch.provider_label
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient()

    try:
        request = client.build_request(
            "POST",
            dispatch.url,
            json=dispatch.body,
            headers=dispatch.headers,
            timeout=httpx.Timeout(timeout),
        )
        logger.info(f"Calling {label} at {dispatch.url}")
        try:
            response = await asyncio.wait_for(
                client.send(request, stream=True), timeout=timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise ProviderTimeoutError(f"No response within {timeout:.0f}s", label)
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Connection failed: {e}", label)

        try:
            if not response.is_success:
                content = await response.aread()
                raise classify_status(response.status_code, error_message(content), label)

            chunks = response.aiter_bytes().__aiter__()
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ProviderTimeoutError(f"Stream exceeded {timeout:.0f}s", label)
                try:
                    chunk = await asyncio.wait_for(
                        chunks.__anext__(), timeout=min(idle_timeout, remaining)
                    )
                except StopAsyncIteration:
                    break
                except (asyncio.TimeoutError, httpx.TimeoutException):
                    if idle_timeout < remaining:
                        raise StallError(
                            f"No data for {idle_timeout:.0f}s, stream stalled", label
                        )
                    raise ProviderTimeoutError(f"Stream exceeded {timeout:.0f}s", label)
                except httpx.HTTPError as e:
                    raise TransientProviderError(f"Stream interrupted: {e}", label)
                if chunk:
                    yield chunk
        finally:
            await response.aclose()
    finally:
        if owns_client:
            await client.aclose()


async def call_json(
    method: str,
    url: str,
    headers: Dict[str, str],
    timeout: float,
    body: Optional[Dict[str, Any]] = None,
    client: Optional[httpx.AsyncClient] = None,
    provider: str = "",
) -> Tuple[int, Any]:
    """
    Helper function for a plain (non-streaming) request.

    Returns:
        Tuple of status code and decoded JSON body (raw text when not JSON)

    Raises:
        ProviderError: On connection failure or timeout; HTTP errors are
            returned, not raised, so callers can record the status.
    """
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient()
    try:
        response = await client.request(
            method, url, headers=headers, json=body, timeout=timeout
        )
    except httpx.TimeoutException:
        raise ProviderTimeoutError(f"No response within {timeout:.0f}s", provider)
    except httpx.HTTPError as e:
        raise TransientProviderError(f"Connection failed: {e}", provider)
    finally:
        if owns_client:
            await client.aclose()

    try:
        content: Any = response.json()
    except ValueError:
        content = response.text
    return response.status_code, content
