"""Stream service: caller -> router -> retry/fallback -> transformer."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from .audit import AuditRecorder
from .backends import call_json, open_stream
from .errors import (
    ConfigurationError,
    EmptyResponseError,
    GoneError,
    ProviderError,
    TribunalError,
    classify_status,
)
from .models import AuditRecord, ErrorInfo, RetryPolicy, StreamEvent, StreamRequest
from .providers import PROVIDERS_BY_ID
from .retry import AttemptReport, with_retry_and_fallback
from .router import Dispatch, ProviderRouter, fallback_model, resolve
from .streaming import StreamTransformer

logger = logging.getLogger(__name__)

PING_TIMEOUT = 15.0
TEST_MESSAGE = "Reply with the single word OK."


def error_info(error: TribunalError) -> ErrorInfo:
    return ErrorInfo(kind=error.kind, status=error.http_status, message=error.message)


def provider_label(model_id: str) -> str:
    try:
        return resolve(model_id).label
    except TribunalError:
        return ""


@dataclass
class PrimedStream:
    """An open upstream stream that has already produced its first text."""
    dispatch: Dispatch
    transformer: StreamTransformer
    chunks: Any
    first: List[str] = field(default_factory=list)
    exhausted: bool = False


class StreamService:
    """
    Streams one logical request as canonical StreamEvents.

    Attempts are retried only until the first text delta arrives. Once text
    has been relayed, a failure ends the stream with a partial ``done`` so the
    caller keeps what it already received.
    """

    def __init__(
        self,
        router: ProviderRouter,
        audit: AuditRecorder,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.router = router
        self.audit = audit
        self.client = client
        self.sleep = sleep

    async def _prime(self, request: StreamRequest, model_id: str, user_id: str) -> PrimedStream:
        if model_id != request.model_id:
            request = request.model_copy(update={"model_id": model_id})
        dispatch = await self.router.dispatch(request, user_id)
        transformer = StreamTransformer(dispatch.driver)
        chunks = open_stream(
            dispatch, request.timeout_sec, request.idle_timeout_sec, self.client
        )
        deltas: List[str] = []
        try:
            async for chunk in chunks:
                deltas = transformer.feed(chunk)
                if deltas or transformer.done:
                    break
            if deltas and not transformer.done:
                return PrimedStream(dispatch, transformer, chunks, deltas)
            deltas += transformer.flush()
        except BaseException:
            await chunks.aclose()
            raise
        await chunks.aclose()
        if not deltas:
            raise EmptyResponseError("Empty response from model", dispatch.provider_label)
        return PrimedStream(dispatch, transformer, chunks, deltas, exhausted=True)

    def _record(self, user_id: str, request_type: str, report: AttemptReport) -> None:
        status = "success"
        if isinstance(report.error, GoneError):
            status = "gone"
        elif report.error is not None:
            status = "error"
        self.audit.record(
            AuditRecord(
                user_id=user_id,
                model_id=report.model_id,
                request_type=request_type,
                status=status,
                latency_ms=report.latency_ms,
                error_message=report.error.message if report.error else None,
                fallback_provider=provider_label(report.model_id) if report.is_fallback else None,
                attempt=report.attempt,
            )
        )

    async def stream(
        self, request: StreamRequest, user_id: str, request_type: str = "stream"
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a request, retrying and falling back as its policy allows.

        Yields:
            Zero or more delta events followed by exactly one done or error event
        """

        async def attempt(model_id: str, number: int) -> PrimedStream:
            logger.info(f"Attempt {number} for {model_id} (user {user_id})")
            return await self._prime(request, model_id, user_id)

        outcome = await with_retry_and_fallback(
            attempt,
            request.retry_policy,
            target=request.model_id,
            fallback_target=fallback_model(request.model_id),
            fallback_enabled=request.fallback_enabled,
            fallback_requested=request.fallback_explicitly_enabled,
            target_provider=provider_label(request.model_id),
            on_attempt=lambda report: self._record(user_id, request_type, report),
            sleep=self.sleep,
        )
        if not outcome.ok:
            yield StreamEvent.failure(
                error_info(outcome.error), fallback_info=outcome.fallback_info
            )
            return

        primed = outcome.value
        label = primed.dispatch.provider_label
        info = outcome.fallback_info
        for text in primed.first:
            yield StreamEvent.delta(text, label, info)
        if primed.exhausted:
            yield StreamEvent.done(label, info)
            return

        transformer = primed.transformer
        try:
            async for chunk in primed.chunks:
                for text in transformer.feed(chunk):
                    yield StreamEvent.delta(text, label, info)
                if transformer.done:
                    break
            for text in transformer.flush():
                yield StreamEvent.delta(text, label, info)
        except TribunalError as e:
            logger.warning(f"Stream from {label} cut short after first byte: {e.message}")
            yield StreamEvent.done(label, info, partial=True, error=error_info(e))
            return
        finally:
            await primed.chunks.aclose()
        yield StreamEvent.done(label, info)

    async def collect(self, request: StreamRequest, user_id: str, request_type: str = "stream"):
        """Run a stream to completion and return (text, delta_count, terminal event)."""
        parts: List[str] = []
        terminal = None
        async for event in self.stream(request, user_id, request_type):
            if event.terminal:
                terminal = event
            else:
                parts.append(event.text)
        return "".join(parts), len(parts), terminal

    async def ping(self, provider_id: str, user_id: str) -> Dict[str, Any]:
        """
        Check that a provider answers its model listing with the user's key.

        Returns:
            Dictionary with provider, status (ok | gone | error), http_status,
            latency_ms and error
        """
        descriptor = PROVIDERS_BY_ID.get(provider_id)
        if descriptor is None:
            raise ConfigurationError(f"Unknown provider: {provider_id}")
        api_key = await self.router.api_key_for(descriptor, user_id)
        endpoint = descriptor.endpoints[-1]
        started = time.monotonic()
        error: Optional[TribunalError] = None
        http_status = None
        try:
            http_status, content = await call_json(
                "GET",
                f"{endpoint.base_url}/models",
                {**endpoint.driver.auth_headers(api_key), **descriptor.extra_headers},
                PING_TIMEOUT,
                client=self.client,
                provider=descriptor.label,
            )
            if http_status >= 400:
                error = classify_status(http_status, str(content)[:500], descriptor.label)
        except ProviderError as e:
            error = e
        latency_ms = int((time.monotonic() - started) * 1000)
        self._record(user_id, "ping", AttemptReport(descriptor.id, 1, latency_ms, error))

        status = "ok"
        if isinstance(error, GoneError):
            status = "gone"
        elif error is not None:
            status = "error"
        return {
            "provider": descriptor.id,
            "status": status,
            "http_status": http_status,
            "latency_ms": latency_ms,
            "error": error.message if error else None,
        }

    async def test_model(self, model_id: str, user_id: str) -> Dict[str, Any]:
        """Send a tiny prompt to one model, no retries and no fallback."""
        request = StreamRequest(
            message=TEST_MESSAGE,
            model_id=model_id,
            max_tokens=32,
            retry_policy=RetryPolicy(max_retries=0),
            fallback_enabled=False,
        )
        started = time.monotonic()
        text, _, terminal = await self.collect(request, user_id, request_type="test")
        latency_ms = int((time.monotonic() - started) * 1000)
        error = terminal.error if terminal is not None else None
        status = "ok"
        if error is not None and error.kind == GoneError.kind:
            status = "gone"
        elif error is not None and not text:
            status = "error"
        return {
            "model_id": model_id,
            "status": status,
            "latency_ms": latency_ms,
            "response": text,
            "error": error.message if error else None,
        }
