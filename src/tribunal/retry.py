"""Bounded retry with exponential backoff and a single cross-provider fallback."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .errors import TribunalError
from .models import FallbackInfo, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AttemptReport:
    """What happened on one attempt; handed to ``on_attempt``."""
    model_id: str
    attempt: int
    latency_ms: int
    error: Optional[TribunalError] = None
    is_fallback: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AttemptOutcome(Generic[T]):
    model_id: str
    attempts: int
    value: Optional[T] = None
    error: Optional[TribunalError] = None
    fallback_info: Optional[FallbackInfo] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def with_retry_and_fallback(
    attempt: Callable[[str, int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    target: str,
    fallback_target: Optional[str] = None,
    fallback_enabled: bool = True,
    fallback_requested: bool = False,
    target_provider: str = "",
    on_attempt: Optional[Callable[[AttemptReport], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AttemptOutcome[T]:
    """
    Run ``attempt`` against ``target`` until it succeeds or the policy is spent.

    The first call is followed by at most ``policy.max_retries`` retries; the
    wait before retry k is ``backoff_base_ms * 2**(k-1)``. A non-retryable
    error ends the retries at once. If every attempt failed, fallback is
    enabled and the final error allows it, ``attempt`` runs exactly once more
    against ``fallback_target``.

    Args:
        attempt: Coroutine factory called with (model_id, attempt_number)
        policy: Retry count and backoff base
        target: Logical model id to try first
        fallback_target: Logical model id to substitute, if any
        fallback_enabled: Whether the fallback may be used at all
        fallback_requested: Whether the caller enabled fallback explicitly;
            errors marked ``explicit_fallback_only`` need it
        target_provider: Label of the target's provider, for FallbackInfo
        on_attempt: Called once per attempt, success or failure
        sleep: Awaitable used for the backoff delay

    Returns:
        AttemptOutcome holding either the value or the last error
    """
    total = 1 + policy.max_retries
    last_error: Optional[TribunalError] = None
    made = 0

    def report(model_id, number, started, error=None, is_fallback=False):
        if on_attempt is None:
            return
        latency_ms = int((time.monotonic() - started) * 1000)
        on_attempt(AttemptReport(model_id, number, latency_ms, error, is_fallback))

    for number in range(1, total + 1):
        if number > 1:
            delay = policy.delay_for(number - 1)
            logger.info(f"Retrying {target} in {delay:.1f}s (attempt {number}/{total})")
            await sleep(delay)
        made = number
        started = time.monotonic()
        try:
            value = await attempt(target, number)
        except TribunalError as e:
            last_error = e
            report(target, number, started, e)
            logger.warning(f"Attempt {number}/{total} for {target} failed: {e.message}")
            if not e.retryable:
                break
            continue
        report(target, number, started)
        return AttemptOutcome(model_id=target, attempts=number, value=value)

    if (
        fallback_enabled
        and fallback_target
        and fallback_target != target
        and last_error is not None
        and last_error.fallback_eligible
        and (fallback_requested or not last_error.explicit_fallback_only)
    ):
        info = FallbackInfo(
            from_provider=target_provider, from_model=target, reason=last_error.kind
        )
        logger.info(f"Falling back from {target} to {fallback_target} ({last_error.kind})")
        number = made + 1
        started = time.monotonic()
        try:
            value = await attempt(fallback_target, number)
        except TribunalError as e:
            report(fallback_target, number, started, e, is_fallback=True)
            logger.error(f"Fallback {fallback_target} failed: {e.message}")
            return AttemptOutcome(
                model_id=fallback_target, attempts=number, error=e, fallback_info=info
            )
        report(fallback_target, number, started, is_fallback=True)
        return AttemptOutcome(
            model_id=fallback_target, attempts=number, value=value, fallback_info=info
        )

    return AttemptOutcome(model_id=target, attempts=made, error=last_error)
