"""
Tests for the retry/fallback combinator.
"""
import asyncio

import pytest
from grappa import should

from tribunal.errors import (
    GoneError,
    MissingCredentialError,
    PaymentRequiredError,
    RateLimitError,
    TransientProviderError,
)
from tribunal.models import RetryPolicy
from tribunal.retry import with_retry_and_fallback
from .conftest import RecordingSleep


class ScriptedAttempt:
    """Raises the scripted errors per model id, then returns a value."""

    def __init__(self, script):
        self.script = {k: list(v) for k, v in script.items()}
        self.calls = []

    async def __call__(self, model_id, number):
        self.calls.append((model_id, number))
        steps = self.script.get(model_id, [])
        step = steps.pop(0) if steps else f"ok:{model_id}"
        if isinstance(step, Exception):
            raise step
        return step


def test_backoff_delays_double():
    policy = RetryPolicy(max_retries=3, backoff_base_ms=2000)
    [policy.delay_for(k) for k in (1, 2, 3)] | should.equal([2.0, 4.0, 8.0])


@pytest.mark.asyncio
async def test_retries_transient_errors_with_backoff():
    sleep = RecordingSleep()
    attempt = ScriptedAttempt({"m": [TransientProviderError("boom"), RateLimitError("slow"), "done"]})
    reports = []

    outcome = await with_retry_and_fallback(
        attempt,
        RetryPolicy(max_retries=2, backoff_base_ms=500),
        target="m",
        on_attempt=reports.append,
        sleep=sleep,
    )

    outcome.ok | should.be.true
    outcome.value | should.equal("done")
    outcome.attempts | should.equal(3)
    sleep.delays | should.equal([0.5, 1.0])
    [r.ok for r in reports] | should.equal([False, False, True])


@pytest.mark.asyncio
async def test_attempt_count_is_one_plus_retries():
    sleep = RecordingSleep()
    attempt = ScriptedAttempt({"m": [TransientProviderError("x")] * 5})
    outcome = await with_retry_and_fallback(
        attempt, RetryPolicy(max_retries=1, backoff_base_ms=10), target="m", sleep=sleep
    )
    outcome.ok | should.be.false
    attempt.calls | should.equal([("m", 1), ("m", 2)])
    outcome.error.kind | should.equal("transient")


@pytest.mark.asyncio
async def test_non_retryable_error_stops_immediately():
    sleep = RecordingSleep()
    attempt = ScriptedAttempt({"m": [PaymentRequiredError("pay up", "ProxyAPI", 402)]})
    outcome = await with_retry_and_fallback(
        attempt, RetryPolicy(max_retries=3), target="m", sleep=sleep
    )
    attempt.calls | should.have.length(1)
    sleep.delays | should.equal([])
    outcome.error.http_status | should.equal(402)


@pytest.mark.asyncio
async def test_payment_error_still_falls_back():
    attempt = ScriptedAttempt({"m": [PaymentRequiredError("pay up")]})
    outcome = await with_retry_and_fallback(
        attempt,
        RetryPolicy(max_retries=3),
        target="m",
        fallback_target="f",
        target_provider="ProxyAPI",
        sleep=RecordingSleep(),
    )
    outcome.value | should.equal("ok:f")
    outcome.fallback_info.from_provider | should.equal("ProxyAPI")
    outcome.fallback_info.reason | should.equal("payment_required")


@pytest.mark.asyncio
async def test_fallback_runs_once_after_retries_exhausted():
    reports = []
    attempt = ScriptedAttempt({"m": [TransientProviderError("a"), TransientProviderError("b")]})
    outcome = await with_retry_and_fallback(
        attempt,
        RetryPolicy(max_retries=1, backoff_base_ms=0),
        target="m",
        fallback_target="f",
        target_provider="ProxyAPI",
        on_attempt=reports.append,
        sleep=RecordingSleep(),
    )
    outcome.ok | should.be.true
    outcome.model_id | should.equal("f")
    outcome.fallback_info.from_model | should.equal("m")
    attempt.calls | should.equal([("m", 1), ("m", 2), ("f", 3)])
    [r.is_fallback for r in reports] | should.equal([False, False, True])


@pytest.mark.asyncio
async def test_failed_fallback_is_not_retried():
    attempt = ScriptedAttempt({"m": [TransientProviderError("a")], "f": [TransientProviderError("f1"), "late"]})
    outcome = await with_retry_and_fallback(
        attempt,
        RetryPolicy(max_retries=0),
        target="m",
        fallback_target="f",
        sleep=RecordingSleep(),
    )
    outcome.ok | should.be.false
    (outcome.fallback_info is not None) | should.be.true
    attempt.calls | should.equal([("m", 1), ("f", 2)])


@pytest.mark.asyncio
async def test_gone_is_never_substituted():
    attempt = ScriptedAttempt({"m": [GoneError("removed", "ProxyAPI", 410)]})
    outcome = await with_retry_and_fallback(
        attempt, RetryPolicy(max_retries=2), target="m", fallback_target="f", sleep=RecordingSleep()
    )
    outcome.error.http_status | should.equal(410)
    outcome.fallback_info | should.be.none
    attempt.calls | should.equal([("m", 1)])


@pytest.mark.asyncio
async def test_fallback_disabled():
    attempt = ScriptedAttempt({"m": [MissingCredentialError("ProxyAPI")]})
    outcome = await with_retry_and_fallback(
        attempt,
        RetryPolicy(max_retries=2),
        target="m",
        fallback_target="f",
        fallback_enabled=False,
        sleep=RecordingSleep(),
    )
    outcome.error.kind | should.equal("missing_credential")
    attempt.calls | should.equal([("m", 1)])


@pytest.mark.asyncio
async def test_cancellation_propagates():
    async def attempt(model_id, number):
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await with_retry_and_fallback(attempt, RetryPolicy(), target="m", sleep=RecordingSleep())


@pytest.mark.asyncio
async def test_missing_credential_needs_explicit_fallback():
    attempt = ScriptedAttempt({"m": [MissingCredentialError("ProxyAPI")]})
    outcome = await with_retry_and_fallback(
        attempt, RetryPolicy(max_retries=2), target="m", fallback_target="f", sleep=RecordingSleep()
    )
    outcome.error.kind | should.equal("missing_credential")
    outcome.fallback_info | should.be.none
    attempt.calls | should.equal([("m", 1)])

    attempt = ScriptedAttempt({"m": [MissingCredentialError("ProxyAPI")]})
    outcome = await with_retry_and_fallback(
        attempt,
        RetryPolicy(max_retries=2),
        target="m",
        fallback_target="f",
        fallback_requested=True,
        sleep=RecordingSleep(),
    )
    outcome.ok | should.be.true
    outcome.fallback_info.reason | should.equal("missing_credential")
    attempt.calls | should.equal([("m", 1), ("f", 2)])
