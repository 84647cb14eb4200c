"""
Tests for the multi-step test runner and its adaptive token budget.
"""
from functools import partial

import pytest
from grappa import should

from tribunal import runner
from tribunal.models import StreamRequest
from tribunal.runner import TestRunner
from .conftest import chunked, error, openai_sse, sse


@pytest.fixture
def short_idle(monkeypatch):
    monkeypatch.setattr(runner, "StreamRequest", partial(StreamRequest, idle_timeout_sec=0.05))


def stalled(text):
    body = openai_sse([text], done=False)
    return sse(lambda: chunked(body, stall_after=1, stall=5.0))


def test_clamp_tokens():
    test_runner = TestRunner(service=None)
    test_runner.clamp_tokens(100) | should.equal(512)
    test_runner.clamp_tokens(4000) | should.equal(4000)
    test_runner.clamp_tokens(100000) | should.equal(16384)


@pytest.mark.asyncio
async def test_completed_step(make_service, upstream):
    upstream.add("api.deepseek.com", sse(openai_sse(["4"])))
    test_runner = TestRunner(make_service())

    step = await test_runner.run_step(0, "2+2?", "deepseek-chat", "u1", max_tokens=1024)

    step.status | should.equal("completed")
    step.output | should.equal("4")
    step.soft_success | should.be.false
    step.attempts | should.equal(1)
    upstream.bodies("deepseek")[0]["max_tokens"] | should.equal(1024)


@pytest.mark.asyncio
async def test_long_partial_output_is_soft_success(make_service, upstream, short_idle):
    upstream.add("api.deepseek.com", stalled("x" * 450))
    test_runner = TestRunner(make_service())

    step = await test_runner.run_step(0, "essay", "deepseek-chat", "u1", max_tokens=2048)

    step.status | should.equal("completed")
    step.soft_success | should.be.true
    len(step.output) | should.equal(450)
    step.attempts | should.equal(1)
    (step.error is not None) | should.be.true


@pytest.mark.asyncio
async def test_output_at_threshold_is_not_soft_success(make_service, upstream, short_idle):
    upstream.add("api.deepseek.com", stalled("x" * 400))
    test_runner = TestRunner(make_service())

    step = await test_runner.run_step(0, "essay", "deepseek-chat", "u1", max_tokens=2048)

    step.status | should.equal("failed")
    step.soft_success | should.be.false
    step.attempts | should.equal(3)
    [b["max_tokens"] for b in upstream.bodies("deepseek")] | should.equal([2048, 1024, 512])


@pytest.mark.asyncio
async def test_short_stall_shrinks_budget_and_retries(make_service, upstream, short_idle):
    upstream.add("api.deepseek.com", stalled("too short"), stalled("still short"), sse(openai_sse(["done"])))
    test_runner = TestRunner(make_service())

    step = await test_runner.run_step(0, "essay", "deepseek-chat", "u1", max_tokens=2048)

    step.status | should.equal("completed")
    step.output | should.equal("done")
    step.attempts | should.equal(3)
    step.max_tokens_used | should.equal(512)
    [b["max_tokens"] for b in upstream.bodies("deepseek")] | should.equal([2048, 1024, 512])


@pytest.mark.asyncio
async def test_budget_never_drops_below_floor(make_service, upstream, short_idle):
    upstream.add("api.deepseek.com", stalled("tiny"))
    test_runner = TestRunner(make_service())

    step = await test_runner.run_step(0, "essay", "deepseek-chat", "u1", max_tokens=600)

    step.status | should.equal("failed")
    step.attempts | should.equal(3)
    [b["max_tokens"] for b in upstream.bodies("deepseek")] | should.equal([600, 512, 512])


@pytest.mark.asyncio
async def test_hard_error_is_not_retried(make_service, upstream):
    upstream.add("api.deepseek.com", error(400, "bad prompt"))
    test_runner = TestRunner(make_service())

    step = await test_runner.run_step(0, "x", "deepseek-chat", "u1")

    step.status | should.equal("failed")
    step.error | should.contain("bad prompt")
    upstream.hits("api.deepseek.com") | should.equal(1)


@pytest.mark.asyncio
async def test_run_steps_continues_after_failure(make_service, upstream, audit_sink):
    upstream.add("api.deepseek.com", error(400, "nope"), sse(openai_sse(["second"])))
    test_runner = TestRunner(make_service())

    steps = await test_runner.run_steps("deepseek-chat", ["first", "second"], "u1")

    [s.status for s in steps] | should.equal(["failed", "completed"])
    [s.index for s in steps] | should.equal([0, 1])

    await test_runner.service.audit.drain()
    {r.request_type for r in audit_sink.records} | should.equal({"test"})
