"""
Tests for the HTTP surface.
"""
import httpx
import pytest
from fastapi.testclient import TestClient
from grappa import should

from tribunal.api import app, configure
from tribunal.credentials import StaticCredentialStore
from tribunal.streaming import DONE_CHUNK, canonical_chunk
from .conftest import ALL_KEYS, error, openai_sse, sse

USER = {"X-User-Id": "u1"}


@pytest.fixture
def api(upstream, audit_sink, fake_sleep):
    """Build a TestClient over the app wired to the fake upstream."""

    def build(keys=None):
        configure(
            app,
            credentials=StaticCredentialStore(ALL_KEYS if keys is None else keys),
            client=upstream.client(),
            sink=audit_sink,
            sleep=fake_sleep,
        )
        return TestClient(app)

    return build


def test_health_check(api):
    with api() as client:
        response = client.get("/health")
    response.status_code | should.equal(200)
    response.headers["content-type"] | should.equal("application/json")
    response.json() | should.equal({"status": "healthy"})


def test_stream_requires_user(api):
    with api() as client:
        response = client.post("/stream", json={"message": "hi", "model_id": "deepseek-chat"})
    response.status_code | should.equal(401)
    response.json()["error"] | should.contain("X-User-Id")


def test_stream_rejects_invalid_body(api):
    with api() as client:
        bad_json = client.post("/stream", content=b"{nope", headers=USER)
        missing = client.post("/stream", json={"message": "hi"}, headers=USER)
    bad_json.status_code | should.equal(400)
    missing.status_code | should.equal(400)
    missing.json()["error"] | should.contain("model_id")


def test_stream_canonical_sse(api, upstream):
    upstream.add("api.deepseek.com", sse(openai_sse(["Hel", "lo"])))
    with api() as client:
        response = client.post(
            "/stream", json={"message": "hi", "model_id": "deepseek-chat"}, headers=USER
        )
    response.status_code | should.equal(200)
    response.headers["content-type"] | should.contain("text/event-stream")
    response.headers["x-provider"] | should.equal("DeepSeek")
    response.content | should.equal(canonical_chunk("Hel") + canonical_chunk("lo") + DONE_CHUNK)


def test_stream_announces_fallback(api, upstream):
    upstream.add("api.proxyapi.ru", error(503))
    upstream.add("ai.gateway.lovable.dev", sse(openai_sse(["rescued"])))
    with api() as client:
        response = client.post(
            "/stream", json={"message": "hi", "model_id": "proxyapi/gpt-5"}, headers=USER
        )
    response.status_code | should.equal(200)
    response.headers["x-provider"] | should.equal("Lovable AI")
    response.content | should.equal(
        b": fallback from=proxyapi/gpt-5 reason=transient\n\n"
        + canonical_chunk("rescued")
        + DONE_CHUNK
    )


def test_stream_missing_credential_is_json_400(api):
    with api(keys={}) as client:
        response = client.post(
            "/stream",
            json={"message": "hi", "model_id": "deepseek-chat", "fallback_enabled": False},
            headers=USER,
        )
    response.status_code | should.equal(400)
    response.json() | should.equal(
        {"error": "DeepSeek API key not configured. Please add it in your profile settings."}
    )


def test_stream_mirrors_rate_limit(api, upstream):
    upstream.add("api.mistral.ai", error(429))
    with api() as client:
        response = client.post(
            "/stream", json={"message": "hi", "model_id": "mistral-small-latest"}, headers=USER
        )
    response.status_code | should.equal(429)
    response.json()["error"] | should.contain("Rate limit")


CONTEST = {
    "models": {"deepseek-chat": "Ada", "mistral-small-latest": "Bob"},
    "rounds": [{"prompt": "Explain CAP"}],
}


def test_contest_lifecycle(api, upstream):
    upstream.add("api.deepseek.com", sse(openai_sse(["A answer"])))
    upstream.add("api.mistral.ai", sse(openai_sse(["B answer"])))
    with api() as client:
        created = client.post("/contests", json=CONTEST, headers=USER)
        created.status_code | should.equal(200)
        session_id = created.json()["id"]

        ran = client.post(f"/contests/{session_id}/rounds/0/run", headers=USER)
        ran.status_code | should.equal(200)
        sorted(r["response_text"] for r in ran.json()) | should.equal(["A answer", "B answer"])

        again = client.post(f"/contests/{session_id}/rounds/0/run", headers=USER)
        again.status_code | should.equal(400)

        state = client.get(f"/contests/{session_id}", headers=USER).json()
        state["session"]["status"] | should.equal("completed")
        state["rounds"] | should.have.length(1)
        state["results"] | should.have.length(2)

        added = client.post(f"/contests/{session_id}/rounds", json={"prompt": "More"}, headers=USER)
        added.json()["round_index"] | should.equal(1)
        ran_all = client.post(f"/contests/{session_id}/run", headers=USER)
        ran_all.json() | should.have.length(4)


def test_contest_access_control(api):
    with api() as client:
        session_id = client.post("/contests", json=CONTEST, headers=USER).json()["id"]
        other = client.get(f"/contests/{session_id}", headers={"X-User-Id": "mallory"})
        missing = client.get("/contests/does-not-exist", headers=USER)
        invalid = client.post("/contests", json={"models": {}, "rounds": []}, headers=USER)
    other.status_code | should.equal(401)
    missing.status_code | should.equal(404)
    invalid.status_code | should.equal(400)


def test_contest_cancel_is_idempotent(api):
    with api() as client:
        session_id = client.post("/contests", json=CONTEST, headers=USER).json()["id"]
        first = client.post(f"/contests/{session_id}/cancel", headers=USER)
        second = client.post(f"/contests/{session_id}/cancel", headers=USER)
    first.json() | should.equal({"cancelled": True})
    second.json() | should.equal({"cancelled": False})


def test_provider_ping_and_model_test(api, upstream):
    upstream.add("api.groq.com/openai/v1/models", lambda request: httpx.Response(200, json={}))
    upstream.add("api.deepseek.com", sse(openai_sse(["OK"])))
    with api() as client:
        ping = client.post("/providers/groq/ping", headers=USER)
        tested = client.post("/providers/test", json={"model_id": "deepseek-chat"}, headers=USER)
    ping.json()["status"] | should.equal("ok")
    tested.json()["response"] | should.equal("OK")


def test_run_test_steps(api, upstream):
    upstream.add("api.deepseek.com", sse(openai_sse(["step done"])))
    with api() as client:
        response = client.post(
            "/tests/run",
            json={"model_id": "deepseek-chat", "steps": ["one", "two"], "max_tokens": 100},
            headers=USER,
        )
    steps = response.json()
    [s["status"] for s in steps] | should.equal(["completed", "completed"])
    [s["max_tokens_used"] for s in steps] | should.equal([512, 512])
