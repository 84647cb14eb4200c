import asyncio
import json
from typing import Callable, Dict, List, Optional, Union

import httpx
import pytest

from tribunal.audit import AuditRecorder, MemoryAuditSink
from tribunal.credentials import StaticCredentialStore
from tribunal.router import ProviderRouter
from tribunal.service import StreamService

ALL_KEYS = {
    "proxyapi": "proxy-key",
    "openrouter": "or-key",
    "deepseek": "ds-key",
    "mistral": "mi-key",
    "groq": "gq-key",
    "gemini": "gm-key",
    "lovable": "lv-key",
}


def openai_sse(texts: List[str], done: bool = True) -> bytes:
    """OpenAI-shaped SSE body carrying the given deltas."""
    lines = [
        f"data: {json.dumps({'id': 'c1', 'choices': [{'index': 0, 'delta': {'content': t}}]})}\n\n"
        for t in texts
    ]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def gemini_sse(texts: List[str]) -> bytes:
    """Native Gemini SSE body; Google never sends a DONE marker."""
    return "".join(
        f"data: {json.dumps({'candidates': [{'content': {'role': 'model', 'parts': [{'text': t}]}}]})}\r\n\r\n"
        for t in texts
    ).encode()


def anthropic_sse(texts: List[str]) -> bytes:
    events = [("message_start", {"type": "message_start", "message": {"id": "m1"}})]
    events.append(
        ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}})
    )
    for t in texts:
        events.append(
            ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": t}})
        )
    events.append(("message_stop", {"type": "message_stop"}))
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events).encode()


def chunked(*parts: bytes, delay: float = 0.0, stall_after: Optional[int] = None, stall: float = 5.0):
    """
    Async byte stream yielding ``parts`` one by one. With ``stall_after`` set,
    the stream goes quiet for ``stall`` seconds after that many parts.
    """

    async def gen():
        for i, part in enumerate(parts):
            if stall_after is not None and i == stall_after:
                await asyncio.sleep(stall)
            if delay:
                await asyncio.sleep(delay)
            yield part
        if stall_after is not None and stall_after >= len(parts):
            await asyncio.sleep(stall)

    return gen()


Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeUpstream:
    """
    MockTransport handler routing on a URL substring. Each route holds a
    sequence of responders consumed in order; the last one repeats.
    """

    def __init__(self):
        self.routes: Dict[str, List[Callable[[httpx.Request], httpx.Response]]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, match: str, *responders: Callable[[httpx.Request], httpx.Response]):
        self.routes.setdefault(match, []).extend(responders)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for match, responders in self.routes.items():
            if match in str(request.url):
                responder = responders.pop(0) if len(responders) > 1 else responders[0]
                return responder(request)
        return httpx.Response(404, json={"error": {"message": "no route"}})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def bodies(self, match: str = "") -> List[dict]:
        return [json.loads(r.content) for r in self.requests if match in str(r.url)]

    def hits(self, match: str) -> int:
        return sum(1 for r in self.requests if match in str(r.url))


def sse(body: Union[bytes, object], status: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    """Responder returning an event-stream body; ``body`` may be an async generator factory."""

    def respond(request):
        content = body() if callable(body) else body
        return httpx.Response(status, content=content, headers={"content-type": "text/event-stream"})

    return respond


def error(status: int, message: str = "upstream failure") -> Callable[[httpx.Request], httpx.Response]:
    def respond(request):
        return httpx.Response(status, json={"error": {"message": message}})

    return respond


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def credentials():
    return StaticCredentialStore(ALL_KEYS)


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def make_service(upstream, credentials, audit_sink, fake_sleep):
    """Build a StreamService wired to the fake upstream."""

    def build(creds=None):
        return StreamService(
            ProviderRouter(creds or credentials),
            AuditRecorder(audit_sink),
            client=upstream.client(),
            sleep=fake_sleep,
        )

    return build
