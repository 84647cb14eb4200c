"""HTTP surface of Tribunal."""

import json
import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError

from .audit import AuditRecorder, AuditSink, LoggingAuditSink
from .config import config
from .contest import ContestEngine
from .credentials import CredentialStore, EnvCredentialStore
from .errors import AuthenticationError, ConfigurationError, TribunalError
from .models import ContestConfig, EventTag, StreamRequest
from .router import ProviderRouter
from .runner import TestRunner
from .service import StreamService
from .store import ContestStore, InMemoryContestStore
from .streaming import format_event, format_fallback

logger = logging.getLogger(__name__)

app = FastAPI(title="Tribunal")


class AddRoundBody(BaseModel):
    prompt: str
    criteria: Optional[List[str]] = None


class TestModelBody(BaseModel):
    model_id: str


class TestStepsBody(BaseModel):
    model_id: str
    steps: List[str]
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None


def configure(
    app: FastAPI,
    credentials: Optional[CredentialStore] = None,
    client: Optional[httpx.AsyncClient] = None,
    sink: Optional[AuditSink] = None,
    store: Optional[ContestStore] = None,
    sleep=None,
) -> FastAPI:
    """Wire the core components onto ``app.state``."""
    router = ProviderRouter(credentials or EnvCredentialStore())
    audit = AuditRecorder(sink or LoggingAuditSink())
    service_kwargs: Dict[str, Any] = {"client": client}
    if sleep is not None:
        service_kwargs["sleep"] = sleep
    service = StreamService(router, audit, **service_kwargs)
    app.state.audit = audit
    app.state.service = service
    app.state.engine = ContestEngine(store or InMemoryContestStore(), service)
    app.state.runner = TestRunner(service)
    return app


def error_response(status: int, message: str) -> Response:
    return Response(
        content=json.dumps({"error": message}),
        status_code=status,
        media_type="application/json",
    )


@app.exception_handler(TribunalError)
async def tribunal_error_handler(request: Request, exc: TribunalError) -> Response:
    logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(exc.http_status, exc.message)


def require_user(request: Request) -> str:
    user_id = request.headers.get("x-user-id", "").strip()
    if not user_id:
        raise AuthenticationError("Authentication required: missing X-User-Id header")
    return user_id


async def read_json(request: Request) -> Any:
    body = await request.body()
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        raise ConfigurationError("Request body is not valid JSON")


def validate(model, data: Any):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first["loc"]) or "body"
        raise ConfigurationError(f"Invalid request: {where}: {first['msg']}")


@app.post("/stream")
async def stream(request: Request) -> Response:
    """
    Stream one model's answer as canonical SSE.

    Errors that happen before the first byte come back as a JSON error with
    the mirrored status; afterwards the stream always ends with [DONE].
    """
    user_id = require_user(request)
    stream_request = validate(StreamRequest, await read_json(request))
    service: StreamService = request.app.state.service

    events = service.stream(stream_request, user_id)
    first = await events.__anext__()
    if first.tag is EventTag.ERROR:
        await events.aclose()
        return error_response(first.error.status, first.error.message)

    async def generate():
        try:
            if first.fallback_info is not None:
                yield format_fallback(first.fallback_info)
            yield format_event(first)
            if first.terminal:
                return
            async for event in events:
                yield format_event(event)
        finally:
            await events.aclose()

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Provider": first.provider_used},
    )


@app.post("/contests")
async def create_contest(request: Request):
    user_id = require_user(request)
    contest_config = validate(ContestConfig, await read_json(request))
    session = await request.app.state.engine.start_session(user_id, contest_config)
    return session.model_dump(mode="json")


async def owned_session(request: Request, session_id: str):
    user_id = require_user(request)
    engine: ContestEngine = request.app.state.engine
    session = await engine.get_session(session_id)
    if session.user_id != user_id:
        raise AuthenticationError("Contest session belongs to another user")
    return engine, session


@app.get("/contests/{session_id}")
async def get_contest(session_id: str, request: Request):
    engine, session = await owned_session(request, session_id)
    return {
        "session": session.model_dump(mode="json"),
        "rounds": [r.model_dump(mode="json") for r in await engine.rounds(session_id)],
        "results": [r.model_dump(mode="json") for r in await engine.results(session_id)],
    }


@app.post("/contests/{session_id}/rounds/{round_index}/run")
async def run_round(session_id: str, round_index: int, request: Request):
    engine, _ = await owned_session(request, session_id)
    results = await engine.run_round(session_id, round_index)
    return [r.model_dump(mode="json") for r in results]


@app.post("/contests/{session_id}/rounds")
async def add_round(session_id: str, request: Request):
    engine, _ = await owned_session(request, session_id)
    body = validate(AddRoundBody, await read_json(request))
    round_ = await engine.add_round(session_id, body.prompt, body.criteria)
    return round_.model_dump(mode="json")


@app.post("/contests/{session_id}/run")
async def run_contest(session_id: str, request: Request):
    engine, _ = await owned_session(request, session_id)
    results = await engine.run_all(session_id)
    return [r.model_dump(mode="json") for r in results]


@app.post("/contests/{session_id}/cancel")
async def cancel_contest(session_id: str, request: Request):
    engine, _ = await owned_session(request, session_id)
    return {"cancelled": await engine.cancel(session_id)}


@app.post("/providers/{provider_id}/ping")
async def ping_provider(provider_id: str, request: Request):
    user_id = require_user(request)
    return await request.app.state.service.ping(provider_id, user_id)


@app.post("/providers/test")
async def test_model(request: Request):
    user_id = require_user(request)
    body = validate(TestModelBody, await read_json(request))
    return await request.app.state.service.test_model(body.model_id, user_id)


@app.post("/tests/run")
async def run_test_steps(request: Request):
    """Run a multi-step test against one model."""
    user_id = require_user(request)
    body = validate(TestStepsBody, await read_json(request))
    runner: TestRunner = request.app.state.runner
    kwargs: Dict[str, Any] = {"system_prompt": body.system_prompt}
    if body.max_tokens is not None:
        kwargs["max_tokens"] = body.max_tokens
    steps = await runner.run_steps(body.model_id, body.steps, user_id, **kwargs)
    return [asdict(step) for step in steps]


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


configure(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config["server"]["host"], port=int(config["server"]["port"]))
