"""Fan-out of one round to every contestant, in parallel or as a duel."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .models import (
    ContestResult,
    ContestRound,
    ContestSession,
    ErrorInfo,
    EventTag,
    ResultStatus,
    StreamRequest,
)
from .prompts import (
    CONTESTANT_SYSTEM_PROMPT,
    DUEL_INSTRUCTION,
    DUEL_NO_RESPONSE,
    DUEL_OPPONENT_LABEL,
    DUEL_OWN_LABEL,
    DUEL_SEPARATOR,
    DUEL_SYSTEM_PROMPT,
)
from .service import StreamService
from .store import ResultWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    session_id: str
    model_id: str
    kind: str  # start | delta | ready | failed
    text: str = ""


class ProgressHub:
    """Per-session channels of ProgressEvents for any presentation layer."""

    def __init__(self):
        self._queues: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, session_id: str) -> "asyncio.Queue[ProgressEvent]":
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(session_id, []).append(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        queues = self._queues.get(session_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._queues.pop(session_id, None)

    def publish(self, event: ProgressEvent) -> None:
        for queue in self._queues.get(event.session_id, []):
            queue.put_nowait(event)


@dataclass
class RoundContext:
    """State of one executing round, owned by the call that runs it."""
    session_id: str
    round_index: int
    preserve_partial_on_cancel: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: Set[asyncio.Task] = field(default_factory=set)
    live_text: Dict[str, str] = field(default_factory=dict)
    started_at: Dict[str, float] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> bool:
        """Abort every in-flight request. Returns False if already cancelled."""
        if self.cancel_event.is_set():
            return False
        self.cancel_event.set()
        for task in self.tasks:
            if not task.done():
                task.cancel()
        logger.info(f"Cancelled round {self.round_index} of session {self.session_id}")
        return True


def latest_response(
    history: List[ContestResult], model_id: str, before_round: int
) -> Optional[str]:
    """Text of the model's most recently created result from an earlier round."""
    earlier = [
        r for r in history if r.model_id == model_id and r.round_index < before_round
    ]
    if not earlier:
        return None
    return max(earlier, key=lambda r: r.created_at).response_text or None


def build_duel_prompt(
    original: str,
    model_id: str,
    opponent_id: str,
    history: List[ContestResult],
    round_index: int,
) -> str:
    """
    Build a duel prompt embedding both sides' latest answers.

    Args:
        original: The round's prompt as written by the user
        model_id: Model the prompt is for
        opponent_id: The other duelist
        history: Persisted results of the session
        round_index: Index of the round being run

    Returns:
        The original prompt for round 0, otherwise the cross-referenced prompt
    """
    if round_index == 0:
        return original
    own = latest_response(history, model_id, round_index) or DUEL_NO_RESPONSE
    opponent = latest_response(history, opponent_id, round_index) or DUEL_NO_RESPONSE
    return "\n\n".join(
        [
            original,
            DUEL_SEPARATOR,
            f"{DUEL_OWN_LABEL}\n{own}",
            f"{DUEL_OPPONENT_LABEL}\n{opponent}",
            DUEL_SEPARATOR,
            DUEL_INSTRUCTION,
        ]
    )


class FanoutEngine:
    def __init__(
        self,
        service: StreamService,
        writer: ResultWriter,
        hub: Optional[ProgressHub] = None,
    ):
        self.service = service
        self.writer = writer
        self.hub = hub or ProgressHub()

    def _publish(self, ctx: RoundContext, model_id: str, kind: str, text: str = "") -> None:
        self.hub.publish(ProgressEvent(ctx.session_id, model_id, kind, text))

    async def _mark_cancelled(
        self, ctx: RoundContext, result: ContestResult, text: str, elapsed_ms: int, tokens: int
    ) -> None:
        if ctx.preserve_partial_on_cancel and text:
            await self.writer.update(
                result.id,
                status=ResultStatus.READY,
                response_text=text,
                response_time_ms=elapsed_ms,
                token_count=tokens,
                metadata={**result.metadata, "partial": True, "error": "cancelled"},
            )
        else:
            await self.writer.update(
                result.id,
                status=ResultStatus.FAILED,
                metadata={**result.metadata, "error": "cancelled"},
            )
        self._publish(ctx, result.model_id, "failed", "cancelled")

    async def run_one(
        self,
        session: ContestSession,
        result: ContestResult,
        prompt: str,
        ctx: RoundContext,
        system_prompt: str,
    ) -> ContestResult:
        """Stream one contestant's answer and persist its outcome."""
        model_id = result.model_id
        if ctx.cancelled:
            await self._mark_cancelled(ctx, result, "", 0, 0)
            return await self.writer.get(result.id)

        result = await self.writer.update(result.id, status=ResultStatus.GENERATING)
        started = time.monotonic()
        ctx.started_at[model_id] = started
        ctx.live_text[model_id] = ""
        self._publish(ctx, model_id, "start")

        config = session.config
        request = StreamRequest(
            message=prompt,
            model_id=model_id,
            system_prompt=system_prompt,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        parts: List[str] = []
        terminal = None
        events = self.service.stream(request, session.user_id)
        try:
            async for event in events:
                if event.terminal:
                    terminal = event
                    continue
                parts.append(event.text)
                ctx.live_text[model_id] += event.text
                self._publish(ctx, model_id, "delta", event.text)
        except asyncio.CancelledError:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            await self._mark_cancelled(ctx, result, "".join(parts), elapsed_ms, len(parts))
            raise
        finally:
            await events.aclose()

        elapsed_ms = int((time.monotonic() - started) * 1000)
        metadata: Dict[str, Any] = dict(result.metadata)
        if terminal is not None:
            metadata["provider"] = terminal.provider_used
            if terminal.fallback_info is not None:
                metadata["fallback"] = terminal.fallback_info.model_dump(by_alias=True)

        if terminal is None or terminal.tag is EventTag.ERROR:
            error = terminal.error if terminal is not None else ErrorInfo(
                kind="error", status=500, message="Stream ended without a terminal event"
            )
            metadata["error"] = error.message
            metadata["error_kind"] = error.kind
            logger.warning(f"{model_id} failed in round {ctx.round_index}: {error.message}")
            self._publish(ctx, model_id, "failed", error.message)
            return await self.writer.update(
                result.id, status=ResultStatus.FAILED, response_time_ms=elapsed_ms, metadata=metadata
            )

        if terminal.partial:
            metadata["partial"] = True
            metadata["error"] = terminal.error.message if terminal.error else None
        text = "".join(parts)
        logger.info(
            f"{model_id} answered round {ctx.round_index} in {elapsed_ms}ms ({len(parts)} chunks)"
        )
        self._publish(ctx, model_id, "ready", text)
        return await self.writer.update(
            result.id,
            status=ResultStatus.READY,
            response_text=text,
            response_time_ms=elapsed_ms,
            token_count=len(parts),
            metadata=metadata,
        )

    async def _settle(self, task: asyncio.Task, result: ContestResult) -> ContestResult:
        outcome = (await asyncio.gather(task, return_exceptions=True))[0]
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, asyncio.CancelledError):
                logger.error(f"Task for {result.model_id} raised: {outcome!r}")
            return await self.writer.get(result.id)
        return outcome

    async def run_parallel(
        self,
        session: ContestSession,
        round_: ContestRound,
        results: List[ContestResult],
        ctx: RoundContext,
    ) -> List[ContestResult]:
        """
        Run every result of the round concurrently and wait until all have
        settled; one failure never cancels the others.
        """
        system_prompt = session.config.system_prompt or CONTESTANT_SYSTEM_PROMPT
        tasks = [
            asyncio.create_task(self.run_one(session, r, round_.prompt, ctx, system_prompt))
            for r in results
        ]
        ctx.tasks.update(tasks)
        return [await self._settle(task, result) for task, result in zip(tasks, results)]

    async def run_duel(
        self,
        session: ContestSession,
        round_: ContestRound,
        results: List[ContestResult],
        ctx: RoundContext,
        history: List[ContestResult],
    ) -> List[ContestResult]:
        """Run the two duelists one after the other."""
        models = list(session.config.models)
        system_prompt = session.config.system_prompt or DUEL_SYSTEM_PROMPT
        final = []
        for result in results:
            opponent = next((m for m in models if m != result.model_id), result.model_id)
            prompt = build_duel_prompt(
                round_.prompt, result.model_id, opponent, history, round_.round_index
            )
            task = asyncio.create_task(self.run_one(session, result, prompt, ctx, system_prompt))
            ctx.tasks.add(task)
            final.append(await self._settle(task, result))
        return final
