"""Round and elimination state machine for contests and duels."""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from .arbiter import Arbiter
from .config import ARBITER_MODEL
from .errors import ArbiterResponseError, ConfigurationError, NotFoundError, RoundStateError
from .fanout import FanoutEngine, ProgressHub, RoundContext
from .models import (
    ContestConfig,
    ContestMode,
    ContestResult,
    ContestRound,
    ContestSession,
    ResultStatus,
    RoundStatus,
    SessionStatus,
)
from .service import StreamService
from .store import RESULTS, ROUNDS, SESSIONS, ContestStore, ResultWriter

logger = logging.getLogger(__name__)


def compute_eliminations(
    results: List[ContestResult], eliminated: List[str], threshold: float
) -> List[str]:
    """
    Work out the eliminated set after a round.

    Args:
        results: Every result of the session so far, all rounds
        eliminated: Models already out
        threshold: Mean arbiter score a model must reach to stay

    Returns:
        The previous eliminated models plus every remaining model whose mean
        score is strictly below the threshold
    """
    scores: Dict[str, List[float]] = defaultdict(list)
    for result in results:
        if result.arbiter_score is not None:
            scores[result.model_id].append(result.arbiter_score)

    out = list(eliminated)
    for model_id, model_scores in scores.items():
        if model_id in out:
            continue
        mean = sum(model_scores) / len(model_scores)
        if mean < threshold:
            logger.info(f"Eliminating {model_id}: mean score {mean:.2f} < {threshold}")
            out.append(model_id)
    return out


class ContestEngine:
    """Drives sessions through their rounds, judging and elimination."""

    def __init__(
        self,
        store: ContestStore,
        service: StreamService,
        arbiter: Optional[Arbiter] = None,
        hub: Optional[ProgressHub] = None,
    ):
        self.store = store
        self.writer = ResultWriter(store)
        self.fanout = FanoutEngine(service, self.writer, hub)
        self.arbiter = arbiter or Arbiter(service)
        self._active: Dict[str, RoundContext] = {}

    @property
    def hub(self) -> ProgressHub:
        return self.fanout.hub

    async def get_session(self, session_id: str) -> ContestSession:
        row = await self.store.get(SESSIONS, session_id)
        if row is None:
            raise NotFoundError(f"Contest session {session_id} not found")
        return ContestSession.model_validate(row)

    async def rounds(self, session_id: str) -> List[ContestRound]:
        rows = await self.store.select(ROUNDS, session_id=session_id)
        return sorted(
            (ContestRound.model_validate(r) for r in rows), key=lambda r: r.round_index
        )

    async def results(
        self, session_id: str, round_index: Optional[int] = None
    ) -> List[ContestResult]:
        filters = {"session_id": session_id}
        if round_index is not None:
            filters["round_index"] = round_index
        rows = await self.store.select(RESULTS, **filters)
        return [ContestResult.model_validate(r) for r in rows]

    async def _get_round(self, session_id: str, round_index: int) -> ContestRound:
        for round_ in await self.rounds(session_id):
            if round_.round_index == round_index:
                return round_
        raise NotFoundError(f"Round {round_index} of session {session_id} not found")

    async def _insert_round(
        self, session: ContestSession, index: int, prompt: str, criteria: List[str]
    ) -> ContestRound:
        round_ = ContestRound(
            session_id=session.id, round_index=index, prompt=prompt, criteria=criteria
        )
        await self.store.insert(ROUNDS, round_.model_dump(mode="json"))
        return round_

    async def _ensure_results(
        self, session: ContestSession, round_: ContestRound
    ) -> List[ContestResult]:
        """Create missing result rows for the round's active models."""
        existing = {r.model_id: r for r in await self.results(session.id, round_.round_index)}
        active = []
        for model_id in session.config.models:
            if model_id in session.eliminated_models:
                continue
            result = existing.get(model_id)
            if result is None:
                result = await self.writer.create(
                    ContestResult(
                        session_id=session.id,
                        round_id=round_.id,
                        round_index=round_.round_index,
                        model_id=model_id,
                    )
                )
            active.append(result)
        return active

    async def start_session(self, user_id: str, config: ContestConfig) -> ContestSession:
        if config.mode is ContestMode.DUEL and len(config.models) != 2:
            raise ConfigurationError("A duel needs exactly two models")
        session = ContestSession(user_id=user_id, config=config, status=SessionStatus.RUNNING)
        await self.store.insert(SESSIONS, session.model_dump(mode="json"))

        default_criteria = config.arbitration.criteria if config.arbitration else []
        first = None
        for index, round_config in enumerate(config.rounds):
            round_ = await self._insert_round(
                session, index, round_config.prompt, round_config.criteria or default_criteria
            )
            first = first or round_
        await self._ensure_results(session, first)
        logger.info(
            f"Started {config.mode.value} session {session.id} with "
            f"{len(config.models)} models and {len(config.rounds)} rounds"
        )
        return session

    async def add_round(
        self, session_id: str, prompt: str, criteria: Optional[List[str]] = None
    ) -> ContestRound:
        """Append an extra round after the planned schedule."""
        session = await self.get_session(session_id)
        rounds = await self.rounds(session_id)
        index = rounds[-1].round_index + 1 if rounds else 0
        default_criteria = session.config.arbitration.criteria if session.config.arbitration else []
        round_ = await self._insert_round(session, index, prompt, criteria or default_criteria)
        if session.status is SessionStatus.COMPLETED:
            await self.store.update(SESSIONS, session_id, {"status": SessionStatus.RUNNING.value})
        return round_

    async def run_round(
        self, session_id: str, round_index: int, preserve_partial_on_cancel: bool = False
    ) -> List[ContestResult]:
        """
        Run one pending round to completion.

        The round is marked completed only after every contestant settled.
        Judging and elimination follow unless the round was cancelled.
        """
        session = await self.get_session(session_id)
        round_ = await self._get_round(session_id, round_index)
        if session.status is SessionStatus.COMPLETED:
            raise RoundStateError(f"Session {session_id} is already completed")
        if round_.status is not RoundStatus.PENDING:
            raise RoundStateError(f"Round {round_index} is already {round_.status.value}")
        if session_id in self._active:
            raise RoundStateError(f"Session {session_id} already has a round running")

        await self.store.update(ROUNDS, round_.id, {"status": RoundStatus.RUNNING.value})
        results = await self._ensure_results(session, round_)
        results = [r for r in results if r.status is ResultStatus.PENDING]

        ctx = RoundContext(
            session_id, round_index, preserve_partial_on_cancel=preserve_partial_on_cancel
        )
        self._active[session_id] = ctx
        try:
            if session.config.mode is ContestMode.DUEL:
                history = [
                    r for r in await self.results(session_id) if r.round_index < round_index
                ]
                settled = await self.fanout.run_duel(session, round_, results, ctx, history)
            else:
                settled = await self.fanout.run_parallel(session, round_, results, ctx)
        except asyncio.CancelledError:
            await self._abandon_round(ctx, round_, results)
            raise
        finally:
            self._active.pop(session_id, None)

        await self.store.update(ROUNDS, round_.id, {"status": RoundStatus.COMPLETED.value})
        logger.info(f"Round {round_index} of session {session_id} completed")
        if ctx.cancelled:
            return settled

        settled = await self._judge(session, round_, settled)
        if session.config.mode is ContestMode.CONTEST:
            await self._apply_elimination(session)

        remaining = [r for r in await self.rounds(session_id) if r.status is RoundStatus.PENDING]
        if not remaining:
            await self.store.update(SESSIONS, session_id, {"status": SessionStatus.COMPLETED.value})
            logger.info(f"Session {session_id} completed")
        return settled

    async def _abandon_round(
        self, ctx: RoundContext, round_: ContestRound, results: List[ContestResult]
    ) -> None:
        """Settle a round whose caller went away: stop every stream, close the round."""
        ctx.cancel()
        await asyncio.gather(*ctx.tasks, return_exceptions=True)
        for result in results:
            current = await self.writer.get(result.id)
            if current.status in (ResultStatus.PENDING, ResultStatus.GENERATING):
                await self.writer.update(
                    result.id,
                    status=ResultStatus.FAILED,
                    metadata={**current.metadata, "error": "cancelled"},
                )
        await self.store.update(ROUNDS, round_.id, {"status": RoundStatus.COMPLETED.value})
        logger.warning(
            f"Round {ctx.round_index} of session {ctx.session_id} abandoned by its caller"
        )

    async def _judge(
        self, session: ContestSession, round_: ContestRound, results: List[ContestResult]
    ) -> List[ContestResult]:
        arbitration = session.config.arbitration
        ready = [r for r in results if r.status is ResultStatus.READY]
        if arbitration is None or not ready:
            return results

        judge_model = arbitration.judge_model or ARBITER_MODEL
        try:
            evaluations = await self.arbiter.evaluate(
                round_.prompt,
                ready,
                round_.criteria or arbitration.criteria,
                arbitration.weights,
                judge_model,
                session.user_id,
            )
        except ArbiterResponseError as e:
            logger.error(f"Judging round {round_.round_index} of {session.id} failed: {e.message}")
            return results

        by_model = {e.model_id: e for e in evaluations}
        judged = []
        for result in results:
            evaluation = by_model.get(result.model_id)
            if evaluation is None or result.status is not ResultStatus.READY:
                judged.append(result)
                continue
            judged.append(
                await self.writer.update(
                    result.id,
                    status=ResultStatus.JUDGED,
                    arbiter_score=evaluation.score,
                    criteria_scores=evaluation.criteria_scores,
                    arbiter_comment=evaluation.comment,
                    arbiter_model=judge_model,
                    response_text=result.response_text,
                    response_time_ms=result.response_time_ms,
                    token_count=result.token_count,
                )
            )
        return judged

    async def _apply_elimination(self, session: ContestSession) -> None:
        rule = session.config.elimination_rule
        if rule is None or rule.mode != "threshold":
            return
        current = await self.get_session(session.id)
        eliminated = compute_eliminations(
            await self.results(session.id), current.eliminated_models, rule.threshold
        )
        if eliminated != current.eliminated_models:
            await self.store.update(SESSIONS, session.id, {"eliminated_models": eliminated})

    async def run_all(self, session_id: str) -> List[ContestResult]:
        """Run every pending round in order, stopping if the session is cancelled."""
        for round_ in await self.rounds(session_id):
            if round_.status is not RoundStatus.PENDING:
                continue
            session = await self.get_session(session_id)
            if session.status is SessionStatus.COMPLETED:
                break
            await self.run_round(session_id, round_.round_index)
        return await self.results(session_id)

    async def cancel(self, session_id: str) -> bool:
        """
        Stop the session. Returns True only for the call that actually
        cancelled something; repeated or late calls change nothing.
        """
        session = await self.get_session(session_id)
        ctx = self._active.get(session_id)
        cancelled = ctx.cancel() if ctx is not None else False
        if session.status is not SessionStatus.COMPLETED:
            await self.store.update(SESSIONS, session_id, {"status": SessionStatus.COMPLETED.value})
            cancelled = True
        return cancelled
