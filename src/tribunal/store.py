"""Persistence for contest sessions, rounds and results."""

import asyncio
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from .errors import NotFoundError, ResultInvariantError
from .models import ContestResult, ResultStatus, new_id

logger = logging.getLogger(__name__)

SESSIONS = "contest_sessions"
ROUNDS = "contest_rounds"
RESULTS = "contest_results"


@dataclass(frozen=True)
class Change:
    """One committed write, pushed to every subscriber."""
    table: str
    op: str
    row: Dict[str, Any]


class ContestStore(Protocol):
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update(self, table: str, row_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def select(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
        ...

    def subscribe(self) -> "asyncio.Queue[Change]":
        ...


class InMemoryContestStore:
    """
    Dict-backed store. Each update replaces the given fields of one row
    (last writer wins); rows handed out are copies.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._subscribers: List[asyncio.Queue] = []

    def _publish(self, table: str, op: str, row: Dict[str, Any]) -> None:
        for queue in self._subscribers:
            queue.put_nowait(Change(table, op, copy.deepcopy(row)))

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        row = copy.deepcopy(row)
        row.setdefault("id", new_id())
        self.tables[table][row["id"]] = row
        self._publish(table, "insert", row)
        return copy.deepcopy(row)

    async def update(self, table: str, row_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        row = self.tables[table].get(row_id)
        if row is None:
            raise NotFoundError(f"{table} row {row_id} not found")
        row.update(copy.deepcopy(fields))
        self._publish(table, "update", row)
        return copy.deepcopy(row)

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        row = self.tables[table].get(row_id)
        return copy.deepcopy(row) if row is not None else None

    async def select(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
        rows = [
            copy.deepcopy(row)
            for row in self.tables[table].values()
            if all(row.get(k) == v for k, v in filters.items())
        ]
        rows.sort(key=lambda r: r.get("created_at", ""))
        return rows

    def subscribe(self) -> "asyncio.Queue[Change]":
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)


class ResultWriter:
    """
    The only path through which contest results are written.

    Guards the completed-answer invariant: once ``response_text`` is non-empty
    it can never be cleared or replaced, a result holding text never moves
    back to pending or generating, and a score is only written together with
    the ``judged`` status.
    """

    def __init__(self, store: ContestStore):
        self.store = store

    async def create(self, result: ContestResult) -> ContestResult:
        row = await self.store.insert(RESULTS, result.model_dump(mode="json"))
        return ContestResult.model_validate(row)

    async def get(self, result_id: str) -> ContestResult:
        row = await self.store.get(RESULTS, result_id)
        if row is None:
            raise NotFoundError(f"Result {result_id} not found")
        return ContestResult.model_validate(row)

    async def update(self, result_id: str, **fields: Any) -> ContestResult:
        current = await self.get(result_id)
        fields = {
            k: (v.value if isinstance(v, ResultStatus) else v) for k, v in fields.items()
        }
        status = ResultStatus(fields.get("status", current.status))

        if current.response_text:
            if "response_text" in fields and fields["response_text"] != current.response_text:
                raise ResultInvariantError(
                    f"Result {result_id} already holds an answer; refusing to change it"
                )
            if status in (ResultStatus.PENDING, ResultStatus.GENERATING):
                raise ResultInvariantError(
                    f"Result {result_id} already holds an answer; cannot move back to {status.value}"
                )
        if fields.get("arbiter_score") is not None and status is not ResultStatus.JUDGED:
            raise ResultInvariantError(
                f"Result {result_id}: arbiter_score may only be written with status judged"
            )

        row = await self.store.update(RESULTS, result_id, fields)
        return ContestResult.model_validate(row)
