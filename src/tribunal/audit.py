"""Fire-and-forget audit trail of upstream attempts."""

import asyncio
import logging
from typing import List, Protocol, Set

from .config import audit_logger
from .models import AuditRecord

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    async def write(self, record: AuditRecord) -> None:
        ...


class LoggingAuditSink:
    """Writes each record as one JSON line to the audit log."""

    async def write(self, record: AuditRecord) -> None:
        audit_logger.info(record.model_dump_json())


class MemoryAuditSink:
    def __init__(self):
        self.records: List[AuditRecord] = []

    async def write(self, record: AuditRecord) -> None:
        self.records.append(record)


class AuditRecorder:
    """
    Hands records to a sink without making the caller wait. A failing sink is
    reported on the audit logger and never reaches the request path.
    """

    def __init__(self, sink: AuditSink):
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    def record(self, record: AuditRecord) -> None:
        task = asyncio.get_running_loop().create_task(self._write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, record: AuditRecord) -> None:
        try:
            await self.sink.write(record)
        except Exception as e:
            audit_logger.error(
                f"Audit write failed for {record.model_id} ({record.request_type}): {e}"
            )

    async def drain(self) -> None:
        """Wait for every outstanding write."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
