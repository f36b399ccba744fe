"""
Runs one crawl for a task and records the outcome.
"""

import asyncio
import copy
import logging
import os
import socket
import sqlite3
import uuid
from typing import Any, Dict, Optional, Set

from .crawler_registry import CrawlerRegistry
from .errors import ConcurrencyConflict, CrawlerDisabledError, NotFoundError
from .infra.db import Database, from_db_time, from_json, to_db_time, to_json
from .models import (
    CrawlFailed,
    CrawlNoNewData,
    CrawlOutcome,
    CrawlSaved,
    ExecutionRecord,
    ExecutionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


def record_from_row(row) -> ExecutionRecord:
    return ExecutionRecord(
        id=row["id"],
        task_id=row["task_id"],
        crawler_name=row["crawler_name"],
        start_time=from_db_time(row["start_time"]),
        end_time=from_db_time(row["end_time"]),
        status=ExecutionStatus(row["status"]),
        saved_count=row["saved_count"],
        skipped_count=row["skipped_count"],
        error_message=row["error_message"],
        parameters=from_json(row["parameters"], {}),
        triggered_by=row["triggered_by"],
        manual=bool(row["manual"]),
    )


def describe_error(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class Executor:
    """Executes crawls and maintains the execution-record history.

    The RUNNING check-and-set is a single insert guarded by a partial unique
    index, so two concurrent starts for the same task cannot both succeed.
    Each record carries the owner id of the executor that inserted it.
    """

    def __init__(self, db: Database, crawlers: CrawlerRegistry, owner: Optional[str] = None):
        self.db = db
        self.crawlers = crawlers
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._background: Set[asyncio.Task] = set()

    async def begin(
        self,
        task_id: int,
        crawler_name: str,
        params: Optional[Dict[str, Any]],
        triggered_by: str = "SCHEDULER",
        manual: bool = False,
    ) -> ExecutionRecord:
        """Validate and insert the RUNNING record for a new run."""
        definition = self.crawlers.get(crawler_name)
        if not definition.enabled:
            raise CrawlerDisabledError(crawler_name)

        self.crawlers.schemas.check(crawler_name, params)
        snapshot = self.crawlers.schemas.with_defaults(crawler_name, copy.deepcopy(dict(params or {})))

        start_time = utcnow()
        try:
            record_id = await self.db.insert("execution_records", {
                "task_id": task_id,
                "crawler_name": crawler_name,
                "start_time": to_db_time(start_time),
                "status": ExecutionStatus.RUNNING.value,
                "parameters": to_json(snapshot),
                "triggered_by": triggered_by,
                "manual": int(manual),
                "owner": self.owner,
            })
        except sqlite3.IntegrityError:
            await self.db.commit()
            raise ConcurrencyConflict(task_id) from None

        logger.info(f"Started run #{record_id} of task {task_id} ({crawler_name}, by {triggered_by})")
        return ExecutionRecord(
            id=record_id,
            task_id=task_id,
            crawler_name=crawler_name,
            start_time=start_time,
            parameters=snapshot,
            triggered_by=triggered_by,
            manual=manual,
        )

    async def complete(self, record: ExecutionRecord) -> ExecutionRecord:
        """Invoke the crawl for a RUNNING record and persist the outcome."""
        source = self.crawlers.source(record.crawler_name)
        try:
            outcome: CrawlOutcome = await source.crawl(copy.deepcopy(record.parameters))
        except asyncio.CancelledError:
            await self._finish(record, ExecutionStatus.CANCELLED, error_message="Run cancelled")
            raise
        except Exception as e:
            logger.error(f"Run #{record.id} of task {record.task_id} failed: {e}", exc_info=True)
            outcome = CrawlFailed(error=describe_error(e))

        return await self._record_outcome(record, outcome)

    async def run(
        self,
        task_id: int,
        crawler_name: str,
        params: Optional[Dict[str, Any]],
        triggered_by: str = "SCHEDULER",
        manual: bool = False,
    ) -> ExecutionRecord:
        """Run a crawl to completion and return its final record."""
        record = await self.begin(task_id, crawler_name, params, triggered_by, manual)
        return await self.complete(record)

    async def start(
        self,
        task_id: int,
        crawler_name: str,
        params: Optional[Dict[str, Any]],
        triggered_by: str = "SCHEDULER",
        manual: bool = False,
    ) -> ExecutionRecord:
        """Insert the RUNNING record and finish the crawl in the background."""
        record = await self.begin(task_id, crawler_name, params, triggered_by, manual)
        task = asyncio.create_task(self.complete(record), name=f"run-{record.id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return record

    async def _record_outcome(self, record: ExecutionRecord, outcome: CrawlOutcome) -> ExecutionRecord:
        if isinstance(outcome, CrawlSaved):
            return await self._finish(
                record, ExecutionStatus.SUCCESS,
                saved_count=outcome.saved_count, skipped_count=outcome.skipped_count,
            )
        if isinstance(outcome, CrawlNoNewData):
            logger.info(f"Run #{record.id}: no new data ({outcome.skipped_count} duplicates)")
            return await self._finish(
                record, ExecutionStatus.NO_NEW_DATA,
                saved_count=0, skipped_count=outcome.skipped_count,
                error_message=outcome.message or None,
            )
        if isinstance(outcome, CrawlFailed):
            return await self._finish(record, ExecutionStatus.FAILED, error_message=outcome.error)
        return await self._finish(
            record, ExecutionStatus.FAILED,
            error_message=f"TypeError: unexpected crawl result {type(outcome).__name__}",
        )

    async def _finish(
        self,
        record: ExecutionRecord,
        status: ExecutionStatus,
        saved_count: int = 0,
        skipped_count: int = 0,
        error_message: Optional[str] = None,
    ) -> ExecutionRecord:
        end_time = utcnow()
        cursor = await self.db.write(
            """
            UPDATE execution_records
            SET status = ?, end_time = ?, saved_count = ?, skipped_count = ?, error_message = ?
            WHERE id = ? AND status = ?
            """,
            (
                status.value, to_db_time(end_time), saved_count, skipped_count, error_message,
                record.id, ExecutionStatus.RUNNING.value,
            ),
        )
        if not cursor.rowcount:
            current = await self.get(record.id)
            logger.warning(
                f"Run #{record.id} of task {record.task_id} was already {current.status.value}, "
                f"dropping {status.value} result"
            )
            return current
        finished = record.model_copy(update={
            "status": status,
            "end_time": end_time,
            "saved_count": saved_count,
            "skipped_count": skipped_count,
            "error_message": error_message,
        })
        logger.info(
            f"Finished run #{record.id} of task {record.task_id}: {status.value} "
            f"(saved={saved_count}, skipped={skipped_count}, {finished.duration_ms}ms)"
        )
        return finished

    async def get(self, record_id: int) -> ExecutionRecord:
        row = await self.db.fetch_one("SELECT * FROM execution_records WHERE id = ?", (record_id,))
        if row is None:
            raise NotFoundError("Execution record", record_id)
        return record_from_row(row)

    async def retry(self, record_id: int, triggered_by: str = "RETRY") -> ExecutionRecord:
        """Re-run a FAILED execution with its original parameter snapshot."""
        previous = await self.get(record_id)
        if previous.status != ExecutionStatus.FAILED:
            raise ValueError(f"Only FAILED runs can be retried, run #{record_id} is {previous.status.value}")
        return await self.run(previous.task_id, previous.crawler_name, previous.parameters, triggered_by, True)

    async def recover_stale(self) -> int:
        """Mark RUNNING records owned by any other executor as CANCELLED.

        Called by the daemon at start-up, never by CLI processes.
        """
        cursor = await self.db.write(
            """
            UPDATE execution_records
            SET status = ?, end_time = ?, error_message = ?
            WHERE status = ? AND (owner IS NULL OR owner != ?)
            """,
            (
                ExecutionStatus.CANCELLED.value,
                to_db_time(utcnow()),
                "Interrupted by restart",
                ExecutionStatus.RUNNING.value,
                self.owner,
            ),
        )
        if cursor.rowcount:
            logger.warning(f"Marked {cursor.rowcount} interrupted run(s) as CANCELLED")
        return cursor.rowcount

    async def shutdown(self) -> None:
        """Cancel background runs started with start()."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
