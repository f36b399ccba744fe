"""
Read-only views over execution history and scheduled tasks.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .executor import record_from_row
from .infra.db import Database, from_db_time, to_db_time
from .models import (
    CrawlerStatistics,
    ExecutionRecord,
    ExecutionStatus,
    Page,
    SystemOverview,
    TaskState,
    TaskStatistics,
    utcnow,
)

logger = logging.getLogger(__name__)

_FINISHED = (
    ExecutionStatus.SUCCESS.value,
    ExecutionStatus.NO_NEW_DATA.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
)


def _rate(part: int, whole: int) -> float:
    return round(part / whole, 4) if whole else 0.0


class Monitor:
    """Queries over the execution-record store. Never touches the scheduler."""

    def __init__(self, db: Database):
        self.db = db

    async def running_tasks(self) -> List[ExecutionRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM execution_records WHERE status = ? ORDER BY start_time",
            (ExecutionStatus.RUNNING.value,),
        )
        return [record_from_row(row) for row in rows]

    async def history(
        self,
        crawler_name: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
        task_id: Optional[int] = None,
    ) -> Page[ExecutionRecord]:
        """Execution records, newest first, filtered and paginated."""
        page = max(page, 1)
        page_size = max(page_size, 1)

        clauses, params = [], []
        if crawler_name:
            clauses.append("crawler_name = ?")
            params.append(crawler_name)
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if since is not None:
            clauses.append("start_time >= ?")
            params.append(to_db_time(since))
        if until is not None:
            clauses.append("start_time < ?")
            params.append(to_db_time(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        total = await self.db.fetch_value(
            f"SELECT COUNT(*) FROM execution_records {where}", tuple(params), default=0
        )
        rows = await self.db.fetch_all(
            f"SELECT * FROM execution_records {where} ORDER BY start_time DESC, id DESC LIMIT ? OFFSET ?",
            tuple(params) + (page_size, (page - 1) * page_size),
        )
        return Page[ExecutionRecord](
            items=[record_from_row(row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def task_statistics(self, task_id: int) -> TaskStatistics:
        row = await self.db.fetch_one(
            """
            SELECT
                COUNT(*) AS total_runs,
                SUM(CASE WHEN status = 'SUCCESS' THEN 1 ELSE 0 END) AS success_count,
                SUM(CASE WHEN status = 'NO_NEW_DATA' THEN 1 ELSE 0 END) AS no_new_data_count,
                SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failure_count,
                SUM(CASE WHEN status != 'RUNNING' THEN 1 ELSE 0 END) AS finished_count,
                COALESCE(SUM(saved_count), 0) AS total_saved,
                COALESCE(SUM(skipped_count), 0) AS total_skipped
            FROM execution_records
            WHERE task_id = ?
            """,
            (task_id,),
        )
        durations = await self.db.fetch_all(
            "SELECT start_time, end_time FROM execution_records WHERE task_id = ? AND end_time IS NOT NULL",
            (task_id,),
        )
        last = await self.db.fetch_one(
            "SELECT * FROM execution_records WHERE task_id = ? ORDER BY start_time DESC, id DESC LIMIT 1",
            (task_id,),
        )

        success_count = row["success_count"] or 0
        no_new_data_count = row["no_new_data_count"] or 0
        finished = row["finished_count"] or 0

        avg_duration_ms = None
        if durations:
            total_ms = sum(
                (from_db_time(d["end_time"]) - from_db_time(d["start_time"])).total_seconds() * 1000
                for d in durations
            )
            avg_duration_ms = round(total_ms / len(durations), 1)

        return TaskStatistics(
            task_id=task_id,
            total_runs=row["total_runs"] or 0,
            success_count=success_count,
            no_new_data_count=no_new_data_count,
            failure_count=row["failure_count"] or 0,
            success_rate=_rate(success_count + no_new_data_count, finished),
            avg_duration_ms=avg_duration_ms,
            total_saved=row["total_saved"],
            total_skipped=row["total_skipped"],
            last_run=record_from_row(last) if last else None,
        )

    async def crawler_statistics(self, crawler_name: str) -> CrawlerStatistics:
        row = await self.db.fetch_one(
            """
            SELECT
                COUNT(*) AS total_runs,
                SUM(CASE WHEN status IN ('SUCCESS', 'NO_NEW_DATA') THEN 1 ELSE 0 END) AS success_count,
                SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failure_count,
                SUM(CASE WHEN status != 'RUNNING' THEN 1 ELSE 0 END) AS finished_count,
                COALESCE(SUM(saved_count), 0) AS total_saved,
                MAX(start_time) AS last_run_time
            FROM execution_records
            WHERE crawler_name = ?
            """,
            (crawler_name,),
        )
        success_count = row["success_count"] or 0
        return CrawlerStatistics(
            crawler_name=crawler_name,
            total_runs=row["total_runs"] or 0,
            success_count=success_count,
            failure_count=row["failure_count"] or 0,
            success_rate=_rate(success_count, row["finished_count"] or 0),
            total_saved=row["total_saved"],
            last_run_time=from_db_time(row["last_run_time"]),
        )

    async def system_overview(self) -> SystemOverview:
        task_rows = await self.db.fetch_all(
            "SELECT state, COUNT(*) AS n FROM scheduled_tasks GROUP BY state"
        )
        by_state = {row["state"]: row["n"] for row in task_rows}

        status_rows = await self.db.fetch_all(
            "SELECT status, COUNT(*) AS n FROM execution_records GROUP BY status"
        )
        runs_by_status = {row["status"]: row["n"] for row in status_rows}

        since = to_db_time(utcnow() - timedelta(hours=24))
        recent = await self.db.fetch_one(
            f"""
            SELECT
                COUNT(*) AS runs,
                SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN status IN ({', '.join('?' * len(_FINISHED))}) THEN 1 ELSE 0 END) AS finished
            FROM execution_records
            WHERE start_time >= ?
            """,
            _FINISHED + (since,),
        )

        return SystemOverview(
            total_tasks=sum(by_state.values()),
            active_tasks=by_state.get(TaskState.ACTIVE.value, 0),
            paused_tasks=by_state.get(TaskState.PAUSED.value, 0),
            total_runs=sum(runs_by_status.values()),
            running_count=runs_by_status.get(ExecutionStatus.RUNNING.value, 0),
            runs_last_24h=recent["runs"] or 0,
            failure_rate_last_24h=_rate(recent["failed"] or 0, recent["finished"] or 0),
            runs_by_status=runs_by_status,
        )
