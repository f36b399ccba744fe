"""
Background classification runs with batch progress and cooperative cancel.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from ..errors import NotFoundError, TaskAlreadyFinished
from ..infra.db import Database, from_db_time, from_json, to_db_time, to_json
from ..models import AIJudgeTask, FilterCriteria, JudgeTaskStatus, utcnow
from .pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)


def judge_task_from_row(row) -> AIJudgeTask:
    return AIJudgeTask(
        task_id=row["task_id"],
        task_type=row["task_type"],
        status=JudgeTaskStatus(row["status"]),
        filter_params=from_json(row["filter_params"], {}),
        progress=row["progress"],
        total_count=row["total_count"],
        related_count=row["related_count"],
        unrelated_count=row["unrelated_count"],
        blacklist_filtered_count=row["blacklist_filtered_count"],
        failed_count=row["failed_count"],
        staged_count=row["staged_count"],
        error_message=row["error_message"],
        created_at=from_db_time(row["created_at"]),
        start_time=from_db_time(row["start_time"]),
        end_time=from_db_time(row["end_time"]),
    )


class AsyncJudgeService:
    """
    Runs classification over large candidate sets in the background.

    The worker checks for cancellation before every batch. A batch that is
    already being classified when cancel arrives is finished and staged; no
    further batch starts. All status transitions made by the worker are
    conditional updates, so a cancellation is never overwritten.
    """

    def __init__(
        self,
        db: Database,
        pipeline: ClassificationPipeline,
        batch_size: int = 50,
        batch_pause: float = 0.0,
    ):
        self.db = db
        self.pipeline = pipeline
        self.batch_size = max(1, batch_size)
        self.batch_pause = batch_pause
        self._workers: Dict[str, asyncio.Task] = {}

    async def submit(self, criteria: FilterCriteria, task_type: Optional[str] = None) -> str:
        """Create a PENDING task and start its worker. Returns the task id."""
        task_id = str(uuid.uuid4())
        await self.db.insert("ai_judge_tasks", {
            "task_id": task_id,
            "task_type": task_type or criteria.module_type,
            "status": JudgeTaskStatus.PENDING.value,
            "filter_params": to_json(criteria.model_dump(mode="json")),
            "created_at": to_db_time(utcnow()),
        })
        worker = asyncio.create_task(self._run(task_id, criteria), name=f"judge-{task_id[:8]}")
        self._workers[task_id] = worker
        worker.add_done_callback(lambda _: self._workers.pop(task_id, None))
        logger.info(f"Submitted AI judge task {task_id}")
        return task_id

    async def get_progress(self, task_id: str) -> AIJudgeTask:
        row = await self.db.fetch_one("SELECT * FROM ai_judge_tasks WHERE task_id = ?", (task_id,))
        if row is None:
            raise NotFoundError("AI judge task", task_id)
        return judge_task_from_row(row)

    async def list_tasks(self, limit: int = 20) -> List[AIJudgeTask]:
        rows = await self.db.fetch_all(
            "SELECT * FROM ai_judge_tasks ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        return [judge_task_from_row(row) for row in rows]

    async def cancel(self, task_id: str) -> AIJudgeTask:
        """Request cancellation. Finished tasks cannot be cancelled."""
        task = await self.get_progress(task_id)
        if task.status.finished:
            raise TaskAlreadyFinished(task_id, task.status.value)

        await self.db.write(
            "UPDATE ai_judge_tasks SET status = ?, end_time = ? WHERE task_id = ? AND status NOT IN (?, ?)",
            (
                JudgeTaskStatus.CANCELLED.value,
                to_db_time(utcnow()),
                task_id,
                JudgeTaskStatus.COMPLETED.value,
                JudgeTaskStatus.FAILED.value,
            ),
        )
        task = await self.get_progress(task_id)
        if task.status.finished:
            # Worker finished between the read and the update
            raise TaskAlreadyFinished(task_id, task.status.value)
        logger.info(f"Cancelled AI judge task {task_id}")
        return task

    async def wait(self, task_id: str) -> AIJudgeTask:
        """Wait for the worker of *task_id* to exit and return the final state."""
        worker = self._workers.get(task_id)
        if worker is not None:
            await asyncio.gather(worker, return_exceptions=True)
        return await self.get_progress(task_id)

    async def shutdown(self) -> None:
        """Cancel running workers and mark their tasks CANCELLED."""
        workers = list(self._workers.items())
        for _, worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*(w for _, w in workers), return_exceptions=True)
        for task_id, _ in workers:
            await self._transition(task_id, JudgeTaskStatus.CANCELLED, "Interrupted by shutdown",
                                   from_statuses=(JudgeTaskStatus.PENDING, JudgeTaskStatus.RUNNING))

    # ---------------------------------------------- #
    # Worker

    async def _status(self, task_id: str) -> JudgeTaskStatus:
        value = await self.db.fetch_value("SELECT status FROM ai_judge_tasks WHERE task_id = ?", (task_id,))
        return JudgeTaskStatus(value)

    async def _transition(
        self,
        task_id: str,
        status: JudgeTaskStatus,
        error_message: Optional[str] = None,
        from_statuses=(JudgeTaskStatus.RUNNING,),
    ) -> bool:
        placeholders = ", ".join("?" * len(from_statuses))
        cursor = await self.db.write(
            f"""
            UPDATE ai_judge_tasks SET status = ?, end_time = ?, error_message = ?
            WHERE task_id = ? AND status IN ({placeholders})
            """,
            (status.value, to_db_time(utcnow()), error_message, task_id) + tuple(s.value for s in from_statuses),
        )
        return cursor.rowcount > 0

    async def _save_progress(self, task: AIJudgeTask) -> None:
        await self.db.write(
            """
            UPDATE ai_judge_tasks
            SET progress = ?, related_count = ?, unrelated_count = ?, blacklist_filtered_count = ?,
                failed_count = ?, staged_count = ?
            WHERE task_id = ?
            """,
            (
                task.progress,
                task.related_count,
                task.unrelated_count,
                task.blacklist_filtered_count,
                task.failed_count,
                task.staged_count,
                task.task_id,
            ),
        )

    async def _run(self, task_id: str, criteria: FilterCriteria) -> None:
        started = await self.db.write(
            "UPDATE ai_judge_tasks SET status = ?, start_time = ? WHERE task_id = ? AND status = ?",
            (JudgeTaskStatus.RUNNING.value, to_db_time(utcnow()), task_id, JudgeTaskStatus.PENDING.value),
        )
        if not started.rowcount:
            logger.info(f"AI judge task {task_id} was cancelled before it started")
            return

        try:
            keywords = await self.pipeline.blacklist.snapshot()
            records = await self.pipeline.candidates(criteria)
            await self.db.write(
                "UPDATE ai_judge_tasks SET total_count = ? WHERE task_id = ?", (len(records), task_id)
            )
            task = await self.get_progress(task_id)
            logger.info(f"AI judge task {task_id}: {len(records)} record(s) in batches of {self.batch_size}")

            for offset in range(0, len(records), self.batch_size):
                if await self._status(task_id) == JudgeTaskStatus.CANCELLED:
                    logger.info(f"AI judge task {task_id} cancelled at {task.progress}/{task.total_count}")
                    return

                batch = records[offset:offset + self.batch_size]
                items, failed = await self.pipeline.judge_batch(batch, keywords)
                staged = await self.pipeline.stage(items, criteria.module_type)

                task.progress += len(batch)
                task.failed_count += failed + staged.failed_count
                task.staged_count += staged.saved_count
                for item in items:
                    if item.blacklist_matched:
                        task.blacklist_filtered_count += 1
                    elif item.ai_label:
                        task.related_count += 1
                    else:
                        task.unrelated_count += 1
                await self._save_progress(task)
                logger.info(f"AI judge task {task_id}: {task.progress}/{task.total_count} ({task.progress_percent}%)")

                if self.batch_pause and offset + self.batch_size < len(records):
                    await asyncio.sleep(self.batch_pause)

            if await self._transition(task_id, JudgeTaskStatus.COMPLETED):
                logger.info(
                    f"AI judge task {task_id} completed: related={task.related_count}, "
                    f"unrelated={task.unrelated_count}, blacklisted={task.blacklist_filtered_count}, "
                    f"failed={task.failed_count}"
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"AI judge task {task_id} failed: {e}", exc_info=True)
            await self._transition(task_id, JudgeTaskStatus.FAILED, f"{type(e).__name__}: {e}")
