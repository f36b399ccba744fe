"""
Dynamic task scheduler: add, pause, resume, reschedule and trigger crawl tasks
at runtime without a restart.

All timer mutations are applied by a single command-processing coroutine so
state changes for a task are observed in the order they were requested.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from .crawler_registry import CrawlerRegistry, CrawlerStateStore
from .errors import ConcurrencyConflict, CrawlerDisabledError, NotFoundError, ValidationError
from .executor import Executor
from .infra.db import Database, from_db_time, from_json, to_db_time, to_json
from .infra.scheduler import Scheduler, validate_cron_expression
from .models import ExecutionRecord, ScheduledTask, TaskState, utcnow
from .presets import PresetStore

logger = logging.getLogger(__name__)

TASK_JOB_PREFIX = "task-"
RECONCILE_JOB_ID = "system-reconcile"


def task_from_row(row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        name=row["name"],
        preset_id=row["preset_id"],
        crawler_name=row["crawler_name"],
        parameters=from_json(row["parameters"]),
        cron_expression=row["cron_expression"],
        state=TaskState(row["state"]),
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def job_id_for(task_id: int) -> str:
    return f"{TASK_JOB_PREFIX}{task_id}"


class _Command(NamedTuple):
    action: str
    task_id: int
    payload: Dict[str, Any]
    future: Optional[asyncio.Future]


class TaskScheduler:
    """Owns scheduled tasks and their timers."""

    def __init__(
        self,
        db: Database,
        crawlers: CrawlerRegistry,
        presets: PresetStore,
        executor: Executor,
        timezone: str = "UTC",
        sync_seconds: int = 0,
        crawler_state: Optional[CrawlerStateStore] = None,
    ):
        self.db = db
        self.crawlers = crawlers
        self.presets = presets
        self.executor = executor
        self.sync_seconds = sync_seconds
        self.crawler_state = crawler_state
        self.timer = Scheduler(timezone=timezone)
        self._commands: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        # task id -> (cron expression, state) currently armed in the timer
        self._armed: Dict[int, Tuple[str, TaskState]] = {}

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ---------------------------------------------- #
    # Lifecycle

    async def start(self) -> None:
        """Start the timer, the command loop and arm every persisted task."""
        if self.running:
            return
        await self.timer.start()
        self._commands = asyncio.Queue()
        self._worker = asyncio.create_task(self._process_commands(), name="task-scheduler")
        await self.reconcile()
        if self.sync_seconds:
            self.timer.add_interval_job(self.reconcile, self.sync_seconds, RECONCILE_JOB_ID)
        logger.info(f"Task scheduler started with {len(self._armed)} task(s)")

    async def stop(self) -> None:
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.timer.stop()
        self._armed.clear()
        logger.info("Task scheduler stopped")

    # ---------------------------------------------- #
    # Queries

    async def get(self, task_id: int) -> ScheduledTask:
        row = await self.db.fetch_one("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,))
        if row is None:
            raise NotFoundError("Scheduled task", task_id)
        return task_from_row(row)

    async def list(self, state: Optional[TaskState] = None) -> List[ScheduledTask]:
        if state is None:
            rows = await self.db.fetch_all("SELECT * FROM scheduled_tasks ORDER BY id")
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM scheduled_tasks WHERE state = ? ORDER BY id", (state.value,)
            )
        return [task_from_row(row) for row in rows]

    def next_run_time(self, task_id: int):
        return self.timer.next_run_time(job_id_for(task_id))

    def is_armed(self, task_id: int) -> bool:
        return self.timer.running and self.timer.has_job(job_id_for(task_id))

    # ---------------------------------------------- #
    # Mutations

    @staticmethod
    def _check_cron(cron_expression: str) -> None:
        if not validate_cron_expression(cron_expression):
            raise ValidationError(
                "Invalid cron expression",
                {"cron_expression": f"'{cron_expression}' is not a valid 5-field cron expression"},
            )

    async def add(
        self,
        cron_expression: str,
        preset_id: Optional[int] = None,
        crawler_name: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        name: str = "",
    ) -> ScheduledTask:
        """Create an ACTIVE task for a preset or for inline parameters."""
        self._check_cron(cron_expression)

        if preset_id is not None:
            preset = await self.presets.get(preset_id)
            crawler_name = preset.crawler_name
            parameters = None
            name = name or preset.name
        else:
            if not crawler_name:
                raise ValidationError("A preset or a crawler is required", {"crawler_name": "is required"})
            self.crawlers.get(crawler_name)
            self.crawlers.schemas.check(crawler_name, parameters or {})
            parameters = dict(parameters or {})
            name = name or crawler_name

        now = to_db_time(utcnow())
        task_id = await self.db.insert("scheduled_tasks", {
            "name": name,
            "preset_id": preset_id,
            "crawler_name": crawler_name,
            "parameters": to_json(parameters),
            "cron_expression": cron_expression.strip(),
            "state": TaskState.ACTIVE.value,
            "created_at": now,
            "updated_at": now,
        })
        logger.info(f"Added task #{task_id} '{name}' ({crawler_name}, {cron_expression})")
        return await self._submit("arm", task_id)

    async def pause(self, task_id: int) -> ScheduledTask:
        return await self._submit("pause", task_id)

    async def resume(self, task_id: int) -> ScheduledTask:
        """Resume a task. Firings missed while paused are not replayed."""
        return await self._submit("resume", task_id)

    async def reschedule(self, task_id: int, cron_expression: str) -> ScheduledTask:
        self._check_cron(cron_expression)
        return await self._submit("reschedule", task_id, cron_expression=cron_expression.strip())

    async def delete(self, task_id: int) -> None:
        """Delete a task and its timer. Execution history is kept."""
        await self._submit("delete", task_id)

    async def reconcile(self) -> None:
        """Bring the timers and crawler switches in line with the database."""
        await self._submit("sync", 0)

    async def trigger(
        self,
        task_id: int,
        triggered_by: str = "MANUAL",
        wait: bool = True,
    ) -> ExecutionRecord:
        """Run a task now, whatever its schedule state.

        Raises ConcurrencyConflict if the task already has a RUNNING execution.
        With ``wait=False`` the RUNNING record is returned immediately.
        """
        task = await self.get(task_id)
        crawler_name, params = await self._resolve(task)
        if wait:
            return await self.executor.run(task.id, crawler_name, params, triggered_by, manual=True)
        return await self.executor.start(task.id, crawler_name, params, triggered_by, manual=True)

    def add_system_job(self, func: Callable, cron_expression: str, job_id: str) -> None:
        """Register a housekeeping cron job outside the task table."""
        self._check_cron(cron_expression)
        self.timer.add_cron_job(func, cron_expression, job_id=f"system-{job_id}", name=job_id)

    # ---------------------------------------------- #
    # Firing

    async def _resolve(self, task: ScheduledTask) -> Tuple[str, Dict[str, Any]]:
        if task.preset_id is not None:
            preset = await self.presets.get(task.preset_id)
            return preset.crawler_name, preset.parameters
        return task.crawler_name, dict(task.parameters or {})

    async def fire(self, task_id: int) -> Optional[ExecutionRecord]:
        """Timer callback for a scheduled firing."""
        try:
            task = await self.get(task_id)
        except NotFoundError:
            logger.warning(f"Task #{task_id} no longer exists, removing its timer")
            self.timer.remove_job(job_id_for(task_id))
            self._armed.pop(task_id, None)
            return None

        if task.state == TaskState.PAUSED:
            return None

        try:
            crawler_name, params = await self._resolve(task)
            if task.preset_id is not None:
                preset = await self.presets.get(task.preset_id)
                if not preset.enabled:
                    logger.info(f"Skipping task #{task_id}: preset #{preset.id} is disabled")
                    return None
            return await self.executor.run(task.id, crawler_name, params, triggered_by="SCHEDULER")
        except ConcurrencyConflict:
            logger.warning(f"Skipping firing of task #{task_id}: previous run still in progress")
        except CrawlerDisabledError as e:
            logger.info(f"Skipping task #{task_id}: {e}")
        except (NotFoundError, ValidationError) as e:
            logger.error(f"Cannot run task #{task_id}: {e}")
        return None

    # ---------------------------------------------- #
    # Command processing

    async def _submit(self, action: str, task_id: int, **payload) -> Any:
        if not self.running:
            # No timers in this process; only persisted state changes
            return await self._apply(action, task_id, payload)

        future = asyncio.get_running_loop().create_future()
        await self._commands.put(_Command(action, task_id, payload, future))
        return await future

    async def _process_commands(self) -> None:
        while True:
            command = await self._commands.get()
            try:
                result = await self._apply(command.action, command.task_id, command.payload)
            except Exception as e:
                if command.future and not command.future.done():
                    command.future.set_exception(e)
            else:
                if command.future and not command.future.done():
                    command.future.set_result(result)
            finally:
                self._commands.task_done()

    async def _set_state(self, task_id: int, **columns) -> ScheduledTask:
        columns["updated_at"] = to_db_time(utcnow())
        assignments = ", ".join(f"{col} = ?" for col in columns)
        await self.db.write(
            f"UPDATE scheduled_tasks SET {assignments} WHERE id = ?",
            tuple(columns.values()) + (task_id,),
        )
        return await self.get(task_id)

    async def _apply(self, action: str, task_id: int, payload: Dict[str, Any]) -> Any:
        if action == "sync":
            if self.crawler_state is not None:
                await self.crawler_state.load()
            await self._sync_timers()
            return None

        task = await self.get(task_id)

        if action == "arm":
            self._arm(task)
        elif action == "pause":
            if task.state != TaskState.PAUSED:
                task = await self._set_state(task_id, state=TaskState.PAUSED.value)
                logger.info(f"Paused task #{task_id}")
            self._arm(task)
        elif action == "resume":
            if task.state != TaskState.ACTIVE:
                task = await self._set_state(task_id, state=TaskState.ACTIVE.value)
                logger.info(f"Resumed task #{task_id}")
            self._arm(task)
        elif action == "reschedule":
            task = await self._set_state(task_id, cron_expression=payload["cron_expression"])
            logger.info(f"Rescheduled task #{task_id} to {task.cron_expression}")
            self._arm(task)
        elif action == "delete":
            await self.db.write("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
            self._disarm(task_id)
            logger.info(f"Deleted task #{task_id}")
            return None
        else:
            raise ValueError(f"Unknown scheduler command: {action}")
        return task

    def _arm(self, task: ScheduledTask) -> None:
        """Create, update, pause or resume the timer for *task*."""
        if not self.timer.running:
            return

        job_id = job_id_for(task.id)
        armed = self._armed.get(task.id)
        paused = task.state == TaskState.PAUSED

        if armed is None or not self.timer.has_job(job_id):
            self.timer.add_cron_job(
                self.fire, task.cron_expression, job_id=job_id, args=[task.id],
                paused=paused, name=task.name or job_id,
            )
        else:
            armed_cron, armed_state = armed
            if armed_cron != task.cron_expression:
                self.timer.reschedule_cron_job(job_id, task.cron_expression)
            if armed_state != task.state:
                if paused:
                    self.timer.pause_job(job_id)
                else:
                    self.timer.resume_job(job_id)
        self._armed[task.id] = (task.cron_expression, task.state)

    def _disarm(self, task_id: int) -> None:
        self._armed.pop(task_id, None)
        if self.timer.running:
            self.timer.remove_job(job_id_for(task_id))

    async def _sync_timers(self) -> None:
        tasks = await self.list()
        known = {task.id for task in tasks}
        for task_id in list(self._armed):
            if task_id not in known:
                self._disarm(task_id)
        for task in tasks:
            try:
                self._arm(task)
            except ValueError as e:
                logger.error(f"Cannot arm task #{task.id}: {e}")
