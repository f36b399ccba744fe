"""
Scheduler infrastructure for running cron-driven jobs.
"""

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from croniter import croniter


logger = logging.getLogger(__name__)


CRONTAB_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _crontab_weekday(value: str) -> int:
    """Crontab weekday number (0-7, 0 and 7 are Sunday) for a number or a name."""
    value = value.strip().lower()
    if value in CRONTAB_WEEKDAYS:
        return CRONTAB_WEEKDAYS.index(value)
    number = int(value)
    if not 0 <= number <= 7:
        raise ValueError(f"day of week out of range: {value}")
    return number


def crontab_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field as weekday names.

    APScheduler 3 numbers weekdays from Monday = 0, crontab from Sunday = 0.
    """
    if field in ("*", "?"):
        return "*"
    days = set()
    for part in field.split(","):
        base, _, step = part.partition("/")
        step_size = int(step) if step else 1
        if step_size < 1:
            raise ValueError(f"invalid step in day of week: {part}")
        if base == "*":
            first, last = 0, 6
        elif "-" in base:
            start, _, end = base.partition("-")
            first, last = _crontab_weekday(start), _crontab_weekday(end)
        else:
            first = _crontab_weekday(base)
            last = 6 if step else first
        if first > last:
            raise ValueError(f"invalid day-of-week range: {part}")
        days.update(day % 7 for day in range(first, last + 1, step_size))
    if len(days) == 7:
        return "*"
    return ",".join(CRONTAB_WEEKDAYS[day] for day in sorted(days))


def to_apscheduler_crontab(cron_expression: str) -> str:
    fields = cron_expression.split()
    fields[4] = crontab_day_of_week(fields[4])
    return " ".join(fields)


def validate_cron_expression(cron_expression: str) -> bool:
    """Validate a five-field cron expression using croniter."""
    if not cron_expression or len(cron_expression.split()) != 5:
        return False
    try:
        croniter(cron_expression)
        to_apscheduler_crontab(cron_expression)
        return True
    except (ValueError, KeyError) as e:
        logger.debug(f"Invalid cron expression '{cron_expression}': {e}")
        return False


class Scheduler:
    """Async timer wrapper around APScheduler with an in-memory job store.

    Durable schedule state lives in the application database; jobs here are
    re-armed from it at start-up.
    """

    def __init__(self, timezone: str = "UTC", misfire_grace_time: int = 60):
        # Missed firings are coalesced and never replayed after a pause
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': misfire_grace_time,
        }

        self.timezone = timezone
        self._scheduler = AsyncIOScheduler(
            job_defaults=job_defaults,
            timezone=timezone
        )
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the scheduler."""
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info(f"Scheduler started ({self.timezone})")

    async def stop(self) -> None:
        """Stop the scheduler."""
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler stopped")

    def _cron_trigger(self, cron_expression: str) -> CronTrigger:
        if not validate_cron_expression(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")
        return CronTrigger.from_crontab(to_apscheduler_crontab(cron_expression), timezone=self.timezone)

    def add_cron_job(
        self,
        func: Callable,
        cron_expression: str,
        job_id: str,
        args: Optional[List[Any]] = None,
        paused: bool = False,
        **kwargs
    ) -> None:
        """Add (or replace) a job that runs on a cron schedule."""
        trigger = self._cron_trigger(cron_expression)

        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            args=args or [],
            replace_existing=True,
            **kwargs
        )
        if paused:
            self._scheduler.pause_job(job_id)

        logger.info(f"Added cron job: {job_id} ({cron_expression}){' [paused]' if paused else ''}")

    def add_interval_job(
        self,
        func: Callable,
        seconds: int,
        job_id: str,
        **kwargs
    ) -> None:
        """Add a job that runs at regular intervals."""
        if seconds <= 0:
            raise ValueError("Interval must be a positive number of seconds")

        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds, timezone=self.timezone),
            id=job_id,
            replace_existing=True,
            **kwargs
        )

        logger.info(f"Added interval job: {job_id} (every {seconds}s)")

    def reschedule_cron_job(self, job_id: str, cron_expression: str) -> None:
        """Swap the trigger of an existing job, keeping its paused state."""
        trigger = self._cron_trigger(cron_expression)
        job = self._scheduler.get_job(job_id)
        if job is None:
            raise JobLookupError(job_id)
        was_paused = job.next_run_time is None
        self._scheduler.reschedule_job(job_id, trigger=trigger)
        if was_paused:
            self._scheduler.pause_job(job_id)
        logger.info(f"Rescheduled job: {job_id} ({cron_expression})")

    def pause_job(self, job_id: str) -> None:
        self._scheduler.pause_job(job_id)
        logger.info(f"Paused job: {job_id}")

    def resume_job(self, job_id: str) -> None:
        """Resume a job; the next firing is computed from now."""
        self._scheduler.resume_job(job_id)
        logger.info(f"Resumed job: {job_id}")

    def remove_job(self, job_id: str) -> bool:
        """Remove a job by ID. Returns False if it did not exist."""
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(f"Removed job: {job_id}")
        return True

    def has_job(self, job_id: str) -> bool:
        return self._scheduler.get_job(job_id) is not None

    def next_run_time(self, job_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(job_id)
        return job.next_run_time if job else None
