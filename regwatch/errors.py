"""
Error types raised by the platform.

Crawl failures and classifier failures are recorded on the run they belong to
and never surface through these types.
"""

from typing import Dict, Optional


class RegwatchError(Exception):
    """Base class for platform errors."""


class ValidationError(RegwatchError, ValueError):
    """Parameters or a cron expression failed validation."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, str]] = None):
        self.field_errors: Dict[str, str] = dict(field_errors or {})
        if self.field_errors:
            details = "; ".join(f"{k}: {v}" for k, v in self.field_errors.items())
            message = f"{message} ({details})"
        super().__init__(message)


class NotFoundError(RegwatchError, LookupError):
    """Referenced crawler, preset, task or judgment does not exist."""

    def __init__(self, kind: str, key):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class ConcurrencyConflict(RegwatchError):
    """A run was requested for a task that already has a RUNNING execution."""

    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id} is already running")


class CrawlerDisabledError(RegwatchError):
    """A run was requested for a disabled crawler."""

    def __init__(self, crawler_name: str):
        self.crawler_name = crawler_name
        super().__init__(f"Crawler is disabled: {crawler_name}")


class TaskAlreadyFinished(RegwatchError):
    """Cancel was requested for a judge task that is already COMPLETED or FAILED."""

    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} already finished with status {status}")


class ClassifierError(RegwatchError):
    """The classifier returned no usable verdict."""
