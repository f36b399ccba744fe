"""
Tests for execution history, statistics and the system overview.
"""

from datetime import timedelta

import pytest

from conftest import CRAWLER, VALID_PARAMS
from regwatch.models import CrawlNoNewData, CrawlSaved, ExecutionStatus, utcnow
from regwatch.task_scheduler import TaskScheduler


@pytest.fixture
async def history(executor, source):
    source.outcomes = [
        CrawlSaved(saved_count=10, skipped_count=2),
        CrawlNoNewData(skipped_count=50),
        RuntimeError("boom"),
    ]
    records = [await executor.run(1, CRAWLER, VALID_PARAMS) for _ in range(3)]
    running = await executor.begin(2, CRAWLER, VALID_PARAMS)
    return records, running


async def test_running_tasks(monitor, history):
    _, running = history
    assert [r.id for r in await monitor.running_tasks()] == [running.id]


async def test_history_newest_first_with_paging(monitor, history):
    records, running = history

    page = await monitor.history(page=1, page_size=3)
    assert page.total == 4
    assert page.pages == 2
    assert [r.id for r in page.items] == [running.id] + [r.id for r in reversed(records)][:2]

    second = await monitor.history(page=2, page_size=3)
    assert [r.id for r in second.items] == [records[0].id]


async def test_history_filters(monitor, history):
    records, _ = history

    failed = await monitor.history(status=ExecutionStatus.FAILED)
    assert [r.id for r in failed.items] == [records[2].id]

    assert (await monitor.history(task_id=2)).total == 1
    assert (await monitor.history(crawler_name="EU_Recall")).total == 0
    assert (await monitor.history(since=utcnow() + timedelta(minutes=1))).total == 0
    assert (await monitor.history(until=utcnow() + timedelta(minutes=1))).total == 4


async def test_task_statistics(monitor, history):
    stats = await monitor.task_statistics(1)
    assert stats.total_runs == 3
    assert stats.success_count == 1
    assert stats.no_new_data_count == 1
    assert stats.failure_count == 1
    assert stats.success_rate == pytest.approx(0.6667)
    assert stats.total_saved == 10
    assert stats.total_skipped == 52
    assert stats.avg_duration_ms is not None
    assert stats.last_run.status == ExecutionStatus.FAILED

    # a running-only task has no finished runs yet
    running_only = await monitor.task_statistics(2)
    assert running_only.success_rate == 0.0
    assert running_only.avg_duration_ms is None

    empty = await monitor.task_statistics(99)
    assert empty.total_runs == 0
    assert empty.last_run is None


async def test_crawler_statistics(monitor, history):
    stats = await monitor.crawler_statistics(CRAWLER)
    assert stats.total_runs == 4
    assert stats.success_count == 2
    assert stats.failure_count == 1
    assert stats.success_rate == pytest.approx(0.6667)
    assert stats.last_run_time is not None


async def test_system_overview(monitor, history, db, crawlers, presets, executor):
    tasks = TaskScheduler(db, crawlers, presets, executor)
    await tasks.add("0 3 * * *", crawler_name=CRAWLER, parameters=VALID_PARAMS)
    paused = await tasks.add("0 4 * * *", crawler_name=CRAWLER, parameters=VALID_PARAMS)
    await tasks.pause(paused.id)

    overview = await monitor.system_overview()
    assert overview.total_tasks == 2
    assert overview.active_tasks == 1
    assert overview.paused_tasks == 1
    assert overview.total_runs == 4
    assert overview.running_count == 1
    assert overview.runs_last_24h == 4
    assert overview.failure_rate_last_24h == pytest.approx(0.3333)
    assert overview.runs_by_status == {"SUCCESS": 1, "NO_NEW_DATA": 1, "FAILED": 1, "RUNNING": 1}
