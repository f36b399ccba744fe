"""
Tests for background judge tasks: batching, progress and cancellation.
"""

import asyncio

import pytest

from conftest import FakeClassifier, make_record, wait_until
from regwatch.audit.async_judge import AsyncJudgeService
from regwatch.audit.pipeline import ClassificationPipeline
from regwatch.errors import NotFoundError, TaskAlreadyFinished
from regwatch.interfaces import RecordRepository
from regwatch.models import FilterCriteria, JudgeTaskStatus
from regwatch.repository import InMemoryRecordRepository


@pytest.fixture
def large_repository():
    return InMemoryRecordRepository(
        make_record(i, title="Skin analyzer" if i % 2 else "Infusion pump") for i in range(5000)
    )


@pytest.fixture
async def large_service(db, large_repository, classifier, blacklist, pending):
    pipeline = ClassificationPipeline(large_repository, classifier, blacklist, pending, max_concurrency=8)
    service = AsyncJudgeService(db, pipeline, batch_size=50)
    yield service
    await service.shutdown()


async def test_small_task_completes(judge_service, pending):
    task_id = await judge_service.submit(FilterCriteria())
    task = await judge_service.wait(task_id)

    assert task.status == JudgeTaskStatus.COMPLETED
    assert task.total_count == 5
    assert task.progress == 5
    assert task.progress_percent == 100
    assert task.related_count == 3
    assert task.unrelated_count == 2
    assert task.staged_count == 5
    assert task.start_time is not None
    assert task.end_time is not None
    assert await pending.count() == 5


async def test_progress_advances_in_batches(large_service, monkeypatch, pending):
    reported = []
    save_progress = large_service._save_progress

    async def spy(task):
        reported.append(task.progress)
        await save_progress(task)

    monkeypatch.setattr(large_service, "_save_progress", spy)

    task_id = await large_service.submit(FilterCriteria(judge_all=True))
    task = await large_service.wait(task_id)

    assert task.status == JudgeTaskStatus.COMPLETED
    assert task.total_count == 5000
    assert task.progress == 5000
    assert reported == list(range(50, 5001, 50))
    assert task.related_count == 2500
    assert task.unrelated_count == 2500
    assert await pending.count() == 5000


async def test_cancel_finishes_in_flight_batch(large_service, classifier, pending):
    classifier.gate = asyncio.Event()
    task_id = await large_service.submit(FilterCriteria(judge_all=True))

    async def classifying():
        return len(classifier.calls) > 0

    await wait_until(classifying)

    cancelled = await large_service.cancel(task_id)
    assert cancelled.status == JudgeTaskStatus.CANCELLED
    assert cancelled.end_time is not None

    classifier.gate.set()
    task = await large_service.wait(task_id)

    assert task.status == JudgeTaskStatus.CANCELLED
    assert task.progress == 50
    assert task.staged_count == 50
    assert await pending.count() == 50
    assert len(classifier.calls) == 50

    # cancelling again is harmless
    assert (await large_service.cancel(task_id)).status == JudgeTaskStatus.CANCELLED


async def test_cancel_finished_or_unknown_task(judge_service):
    task_id = await judge_service.submit(FilterCriteria())
    await judge_service.wait(task_id)

    with pytest.raises(TaskAlreadyFinished):
        await judge_service.cancel(task_id)
    with pytest.raises(NotFoundError):
        await judge_service.cancel("no-such-task")
    with pytest.raises(NotFoundError):
        await judge_service.get_progress("no-such-task")


class BrokenRepository(RecordRepository):
    async def find_by_criteria(self, criteria):
        raise RuntimeError("record store unavailable")

    async def save(self, record):
        raise RuntimeError("record store unavailable")

    async def save_all(self, records):
        raise RuntimeError("record store unavailable")


async def test_repository_error_fails_task(db, blacklist, pending):
    pipeline = ClassificationPipeline(BrokenRepository(), FakeClassifier(), blacklist, pending)
    service = AsyncJudgeService(db, pipeline)

    task = await service.wait(await service.submit(FilterCriteria()))
    assert task.status == JudgeTaskStatus.FAILED
    assert task.error_message == "RuntimeError: record store unavailable"
    assert task.end_time is not None


async def test_list_tasks_newest_first(judge_service):
    first = await judge_service.submit(FilterCriteria())
    await judge_service.wait(first)
    second = await judge_service.submit(FilterCriteria(), task_type="RECALL_DATA")
    await judge_service.wait(second)

    tasks = await judge_service.list_tasks()
    assert [t.task_id for t in tasks] == [second, first]
    assert tasks[0].task_type == "RECALL_DATA"
    assert tasks[1].filter_params["module_type"] == "DEVICE_DATA"
