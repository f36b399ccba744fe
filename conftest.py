"""
Shared pytest fixtures: a temporary SQLite database per test plus fake crawl
sources, classifiers and record repositories.
"""

import asyncio
from typing import Iterable, List, Optional

import pytest

from regwatch.audit.async_judge import AsyncJudgeService
from regwatch.audit.blacklist import BlacklistStore
from regwatch.audit.pending import PendingJudgmentStore
from regwatch.audit.pipeline import ClassificationPipeline
from regwatch.crawler_registry import CrawlerRegistry
from regwatch.errors import ClassifierError
from regwatch.executor import Executor
from regwatch.infra.db import Database
from regwatch.interfaces import Classifier, CrawlSource
from regwatch.models import (
    CandidateRecord,
    Classification,
    CrawlSaved,
    FieldType,
    ParamField,
    ParamSchema,
    RiskLevel,
)
from regwatch.monitor import Monitor
from regwatch.presets import PresetStore
from regwatch.repository import InMemoryRecordRepository
from regwatch.schema_registry import SchemaRegistry
from regwatch.task_scheduler import TaskScheduler

CRAWLER = "US_510K"
VALID_PARAMS = {"deviceNames": ["skin analyzer"], "maxRecords": 100}
# VALID_PARAMS after schema defaults are applied
RUN_PARAMS = {**VALID_PARAMS, "batchSize": 100}


class FakeSource(CrawlSource):
    """Returns queued outcomes (or the default) and records every call."""

    def __init__(self, name: str = CRAWLER, outcome=None, outcomes: Optional[List] = None):
        self._name = name
        self.outcome = outcome or CrawlSaved(saved_count=3, skipped_count=1)
        self.outcomes = list(outcomes or [])
        self.calls: List[dict] = []
        self.gate: Optional[asyncio.Event] = None

    @property
    def name(self) -> str:
        return self._name

    async def crawl(self, params):
        self.calls.append(params)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else self.outcome
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeClassifier(Classifier):
    """Related when the text mentions one of *related_words*."""

    def __init__(self, related_words: Iterable[str] = ("skin",), fail_words: Iterable[str] = ()):
        self.related_words = tuple(related_words)
        self.fail_words = tuple(fail_words)
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def classify(self, text: str) -> Classification:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        lowered = text.lower()
        if any(w in lowered for w in self.fail_words):
            raise ClassifierError("classifier unavailable")
        related = any(w in lowered for w in self.related_words)
        return Classification(
            is_related=related,
            confidence=0.92 if related else 0.85,
            category="skin analysis" if related else "other",
            reason="test verdict",
        )


class RecordingRepository(InMemoryRecordRepository):
    """Remembers the size of every save_all batch."""

    def __init__(self, records=None):
        super().__init__(records)
        self.batches: List[int] = []

    async def save_all(self, records):
        self.batches.append(len(records))
        await super().save_all(records)


def us_510k_schema() -> ParamSchema:
    return ParamSchema(
        crawler_name=CRAWLER,
        fields=[
            ParamField(name="deviceNames", type=FieldType.STRING_LIST, required=True, min_value=1),
            ParamField(name="mode", type=FieldType.STRING, choices=["full", "incremental"]),
        ],
        country_code="US",
        crawler_type="510K",
        description="FDA 510(k)",
    ).with_common_fields()


def make_record(i: int, title: str = "Skin analyzer", manufacturer: str = "Acme Imaging Inc.",
                entity_type: str = "DEVICE_510K") -> CandidateRecord:
    return CandidateRecord(
        entity_type=entity_type,
        entity_id=str(i),
        title=title,
        manufacturer=manufacturer,
        description="",
        country="US",
        risk_level=RiskLevel.MEDIUM,
    )


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll an async predicate until it returns truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "regwatch-test.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def schemas():
    return SchemaRegistry()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def crawlers(schemas, source):
    registry = CrawlerRegistry(schemas)
    registry.register(source, us_510k_schema())
    return registry


@pytest.fixture
def presets(db, crawlers):
    return PresetStore(db, crawlers)


@pytest.fixture
def executor(db, crawlers):
    return Executor(db, crawlers)


@pytest.fixture
def monitor(db):
    return Monitor(db)


@pytest.fixture
async def scheduler(db, crawlers, presets, executor):
    task_scheduler = TaskScheduler(db, crawlers, presets, executor)
    await task_scheduler.start()
    yield task_scheduler
    await executor.shutdown()
    await task_scheduler.stop()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def repository():
    records = [make_record(i) for i in range(3)]
    records.append(make_record(3, title="Blood pressure monitor", manufacturer="Omnia Medical Co., Ltd."))
    records.append(make_record(4, title="InvalidSyn test unit", manufacturer="Spam Corp"))
    return RecordingRepository(records)


@pytest.fixture
def blacklist(db):
    return BlacklistStore(db)


@pytest.fixture
def pending(db, repository):
    return PendingJudgmentStore(db, repository)


@pytest.fixture
def pipeline(repository, classifier, blacklist, pending):
    return ClassificationPipeline(repository, classifier, blacklist, pending, max_concurrency=4)


@pytest.fixture
async def judge_service(db, pipeline):
    service = AsyncJudgeService(db, pipeline, batch_size=50)
    yield service
    await service.shutdown()
