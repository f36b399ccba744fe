"""
Orchestrator wiring registries, stores, scheduler and the classification
pipeline together from configuration.
"""

import asyncio
import logging
from typing import Dict, Optional

from .audit.async_judge import AsyncJudgeService
from .audit.blacklist import BlacklistStore
from .audit.classifier import DEFAULT_TOPIC, LLMClassifier
from .audit.pending import PendingJudgmentStore
from .audit.pipeline import ClassificationPipeline
from .config import AppConfig, CrawlerConfig
from .crawler_registry import (
    CrawlerRegistry,
    CrawlerStateStore,
    import_object,
    import_source,
    load_entrypoints,
)
from .errors import ValidationError
from .executor import Executor
from .infra.db import Database
from .infra.http import HttpClient
from .interfaces import Classifier, CrawlSource, RecordRepository
from .models import ParamSchema, PresetRequest
from .monitor import Monitor
from .presets import PresetStore
from .repository import InMemoryRecordRepository
from .schema_registry import SchemaRegistry
from .task_scheduler import TaskScheduler

logger = logging.getLogger(__name__)


class Orchestrator:
    """Builds every component once and manages their lifecycle."""

    def __init__(
        self,
        config: AppConfig,
        repository: Optional[RecordRepository] = None,
        classifier: Optional[Classifier] = None,
        sources: Optional[Dict[str, CrawlSource]] = None,
    ):
        self.cfg = config
        self.db = Database(config.database.path)

        self.schemas = SchemaRegistry()
        self.crawlers = CrawlerRegistry(self.schemas)
        self.crawler_state = CrawlerStateStore(self.db, self.crawlers)
        self.presets = PresetStore(self.db, self.crawlers)
        self.executor = Executor(self.db, self.crawlers)
        self.scheduler = TaskScheduler(
            self.db,
            self.crawlers,
            self.presets,
            self.executor,
            timezone=config.scheduler.timezone,
            sync_seconds=config.scheduler.sync_seconds,
            crawler_state=self.crawler_state,
        )
        self.monitor = Monitor(self.db)

        self.repository = repository or self._load_repository()
        self.classifier = classifier or self._build_classifier()
        self.blacklist = BlacklistStore(self.db)
        self.pending = PendingJudgmentStore(self.db, self.repository)
        self.pipeline = ClassificationPipeline(
            self.repository,
            self.classifier,
            self.blacklist,
            self.pending,
            max_concurrency=config.judging.max_concurrency,
            call_interval=config.judging.call_interval,
            pending_ttl_days=config.judging.pending_ttl_days,
        )
        self.judge = AsyncJudgeService(
            self.db,
            self.pipeline,
            batch_size=config.judging.batch_size,
            batch_pause=config.judging.batch_pause,
        )

        self._register_crawlers(sources or {})
        self._opened = False
        self._running = False

    # ---------------------------------------------- #
    # Construction helpers

    def _load_repository(self) -> RecordRepository:
        if not self.cfg.repository:
            logger.warning("No record repository configured, using an in-memory repository")
            return InMemoryRecordRepository()
        cls = import_object(self.cfg.repository)
        return cls()

    def _build_classifier(self) -> Classifier:
        c = self.cfg.classifier
        http = HttpClient(bearer_token=c.api_key, max_retries=c.max_retries, timeout=c.timeout)
        return LLMClassifier(
            api_key=c.api_key,
            base_url=c.base_url,
            model=c.model,
            topic=c.topic or DEFAULT_TOPIC,
            temperature=c.temperature,
            http=http,
        )

    def _register_crawlers(self, sources: Dict[str, CrawlSource]) -> None:
        entry_points = load_entrypoints()
        if entry_points:
            logger.info(f"Discovered {len(entry_points)} crawl source(s) via entry points")

        for crawler_cfg in self.cfg.crawlers:
            try:
                source = sources.get(crawler_cfg.name) or self._instantiate(crawler_cfg, entry_points)
            except (ImportError, TypeError) as e:
                logger.error(f"Failed to load crawler {crawler_cfg.name}: {e}")
                continue
            self.crawlers.register(
                source,
                self._schema_for(crawler_cfg),
                enabled=crawler_cfg.enabled,
                country_code=crawler_cfg.country_code,
                crawler_type=crawler_cfg.crawler_type,
                description=crawler_cfg.description,
            )

        logger.info(f"Registered {len(self.crawlers.list())} crawler(s)")

    @staticmethod
    def _instantiate(crawler_cfg: CrawlerConfig, entry_points: Dict[str, type]) -> CrawlSource:
        cls = entry_points.get(crawler_cfg.source) or import_source(crawler_cfg.source)
        return cls(**crawler_cfg.options)

    @staticmethod
    def _schema_for(crawler_cfg: CrawlerConfig) -> ParamSchema:
        schema = ParamSchema(
            crawler_name=crawler_cfg.name,
            fields=crawler_cfg.fields,
            country_code=crawler_cfg.country_code,
            crawler_type=crawler_cfg.crawler_type,
            description=crawler_cfg.description,
        )
        return schema.with_common_fields() if crawler_cfg.common_fields else schema

    # ---------------------------------------------- #
    # Lifecycle

    async def open(self) -> None:
        """Connect storage and apply configured seed data."""
        if self._opened:
            return
        await self.db.connect()
        await self.crawler_state.load()
        if self.cfg.blacklist:
            await self.blacklist.add_keywords(self.cfg.blacklist, source="config")
        await self._seed_presets()
        self._opened = True

    async def _seed_presets(self) -> None:
        """Create configured presets and schedules that do not exist yet."""
        for preset_cfg in self.cfg.presets:
            if preset_cfg.crawler not in self.crawlers:
                logger.warning(f"Skipping preset '{preset_cfg.name}': unknown crawler {preset_cfg.crawler}")
                continue
            existing = [p for p in await self.presets.list(preset_cfg.crawler) if p.name == preset_cfg.name]
            try:
                if existing:
                    preset = existing[0]
                else:
                    preset = await self.presets.create(PresetRequest(
                        crawler_name=preset_cfg.crawler,
                        name=preset_cfg.name,
                        parameters=preset_cfg.parameters,
                        enabled=preset_cfg.enabled,
                        description=preset_cfg.description,
                    ))
                if preset_cfg.cron:
                    tasks = [t for t in await self.scheduler.list() if t.preset_id == preset.id]
                    if not tasks:
                        await self.scheduler.add(preset_cfg.cron, preset_id=preset.id, name=preset.name)
            except ValidationError as e:
                logger.error(f"Invalid preset '{preset_cfg.name}' in configuration: {e}")

    async def start(self) -> None:
        """Open storage, arm every task and register housekeeping jobs."""
        if self._running:
            return
        await self.open()
        await self.executor.recover_stale()
        await self.scheduler.start()
        self.scheduler.add_system_job(self.cleanup_pending, self.cfg.judging.cleanup_cron, "pending-cleanup")
        self._running = True
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        await self.judge.shutdown()
        await self.executor.shutdown()
        if self._running:
            await self.scheduler.stop()
            self._running = False
        if isinstance(self.classifier, LLMClassifier):
            await self.classifier.close()
        await self.db.close()
        self._opened = False
        logger.info("Orchestrator stopped")

    async def cleanup_pending(self) -> int:
        return await self.pending.cleanup_expired()

    async def run_until(self, stop_event: asyncio.Event) -> None:
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
