"""
Blacklist pre-filter followed by AI classification of regulatory records.

Records matching a blacklist keyword are downgraded without a classifier call;
the remainder are classified one call per record. Results are either written
straight to the record repository or staged as pending judgments.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Sequence, Tuple

from ..interfaces import Classifier, RecordRepository
from ..models import (
    DEFAULT_MODULE_TYPE,
    PENDING_TTL_DAYS,
    AuditItem,
    CandidateRecord,
    ExecuteResult,
    FilterCriteria,
    PendingJudgment,
    PreviewResult,
    RiskLevel,
    StageResult,
    utcnow,
)
from .blacklist import BlacklistStore, KeywordSet, clean_manufacturer_name
from .pending import PendingJudgmentStore

logger = logging.getLogger(__name__)

BLACKLIST_CATEGORY = "blacklist filtered"


def build_remark(item: AuditItem) -> str:
    if item.blacklist_matched:
        return f"Blacklist match: '{item.matched_blacklist_keyword}', downgraded to LOW"
    parts = [
        f"AI judgment: {'related' if item.ai_label else 'unrelated'}",
        f"confidence {item.confidence * 100:.1f}%",
    ]
    if item.category:
        parts.append(f"category: {item.category}")
    if item.suggested_blacklist:
        parts.append(f"suggested blacklist: {', '.join(item.suggested_blacklist)}")
    return ", ".join(parts)


def to_pending(item: AuditItem, module_type: str, ttl_days: int = PENDING_TTL_DAYS) -> PendingJudgment:
    if item.blacklist_matched:
        judge_result = {
            "isRelated": False,
            "confidence": 1.0,
            "category": BLACKLIST_CATEGORY,
            "reason": f"matched blacklist keyword '{item.matched_blacklist_keyword}'",
        }
        keywords = [item.matched_blacklist_keyword]
    else:
        judge_result = {
            "isRelated": bool(item.ai_label),
            "confidence": item.confidence,
            "category": item.category,
            "reason": item.reason,
        }
        keywords = list(item.suggested_blacklist) or None

    now = utcnow()
    return PendingJudgment(
        module_type=module_type,
        entity_type=item.entity_type,
        entity_id=item.entity_id,
        judge_result=judge_result,
        suggested_risk_level=item.suggested_risk_level,
        suggested_remark=item.remark,
        blacklist_keywords=keywords,
        filtered_by_blacklist=item.blacklist_matched,
        created_at=now,
        expire_at=now + timedelta(days=ttl_days),
    )


class ClassificationPipeline:
    """Preview, execute and stage AI risk judgments."""

    def __init__(
        self,
        repository: RecordRepository,
        classifier: Classifier,
        blacklist: BlacklistStore,
        pending: PendingJudgmentStore,
        max_concurrency: int = 4,
        call_interval: float = 0.0,
        pending_ttl_days: int = PENDING_TTL_DAYS,
    ):
        self.repository = repository
        self.classifier = classifier
        self.blacklist = blacklist
        self.pending = pending
        self.call_interval = call_interval
        self.pending_ttl_days = pending_ttl_days
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def candidates(self, criteria: FilterCriteria) -> List[CandidateRecord]:
        records = await self.repository.find_by_criteria(criteria)
        limit = criteria.effective_limit
        if limit is not None:
            records = records[:limit]
        return records

    async def judge_record(self, record: CandidateRecord, keywords: KeywordSet) -> AuditItem:
        """Judge one record. Raises if the classifier call fails."""
        item = AuditItem(
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            title=record.title,
            manufacturer=record.manufacturer,
            current_risk_level=record.risk_level,
        )

        matched = keywords.match(*record.searchable_text)
        if matched:
            item.blacklist_matched = True
            item.matched_blacklist_keyword = matched
            item.confidence = 1.0
            item.category = BLACKLIST_CATEGORY
            item.suggested_risk_level = RiskLevel.LOW
            item.remark = build_remark(item)
            return item

        async with self._semaphore:
            verdict = await self.classifier.classify("\n".join(record.searchable_text))
            if self.call_interval:
                await asyncio.sleep(self.call_interval)

        item.ai_label = verdict.is_related
        item.confidence = verdict.confidence
        item.category = verdict.category
        item.reason = verdict.reason
        if verdict.is_related:
            item.suggested_risk_level = RiskLevel.HIGH
        else:
            item.suggested_risk_level = RiskLevel.LOW
            keyword = clean_manufacturer_name(record.manufacturer)
            if keyword and keyword not in keywords:
                item.suggested_blacklist = [keyword]
        item.remark = build_remark(item)
        return item

    async def judge_batch(
        self, records: Sequence[CandidateRecord], keywords: KeywordSet
    ) -> Tuple[List[AuditItem], int]:
        """Judge records concurrently; returns the items and the failure count."""
        results = await asyncio.gather(
            *(self.judge_record(record, keywords) for record in records),
            return_exceptions=True,
        )
        items, failed = [], 0
        for record, result in zip(records, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failed += 1
                logger.warning(f"Classification failed for {record.entity_type}/{record.entity_id}: {result}")
            else:
                items.append(result)
        return items, failed

    @staticmethod
    def summarize(items: List[AuditItem], failed: int) -> PreviewResult:
        suggested: Dict[str, str] = {}
        for item in items:
            for keyword in item.suggested_blacklist:
                suggested.setdefault(keyword.lower(), keyword)
        judged = [i for i in items if not i.blacklist_matched]
        return PreviewResult(
            total=len(items) + failed,
            blacklist_filtered=sum(1 for i in items if i.blacklist_matched),
            ai_judged=len(judged) + failed,
            ai_kept=sum(1 for i in judged if i.ai_label),
            ai_downgraded=sum(1 for i in judged if not i.ai_label),
            failed_count=failed,
            audit_items=items,
            suggested_blacklist=list(suggested.values()),
        )

    async def preview_with_blacklist_check(self, criteria: FilterCriteria) -> PreviewResult:
        """Judge matching records without writing anything."""
        keywords = await self.blacklist.snapshot()
        records = await self.candidates(criteria)
        logger.info(f"Previewing {len(records)} record(s) against {len(keywords)} blacklist keyword(s)")

        items, failed = await self.judge_batch(records, keywords)
        result = self.summarize(items, failed)
        logger.info(
            f"Preview done: total={result.total}, blacklisted={result.blacklist_filtered}, "
            f"kept={result.ai_kept}, downgraded={result.ai_downgraded}, failed={result.failed_count}"
        )
        return result

    async def execute_smart_audit(self, items: Sequence[AuditItem]) -> ExecuteResult:
        """Write judgments straight to the records: related items keep their level, others go LOW."""
        result = ExecuteResult()
        updates: List[CandidateRecord] = []
        kept = 0
        for item in items:
            try:
                records = await self.repository.find_by_criteria(FilterCriteria(
                    entity_types=[item.entity_type], entity_ids=[item.entity_id], judge_all=True,
                ))
                if not records:
                    raise LookupError(f"record {item.entity_type}/{item.entity_id} not found")
            except Exception as e:
                logger.error(f"Failed to update {item.entity_type}/{item.entity_id}: {e}")
                result.failed_count += 1
                continue
            if item.suggested_risk_level == RiskLevel.HIGH:
                updates.append(records[0].model_copy(update={"remark": item.remark}))
                kept += 1
            else:
                updates.append(records[0].model_copy(update={"risk_level": RiskLevel.LOW, "remark": item.remark}))

        if updates:
            try:
                await self.repository.save_all(updates)
            except Exception as e:
                logger.error(f"Failed to save {len(updates)} audited record(s): {e}")
                result.failed_count += len(updates)
            else:
                result.kept_count = kept
                result.downgraded_count = len(updates) - kept
        logger.info(
            f"Smart audit executed: kept={result.kept_count}, downgraded={result.downgraded_count}, "
            f"failed={result.failed_count}"
        )
        return result

    async def stage(self, items: Sequence[AuditItem], module_type: str = DEFAULT_MODULE_TYPE) -> StageResult:
        """Upsert one pending judgment per item."""
        result = StageResult()
        for item in items:
            try:
                await self.pending.upsert(to_pending(item, module_type, self.pending_ttl_days))
                result.saved_count += 1
            except Exception as e:
                logger.error(f"Failed to stage judgment for {item.entity_type}/{item.entity_id}: {e}")
                result.failed_count += 1
        return result

    async def judge_and_stage(self, criteria: FilterCriteria) -> Tuple[PreviewResult, StageResult]:
        preview = await self.preview_with_blacklist_check(criteria)
        staged = await self.stage(preview.audit_items, criteria.module_type)
        logger.info(f"Staged {staged.saved_count} judgment(s), {staged.failed_count} failed")
        return preview, staged

    async def accept_suggested_keywords(self, keywords: Sequence[str]) -> int:
        return await self.blacklist.add_keywords(keywords, source="ai-suggested")
