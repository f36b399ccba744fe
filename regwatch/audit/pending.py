"""
Staged classifier suggestions awaiting operator confirmation.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import NotFoundError
from ..infra.db import Database, from_db_time, from_json, to_db_time, to_json
from ..interfaces import RecordRepository
from ..models import (
    DEFAULT_MODULE_TYPE,
    ApplyResult,
    CandidateRecord,
    FilterCriteria,
    PendingJudgment,
    RiskLevel,
    utcnow,
)

logger = logging.getLogger(__name__)


def judgment_from_row(row) -> PendingJudgment:
    return PendingJudgment(
        id=row["id"],
        module_type=row["module_type"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        judge_result=from_json(row["judge_result"], {}),
        suggested_risk_level=RiskLevel(row["suggested_risk_level"]),
        suggested_remark=row["suggested_remark"],
        blacklist_keywords=from_json(row["blacklist_keywords"]),
        filtered_by_blacklist=bool(row["filtered_by_blacklist"]),
        created_at=from_db_time(row["created_at"]),
        expire_at=from_db_time(row["expire_at"]),
    )


class PendingJudgmentStore:
    """One row per (module_type, entity_type, entity_id); re-judging overwrites."""

    def __init__(self, db: Database, repository: Optional[RecordRepository] = None):
        self.db = db
        self.repository = repository

    async def upsert(self, judgment: PendingJudgment) -> None:
        await self.db.upsert(
            "pending_judgments",
            {
                "module_type": judgment.module_type,
                "entity_type": judgment.entity_type,
                "entity_id": judgment.entity_id,
                "judge_result": to_json(judgment.judge_result),
                "suggested_risk_level": judgment.suggested_risk_level.value,
                "suggested_remark": judgment.suggested_remark,
                "blacklist_keywords": to_json(judgment.blacklist_keywords),
                "filtered_by_blacklist": int(judgment.filtered_by_blacklist),
                "created_at": to_db_time(judgment.created_at),
                "expire_at": to_db_time(judgment.expire_at),
            },
            conflict_columns=["module_type", "entity_type", "entity_id"],
        )

    async def get(self, judgment_id: int) -> PendingJudgment:
        row = await self.db.fetch_one("SELECT * FROM pending_judgments WHERE id = ?", (judgment_id,))
        if row is None:
            raise NotFoundError("Pending judgment", judgment_id)
        return judgment_from_row(row)

    async def find(self, module_type: str, entity_type: str, entity_id: str) -> Optional[PendingJudgment]:
        row = await self.db.fetch_one(
            "SELECT * FROM pending_judgments WHERE module_type = ? AND entity_type = ? AND entity_id = ?",
            (module_type, entity_type, entity_id),
        )
        return judgment_from_row(row) if row else None

    async def list(
        self,
        module_type: str = DEFAULT_MODULE_TYPE,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PendingJudgment]:
        sql = "SELECT * FROM pending_judgments WHERE module_type = ?"
        params = [module_type]
        if entity_type:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self.db.fetch_all(sql, tuple(params))
        return [judgment_from_row(row) for row in rows]

    async def count(self, module_type: str = DEFAULT_MODULE_TYPE) -> int:
        return await self.db.fetch_value(
            "SELECT COUNT(*) FROM pending_judgments WHERE module_type = ?", (module_type,), default=0
        )

    async def count_by_entity_type(self, module_type: str = DEFAULT_MODULE_TYPE) -> Dict[str, int]:
        rows = await self.db.fetch_all(
            "SELECT entity_type, COUNT(*) AS n FROM pending_judgments WHERE module_type = ? GROUP BY entity_type",
            (module_type,),
        )
        return {row["entity_type"]: row["n"] for row in rows}

    async def statistics(self, module_type: str = DEFAULT_MODULE_TYPE) -> Dict[str, int]:
        judgments = await self.list(module_type)
        keywords = set()
        for j in judgments:
            if not j.filtered_by_blacklist:
                keywords.update(k.lower() for k in (j.blacklist_keywords or []))
        return {
            "total": len(judgments),
            "filtered_by_blacklist": sum(1 for j in judgments if j.filtered_by_blacklist),
            "high_risk": sum(1 for j in judgments if j.suggested_risk_level == RiskLevel.HIGH),
            "low_risk": sum(1 for j in judgments if j.suggested_risk_level == RiskLevel.LOW),
            "new_blacklist_keywords": len(keywords),
        }

    async def apply(self, judgment_ids: Iterable[int], confirmed_by: str = "operator") -> ApplyResult:
        """Write suggested levels and remarks to the records in one batch, then drop the judgments."""
        if self.repository is None:
            raise RuntimeError("No record repository configured")

        result = ApplyResult()
        ready: List[Tuple[int, CandidateRecord]] = []
        for judgment_id in judgment_ids:
            result.total += 1
            try:
                judgment = await self.get(judgment_id)
                records = await self.repository.find_by_criteria(FilterCriteria(
                    module_type=judgment.module_type,
                    entity_types=[judgment.entity_type],
                    entity_ids=[judgment.entity_id],
                    judge_all=True,
                ))
                if not records:
                    raise NotFoundError("Record", f"{judgment.entity_type}/{judgment.entity_id}")
            except Exception as e:
                logger.error(f"Failed to apply judgment #{judgment_id}: {e}")
                result.failed += 1
                result.errors.append(f"#{judgment_id}: {e}")
                continue
            ready.append((judgment_id, records[0].model_copy(update={
                "risk_level": judgment.suggested_risk_level,
                "remark": judgment.suggested_remark,
            })))

        if ready:
            try:
                await self.repository.save_all([record for _, record in ready])
            except Exception as e:
                logger.error(f"Failed to save {len(ready)} record(s): {e}")
                result.failed += len(ready)
                result.errors.extend(f"#{judgment_id}: {e}" for judgment_id, _ in ready)
            else:
                for judgment_id, _ in ready:
                    await self.db.write("DELETE FROM pending_judgments WHERE id = ?", (judgment_id,))
                result.applied += len(ready)

        logger.info(f"{confirmed_by} applied {result.applied}/{result.total} judgment(s)")
        return result

    async def discard(self, judgment_ids: Iterable[int]) -> int:
        discarded = 0
        for judgment_id in judgment_ids:
            cursor = await self.db.write("DELETE FROM pending_judgments WHERE id = ?", (judgment_id,))
            discarded += cursor.rowcount
        logger.info(f"Discarded {discarded} judgment(s)")
        return discarded

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Delete judgments whose review window has passed."""
        now = now or utcnow()
        cursor = await self.db.write(
            "DELETE FROM pending_judgments WHERE expire_at < ?", (to_db_time(now),)
        )
        if cursor.rowcount:
            logger.info(f"Expired {cursor.rowcount} pending judgment(s)")
        return cursor.rowcount
