"""
In-memory record repository for local runs and tests.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .interfaces import RecordRepository
from .models import CandidateRecord, FilterCriteria

logger = logging.getLogger(__name__)


class InMemoryRecordRepository(RecordRepository):
    """Keeps candidate records in a dict keyed by (entity_type, entity_id)."""

    def __init__(self, records: Optional[Iterable[CandidateRecord]] = None):
        self._records: Dict[Tuple[str, str], CandidateRecord] = {}
        self._lock = asyncio.Lock()
        for record in records or []:
            self._records[(record.entity_type, record.entity_id)] = record

    async def find_by_criteria(self, criteria: FilterCriteria) -> List[CandidateRecord]:
        results = []
        for record in self._records.values():
            if criteria.entity_types and record.entity_type not in criteria.entity_types:
                continue
            if criteria.entity_ids and record.entity_id not in criteria.entity_ids:
                continue
            if criteria.country and record.country != criteria.country:
                continue
            if criteria.risk_level and record.risk_level != criteria.risk_level:
                continue
            results.append(record)
        return results

    async def save(self, record: CandidateRecord) -> None:
        async with self._lock:
            self._records[(record.entity_type, record.entity_id)] = record
        logger.debug(f"Saved record {record.entity_type}/{record.entity_id}")

    async def save_all(self, records: List[CandidateRecord]) -> None:
        async with self._lock:
            for record in records:
                self._records[(record.entity_type, record.entity_id)] = record
        logger.debug(f"Saved {len(records)} record(s)")

    def get(self, entity_type: str, entity_id: str) -> Optional[CandidateRecord]:
        return self._records.get((entity_type, entity_id))

    def __len__(self) -> int:
        return len(self._records)
