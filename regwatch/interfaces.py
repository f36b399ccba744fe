"""
Interfaces for the collaborators the platform drives but does not own.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from .models import CandidateRecord, Classification, CrawlOutcome, FilterCriteria


class CrawlSource(ABC):
    """Site-specific crawler.

    Implementations fetch and persist regulatory records on their own and only
    report counts back. Returning ``CrawlNoNewData`` signals that every fetched
    record was a duplicate; raising signals a genuine failure.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this source."""
        pass

    @abstractmethod
    async def crawl(self, params: Dict[str, Any]) -> CrawlOutcome:
        """Run one crawl with validated parameters."""
        pass


class Classifier(ABC):
    """Paid relevance classifier. Must tolerate concurrent calls."""

    @abstractmethod
    async def classify(self, text: str) -> Classification:
        """Classify a record's searchable text."""
        pass


class RecordRepository(ABC):
    """Regulatory record persistence."""

    @abstractmethod
    async def find_by_criteria(self, criteria: FilterCriteria) -> List[CandidateRecord]:
        pass

    @abstractmethod
    async def save(self, record: CandidateRecord) -> None:
        pass

    @abstractmethod
    async def save_all(self, records: List[CandidateRecord]) -> None:
        """Persist several records in one batch."""
        pass
