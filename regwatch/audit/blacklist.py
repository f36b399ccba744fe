"""
Blacklist keywords and manufacturer-name cleaning.
"""

import logging
import re
from typing import FrozenSet, Iterable, List, Optional

from ..infra.db import Database, to_db_time
from ..models import utcnow

logger = logging.getLogger(__name__)

MIN_KEYWORD_LENGTH = 3

# Legal-form suffixes stripped from manufacturer names before they are suggested
COMPANY_SUFFIXES = (
    "incorporated", "inc", "llc", "l.l.c", "ltd", "limited", "corp", "corporation",
    "co", "company", "gmbh", "ag", "sa", "s.a", "srl", "s.r.l", "spa", "s.p.a",
    "bv", "b.v", "nv", "plc", "pty", "kg", "oy", "ab", "as", "kk", "co ltd",
)

# Well-known device makers never suggested for blacklisting
PROTECTED_BRANDS = frozenset({
    "philips", "siemens", "ge healthcare", "medtronic", "abbott", "johnson & johnson",
    "boston scientific", "olympus", "canon", "fujifilm", "samsung", "lg",
})

_SUFFIX_PATTERN = re.compile(
    r"[\s,.]+(" + "|".join(re.escape(s) for s in sorted(COMPANY_SUFFIXES, key=len, reverse=True)) + r")\.?$",
    re.IGNORECASE,
)


def clean_manufacturer_name(name: Optional[str]) -> Optional[str]:
    """Strip legal-form suffixes; returns None for names unfit as a keyword."""
    if not name:
        return None
    cleaned = " ".join(name.split())
    # Suffixes can stack ("Foo Co., Ltd.")
    while True:
        stripped = _SUFFIX_PATTERN.sub("", cleaned).strip(" ,.")
        if stripped == cleaned:
            break
        cleaned = stripped
    if len(cleaned) < MIN_KEYWORD_LENGTH:
        return None
    if cleaned.lower() in PROTECTED_BRANDS:
        return None
    return cleaned


class KeywordSet:
    """Immutable snapshot of blacklist keywords with case-insensitive matching."""

    def __init__(self, keywords: Iterable[str] = ()):
        ordered = []
        seen = set()
        for keyword in keywords:
            keyword = (keyword or "").strip()
            if keyword and keyword.lower() not in seen:
                seen.add(keyword.lower())
                ordered.append(keyword)
        self._keywords = tuple(ordered)
        self._lowered = tuple(k.lower() for k in ordered)

    @property
    def keywords(self) -> List[str]:
        return list(self._keywords)

    @property
    def lowered(self) -> FrozenSet[str]:
        return frozenset(self._lowered)

    def match(self, *texts: Optional[str]) -> Optional[str]:
        """Return the first keyword contained in any of *texts*."""
        haystacks = [t.lower() for t in texts if t]
        if not haystacks:
            return None
        for keyword, lowered in zip(self._keywords, self._lowered):
            if any(lowered in text for text in haystacks):
                return keyword
        return None

    def __contains__(self, keyword: str) -> bool:
        return (keyword or "").strip().lower() in self._lowered

    def __len__(self) -> int:
        return len(self._keywords)


class BlacklistStore:
    """Persistent blacklist keywords."""

    def __init__(self, db: Database):
        self.db = db

    async def snapshot(self) -> KeywordSet:
        rows = await self.db.fetch_all("SELECT keyword FROM blacklist_keywords ORDER BY created_at, keyword")
        return KeywordSet(row["keyword"] for row in rows)

    async def add_keywords(self, keywords: Iterable[str], source: str = "manual") -> int:
        """Add keywords, skipping blanks and existing ones. Returns the number added."""
        existing = await self.snapshot()
        seen = set(existing.lowered)
        added = 0
        for keyword in keywords:
            keyword = (keyword or "").strip()
            if not keyword or keyword.lower() in seen:
                continue
            seen.add(keyword.lower())
            await self.db.write(
                "INSERT OR IGNORE INTO blacklist_keywords (keyword, source, created_at) VALUES (?, ?, ?)",
                (keyword, source, to_db_time(utcnow())),
            )
            added += 1
        if added:
            logger.info(f"Added {added} blacklist keyword(s) from {source}")
        return added

    async def remove_keywords(self, keywords: Iterable[str]) -> int:
        removed = 0
        for keyword in keywords:
            cursor = await self.db.write(
                "DELETE FROM blacklist_keywords WHERE keyword = ?", ((keyword or "").strip(),)
            )
            removed += cursor.rowcount
        if removed:
            logger.info(f"Removed {removed} blacklist keyword(s)")
        return removed
