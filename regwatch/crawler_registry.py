"""
Crawler registry with entry-point and import-path discovery of crawl sources,
plus persisted enable/disable switches.
"""

import importlib
import importlib.metadata as imeta
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Type

from .errors import NotFoundError
from .infra.db import Database, to_db_time
from .interfaces import CrawlSource
from .models import CrawlerDefinition, ParamSchema, utcnow
from .schema_registry import SchemaRegistry

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "regwatch.crawlers"


def load_entrypoints(group: str = ENTRY_POINT_GROUP) -> Dict[str, Any]:
    """Load entry points for a given group."""
    classes = {}
    try:
        for ep in imeta.entry_points(group=group):
            classes[ep.name] = ep.load()
    except Exception as e:
        logger.warning(f"Failed to load entry points for {group}: {e}")
    return classes


def import_object(class_path: str) -> Any:
    """Import an attribute from 'package.module:Name' (or dotted 'package.module.Name').

    Raises:
        ImportError: If the module or attribute cannot be found
    """
    if ":" in class_path:
        module_name, class_name = class_path.split(":", 1)
    else:
        module_name, _, class_name = class_path.rpartition(".")
    if not module_name or not class_name:
        raise ImportError(f"Invalid source path '{class_path}', expected 'module:ClassName'")

    module = importlib.import_module(module_name)
    try:
        cls = getattr(module, class_name)
    except AttributeError:
        raise ImportError(f"Class '{class_name}' not found in module '{module_name}'") from None
    return cls


def import_source(class_path: str) -> Type[CrawlSource]:
    """Import a crawl source class.

    Raises:
        ImportError: If the module or class cannot be found
        TypeError: If the class is not a CrawlSource
    """
    cls = import_object(class_path)
    if not (isinstance(cls, type) and issubclass(cls, CrawlSource)):
        raise TypeError(f"{class_path} is not a CrawlSource subclass")
    return cls


class CrawlerRegistry:
    """Holds crawler definitions and the sources that run them.

    Lookups are plain dict reads; registration and enable/disable swap whole
    definitions under a lock.
    """

    def __init__(self, schemas: SchemaRegistry):
        self.schemas = schemas
        self._definitions: Dict[str, CrawlerDefinition] = {}
        self._sources: Dict[str, CrawlSource] = {}
        self._lock = threading.Lock()

    def register(
        self,
        source: CrawlSource,
        schema: ParamSchema,
        *,
        enabled: bool = True,
        name: Optional[str] = None,
        country_code: Optional[str] = None,
        crawler_type: Optional[str] = None,
        description: str = "",
    ) -> CrawlerDefinition:
        """Register a crawler. Registering an existing name returns the existing definition."""
        name = name or schema.crawler_name
        if schema.crawler_name != name:
            schema = schema.model_copy(update={"crawler_name": name})

        with self._lock:
            existing = self._definitions.get(name)
            if existing is not None:
                logger.debug(f"Crawler already registered: {name}")
                return existing

            registered_schema = self.schemas.register(schema)
            definition = CrawlerDefinition(
                name=name,
                enabled=enabled,
                param_schema=registered_schema,
                country_code=country_code or registered_schema.country_code,
                crawler_type=crawler_type or registered_schema.crawler_type,
                description=description or registered_schema.description,
            )
            self._definitions[name] = definition
            self._sources[name] = source

        logger.info(f"Registered crawler: {name} ({'enabled' if enabled else 'disabled'})")
        return definition

    def get(self, name: str) -> CrawlerDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            available = sorted(self._definitions)
            raise NotFoundError("Crawler", f"{name} (available: {available})")
        return definition

    def source(self, name: str) -> CrawlSource:
        self.get(name)
        return self._sources[name]

    def __contains__(self, name: str) -> bool:
        return name in self._definitions

    def list(self, enabled_only: bool = False) -> List[CrawlerDefinition]:
        definitions = sorted(self._definitions.values(), key=lambda d: d.name)
        if enabled_only:
            return [d for d in definitions if d.enabled]
        return definitions

    def by_country(self, country_code: str) -> List[CrawlerDefinition]:
        return [d for d in self.list() if (d.country_code or "").upper() == country_code.upper()]

    def by_type(self, crawler_type: str) -> List[CrawlerDefinition]:
        return [d for d in self.list() if (d.crawler_type or "").lower() == crawler_type.lower()]

    def is_enabled(self, name: str) -> bool:
        definition = self._definitions.get(name)
        return bool(definition and definition.enabled)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        with self._lock:
            definition = self._definitions.get(name)
            if definition is None:
                logger.warning(f"Cannot {'enable' if enabled else 'disable'} unknown crawler: {name}")
                return False
            self._definitions[name] = definition.model_copy(update={"enabled": enabled})
        logger.info(f"Crawler {name} {'enabled' if enabled else 'disabled'}")
        return True

    def enable(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def validate(self, name: str, params: Optional[Mapping[str, Any]]) -> Dict[str, str]:
        return self.schemas.validate(name, params)

    def statistics(self) -> Dict[str, Any]:
        definitions = self.list()
        by_country: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        for d in definitions:
            by_country[d.country_code or "UNKNOWN"] = by_country.get(d.country_code or "UNKNOWN", 0) + 1
            by_type[d.crawler_type or "UNKNOWN"] = by_type.get(d.crawler_type or "UNKNOWN", 0) + 1
        enabled = sum(1 for d in definitions if d.enabled)
        return {
            "total": len(definitions),
            "enabled": enabled,
            "disabled": len(definitions) - enabled,
            "by_country": by_country,
            "by_type": by_type,
        }


class CrawlerStateStore:
    """Persisted enable/disable switches, overlaid on the configured defaults."""

    def __init__(self, db: Database, registry: CrawlerRegistry):
        self.db = db
        self.registry = registry

    async def load(self) -> int:
        """Apply persisted switches to the registry. Returns how many changed."""
        rows = await self.db.fetch_all("SELECT crawler_name, enabled FROM crawler_state")
        changed = 0
        for row in rows:
            name, enabled = row["crawler_name"], bool(row["enabled"])
            if name not in self.registry or self.registry.is_enabled(name) == enabled:
                continue
            if enabled:
                self.registry.enable(name)
            else:
                self.registry.disable(name)
            changed += 1
        return changed

    async def set_enabled(self, name: str, enabled: bool) -> CrawlerDefinition:
        """Persist and apply a switch. Raises NotFoundError for unknown crawlers."""
        self.registry.get(name)
        await self.db.upsert(
            "crawler_state",
            {"crawler_name": name, "enabled": int(enabled), "updated_at": to_db_time(utcnow())},
            conflict_columns=["crawler_name"],
        )
        if enabled:
            self.registry.enable(name)
        else:
            self.registry.disable(name)
        return self.registry.get(name)
