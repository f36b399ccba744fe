"""
Named parameter presets per crawler.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from .crawler_registry import CrawlerRegistry
from .errors import NotFoundError, ValidationError
from .infra.db import Database, from_db_time, from_json, to_db_time, to_json
from .models import Preset, PresetRequest, PresetUpdate, utcnow

logger = logging.getLogger(__name__)


def preset_from_row(row) -> Preset:
    return Preset(
        id=row["id"],
        crawler_name=row["crawler_name"],
        name=row["name"],
        parameters=from_json(row["parameters"], {}),
        enabled=bool(row["enabled"]),
        description=row["description"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


class PresetStore:
    """CRUD over presets. Parameters are validated before anything is written."""

    def __init__(self, db: Database, crawlers: CrawlerRegistry):
        self.db = db
        self.crawlers = crawlers

    def _check(self, crawler_name: str, params: Mapping[str, Any]) -> None:
        if crawler_name not in self.crawlers:
            raise ValidationError("Unknown crawler", {"crawler_name": f"unknown crawler '{crawler_name}'"})
        self.crawlers.schemas.check(crawler_name, params)

    def validate(self, crawler_name: str, params: Optional[Mapping[str, Any]]) -> bool:
        return not self.crawlers.validate(crawler_name, params)

    async def create(self, request: PresetRequest) -> Preset:
        """Validate and persist a new preset."""
        if not request.name.strip():
            raise ValidationError("Preset name is required", {"name": "is required"})
        self._check(request.crawler_name, request.parameters)

        now = utcnow()
        preset_id = await self.db.insert("presets", {
            "crawler_name": request.crawler_name,
            "name": request.name.strip(),
            "parameters": to_json(request.parameters),
            "enabled": int(request.enabled),
            "description": request.description,
            "created_at": to_db_time(now),
            "updated_at": to_db_time(now),
        })
        logger.info(f"Created preset #{preset_id} '{request.name}' for {request.crawler_name}")
        return await self.get(preset_id)

    async def get(self, preset_id: int) -> Preset:
        row = await self.db.fetch_one("SELECT * FROM presets WHERE id = ?", (preset_id,))
        if row is None:
            raise NotFoundError("Preset", preset_id)
        return preset_from_row(row)

    async def list(self, crawler_name: Optional[str] = None, enabled: Optional[bool] = None) -> List[Preset]:
        clauses, params = [], []
        if crawler_name:
            clauses.append("crawler_name = ?")
            params.append(crawler_name)
        if enabled is not None:
            clauses.append("enabled = ?")
            params.append(int(enabled))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.db.fetch_all(f"SELECT * FROM presets {where} ORDER BY id", tuple(params))
        return [preset_from_row(row) for row in rows]

    async def update(self, preset_id: int, changes: PresetUpdate) -> Preset:
        """Apply changes; parameter changes are re-validated against the schema."""
        preset = await self.get(preset_id)

        updates: Dict[str, Any] = {}
        if changes.name is not None:
            if not changes.name.strip():
                raise ValidationError("Preset name is required", {"name": "is required"})
            updates["name"] = changes.name.strip()
        if changes.parameters is not None:
            self._check(preset.crawler_name, changes.parameters)
            updates["parameters"] = to_json(changes.parameters)
        if changes.enabled is not None:
            updates["enabled"] = int(changes.enabled)
        if changes.description is not None:
            updates["description"] = changes.description

        if not updates:
            return preset

        updates["updated_at"] = to_db_time(utcnow())
        assignments = ", ".join(f"{col} = ?" for col in updates)
        await self.db.write(
            f"UPDATE presets SET {assignments} WHERE id = ?",
            tuple(updates.values()) + (preset_id,),
        )
        logger.info(f"Updated preset #{preset_id}: {', '.join(k for k in updates if k != 'updated_at')}")
        return await self.get(preset_id)

    async def copy(self, preset_id: int, new_name: str) -> Preset:
        """Duplicate a preset. The copy starts disabled."""
        source = await self.get(preset_id)
        return await self.create(PresetRequest(
            crawler_name=source.crawler_name,
            name=new_name,
            parameters=source.parameters,
            enabled=False,
            description=f"Copied from {source.name}",
        ))

    async def delete(self, preset_id: int) -> None:
        """Delete a preset no scheduled task refers to."""
        rows = await self.db.fetch_all(
            "SELECT id FROM scheduled_tasks WHERE preset_id = ? ORDER BY id", (preset_id,)
        )
        if rows:
            task_ids = ", ".join(f"#{row['id']}" for row in rows)
            raise ValidationError(
                f"Preset #{preset_id} is used by scheduled tasks",
                {"preset_id": f"referenced by task(s) {task_ids}; delete them first"},
            )
        cursor = await self.db.write("DELETE FROM presets WHERE id = ?", (preset_id,))
        if not cursor.rowcount:
            raise NotFoundError("Preset", preset_id)
        logger.info(f"Deleted preset #{preset_id}")
