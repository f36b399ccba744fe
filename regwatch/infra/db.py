"""
Database infrastructure with SQLite and async support.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


logger = logging.getLogger(__name__)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialise a datetime as a sortable ISO string."""
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, ensure_ascii=False)


def from_json(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)


MIGRATIONS: List[Tuple[int, List[str]]] = [
    (1, [
        """
        CREATE TABLE IF NOT EXISTS presets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            crawler_name TEXT NOT NULL,
            name TEXT NOT NULL,
            parameters TEXT NOT NULL DEFAULT '{}',
            enabled INTEGER NOT NULL DEFAULT 1,
            description TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_presets_crawler ON presets(crawler_name)",
        """
        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL DEFAULT '',
            preset_id INTEGER,
            crawler_name TEXT NOT NULL,
            parameters TEXT,
            cron_expression TEXT NOT NULL,
            state TEXT NOT NULL DEFAULT 'ACTIVE',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS execution_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id INTEGER NOT NULL,
            crawler_name TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            status TEXT NOT NULL,
            saved_count INTEGER NOT NULL DEFAULT 0,
            skipped_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            parameters TEXT NOT NULL DEFAULT '{}',
            triggered_by TEXT NOT NULL DEFAULT 'SCHEDULER',
            manual INTEGER NOT NULL DEFAULT 0
        )
        """,
        # At most one RUNNING execution per task
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_execution_running
        ON execution_records(task_id) WHERE status = 'RUNNING'
        """,
        "CREATE INDEX IF NOT EXISTS ix_execution_task ON execution_records(task_id, start_time)",
        "CREATE INDEX IF NOT EXISTS ix_execution_crawler ON execution_records(crawler_name, start_time)",
        """
        CREATE TABLE IF NOT EXISTS pending_judgments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            module_type TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            judge_result TEXT NOT NULL DEFAULT '{}',
            suggested_risk_level TEXT NOT NULL,
            suggested_remark TEXT NOT NULL DEFAULT '',
            blacklist_keywords TEXT,
            filtered_by_blacklist INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            expire_at TEXT NOT NULL,
            UNIQUE (module_type, entity_type, entity_id)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS ai_judge_tasks (
            task_id TEXT PRIMARY KEY,
            task_type TEXT NOT NULL,
            status TEXT NOT NULL,
            filter_params TEXT NOT NULL DEFAULT '{}',
            progress INTEGER NOT NULL DEFAULT 0,
            total_count INTEGER NOT NULL DEFAULT 0,
            related_count INTEGER NOT NULL DEFAULT 0,
            unrelated_count INTEGER NOT NULL DEFAULT 0,
            blacklist_filtered_count INTEGER NOT NULL DEFAULT 0,
            failed_count INTEGER NOT NULL DEFAULT 0,
            staged_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            created_at TEXT NOT NULL,
            start_time TEXT,
            end_time TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS blacklist_keywords (
            keyword TEXT PRIMARY KEY COLLATE NOCASE,
            source TEXT NOT NULL DEFAULT 'manual',
            created_at TEXT NOT NULL
        )
        """,
    ]),
    (2, [
        # Process that inserted a RUNNING record
        "ALTER TABLE execution_records ADD COLUMN owner TEXT",
        """
        CREATE TABLE IF NOT EXISTS crawler_state (
            crawler_name TEXT PRIMARY KEY,
            enabled INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
    ]),
]


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: str = "regwatch.db"):
        # Handle SQLite URL format if provided
        if db_path.startswith("sqlite"):
            # Handle sqlite+aiosqlite:///path format
            if "///" in db_path:
                actual_path = db_path.split("///")[-1]
            else:
                actual_path = db_path.split("//")[-1]
            self.db_path = Path(actual_path)
        else:
            self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        if self._connection:
            return

        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Open connection with a longer busy timeout
        self._connection = await aiosqlite.connect(self.db_path, timeout=30)
        self._connection.row_factory = aiosqlite.Row
        # Improve concurrency: use WAL journal mode and set busy timeout (ms)
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA busy_timeout=30000;")
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement."""
        if not self._connection:
            await self.connect()
        return await self._connection.execute(sql, params)

    async def write(self, sql: str, params: Tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        """Execute a data-modifying statement and commit it."""
        cursor = await self.execute(sql, params)
        await self._connection.commit()
        return cursor

    async def commit(self) -> None:
        """Commit the open transaction, releasing the write lock after a failed statement."""
        if self._connection:
            await self._connection.commit()

    async def insert(self, table: str, data: Dict[str, Any]) -> int:
        """Insert a row and return its rowid."""
        columns = list(data.keys())
        placeholders = ", ".join("?" * len(columns))
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        cursor = await self.write(sql, tuple(data.values()))
        return cursor.lastrowid

    async def fetch_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        """Fetch one row."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        """Fetch all rows."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchall()

    async def fetch_value(self, sql: str, params: Tuple[Any, ...] = (), default: Any = None) -> Any:
        """Fetch the first column of the first row."""
        row = await self.fetch_one(sql, params)
        if row is None or row[0] is None:
            return default
        return row[0]

    async def upsert(
        self,
        table: str,
        data: Dict[str, Any],
        conflict_columns: List[str],
        keep_columns: Optional[List[str]] = None,
    ) -> None:
        """Upsert data into a table.

        Columns in *keep_columns* are written on insert but left untouched when
        an existing row is updated.
        """
        columns = list(data.keys())
        placeholders = ", ".join("?" * len(columns))
        values = list(data.values())
        keep = set(conflict_columns) | set(keep_columns or [])

        # Build the conflict resolution clause
        update_columns = [col for col in columns if col not in keep]
        if update_columns:
            update_clause = ", ".join(f"{col} = excluded.{col}" for col in update_columns)
            conflict_clause = f"ON CONFLICT({', '.join(conflict_columns)}) DO UPDATE SET {update_clause}"
        else:
            conflict_clause = f"ON CONFLICT({', '.join(conflict_columns)}) DO NOTHING"

        sql = f"""
            INSERT INTO {table} ({', '.join(columns)})
            VALUES ({placeholders})
            {conflict_clause}
        """

        # Execute and immediately commit to persist data
        await self.write(sql, tuple(values))

    async def _run_migrations(self) -> None:
        """Run database migrations."""
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor = await self._connection.execute("SELECT MAX(version) FROM migrations")
        row = await cursor.fetchone()
        current = row[0] or 0

        for version, statements in MIGRATIONS:
            if version <= current:
                continue
            for statement in statements:
                await self._connection.execute(statement)
            await self._connection.execute("INSERT INTO migrations (version) VALUES (?)", (version,))
            logger.info(f"Applied database migration {version}")
        await self._connection.commit()
