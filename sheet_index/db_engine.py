from __future__ import annotations

import os
import json
import aiosqlite
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from sheet_index.records import SheetIndexRow


# -------------------------
# Configuration
# -------------------------
@dataclass
class DBConfig:
    database_url: str = field(default_factory=lambda: os.environ.get("SHEET_INDEX_DB_PATH", "sheet_index.db"))
    pool_size: int = field(default_factory=lambda: int(os.environ.get("DB_POOL_SIZE", "3")))
    connect_timeout_s: float = field(default_factory=lambda: float(os.environ.get("DB_CONNECT_TIMEOUT", "10.0")))
    retry_attempts: int = field(default_factory=lambda: int(os.environ.get("DB_RETRY_ATTEMPTS", "3")))
    retry_delay_s: float = field(default_factory=lambda: float(os.environ.get("DB_RETRY_DELAY_S", "0.2")))
    enable_logging: bool = True
    log_level: int = logging.INFO


# -------------------------
# Logging
# -------------------------
def _setup_logger(cfg: DBConfig) -> logging.Logger:
    logger = logging.getLogger("DBEngine")
    if not logger.handlers:
        h = logging.StreamHandler()
        fmt = "[DBEngine] %(asctime)s %(levelname)s - %(message)s"
        h.setFormatter(logging.Formatter(fmt))
        logger.addHandler(h)
    logger.setLevel(cfg.log_level if cfg.enable_logging else logging.CRITICAL)
    return logger


# -------------------------
# Schema Definition
# -------------------------
_SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

-- one row per page per job, source_index is the 0-based page position
CREATE TABLE IF NOT EXISTS sheet_index (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    job_id TEXT NOT NULL,
    source_index INTEGER NOT NULL CHECK (source_index >= 0),
    sheet_number TEXT,
    sheet_title TEXT,
    discipline TEXT,
    sheet_kind TEXT NOT NULL DEFAULT 'unknown',
    confidence REAL NOT NULL DEFAULT 0 CHECK (confidence >= 0 AND confidence <= 1),
    extraction_source TEXT NOT NULL DEFAULT 'unknown'
        CHECK (extraction_source IN ('vector_text','vision_titleblock','template_fields','fail_crop','unknown')),
    extraction_notes TEXT, -- JSON as TEXT
    sheet_render_asset_path TEXT,
    title_block_asset_path TEXT,
    crop_asset_path TEXT,
    crop_valid INTEGER NOT NULL DEFAULT 0,
    crop_reason TEXT,
    crop_strategy TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    flag_for_review INTEGER NOT NULL DEFAULT 0,
    manual_flag INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(job_id, source_index)
);

-- document readiness report, one per job
CREATE TABLE IF NOT EXISTS preflight_reports (
    job_id TEXT PRIMARY KEY,
    project_id TEXT,
    status TEXT NOT NULL CHECK (status IN ('PASS','PASS_WITH_LIMITATIONS','FAIL')),
    report_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- title-block field template per discipline, calibrated once per job
CREATE TABLE IF NOT EXISTS titleblock_templates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT,
    job_id TEXT NOT NULL,
    discipline TEXT NOT NULL,
    template_json TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0 CHECK (confidence >= 0 AND confidence <= 1),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(job_id, discipline)
);

CREATE INDEX IF NOT EXISTS idx_sheet_index_project ON sheet_index(project_id);
CREATE INDEX IF NOT EXISTS idx_sheet_index_review ON sheet_index(job_id, flag_for_review, manual_flag);
"""


def schema_statements(sql: str = _SCHEMA_SQL) -> List[str]:
    """Split a schema script into statements, dropping `--` comments first."""
    lines = [line.split("--", 1)[0] for line in sql.splitlines()]
    return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]


_SHEET_COLUMNS = [
    "project_id", "job_id", "source_index", "sheet_number", "sheet_title", "discipline",
    "sheet_kind", "confidence", "extraction_source", "extraction_notes",
    "sheet_render_asset_path", "title_block_asset_path", "crop_asset_path",
    "crop_valid", "crop_reason", "crop_strategy", "attempt_count",
    "flag_for_review", "manual_flag",
]
_UPDATE_COLUMNS = [c for c in _SHEET_COLUMNS if c not in ("job_id", "source_index")] + ["updated_at"]

_UPSERT_SHEET_SQL = (
    "INSERT INTO sheet_index(" + ", ".join(_SHEET_COLUMNS) + ", created_at, updated_at) "
    "VALUES(" + ", ".join("?" for _ in _SHEET_COLUMNS) + ", ?, ?) "
    "ON CONFLICT(job_id, source_index) DO UPDATE SET "
    + ", ".join(f"{c}=excluded.{c}" for c in _UPDATE_COLUMNS)
)


# -------------------------
# Helper utilities
# -------------------------
def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# -------------------------
# Exceptions
# -------------------------
class DBEngineError(Exception): pass
class TransactionError(DBEngineError): pass
class MigrationError(DBEngineError): pass
class NotFoundError(DBEngineError): pass


# -------------------------
# Simple connection pool wrapper (aiosqlite doesn't include pool natively)
# N connections reused through an asyncio.Queue.
# -------------------------
class AioSqlitePool:
    def __init__(self, db_path: str, size: int = 3, timeout: float = 10.0):
        self._db_path = db_path
        self._size = max(1, size)
        self._timeout = timeout
        self._pool: Optional[asyncio.Queue] = None
        self._initialized = False

    async def init(self):
        if self._initialized:
            return
        self._pool = asyncio.Queue(maxsize=self._size)
        uri_flag = isinstance(self._db_path, str) and (self._db_path.startswith("file:") or ("mode=" in self._db_path))
        for _ in range(self._size):
            conn = await aiosqlite.connect(self._db_path, timeout=self._timeout, uri=uri_flag)
            conn.row_factory = aiosqlite.Row
            # WAL lets readers run alongside the batch writer
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute("PRAGMA foreign_keys=ON;")
            await conn.commit()
            await self._pool.put(conn)
        self._initialized = True

    async def acquire(self) -> aiosqlite.Connection:
        if not self._initialized:
            await self.init()
        assert self._pool is not None
        return await self._pool.get()

    async def release(self, conn: aiosqlite.Connection):
        assert self._pool is not None
        await self._pool.put(conn)

    async def close(self):
        if not self._initialized or self._pool is None:
            return
        while not self._pool.empty():
            conn = await self._pool.get()
            try:
                await conn.close()
            except (aiosqlite.Error, ValueError) as e:
                logging.getLogger("DBEngine").warning("Error closing pooled connection: %s", e)
        self._initialized = False


# -------------------------
# DatabaseManager
# -------------------------
class DatabaseManager:
    """
    aiosqlite persistence adapter for sheet-index rows, preflight reports and
    title-block templates.

    Implements the pipeline's store port (`upsert_sheet_rows`,
    `fetch_sheet_index` and the template pair). Re-running a job overwrites its
    rows in place.
    """

    def __init__(self, cfg: Optional[DBConfig] = None):
        self.cfg = cfg or DBConfig()
        self.logger = _setup_logger(self.cfg)
        self._pool = AioSqlitePool(self.cfg.database_url, size=self.cfg.pool_size, timeout=self.cfg.connect_timeout_s)
        self._migrations_applied = False

    async def init(self):
        await self._pool.init()
        await self.apply_migrations()

    async def close(self):
        await self._pool.close()

    async def __aenter__(self) -> "DatabaseManager":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def apply_migrations(self):
        """Apply the baseline schema inside a transaction."""
        if self._migrations_applied:
            return
        conn = await self._pool.acquire()
        try:
            await conn.execute("BEGIN")
            for stmt in schema_statements():
                await conn.execute(stmt)
            await conn.commit()
            self._migrations_applied = True
            self.logger.info("Applied DB schema migrations.")
        except aiosqlite.Error as e:
            await conn.rollback()
            raise MigrationError(f"Failed to apply migrations: {e}") from e
        finally:
            await self._pool.release(conn)

    # Low-level helpers
    async def _execute_with_retry(self, func, *args, **kwargs):
        attempts = 0
        last_exc = None
        while attempts < max(1, self.cfg.retry_attempts):
            try:
                return await func(*args, **kwargs)
            except aiosqlite.OperationalError as e:
                last_exc = e
                attempts += 1
                self.logger.warning("OperationalError, retrying %d/%d: %s", attempts, self.cfg.retry_attempts, e)
                await asyncio.sleep(self.cfg.retry_delay_s)
        raise DBEngineError(f"Operation failed after retries: {last_exc}")

    # Context manager for transactions
    class _tx:
        def __init__(self, outer: "DatabaseManager"):
            self.outer = outer
            self.conn: Optional[aiosqlite.Connection] = None

        async def __aenter__(self):
            self.conn = await self.outer._pool.acquire()
            await self.conn.execute("BEGIN")
            return self.conn

        async def __aexit__(self, exc_type, exc, tb):
            try:
                if exc:
                    await self.conn.rollback()
                else:
                    await self.conn.commit()
            finally:
                await self.outer._pool.release(self.conn)

    def transaction(self):
        return DatabaseManager._tx(self)

    # -------------------------
    # sheet_index
    # -------------------------
    @staticmethod
    def _row_params(row: SheetIndexRow, now: str) -> List[Any]:
        rec = row.to_record()
        return [rec[c] for c in _SHEET_COLUMNS] + [now, now]

    async def _write_batch(self, params: List[List[Any]]):
        try:
            async with self.transaction() as conn:
                await conn.executemany(_UPSERT_SHEET_SQL, params)
        except aiosqlite.OperationalError:
            raise
        except aiosqlite.Error as e:
            raise TransactionError(f"Sheet batch upsert failed: {e}") from e

    async def upsert_sheet_rows(self, rows: List[SheetIndexRow], batch_size: int = 50) -> int:
        """Upsert rows on (job_id, source_index), one transaction per batch. Returns rows written."""
        if not rows:
            return 0
        batch_size = max(1, batch_size)
        now = now_iso()
        written = 0
        for start in range(0, len(rows), batch_size):
            batch = rows[start:start + batch_size]
            params = [self._row_params(r, now) for r in batch]
            await self._execute_with_retry(self._write_batch, params)
            written += len(batch)
            self.logger.debug("Upserted sheet rows %d-%d", start, start + len(batch) - 1)
        self.logger.info("Persisted %d sheet rows for job %s", written, rows[0].job_id)
        return written

    async def fetch_sheet_index(self, job_id: str) -> List[SheetIndexRow]:
        conn = await self._pool.acquire()
        try:
            cur = await conn.execute(
                "SELECT " + ", ".join(_SHEET_COLUMNS) + " FROM sheet_index WHERE job_id = ? ORDER BY source_index ASC",
                (job_id,),
            )
            records = await cur.fetchall()
            await cur.close()
        finally:
            await self._pool.release(conn)
        return [SheetIndexRow.from_record(dict(r)) for r in records]

    async def count_sheet_rows(self, job_id: str) -> int:
        conn = await self._pool.acquire()
        try:
            cur = await conn.execute("SELECT COUNT(*) FROM sheet_index WHERE job_id = ?", (job_id,))
            row = await cur.fetchone()
            await cur.close()
        finally:
            await self._pool.release(conn)
        return int(row[0]) if row else 0

    async def delete_job_rows(self, job_id: str) -> int:
        async with self.transaction() as conn:
            cur = await conn.execute("DELETE FROM sheet_index WHERE job_id = ?", (job_id,))
            deleted = cur.rowcount
            await conn.execute("DELETE FROM preflight_reports WHERE job_id = ?", (job_id,))
            await conn.execute("DELETE FROM titleblock_templates WHERE job_id = ?", (job_id,))
        self.logger.info("Deleted %d sheet rows for job %s", deleted, job_id)
        return deleted

    # -------------------------
    # preflight_reports
    # -------------------------
    async def upsert_preflight_report(self, job_id: str, project_id: Optional[str], report: Dict[str, Any]):
        now = now_iso()
        async with self.transaction() as conn:
            await conn.execute("""
                INSERT INTO preflight_reports(job_id, project_id, status, report_json, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                  project_id=excluded.project_id,
                  status=excluded.status,
                  report_json=excluded.report_json,
                  updated_at=excluded.updated_at
            """, (job_id, project_id, report["status"], json.dumps(report, ensure_ascii=False, default=str), now, now))

    async def fetch_preflight_report(self, job_id: str) -> Dict[str, Any]:
        conn = await self._pool.acquire()
        try:
            cur = await conn.execute("SELECT report_json FROM preflight_reports WHERE job_id = ?", (job_id,))
            row = await cur.fetchone()
            await cur.close()
        finally:
            await self._pool.release(conn)
        if not row:
            raise NotFoundError(f"No preflight report for job {job_id}")
        return json.loads(row[0])

    # -------------------------
    # titleblock_templates
    # -------------------------
    async def upsert_titleblock_template(self, project_id: Optional[str], job_id: str, template: Dict[str, Any]):
        now = now_iso()
        async with self.transaction() as conn:
            await conn.execute("""
                INSERT INTO titleblock_templates(project_id, job_id, discipline, template_json, confidence, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id, discipline) DO UPDATE SET
                  project_id=excluded.project_id,
                  template_json=excluded.template_json,
                  confidence=excluded.confidence,
                  updated_at=excluded.updated_at
            """, (
                project_id, job_id, template["discipline"],
                json.dumps(template, ensure_ascii=False, default=str), float(template.get("confidence") or 0.0),
                now, now,
            ))

    async def fetch_titleblock_template(self, job_id: str, discipline: str) -> Optional[Dict[str, Any]]:
        conn = await self._pool.acquire()
        try:
            cur = await conn.execute(
                "SELECT template_json FROM titleblock_templates WHERE job_id = ? AND discipline = ?",
                (job_id, discipline),
            )
            row = await cur.fetchone()
            await cur.close()
        finally:
            await self._pool.release(conn)
        return json.loads(row[0]) if row else None
