"""Storage backend: Protocol definition, SQLite implementation, factory."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterator, ClassVar, Iterable, Protocol, runtime_checkable

import aiosqlite

from solesync.core.config import StorageConfig
from solesync.core.exceptions import StorageError
from solesync.core.models import (
    JobRun,
    PriceSnapshot,
    Provider,
    ProviderMapping,
    SizeSystem,
    ensure_utc,
    normalize_sku,
    utcnow,
)

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

# Columns shared by price_snapshots, latest_prices and the archive table.
SNAPSHOT_COLUMNS = (
    "provider",
    "provider_source",
    "provider_product_id",
    "provider_variant_id",
    "sku",
    "size_key",
    "size_numeric",
    "size_system",
    "currency_code",
    "region_code",
    "is_flex",
    "is_consigned",
    "lowest_ask",
    "highest_bid",
    "last_sale_price",
    "ask_count",
    "bid_count",
    "sales_last_72h",
    "sales_last_30d",
    "snapshot_at",
)

SNAPSHOT_DIMENSIONS = (
    "provider",
    "provider_product_id",
    "provider_variant_id",
    "size_key",
    "currency_code",
    "region_code",
    "is_flex",
    "is_consigned",
)

SNAPSHOT_COLUMNS_DDL = """
    provider TEXT NOT NULL,
    provider_source TEXT NOT NULL,
    provider_product_id TEXT NOT NULL,
    provider_variant_id TEXT NOT NULL DEFAULT '',
    sku TEXT NOT NULL,
    size_key TEXT NOT NULL,
    size_numeric REAL,
    size_system TEXT,
    currency_code TEXT NOT NULL,
    region_code TEXT NOT NULL DEFAULT '',
    is_flex INTEGER NOT NULL DEFAULT 0,
    is_consigned INTEGER NOT NULL DEFAULT 0,
    lowest_ask TEXT,
    highest_bid TEXT,
    last_sale_price TEXT,
    ask_count INTEGER,
    bid_count INTEGER,
    sales_last_72h INTEGER,
    sales_last_30d INTEGER,
    snapshot_at TEXT NOT NULL"""


# --- Value codecs ---


def format_ts(value: datetime) -> str:
    """Fixed-width UTC text so lexical order equals time order."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def format_decimal(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def parse_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def row_to_snapshot(row: aiosqlite.Row) -> PriceSnapshot:
    """Build a PriceSnapshot from a price_snapshots-shaped row."""
    keys = row.keys()
    return PriceSnapshot(
        id=row["snapshot_id"] if "snapshot_id" in keys else row["id"],
        provider=Provider(row["provider"]),
        provider_source=row["provider_source"],
        provider_product_id=row["provider_product_id"],
        provider_variant_id=row["provider_variant_id"] or None,
        sku=row["sku"],
        size_key=row["size_key"],
        size_numeric=row["size_numeric"],
        size_system=SizeSystem(row["size_system"]) if row["size_system"] else None,
        currency_code=row["currency_code"],
        region_code=row["region_code"],
        is_flex=bool(row["is_flex"]),
        is_consigned=bool(row["is_consigned"]),
        lowest_ask=parse_decimal(row["lowest_ask"]),
        highest_bid=parse_decimal(row["highest_bid"]),
        last_sale_price=parse_decimal(row["last_sale_price"]),
        ask_count=row["ask_count"],
        bid_count=row["bid_count"],
        sales_last_72h=row["sales_last_72h"],
        sales_last_30d=row["sales_last_30d"],
        snapshot_at=parse_ts(row["snapshot_at"]),
    )


def snapshot_params(snap: PriceSnapshot) -> tuple:
    return (
        snap.provider.value,
        snap.provider_source,
        snap.provider_product_id,
        snap.provider_variant_id or "",
        snap.sku,
        snap.size_key,
        snap.size_numeric,
        snap.size_system.value if snap.size_system else None,
        snap.currency_code,
        snap.region_code,
        int(snap.is_flex),
        int(snap.is_consigned),
        format_decimal(snap.lowest_ask),
        format_decimal(snap.highest_bid),
        format_decimal(snap.last_sale_price),
        snap.ask_count,
        snap.bid_count,
        snap.sales_last_72h,
        snap.sales_last_30d,
        format_ts(snap.snapshot_at),
    )


@runtime_checkable
class StorageProtocol(Protocol):
    """Abstract storage interface for solesync data."""

    async def insert_snapshots(self, snapshots: list[PriceSnapshot]) -> int: ...
    async def list_snapshots(
        self,
        sku: str | None = None,
        provider: Provider | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[PriceSnapshot]: ...
    async def archive_snapshots(self, older_than: datetime) -> int: ...
    async def upsert_mapping(self, mapping: ProviderMapping) -> bool: ...
    async def delete_mapping(self, sku: str, provider: Provider) -> bool: ...
    async def get_mappings(self, sku: str) -> list[ProviderMapping]: ...
    async def list_mapped_skus(self) -> list[str]: ...
    async def save_job_run(self, run: JobRun) -> None: ...
    async def list_job_runs(self, limit: int = 20) -> list[JobRun]: ...
    async def initialize(self) -> None: ...
    async def close(self) -> None: ...
    async def health_check(self) -> bool: ...


class SqliteStore:
    """SQLite implementation of the storage protocol.

    Uses aiosqlite in autocommit mode with explicit ``BEGIN IMMEDIATE``
    transactions, WAL mode so a separate reader connection sees the last
    committed state while writes are in flight, and a version-tracked
    migration system. All writes from this process go through one
    connection guarded by an asyncio lock.
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS sync_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    sku TEXT NOT NULL,
                    size TEXT,
                    dedupe_key TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 100,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'running', 'done',
                                          'failed', 'deferred', 'cancelled')),
                    retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
                    not_before TEXT,
                    leased_until TEXT,
                    worker_id TEXT,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT
                )""",
                """CREATE TABLE IF NOT EXISTS provider_budgets (
                    provider TEXT NOT NULL,
                    hour_window TEXT NOT NULL,
                    rate_limit INTEGER NOT NULL CHECK (rate_limit >= 0),
                    used INTEGER NOT NULL DEFAULT 0 CHECK (used >= 0),
                    last_grant INTEGER NOT NULL DEFAULT 0,
                    CHECK (used <= rate_limit),
                    PRIMARY KEY (provider, hour_window)
                )""",
                f"""CREATE TABLE IF NOT EXISTS price_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    {SNAPSHOT_COLUMNS_DDL},
                    ingested_at TEXT DEFAULT (datetime('now')),
                    UNIQUE ({", ".join(SNAPSHOT_DIMENSIONS)}, snapshot_at)
                )""",
                f"""CREATE TABLE IF NOT EXISTS latest_prices (
                    snapshot_id INTEGER NOT NULL,
                    {SNAPSHOT_COLUMNS_DDL}
                )""",
                f"""CREATE TABLE IF NOT EXISTS price_snapshots_archive (
                    id INTEGER PRIMARY KEY,
                    {SNAPSHOT_COLUMNS_DDL},
                    archived_at TEXT NOT NULL
                )""",
                """CREATE TABLE IF NOT EXISTS fx_rates (
                    as_of TEXT PRIMARY KEY,
                    gbp_per_usd TEXT NOT NULL,
                    gbp_per_eur TEXT NOT NULL,
                    source TEXT NOT NULL DEFAULT 'manual',
                    updated_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS fx_event_snapshots (
                    event_type TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    event_date TEXT NOT NULL,
                    original_amount TEXT NOT NULL,
                    original_currency TEXT NOT NULL,
                    base_currency TEXT NOT NULL,
                    fx_rate TEXT NOT NULL,
                    base_amount TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (event_type, event_id)
                )""",
                """CREATE TABLE IF NOT EXISTS catalog_mappings (
                    sku TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    provider_product_id TEXT NOT NULL,
                    provider_variant_id TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (sku, provider)
                )""",
                """CREATE TABLE IF NOT EXISTS job_runs (
                    run_id TEXT PRIMARY KEY,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    jobs_selected INTEGER NOT NULL DEFAULT 0,
                    jobs_succeeded INTEGER NOT NULL DEFAULT 0,
                    jobs_failed INTEGER NOT NULL DEFAULT 0,
                    jobs_deferred INTEGER NOT NULL DEFAULT 0
                )""",
                # Indexes
                """CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_jobs_active_dedupe
                   ON sync_jobs(dedupe_key)
                   WHERE status IN ('pending', 'running', 'deferred')""",
                "CREATE INDEX IF NOT EXISTS idx_sync_jobs_claim ON sync_jobs(status, priority DESC, created_at)",
                "CREATE INDEX IF NOT EXISTS idx_sync_jobs_sku ON sync_jobs(sku)",
                "CREATE INDEX IF NOT EXISTS idx_snapshots_sku ON price_snapshots(sku)",
                "CREATE INDEX IF NOT EXISTS idx_snapshots_at ON price_snapshots(snapshot_at)",
                "CREATE INDEX IF NOT EXISTS idx_latest_prices_sku ON latest_prices(sku)",
                "CREATE INDEX IF NOT EXISTS idx_budgets_window ON provider_budgets(hour_window)",
            ],
        ),
    }

    def __init__(self, config: StorageConfig) -> None:
        self._path = config.sqlite_path
        self._busy_timeout_ms = config.busy_timeout_ms
        self._db: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return self._path

    async def initialize(self) -> None:
        """Open connections, enable WAL + FK, run migrations."""
        try:
            if self._path != MEMORY_PATH:
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await self._connect()
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
            current = await self._get_schema_version()
            await self._apply_migrations(current)
            if self._path != MEMORY_PATH:
                self._reader = await self._connect()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def _connect(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(self._path, isolation_level=None)
        db.row_factory = aiosqlite.Row
        await db.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        return db

    async def close(self) -> None:
        if self._reader is not None:
            await self._reader.close()
            self._reader = None
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            row = await self.fetch_one("SELECT 1 AS ok")
            return row is not None
        except StorageError:
            return False

    # --- Schema Migration ---

    async def _get_schema_version(self) -> int:
        try:
            async with self._db.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, current_version: int) -> None:
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                for sql in statements:
                    await self._db.execute(sql)
                await self._db.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (version,)
                )
            except Exception:
                await self._db.execute("ROLLBACK")
                raise
            await self._db.execute("COMMIT")

    # --- Primitives ---

    def _require_open(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError(
                "Store is not initialized",
                context={"operation": "connect", "path": self._path},
            )
        return self._db

    @asynccontextmanager
    async def transaction(self, table: str = "") -> AsyncIterator[aiosqlite.Connection]:
        """Serialize a multi-statement write under ``BEGIN IMMEDIATE``.

        Do not call fetch_*/write from inside the block; use the yielded
        connection directly.
        """
        db = self._require_open()
        async with self._write_lock:
            try:
                await db.execute("BEGIN IMMEDIATE")
            except Exception as e:
                raise StorageError(
                    f"Failed to begin transaction: {e}",
                    context={"operation": "begin", "table": table},
                ) from e
            try:
                yield db
            except BaseException as e:
                try:
                    await db.execute("ROLLBACK")
                except Exception:
                    logger.exception("Rollback failed (table=%s)", table)
                if isinstance(e, sqlite3.Error):
                    raise StorageError(
                        f"Transaction failed: {e}",
                        context={"operation": "transaction", "table": table},
                    ) from e
                raise
            else:
                try:
                    await db.execute("COMMIT")
                except Exception as e:
                    raise StorageError(
                        f"Failed to commit transaction: {e}",
                        context={"operation": "commit", "table": table},
                    ) from e

    async def write(
        self, sql: str, params: Iterable[Any] = (), table: str = ""
    ) -> list[aiosqlite.Row]:
        """Run one write statement and return any RETURNING rows."""
        db = self._require_open()
        try:
            async with self._write_lock:
                async with db.execute(sql, tuple(params)) as cursor:
                    return list(await cursor.fetchall())
        except Exception as e:
            raise StorageError(
                f"Write failed: {e}",
                context={"operation": sql.split(None, 1)[0].lower(), "table": table},
            ) from e

    async def fetch_all(
        self, sql: str, params: Iterable[Any] = (), table: str = ""
    ) -> list[aiosqlite.Row]:
        """Run a read. Uses the reader connection when one is open."""
        db = self._require_open()
        try:
            if self._reader is not None:
                async with self._reader.execute(sql, tuple(params)) as cursor:
                    return list(await cursor.fetchall())
            async with self._write_lock:
                async with db.execute(sql, tuple(params)) as cursor:
                    return list(await cursor.fetchall())
        except Exception as e:
            raise StorageError(
                f"Query failed: {e}",
                context={"operation": "query", "table": table},
            ) from e

    async def fetch_one(
        self, sql: str, params: Iterable[Any] = (), table: str = ""
    ) -> aiosqlite.Row | None:
        rows = await self.fetch_all(sql, params, table=table)
        return rows[0] if rows else None

    # --- Snapshot Operations ---

    async def insert_snapshots(self, snapshots: list[PriceSnapshot]) -> int:
        """Append snapshots. Duplicate observations are skipped.

        Returns the number of rows actually inserted.
        """
        if not snapshots:
            return 0
        columns = ", ".join(SNAPSHOT_COLUMNS)
        placeholders = ", ".join("?" for _ in SNAPSHOT_COLUMNS)
        sql = (
            f"INSERT INTO price_snapshots ({columns}) VALUES ({placeholders}) "
            "ON CONFLICT DO NOTHING"
        )
        inserted = 0
        async with self.transaction(table="price_snapshots") as db:
            for snap in snapshots:
                async with db.execute(sql, snapshot_params(snap)) as cursor:
                    inserted += max(cursor.rowcount, 0)
        logger.debug("Inserted %d/%d snapshots", inserted, len(snapshots))
        return inserted

    async def list_snapshots(
        self,
        sku: str | None = None,
        provider: Provider | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[PriceSnapshot]:
        query = "SELECT * FROM price_snapshots WHERE 1=1"
        params: list = []
        if sku is not None:
            query += " AND sku = ?"
            params.append(normalize_sku(sku))
        if provider is not None:
            query += " AND provider = ?"
            params.append(Provider(provider).value)
        if since is not None:
            query += " AND snapshot_at >= ?"
            params.append(format_ts(since))
        query += " ORDER BY snapshot_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await self.fetch_all(query, params, table="price_snapshots")
        return [row_to_snapshot(r) for r in rows]

    async def count_snapshots(self) -> int:
        row = await self.fetch_one(
            "SELECT COUNT(*) AS n FROM price_snapshots", table="price_snapshots"
        )
        return row["n"]

    async def archive_snapshots(self, older_than: datetime) -> int:
        """Move snapshots observed before `older_than` into the archive."""
        columns = ", ".join(SNAPSHOT_COLUMNS)
        cutoff = format_ts(older_than)
        async with self.transaction(table="price_snapshots_archive") as db:
            await db.execute(
                f"""INSERT OR IGNORE INTO price_snapshots_archive
                    (id, {columns}, archived_at)
                    SELECT id, {columns}, ? FROM price_snapshots
                    WHERE snapshot_at < ?""",
                (format_ts(utcnow()), cutoff),
            )
            async with db.execute(
                "DELETE FROM price_snapshots WHERE snapshot_at < ?", (cutoff,)
            ) as cursor:
                moved = max(cursor.rowcount, 0)
        if moved:
            logger.info("Archived %d snapshots older than %s", moved, cutoff)
        return moved

    # --- Catalog Mapping Operations ---

    async def upsert_mapping(self, mapping: ProviderMapping) -> bool:
        """Insert or update a mapping. Returns True when anything changed."""
        rows = await self.write(
            """INSERT INTO catalog_mappings
               (sku, provider, provider_product_id, provider_variant_id, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (sku, provider) DO UPDATE SET
                   provider_product_id = excluded.provider_product_id,
                   provider_variant_id = excluded.provider_variant_id,
                   updated_at = excluded.updated_at
               WHERE provider_product_id IS NOT excluded.provider_product_id
                  OR provider_variant_id IS NOT excluded.provider_variant_id
               RETURNING sku""",
            (
                mapping.sku,
                mapping.provider.value,
                mapping.provider_product_id,
                mapping.provider_variant_id,
                format_ts(utcnow()),
            ),
            table="catalog_mappings",
        )
        return bool(rows)

    async def delete_mapping(self, sku: str, provider: Provider) -> bool:
        rows = await self.write(
            "DELETE FROM catalog_mappings WHERE sku = ? AND provider = ? RETURNING sku",
            (normalize_sku(sku), Provider(provider).value),
            table="catalog_mappings",
        )
        return bool(rows)

    async def get_mappings(self, sku: str) -> list[ProviderMapping]:
        rows = await self.fetch_all(
            "SELECT * FROM catalog_mappings WHERE sku = ? ORDER BY provider",
            (normalize_sku(sku),),
            table="catalog_mappings",
        )
        return [self._row_to_mapping(r) for r in rows]

    async def list_mapped_skus(self) -> list[str]:
        rows = await self.fetch_all(
            "SELECT DISTINCT sku FROM catalog_mappings ORDER BY sku",
            table="catalog_mappings",
        )
        return [r["sku"] for r in rows]

    # --- Job Run Audit ---

    async def save_job_run(self, run: JobRun) -> None:
        await self.write(
            """INSERT INTO job_runs
               (run_id, started_at, completed_at, jobs_selected,
                jobs_succeeded, jobs_failed, jobs_deferred)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (run_id) DO UPDATE SET
                   completed_at = excluded.completed_at,
                   jobs_selected = excluded.jobs_selected,
                   jobs_succeeded = excluded.jobs_succeeded,
                   jobs_failed = excluded.jobs_failed,
                   jobs_deferred = excluded.jobs_deferred""",
            (
                run.run_id,
                format_ts(run.started_at),
                format_ts(run.completed_at) if run.completed_at else None,
                run.jobs_selected,
                run.jobs_succeeded,
                run.jobs_failed,
                run.jobs_deferred,
            ),
            table="job_runs",
        )

    async def list_job_runs(self, limit: int = 20) -> list[JobRun]:
        rows = await self.fetch_all(
            "SELECT * FROM job_runs ORDER BY started_at DESC LIMIT ?",
            (limit,),
            table="job_runs",
        )
        return [self._row_to_job_run(r) for r in rows]

    # --- Row Mappers ---

    @staticmethod
    def _row_to_mapping(row: aiosqlite.Row) -> ProviderMapping:
        return ProviderMapping(
            sku=row["sku"],
            provider=Provider(row["provider"]),
            provider_product_id=row["provider_product_id"],
            provider_variant_id=row["provider_variant_id"],
        )

    @staticmethod
    def _row_to_job_run(row: aiosqlite.Row) -> JobRun:
        return JobRun(
            run_id=row["run_id"],
            started_at=parse_ts(row["started_at"]),
            completed_at=parse_ts(row["completed_at"]),
            jobs_selected=row["jobs_selected"],
            jobs_succeeded=row["jobs_succeeded"],
            jobs_failed=row["jobs_failed"],
            jobs_deferred=row["jobs_deferred"],
        )


async def create_store(config: StorageConfig) -> SqliteStore:
    """Create and initialize the SQLite storage backend."""
    store = SqliteStore(config)
    await store.initialize()
    return store
