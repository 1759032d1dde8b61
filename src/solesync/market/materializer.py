"""Latest-Price Materializer.

``latest_prices`` holds, for every dimension tuple observed inside the
retention window, the snapshot with the greatest ``snapshot_at`` (ties go
to the later insert). It is rebuilt, never edited: ``refresh`` fills
``latest_prices_next`` and swaps it in with drop + rename inside one
transaction. On a file store, readers use a separate WAL connection and
keep seeing the previous projection until the swap commits. An in-memory
store has one connection, so reads there wait for the rebuild to finish.

Freshness is not stored. It is computed from the wall clock whenever rows
are read, so a projection that has not changed still ages correctly.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from solesync.core.config import FreshnessConfig
from solesync.core.models import Freshness, LatestPrice, Provider, ensure_utc, normalize_sku, utcnow
from solesync.ingestion.store import (
    SNAPSHOT_COLUMNS,
    SNAPSHOT_COLUMNS_DDL,
    SNAPSHOT_DIMENSIONS,
    SqliteStore,
    format_ts,
    row_to_snapshot,
)

logger = logging.getLogger(__name__)


def classify(age_minutes: float, config: FreshnessConfig) -> Freshness:
    if age_minutes < config.fresh_minutes:
        return Freshness.FRESH
    if age_minutes < config.aging_minutes:
        return Freshness.AGING
    return Freshness.STALE


def age_minutes(snapshot_at: datetime, now: datetime) -> float:
    """Minutes between observation and `now`; never negative."""
    return max(0.0, (ensure_utc(now) - ensure_utc(snapshot_at)).total_seconds() / 60.0)


class LatestPriceMaterializer:
    """Builds and reads the ``latest_prices`` projection."""

    def __init__(self, store: SqliteStore, config: FreshnessConfig) -> None:
        self._store = store
        self._config = config
        self._refresh_lock = asyncio.Lock()

    @property
    def config(self) -> FreshnessConfig:
        return self._config

    async def refresh(self, now: datetime | None = None) -> int:
        """Rebuild the projection from the retention window.

        Returns the number of rows in the new projection.
        """
        now = now or utcnow()
        cutoff = format_ts(now - timedelta(days=self._config.retention_days))
        columns = ", ".join(SNAPSHOT_COLUMNS)
        partition = ", ".join(SNAPSHOT_DIMENSIONS)

        async with self._refresh_lock:
            async with self._store.transaction(table="latest_prices") as db:
                await db.execute("DROP TABLE IF EXISTS latest_prices_next")
                await db.execute(
                    f"""CREATE TABLE latest_prices_next (
                        snapshot_id INTEGER NOT NULL,
                        {SNAPSHOT_COLUMNS_DDL}
                    )"""
                )
                async with db.execute(
                    f"""INSERT INTO latest_prices_next (snapshot_id, {columns})
                        SELECT id, {columns} FROM (
                            SELECT s.*, ROW_NUMBER() OVER (
                                PARTITION BY {partition}
                                ORDER BY snapshot_at DESC, id DESC
                            ) AS rn
                            FROM price_snapshots s
                            WHERE snapshot_at >= ?
                        ) WHERE rn = 1""",
                    (cutoff,),
                ) as cursor:
                    rows = max(cursor.rowcount, 0)
                await db.execute("DROP TABLE IF EXISTS latest_prices")
                await db.execute("ALTER TABLE latest_prices_next RENAME TO latest_prices")
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_latest_prices_sku ON latest_prices(sku)"
                )

        logger.info("Refreshed latest prices: %d rows (cutoff %s)", rows, cutoff)
        return rows

    async def latest(
        self,
        sku: str | None = None,
        providers: list[Provider] | None = None,
        now: datetime | None = None,
    ) -> list[LatestPrice]:
        """Read projection rows, aged against `now` (default: wall clock)."""
        query = "SELECT * FROM latest_prices WHERE 1=1"
        params: list = []
        if sku is not None:
            query += " AND sku = ?"
            params.append(normalize_sku(sku))
        if providers is not None:
            if not providers:
                return []
            query += f" AND provider IN ({', '.join('?' for _ in providers)})"
            params.extend(Provider(p).value for p in providers)
        query += " ORDER BY provider, size_numeric, size_key, snapshot_at DESC"

        rows = await self._store.fetch_all(query, params, table="latest_prices")
        now = now or utcnow()
        result = []
        for row in rows:
            snap = row_to_snapshot(row)
            age = age_minutes(snap.snapshot_at, now)
            result.append(
                LatestPrice(snapshot=snap, age_minutes=age, freshness=classify(age, self._config))
            )
        return result

    async def stale_targets(self, now: datetime | None = None) -> list[tuple[Provider, str]]:
        """Distinct (provider, sku) pairs holding at least one stale row."""
        now = now or utcnow()
        threshold = format_ts(now - timedelta(minutes=self._config.aging_minutes))
        rows = await self._store.fetch_all(
            """SELECT DISTINCT provider, sku FROM latest_prices
               WHERE snapshot_at <= ? ORDER BY provider, sku""",
            (threshold,),
            table="latest_prices",
        )
        return [(Provider(r["provider"]), r["sku"]) for r in rows]

    async def count(self) -> int:
        row = await self._store.fetch_one(
            "SELECT COUNT(*) AS n FROM latest_prices", table="latest_prices"
        )
        return row["n"]
