"""Rate Budget Manager — hourly token buckets per provider.

Each (provider, hour_window) pair owns one ``provider_budgets`` row. The
window key is the current UTC time truncated to the hour, so a new hour
simply addresses a new row and nothing ever resets a counter. Rows are
created lazily on first reservation and removed only by ``prune``.

Reservation is one conditional ``UPDATE ... RETURNING`` statement, so two
callers can never both see the same remaining budget. The table also
carries ``CHECK (used <= rate_limit)`` as a last line.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from solesync.core.config import ProvidersConfig
from solesync.core.exceptions import StorageError
from solesync.core.models import BudgetGrant, BudgetWindow, Provider, ensure_utc, utcnow
from solesync.ingestion.store import SqliteStore, format_ts, parse_ts

logger = logging.getLogger(__name__)


def window_for(now: datetime | None = None) -> datetime:
    """Top of the UTC hour containing `now`."""
    now = utcnow() if now is None else now
    return ensure_utc(now).replace(minute=0, second=0, microsecond=0)


def next_window(now: datetime | None = None) -> datetime:
    return window_for(now) + timedelta(hours=1)


class BudgetManager:
    """Atomic per-provider hourly quotas backed by SQLite.

    Parameters
    ----------
    store : SqliteStore
        Initialized store.
    providers : ProvidersConfig
        Supplies ``hourly_rate_limit`` for windows created lazily.
    """

    def __init__(self, store: SqliteStore, providers: ProvidersConfig) -> None:
        self._store = store
        self._providers = providers

    def rate_limit_for(self, provider: Provider) -> int:
        return self._providers.get(provider).hourly_rate_limit

    async def try_reserve(
        self,
        provider: Provider,
        hour_window: datetime | None = None,
        n: int = 1,
        allow_partial: bool = False,
    ) -> BudgetGrant:
        """Reserve `n` tokens from a provider's hourly window.

        All-or-nothing by default: grants `n` only if ``used + n <=
        rate_limit``, else grants 0. With ``allow_partial`` the grant is
        clamped to whatever remains. Storage failures grant nothing and
        report ``available=False``.
        """
        provider = Provider(provider)
        if n < 1:
            raise ValueError(f"n must be >= 1, got {n}")
        window = window_for(hour_window)
        key = format_ts(window)

        try:
            async with self._store.transaction(table="provider_budgets") as db:
                await db.execute(
                    """INSERT INTO provider_budgets (provider, hour_window, rate_limit, used)
                       VALUES (?, ?, ?, 0)
                       ON CONFLICT (provider, hour_window) DO NOTHING""",
                    (provider.value, key, self.rate_limit_for(provider)),
                )
                if allow_partial:
                    sql = """UPDATE provider_budgets
                             SET last_grant = MIN(?, rate_limit - used),
                                 used = used + MIN(?, rate_limit - used)
                             WHERE provider = ? AND hour_window = ? AND used < rate_limit
                             RETURNING last_grant AS granted, rate_limit - used AS remaining"""
                    params = (n, n, provider.value, key)
                else:
                    sql = """UPDATE provider_budgets
                             SET used = used + ?, last_grant = ?
                             WHERE provider = ? AND hour_window = ? AND used + ? <= rate_limit
                             RETURNING last_grant AS granted, rate_limit - used AS remaining"""
                    params = (n, n, provider.value, key, n)
                async with db.execute(sql, params) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    async with db.execute(
                        """SELECT rate_limit - used AS remaining FROM provider_budgets
                           WHERE provider = ? AND hour_window = ?""",
                        (provider.value, key),
                    ) as cursor:
                        left = await cursor.fetchone()
                    granted, remaining = 0, (left["remaining"] if left else 0)
                else:
                    granted, remaining = row["granted"], row["remaining"]
        except StorageError as e:
            logger.warning(
                "Budget store unavailable for %s, failing closed: %s", provider.value, e
            )
            return BudgetGrant(
                provider=provider,
                hour_window=window,
                requested=n,
                granted=0,
                remaining=0,
                available=False,
            )

        if granted < n:
            logger.info(
                "Budget for %s at %s: requested %d, granted %d, remaining %d",
                provider.value,
                key,
                n,
                granted,
                remaining,
            )
        return BudgetGrant(
            provider=provider,
            hour_window=window,
            requested=n,
            granted=granted,
            remaining=remaining,
        )

    async def remaining(self, provider: Provider, hour_window: datetime | None = None) -> int:
        """Tokens left in a window. A window never touched has its full limit."""
        provider = Provider(provider)
        row = await self._store.fetch_one(
            """SELECT rate_limit - used AS remaining FROM provider_budgets
               WHERE provider = ? AND hour_window = ?""",
            (provider.value, format_ts(window_for(hour_window))),
            table="provider_budgets",
        )
        return row["remaining"] if row else self.rate_limit_for(provider)

    async def windows(
        self, provider: Provider | None = None, limit: int = 24
    ) -> list[BudgetWindow]:
        query = "SELECT * FROM provider_budgets"
        params: list = []
        if provider is not None:
            query += " WHERE provider = ?"
            params.append(Provider(provider).value)
        query += " ORDER BY hour_window DESC, provider LIMIT ?"
        params.append(limit)
        rows = await self._store.fetch_all(query, params, table="provider_budgets")
        return [
            BudgetWindow(
                provider=Provider(r["provider"]),
                hour_window=parse_ts(r["hour_window"]),
                rate_limit=r["rate_limit"],
                used=r["used"],
            )
            for r in rows
        ]

    async def prune(self, older_than: datetime) -> int:
        """Delete windows that ended before `older_than`."""
        rows = await self._store.write(
            "DELETE FROM provider_budgets WHERE hour_window < ? RETURNING provider",
            (format_ts(window_for(older_than)),),
            table="provider_budgets",
        )
        if rows:
            logger.info("Pruned %d budget windows", len(rows))
        return len(rows)
