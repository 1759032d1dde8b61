"""FX Conversion Service — date-pinned, GBP-pivot exchange rates.

``fx_rates`` stores one row per calendar date with the GBP value of one
USD and one EUR. A cross rate is ``(from -> GBP) / (to -> GBP)`` using the
row for the requested date, or the most recent earlier row. A date before
every stored row has no rate; that is an error, never an assumed 1.0.

Converted amounts attached to purchases and sales are written once to
``fx_event_snapshots`` and never recomputed, so later corrections to
``fx_rates`` leave historical figures unchanged.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

import aiosqlite

from solesync.core.exceptions import NoFxRateError, UnsupportedCurrencyError
from solesync.core.models import Currency, EventType, FxEventSnapshot, FxRate, utcnow
from solesync.ingestion.store import SqliteStore, format_ts, parse_decimal, parse_ts

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def normalize_currency(code: str) -> Currency:
    """Validate a currency code against the pivot table's currencies."""
    cleaned = (code or "").strip().upper()
    try:
        return Currency(cleaned)
    except ValueError as e:
        raise UnsupportedCurrencyError(
            f"Unsupported currency: {code!r}",
            context={"currency": code},
        ) from e


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


class FxService:
    """Resolves and applies exchange rates from ``fx_rates``."""

    def __init__(self, store: SqliteStore, base_currency: str = "GBP") -> None:
        self._store = store
        self._base = normalize_currency(base_currency)

    @property
    def base_currency(self) -> Currency:
        return self._base

    async def rate_row(self, as_of: date) -> FxRate | None:
        """Row for `as_of`, else the latest earlier row. Never a later one."""
        row = await self._store.fetch_one(
            "SELECT * FROM fx_rates WHERE as_of <= ? ORDER BY as_of DESC LIMIT 1",
            (as_of.isoformat(),),
            table="fx_rates",
        )
        return self._row_to_rate(row) if row else None

    async def rate_for(self, as_of: date, from_ccy: str, to_ccy: str) -> Decimal:
        """Factor converting one unit of `from_ccy` into `to_ccy` on `as_of`.

        Raises
        ------
        UnsupportedCurrencyError
            Either code is not GBP, USD or EUR.
        NoFxRateError
            No rate row exists on or before `as_of`.
        """
        source = normalize_currency(from_ccy)
        target = normalize_currency(to_ccy)
        if source == target:
            return Decimal(1)

        rate = await self.rate_row(as_of)
        if rate is None:
            raise NoFxRateError(
                f"No FX rate on or before {as_of.isoformat()}",
                context={
                    "as_of": as_of.isoformat(),
                    "from_ccy": source.value,
                    "to_ccy": target.value,
                },
            )
        if rate.as_of != as_of:
            logger.debug("FX for %s falls back to %s", as_of, rate.as_of)
        return rate.to_pivot(source) / rate.to_pivot(target)

    async def convert(
        self, amount: Decimal, as_of: date, from_ccy: str, to_ccy: str
    ) -> Decimal:
        """Convert and round to 2 dp, half-up."""
        factor = await self.rate_for(as_of, from_ccy, to_ccy)
        return round_money(Decimal(amount) * factor)

    async def upsert_rate(
        self,
        as_of: date,
        gbp_per_usd: Decimal | None = None,
        gbp_per_eur: Decimal | None = None,
        source: str = "manual",
    ) -> FxRate:
        """Write (or correct) the row for `as_of`.

        A leg left as None is carried from the most recent row on or before
        `as_of`. With no such row, both legs are required.
        """
        async with self._store.transaction(table="fx_rates") as db:
            if gbp_per_usd is None or gbp_per_eur is None:
                async with db.execute(
                    "SELECT * FROM fx_rates WHERE as_of <= ? ORDER BY as_of DESC LIMIT 1",
                    (as_of.isoformat(),),
                ) as cursor:
                    prior_row = await cursor.fetchone()
                if prior_row is None:
                    raise NoFxRateError(
                        f"Cannot fill missing FX leg for {as_of.isoformat()}: no prior rate",
                        context={"as_of": as_of.isoformat()},
                    )
                prior = self._row_to_rate(prior_row)
                gbp_per_usd = gbp_per_usd if gbp_per_usd is not None else prior.gbp_per_usd
                gbp_per_eur = gbp_per_eur if gbp_per_eur is not None else prior.gbp_per_eur

            rate = FxRate(
                as_of=as_of,
                gbp_per_usd=Decimal(gbp_per_usd),
                gbp_per_eur=Decimal(gbp_per_eur),
                source=source,
            )
            await db.execute(
                """INSERT INTO fx_rates (as_of, gbp_per_usd, gbp_per_eur, source, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (as_of) DO UPDATE SET
                       gbp_per_usd = excluded.gbp_per_usd,
                       gbp_per_eur = excluded.gbp_per_eur,
                       source = excluded.source,
                       updated_at = excluded.updated_at""",
                (
                    rate.as_of.isoformat(),
                    str(rate.gbp_per_usd),
                    str(rate.gbp_per_eur),
                    rate.source,
                    format_ts(utcnow()),
                ),
            )
        logger.info(
            "FX %s: gbp_per_usd=%s gbp_per_eur=%s (%s)",
            as_of,
            rate.gbp_per_usd,
            rate.gbp_per_eur,
            source,
        )
        return rate

    async def list_rates(self, limit: int = 30) -> list[FxRate]:
        rows = await self._store.fetch_all(
            "SELECT * FROM fx_rates ORDER BY as_of DESC LIMIT ?", (limit,), table="fx_rates"
        )
        return [self._row_to_rate(r) for r in rows]

    # --- Event snapshots ---

    async def snapshot_event(
        self,
        event_id: str,
        event_type: EventType,
        event_date: date,
        amount: Decimal,
        currency: str,
        base_currency: str | None = None,
    ) -> FxEventSnapshot:
        """Pin the conversion of a purchase or sale amount.

        The first call stores the rate and converted amount; every later
        call for the same event returns that stored record unchanged.
        """
        event_type = EventType(event_type)
        existing = await self.get_event_snapshot(event_type, event_id)
        if existing is not None:
            return existing

        source = normalize_currency(currency)
        base = normalize_currency(base_currency) if base_currency else self._base
        factor = await self.rate_for(event_date, source, base)
        base_amount = round_money(Decimal(amount) * factor)

        await self._store.write(
            """INSERT INTO fx_event_snapshots
               (event_type, event_id, event_date, original_amount, original_currency,
                base_currency, fx_rate, base_amount, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (event_type, event_id) DO NOTHING""",
            (
                event_type.value,
                event_id,
                event_date.isoformat(),
                str(Decimal(amount)),
                source.value,
                base.value,
                str(factor),
                str(base_amount),
                format_ts(utcnow()),
            ),
            table="fx_event_snapshots",
        )
        stored = await self.get_event_snapshot(event_type, event_id)
        logger.info(
            "Pinned FX for %s %s: %s %s -> %s %s",
            event_type.value,
            event_id,
            amount,
            source.value,
            stored.base_amount,
            stored.base_currency,
        )
        return stored

    async def get_event_snapshot(
        self, event_type: EventType, event_id: str
    ) -> FxEventSnapshot | None:
        row = await self._store.fetch_one(
            "SELECT * FROM fx_event_snapshots WHERE event_type = ? AND event_id = ?",
            (EventType(event_type).value, event_id),
            table="fx_event_snapshots",
        )
        return self._row_to_event(row) if row else None

    @staticmethod
    def _row_to_rate(row: aiosqlite.Row) -> FxRate:
        return FxRate(
            as_of=date.fromisoformat(row["as_of"]),
            gbp_per_usd=parse_decimal(row["gbp_per_usd"]),
            gbp_per_eur=parse_decimal(row["gbp_per_eur"]),
            source=row["source"],
        )

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> FxEventSnapshot:
        return FxEventSnapshot(
            event_id=row["event_id"],
            event_type=EventType(row["event_type"]),
            event_date=date.fromisoformat(row["event_date"]),
            original_amount=parse_decimal(row["original_amount"]),
            original_currency=row["original_currency"],
            base_currency=row["base_currency"],
            fx_rate=parse_decimal(row["fx_rate"]),
            base_amount=parse_decimal(row["base_amount"]),
            created_at=parse_ts(row["created_at"]),
        )
