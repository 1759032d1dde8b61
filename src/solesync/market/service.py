"""Read path: unified market prices in the caller's currency."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal

from solesync.core.models import Channel, ProviderQuote, UnifiedRow, utcnow
from solesync.market.fx import FxService, normalize_currency, round_money
from solesync.market.unifier import Unifier

logger = logging.getLogger(__name__)


class MarketReadService:
    """Unifies a SKU across providers and converts every quote.

    Missing provider data yields None quotes, never an error. Failures are
    limited to absent or malformed catalog mappings, and to FX: an
    unsupported currency or a date before every stored rate.
    """

    def __init__(self, unifier: Unifier, fx: FxService) -> None:
        self._unifier = unifier
        self._fx = fx

    async def unified_prices(
        self,
        sku: str,
        size: str | None = None,
        currency: str | None = None,
        as_of: date | None = None,
        channels: list[Channel] | None = None,
        region: str | None = None,
        now: datetime | None = None,
    ) -> list[UnifiedRow]:
        now = now or utcnow()
        rows = await self._unifier.unify(
            sku, size_filter=size, channels=channels, region=region, now=now
        )
        if currency is None:
            return rows

        target = normalize_currency(currency)
        rate_date = as_of or now.date()
        factors: dict[str, Decimal] = {}

        converted = []
        for row in rows:
            quotes: dict = {}
            for provider, quote in row.quotes.items():
                if quote is None:
                    quotes[provider] = None
                    continue
                if quote.currency_code not in factors:
                    factors[quote.currency_code] = await self._fx.rate_for(
                        rate_date, quote.currency_code, target
                    )
                quotes[provider] = _convert_quote(
                    quote, target.value, factors[quote.currency_code]
                )
            converted.append(row.model_copy(update={"quotes": quotes}))
        logger.debug(
            "Converted %d unified rows for %s into %s as of %s",
            len(converted),
            sku,
            target.value,
            rate_date,
        )
        return converted


def _convert_quote(quote: ProviderQuote, currency: str, factor: Decimal) -> ProviderQuote:
    def conv(amount: Decimal | None) -> Decimal | None:
        return None if amount is None else round_money(amount * factor)

    return quote.model_copy(
        update={
            "currency_code": currency,
            "lowest_ask": conv(quote.lowest_ask),
            "highest_bid": conv(quote.highest_bid),
            "last_sale_price": conv(quote.last_sale_price),
            "fx_rate": factor,
        }
    )
