"""Market read side: sizes, latest-price projection, unification, and FX."""

from solesync.market.fx import FxService
from solesync.market.materializer import LatestPriceMaterializer
from solesync.market.service import MarketReadService
from solesync.market.sizes import ParsedSize, convert_size, parse_size
from solesync.market.unifier import Unifier

__all__ = [
    "FxService",
    "LatestPriceMaterializer",
    "MarketReadService",
    "ParsedSize",
    "Unifier",
    "convert_size",
    "parse_size",
]
