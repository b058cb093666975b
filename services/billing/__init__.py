from .credits import FundingSource, InsufficientCredits, select_source
from .pricing import PriceNotFound, PriceQuote, resolve_price

__all__ = [
    "FundingSource",
    "InsufficientCredits",
    "select_source",
    "PriceNotFound",
    "PriceQuote",
    "resolve_price",
]
