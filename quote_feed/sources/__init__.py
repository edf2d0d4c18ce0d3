from .base import DataSource
from .nasdaq_halts import HaltFeedSource
from .quotemedia import QuoteMediaAuthenticator, QuoteMediaSource, build_token_cache
from .quotestream import QuoteStreamChannel

__all__ = [
    "DataSource",
    "HaltFeedSource",
    "QuoteMediaAuthenticator",
    "QuoteMediaSource",
    "QuoteStreamChannel",
    "build_token_cache",
]
