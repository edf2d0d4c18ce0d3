"""Resilient acquisition of market quotes and trading halts.

Usage::

    python3 -m quote_feed.main --once --symbols AAPL,MSFT
"""

from .config import AppSettings, load_settings
from .facade import AcquisitionFacade
from .models import CanonicalHalt, CanonicalQuote, FeedSnapshot, SourceStatus

__all__ = [
    "AcquisitionFacade",
    "AppSettings",
    "CanonicalHalt",
    "CanonicalQuote",
    "FeedSnapshot",
    "SourceStatus",
    "load_settings",
]
