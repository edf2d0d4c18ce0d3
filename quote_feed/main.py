from __future__ import annotations

import argparse
import asyncio
import logging

from quote_feed.config import load_settings
from quote_feed.facade import AcquisitionFacade
from quote_feed.logging_setup import configure_logging
from quote_feed.models import FeedSnapshot, SourceStatus

LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fetch normalized market quotes and today's trading halts",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single refresh cycle and exit",
    )
    parser.add_argument(
        "--symbols",
        type=str,
        default=None,
        help="Comma-separated symbols to keep (default: QUOTE_FEED_SYMBOLS, or the whole market-stats list)",
    )
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument(
        "--halts-only",
        action="store_true",
        help="Only fetch trading halts",
    )
    scope.add_argument(
        "--quotes-only",
        action="store_true",
        help="Only fetch quotes",
    )
    return parser.parse_args(argv)


def _split_symbols(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [part.strip().upper() for part in value.split(",") if part.strip()]


def _state(status: SourceStatus) -> str:
    if status.ok:
        return "ok"
    return status.error_kind.value if status.error_kind else "error"


def log_snapshot(snapshot: FeedSnapshot) -> None:
    quote_status = snapshot.quote_status
    halt_status = snapshot.halt_status
    LOGGER.info(
        "cycle=%d quotes=%d (%s) halts=%d (%s)",
        snapshot.cycle,
        len(snapshot.quotes),
        _state(quote_status),
        len(snapshot.halts),
        _state(halt_status),
    )
    for status in (quote_status, halt_status):
        if not status.ok:
            LOGGER.warning("%s: %s retry_after=%.0fs", status.source, status.message, status.retry_after_seconds)
    for halt in snapshot.halts:
        LOGGER.info(
            "halt symbol=%s time=%s market=%s reasons=%s",
            halt.symbol,
            halt.halt_time,
            halt.market,
            halt.reason_codes,
        )
    for quote in snapshot.quotes[:20]:
        LOGGER.info(
            "quote symbol=%s price=%.4f change=%.4f (%.2f%%) volume=%d source=%s",
            quote.symbol,
            quote.price,
            quote.change,
            quote.change_percent,
            quote.volume,
            quote.source,
        )


async def _run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)

    symbols = _split_symbols(args.symbols)
    include_quotes = not args.halts_only
    include_halts = not args.quotes_only

    LOGGER.info(
        "quote feed mode=%s poll_interval=%ss quotes=%s halts=%s probe=%s",
        "once" if args.once else "polling",
        settings.poll_interval_seconds,
        include_quotes,
        include_halts,
        settings.probe.mode,
    )

    async with AcquisitionFacade(settings) as facade:
        if args.once:
            snapshot = await facade.refresh(symbols, include_quotes, include_halts)
            log_snapshot(snapshot)
            return

        stop_event = asyncio.Event()
        await facade.run_polling(
            log_snapshot,
            stop_event,
            symbols=symbols,
            include_quotes=include_quotes,
            include_halts=include_halts,
        )


if __name__ == "__main__":
    asyncio.run(_run())
