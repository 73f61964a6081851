"""
Arbitrage Engine - Replay Entry Point.

Rebuilds engine state by replaying a JSON-lines quote log through the
dispatcher and logs every opportunity lifecycle transition.

Usage:
    python -m src.main replay quotes.jsonl
    python -m src.main replay quotes.jsonl --market evt-123/h2h --since 40

Each line is a quote record:
    {"event_id": "evt-123", "market_type": "h2h", "selection": "home",
     "source": "pinnacle", "odds": "2.20", "odds_format": "decimal",
     "observed_at_ms": 1760000000000, "is_live": true}

Environment Variables (see config/settings.py):
    DETECTION__MIN_PROFIT_THRESHOLD   - Minimum margin (default: 0.042)
    DETECTION__TOTAL_STAKE            - Reference stake (default: 1000)
    DETECTION__MAX_QUOTE_AGE_SECONDS  - Quote staleness limit
    LIFECYCLE__OPPORTUNITY_WINDOW_SECONDS
    LOG_LEVEL                         - DEBUG|INFO|WARNING
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Iterator, Optional

import orjson
import structlog

from config.settings import Settings, settings
from src.engine.arbitrage_engine import ArbitrageEngine
from src.engine.dispatcher import IngestionDispatcher
from src.engine.events import MarketFilter
from src.models.schemas import LifecycleEvent, OpportunityStatus, Quote
from src.utils.logging import setup_logging

logger = structlog.get_logger()


class ReplayClock:
    """Engine clock driven by the timestamps of replayed quotes."""

    def __init__(self, start_ms: int = 0):
        self.now_ms = start_ms

    def advance_to(self, timestamp_ms: int) -> None:
        if timestamp_ms > self.now_ms:
            self.now_ms = timestamp_ms

    def __call__(self) -> int:
        return self.now_ms


def read_quotes(path: Path) -> Iterator[Quote]:
    """Parse quote records, skipping lines the fetcher layer got wrong."""
    log = logger.bind(component="replay_reader", path=str(path))
    with open(path, "rb") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield Quote.from_dict(orjson.loads(line))
            except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                log.warning("Skipping malformed quote record", line=line_no, error=str(e))


class ReplayRunner:
    """Replays a quote log through a fresh engine."""

    def __init__(
        self,
        market_filter: Optional[MarketFilter] = None,
        since: int = 0,
        config: Settings = settings,
    ):
        self.logger = logger.bind(component="replay")
        self.clock = ReplayClock()
        self.engine = ArbitrageEngine(config=config, clock=self.clock)
        self.dispatcher = IngestionDispatcher(self.engine, config=config.dispatcher)
        self.market_filter = market_filter
        self.since = since

        self._shutdown_event = asyncio.Event()
        self._events_seen = 0
        self._opportunities: dict[str, LifecycleEvent] = {}

    async def run(self, path: Path) -> int:
        """Replay the file; returns the number of quotes submitted."""
        consumer = asyncio.create_task(self._consume_events(), name="event_consumer")
        submitted = 0
        try:
            for quote in read_quotes(path):
                if self._shutdown_event.is_set():
                    self.logger.info("Replay interrupted", submitted=submitted)
                    break
                self.clock.advance_to(quote.observed_at_ms)
                if self.dispatcher.submit(quote):
                    submitted += 1
                # Let shard workers pick up the quote before the clock moves on
                await asyncio.sleep(0)
        finally:
            await self.dispatcher.stop()
            self.engine.events.close()
            await consumer
        return submitted

    async def _consume_events(self) -> None:
        async for event in self.engine.subscribe(self.market_filter, since=self.since):
            self._events_seen += 1
            self._opportunities[event.opportunity.opportunity_id] = event
            opp = event.opportunity
            self.logger.info(
                "Lifecycle event",
                sequence=event.sequence,
                previous=event.previous_status.value if event.previous_status else None,
                stakes={leg.source + ":" + leg.selection: str(leg.stake) for leg in opp.legs},
                payout=str(opp.guaranteed_payout),
                **opp.to_log(),
            )

    def shutdown(self) -> None:
        """Trigger graceful shutdown."""
        self._shutdown_event.set()

    def get_summary(self) -> dict:
        final = [e.status for e in self._opportunities.values()]
        return {
            "events": self._events_seen,
            "opportunities": len(self._opportunities),
            "executed": final.count(OpportunityStatus.EXECUTED),
            "expired": final.count(OpportunityStatus.EXPIRED),
            "open": sum(1 for s in final if s.is_open),
            "engine": self.engine.get_metrics(),
            "dispatcher": self.dispatcher.get_metrics(),
        }


def parse_market(value: str) -> MarketFilter:
    """'evt-123/h2h' -> both fields, 'evt-123' -> event only, '/h2h' -> market type only."""
    event_id, _, market_type = value.partition("/")
    if not event_id and not market_type:
        raise argparse.ArgumentTypeError(f"invalid market {value!r}, expected EVENT_ID[/MARKET_TYPE]")
    return MarketFilter(event_id=event_id or None, market_type=market_type or None)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Arbitrage detection engine")
    parser.add_argument("--log-level", default=settings.log_level)
    parser.add_argument("--console", action="store_true", help="Console log format instead of JSON")
    commands = parser.add_subparsers(dest="command", required=True)

    replay = commands.add_parser("replay", help="Replay a quote log through the engine")
    replay.add_argument("quotes", type=Path, help="JSON-lines quote file")
    replay.add_argument(
        "--market",
        type=parse_market,
        default=None,
        help="Only report events for EVENT_ID[/MARKET_TYPE]",
    )
    replay.add_argument(
        "--since",
        type=int,
        default=0,
        help="Only report lifecycle events with a sequence number above this",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level, json_logs=settings.json_logs and not args.console)

    if not args.quotes.exists():
        logger.error("Quote file not found", path=str(args.quotes))
        return 1

    runner = ReplayRunner(market_filter=args.market, since=args.since)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.shutdown)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    submitted = await runner.run(args.quotes)
    logger.info("Replay complete", submitted=submitted, **runner.get_summary())
    return 0


def cli() -> None:
    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
