"""
Lifecycle event stream.

Publishing is synchronous (it runs inside a market's critical section).
Subscribers get lazy async iterators that first replay retained events
newer than a given sequence number and then follow live ones, so a consumer
that restarts with its last seen sequence resumes without gaps as long as
the events are still retained.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, Optional

import structlog

from src.models.schemas import LifecycleEvent, OpportunityStatus

logger = structlog.get_logger()


@dataclass(frozen=True)
class MarketFilter:
    """Selects which lifecycle events a subscriber receives. Unset fields match anything."""
    event_id: Optional[str] = None
    market_type: Optional[str] = None
    statuses: Optional[frozenset[OpportunityStatus]] = None

    @classmethod
    def for_statuses(cls, statuses: Iterable[OpportunityStatus], **kwargs) -> "MarketFilter":
        return cls(statuses=frozenset(OpportunityStatus(s) for s in statuses), **kwargs)

    def matches(self, event: LifecycleEvent) -> bool:
        if self.event_id is not None and event.event_id != self.event_id:
            return False
        if self.market_type is not None and event.market_type != self.market_type:
            return False
        if self.statuses is not None and event.status not in self.statuses:
            return False
        return True


class EventStream:
    """Sequenced, bounded buffer of lifecycle events with async followers."""

    def __init__(self, buffer_size: int = 1000):
        self.logger = logger.bind(component="event_stream")
        self._events: deque[LifecycleEvent] = deque(maxlen=buffer_size)
        self._last_sequence = 0
        self._waiters: set[asyncio.Event] = set()  # One per waiting subscriber
        self._closed = False
        self._subscribers = 0

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: LifecycleEvent) -> LifecycleEvent:
        """Assign the next sequence number, retain and wake followers."""
        if self._closed:
            raise RuntimeError("event stream is closed")
        self._last_sequence += 1
        event = event.model_copy(update={"sequence": self._last_sequence})
        self._events.append(event)
        self._notify()
        return event

    def _notify(self) -> None:
        waiters, self._waiters = self._waiters, set()
        for wakeup in waiters:
            wakeup.set()

    def close(self) -> None:
        """End every subscription once it has drained retained events."""
        if not self._closed:
            self._closed = True
            self._notify()

    def retained(self, since: int = 0, market_filter: Optional[MarketFilter] = None) -> list[LifecycleEvent]:
        """Retained events with sequence > since matching the filter."""
        return [
            e for e in self._events
            if e.sequence > since and (market_filter is None or market_filter.matches(e))
        ]

    async def subscribe(
        self,
        market_filter: Optional[MarketFilter] = None,
        since: int = 0,
    ) -> AsyncIterator[LifecycleEvent]:
        """
        Iterate lifecycle events with sequence > `since`.

        Args:
            market_filter: Restrict events to matching markets/statuses
            since: Last sequence already seen (0 replays everything retained)
        """
        cursor = since
        self._subscribers += 1
        try:
            while True:
                # Register the waiter before scanning so a publish in between is not missed
                wakeup = asyncio.Event()
                self._waiters.add(wakeup)
                try:
                    if self._events and self._events[0].sequence > cursor + 1 and cursor < self._last_sequence:
                        self.logger.warning(
                            "subscriber_lagged",
                            cursor=cursor,
                            oldest_retained=self._events[0].sequence,
                        )

                    pending = [e for e in self._events if e.sequence > cursor]
                    for event in pending:
                        cursor = event.sequence
                        if market_filter is None or market_filter.matches(event):
                            yield event

                    if self._closed and cursor >= self._last_sequence:
                        return
                    if cursor < self._last_sequence:
                        # More arrived while we were yielding
                        continue
                    await wakeup.wait()
                finally:
                    self._waiters.discard(wakeup)
        finally:
            self._subscribers -= 1

    def get_metrics(self) -> dict:
        return {
            "last_sequence": self._last_sequence,
            "retained": len(self._events),
            "subscribers": self._subscribers,
            "closed": self._closed,
        }
