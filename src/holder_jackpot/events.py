"""
Best-effort event channel between the engine and whoever is listening
(dashboard push channel, persistence, logs).

Publishing never blocks and never fails: each subscriber owns a bounded queue
and an event that does not fit is dropped for that subscriber only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)

COUNTDOWN = "countdown"
STATE_CHANGE = "state_change"
SPIN_START = "spin_start"
WINNER_SELECTED = "winner_selected"
PAYOUT_COMPLETED = "payout_completed"
PAYOUT_FAILED = "payout_failed"
POT_UPDATE = "pot_update"
POT_GROWTH = "pot_growth"
HOLDER_UPDATE = "holder_update"
ELIGIBILITY_CHANGE = "eligibility_change"


@dataclass(frozen=True)
class Event:
    name: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Subscription:
    def __init__(self, bus: "EventBus", maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> Event:
        return await self._queue.get()

    def get_nowait(self) -> Optional[Event]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[Event]:
        events: List[Event] = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        return await self.get()


class EventBus:
    def __init__(self) -> None:
        self._subscribers: List[Subscription] = []

    def subscribe(self, maxsize: int = 256) -> Subscription:
        sub = Subscription(self, maxsize)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, name: str, payload: Dict[str, Any]) -> Event:
        event = Event(name, payload)
        for sub in list(self._subscribers):
            sub.offer(event)
        log.debug("event %s -> %d subscriber(s)", name, len(self._subscribers))
        return event
