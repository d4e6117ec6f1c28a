from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from app.backend.base import ChangeCallback, ChangeEvent, Subscription, deliver, matches


class LocalSubscription(Subscription):
    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        events: Iterable[str],
        eq: Optional[Dict[str, Any]],
        callback: ChangeCallback,
    ):
        super().__init__(table, events, eq)
        self._feed = feed
        self.callback = callback

    def wants(self, event: ChangeEvent) -> bool:
        if self.closed or event.table != self.table:
            return False
        if "*" not in self.events and event.kind not in self.events:
            return False
        return matches(event.record, self.eq)

    async def unsubscribe(self) -> None:
        self.closed = True
        self._feed.remove(self)


class ChangeFeed:
    """
    In-process stand-in for realtime postgres changes.

    Rows written through the SQL backend are published here after commit.
    Each subscriber only sees events for its table, event kinds and
    equality filter. There is no replay for late subscribers.
    """

    def __init__(self) -> None:
        self._subs: List[LocalSubscription] = []

    def __len__(self) -> int:
        return len(self._subs)

    def add(
        self,
        table: str,
        events: Iterable[str],
        callback: ChangeCallback,
        eq: Optional[Dict[str, Any]] = None,
    ) -> LocalSubscription:
        sub = LocalSubscription(self, table, events, eq, callback)
        self._subs.append(sub)
        logger.debug(f"[feed] subscribed table={table} events={sub.events} eq={sub.eq}")
        return sub

    def remove(self, sub: LocalSubscription) -> None:
        if sub in self._subs:
            self._subs.remove(sub)
            logger.debug(f"[feed] unsubscribed table={sub.table} eq={sub.eq}")

    async def publish(self, event: ChangeEvent) -> None:
        for sub in list(self._subs):
            if not sub.wants(event):
                continue
            try:
                await deliver(sub.callback, event)
            except Exception:
                # one broken listener must not fail the write that triggered it
                logger.exception(f"[feed] subscriber failed on {event.kind} {event.table}")
