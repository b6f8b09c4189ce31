from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional
from uuid import uuid4

from deliberation.auth.auth import Identity, verify_realtime_credential
from deliberation.config.loader import get_realtime_settings

logger = logging.getLogger(__name__)

RESYNC = "RESYNC"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change notification: the operation plus the new row image."""

    table: str
    operation: str
    new: Dict[str, Any]
    received_at: datetime = field(default_factory=_now)

    @property
    def requires_resync(self) -> bool:
        return self.operation == RESYNC


class Subscription:
    """A live handle on one (table, filter) scope, bound to the subscriber's loop."""

    def __init__(
        self,
        table: str,
        row_filter: Mapping[str, Any],
        identity: Identity,
        *,
        max_pending: int,
    ) -> None:
        self.id = str(uuid4())
        self.table = table
        self.row_filter = dict(row_filter)
        self.identity = identity
        self.closed = False
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[Optional[ChangeEvent]] = asyncio.Queue(
            maxsize=max_pending
        )

    def matches(self, table: str, row: Mapping[str, Any]) -> bool:
        if table != self.table:
            return False
        return all(row.get(key) == value for key, value in self.row_filter.items())

    def _enqueue(self, event: Optional[ChangeEvent]) -> None:
        if self.closed and event is not None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            if event is None:
                # Closing: the pending backlog is moot, only the wake-up matters.
                while not self._queue.empty():
                    self._queue.get_nowait()
                self._queue.put_nowait(None)
                return
            # The subscriber fell behind; collapse the backlog into one resync marker.
            logger.warning(
                "Subscription %s on %s overflowed; requesting resync.",
                self.id,
                self.table,
            )
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(ChangeEvent(table=self.table, operation=RESYNC, new={}))

    def deliver(self, event: Optional[ChangeEvent]) -> bool:
        """Hand an event to the subscriber's loop; safe to call from any thread."""
        try:
            self._loop.call_soon_threadsafe(self._enqueue, event)
        except RuntimeError:
            logger.warning("Subscription %s loop is closed; dropping.", self.id)
            self.closed = True
            return False
        return True

    async def next_event(self) -> Optional[ChangeEvent]:
        """Return the next event, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event


class ChangeFeed:
    """
    Row-level change notifications for the shared view-state and session rows.

    Delivery is best effort while connected: there is no ordering or
    exactly-once guarantee, so subscribers pair it with pull-based refreshes.
    """

    def __init__(
        self,
        authorizer: Callable[[Optional[str]], Identity] = verify_realtime_credential,
        max_pending: Optional[int] = None,
    ) -> None:
        self._authorizer = authorizer
        self._max_pending = max_pending
        # Key: table, Value: {subscription_id: Subscription}
        self._subscriptions: Dict[str, Dict[str, Subscription]] = {}

    def subscribe(
        self,
        table: str,
        row_filter: Mapping[str, Any],
        *,
        credential: Optional[str],
    ) -> Subscription:
        """Open a subscription; the credential is verified on every call."""
        identity = self._authorizer(credential)
        max_pending = self._max_pending or get_realtime_settings()["max_pending_events"]
        subscription = Subscription(table, row_filter, identity, max_pending=max_pending)
        self._subscriptions.setdefault(table, {})[subscription.id] = subscription
        logger.debug(
            "Subscribed: table=%s filter=%s subscription_id=%s user_id=%s",
            table,
            subscription.row_filter,
            subscription.id,
            identity.user_id,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        table_subscriptions = self._subscriptions.get(subscription.table)
        if table_subscriptions is not None:
            table_subscriptions.pop(subscription.id, None)
            if not table_subscriptions:
                self._subscriptions.pop(subscription.table, None)
        if not subscription.closed:
            subscription.closed = True
            # Wake any consumer blocked on the queue.
            subscription.deliver(None)
        logger.debug(
            "Unsubscribed: table=%s subscription_id=%s",
            subscription.table,
            subscription.id,
        )

    def publish(self, table: str, operation: str, row: Mapping[str, Any]) -> int:
        """Fan a committed row change out to matching subscribers."""
        delivered = 0
        image = dict(row)
        for subscription in list(self._subscriptions.get(table, {}).values()):
            if subscription.closed or not subscription.matches(table, image):
                continue
            event = ChangeEvent(table=table, operation=operation, new=dict(image))
            if subscription.deliver(event):
                delivered += 1
            else:
                self.unsubscribe(subscription)
        return delivered

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, {}))
        return sum(len(entries) for entries in self._subscriptions.values())


change_feed = ChangeFeed()
