"""Per-view realtime reconciler.

One :class:`SessionReconciler` is owned by each live session view (one
WebSocket connection). It keeps the view's derived state consistent with the
authoritative session and shared view-state rows by combining change-feed
events with pull-based refreshes:

* every (re)subscription attaches a freshly derived credential and is
  followed by one authoritative pull, because events may have been missed
  while the view was suspended;
* events older than the rows already applied are discarded;
* a derived state that is not yet settled (status and view state disagree)
  schedules a follow-up pull after ``settle_resync_seconds``;
* an explicit refresh always re-applies state, while event-driven updates
  that derive the same state as before are dropped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from deliberation.config.loader import get_realtime_settings
from deliberation.data.gateway import PersistenceGateway
from deliberation.errors import DeliberationError, MalformedRecord, TransientIO
from deliberation.schemas.records import (
    SessionRecord,
    SyncStateRecord,
    translate_table_row,
)
from deliberation.services.change_feed import ChangeEvent, ChangeFeed, Subscription
from deliberation.services.live_state import (
    DerivedState,
    LiveView,
    build_live_view,
    derive_state,
)

logger = logging.getLogger(__name__)

SESSION_TABLE = "deliberation_sessions"
SYNC_TABLE = "sync_state"
NEW_CANDIDATE_NOTICE = "new_candidate"
MAX_SETTLE_ATTEMPTS = 3

StateListener = Callable[[LiveView], Awaitable[None]]
CredentialProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]
Heads = Tuple[Optional[SessionRecord], Optional[SyncStateRecord]]


def _is_stale(current, incoming) -> bool:
    if current is None:
        return False
    if current.updated_at is None or incoming.updated_at is None:
        return False
    return incoming.updated_at < current.updated_at


class SessionReconciler:
    def __init__(
        self,
        session_id: str,
        user_id: Optional[str],
        *,
        session_factory: sessionmaker,
        feed: ChangeFeed,
        credential_provider: CredentialProvider,
        on_state: StateListener,
        settle_delay: Optional[float] = None,
    ) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self._session_factory = session_factory
        self._feed = feed
        self._credential_provider = credential_provider
        self._on_state = on_state
        if settle_delay is None:
            settle_delay = get_realtime_settings()["settle_resync_seconds"]
        self._settle_delay = settle_delay

        self._session: Optional[SessionRecord] = None
        self._sync: Optional[SyncStateRecord] = None
        self._derived: Optional[DerivedState] = None
        self._view: Optional[LiveView] = None
        self._subscriptions: List[Subscription] = []
        self._pumps: List[asyncio.Task] = []
        self._settle_task: Optional[asyncio.Task] = None
        self._settle_attempts = 0
        self._lock = asyncio.Lock()
        self._closed = False

    # -- public surface ---------------------------------------------------

    @property
    def view(self) -> Optional[LiveView]:
        return self._view

    @property
    def derived(self) -> Optional[DerivedState]:
        return self._derived

    @property
    def subscribed(self) -> bool:
        return bool(self._subscriptions) and not any(
            subscription.closed for subscription in self._subscriptions
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> LiveView:
        """Subscribe to both row scopes, then pull authoritative state."""
        return await self._subscribe()

    async def resume(self) -> LiveView:
        """Re-enter the foreground: drop old handles and subscribe afresh."""
        logger.debug("Resuming reconciler for session %s", self.session_id)
        return await self._subscribe()

    async def refresh(self, *, manual: bool = True) -> Optional[LiveView]:
        """Pull both head rows and apply them; a manual refresh always pushes."""
        async with self._lock:
            session, sync = await run_in_threadpool(self._pull_heads)
            return await self._apply(session, sync, force=manual)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_settle()
        await self._teardown()
        logger.debug("Reconciler closed for session %s", self.session_id)

    # -- subscription lifecycle -------------------------------------------

    async def _credential(self) -> Optional[str]:
        credential = self._credential_provider()
        if inspect.isawaitable(credential):
            credential = await credential
        return credential

    async def _subscribe(self) -> LiveView:
        if self._closed:
            raise RuntimeError("Reconciler is closed.")
        await self._teardown()
        credential = await self._credential()

        subscriptions: List[Subscription] = []
        try:
            subscriptions.append(
                self._feed.subscribe(
                    SYNC_TABLE, {"session_id": self.session_id}, credential=credential
                )
            )
            subscriptions.append(
                self._feed.subscribe(
                    SESSION_TABLE, {"id": self.session_id}, credential=credential
                )
            )
        except DeliberationError:
            for subscription in subscriptions:
                self._feed.unsubscribe(subscription)
            raise
        self._subscriptions = subscriptions

        # Events arriving during the pull queue up and are checked for staleness.
        view = await self.refresh(manual=True)
        self._pumps = [
            asyncio.create_task(self._pump(subscription))
            for subscription in subscriptions
        ]
        return view

    async def _teardown(self) -> None:
        pumps, self._pumps = self._pumps, []
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            self._feed.unsubscribe(subscription)
        current = asyncio.current_task()
        others = [task for task in pumps if task is not current]
        for task in others:
            task.cancel()
        if others:
            await asyncio.gather(*others, return_exceptions=True)

    async def _pump(self, subscription: Subscription) -> None:
        async for event in subscription:
            if self._closed:
                break
            try:
                await self._handle_event(event)
            except (TransientIO, MalformedRecord) as exc:
                # Keep the last known good state and let a later pull repair it.
                logger.warning(
                    "Change event for session %s not applied: %s",
                    self.session_id,
                    exc,
                )
                self._schedule_settle(force=True)

    # -- event handling ---------------------------------------------------

    async def _handle_event(self, event: ChangeEvent) -> Optional[LiveView]:
        if event.requires_resync:
            logger.info(
                "Change feed overflow on %s for session %s; pulling.",
                event.table,
                self.session_id,
            )
            return await self.refresh(manual=False)

        if event.table not in (SYNC_TABLE, SESSION_TABLE):
            return None
        record = translate_table_row(event.table, event.new)

        async with self._lock:
            session, sync = self._session, self._sync
            if event.table == SYNC_TABLE:
                if _is_stale(sync, record):
                    logger.debug("Discarding stale sync_state event for %s", self.session_id)
                    return None
                sync = record
            else:
                if _is_stale(session, record):
                    logger.debug("Discarding stale session event for %s", self.session_id)
                    return None
                session = record
            return await self._apply(session, sync, force=False)

    async def _apply(
        self,
        session: Optional[SessionRecord],
        sync: Optional[SyncStateRecord],
        *,
        force: bool,
    ) -> Optional[LiveView]:
        derived = derive_state(session.status if session else None, sync)
        if not force and self._view is not None and derived == self._derived:
            # Same picture as before, e.g. a duplicate candidate notification.
            self._session, self._sync = session, sync
            self._track_settled(derived)
            return None

        view = await run_in_threadpool(self._hydrate, session, sync, derived)
        previous = self._derived
        notice = None
        if (
            previous is not None
            and derived.candidate_id
            and derived.candidate_id != previous.candidate_id
        ):
            notice = NEW_CANDIDATE_NOTICE
        view = view.with_notice(notice)

        self._session, self._sync = session, sync
        self._derived, self._view = derived, view
        self._track_settled(derived)
        await self._on_state(view)
        return view

    # -- provisional states -----------------------------------------------

    def _track_settled(self, derived: DerivedState) -> None:
        if derived.settled:
            self._settle_attempts = 0
            self._cancel_settle()
            return
        self._schedule_settle()

    def _schedule_settle(self, *, force: bool = False) -> None:
        if self._closed or self._settle_task is not None:
            return
        if not force and self._settle_attempts >= MAX_SETTLE_ATTEMPTS:
            logger.warning(
                "Session %s still unsettled after %d pulls; waiting for changes.",
                self.session_id,
                self._settle_attempts,
            )
            return
        self._settle_attempts += 1
        self._settle_task = asyncio.create_task(self._settle_later())

    def _cancel_settle(self) -> None:
        task, self._settle_task = self._settle_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _settle_later(self) -> None:
        await asyncio.sleep(self._settle_delay)
        self._settle_task = None
        if self._closed:
            return
        try:
            await self.refresh(manual=False)
        except DeliberationError as exc:
            logger.warning("Resync for session %s failed: %s", self.session_id, exc)

    # -- storage (worker thread) ------------------------------------------

    def _pull_heads(self) -> Heads:
        with self._session_factory() as db:
            gateway = PersistenceGateway(db)
            return gateway.get_session(self.session_id), gateway.get_sync_state(
                self.session_id
            )

    def _hydrate(
        self,
        session: Optional[SessionRecord],
        sync: Optional[SyncStateRecord],
        derived: DerivedState,
    ) -> LiveView:
        with self._session_factory() as db:
            gateway = PersistenceGateway(db)
            return build_live_view(
                gateway, self.session_id, session, sync, self.user_id, derived=derived
            )
