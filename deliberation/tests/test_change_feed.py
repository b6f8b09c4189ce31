from datetime import timedelta

import pytest

from deliberation.auth.auth import Identity, create_realtime_credential
from deliberation.errors import Unauthenticated
from deliberation.services.change_feed import ChangeFeed

pytestmark = pytest.mark.anyio


def _credential(user_id="voter-1", **kwargs):
    return create_realtime_credential(Identity(user_id=user_id), **kwargs)


async def test_publish_reaches_matching_subscribers_only():
    feed = ChangeFeed(max_pending=8)
    mine = feed.subscribe("sync_state", {"session_id": "s1"}, credential=_credential())
    other = feed.subscribe("sync_state", {"session_id": "s2"}, credential=_credential())

    delivered = feed.publish("sync_state", "UPDATE", {"session_id": "s1", "view_mode": "role_list"})

    assert delivered == 1
    event = await mine.next_event()
    assert event.operation == "UPDATE"
    assert event.new["view_mode"] == "role_list"
    assert other._queue.empty()


async def test_subscribe_rejects_stale_or_missing_credentials():
    feed = ChangeFeed(max_pending=8)
    expired = _credential(expires_delta=timedelta(seconds=-5))

    with pytest.raises(Unauthenticated):
        feed.subscribe("sync_state", {"session_id": "s1"}, credential=expired)
    with pytest.raises(Unauthenticated):
        feed.subscribe("sync_state", {"session_id": "s1"}, credential=None)
    assert feed.subscriber_count() == 0


async def test_access_token_is_not_a_realtime_credential():
    from deliberation.auth.auth import create_access_token

    feed = ChangeFeed(max_pending=8)
    with pytest.raises(Unauthenticated):
        feed.subscribe(
            "sync_state", {"session_id": "s1"}, credential=create_access_token("voter-1")
        )


async def test_overflow_collapses_into_resync_marker():
    feed = ChangeFeed(max_pending=2)
    subscription = feed.subscribe("sync_state", {"session_id": "s1"}, credential=_credential())

    for index in range(5):
        feed.publish("sync_state", "UPDATE", {"session_id": "s1", "n": index})

    events = [await subscription.next_event()]
    while not subscription._queue.empty():
        events.append(await subscription.next_event())
    assert any(item.requires_resync for item in events)
    assert len(events) < 5


async def test_unsubscribe_ends_iteration():
    feed = ChangeFeed(max_pending=8)
    subscription = feed.subscribe("deliberation_sessions", {"id": "s1"}, credential=_credential())

    feed.unsubscribe(subscription)

    assert feed.subscriber_count("deliberation_sessions") == 0
    received = [event async for event in subscription]
    assert received == []
    assert feed.publish("deliberation_sessions", "UPDATE", {"id": "s1"}) == 0
