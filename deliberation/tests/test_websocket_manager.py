import pytest

from deliberation.utils.websocket_manager import ConnectionInfo, WebSocketManager

pytestmark = pytest.mark.anyio


class _FakeSocket:
    def __init__(self, *, on_send=None, should_fail: bool = False):
        self._on_send = on_send
        self._should_fail = should_fail
        self.sent = []

    async def send_json(self, message):
        if self._on_send:
            self._on_send()
        if self._should_fail:
            raise RuntimeError("send failed")
        self.sent.append(message)


async def test_broadcast_uses_snapshot_when_connections_change():
    manager = WebSocketManager()
    session_id = "SESS-WS-1"

    def _disconnect_peer():
        manager.disconnect(session_id, "conn-b")

    manager.register(session_id, ConnectionInfo("conn-a", _FakeSocket(on_send=_disconnect_peer)))
    manager.register(session_id, ConnectionInfo("conn-b", _FakeSocket()))

    await manager.broadcast(session_id, {"type": "presence"})

    assert "conn-a" in manager.active_connections[session_id]
    assert "conn-b" not in manager.active_connections[session_id]


async def test_failed_sends_drop_the_connection():
    manager = WebSocketManager()
    session_id = "SESS-WS-2"
    manager.register(session_id, ConnectionInfo("conn-ok", _FakeSocket()))
    manager.register(session_id, ConnectionInfo("conn-fail", _FakeSocket(should_fail=True)))

    await manager.broadcast(session_id, {"type": "ping"})

    assert manager.connection_count(session_id) == 1
    assert await manager.send_personal_message(session_id, "conn-fail", {"type": "x"}) is False
    assert await manager.send_personal_message(session_id, "conn-ok", {"type": "x"}) is True


async def test_last_disconnect_removes_session_entry():
    manager = WebSocketManager()
    socket = _FakeSocket()
    manager.register("SESS-WS-3", ConnectionInfo("conn-1", socket, user_id="voter-1"))

    assert manager.active_connections["SESS-WS-3"]["conn-1"].user_id == "voter-1"
    manager.disconnect("SESS-WS-3", "conn-1")

    assert manager.connection_count("SESS-WS-3") == 0
    assert "SESS-WS-3" not in manager.active_connections
