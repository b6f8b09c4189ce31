import logging
from datetime import UTC, datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from deliberation.auth.auth import (
    ACCESS_TOKEN_TYPE,
    Identity,
    create_realtime_credential,
    decode_token,
    require_identity,
)
from deliberation.config.loader import get_realtime_settings
from deliberation.data.gateway import PersistenceGateway
from deliberation.database import get_session_factory
from deliberation.errors import DeliberationError, Unauthenticated
from deliberation.services.change_feed import change_feed
from deliberation.services.live_state import LiveView
from deliberation.services.reconciler import SessionReconciler
from deliberation.utils.websocket_manager import websocket_manager

router = APIRouter(tags=["realtime"])

logger = logging.getLogger(__name__)


def _error_message(exc: DeliberationError) -> Dict[str, Any]:
    return {"type": "error", "payload": {"message": exc.message, "code": exc.code}}


def _session_exists(factory: sessionmaker, session_id: str) -> bool:
    with factory() as db:
        return PersistenceGateway(db).get_session(session_id) is not None


@router.post("/api/realtime/credential")
async def issue_realtime_credential(
    identity: Identity = Depends(require_identity),
) -> Dict[str, Any]:
    """Mint a short-lived credential for one realtime (re)subscribe."""
    minutes = get_realtime_settings()["credential_expire_minutes"]
    return {
        "credential": create_realtime_credential(identity),
        "expires_in": minutes * 60,
    }


@router.websocket("/ws/sessions/{session_id}")
async def session_socket(
    websocket: WebSocket,
    session_id: str,
    session_factory: sessionmaker = Depends(get_session_factory),
) -> None:
    """
    Live session view. The server pushes ``live_state`` messages; the client
    may send ``ping``, ``refresh``, ``resume`` (after returning to the
    foreground) and ``auth`` (replace the access token).
    """
    try:
        identity = decode_token(
            websocket.query_params.get("token"), expected_type=ACCESS_TOKEN_TYPE
        )
    except Unauthenticated as exc:
        await websocket.close(code=1008, reason=exc.message)
        return

    try:
        exists = await run_in_threadpool(_session_exists, session_factory, session_id)
    except DeliberationError as exc:
        await websocket.close(code=1011, reason=exc.message)
        return
    if not exists:
        logger.error("Session %s not found for WebSocket connection", session_id)
        await websocket.close(code=1008, reason="Session not found")
        return

    connection_id = await websocket_manager.connect(
        websocket, session_id, user_id=identity.user_id
    )
    current = {"identity": identity}

    async def push_state(view: LiveView) -> None:
        await websocket_manager.send_personal_message(
            session_id,
            connection_id,
            {"type": "live_state", "payload": view.to_payload()},
        )

    def fresh_credential() -> str:
        # Derived anew for every (re)subscribe; an expired access token must be
        # replaced through ``auth``/``resume`` before the view can resubscribe.
        identity = decode_token(
            current["identity"].credential, expected_type=ACCESS_TOKEN_TYPE
        )
        return create_realtime_credential(identity)

    async def send_error(exc: DeliberationError) -> None:
        await websocket_manager.send_personal_message(
            session_id, connection_id, _error_message(exc)
        )

    async def announce_presence() -> None:
        await websocket_manager.broadcast(
            session_id,
            {
                "type": "presence",
                "payload": {
                    "sessionId": session_id,
                    "connected": websocket_manager.connection_count(session_id),
                },
            },
        )

    reconciler = SessionReconciler(
        session_id,
        identity.user_id,
        session_factory=session_factory,
        feed=change_feed,
        credential_provider=fresh_credential,
        on_state=push_state,
    )

    try:
        try:
            await reconciler.start()
        except DeliberationError as exc:
            await send_error(exc)
        await announce_presence()

        while True:
            message = await websocket.receive_json()
            message_type = message.get("type")
            payload = message.get("payload") or {}

            try:
                if message_type == "ping":
                    await websocket_manager.send_personal_message(
                        session_id,
                        connection_id,
                        {
                            "type": "pong",
                            "payload": {
                                "sessionId": session_id,
                                "timestamp": datetime.now(UTC).isoformat(),
                            },
                        },
                    )
                elif message_type == "refresh":
                    await reconciler.refresh(manual=True)
                elif message_type in {"resume", "auth"}:
                    token = payload.get("token")
                    if token:
                        new_identity = decode_token(token, expected_type=ACCESS_TOKEN_TYPE)
                        if new_identity.user_id != current["identity"].user_id:
                            raise Unauthenticated("Token belongs to a different user.")
                        current["identity"] = new_identity
                    if message_type == "resume":
                        await reconciler.resume()
                    else:
                        await websocket_manager.send_personal_message(
                            session_id,
                            connection_id,
                            {"type": "auth_ok", "payload": {"sessionId": session_id}},
                        )
                else:
                    await websocket_manager.send_personal_message(
                        session_id,
                        connection_id,
                        {
                            "type": "error",
                            "payload": {
                                "message": f"Unknown message type '{message_type}'",
                                "code": "invalid_request",
                            },
                        },
                    )
            except DeliberationError as exc:
                logger.info(
                    "Realtime request failed: session_id=%s connection_id=%s type=%s error=%s",
                    session_id,
                    connection_id,
                    message_type,
                    exc.code,
                )
                await send_error(exc)
    except WebSocketDisconnect:
        logger.debug(
            "WebSocketDisconnect: session_id=%s connection_id=%s",
            session_id,
            connection_id,
        )
    finally:
        await reconciler.close()
        websocket_manager.disconnect(session_id, connection_id)
        await announce_presence()
