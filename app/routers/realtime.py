import asyncio
import json
import logging
from datetime import datetime, UTC
from typing import Any, Dict, FrozenSet, Mapping, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth.identity import UserIdentity, build_identity
from app.auth.subscription_token import decode_subscription_token
from app.database import get_db
from app.services.presence_tracker import presence_tracker
from app.services.session_state import SessionStateMachine
from app.utils.broadcast_hub import Subscription, broadcast_hub, normalize_sub_topics

router = APIRouter(tags=["realtime"])

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0


def _split_topics(raw: Any) -> list:
    return [name for name in str(raw or "").split(",") if name.strip()]


def _resolve_subscriber(
    retrospective_id: str, params: Mapping[str, str]
) -> Tuple[UserIdentity, FrozenSet[str]]:
    """Work out who is subscribing and to which sub-topics.

    A signed token wins over plain query values and bounds the topics that
    may be requested.
    """
    try:
        requested = normalize_sub_topics(_split_topics(params.get("topics")))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    token = params.get("token")
    if token:
        claims = decode_subscription_token(token, retrospective_id)
        identity = build_identity(claims.get("sub"), claims.get("name"))
        granted = frozenset(claims.get("topics") or [])
        if granted:
            if not requested:
                requested = granted
            elif not requested <= granted:
                raise HTTPException(
                    status_code=403,
                    detail="Requested topics are not covered by the subscription token.",
                )
        return identity, requested

    identity = build_identity(
        params.get("userId"),
        params.get("userName"),
        params.get("avatar"),
        params.get("roles"),
    )
    return identity, requested


def _connection_ack(
    retrospective_id: str, subscription: Subscription, identity: UserIdentity
) -> Dict[str, Any]:
    return {
        "type": "connection_ack",
        "payload": {
            "retrospectiveId": retrospective_id,
            "subscriptionId": subscription.id,
            "userId": identity.user_id,
            "topics": sorted(subscription.topics),
        },
    }


def format_sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.queue.get()
        await websocket.send_json(event)


@router.websocket("/ws/retrospectives/{retrospective_id}")
async def retrospective_socket(
    websocket: WebSocket,
    retrospective_id: str,
    db: Session = Depends(get_db),
) -> None:
    """Push session events to one browser; ``heartbeat`` frames refresh presence."""
    machine = SessionStateMachine(db)
    try:
        retrospective = machine.get_session(retrospective_id)
        identity, topics = _resolve_subscriber(retrospective_id, websocket.query_params)
    except HTTPException as exc:
        logger.info(
            "Rejected WebSocket for retrospective %s: %s", retrospective_id, exc.detail
        )
        await websocket.close(code=1008, reason=str(exc.detail))
        return

    await websocket.accept()
    subscription = broadcast_hub.subscribe(
        retrospective_id, topics, user_id=identity.user_id
    )
    await websocket.send_json(_connection_ack(retrospective_id, subscription, identity))
    pump = asyncio.create_task(_pump(websocket, subscription))

    try:
        while True:
            message = await websocket.receive_json()
            message_type = message.get("type") if isinstance(message, dict) else None

            if message_type == "ping":
                await websocket.send_json(
                    {
                        "type": "pong",
                        "payload": {
                            "retrospectiveId": retrospective_id,
                            "timestamp": datetime.now(UTC).isoformat(),
                        },
                    }
                )
            elif message_type == "heartbeat":
                presence_tracker.heartbeat(
                    retrospective_id,
                    identity,
                    owner_id=retrospective.owner_id,
                    timer_like_states=machine.timer_like_states(retrospective_id),
                )
            else:
                await websocket.send_json(
                    {
                        "type": "error",
                        "payload": {
                            "message": f"Unknown message type '{message_type}'",
                        },
                    }
                )
    except WebSocketDisconnect:
        logger.debug(
            "WebSocketDisconnect: retrospective_id=%s subscription_id=%s",
            retrospective_id,
            subscription.id,
        )
    finally:
        pump.cancel()
        broadcast_hub.unsubscribe(subscription)


@router.get("/api/retrospectives/{retrospective_id}/events")
async def retrospective_events(
    retrospective_id: str,
    request: Request,
    db: Session = Depends(get_db),
):
    """Server-Sent-Events stream of session events (``data: {json}`` frames)."""
    SessionStateMachine(db).get_session(retrospective_id)
    params = dict(request.query_params)
    if "userId" not in params and request.headers.get("x-user-id"):
        params["userId"] = request.headers["x-user-id"]
        params.setdefault("userName", request.headers.get("x-user-name") or "")
    identity, topics = _resolve_subscriber(retrospective_id, params)
    subscription = broadcast_hub.subscribe(
        retrospective_id, topics, user_id=identity.user_id
    )

    async def event_stream():
        try:
            yield format_sse(_connection_ack(retrospective_id, subscription, identity))
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(
                        subscription.queue.get(), timeout=SSE_KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(event)
        finally:
            broadcast_hub.unsubscribe(subscription)
            logger.debug(
                "SSE stream closed: retrospective_id=%s subscription_id=%s",
                retrospective_id,
                subscription.id,
            )

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
