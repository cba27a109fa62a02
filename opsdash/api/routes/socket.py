"""
opsdash.api.routes.socket — Live metrics WebSocket
===================================================

``/ws`` streams ``{"event": "metrics", "data": {...}}`` every tick.  The
session token travels in the handshake, either as ``?token=`` or as an
``Authorization: Bearer`` header; a missing or invalid token closes the
socket with code 4401 before it is accepted.

Client → server messages (JSON text frames)::

    {"event": "ping"}     → {"event": "pong", "data": {"ts": "<iso time>"}}

A binary or non-JSON frame drops the subscriber.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket

from opsdash.api.deps import authenticate, bearer_token, get_services
from opsdash.clock import utcnow
from opsdash.errors import Unauthenticated

logger = logging.getLogger(__name__)
router = APIRouter(tags=["socket"])

UNAUTHORIZED_CLOSE = 4401


@router.websocket("/ws")
async def metrics_socket(websocket: WebSocket):
    services = get_services(websocket)
    token = websocket.query_params.get("token") or bearer_token(
        websocket.headers.get("authorization")
    )
    try:
        claims = authenticate(services, token)
    except Unauthenticated as exc:
        logger.info("Socket rejected: %s", exc.kind)
        await websocket.close(code=UNAUTHORIZED_CLOSE, reason=exc.message)
        return

    await websocket.accept()
    try:
        subscriber = await services.hub.accept(websocket, claims)
    except RuntimeError:
        return

    reason = "client disconnected"
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            text = message.get("text")
            try:
                payload = json.loads(text) if text is not None else None
            except ValueError:
                payload = None
            if not isinstance(payload, dict):
                await services.hub.drop(subscriber, "malformed message")
                return
            event = payload.get("event")
            if event == "ping":
                await services.hub.send(
                    subscriber, {"event": "pong", "data": {"ts": utcnow().isoformat()}}
                )
            else:
                logger.debug("Ignoring socket message from %s: %r", subscriber.id, event)
    except RuntimeError:
        # the hub already closed this socket after a failed send
        reason = "socket closed"
    finally:
        await services.hub.drop(subscriber, reason, close=False)
