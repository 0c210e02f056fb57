from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from devconnect.logging import get_logger, set_correlation_id, set_request_user
from devconnect.service.errors import AuthenticationError
from devconnect.service.realtime import Connection
from devconnect.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

UNAUTHORIZED_CLOSE_CODE = 4401


@router.websocket("/ws")
async def realtime_socket(ws: WebSocket, token: Optional[str] = None):
    """Realtime chat delivery.

    The token comes from the ``token`` query parameter or, failing that, from
    a first frame ``{"auth": {"token": "..."}}``. Afterwards every frame is
    ``{"event": name, "data": payload}`` in both directions.
    """
    runtime = get_runtime()
    gateway = runtime.gateway
    set_correlation_id()
    await ws.accept()
    conn: Optional[Connection] = None
    try:
        if not token:
            init = await ws.receive_json()
            auth = init.get("auth") if isinstance(init, dict) else None
            token = auth.get("token") if isinstance(auth, dict) else None
        try:
            identity = gateway.authenticate(token)
        except AuthenticationError as exc:
            logger.info("realtime_handshake_rejected", reason=exc.error)
            await ws.send_json({"event": "error", "data": {"message": "Unauthorized"}})
            await ws.close(code=UNAUTHORIZED_CLOSE_CODE)
            return
        set_request_user(identity.id)
        conn = gateway.connect(ws, identity)
        await conn.send("connected", {"userId": identity.id})
        while True:
            frame = await ws.receive_json()
            if not isinstance(frame, dict):
                await conn.send("error", {"message": "Frames must be JSON objects"})
                continue
            await gateway.handle(conn, frame.get("event"), frame.get("data"))
    except WebSocketDisconnect:
        return
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json", user_id=conn.user_id if conn else None)
        await ws.close(code=1003)
    except Exception as exc:
        logger.error(
            "unhandled_websocket_error",
            user_id=conn.user_id if conn else None,
            error_type=type(exc).__name__,
        )
        await ws.close(code=1011)
    finally:
        if conn is not None:
            gateway.disconnect(conn)
