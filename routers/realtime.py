# Realtime Router for the Influence Chat platform
# WebSocket endpoint: joins the user's room, accepts seen receipts and typing indicators

import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from auth.dependencies import get_user_from_token
from core.errors import ChatEngineError
from services.realtime import MESSAGE_SEEN, TYPING, bind_hub, mark_conversation_seen, relay_typing

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


async def _send_error(websocket: WebSocket, error: dict):
    await websocket.send_json({"event": "error", "data": error})


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: str = Query(...)):
    """
    Clients connect with `/ws?token=<jwt>` and receive every event for
    their `user_{id}` room. Inbound frames are `{"event": ..., "data": {...}}`.
    """
    hub = websocket.app.state.hub
    manager = websocket.app.state.manager

    db = hub.session_factory()
    try:
        user = get_user_from_token(token, db)
        user_id = user.id if user else None
    finally:
        db.close()
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await manager.connect(websocket, user_id)
    try:
        while True:
            frame = await websocket.receive_json()
            if not isinstance(frame, dict):
                await _send_error(websocket, {"error": "invalid_payload", "detail": "Frames must be JSON objects"})
                continue

            event_name = frame.get("event")
            data = frame.get("data") or {}
            if event_name not in (MESSAGE_SEEN, TYPING):
                await _send_error(websocket, {"error": "unknown_event", "detail": f"Unsupported event {event_name!r}"})
                continue

            db = bind_hub(hub.session_factory(), hub)
            try:
                if event_name == TYPING:
                    await relay_typing(db, manager, data.get("conversation_id"), user_id, data.get("is_typing", True))
                else:
                    mark_conversation_seen(db, data.get("conversation_id"), user_id, data.get("message_ids"))
            except ChatEngineError as e:
                await _send_error(websocket, e.to_dict())
            finally:
                db.close()
    except WebSocketDisconnect:
        logger.info(f"WebSocket left user_{user_id}")
    except ValueError:
        # receive_json on a non-JSON frame
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        manager.disconnect(websocket, user_id)
