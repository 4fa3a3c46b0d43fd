import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from app.core.exceptions import AppError
from app.core.security import user_from_token
from app.services.notifications import NotificationHub, note_room, user_room
from app.services.sharing import AccessLevel, resolve_access

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: str = Query(None)):
    """Push channel: ``user:{id}`` on connect, ``note:{id}`` after a join-note event.

    Client messages are ``{"event": "join-note" | "leave-note", "note_id": N}``.
    """
    state = websocket.app.state
    hub: NotificationHub = state.notifications

    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    async with state.database.session_factory() as db:
        try:
            user = await user_from_token(token, db, state.redis, state.settings)
        except AppError:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

    await websocket.accept()
    hub.join(user_room(user.id), websocket)
    logger.info("User %s connected to WebSocket", user.id)

    try:
        while True:
            message = await websocket.receive_json()
            event = message.get("event")
            try:
                note_id = int(message.get("note_id"))
            except (TypeError, ValueError):
                await websocket.send_json({"event": "error", "data": {"message": "note_id is required"}})
                continue

            if event == "join-note":
                async with state.database.session_factory() as db:
                    try:
                        await resolve_access(db, note_id, user.id, AccessLevel.READ)
                    except AppError as exc:
                        await websocket.send_json({"event": "error", "data": {"message": exc.message}})
                        continue
                hub.join(note_room(note_id), websocket)
                logger.info("User %s joined note %s", user.id, note_id)
            elif event == "leave-note":
                hub.leave(note_room(note_id), websocket)
                logger.info("User %s left note %s", user.id, note_id)
    except WebSocketDisconnect:
        logger.info("User %s disconnected", user.id)
    finally:
        hub.disconnect(websocket)
