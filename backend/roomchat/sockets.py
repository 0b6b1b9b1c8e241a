import logging

import socketio
from jose import JWTError, jwt
from socketio.exceptions import ConnectionRefusedError as SocketConnectionRefused

from .config import Settings
from .errors import ChatError
from .gateway import MessagingGateway

logger = logging.getLogger(__name__)


def _internal_error() -> dict:
    return {"type": "InternalError", "message": "Internal server error", "status": 500}


async def _ack(coro) -> dict:
    """Run one inbound event and turn its outcome into a Socket.IO acknowledgment."""
    try:
        result = await coro
    except ChatError as exc:
        return {"ok": False, "error": exc.to_dict()}
    except Exception:
        logger.exception("Unhandled error in socket event")
        return {"ok": False, "error": _internal_error()}
    return {"ok": True, **result}


def _as_id(value):
    """Numeric ids from JSON clients are accepted as their string form."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


def authenticate(auth_data, settings: Settings):
    """
    Returns the user id bound to this connection, or None for an anonymous one.
    Raises ConnectionRefusedError when the token is bad or auth is mandatory.
    """
    token = auth_data.get("token") if auth_data else None
    if not token:
        if settings.SOCKET_AUTH_REQUIRED:
            raise SocketConnectionRefused("authentication required")
        return None
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise SocketConnectionRefused("invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise SocketConnectionRefused("invalid token")
    return user_id


def create_socket_server(gateway: MessagingGateway, settings: Settings) -> socketio.AsyncServer:
    sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=settings.CORS_ORIGINS)

    async def emit_to(session_id: str, event: str, data: dict):
        await sio.emit(event, data, to=session_id)

    async def drop(session_id: str):
        await sio.disconnect(session_id)

    gateway.on_drop = drop

    @sio.event
    async def connect(sid, environ, auth_data=None):
        try:
            user_id = authenticate(auth_data, settings)
        except SocketConnectionRefused:
            logger.warning("Refused socket connection %s", sid)
            raise

        await gateway.connect(emit_to, session_id=sid, user_id=user_id)

        # optional auto-join, as the web client passes its room on connect
        room = _as_id(auth_data.get("roomId")) if auth_data else None
        if room:
            try:
                await gateway.join_room(sid, room, _as_id(auth_data.get("userId")))
            except ChatError as exc:
                logger.warning("Auto-join of %s to %s failed: %s", sid, room, exc.message)

    @sio.on("joinRoom")
    async def join_room(sid, data):
        if isinstance(data, str):
            data = {"roomId": data}
        data = data or {}

        async def op():
            room_id = _as_id(data.get("roomId"))
            users = await gateway.join_room(sid, room_id, _as_id(data.get("userId")))
            return {"roomId": room_id, "users": users}

        return await _ack(op())

    @sio.on("leaveRoom")
    async def leave_room(sid, data):
        if isinstance(data, str):
            data = {"roomId": data}
        data = data or {}

        async def op():
            room_id = _as_id(data.get("roomId"))
            left = await gateway.leave_room(sid, room_id)
            return {"roomId": room_id, "left": left}

        return await _ack(op())

    @sio.on("sendMessage")
    async def send_message(sid, data):
        data = data or {}

        async def op():
            message = await gateway.send_message(
                sid,
                _as_id(data.get("roomId")),
                _as_id(data.get("userId")),
                # older clients send the body as "message"
                data.get("content", data.get("message")),
                data.get("type") or "text",
            )
            return {"message": message.model_dump(mode="json", by_alias=True)}

        return await _ack(op())

    @sio.event
    async def disconnect(sid, *args):
        await gateway.disconnect(sid)

    return sio
