"""
Per-connection messaging protocol, independent of the socket transport.

A session moves from CONNECTED (member of zero or more rooms) to CLOSED.
Inbound events of one session are handled one at a time in arrival order.
Within a room, append and broadcast happen under the same lock, so every member
sees messages in the store's append order. Nothing is broadcast unless the
append committed.
"""
import asyncio
import logging
import uuid
import weakref
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from .directory import UserDirectory
from .errors import AuthorizationError, NotFound, PersistenceError, ValidationError
from .registry import RoomRegistry, SessionHandle
from .schemas import MessageRead, MessageRecord, MessageType
from .store import MessageStore

logger = logging.getLogger(__name__)

RECEIVE_EVENT = "receiveMessage"
PRESENCE_EVENT = "roomUsers"

Emitter = Callable[[str, str, dict], Awaitable[None]]


class SessionState(str, Enum):
    CONNECTED = "connected"
    CLOSED = "closed"


class GatewaySession:
    def __init__(self, session_id: str, handle: SessionHandle, user_id: Optional[str] = None):
        self.session_id = session_id
        self.handle = handle
        # set when the connection was authenticated; events may not act as anyone else
        self.user_id = user_id
        self.state = SessionState.CONNECTED
        self.lock = asyncio.Lock()
        self.pump: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED


def _check_id(value, field: str):
    # JSON clients may send numbers; ids are strings everywhere downstream
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")


def hydrate_messages(records: Iterable[MessageRecord], directory: UserDirectory) -> list[MessageRead]:
    records = list(records)
    senders = directory.find_by_ids(r.sender_id for r in records)
    return [MessageRead.from_record(r, senders.get(r.sender_id)) for r in records]


class MessagingGateway:
    def __init__(
        self,
        registry: RoomRegistry,
        store: MessageStore,
        directory: UserDirectory,
        on_drop: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.registry = registry
        self.store = store
        self.directory = directory
        self.on_drop = on_drop
        self.sessions: dict[str, GatewaySession] = {}
        # held only while a send is in flight, so idle rooms cost nothing
        self._room_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._background: set[asyncio.Task] = set()
        registry.on_evict = self._on_evict

    # --- lifecycle ---
    async def connect(self, emit: Emitter, session_id: Optional[str] = None, user_id: Optional[str] = None) -> GatewaySession:
        session_id = session_id or uuid.uuid4().hex
        if session_id in self.sessions:
            raise ValidationError(f"Session {session_id} is already connected")
        handle = self.registry.register(session_id, user_id)
        session = GatewaySession(session_id, handle, user_id)
        session.pump = asyncio.create_task(self._pump(session, emit))
        self.sessions[session_id] = session
        logger.info("Session %s connected (user=%s)", session_id, user_id)
        return session

    async def disconnect(self, session_id: str) -> set[str]:
        """Leave every room immediately. Returns the rooms the session was in."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return set()
        session.state = SessionState.CLOSED
        rooms = self.registry.unregister(session_id)
        if session.pump:
            session.pump.cancel()
        logger.info("Session %s disconnected, left %d room(s)", session_id, len(rooms))
        for room_id in rooms:
            self._announce(room_id)
        return rooms

    async def shutdown(self):
        for session_id in list(self.sessions):
            await self.disconnect(session_id)
        self.registry.close()

    # --- inbound events ---
    async def join_room(self, session_id: str, room_id: str, user_id: Optional[str] = None) -> list[str]:
        session = self._session(session_id)
        async with session.lock:
            self._ensure_open(session)
            _check_id(room_id, "roomId")
            user_id = self._acting_user(session, user_id)
            if self.registry.join(room_id, session_id, user_id):
                logger.info("Session %s (user=%s) joined room %s", session_id, user_id, room_id)
                self._announce(room_id)
            return self.registry.room_users(room_id)

    async def leave_room(self, session_id: str, room_id: str) -> bool:
        session = self._session(session_id)
        async with session.lock:
            self._ensure_open(session)
            _check_id(room_id, "roomId")
            left = self.registry.leave(session_id, room_id)
            if left:
                logger.info("Session %s left room %s", session_id, room_id)
                self._announce(room_id)
            return bool(left)

    async def send_message(
        self,
        session_id: str,
        room_id: str,
        user_id: Optional[str],
        content: str,
        type=MessageType.TEXT,
    ) -> MessageRead:
        session = self._session(session_id)
        async with session.lock:
            self._ensure_open(session)
            _check_id(room_id, "roomId")
            user_id = self._acting_user(session, user_id)
            if not self.registry.is_member(room_id, session_id):
                raise AuthorizationError(f"Join room {room_id} before sending to it")

            async with self._room_lock(room_id):
                try:
                    record = await asyncio.to_thread(self.store.append, room_id, user_id, content, type)
                except PersistenceError:
                    logger.error("Dropped message from %s to room %s: not persisted", user_id, room_id)
                    raise

                try:
                    sender = await asyncio.to_thread(self.directory.find_by_id, user_id)
                except PersistenceError:
                    logger.warning("Could not resolve sender %s for message %s", user_id, record.id)
                    sender = None

                message = MessageRead.from_record(record, sender)
                delivered = self.registry.broadcast(
                    room_id, (RECEIVE_EVENT, message.model_dump(mode="json", by_alias=True))
                )
                logger.debug("Message %s fanned out to %d session(s) in %s", record.id, delivered, room_id)
            return message

    # --- internals ---
    def _session(self, session_id: str) -> GatewaySession:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound(f"No such session: {session_id}")
        return session

    def _ensure_open(self, session: GatewaySession):
        if session.closed:
            raise NotFound(f"Session {session.session_id} is closed")

    def _acting_user(self, session: GatewaySession, user_id: Optional[str]) -> str:
        if session.user_id:
            if user_id and user_id != session.user_id:
                raise AuthorizationError("Cannot act on behalf of another user")
            return session.user_id
        _check_id(user_id, "userId")
        return user_id

    def _room_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._room_locks[room_id] = lock
        return lock

    def _announce(self, room_id: str):
        users = self.registry.room_users(room_id)
        self.registry.broadcast(room_id, (PRESENCE_EVENT, {"roomId": room_id, "users": users}))

    async def _pump(self, session: GatewaySession, emit: Emitter):
        queue = session.handle.queue
        while True:
            event, payload = await queue.get()
            try:
                await emit(session.session_id, event, payload)
            except Exception:
                logger.exception("Failed to deliver to session %s", session.session_id)

    def _on_evict(self, handle: SessionHandle):
        session = self.sessions.pop(handle.session_id, None)
        if session is None:
            return
        session.state = SessionState.CLOSED
        if session.pump:
            session.pump.cancel()
        if self.on_drop:
            task = asyncio.get_running_loop().create_task(self.on_drop(handle.session_id))
            self._background.add(task)
            task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Dropping an evicted session failed", exc_info=task.exception())
