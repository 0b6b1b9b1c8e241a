"""
In-process room registry.

Maps each room to the sessions currently joined to it and fans payloads out to
them. Every session owns a bounded outbound buffer; ``broadcast`` only ever
enqueues, so a slow client cannot stall a room. A session whose buffer is full
is evicted: removed from every room, closed, and reported through the
``on_evict`` callback so the transport can drop the connection.
"""
import asyncio
import logging
import threading
from collections import defaultdict
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SessionHandle:
    """Outbound side of one live connection."""

    def __init__(self, session_id: str, user_id: Optional[str] = None, max_pending: int = 100):
        self.session_id = session_id
        self.user_id = user_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.closed = False

    def offer(self, payload) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    def close(self):
        self.closed = True

    def __repr__(self):
        return f"<SessionHandle {self.session_id} user={self.user_id}>"


class RoomRegistry:
    def __init__(self, max_pending: int = 100, on_evict: Optional[Callable[[SessionHandle], None]] = None):
        if max_pending <= 0:
            raise ValueError("max_pending must be positive")
        self.max_pending = max_pending
        self.on_evict = on_evict
        self._lock = threading.RLock()
        self._sessions: dict[str, SessionHandle] = {}
        self._rooms: dict[str, dict[str, SessionHandle]] = defaultdict(dict)
        self._memberships: dict[str, set[str]] = defaultdict(set)
        self._closed = False

    # --- sessions ---
    def register(self, session_id: str, user_id: Optional[str] = None) -> SessionHandle:
        with self._lock:
            if self._closed:
                raise RuntimeError("registry is closed")
            handle = self._sessions.get(session_id)
            if handle is None:
                handle = SessionHandle(session_id, user_id, self.max_pending)
                self._sessions[session_id] = handle
            return handle

    def get(self, session_id: str) -> Optional[SessionHandle]:
        with self._lock:
            return self._sessions.get(session_id)

    def unregister(self, session_id: str) -> set[str]:
        """Drop the session from every room and close it. Returns the rooms it was in."""
        with self._lock:
            rooms = self.leave(session_id)
            handle = self._sessions.pop(session_id, None)
            self._memberships.pop(session_id, None)
        if handle:
            handle.close()
        return rooms

    # --- membership ---
    def join(self, room_id: str, session_id: str, user_id: Optional[str] = None) -> bool:
        """Add the session to the room. Returns False if it was already a member."""
        with self._lock:
            handle = self._sessions.get(session_id)
            if handle is None:
                handle = self.register(session_id, user_id)
            if user_id and handle.user_id is None:
                handle.user_id = user_id
            members = self._rooms[room_id]
            if session_id in members:
                return False
            members[session_id] = handle
            self._memberships[session_id].add(room_id)
            return True

    def leave(self, session_id: str, room_id: Optional[str] = None) -> set[str]:
        with self._lock:
            joined = self._memberships.get(session_id, set())
            targets = {room_id} & joined if room_id is not None else set(joined)
            for rid in targets:
                members = self._rooms.get(rid)
                if members is not None:
                    members.pop(session_id, None)
                    if not members:
                        del self._rooms[rid]
                joined.discard(rid)
            return targets

    def is_member(self, room_id: str, session_id: str) -> bool:
        with self._lock:
            return session_id in self._rooms.get(room_id, {})

    def members(self, room_id: str) -> list[SessionHandle]:
        with self._lock:
            return list(self._rooms.get(room_id, {}).values())

    def rooms_of(self, session_id: str) -> set[str]:
        with self._lock:
            return set(self._memberships.get(session_id, set()))

    def room_users(self, room_id: str) -> list[str]:
        """Distinct user ids present in the room, for presence lists."""
        users = {h.user_id for h in self.members(room_id) if h.user_id}
        return sorted(users)

    # --- fan-out ---
    def broadcast(self, room_id: str, payload) -> int:
        delivered = 0
        overflowed = []
        for handle in self.members(room_id):
            if handle.offer(payload):
                delivered += 1
            elif not handle.closed:
                overflowed.append(handle)

        for handle in overflowed:
            logger.warning(
                "Evicting session %s from room %s: send buffer full (%d pending)",
                handle.session_id, room_id, handle.queue.qsize(),
            )
            self.unregister(handle.session_id)
            if self.on_evict:
                self.on_evict(handle)
        return delivered

    def close(self):
        with self._lock:
            self._closed = True
            session_ids = list(self._sessions)
        for sid in session_ids:
            self.unregister(sid)
