"""
Durable, append-only message log.

Appends are serialized under one lock and stamped with a strictly increasing
``created_at``, so a room's history ordered by ``(created_at, id)`` never goes
backwards. History is paged backwards from an optional ``before`` cursor.
"""
import logging
import threading
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError

from .errors import PersistenceError, ValidationError
from .models import Message, utcnow
from .schemas import MessageRecord, MessageType

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


def _require(value: Optional[str], field: str) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required")
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    return value


class MessageStore:
    def __init__(self, session_factory, page_size: int = 50, max_page_size: int = 200):
        self._session_factory = session_factory
        self.page_size = page_size
        self.max_page_size = max_page_size
        self._lock = threading.Lock()
        self._last_created_at = None

    def _next_timestamp(self, db):
        if self._last_created_at is None:
            self._last_created_at = db.query(func.max(Message.created_at)).scalar()
        now = utcnow()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + _TICK
        return now

    def append(self, room_id: str, sender_id: str, content: str, type=MessageType.TEXT) -> MessageRecord:
        _require(room_id, "roomId")
        _require(sender_id, "senderId")
        if not isinstance(content, str) or content == "":
            raise ValidationError("content is required")
        try:
            msg_type = MessageType(type or MessageType.TEXT)
        except ValueError:
            raise ValidationError(f"Unknown message type: {type!r}")

        with self._lock:
            db = self._session_factory()
            try:
                created_at = self._next_timestamp(db)
                row = Message(
                    room_id=room_id,
                    sender_id=sender_id,
                    content=content,
                    type=msg_type.value,
                    created_at=created_at,
                )
                db.add(row)
                db.flush()
                # build the record before committing so nothing unreadable is left stored
                record = MessageRecord.model_validate(row)
                db.commit()
                self._last_created_at = created_at
                return record
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("Failed to persist message for room %s", room_id)
                raise PersistenceError("Error saving message") from exc
            finally:
                db.close()

    def history(self, room_id: str, limit: Optional[int] = None, before: Optional[int] = None) -> list[MessageRecord]:
        _require(room_id, "roomId")
        if limit is None:
            limit = self.page_size
        if limit <= 0:
            raise ValidationError("limit must be positive")
        limit = min(limit, self.max_page_size)

        try:
            with self._session_factory() as db:
                q = db.query(Message).filter(Message.room_id == room_id)
                if before is not None:
                    cursor = db.get(Message, before)
                    if cursor is None or cursor.room_id != room_id:
                        raise ValidationError(f"Unknown cursor: {before}")
                    q = q.filter(
                        or_(
                            Message.created_at < cursor.created_at,
                            and_(Message.created_at == cursor.created_at, Message.id < cursor.id),
                        )
                    )
                rows = (
                    q.order_by(Message.created_at.desc(), Message.id.desc())
                    .limit(limit)
                    .all()
                )
                return [MessageRecord.model_validate(r) for r in reversed(rows)]
        except SQLAlchemyError as exc:
            logger.exception("Failed to read history for room %s", room_id)
            raise PersistenceError("Error fetching messages") from exc
