from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from datetime import datetime, timezone
from .database import Base

DEFAULT_PROFILE_PIC = "https://discord-clone-etat.onrender.com/uploads/default.png"


def utcnow() -> datetime:
    # naive UTC, matching what DateTime columns round-trip on sqlite
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """Owned by the account service; this backend only reads it."""
    __tablename__ = "users"
    id           = Column(String, primary_key=True, index=True)
    username     = Column(String, unique=True, index=True, nullable=False)
    display_name = Column(String, nullable=False)
    profile_pic  = Column(String, default=DEFAULT_PROFILE_PIC)
    status       = Column(String, default="Online")
    created_at   = Column(DateTime, default=utcnow)


class Message(Base):
    """Append-only. sender_id points into the user directory, which may live elsewhere."""
    __tablename__ = "messages"
    id         = Column(Integer, primary_key=True, index=True)
    room_id    = Column(String, nullable=False)
    sender_id  = Column(String, nullable=False)
    content    = Column(Text, nullable=False)
    type       = Column(String, nullable=False, default="text")
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (Index("ix_messages_room_created", "room_id", "created_at", "id"),)


class Friendship(Base):
    """One row per unordered user pair, stored as (user_low, user_high)."""
    __tablename__ = "friendships"

    id           = Column(Integer, primary_key=True, index=True)
    user_low     = Column(String, nullable=False, index=True)
    user_high    = Column(String, nullable=False, index=True)
    requester_id = Column(String, nullable=False)
    status       = Column(String, nullable=False, default="pending")          # pending / accepted
    created_at   = Column(DateTime, default=utcnow)
    accepted_at  = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_low", "user_high", name="uq_friendship_pair"),
        CheckConstraint("user_low < user_high", name="ck_friendship_canonical"),
    )

    def other(self, user_id: str) -> str:
        return self.user_high if user_id == self.user_low else self.user_low
