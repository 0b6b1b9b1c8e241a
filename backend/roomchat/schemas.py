from enum import Enum
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Optional


class MessageType(str, Enum):
    TEXT = "text"
    OTHER = "other"


class FriendStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"


# Clients speak camelCase (roomId, senderId, ...); fields stay snake_case here.
class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# What the store hands back after a successful append or history read
class MessageRecord(CamelModel):
    model_config = ConfigDict(frozen=True)

    id:         int
    room_id:    str
    sender_id:  str
    content:    str
    type:       MessageType
    created_at: datetime


# Projection of a directory user: never includes credentials or contact info
class UserSummary(CamelModel):
    id:           str
    username:     str
    display_name: str
    profile_pic:  Optional[str] = None


# What we return when reading messages (REST or WS)
class MessageRead(CamelModel):
    id:         int
    room_id:    str
    sender_id:  str
    content:    str
    type:       MessageType
    created_at: datetime
    sender:     Optional[UserSummary] = None

    @classmethod
    def from_record(cls, record: MessageRecord, sender: Optional[UserSummary]) -> "MessageRead":
        return cls(**record.model_dump(), sender=sender)


# Body for /friends/add and /friends/accept. Both fields are optional here so
# that a missing one is reported as 400 rather than FastAPI's 422.
class FriendAction(CamelModel):
    user_id:   Optional[str] = None
    friend_id: Optional[str] = None


class FriendshipRead(CamelModel):
    user_id:      str
    friend_id:    str
    requester_id: str
    status:       FriendStatus


class FriendActionResponse(BaseModel):
    message:    str
    friendship: FriendshipRead


class FriendListEntry(CamelModel):
    friend_id:    str
    username:     Optional[str] = None
    display_name: Optional[str] = None
    profile_pic:  Optional[str] = None
    status:       FriendStatus
