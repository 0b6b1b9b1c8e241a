"""
Friendship ledger.

A relationship between two users is a single row keyed by the unordered pair,
stored in canonical (low, high) order. Who asked first is kept in
``requester_id`` but both users see the edge the same way.
"""
import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import AlreadyExists, InvalidArgument, NotFound, PersistenceError, ValidationError
from .models import Friendship, utcnow
from .schemas import FriendshipRead, FriendStatus

logger = logging.getLogger(__name__)


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


def _check_pair(user_a: Optional[str], user_b: Optional[str]):
    if not user_a or not user_b:
        raise ValidationError("userId and friendId are required")
    if user_a == user_b:
        raise InvalidArgument("Cannot add yourself as a friend")


def _read(edge: Friendship, perspective: str) -> FriendshipRead:
    return FriendshipRead(
        user_id=perspective,
        friend_id=edge.other(perspective),
        requester_id=edge.requester_id,
        status=FriendStatus(edge.status),
    )


class FriendshipLedger:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def request_friend(self, user_a: str, user_b: str) -> FriendshipRead:
        _check_pair(user_a, user_b)
        low, high = canonical_pair(user_a, user_b)
        db = self._session_factory()
        try:
            existing = db.query(Friendship).filter_by(user_low=low, user_high=high).first()
            if existing:
                if existing.status == FriendStatus.ACCEPTED.value:
                    raise AlreadyExists("Already friends")
                raise AlreadyExists("Friend request already exists")

            edge = Friendship(
                user_low=low,
                user_high=high,
                requester_id=user_a,
                status=FriendStatus.PENDING.value,
            )
            db.add(edge)
            db.commit()
            logger.info("Friend request %s -> %s", user_a, user_b)
            return _read(edge, user_a)
        except IntegrityError as exc:
            # lost a race with a concurrent request for the same pair
            db.rollback()
            raise AlreadyExists("Friend request already exists") from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to store friend request %s -> %s", user_a, user_b)
            raise PersistenceError("Error saving friend request") from exc
        finally:
            db.close()

    def accept_friend(self, requester: str, accepter: str) -> FriendshipRead:
        """Accept ``requester``'s pending request on behalf of ``accepter``."""
        _check_pair(requester, accepter)
        low, high = canonical_pair(requester, accepter)
        db = self._session_factory()
        try:
            edge = (
                db.query(Friendship)
                .filter_by(
                    user_low=low,
                    user_high=high,
                    requester_id=requester,
                    status=FriendStatus.PENDING.value,
                )
                .first()
            )
            if not edge:
                raise NotFound("No pending friend request")

            edge.status = FriendStatus.ACCEPTED.value
            edge.accepted_at = utcnow()
            db.commit()
            logger.info("Friend request %s -> %s accepted", requester, accepter)
            return _read(edge, accepter)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to accept friend request %s -> %s", requester, accepter)
            raise PersistenceError("Error accepting friend request") from exc
        finally:
            db.close()

    def list_friends(self, user_id: str, status: Optional[FriendStatus] = None) -> set[tuple[str, FriendStatus]]:
        """Every edge touching ``user_id``, whichever side sent the request."""
        if not user_id:
            raise ValidationError("userId is required")
        try:
            with self._session_factory() as db:
                q = db.query(Friendship).filter(
                    or_(Friendship.user_low == user_id, Friendship.user_high == user_id)
                )
                if status is not None:
                    q = q.filter(Friendship.status == FriendStatus(status).value)
                return {(e.other(user_id), FriendStatus(e.status)) for e in q.all()}
        except SQLAlchemyError as exc:
            raise PersistenceError("Error fetching friends") from exc

    def pending_requests(self, user_id: str) -> list[str]:
        """Users with a pending request waiting on ``user_id``'s answer, oldest first."""
        if not user_id:
            raise ValidationError("userId is required")
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(Friendship)
                    .filter(
                        or_(Friendship.user_low == user_id, Friendship.user_high == user_id),
                        Friendship.requester_id != user_id,
                        Friendship.status == FriendStatus.PENDING.value,
                    )
                    .order_by(Friendship.created_at, Friendship.id)
                    .all()
                )
                return [e.requester_id for e in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError("Error fetching friend requests") from exc
