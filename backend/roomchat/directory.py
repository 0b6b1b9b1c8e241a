from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from .errors import PersistenceError
from .models import DEFAULT_PROFILE_PIC, User
from .schemas import UserSummary


def _summary(user: User) -> UserSummary:
    return UserSummary(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        profile_pic=user.profile_pic or DEFAULT_PROFILE_PIC,
    )


class UserDirectory:
    """Read-only lookups against the users table, used to enrich messages and friend lists."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def find_by_id(self, user_id: str) -> Optional[UserSummary]:
        try:
            with self._session_factory() as db:
                user = db.get(User, user_id)
                return _summary(user) if user else None
        except SQLAlchemyError as exc:
            raise PersistenceError("Database error while looking up user") from exc

    def find_by_ids(self, user_ids: Iterable[str]) -> dict[str, UserSummary]:
        ids = {u for u in user_ids if u}
        if not ids:
            return {}
        try:
            with self._session_factory() as db:
                rows = db.query(User).filter(User.id.in_(ids)).all()
                return {u.id: _summary(u) for u in rows}
        except SQLAlchemyError as exc:
            raise PersistenceError("Database error while looking up users") from exc
