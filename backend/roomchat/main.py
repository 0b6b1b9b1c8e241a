import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import socketio
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .database import create_db_engine, create_session_factory, init_db
from .directory import UserDirectory
from .errors import ChatError, NotFound, ValidationError
from .friends import FriendshipLedger
from .gateway import MessagingGateway, hydrate_messages
from .logging_config import setup_logging
from .registry import RoomRegistry
from .schemas import (
    FriendAction,
    FriendActionResponse,
    FriendListEntry,
    FriendStatus,
    MessageRead,
)
from .sockets import create_socket_server
from .store import MessageStore

logger = logging.getLogger(__name__)


# --- dependencies ---
def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_ledger(request: Request) -> FriendshipLedger:
    return request.app.state.ledger


def get_directory(request: Request) -> UserDirectory:
    return request.app.state.directory


def _require_users(directory: UserDirectory, *user_ids: str):
    found = directory.find_by_ids(user_ids)
    if any(u not in found for u in user_ids):
        raise NotFound("User not found")


def _friend_entries(pairs, directory: UserDirectory) -> list[FriendListEntry]:
    """Entries come out in the order of ``pairs``."""
    pairs = list(pairs)
    users = directory.find_by_ids(other for other, _ in pairs)
    entries = []
    for other, status in pairs:
        user = users.get(other)
        entries.append(
            FriendListEntry(
                friend_id=other,
                username=user.username if user else None,
                display_name=user.display_name if user else None,
                profile_pic=user.profile_pic if user else None,
                status=status,
            )
        )
    return entries


def create_app(settings: Optional[Settings] = None, session_factory=None) -> FastAPI:
    settings = settings or get_settings()

    if session_factory is None:
        engine = create_db_engine(settings.DATABASE_URL)
        init_db(engine)
        session_factory = create_session_factory(engine)

    store = MessageStore(
        session_factory,
        page_size=settings.HISTORY_PAGE_SIZE,
        max_page_size=settings.HISTORY_MAX_PAGE_SIZE,
    )
    directory = UserDirectory(session_factory)
    ledger = FriendshipLedger(session_factory)
    registry = RoomRegistry(max_pending=settings.SESSION_SEND_BUFFER)
    gateway = MessagingGateway(registry, store, directory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down: closing %d live session(s)", len(gateway.sessions))
        await gateway.shutdown()

    app = FastAPI(title="roomchat", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.directory = directory
    app.state.ledger = ledger
    app.state.registry = registry
    app.state.gateway = gateway
    app.state.sio = create_socket_server(gateway, settings)

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.get("/", tags=["root"])
    async def read_root():
        return {"message": "Hello, World!"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # --- MESSAGES ---
    @app.get("/messages/{room_id}", response_model=List[MessageRead], tags=["messages"])
    def read_messages(
        room_id: str,
        limit: Optional[int] = None,
        before: Optional[int] = None,
        store: MessageStore = Depends(get_store),
        directory: UserDirectory = Depends(get_directory),
    ):
        records = store.history(room_id, limit=limit, before=before)
        return hydrate_messages(records, directory)

    # --- FRIENDS ---
    @app.post("/friends/add", response_model=FriendActionResponse, tags=["friends"])
    def add_friend(
        req: FriendAction,
        ledger: FriendshipLedger = Depends(get_ledger),
        directory: UserDirectory = Depends(get_directory),
    ):
        if not req.user_id or not req.friend_id:
            raise ValidationError("userId and friendId are required")
        if req.user_id != req.friend_id:
            _require_users(directory, req.user_id, req.friend_id)
        friendship = ledger.request_friend(req.user_id, req.friend_id)
        return FriendActionResponse(message="Friend request sent", friendship=friendship)

    @app.post("/friends/accept", response_model=FriendActionResponse, tags=["friends"])
    def accept_friend(
        req: FriendAction,
        ledger: FriendshipLedger = Depends(get_ledger),
    ):
        if not req.user_id or not req.friend_id:
            raise ValidationError("userId and friendId are required")
        # userId is the one accepting, friendId sent the request
        friendship = ledger.accept_friend(req.friend_id, req.user_id)
        return FriendActionResponse(message="Friend request accepted", friendship=friendship)

    @app.get("/friends/list", response_model=List[FriendListEntry], tags=["friends"])
    def list_friends(
        user_id: Optional[str] = Query(None, alias="userId"),
        status: Optional[FriendStatus] = None,
        ledger: FriendshipLedger = Depends(get_ledger),
        directory: UserDirectory = Depends(get_directory),
    ):
        if not user_id:
            raise ValidationError("userId is required")
        return _friend_entries(sorted(ledger.list_friends(user_id, status)), directory)

    @app.get("/friends/requests", response_model=List[FriendListEntry], tags=["friends"])
    def list_friend_requests(
        user_id: Optional[str] = Query(None, alias="userId"),
        ledger: FriendshipLedger = Depends(get_ledger),
        directory: UserDirectory = Depends(get_directory),
    ):
        if not user_id:
            raise ValidationError("userId is required")
        requesters = ledger.pending_requests(user_id)
        # oldest request first
        return _friend_entries([(r, FriendStatus.PENDING) for r in requesters], directory)

    return app


def create_asgi_app(settings: Optional[Settings] = None) -> socketio.ASGIApp:
    """FastAPI app with the Socket.IO server mounted in front of it."""
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)
    app = create_app(settings)
    return socketio.ASGIApp(app.state.sio, other_asgi_app=app)


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(create_asgi_app(settings), host=settings.HOST, port=settings.PORT)
