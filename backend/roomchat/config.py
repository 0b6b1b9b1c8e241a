import os
from functools import lru_cache


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ["true", "1", "yes"]


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./roomchat.db")
    CORS_ORIGINS: list[str] = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()
    ]

    # per-session outbound buffer; a session that falls this far behind is dropped
    SESSION_SEND_BUFFER: int = int(os.getenv("SESSION_SEND_BUFFER", "100"))

    HISTORY_PAGE_SIZE: int = int(os.getenv("HISTORY_PAGE_SIZE", "50"))
    HISTORY_MAX_PAGE_SIZE: int = int(os.getenv("HISTORY_MAX_PAGE_SIZE", "200"))

    # Tokens are issued elsewhere; we only verify them on socket connect.
    SECRET_KEY: str = os.getenv("SECRET_KEY", "supersecret")
    ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
    SOCKET_AUTH_REQUIRED: bool = _env_bool("SOCKET_AUTH_REQUIRED", False)

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "4000"))


@lru_cache()
def get_settings() -> Settings:
    return Settings()
