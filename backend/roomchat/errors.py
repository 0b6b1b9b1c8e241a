"""
Error taxonomy shared by the store, registry, gateway and ledger.

Every error carries the HTTP status it maps to, so the FastAPI exception
handler and the socket acknowledgments report failures the same way.
"""


class ChatError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "status": self.status_code,
        }


class ValidationError(ChatError):
    """Missing or malformed field."""
    status_code = 400


class InvalidArgument(ChatError):
    status_code = 400


class NotFound(ChatError):
    status_code = 404


class AlreadyExists(ChatError):
    status_code = 400


class AuthorizationError(ChatError):
    """Caller is not allowed to act on this room or as this user."""
    status_code = 403


class PersistenceError(ChatError):
    """The backing store failed; nothing was committed."""
    status_code = 500
