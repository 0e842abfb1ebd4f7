from __future__ import annotations

from typing import Dict, Optional


class GChatError(Exception):
    """Base class for every classified failure raised by the core."""

    status_code = 500
    message = "the server encountered a problem and could not process your request"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)


class ValidationFailed(GChatError):
    status_code = 422
    message = "validation failed"

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        super().__init__(", ".join(f"{k}: {v}" for k, v in self.errors.items()) or self.message)


class InvalidPage(ValidationFailed):
    def __init__(self):
        super().__init__({"page": "invalid page"})


class RecordNotFound(GChatError):
    status_code = 404
    message = "the requested resource could not be found"


class EditConflict(GChatError):
    status_code = 409
    message = "edit conflict: please try again."


class DuplicateUsername(GChatError):
    status_code = 422
    message = "this username is already taken"


class DuplicateEmail(GChatError):
    status_code = 422
    message = "this email is already taken"


class DuplicateParticipant(GChatError):
    status_code = 409
    message = "user is already a participant of this conversation"


class UserNotFound(GChatError):
    status_code = 404
    message = "user does not exist"


class ConversationNotFound(GChatError):
    status_code = 404
    message = "conversation does not exist"


class InvalidCredential(GChatError):
    status_code = 401
    message = "invalid or missing authentication token"


class AuthenticationRequired(GChatError):
    status_code = 401
    message = "you must be authenticated to access this resource"


class InactiveAccount(GChatError):
    status_code = 403
    message = "your user account must be activated to access this resource"


class Forbidden(GChatError):
    status_code = 403
    message = "you do not have permission to perform this action"


class InvariantViolation(GChatError):
    """Programming error that must never be caught and retried."""


class RateLimitExceeded(GChatError):
    status_code = 429
    message = "too many requests"

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)
