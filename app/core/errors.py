"""
Domain errors shared by the backend adapters, the managers and the routes.

Every error carries the HTTP status the routes translate it to, so a route
only needs ``raise HTTPException(status_code=e.status_code, detail=str(e))``.
"""


class MentorLinkError(Exception):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class AuthRequired(MentorLinkError):
    status_code = 401
    default_message = "Authentication required"


class InvalidRequest(MentorLinkError):
    status_code = 400
    default_message = "Invalid request"


class NotFound(MentorLinkError):
    status_code = 404
    default_message = "Not found"


class InvalidTransition(MentorLinkError):
    status_code = 409
    default_message = "Invalid status transition"


class DuplicateRequest(MentorLinkError):
    status_code = 409
    default_message = "An active connection already exists for this pair"


class Conflict(MentorLinkError):
    """Unique constraint violated in the backing store."""

    status_code = 409
    default_message = "Conflicting record"


class BackendUnavailable(MentorLinkError):
    status_code = 503
    default_message = "Backend service unavailable"


class BackendTimeout(BackendUnavailable):
    status_code = 504
    default_message = "Backend request timed out"
