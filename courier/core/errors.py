"""Error taxonomy shared by the REST routers and the WebSocket protocol.

Every error carries a stable ``code`` that clients can switch on and a
human-readable ``message`` that never contains internal identifiers or
stack traces.
"""
from typing import Any, Dict, Optional


class CourierError(Exception):
    code = "error"
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class AuthenticationError(CourierError):
    code = "authentication_required"
    status_code = 401
    default_message = "Authentication required"


class ValidationError(CourierError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(CourierError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class ForbiddenError(CourierError):
    code = "forbidden"
    status_code = 403
    default_message = "Forbidden"


class ConflictError(CourierError):
    code = "conflict"
    status_code = 409
    default_message = "Already exists"


class RateLimitError(CourierError):
    code = "rate_limit"
    status_code = 429
    default_message = "Too many attempts, please try again later"

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["retry_after_seconds"] = self.retry_after_seconds
        return payload


class UnavailableError(CourierError):
    code = "unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable"
