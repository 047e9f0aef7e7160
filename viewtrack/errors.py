"""
Error kinds surfaced at the service boundary.

Every failure the pipeline reports to a caller is one of these. The API layer
renders them as ``{"error": {"code": ..., "message": ...}}`` with the
matching HTTP status.
"""

from typing import Any, Dict, Optional


class ViewTrackingError(Exception):
    """Base class for boundary errors"""

    code: str = "internal"
    status_code: int = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return {"error": payload}


class BadRequest(ViewTrackingError):
    code = "bad_request"
    status_code = 400


class Unauthorized(ViewTrackingError):
    code = "unauthorized"
    status_code = 401


class NotFound(ViewTrackingError):
    code = "not_found"
    status_code = 404


class Conflict(ViewTrackingError):
    code = "conflict"
    status_code = 409


class RateLimited(ViewTrackingError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class Unavailable(ViewTrackingError):
    """Transient store failure that survived retries"""
    code = "unavailable"
    status_code = 503


class Internal(ViewTrackingError):
    code = "internal"
    status_code = 500
