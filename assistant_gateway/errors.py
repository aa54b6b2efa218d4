"""Error taxonomy for the assistant gateway."""

from typing import Optional


class GatewayError(Exception):
    """Base error that terminates a request with an HTTP status."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> dict[str, str]:
        return {"error": self.message}


class BadRequest(GatewayError):
    """Raised when the request body is missing required fields."""
    status_code = 400


class Unauthorized(GatewayError):
    """Raised when the caller credential is missing or does not match."""
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class Forbidden(GatewayError):
    """Raised when an administrative route is called without the admin credential."""
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class BudgetExceeded(GatewayError):
    """Raised when the caller's token bucket is empty."""
    status_code = 429

    def __init__(self, retry_after: float = 1.0, message: str = "Rate limit exceeded"):
        super().__init__(message)
        self.retry_after = retry_after


class BackendUnconfigured(GatewayError):
    """Raised when no AI backend credential is available."""
    status_code = 500

    def __init__(self, message: str = "AI service not configured"):
        super().__init__(message)


class BackendFailure(GatewayError):
    """Raised when the AI backend call fails or times out."""
    status_code = 500


class ResponseMalformed(Exception):
    """Raised when model output does not match the expected schema.

    Never surfaced to callers: the response validator absorbs it and
    substitutes a safe default.
    """

    def __init__(self, reason: str, raw_text: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.raw_text = raw_text


class LimiterUnavailable(Exception):
    """Raised when the bucket store cannot be reached."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Rate limiter unavailable for {key}: {reason}")
        self.key = key
        self.reason = reason
