from __future__ import annotations


class XLAIError(Exception):
    """Base class for failures that map onto a safe JSON error body."""

    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, *, public_message: str | None = None) -> None:
        super().__init__(message or public_message or self.default_message)
        self.public_message = public_message or message or self.default_message


class ValidationError(XLAIError):
    """Raised when a request is missing required fields."""

    status_code = 400
    default_message = "Missing required fields"


class UpstreamError(XLAIError):
    """Raised when the completion service or the database fails."""

    status_code = 500
    default_message = "XL AI had trouble with that request right now. Please try again."

    def __init__(self, message: str | None = None, *, public_message: str | None = None) -> None:
        # internal detail stays in the exception text; callers only see the safe message
        super().__init__(message, public_message=public_message or self.default_message)


class AuthError(XLAIError):
    """Raised for bad credentials or a missing/invalid bearer token."""

    status_code = 401
    default_message = "Invalid credentials"


class ConflictError(XLAIError):
    """Raised when a unique key (such as an email) already exists."""

    status_code = 409
    default_message = "Already exists"
