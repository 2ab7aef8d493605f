"""
Exceptions raised by the audience activation engine.

Follows the same pattern as the platform client exceptions: a base error
carrying message/status_code/code/response, with specialised subclasses
for the failure modes callers need to tell apart.
"""

from typing import Optional, Dict, Any


class ActivationError(Exception):
    """Base exception for activation errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.response = response or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, status_code={self.status_code})"


class IdentifierValidationError(ActivationError):
    """
    Raised when one or more identifiers in a batch are malformed.

    The whole batch is rejected. `errors` maps the identifier's index in
    the submitted list to the reason it was rejected.
    """

    def __init__(self, errors: Dict[int, str]):
        self.errors = dict(sorted(errors.items()))
        details = ", ".join(
            f"Identifier {index}: {reason}" for index, reason in self.errors.items()
        )
        super().__init__(
            f"Identifier validation failed: {details}",
            code="INVALID_IDENTIFIERS",
        )


class PreflightError(ActivationError):
    """Raised when a platform-specific preflight check rejects the input."""

    def __init__(self, message: str, platform: Optional[str] = None, **kwargs):
        super().__init__(message, code=kwargs.pop("code", "PREFLIGHT_FAILED"), **kwargs)
        self.platform = platform


class PlatformAPIError(ActivationError):
    """Raised when a call to an ad platform API fails."""

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        is_retryable: bool = False,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.platform = platform
        self.is_retryable = is_retryable


class PlatformAuthenticationError(PlatformAPIError):
    """Raised when platform authentication fails (401/403 or auth error codes)."""

    def __init__(
        self,
        message: str = "Authentication failed - access token may be invalid or expired",
        status_code: int = 401,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, is_retryable=False, **kwargs)


class PlatformRateLimitError(PlatformAPIError):
    """Raised when the platform rate limit is exceeded."""

    def __init__(
        self,
        message: str = "Rate limit exceeded - please retry after a delay",
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, is_retryable=True, **kwargs)
        self.retry_after = retry_after


class PlatformConnectionError(PlatformAPIError):
    """Raised when network/connection errors occur."""

    def __init__(
        self,
        message: str = "Connection error - unable to reach platform API",
        **kwargs,
    ):
        super().__init__(message, is_retryable=True, **kwargs)


class AudienceJobError(PlatformAPIError):
    """Raised when an asynchronous platform job fails or times out."""

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.job_id = job_id


class UnsupportedOperationError(ActivationError):
    """Raised when a platform cannot perform the requested operation via API."""

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message, code="UNSUPPORTED_OPERATION")
        self.platform = platform


class InvalidStatusTransitionError(ActivationError):
    """Raised when a channel status would move backwards or repeat."""

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Invalid status transition: {current} -> {requested}",
            code="INVALID_TRANSITION",
        )
        self.current = current
        self.requested = requested
