"""
Contract and shared plumbing for platform activators.

Every platform activator is a plain object satisfying AudienceActivator:

- preflight_check: platform business rules, no network I/O
- create_audience: create the remote audience, return its id
- upload_identifiers: batched upload, return an aggregated UploadResult
- get_status: read the remote audience back as an ActivationChannelStatus
- update_audience / delete_audience: post-creation maintenance

The activation lifecycle drives these operations and never branches on
which platform it is talking to. Activators share HTTP handling by
composition (PlatformHTTPClient), not inheritance.

SECURITY:
- Access tokens are read-only inputs and are never logged
- Only hashed identifier values are put on the wire
"""

import logging
import os
from collections import Counter
from typing import (
    Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, TypeVar,
    runtime_checkable,
)

import httpx

from activation_engine.config.platform_limits import PlatformLimits
from activation_engine.exceptions import (
    PlatformAPIError,
    PlatformAuthenticationError,
    PlatformConnectionError,
    PlatformRateLimitError,
    PreflightError,
)
from activation_engine.models.activation import (
    ActivationChannel,
    ActivationChannelStatus,
    ChannelConfig,
    IdentifierType,
    UploadResult,
    UserIdentifier,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = float(os.getenv("ACTIVATION_HTTP_TIMEOUT_SECONDS", "30"))
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)
SENSITIVE_KEYS = frozenset({"access_token", "Authorization", "Access-Token", "developer-token"})

ErrorClassifier = Callable[[int, Dict[str, Any]], Optional[PlatformAPIError]]


@runtime_checkable
class AudienceActivator(Protocol):
    """Operations a platform must supply to take part in activation."""

    channel: ActivationChannel

    async def preflight_check(
        self, config: ChannelConfig, identifiers: Sequence[UserIdentifier]
    ) -> None: ...

    async def create_audience(
        self, config: ChannelConfig, identifiers: Sequence[UserIdentifier]
    ) -> str: ...

    async def upload_identifiers(
        self, platform_audience_id: str, identifiers: Sequence[UserIdentifier]
    ) -> UploadResult: ...

    async def get_status(self, platform_audience_id: str) -> ActivationChannelStatus: ...

    async def update_audience(
        self,
        platform_audience_id: str,
        identifiers_to_add: Sequence[UserIdentifier],
        identifiers_to_remove: Optional[Sequence[UserIdentifier]] = None,
    ) -> UploadResult: ...

    async def delete_audience(self, platform_audience_id: str) -> bool: ...

    async def close(self) -> None: ...


# =============================================================================
# HTTP plumbing
# =============================================================================

class PlatformHTTPClient:
    """
    Thin async JSON client shared by the platform activators.

    Maps HTTP failures onto the platform error hierarchy:
    401/403 -> PlatformAuthenticationError, 429 -> PlatformRateLimitError,
    other >= 400 -> PlatformAPIError (retryable for 5xx), httpx network
    errors -> PlatformConnectionError. Platforms with their own error codes
    supply an `error_classifier` that is consulted first.
    """

    def __init__(
        self,
        platform: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        error_classifier: Optional[ErrorClassifier] = None,
    ):
        self.platform = platform
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = httpx.Timeout(timeout_seconds, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS)
        self.error_classifier = error_classifier
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def url_for(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the platform API.

        Returns:
            Response body as dictionary ({} for empty bodies)

        Raises:
            PlatformAPIError: On API errors
        """
        url = self.url_for(path)
        client = await self._get_client()

        logger.debug(
            "Platform API request",
            extra=log_request(self.platform, method, url, json),
        )

        try:
            response = await client.request(
                method=method,
                url=url,
                json=json,
                params=params,
                headers=self.headers,
            )
        except httpx.TimeoutException as e:
            logger.error(
                "Platform API timeout",
                extra={"platform": self.platform, "path": path, "error": str(e)},
            )
            raise PlatformConnectionError(f"Request timeout: {e}", platform=self.platform)
        except httpx.RequestError as e:
            logger.error(
                "Platform API connection error",
                extra={"platform": self.platform, "path": path, "error": str(e)},
            )
            raise PlatformConnectionError(f"Connection error: {e}", platform=self.platform)

        body = _parse_body(response)

        if response.status_code >= 400 or self.error_classifier is not None:
            classified = (
                self.error_classifier(response.status_code, body)
                if self.error_classifier else None
            )
            if classified is not None:
                classified.platform = self.platform
                logger.error(
                    "Platform API error",
                    extra={"platform": self.platform, "path": path,
                           "status_code": response.status_code, "code": classified.code},
                )
                raise classified

        if response.status_code >= 400:
            raise self._default_error(response, body, path)

        return body

    def _default_error(
        self, response: httpx.Response, body: Dict[str, Any], path: str
    ) -> PlatformAPIError:
        status_code = response.status_code
        message = extract_error_message(body) or f"{self.platform} API error: {status_code}"

        logger.error(
            "Platform API error",
            extra={
                "platform": self.platform,
                "status_code": status_code,
                "path": path,
                "response": str(body)[:500],
            },
        )

        if status_code in (401, 403):
            return PlatformAuthenticationError(
                message=message, status_code=status_code, platform=self.platform, response=body,
            )
        if status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_seconds = None
            return PlatformRateLimitError(
                message=message, retry_after=retry_after_seconds,
                platform=self.platform, response=body,
            )
        return PlatformAPIError(
            message=message,
            platform=self.platform,
            status_code=status_code,
            response=body,
            is_retryable=status_code in RETRYABLE_STATUS_CODES,
        )


def _parse_body(response: httpx.Response) -> Dict[str, Any]:
    if response.status_code == 204 or not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"raw": response.text[:500]}
    if isinstance(data, dict):
        return data
    return {"data": data}


def extract_error_message(body: Dict[str, Any]) -> Optional[str]:
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    if body.get("message"):
        return str(body["message"])
    return None


def log_request(platform: str, method: str, url: str, payload: Any = None) -> Dict[str, Any]:
    """Build a sanitized log entry for an outgoing request."""
    entry: Dict[str, Any] = {"platform": platform, "method": method, "url": url}
    if isinstance(payload, dict):
        entry["payload_keys"] = sorted(k for k in payload.keys() if k not in SENSITIVE_KEYS)
    return entry


# =============================================================================
# Shared helpers
# =============================================================================

def chunk(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split `items` into consecutive lists of at most `size` elements."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def identifier_type_counts(identifiers: Sequence[UserIdentifier]) -> Counter:
    return Counter(IdentifierType(identifier.type) for identifier in identifiers)


def require_hashed(identifiers: Sequence[UserIdentifier]) -> None:
    """Identifiers must be hashed before anything is sent to a platform."""
    for index, identifier in enumerate(identifiers):
        if not identifier.is_hashed:
            raise ValueError(f"Identifier {index} has not been hashed")


def check_common_limits(
    platform: str,
    limits: PlatformLimits,
    identifiers: Sequence[UserIdentifier],
) -> IdentifierType:
    """
    Enforce the size and typing rules every platform expresses via limits.

    Returns:
        The dominant identifier type of the list

    Raises:
        PreflightError: On any violation
    """
    if not identifiers:
        raise PreflightError(f"{platform} requires at least one identifier", platform=platform)

    count = len(identifiers)
    if limits.min_identifiers and count < limits.min_identifiers:
        raise PreflightError(
            f"{platform} requires at least {limits.min_identifiers:,} identifiers. "
            f"Received: {count:,}",
            platform=platform,
            code="BELOW_MINIMUM_SIZE",
        )

    if limits.warn_below and count < limits.warn_below:
        logger.warning(
            "Audience is smaller than recommended",
            extra={"platform": platform, "identifier_count": count,
                   "recommended_minimum": limits.warn_below},
        )

    counts = identifier_type_counts(identifiers)
    disallowed = sorted(t.value for t in counts if t not in limits.allowed_types)
    if disallowed:
        raise PreflightError(
            f"{platform} does not support identifier type(s): {', '.join(disallowed)}",
            platform=platform,
            code="UNSUPPORTED_IDENTIFIER_TYPE",
        )

    if limits.requires_single_type and len(counts) > 1:
        raise PreflightError(
            f"{platform} requires all identifiers to share one type. "
            f"Received: {', '.join(sorted(t.value for t in counts))}",
            platform=platform,
            code="MIXED_IDENTIFIER_TYPES",
        )

    return counts.most_common(1)[0][0]


def check_update_types(
    platform: str,
    limits: PlatformLimits,
    identifiers_to_add: Sequence[UserIdentifier],
    identifiers_to_remove: Sequence[UserIdentifier],
) -> None:
    """
    Typing rules for an update to an existing audience.

    Adds and removes are checked together: an audience keeps the single
    type it was created with. Size limits do not apply to updates.

    Raises:
        PreflightError: On a disallowed or mixed identifier type
    """
    counts = identifier_type_counts(list(identifiers_to_add) + list(identifiers_to_remove))

    disallowed = sorted(t.value for t in counts if t not in limits.allowed_types)
    if disallowed:
        raise PreflightError(
            f"{platform} does not support identifier type(s): {', '.join(disallowed)}",
            platform=platform,
            code="UNSUPPORTED_IDENTIFIER_TYPE",
        )

    if limits.requires_single_type and len(counts) > 1:
        raise PreflightError(
            f"{platform} requires all identifiers to share one type. "
            f"Received: {', '.join(sorted(t.value for t in counts))}",
            platform=platform,
            code="MIXED_IDENTIFIER_TYPES",
        )


def compute_match_rate(matched: int, total: int) -> float:
    """Local match rate percentage (0-100), rounded to two decimals."""
    if total <= 0:
        return 0.0
    return round(matched / total * 100, 2)
