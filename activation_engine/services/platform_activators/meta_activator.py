"""
Meta (Facebook/Instagram) Custom Audiences activator.

Creates customer-file Custom Audiences and adds hashed users via the
Marketing API. Each batch upload is answered synchronously with received
and invalid counts, which are summed across batches to compute the match
rate locally.

Platform rules:
- ad account id must be prefixed with act_
- at least 20 identifiers
- identifier types may be mixed; each batch uses a multi-key schema with
  one column per type present
- up to 10,000 users per batch, short pause between batches

API Reference: https://developers.facebook.com/docs/marketing-api/audiences/guides/custom-audiences
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from activation_engine.config.platform_limits import (
    PlatformLimits,
    get_platform_limits_loader,
)
from activation_engine.exceptions import (
    PlatformAPIError,
    PlatformAuthenticationError,
    PlatformRateLimitError,
    PreflightError,
)
from activation_engine.models.activation import (
    ActivationChannel,
    ActivationChannelStatus,
    ChannelConfig,
    ChannelStatus,
    IdentifierType,
    UploadResult,
    UserIdentifier,
)
from activation_engine.services.platform_activators.base_activator import (
    DEFAULT_TIMEOUT_SECONDS,
    PlatformHTTPClient,
    check_common_limits,
    check_update_types,
    chunk,
    compute_match_rate,
    extract_error_message,
    require_hashed,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Meta-specific Constants
# =============================================================================

META_API_VERSION = "v22.0"
META_GRAPH_API_BASE = "https://graph.facebook.com"

SCHEMA_KEYS = {
    IdentifierType.EMAIL: "EMAIL",
    IdentifierType.PHONE: "PHONE",
    IdentifierType.MOBILE_AD_ID: "MADID",
    IdentifierType.CRM_ID: "EXTERN_ID",
}
SCHEMA_ORDER = [
    IdentifierType.EMAIL,
    IdentifierType.PHONE,
    IdentifierType.MOBILE_AD_ID,
    IdentifierType.CRM_ID,
]

# Graph API error codes
RATE_LIMIT_CODES = frozenset({4, 17, 32, 613, 80003})
AUTH_ERROR_CODES = frozenset({102, 190})

# operation_status.code values on a Custom Audience
OPERATION_STATUS_NORMAL = 200
OPERATION_STATUS_PROCESSING = 300


# =============================================================================
# Meta Credentials
# =============================================================================

@dataclass
class MetaCredentials:
    """
    Credentials for Meta Marketing API.

    SECURITY: access_token should be encrypted at rest.
    """
    access_token: str


def classify_meta_error(status_code: int, body: Dict[str, Any]) -> Optional[PlatformAPIError]:
    """Map Graph API error codes onto the platform error hierarchy."""
    error = body.get("error")
    if not isinstance(error, dict):
        return None

    meta_code = error.get("code")
    message = error.get("message") or extract_error_message(body) or "Meta API error"
    details = {
        "type": error.get("type"),
        "code": meta_code,
        "error_subcode": error.get("error_subcode"),
        "fbtrace_id": error.get("fbtrace_id"),
    }

    if meta_code in RATE_LIMIT_CODES:
        return PlatformRateLimitError(
            message=message, status_code=status_code, code=str(meta_code), response=details,
        )
    if meta_code in AUTH_ERROR_CODES:
        return PlatformAuthenticationError(
            message=message, status_code=status_code, code=str(meta_code), response=details,
        )
    if status_code < 400:
        return None
    return PlatformAPIError(
        message=message,
        status_code=status_code,
        code=str(meta_code) if meta_code is not None else None,
        response=details,
        is_retryable=status_code >= 500 or bool(error.get("is_transient")),
    )


# =============================================================================
# Meta Activator
# =============================================================================

class MetaActivator:
    """
    Activator for Meta Custom Audiences.

    Rate Limiting:
    - Meta uses a points-based rate limit system
    - Throttling error codes surface as PlatformRateLimitError (retryable)
    """

    channel = ActivationChannel.META
    platform_name = "meta"

    def __init__(
        self,
        credentials: MetaCredentials,
        account_id: str,
        limits: Optional[PlatformLimits] = None,
        api_version: str = META_API_VERSION,
        base_url: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize Meta activator.

        Args:
            credentials: Meta API credentials
            account_id: Ad account ID (act_XXXXX)
            limits: Platform limits (default: from platform_limits.yml)
            api_version: Graph API version
            base_url: API host override (default: env or graph.facebook.com)
            timeout_seconds: HTTP timeout in seconds
            http_client: Pre-built httpx client (tests)
            sleep: Coroutine used for the pause between batches
        """
        self.credentials = credentials
        self.ad_account_id = account_id
        self.limits = limits or get_platform_limits_loader().get_limits(self.channel)
        self._sleep = sleep

        host = base_url or os.getenv("META_GRAPH_API_BASE_URL") or META_GRAPH_API_BASE
        self.http = PlatformHTTPClient(
            platform=self.platform_name,
            base_url=f"{host.rstrip('/')}/{api_version}",
            headers={
                "Authorization": f"Bearer {credentials.access_token}",
                "Content-Type": "application/json",
            },
            timeout_seconds=timeout_seconds,
            http_client=http_client,
            error_classifier=classify_meta_error,
        )

    async def close(self) -> None:
        await self.http.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================================
    # Preflight
    # =========================================================================

    async def preflight_check(
        self, config: ChannelConfig, identifiers: Sequence[UserIdentifier]
    ) -> None:
        """
        Validate Meta constraints without touching the network.

        Raises:
            PreflightError: On any violation
        """
        if not self.credentials.access_token:
            raise PreflightError("Meta access token is missing", platform=self.platform_name)

        account_id = config.account_id or ""
        if not account_id.startswith("act_"):
            raise PreflightError(
                "Meta ad account ID must start with 'act_'", platform=self.platform_name
            )
        if not account_id[len("act_"):].isdigit():
            raise PreflightError(
                "Meta ad account ID must be 'act_' followed by digits",
                platform=self.platform_name,
            )

        check_common_limits(self.platform_name, self.limits, identifiers)

    # =========================================================================
    # Audience creation
    # =========================================================================

    async def create_audience(
        self, config: ChannelConfig, identifiers: Sequence[UserIdentifier]
    ) -> str:
        """
        Create a customer-file Custom Audience.

        Returns:
            Custom Audience ID
        """
        body: Dict[str, Any] = {
            "name": config.audience_name,
            "description": config.description,
            "subtype": "CUSTOM",
            "customer_file_source": "USER_PROVIDED_ONLY",
        }
        if config.compliance_flags and config.compliance_flags.categories():
            body["special_ad_categories"] = config.compliance_flags.categories()

        data = await self.http.request(
            "POST", f"{self.ad_account_id}/customaudiences", json=body,
        )

        audience_id = data.get("id")
        if not audience_id:
            raise PlatformAPIError(
                "Meta did not return a Custom Audience ID",
                platform=self.platform_name,
                response=data,
            )

        logger.info(
            "Meta Custom Audience created",
            extra={"ad_account_id": self.ad_account_id, "custom_audience_id": audience_id},
        )
        return str(audience_id)

    # =========================================================================
    # Upload / update
    # =========================================================================

    async def upload_identifiers(
        self, platform_audience_id: str, identifiers: Sequence[UserIdentifier]
    ) -> UploadResult:
        """
        Add users in batches and aggregate the per-batch counts.

        matched = received - invalid, match_rate = matched / sent * 100.
        """
        require_hashed(identifiers)
        received, invalid = await self._send_batches("POST", platform_audience_id, identifiers)

        total = len(identifiers)
        matched = max(received - invalid, 0)
        result = UploadResult(
            success=True,
            matched_count=matched,
            match_rate=compute_match_rate(matched, total),
            num_received=received,
            num_invalid_entries=invalid,
        )

        logger.info(
            "Meta upload completed",
            extra={"custom_audience_id": platform_audience_id, "identifier_count": total,
                   "num_received": received, "num_invalid_entries": invalid,
                   "match_rate": result.match_rate},
        )
        return result

    async def update_audience(
        self,
        platform_audience_id: str,
        identifiers_to_add: Sequence[UserIdentifier],
        identifiers_to_remove: Optional[Sequence[UserIdentifier]] = None,
    ) -> UploadResult:
        """Add and/or remove users on an existing Custom Audience."""
        identifiers_to_remove = identifiers_to_remove or []
        require_hashed(identifiers_to_add)
        require_hashed(identifiers_to_remove)
        check_update_types(
            self.platform_name, self.limits, identifiers_to_add, identifiers_to_remove
        )

        received, invalid = await self._send_batches(
            "POST", platform_audience_id, identifiers_to_add
        )
        if identifiers_to_remove:
            await self._send_batches("DELETE", platform_audience_id, identifiers_to_remove)

        matched = max(received - invalid, 0)
        return UploadResult(
            success=True,
            matched_count=matched,
            match_rate=compute_match_rate(matched, len(identifiers_to_add)),
            num_received=received,
            num_invalid_entries=invalid,
        )

    async def _send_batches(
        self,
        method: str,
        audience_id: str,
        identifiers: Sequence[UserIdentifier],
    ) -> tuple:
        received = 0
        invalid = 0
        batches = list(chunk(identifiers, self.limits.batch_size))

        for index, batch in enumerate(batches):
            data = await self.http.request(
                method, f"{audience_id}/users", json={"payload": build_payload(batch)},
            )
            received += int(data.get("num_received", 0))
            invalid += int(data.get("num_invalid_entries", 0))

            logger.debug(
                "Meta batch sent",
                extra={"custom_audience_id": audience_id, "method": method,
                       "batch_index": index, "batch_count": len(batches),
                       "session_id": data.get("session_id")},
            )

            if index < len(batches) - 1 and self.limits.inter_batch_delay_seconds > 0:
                await self._sleep(self.limits.inter_batch_delay_seconds)

        return received, invalid

    # =========================================================================
    # Status / delete
    # =========================================================================

    async def get_status(self, platform_audience_id: str) -> ActivationChannelStatus:
        """Read a Custom Audience back and express it as a channel status."""
        data = await self.http.request(
            "GET",
            platform_audience_id,
            params={
                "fields": "id,name,approximate_count_lower_bound,"
                          "approximate_count_upper_bound,operation_status,delivery_status",
            },
        )

        operation_status = data.get("operation_status") or {}
        code = operation_status.get("code", OPERATION_STATUS_NORMAL)
        if code == OPERATION_STATUS_PROCESSING:
            status = ChannelStatus.UPLOADING
        elif code >= 400:
            status = ChannelStatus.FAILED
        else:
            status = ChannelStatus.ACTIVE

        upper = data.get("approximate_count_upper_bound")
        channel_status = ActivationChannelStatus(
            channel=self.channel,
            account_id=self.ad_account_id,
            audience_name=data.get("name", ""),
            status=status,
            platform_audience_id=platform_audience_id,
            matched_count=upper if isinstance(upper, int) and upper >= 0 else None,
            last_synced_at=datetime.now(timezone.utc),
        )
        if status == ChannelStatus.FAILED:
            channel_status.error_message = operation_status.get("description") or "Audience error"
        return channel_status

    async def delete_audience(self, platform_audience_id: str) -> bool:
        data = await self.http.request("DELETE", platform_audience_id)
        deleted = bool(data.get("success", True))
        logger.info(
            "Meta Custom Audience deleted",
            extra={"custom_audience_id": platform_audience_id, "success": deleted},
        )
        return deleted


def build_payload(batch: Sequence[UserIdentifier]) -> Dict[str, List]:
    """
    Build a multi-key payload for one batch.

    The schema lists one column per identifier type present; each row
    fills its own column and leaves the others empty.
    """
    present = {IdentifierType(identifier.type) for identifier in batch}
    columns = [t for t in SCHEMA_ORDER if t in present]
    rows = [
        [identifier.hashed_value if IdentifierType(identifier.type) == column else ""
         for column in columns]
        for identifier in batch
    ]
    return {"schema": [SCHEMA_KEYS[column] for column in columns], "data": rows}
