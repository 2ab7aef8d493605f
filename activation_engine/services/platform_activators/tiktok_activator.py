"""
TikTok Custom Audiences activator.

Uses the TikTok Business API segment endpoints: an audience is created
empty, then hashed ids are mapped into it in batches of up to 10,000.
Every batch is acknowledged synchronously.

Platform rules:
- advertiser id must be numeric
- at least 1,000 identifiers
- one identifier type per audience: email, phone or mobile ad id
  (sent as IDFA or GAID); CRM ids are not accepted

TikTok answers HTTP 200 for most failures and reports them through the
`code` field of the response envelope (0 = OK).

API Reference: https://business-api.tiktok.com/portal/docs?id=1739566528222210
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

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
    require_hashed,
)

logger = logging.getLogger(__name__)


# =============================================================================
# TikTok Constants
# =============================================================================

TIKTOK_API_VERSION = "v1.3"
TIKTOK_API_BASE = "https://business-api.tiktok.com/open_api"


class TikTokIdSchema:
    EMAIL = "EMAIL_SHA256"
    PHONE = "PHONE_SHA256"
    IDFA = "IDFA_SHA256"
    GAID = "GAID_SHA256"


# Envelope codes
TIKTOK_OK = 0
RATE_LIMIT_CODES = frozenset({40100, 40133})
AUTH_ERROR_CODES = frozenset({40001, 40102, 40104, 40105})
SERVER_ERROR_CODES = frozenset({50000, 50002, 51021})


# =============================================================================
# TikTok Credentials
# =============================================================================

@dataclass
class TikTokCredentials:
    """
    Credentials for TikTok Business API.

    SECURITY: access_token should be encrypted at rest.
    """
    access_token: str


def classify_tiktok_error(status_code: int, body: Dict[str, Any]) -> Optional[PlatformAPIError]:
    """Map the TikTok response envelope onto the platform error hierarchy."""
    code = body.get("code")
    if status_code < 400 and code in (None, TIKTOK_OK):
        return None
    if status_code >= 400 and code is None:
        return None

    message = body.get("message") or f"TikTok API error: {code}"
    details = {"code": code, "request_id": body.get("request_id")}

    if code in RATE_LIMIT_CODES:
        return PlatformRateLimitError(
            message=message, status_code=status_code, code=str(code), response=details,
        )
    if code in AUTH_ERROR_CODES:
        return PlatformAuthenticationError(
            message=message, status_code=status_code, code=str(code), response=details,
        )
    return PlatformAPIError(
        message=message,
        status_code=status_code,
        code=str(code),
        response=details,
        is_retryable=code in SERVER_ERROR_CODES or status_code >= 500,
    )


# =============================================================================
# TikTok Activator
# =============================================================================

class TikTokActivator:
    """Activator for TikTok Custom Audiences."""

    channel = ActivationChannel.TIKTOK
    platform_name = "tiktok"

    def __init__(
        self,
        credentials: TikTokCredentials,
        account_id: str,
        limits: Optional[PlatformLimits] = None,
        mobile_id_schema: str = TikTokIdSchema.IDFA,
        api_version: str = TIKTOK_API_VERSION,
        base_url: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize TikTok activator.

        Args:
            credentials: TikTok API credentials
            account_id: Advertiser ID (numeric)
            limits: Platform limits (default: from platform_limits.yml)
            mobile_id_schema: IDFA_SHA256 or GAID_SHA256 for mobile ad ids
            api_version: Business API version
            base_url: API host override (default: env or business-api.tiktok.com)
            timeout_seconds: HTTP timeout in seconds
            http_client: Pre-built httpx client (tests)
            sleep: Coroutine used for the pause between batches
        """
        if mobile_id_schema not in (TikTokIdSchema.IDFA, TikTokIdSchema.GAID):
            raise ValueError("mobile_id_schema must be IDFA_SHA256 or GAID_SHA256")

        self.credentials = credentials
        self.advertiser_id = account_id
        self.limits = limits or get_platform_limits_loader().get_limits(self.channel)
        self.mobile_id_schema = mobile_id_schema
        self._sleep = sleep

        host = base_url or os.getenv("TIKTOK_API_BASE_URL") or TIKTOK_API_BASE
        self.http = PlatformHTTPClient(
            platform=self.platform_name,
            base_url=f"{host.rstrip('/')}/{api_version}",
            headers={
                "Access-Token": credentials.access_token,
                "Content-Type": "application/json",
            },
            timeout_seconds=timeout_seconds,
            http_client=http_client,
            error_classifier=classify_tiktok_error,
        )

    async def close(self) -> None:
        await self.http.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def id_schema_for(self, identifier_type: IdentifierType) -> str:
        identifier_type = IdentifierType(identifier_type)
        if identifier_type == IdentifierType.EMAIL:
            return TikTokIdSchema.EMAIL
        if identifier_type == IdentifierType.PHONE:
            return TikTokIdSchema.PHONE
        if identifier_type == IdentifierType.MOBILE_AD_ID:
            return self.mobile_id_schema
        raise PreflightError(
            f"TikTok does not accept identifier type: {identifier_type.value}",
            platform=self.platform_name,
            code="UNSUPPORTED_IDENTIFIER_TYPE",
        )

    # =========================================================================
    # Preflight
    # =========================================================================

    async def preflight_check(
        self, config: ChannelConfig, identifiers: Sequence[UserIdentifier]
    ) -> None:
        """
        Validate TikTok constraints without touching the network.

        Raises:
            PreflightError: On any violation
        """
        if not self.credentials.access_token:
            raise PreflightError("TikTok access token is missing", platform=self.platform_name)

        if not (config.account_id or "").isdigit():
            raise PreflightError(
                "TikTok advertiser ID must be numeric", platform=self.platform_name
            )

        check_common_limits(self.platform_name, self.limits, identifiers)

    # =========================================================================
    # Audience creation
    # =========================================================================

    async def create_audience(
        self, config: ChannelConfig, identifiers: Sequence[UserIdentifier]
    ) -> str:
        """
        Create an empty custom audience segment.

        Returns:
            TikTok audience ID
        """
        data = await self._post(
            "segment/audience/",
            {
                "advertiser_ids": [self.advertiser_id],
                "action": "create",
                "custom_audience_name": config.audience_name,
            },
        )

        audience_id = data.get("audience_id")
        if not audience_id:
            raise PlatformAPIError(
                "TikTok did not return an audience ID",
                platform=self.platform_name,
                response=data,
            )

        logger.info(
            "TikTok audience created",
            extra={"advertiser_id": self.advertiser_id, "audience_id": audience_id},
        )
        return str(audience_id)

    # =========================================================================
    # Upload / update
    # =========================================================================

    async def upload_identifiers(
        self, platform_audience_id: str, identifiers: Sequence[UserIdentifier]
    ) -> UploadResult:
        """Map hashed ids into the audience in batches and aggregate counts."""
        require_hashed(identifiers)
        received, invalid = await self._map_batches("add", platform_audience_id, identifiers)

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
            "TikTok upload completed",
            extra={"audience_id": platform_audience_id, "identifier_count": total,
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
        """Add and/or remove ids on an existing audience."""
        identifiers_to_remove = identifiers_to_remove or []
        require_hashed(identifiers_to_add)
        require_hashed(identifiers_to_remove)
        check_update_types(
            self.platform_name, self.limits, identifiers_to_add, identifiers_to_remove
        )

        received, invalid = await self._map_batches(
            "add", platform_audience_id, identifiers_to_add
        )
        if identifiers_to_remove:
            await self._map_batches("delete", platform_audience_id, identifiers_to_remove)

        matched = max(received - invalid, 0)
        return UploadResult(
            success=True,
            matched_count=matched,
            match_rate=compute_match_rate(matched, len(identifiers_to_add)),
            num_received=received,
            num_invalid_entries=invalid,
        )

    async def _map_batches(
        self,
        action: str,
        audience_id: str,
        identifiers: Sequence[UserIdentifier],
    ) -> tuple:
        received = 0
        invalid = 0
        if not identifiers:
            return received, invalid

        id_schema = self.id_schema_for(identifiers[0].type)
        batches = list(chunk(identifiers, self.limits.batch_size))

        for index, batch in enumerate(batches):
            data = await self._post(
                "segment/mapping/",
                {
                    "advertiser_ids": [self.advertiser_id],
                    "action": action,
                    "id_schema": [id_schema],
                    "audience_ids": [audience_id],
                    "batch_data": [
                        [{"id": identifier.hashed_value, "audience_ids": [audience_id]}]
                        for identifier in batch
                    ],
                },
            )
            batch_invalid = int(data.get("invalid_count", 0))
            received += int(data.get("received_count", len(batch)))
            invalid += batch_invalid

            logger.debug(
                "TikTok batch sent",
                extra={"audience_id": audience_id, "action": action, "batch_index": index,
                       "batch_count": len(batches), "invalid_count": batch_invalid},
            )

            if index < len(batches) - 1 and self.limits.inter_batch_delay_seconds > 0:
                await self._sleep(self.limits.inter_batch_delay_seconds)

        return received, invalid

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = await self.http.request("POST", path, json=payload)
        return body.get("data") or {}

    # =========================================================================
    # Status / delete
    # =========================================================================

    async def get_status(self, platform_audience_id: str) -> ActivationChannelStatus:
        """Read an audience back and express it as a channel status."""
        body = await self.http.request(
            "GET",
            "dmp/custom_audience/get/",
            params={
                "advertiser_id": self.advertiser_id,
                "custom_audience_ids": json.dumps([platform_audience_id]),
            },
        )
        entries = (body.get("data") or {}).get("list") or []
        if not entries:
            raise PlatformAPIError(
                f"TikTok audience not found: {platform_audience_id}",
                platform=self.platform_name,
                status_code=404,
            )

        details = entries[0].get("audience_details", entries[0])
        if details.get("is_expired"):
            status = ChannelStatus.FAILED
        elif details.get("is_valid", True):
            status = ChannelStatus.ACTIVE
        else:
            status = ChannelStatus.UPLOADING

        channel_status = ActivationChannelStatus(
            channel=self.channel,
            account_id=self.advertiser_id,
            audience_name=details.get("name", ""),
            status=status,
            platform_audience_id=platform_audience_id,
            matched_count=details.get("cover_num"),
            last_synced_at=datetime.now(timezone.utc),
        )
        if status == ChannelStatus.FAILED:
            channel_status.error_message = "Audience has expired"
        return channel_status

    async def delete_audience(self, platform_audience_id: str) -> bool:
        await self._post(
            "dmp/custom_audience/delete/",
            {"advertiser_id": self.advertiser_id, "custom_audience_ids": [platform_audience_id]},
        )
        logger.info(
            "TikTok audience deleted",
            extra={"advertiser_id": self.advertiser_id, "audience_id": platform_audience_id},
        )
        return True
