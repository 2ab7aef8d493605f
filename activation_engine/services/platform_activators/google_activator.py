"""
Google Ads Customer Match activator.

Creates CRM-based user lists and fills them through offline user data
jobs, which Google processes asynchronously.

Flow:
- create_audience: userLists:mutate (crmBasedUserList)
- upload_identifiers: offlineUserDataJobs:create -> :addOperations per
  batch of 5,000 -> :run -> poll job status every 2s for up to 60s
- get_status: GAQL search on user_list

Platform rules:
- one identifier type per list (upload key type is fixed at creation)
- membership duration at most 540 days
- fewer than 100 identifiers is allowed but logged as a warning
- user lists cannot be deleted through the API

Match rate comes back from Google as a range (e.g. MATCH_RANGE_20_TO_30);
the midpoint is reported as match_rate and the raw range is kept.

API Reference: https://developers.google.com/google-ads/api/docs/remarketing/audience-segments/customer-match
"""

import asyncio
import logging
import math
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from activation_engine.config.platform_limits import (
    PlatformLimits,
    get_platform_limits_loader,
)
from activation_engine.exceptions import (
    AudienceJobError,
    PlatformAPIError,
    PreflightError,
    UnsupportedOperationError,
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
    require_hashed,
)
from activation_engine.services.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


# =============================================================================
# Google Ads Constants
# =============================================================================

GOOGLE_ADS_API_VERSION = "v17"
GOOGLE_ADS_API_BASE = "https://googleads.googleapis.com"


class GoogleJobStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class GoogleUploadKeyType:
    CONTACT_INFO = "CONTACT_INFO"
    CRM_ID = "CRM_ID"
    MOBILE_ADVERTISING_ID = "MOBILE_ADVERTISING_ID"


UPLOAD_KEY_TYPES = {
    IdentifierType.EMAIL: GoogleUploadKeyType.CONTACT_INFO,
    IdentifierType.PHONE: GoogleUploadKeyType.CONTACT_INFO,
    IdentifierType.MOBILE_AD_ID: GoogleUploadKeyType.MOBILE_ADVERTISING_ID,
    IdentifierType.CRM_ID: GoogleUploadKeyType.CRM_ID,
}

USER_IDENTIFIER_FIELDS = {
    IdentifierType.EMAIL: "hashedEmail",
    IdentifierType.PHONE: "hashedPhoneNumber",
    IdentifierType.MOBILE_AD_ID: "mobileId",
    IdentifierType.CRM_ID: "thirdPartyUserId",
}

_MATCH_RANGE_RE = re.compile(r"^MATCH_RANGE_(\d+)_TO_(\d+)$")


# =============================================================================
# Google Credentials
# =============================================================================

@dataclass
class GoogleAdsCredentials:
    """
    Credentials for Google Ads API.

    SECURITY: All tokens should be encrypted at rest.

    Requires:
    - access_token: OAuth2 access token (refreshed by the caller)
    - developer_token: Google Ads developer token
    - login_customer_id: Optional manager account ID (for MCC access)
    """
    access_token: str
    developer_token: str
    login_customer_id: Optional[str] = None

    def __post_init__(self):
        if self.login_customer_id:
            self.login_customer_id = self.login_customer_id.replace("-", "")


def parse_match_rate_range(match_rate_range: Optional[str]) -> Optional[Tuple[int, int]]:
    """Turn MATCH_RANGE_20_TO_30 style values into (low, high) percentages."""
    if not match_rate_range:
        return None
    if match_rate_range == "MATCH_RANGE_LESS_THAN_20":
        return (0, 20)
    if match_rate_range == "MATCH_RANGE_GREATER_THAN_90":
        return (90, 100)
    match = _MATCH_RANGE_RE.match(match_rate_range)
    if match:
        return (int(match.group(1)), int(match.group(2)))
    return None


# =============================================================================
# Google Ads Activator
# =============================================================================

class GoogleAdsActivator:
    """
    Activator for Google Ads Customer Match.

    Rate Limiting:
    - Google Ads uses daily operation limits per developer token
    - Job polling goes through the retry executor
    """

    channel = ActivationChannel.GOOGLE_ADS
    platform_name = "google-ads"

    def __init__(
        self,
        credentials: GoogleAdsCredentials,
        account_id: str,
        limits: Optional[PlatformLimits] = None,
        retry_policy: Optional[RetryPolicy] = None,
        api_version: str = GOOGLE_ADS_API_VERSION,
        base_url: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize Google Ads activator.

        Args:
            credentials: Google Ads API credentials
            account_id: Google Ads customer ID (hyphens allowed)
            limits: Platform limits (default: from platform_limits.yml)
            retry_policy: Retry policy for job polling
            api_version: Google Ads API version
            base_url: API host override (default: env or googleads.googleapis.com)
            timeout_seconds: HTTP timeout in seconds
            http_client: Pre-built httpx client (tests)
            sleep: Coroutine used between polls and retries
        """
        loader = get_platform_limits_loader()
        self.credentials = credentials
        self.customer_id = account_id.replace("-", "")
        self.limits = limits or loader.get_limits(self.channel)
        self.retry_policy = retry_policy or loader.get_retry_policy()
        self._sleep = sleep

        host = base_url or os.getenv("GOOGLE_ADS_API_BASE_URL") or GOOGLE_ADS_API_BASE
        self.http = PlatformHTTPClient(
            platform=self.platform_name,
            base_url=f"{host.rstrip('/')}/{api_version}",
            headers=self._get_auth_headers(),
            timeout_seconds=timeout_seconds,
            http_client=http_client,
        )

    def _get_auth_headers(self) -> dict:
        """Get authentication headers for Google Ads API."""
        headers = {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "developer-token": self.credentials.developer_token,
            "Content-Type": "application/json",
        }
        if self.credentials.login_customer_id:
            headers["login-customer-id"] = self.credentials.login_customer_id
        return headers

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
        Validate Google Ads constraints without touching the network.

        Raises:
            PreflightError: On any violation
        """
        if not self.credentials.developer_token:
            raise PreflightError("Google Ads developer token is missing", platform=self.platform_name)

        customer_id = config.account_id.replace("-", "")
        if not (customer_id.isdigit() and len(customer_id) == 10):
            raise PreflightError(
                "Google Ads customer ID must be 10 digits", platform=self.platform_name
            )

        duration = config.membership_duration_days
        max_days = self.limits.max_membership_days
        if duration is not None:
            if duration <= 0:
                raise PreflightError(
                    "Membership duration must be a positive number of days",
                    platform=self.platform_name,
                )
            if max_days is not None and duration > max_days:
                raise PreflightError(
                    f"Google Ads membership duration cannot exceed {max_days} days. "
                    f"Received: {duration}",
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
        Create a CRM-based user list.

        Returns:
            User list resource name (customers/{cid}/userLists/{id})
        """
        identifier_type = IdentifierType(identifiers[0].type)
        user_list: Dict[str, Any] = {
            "name": config.audience_name,
            "description": config.description,
            "membershipStatus": "OPEN",
            "crmBasedUserList": {
                "uploadKeyType": UPLOAD_KEY_TYPES[identifier_type],
                "dataSourceType": "FIRST_PARTY",
            },
        }
        if config.membership_duration_days is not None:
            user_list["membershipLifeSpan"] = config.membership_duration_days

        data = await self.http.request(
            "POST",
            f"customers/{self.customer_id}/userLists:mutate",
            json={"operations": [{"create": user_list}]},
        )

        results = data.get("results") or []
        if not results or not results[0].get("resourceName"):
            raise PlatformAPIError(
                "Google Ads did not return a user list resource name",
                platform=self.platform_name,
                response=data,
            )

        resource_name = results[0]["resourceName"]
        logger.info(
            "Google Ads user list created",
            extra={"customer_id": self.customer_id, "user_list": resource_name,
                   "upload_key_type": UPLOAD_KEY_TYPES[identifier_type]},
        )
        return resource_name

    # =========================================================================
    # Upload / update
    # =========================================================================

    async def upload_identifiers(
        self, platform_audience_id: str, identifiers: Sequence[UserIdentifier]
    ) -> UploadResult:
        """Add identifiers to a user list through an offline user data job."""
        require_hashed(identifiers)
        operations = [{"create": self._user_data(identifier)} for identifier in identifiers]
        return await self._run_job(platform_audience_id, operations, len(identifiers))

    async def update_audience(
        self,
        platform_audience_id: str,
        identifiers_to_add: Sequence[UserIdentifier],
        identifiers_to_remove: Optional[Sequence[UserIdentifier]] = None,
    ) -> UploadResult:
        """Add and/or remove identifiers in one offline user data job."""
        identifiers_to_remove = identifiers_to_remove or []
        require_hashed(identifiers_to_add)
        require_hashed(identifiers_to_remove)
        check_update_types(
            self.platform_name, self.limits, identifiers_to_add, identifiers_to_remove
        )

        operations = [{"create": self._user_data(i)} for i in identifiers_to_add]
        operations += [{"remove": self._user_data(i)} for i in identifiers_to_remove]
        if not operations:
            return UploadResult(success=True, num_received=0)

        return await self._run_job(platform_audience_id, operations, len(identifiers_to_add))

    def _user_data(self, identifier: UserIdentifier) -> Dict[str, Any]:
        field_name = USER_IDENTIFIER_FIELDS[IdentifierType(identifier.type)]
        return {"userIdentifiers": [{field_name: identifier.hashed_value}]}

    async def _run_job(
        self,
        user_list: str,
        operations: List[Dict[str, Any]],
        added_count: int,
    ) -> UploadResult:
        job = await self.http.request(
            "POST",
            f"customers/{self.customer_id}/offlineUserDataJobs:create",
            json={
                "job": {
                    "type": "CUSTOMER_MATCH_USER_LIST",
                    "customerMatchUserListMetadata": {"userList": user_list},
                }
            },
        )
        job_name = job.get("resourceName")
        if not job_name:
            raise PlatformAPIError(
                "Google Ads did not return an offline user data job",
                platform=self.platform_name,
                response=job,
            )

        batches = list(chunk(operations, self.limits.batch_size))
        for index, batch in enumerate(batches):
            data = await self.http.request(
                "POST",
                f"{job_name}:addOperations",
                json={"operations": batch, "enablePartialFailure": True},
            )
            if data.get("partialFailureError"):
                logger.warning(
                    "Google Ads batch partially rejected",
                    extra={"job": job_name, "batch_index": index,
                           "error": str(data["partialFailureError"].get("message", ""))[:500]},
                )
            logger.debug(
                "Google Ads batch added",
                extra={"job": job_name, "batch_index": index, "batch_size": len(batch),
                       "batch_count": len(batches)},
            )

        await self.http.request("POST", f"{job_name}:run", json={})
        logger.info(
            "Google Ads offline user data job started",
            extra={"job": job_name, "user_list": user_list, "operation_count": len(operations)},
        )

        job_state = await self.wait_for_job(job_name)

        match_rate_range = (
            job_state.get("operationMetadata", {}).get("matchRateRange")
        )
        bounds = parse_match_rate_range(match_rate_range)
        match_rate = None
        matched_count = None
        if bounds is not None:
            match_rate = (bounds[0] + bounds[1]) / 2
            matched_count = int(round(added_count * match_rate / 100))

        return UploadResult(
            success=True,
            matched_count=matched_count,
            match_rate=match_rate,
            num_received=added_count,
            match_rate_range=match_rate_range,
        )

    # =========================================================================
    # Job polling
    # =========================================================================

    async def wait_for_job(self, job_name: str) -> Dict[str, Any]:
        """
        Poll an offline user data job until it succeeds, fails or times out.

        Returns:
            The job resource as returned by GAQL search

        Raises:
            AudienceJobError: On job failure, timeout, or a status poll that
                exhausts its retries (never retryable)
        """
        interval = self.limits.poll_interval_seconds
        timeout = self.limits.poll_timeout_seconds
        max_polls = max(1, math.ceil(timeout / interval)) if interval > 0 else 1
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        for poll in range(max_polls + 1):
            outcome = await retry_async(
                lambda: self._get_job(job_name),
                self.retry_policy,
                operation_name="google_ads.get_job",
                log_extra={"job": job_name},
                sleep=self._sleep,
            )
            if not outcome.ok:
                # One job per upload: a poll that exhausts its retries is final
                raise AudienceJobError(
                    f"Google Ads offline user data job status unavailable: {outcome.error}",
                    job_id=job_name,
                    platform=self.platform_name,
                    code="POLL_FAILED",
                ) from outcome.error
            job = outcome.value
            status = job.get("status")

            if status == GoogleJobStatus.SUCCESS:
                logger.info(
                    "Google Ads offline user data job completed",
                    extra={"job": job_name, "polls": poll + 1},
                )
                return job

            if status == GoogleJobStatus.FAILED:
                reason = job.get("failureReason") or "UNKNOWN"
                raise AudienceJobError(
                    f"Google Ads offline user data job failed: {reason}",
                    job_id=job_name,
                    platform=self.platform_name,
                    code=reason,
                )

            if poll >= max_polls or loop.time() >= deadline:
                break

            logger.debug(
                "Google Ads job still running",
                extra={"job": job_name, "status": status, "poll": poll + 1},
            )
            await self._sleep(interval)

        raise AudienceJobError(
            f"Google Ads offline user data job timed out after {timeout:g} seconds",
            job_id=job_name,
            platform=self.platform_name,
            code="TIMEOUT",
        )

    async def _get_job(self, job_name: str) -> Dict[str, Any]:
        query = (
            "SELECT offline_user_data_job.resource_name, offline_user_data_job.status, "
            "offline_user_data_job.failure_reason, "
            "offline_user_data_job.operation_metadata.match_rate_range "
            "FROM offline_user_data_job "
            f"WHERE offline_user_data_job.resource_name = '{job_name}'"
        )
        rows = await self._search(query)
        if not rows:
            raise PlatformAPIError(
                f"Offline user data job not found: {job_name}",
                platform=self.platform_name,
                status_code=404,
            )
        return rows[0].get("offlineUserDataJob", {})

    async def _search(self, query: str) -> List[Dict[str, Any]]:
        data = await self.http.request(
            "POST",
            f"customers/{self.customer_id}/googleAds:search",
            json={"query": query},
        )
        return data.get("results") or []

    # =========================================================================
    # Status / delete
    # =========================================================================

    async def get_status(self, platform_audience_id: str) -> ActivationChannelStatus:
        """Read a user list back and express it as a channel status."""
        query = (
            "SELECT user_list.resource_name, user_list.name, user_list.membership_status, "
            "user_list.size_for_search, user_list.match_rate_percentage "
            "FROM user_list "
            f"WHERE user_list.resource_name = '{platform_audience_id}'"
        )
        rows = await self._search(query)
        if not rows:
            raise PlatformAPIError(
                f"User list not found: {platform_audience_id}",
                platform=self.platform_name,
                status_code=404,
            )

        user_list = rows[0].get("userList", {})
        status = (
            ChannelStatus.ACTIVE
            if user_list.get("membershipStatus", "OPEN") == "OPEN"
            else ChannelStatus.FAILED
        )
        size = user_list.get("sizeForSearch")
        channel_status = ActivationChannelStatus(
            channel=self.channel,
            account_id=self.customer_id,
            audience_name=user_list.get("name", ""),
            status=status,
            platform_audience_id=platform_audience_id,
            match_rate=user_list.get("matchRatePercentage"),
            matched_count=int(size) if size is not None else None,
            last_synced_at=datetime.now(timezone.utc),
        )
        if status == ChannelStatus.FAILED:
            channel_status.error_message = "User list membership is closed"
        return channel_status

    async def delete_audience(self, platform_audience_id: str) -> bool:
        """Google Ads does not allow deleting user lists through the API."""
        raise UnsupportedOperationError(
            "Google Ads user lists cannot be deleted via the API; "
            "close membership or remove the list in the Google Ads UI",
            platform=self.platform_name,
        )
