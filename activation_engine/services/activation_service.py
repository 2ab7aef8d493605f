"""
Activation service: fans one audience out to several ad platforms.

Runs one lifecycle per requested channel concurrently and aggregates the
per-channel outcomes into an overall status:

- active:  every channel is active
- partial: at least one active and at least one failed
- failed:  every channel failed
- pending: some channel has not reached a terminal status yet

Channels are independent. A failed channel is final; nothing is rolled back
or retried at the cross-channel level.

Also provides post-activation maintenance (status refresh, update, delete)
and summary statistics over a set of activations.
"""

import asyncio
import logging
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from activation_engine.config.platform_limits import get_platform_limits_loader
from activation_engine.models.activation import (
    Activation,
    ActivationChannel,
    ActivationChannelStatus,
    ActivationRequest,
    ChannelConfig,
    ChannelStatus,
    IdentifierType,
    OverallStatus,
    RequestedBy,
    UploadResult,
    UserIdentifier,
)
from activation_engine.services.activation_lifecycle import ActivationLifecycle
from activation_engine.services.identifier_hasher import IdentifierHasher
from activation_engine.services.platform_activators import (
    AudienceActivator,
    PlatformCredentials,
    build_activator,
)
from activation_engine.services.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

ActivatorFactory = Callable[..., AudienceActivator]


def compute_overall_status(channels: Sequence[ActivationChannelStatus]) -> OverallStatus:
    """Aggregate per-channel statuses into the activation's overall status."""
    if not channels or any(not channel.is_terminal for channel in channels):
        return OverallStatus.PENDING

    statuses = {channel.status for channel in channels}
    if statuses == {ChannelStatus.ACTIVE}:
        return OverallStatus.ACTIVE
    if statuses == {ChannelStatus.FAILED}:
        return OverallStatus.FAILED
    return OverallStatus.PARTIAL


def validate_request(request: ActivationRequest) -> None:
    """
    Request-level checks run before any lifecycle starts.

    Raises:
        ValueError: If the request cannot be activated as a whole
    """
    if not (request.audience_id or "").strip():
        raise ValueError("audience_id is required")
    if not request.channels:
        raise ValueError("At least one channel is required")
    if not request.identifiers:
        raise ValueError("At least one identifier is required")

    seen = set()
    for config in request.channels:
        channel = ActivationChannel(config.channel)
        if channel in seen:
            raise ValueError(f"Channel requested more than once: {channel.value}")
        seen.add(channel)


class ActivationService:
    """
    Runs and maintains audience activations across platforms.

    Credentials are supplied per channel by the host application. Every
    lifecycle run builds its own activator (and HTTP client) and its own
    hasher, and closes the activator when done.
    """

    def __init__(
        self,
        credentials: Mapping[ActivationChannel, PlatformCredentials],
        activator_factory: ActivatorFactory = build_activator,
        hasher_factory: Callable[[], IdentifierHasher] = IdentifierHasher,
        retry_policy: Optional[RetryPolicy] = None,
        activator_options: Optional[Mapping[ActivationChannel, Dict[str, Any]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            credentials: Platform credentials keyed by channel
            activator_factory: Builds an activator from (config, credentials, **kwargs)
            hasher_factory: Builds the hasher used for one run
            retry_policy: Retry policy for remote calls (default: platform_limits.yml)
            activator_options: Extra constructor kwargs per channel
            sleep: Coroutine used for backoff and polling delays
        """
        self._credentials = dict(credentials)
        self._activator_factory = activator_factory
        self._hasher_factory = hasher_factory
        self.retry_policy = retry_policy or get_platform_limits_loader().get_retry_policy()
        self._activator_options = dict(activator_options or {})
        self._sleep = sleep

    def _build_activator(self, config: ChannelConfig) -> AudienceActivator:
        channel = ActivationChannel(config.channel)
        credentials = self._credentials.get(channel)
        if credentials is None:
            raise ValueError(f"No credentials configured for {channel.value}")

        options = {"sleep": self._sleep}
        options.update(self._activator_options.get(channel, {}))
        return self._activator_factory(config, credentials, **options)

    # =========================================================================
    # Activation
    # =========================================================================

    async def activate(self, request: ActivationRequest) -> Activation:
        """
        Activate an audience on every requested channel.

        Returns once every channel has reached active or failed.

        Raises:
            ValueError: If the request fails request-level validation
        """
        validate_request(request)

        activation = Activation(
            audience_id=request.audience_id,
            tenant_id=request.requested_by.tenant_id,
            created_by=request.requested_by.user_id,
            identifier_count=len(request.identifiers),
            identifier_types=sorted(
                {IdentifierType(identifier.type) for identifier in request.identifiers},
                key=lambda t: t.value,
            ),
            requires_approval=request.requires_approval,
        )
        log_extra = {
            "activation_id": activation.id,
            "audience_id": activation.audience_id,
            "tenant_id": activation.tenant_id,
            "channels": [ActivationChannel(c.channel).value for c in request.channels],
            "identifier_count": activation.identifier_count,
        }
        logger.info("Activation started", extra=log_extra)

        results = await asyncio.gather(
            *(
                self._run_channel(config, request.identifiers, request.audience_id)
                for config in request.channels
            )
        )

        activation.channels = list(results)
        activation.status = compute_overall_status(activation.channels)
        activation.updated_at = datetime.now(timezone.utc)

        logger.info(
            "Activation finished",
            extra={**log_extra, "status": activation.status.value,
                   "failed_channels": [c.channel.value for c in activation.channels
                                       if c.status == ChannelStatus.FAILED]},
        )
        return activation

    async def _run_channel(
        self,
        config: ChannelConfig,
        identifiers: Sequence[UserIdentifier],
        audience_id: str,
    ) -> ActivationChannelStatus:
        try:
            activator = self._build_activator(config)
        except ValueError as e:
            status = ActivationChannelStatus.for_config(config)
            status.fail(str(e))
            logger.error(
                "Activator could not be built",
                extra={"audience_id": audience_id, "channel": status.channel.value,
                       "error": str(e)},
            )
            return status

        lifecycle = ActivationLifecycle(
            hasher=self._hasher_factory(),
            retry_policy=self.retry_policy,
            sleep=self._sleep,
        )
        try:
            return await lifecycle.run(activator, config, identifiers, audience_id=audience_id)
        finally:
            await activator.close()

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def get_status(
        self,
        audience_id: str,
        channels: Sequence[Tuple[ChannelConfig, str]],
        requested_by: RequestedBy,
    ) -> Activation:
        """
        Refresh an activation from the platforms.

        Args:
            audience_id: Internal audience id
            channels: (channel config, platform audience id) pairs to look up
            requested_by: Caller identity recorded on the returned Activation

        Returns:
            Activation whose overall status is recomputed from live statuses
        """
        results = await asyncio.gather(
            *(self._fetch_status(config, platform_id) for config, platform_id in channels)
        )
        activation = Activation(
            audience_id=audience_id,
            tenant_id=requested_by.tenant_id,
            created_by=requested_by.user_id,
            channels=list(results),
        )
        activation.status = compute_overall_status(activation.channels)
        return activation

    async def _fetch_status(
        self, config: ChannelConfig, platform_audience_id: str
    ) -> ActivationChannelStatus:
        activator = self._build_activator(config)
        try:
            outcome = await retry_async(
                lambda: activator.get_status(platform_audience_id),
                self.retry_policy,
                operation_name="get_status",
                log_extra={"channel": ActivationChannel(config.channel).value,
                           "platform_audience_id": platform_audience_id},
                sleep=self._sleep,
            )
        finally:
            await activator.close()

        if outcome.ok:
            return outcome.value

        status = ActivationChannelStatus.for_config(config)
        status.platform_audience_id = platform_audience_id
        status.fail(f"Status lookup failed: {outcome.error}")
        return status

    async def update_activation(
        self,
        config: ChannelConfig,
        platform_audience_id: str,
        identifiers_to_add: Sequence[UserIdentifier],
        identifiers_to_remove: Optional[Sequence[UserIdentifier]] = None,
    ) -> UploadResult:
        """
        Add and/or remove identifiers on an existing remote audience.

        Both lists are validated and hashed all-or-nothing before any
        network call.

        Raises:
            IdentifierValidationError: If either list has a malformed identifier
            PreflightError: If the identifier types break the platform's typing rules
            PlatformAPIError: If the platform rejects the update
        """
        hasher = self._hasher_factory()
        to_add = hasher.hash_all(identifiers_to_add)
        to_remove = hasher.hash_all(identifiers_to_remove or [])

        activator = self._build_activator(config)
        try:
            outcome = await retry_async(
                lambda: activator.update_audience(platform_audience_id, to_add, to_remove),
                self.retry_policy,
                operation_name="update_audience",
                log_extra={"channel": ActivationChannel(config.channel).value,
                           "platform_audience_id": platform_audience_id,
                           "add_count": len(to_add), "remove_count": len(to_remove)},
                sleep=self._sleep,
            )
        finally:
            await activator.close()

        result = outcome.unwrap()
        logger.info(
            "Audience updated",
            extra={"channel": ActivationChannel(config.channel).value,
                   "platform_audience_id": platform_audience_id,
                   "add_count": len(to_add), "remove_count": len(to_remove),
                   "match_rate": result.match_rate},
        )
        return result

    async def delete_activation(self, config: ChannelConfig, platform_audience_id: str) -> bool:
        """
        Delete a remote audience.

        Raises:
            UnsupportedOperationError: If the platform cannot delete via API
            PlatformAPIError: If the platform rejects the deletion
        """
        activator = self._build_activator(config)
        try:
            outcome = await retry_async(
                lambda: activator.delete_audience(platform_audience_id),
                self.retry_policy,
                operation_name="delete_audience",
                log_extra={"channel": ActivationChannel(config.channel).value,
                           "platform_audience_id": platform_audience_id},
                sleep=self._sleep,
            )
        finally:
            await activator.close()

        deleted = outcome.unwrap()
        logger.info(
            "Audience deleted",
            extra={"channel": ActivationChannel(config.channel).value,
                   "platform_audience_id": platform_audience_id, "success": deleted},
        )
        return deleted


# =============================================================================
# Statistics
# =============================================================================

def _average(values: List[float]) -> Optional[float]:
    if not values:
        return None
    return round(sum(values) / len(values), 2)


def summarize_activations(activations: Iterable[Activation]) -> Dict[str, Any]:
    """
    Summary statistics over a set of activations.

    Average match rates only count channels that reported a rate.
    """
    activations = list(activations)
    status_counts: Counter = Counter()
    type_counts: Counter = Counter()
    match_rates: List[float] = []
    per_channel: Dict[str, Dict[str, Any]] = defaultdict(
        lambda: {"total": 0, "active": 0, "failed": 0, "rates": []}
    )

    total_channels = 0
    total_identifiers = 0
    for activation in activations:
        status_counts[activation.status.value] += 1
        total_identifiers += activation.identifier_count
        for identifier_type in activation.identifier_types:
            type_counts[IdentifierType(identifier_type).value] += 1

        for channel in activation.channels:
            total_channels += 1
            bucket = per_channel[channel.channel.value]
            bucket["total"] += 1
            if channel.status == ChannelStatus.ACTIVE:
                bucket["active"] += 1
            elif channel.status == ChannelStatus.FAILED:
                bucket["failed"] += 1
            if channel.match_rate is not None:
                bucket["rates"].append(channel.match_rate)
                match_rates.append(channel.match_rate)

    by_channel = {
        name: {
            "total": bucket["total"],
            "active": bucket["active"],
            "failed": bucket["failed"],
            "average_match_rate": _average(bucket["rates"]),
        }
        for name, bucket in sorted(per_channel.items())
    }

    return {
        "total_activations": len(activations),
        "total_channels": total_channels,
        "total_identifiers": total_identifiers,
        "active_channels": sum(b["active"] for b in by_channel.values()),
        "failed_channels": sum(b["failed"] for b in by_channel.values()),
        "status_counts": dict(status_counts),
        "average_match_rate": _average(match_rates),
        "by_channel": by_channel,
        "by_identifier_type": dict(type_counts),
    }
