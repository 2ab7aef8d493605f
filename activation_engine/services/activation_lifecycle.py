"""
Activation lifecycle for one (audience, platform) pair.

Runs the fixed stage sequence against any AudienceActivator:

    validating -> hashing -> preflight -> creating_remote_audience
               -> uploading -> active

Any failure moves the channel straight to failed with the error message
and completion time recorded. Only the two remote stages go through the
retry executor; validation, hashing and preflight run once.

The lifecycle never branches on platform: minimum sizes, typing rules and
batch mechanics all live in the activator.

If a run fails after the remote audience exists, the audience is left in
place and the channel is flagged `orphaned` for manual cleanup.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from activation_engine.exceptions import IdentifierValidationError
from activation_engine.models.activation import (
    ActivationChannelStatus,
    ChannelConfig,
    ChannelStatus,
    UserIdentifier,
)
from activation_engine.services.identifier_hasher import IdentifierHasher, validate_all
from activation_engine.services.platform_activators.base_activator import AudienceActivator
from activation_engine.services.retry import RetryOutcome, RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class ActivationLifecycle:
    """
    Drives one activator through the activation state machine.

    Stateless between runs: each run() gets a fresh ActivationChannelStatus
    and its own retry budget, so one instance can serve concurrent runs.
    """

    def __init__(
        self,
        hasher: Optional[IdentifierHasher] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.hasher = hasher or IdentifierHasher()
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def run(
        self,
        activator: AudienceActivator,
        config: ChannelConfig,
        identifiers: Sequence[UserIdentifier],
        audience_id: Optional[str] = None,
    ) -> ActivationChannelStatus:
        """
        Activate `identifiers` on the activator's platform.

        Never raises for activation failures; the returned status is always
        terminal (active or failed) and carries the reason on failure.
        """
        status = ActivationChannelStatus.for_config(config)
        log_extra = {
            "audience_id": audience_id,
            "channel": config.channel.value,
            "account_id": config.account_id,
            "identifier_count": len(identifiers),
        }

        logger.info("Activation lifecycle started", extra=log_extra)

        try:
            self._advance(status, ChannelStatus.VALIDATING, log_extra)
            errors = validate_all(identifiers)
            if errors:
                raise IdentifierValidationError(errors)

            self._advance(status, ChannelStatus.HASHING, log_extra)
            hashed = [self.hasher.hash_identifier(identifier) for identifier in identifiers]

            self._advance(status, ChannelStatus.PREFLIGHT, log_extra)
            await activator.preflight_check(config, hashed)

            self._advance(status, ChannelStatus.CREATING_REMOTE_AUDIENCE, log_extra)
            created: RetryOutcome[str] = await self._remote(
                lambda: activator.create_audience(config, hashed),
                "create_audience",
                log_extra,
            )
            if not created.ok:
                return self._fail(status, created.error, log_extra)
            status.platform_audience_id = created.value
            log_extra["platform_audience_id"] = created.value

            self._advance(status, ChannelStatus.UPLOADING, log_extra)
            uploaded = await self._remote(
                lambda: activator.upload_identifiers(created.value, hashed),
                "upload_identifiers",
                log_extra,
            )
            if not uploaded.ok:
                return self._fail(status, uploaded.error, log_extra)

            result = uploaded.value
            if not result.success:
                return self._fail(status, result.error_message or "Upload failed", log_extra)

            status.match_rate = result.match_rate
            status.match_rate_range = result.match_rate_range
            status.matched_count = result.matched_count
            self._advance(status, ChannelStatus.ACTIVE, log_extra)

            logger.info(
                "Activation lifecycle completed",
                extra={**log_extra, "match_rate": result.match_rate,
                       "matched_count": result.matched_count},
            )
            return status

        except asyncio.CancelledError:
            self._fail(status, "Activation cancelled", log_extra)
            raise
        except Exception as e:
            return self._fail(status, e, log_extra)

    async def _remote(self, operation, name: str, log_extra: dict) -> RetryOutcome:
        return await retry_async(
            operation,
            self.retry_policy,
            operation_name=name,
            log_extra=log_extra,
            sleep=self._sleep,
        )

    def _advance(self, status: ActivationChannelStatus, new_status: ChannelStatus,
                 log_extra: dict) -> None:
        status.transition_to(new_status)
        logger.debug(
            "Activation status changed",
            extra={**log_extra, "status": new_status.value},
        )

    def _fail(self, status: ActivationChannelStatus, error, log_extra: dict) -> ActivationChannelStatus:
        message = str(error) if error is not None else "Unknown error"
        stage = status.status.value
        if not status.is_terminal:
            status.fail(message)

        if status.platform_audience_id:
            status.orphaned = True
            logger.warning(
                "Remote audience left orphaned after failed activation",
                extra={**log_extra, "failed_stage": stage},
            )

        fail_extra = {**log_extra, "failed_stage": stage, "error": message}
        if isinstance(error, BaseException):
            fail_extra["error_type"] = type(error).__name__
        logger.error("Activation lifecycle failed", extra=fail_extra)
        return status


async def run_activation_lifecycle(
    activator: AudienceActivator,
    config: ChannelConfig,
    identifiers: Sequence[UserIdentifier],
    hasher: Optional[IdentifierHasher] = None,
    retry_policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ActivationChannelStatus:
    """Convenience wrapper: run one lifecycle with a throwaway ActivationLifecycle."""
    lifecycle = ActivationLifecycle(hasher=hasher, retry_policy=retry_policy, sleep=sleep)
    return await lifecycle.run(activator, config, identifiers)
