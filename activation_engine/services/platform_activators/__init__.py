"""
Platform activators for ad platform audience uploads.

Supported Platforms:
- Google Ads (Customer Match)
- Meta (Custom Audiences)
- TikTok (Custom Audiences)

Each activator satisfies the AudienceActivator protocol and handles:
- Platform preflight rules (size, identifier typing, account id format)
- Remote audience creation
- Batched upload and match-rate reporting
- Status lookup, update and deletion
"""

from typing import Any, Union

from activation_engine.models.activation import ActivationChannel, ChannelConfig
from activation_engine.services.platform_activators.base_activator import (
    AudienceActivator,
    PlatformHTTPClient,
)
from activation_engine.services.platform_activators.google_activator import (
    GoogleAdsActivator,
    GoogleAdsCredentials,
)
from activation_engine.services.platform_activators.meta_activator import (
    MetaActivator,
    MetaCredentials,
)
from activation_engine.services.platform_activators.tiktok_activator import (
    TikTokActivator,
    TikTokCredentials,
)

PlatformCredentials = Union[GoogleAdsCredentials, MetaCredentials, TikTokCredentials]

_ACTIVATORS = {
    ActivationChannel.GOOGLE_ADS: (GoogleAdsActivator, GoogleAdsCredentials),
    ActivationChannel.META: (MetaActivator, MetaCredentials),
    ActivationChannel.TIKTOK: (TikTokActivator, TikTokCredentials),
}


def build_activator(
    config: ChannelConfig,
    credentials: PlatformCredentials,
    **kwargs: Any,
) -> AudienceActivator:
    """
    Create the activator for a channel config.

    Args:
        config: Channel the activator will serve (account id is bound here)
        credentials: Credentials matching the channel's platform
        **kwargs: Passed through to the activator constructor

    Raises:
        ValueError: If the channel is unknown or credentials do not match it
    """
    channel = ActivationChannel(config.channel)
    activator_cls, credentials_cls = _ACTIVATORS[channel]
    if not isinstance(credentials, credentials_cls):
        raise ValueError(
            f"{channel.value} requires {credentials_cls.__name__}, "
            f"got {type(credentials).__name__}"
        )
    return activator_cls(credentials, config.account_id, **kwargs)


__all__ = [
    "AudienceActivator",
    "PlatformHTTPClient",
    "PlatformCredentials",
    "build_activator",
    "GoogleAdsActivator",
    "GoogleAdsCredentials",
    "MetaActivator",
    "MetaCredentials",
    "TikTokActivator",
    "TikTokCredentials",
]
