"""
Platform limits configuration loader.

Loads per-platform activation constraints (minimum list size, batch size,
identifier typing rules, polling cadence) and the retry policy from
config/platform_limits.yml.

Consumers:
  - Platform activators: preflight checks and batching
  - ActivationService: default retry policy

Usage:
    from activation_engine.config.platform_limits import get_platform_limits_loader

    loader = get_platform_limits_loader()
    limits = loader.get_limits(ActivationChannel.TIKTOK)
    limits.min_identifiers  # 1000
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, FrozenSet, Optional

import yaml

from activation_engine.models.activation import ActivationChannel, IdentifierType
from activation_engine.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

_ALL_TYPES = frozenset(IdentifierType)


@dataclass(frozen=True)
class PlatformLimits:
    """
    Attributes:
        min_identifiers: Hard minimum list size (0 = none)
        warn_below: Log a warning below this size (0 = never)
        batch_size: Identifiers per upload request
        requires_single_type: All identifiers in one call must share a type
        allowed_types: Identifier types the platform accepts
        max_membership_days: Upper bound for membership duration (None = unbounded)
        poll_interval_seconds: Async job poll cadence
        poll_timeout_seconds: Give up polling after this long
        inter_batch_delay_seconds: Pause between consecutive batches
    """
    min_identifiers: int = 0
    warn_below: int = 0
    batch_size: int = 10_000
    requires_single_type: bool = False
    allowed_types: FrozenSet[IdentifierType] = field(default=_ALL_TYPES)
    max_membership_days: Optional[int] = None
    poll_interval_seconds: float = 2.0
    poll_timeout_seconds: float = 60.0
    inter_batch_delay_seconds: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: "PlatformLimits") -> "PlatformLimits":
        allowed = data.get("allowed_types")
        return cls(
            min_identifiers=int(data.get("min_identifiers", base.min_identifiers)),
            warn_below=int(data.get("warn_below", base.warn_below)),
            batch_size=int(data.get("batch_size", base.batch_size)),
            requires_single_type=bool(data.get("requires_single_type", base.requires_single_type)),
            allowed_types=(
                frozenset(IdentifierType(t) for t in allowed) if allowed else base.allowed_types
            ),
            max_membership_days=data.get("max_membership_days", base.max_membership_days),
            poll_interval_seconds=float(
                data.get("poll_interval_seconds", base.poll_interval_seconds)
            ),
            poll_timeout_seconds=float(
                data.get("poll_timeout_seconds", base.poll_timeout_seconds)
            ),
            inter_batch_delay_seconds=float(
                data.get("inter_batch_delay_seconds", base.inter_batch_delay_seconds)
            ),
        )


# Fallback when platform_limits.yml is missing or a platform is not configured
DEFAULT_PLATFORM_LIMITS: Dict[ActivationChannel, PlatformLimits] = {
    ActivationChannel.GOOGLE_ADS: PlatformLimits(
        min_identifiers=0,
        warn_below=100,
        batch_size=5_000,
        requires_single_type=True,
        max_membership_days=540,
        poll_interval_seconds=2.0,
        poll_timeout_seconds=60.0,
    ),
    ActivationChannel.META: PlatformLimits(
        min_identifiers=20,
        batch_size=10_000,
        requires_single_type=False,
        inter_batch_delay_seconds=0.1,
    ),
    ActivationChannel.TIKTOK: PlatformLimits(
        min_identifiers=1_000,
        batch_size=10_000,
        requires_single_type=True,
        allowed_types=frozenset({
            IdentifierType.EMAIL,
            IdentifierType.PHONE,
            IdentifierType.MOBILE_AD_ID,
        }),
    ),
}


class PlatformLimitsLoader:
    """
    Thread-safe singleton loader for config/platform_limits.yml.

    Provides lookup of PlatformLimits by channel and the default
    RetryPolicy.
    """

    _instance: Optional["PlatformLimitsLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("ACTIVATION_PLATFORM_LIMITS_PATH")
        self._raw: Dict[str, Any] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent / "config" / "platform_limits.yml",
            Path(os.getcwd()) / "config" / "platform_limits.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"platform_limits.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading platform limits from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}

                logger.info(
                    "Loaded platform limits: platforms=%s",
                    list(self._raw.get("platforms", {}).keys()),
                )
            except FileNotFoundError:
                logger.warning("platform_limits.yml not found, using fallback defaults")
                self._raw = {}

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def get_limits(self, channel: ActivationChannel) -> PlatformLimits:
        """Return limits for a channel, layered over the built-in defaults."""
        channel = ActivationChannel(channel)
        base = DEFAULT_PLATFORM_LIMITS[channel]
        configured = self._raw.get("platforms", {}).get(channel.value)
        if not configured:
            return base
        return PlatformLimits.from_dict(configured, base)

    def get_retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_dict(self._raw.get("retry", {}))


def get_platform_limits_loader(
    config_path: Optional[str] = None,
) -> PlatformLimitsLoader:
    """Return the singleton PlatformLimitsLoader."""
    return PlatformLimitsLoader(config_path)


def reset_platform_limits_loader() -> None:
    """Reset singleton (for tests only)."""
    PlatformLimitsLoader._instance = None
