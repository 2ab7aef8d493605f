"""
Data models for audience activation.

An Activation fans one audience out to several ad platforms. Each platform
gets its own ActivationChannelStatus, which moves forward through a fixed
state machine:

    pending -> validating -> hashing -> preflight
            -> creating_remote_audience -> uploading -> {active | failed}

Any stage may jump straight to failed. No status is ever revisited.

SECURITY: UserIdentifier.raw_value is plaintext PII. It is excluded from
repr() and to_dict(); only hashed_value may leave the process.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from activation_engine.exceptions import InvalidStatusTransitionError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class IdentifierType(str, Enum):
    """Kind of user identifier supplied for matching."""

    EMAIL = "email"
    PHONE = "phone"
    MOBILE_AD_ID = "mobile_ad_id"  # IDFA / AAID
    CRM_ID = "crm_id"


class ActivationChannel(str, Enum):
    """Supported advertising platforms."""

    GOOGLE_ADS = "google-ads"
    META = "meta"
    TIKTOK = "tiktok"


class ChannelStatus(str, Enum):
    """Lifecycle status of one (audience, platform) activation."""

    PENDING = "pending"
    VALIDATING = "validating"
    HASHING = "hashing"
    PREFLIGHT = "preflight"
    CREATING_REMOTE_AUDIENCE = "creating_remote_audience"
    UPLOADING = "uploading"
    ACTIVE = "active"
    FAILED = "failed"

    @property
    def ordinal(self) -> int:
        return _STATUS_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in (ChannelStatus.ACTIVE, ChannelStatus.FAILED)


_STATUS_ORDER = list(ChannelStatus)


class OverallStatus(str, Enum):
    """Aggregate status across all channels of an activation."""

    PENDING = "pending"
    ACTIVE = "active"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class UserIdentifier:
    """
    A single user identifier.

    Created from plaintext by the caller and hashed exactly once; use
    IdentifierHasher.hash_identifier() to obtain the hashed copy.
    """

    type: IdentifierType
    raw_value: str = field(repr=False)
    hashed_value: Optional[str] = None

    @property
    def is_hashed(self) -> bool:
        return self.hashed_value is not None

    def with_hashed_value(self, digest: str) -> "UserIdentifier":
        """Return a copy carrying the digest. Fails if already hashed."""
        if self.hashed_value is not None:
            raise ValueError("Identifier has already been hashed")
        return replace(self, hashed_value=digest)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "hashed_value": self.hashed_value}


@dataclass(frozen=True)
class ComplianceFlags:
    """Special ad category flags (Meta)."""

    housing: bool = False
    employment: bool = False
    financial: bool = False

    def categories(self) -> List[str]:
        categories = []
        if self.housing:
            categories.append("HOUSING")
        if self.employment:
            categories.append("EMPLOYMENT")
        if self.financial:
            categories.append("CREDIT")
        return categories


@dataclass(frozen=True)
class ChannelConfig:
    """
    Per-platform activation parameters.

    account_id is the platform's destination account: Google Ads customer
    id, Meta ad account id (act_XXXX), or TikTok advertiser id.
    """

    channel: ActivationChannel
    account_id: str
    audience_name: str
    membership_duration_days: Optional[int] = None
    compliance_flags: Optional[ComplianceFlags] = None
    description: str = ""


@dataclass(frozen=True)
class RequestedBy:
    user_id: str
    tenant_id: str
    role: str = "user"


@dataclass(frozen=True)
class ActivationRequest:
    """Inbound request: one audience, N channels, raw identifiers."""

    audience_id: str
    channels: List[ChannelConfig]
    identifiers: List[UserIdentifier]
    requested_by: RequestedBy
    requires_approval: bool = False


@dataclass
class UploadResult:
    """Outcome of uploading (or updating) identifiers on a platform."""

    success: bool
    matched_count: Optional[int] = None
    match_rate: Optional[float] = None
    num_received: int = 0
    num_invalid_entries: int = 0
    error_message: Optional[str] = None
    match_rate_range: Optional[str] = None

    @classmethod
    def failure(cls, error_message: str, **kwargs) -> "UploadResult":
        return cls(success=False, error_message=error_message, **kwargs)


@dataclass
class ActivationChannelStatus:
    """
    Progress of one platform activation for one audience.

    Owned by a single lifecycle run; transitions only move forward.
    """

    channel: ActivationChannel
    account_id: str
    audience_name: str
    status: ChannelStatus = ChannelStatus.PENDING
    platform_audience_id: Optional[str] = None
    match_rate: Optional[float] = None
    match_rate_range: Optional[str] = None
    matched_count: Optional[int] = None
    error_message: Optional[str] = None
    orphaned: bool = False
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    history: List[Tuple[ChannelStatus, datetime]] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append((self.status, _utcnow()))

    @classmethod
    def for_config(cls, config: ChannelConfig) -> "ActivationChannelStatus":
        return cls(
            channel=config.channel,
            account_id=config.account_id,
            audience_name=config.audience_name,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, status: ChannelStatus) -> None:
        """Move forward to `status`; backward or repeated moves are rejected."""
        if self.status.is_terminal or status.ordinal <= self.status.ordinal:
            raise InvalidStatusTransitionError(self.status.value, status.value)
        now = _utcnow()
        if self.processing_started_at is None:
            self.processing_started_at = now
        self.status = status
        self.history.append((status, now))
        if status.is_terminal:
            self.processing_completed_at = now

    def fail(self, error_message: str) -> None:
        self.error_message = error_message
        self.transition_to(ChannelStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "account_id": self.account_id,
            "audience_name": self.audience_name,
            "status": self.status.value,
            "platform_audience_id": self.platform_audience_id,
            "match_rate": self.match_rate,
            "match_rate_range": self.match_rate_range,
            "matched_count": self.matched_count,
            "error_message": self.error_message,
            "orphaned": self.orphaned,
            "processing_started_at": _iso(self.processing_started_at),
            "processing_completed_at": _iso(self.processing_completed_at),
            "last_synced_at": _iso(self.last_synced_at),
            "history": [status.value for status, _ in self.history],
        }


@dataclass
class Activation:
    """Aggregate record of one activation request across all its channels."""

    audience_id: str
    tenant_id: str
    created_by: str
    channels: List[ActivationChannelStatus] = field(default_factory=list)
    identifier_count: int = 0
    identifier_types: List[IdentifierType] = field(default_factory=list)
    requires_approval: bool = False
    status: OverallStatus = OverallStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_complete(self) -> bool:
        return all(channel.is_terminal for channel in self.channels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "audience_id": self.audience_id,
            "tenant_id": self.tenant_id,
            "created_by": self.created_by,
            "status": self.status.value,
            "channels": [channel.to_dict() for channel in self.channels],
            "identifier_count": self.identifier_count,
            "identifier_types": [t.value for t in self.identifier_types],
            "requires_approval": self.requires_approval,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
