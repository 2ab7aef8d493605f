"""
Pydantic schemas for the Audience Activation API.

Request models convert to the engine's dataclasses via to_model();
response models are validated from the dataclasses' to_dict() output.
Raw identifier values appear only in requests, never in responses.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from activation_engine.models.activation import (
    ActivationChannel,
    ActivationRequest,
    ChannelConfig,
    ComplianceFlags,
    IdentifierType,
    RequestedBy,
    UserIdentifier,
)


class IdentifierSchema(BaseModel):
    """A raw (unhashed) user identifier."""
    type: IdentifierType = Field(..., examples=["email"])
    value: str = Field(..., description="Plaintext value; hashed before leaving the service")

    def to_model(self) -> UserIdentifier:
        return UserIdentifier(type=self.type, raw_value=self.value)


class ComplianceFlagsSchema(BaseModel):
    """Special ad categories (applied on Meta)."""
    housing: bool = False
    employment: bool = False
    financial: bool = False

    def to_model(self) -> ComplianceFlags:
        return ComplianceFlags(
            housing=self.housing, employment=self.employment, financial=self.financial,
        )


class ChannelConfigSchema(BaseModel):
    """Per-platform activation parameters."""
    channel: ActivationChannel = Field(..., examples=["meta"])
    account_id: str = Field(
        ...,
        min_length=1,
        description="Google Ads customer ID, Meta ad account (act_XXXX) or TikTok advertiser ID",
        examples=["act_123456789"],
    )
    audience_name: str = Field(..., min_length=1, max_length=255)
    membership_duration_days: Optional[int] = Field(None, description="Google Ads only, 1-540")
    compliance_flags: Optional[ComplianceFlagsSchema] = None
    description: str = ""

    def to_model(self) -> ChannelConfig:
        return ChannelConfig(
            channel=self.channel,
            account_id=self.account_id,
            audience_name=self.audience_name,
            membership_duration_days=self.membership_duration_days,
            compliance_flags=self.compliance_flags.to_model() if self.compliance_flags else None,
            description=self.description,
        )


class RequestedBySchema(BaseModel):
    user_id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    role: str = "user"

    def to_model(self) -> RequestedBy:
        return RequestedBy(user_id=self.user_id, tenant_id=self.tenant_id, role=self.role)


class ActivationRequestSchema(BaseModel):
    """Request body for POST /activation."""
    audience_id: str = Field(..., examples=["aud_123"])
    channels: List[ChannelConfigSchema]
    identifiers: List[IdentifierSchema]
    requested_by: RequestedBySchema
    requires_approval: bool = False

    def to_model(self) -> ActivationRequest:
        return ActivationRequest(
            audience_id=self.audience_id,
            channels=[channel.to_model() for channel in self.channels],
            identifiers=[identifier.to_model() for identifier in self.identifiers],
            requested_by=self.requested_by.to_model(),
            requires_approval=self.requires_approval,
        )


class StatusLookupChannelSchema(ChannelConfigSchema):
    """A channel to refresh, with the remote audience id it created."""
    audience_name: str = ""
    platform_audience_id: str = Field(..., min_length=1)


class StatusRequestSchema(BaseModel):
    """Request body for POST /activation/{audience_id}/status."""
    channels: List[StatusLookupChannelSchema] = Field(..., min_length=1)
    requested_by: RequestedBySchema


class UpdateAudienceRequestSchema(BaseModel):
    """Request body for PATCH /activation/{channel}/{platform_audience_id}."""
    account_id: str = Field(..., min_length=1)
    identifiers_to_add: List[IdentifierSchema] = Field(default_factory=list)
    identifiers_to_remove: List[IdentifierSchema] = Field(default_factory=list)


class ChannelStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    channel: str
    account_id: str
    audience_name: str
    status: str
    platform_audience_id: Optional[str] = None
    match_rate: Optional[float] = None
    match_rate_range: Optional[str] = None
    matched_count: Optional[int] = None
    error_message: Optional[str] = None
    orphaned: bool = False
    processing_started_at: Optional[str] = None
    processing_completed_at: Optional[str] = None
    last_synced_at: Optional[str] = None
    history: List[str] = Field(default_factory=list)


class ActivationResponse(BaseModel):
    """Activation with per-channel outcomes."""
    id: str
    audience_id: str
    tenant_id: str
    created_by: str
    status: str
    channels: List[ChannelStatusResponse]
    identifier_count: int
    identifier_types: List[str]
    requires_approval: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class UploadResultResponse(BaseModel):
    success: bool
    matched_count: Optional[int] = None
    match_rate: Optional[float] = None
    num_received: int = 0
    num_invalid_entries: int = 0
    error_message: Optional[str] = None
    match_rate_range: Optional[str] = None
