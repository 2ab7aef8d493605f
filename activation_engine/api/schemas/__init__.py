"""
API schemas package.

Contains Pydantic models for request/response validation.
"""

from activation_engine.api.schemas.activation import (
    ActivationRequestSchema,
    ActivationResponse,
    ChannelConfigSchema,
    ChannelStatusResponse,
    ComplianceFlagsSchema,
    IdentifierSchema,
    RequestedBySchema,
    StatusLookupChannelSchema,
    StatusRequestSchema,
    UpdateAudienceRequestSchema,
    UploadResultResponse,
)

__all__ = [
    "ActivationRequestSchema",
    "ActivationResponse",
    "ChannelConfigSchema",
    "ChannelStatusResponse",
    "ComplianceFlagsSchema",
    "IdentifierSchema",
    "RequestedBySchema",
    "StatusLookupChannelSchema",
    "StatusRequestSchema",
    "UpdateAudienceRequestSchema",
    "UploadResultResponse",
]
