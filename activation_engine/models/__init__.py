"""Activation data models."""

from activation_engine.models.activation import (
    IdentifierType,
    ActivationChannel,
    ChannelStatus,
    OverallStatus,
    UserIdentifier,
    ComplianceFlags,
    ChannelConfig,
    RequestedBy,
    ActivationRequest,
    UploadResult,
    ActivationChannelStatus,
    Activation,
)

__all__ = [
    "IdentifierType",
    "ActivationChannel",
    "ChannelStatus",
    "OverallStatus",
    "UserIdentifier",
    "ComplianceFlags",
    "ChannelConfig",
    "RequestedBy",
    "ActivationRequest",
    "UploadResult",
    "ActivationChannelStatus",
    "Activation",
]
