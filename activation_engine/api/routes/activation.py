"""
Audience Activation API.

Thin pass-through to ActivationService. The host application supplies the
service (and with it the platform credentials) by overriding the
get_activation_service dependency.

SECURITY:
- Raw identifiers are accepted in request bodies only; responses and logs
  carry hashed values and counts
"""

import dataclasses
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from activation_engine.api.schemas.activation import (
    ActivationRequestSchema,
    ActivationResponse,
    StatusRequestSchema,
    UpdateAudienceRequestSchema,
    UploadResultResponse,
)
from activation_engine.exceptions import (
    IdentifierValidationError,
    PlatformAPIError,
    UnsupportedOperationError,
)
from activation_engine.models.activation import ActivationChannel, ChannelConfig
from activation_engine.services.activation_service import ActivationService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/activation",
    tags=["activation"],
)


def get_activation_service() -> ActivationService:
    """Dependency placeholder; the host application must override it."""
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Activation service is not configured",
    )


def _platform_error(e: PlatformAPIError) -> HTTPException:
    logger.error(
        "Platform call failed",
        extra={"platform": e.platform, "status_code": e.status_code, "code": e.code},
    )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"message": e.message, "platform": e.platform, "code": e.code},
    )


@router.post(
    "",
    response_model=ActivationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Activate an audience on one or more ad platforms",
    responses={
        400: {"description": "Invalid activation request"},
    },
)
async def create_activation(
    body: ActivationRequestSchema,
    service: ActivationService = Depends(get_activation_service),
):
    """Run every channel's lifecycle and return the aggregated activation."""
    try:
        activation = await service.activate(body.to_model())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return ActivationResponse.model_validate(activation.to_dict())


@router.post(
    "/{audience_id}/status",
    response_model=ActivationResponse,
    summary="Refresh activation status from the platforms",
)
async def refresh_activation_status(
    audience_id: str,
    body: StatusRequestSchema,
    service: ActivationService = Depends(get_activation_service),
):
    """Look up each remote audience and recompute the overall status."""
    channels = [
        (channel.to_model(), channel.platform_audience_id) for channel in body.channels
    ]
    try:
        activation = await service.get_status(audience_id, channels, body.requested_by.to_model())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return ActivationResponse.model_validate(activation.to_dict())


@router.patch(
    "/{channel}/{platform_audience_id:path}",
    response_model=UploadResultResponse,
    summary="Add or remove identifiers on an activated audience",
    responses={
        400: {"description": "Invalid identifiers"},
        502: {"description": "Platform rejected the update"},
    },
)
async def update_activation(
    channel: ActivationChannel,
    platform_audience_id: str,
    body: UpdateAudienceRequestSchema,
    service: ActivationService = Depends(get_activation_service),
):
    config = ChannelConfig(channel=channel, account_id=body.account_id, audience_name="")
    try:
        result = await service.update_activation(
            config,
            platform_audience_id,
            [identifier.to_model() for identifier in body.identifiers_to_add],
            [identifier.to_model() for identifier in body.identifiers_to_remove],
        )
    except IdentifierValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": e.message, "errors": e.errors},
        )
    except PlatformAPIError as e:
        raise _platform_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return UploadResultResponse(**dataclasses.asdict(result))


@router.delete(
    "/{channel}/{platform_audience_id:path}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an activated audience on its platform",
    responses={
        501: {"description": "Platform does not support deletion via API"},
        502: {"description": "Platform rejected the deletion"},
    },
)
async def delete_activation(
    channel: ActivationChannel,
    platform_audience_id: str,
    account_id: str = Query(..., min_length=1, description="Platform account ID"),
    service: ActivationService = Depends(get_activation_service),
):
    config = ChannelConfig(channel=channel, account_id=account_id, audience_name="")
    try:
        await service.delete_activation(config, platform_audience_id)
    except UnsupportedOperationError as e:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=e.message)
    except PlatformAPIError as e:
        raise _platform_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return Response(status_code=status.HTTP_204_NO_CONTENT)
