"""
FastAPI application factory for running the activation API standalone.

    uvicorn --factory activation_engine.api.app:create_app

Platform credentials are read from the environment when no service is
passed in. A platform with no credentials configured is simply unavailable:
its channels fail with "No credentials configured".
"""

import logging
import os
from typing import Dict, Optional

from fastapi import FastAPI

from activation_engine import __version__
from activation_engine.api.routes import activation
from activation_engine.models.activation import ActivationChannel
from activation_engine.services.activation_service import ActivationService
from activation_engine.services.platform_activators import (
    GoogleAdsCredentials,
    MetaCredentials,
    PlatformCredentials,
    TikTokCredentials,
)

logger = logging.getLogger(__name__)


def credentials_from_env() -> Dict[ActivationChannel, PlatformCredentials]:
    """Collect platform credentials from environment variables."""
    credentials: Dict[ActivationChannel, PlatformCredentials] = {}

    google_token = os.getenv("GOOGLE_ADS_ACCESS_TOKEN")
    developer_token = os.getenv("GOOGLE_ADS_DEVELOPER_TOKEN")
    if google_token and developer_token:
        credentials[ActivationChannel.GOOGLE_ADS] = GoogleAdsCredentials(
            access_token=google_token,
            developer_token=developer_token,
            login_customer_id=os.getenv("GOOGLE_ADS_LOGIN_CUSTOMER_ID"),
        )

    meta_token = os.getenv("META_ACCESS_TOKEN")
    if meta_token:
        credentials[ActivationChannel.META] = MetaCredentials(access_token=meta_token)

    tiktok_token = os.getenv("TIKTOK_ACCESS_TOKEN")
    if tiktok_token:
        credentials[ActivationChannel.TIKTOK] = TikTokCredentials(access_token=tiktok_token)

    return credentials


def create_app(service: Optional[ActivationService] = None) -> FastAPI:
    """Build the API app around `service` (default: credentials from env)."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if service is None:
        credentials = credentials_from_env()
        logger.info(
            "Activation service configured from environment",
            extra={"channels": sorted(channel.value for channel in credentials)},
        )
        service = ActivationService(credentials)

    app = FastAPI(
        title="Audience Activation API",
        description="Pushes first-party audiences to Google Ads, Meta and TikTok",
        version=__version__,
    )
    app.include_router(activation.router)
    app.dependency_overrides[activation.get_activation_service] = lambda: service

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
