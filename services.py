"""Explicit construction of the provider clients the functions depend on."""

from dataclasses import dataclass
from typing import Any, Optional

import structlog
from openai import OpenAI

from config import Settings
from ocr import OcrService
from plaid_integration import PlaidService, build_plaid_client
from push import PushService
from storage import ObjectStorage

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    storage: ObjectStorage
    openai: Any = None
    plaid: Optional[PlaidService] = None
    push: Optional[PushService] = None
    ocr: Optional[OcrService] = None


def build_services(settings: Settings) -> Services:
    storage = ObjectStorage(
        bucket=settings.s3_bucket,
        region=settings.aws_region,
        local_root=settings.local_storage_dir,
        public_base_url=settings.functions_base_url,
    )

    openai_client = OpenAI(api_key=settings.openai_api_key) if settings.openai_api_key else None
    if openai_client is None:
        logger.warning("openai_not_configured")

    plaid_client = build_plaid_client(settings.plaid_client_id, settings.plaid_secret, settings.plaid_env)
    plaid = PlaidService(plaid_client, webhook_url=settings.plaid_webhook_url) if plaid_client else None
    if plaid is None:
        logger.warning("plaid_not_configured")

    push = PushService.from_credentials(settings.firebase_credentials) if settings.firebase_credentials else None
    if push is None:
        logger.warning("push_not_configured")

    return Services(
        storage=storage,
        openai=openai_client,
        plaid=plaid,
        push=push,
        ocr=OcrService(storage, tesseract_cmd=settings.tesseract_cmd),
    )
