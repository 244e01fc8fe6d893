from typing import Optional

import httpx

from fulfillment_service.core.config import settings
from fulfillment_service.services.payments.base import PaymentProvider
from fulfillment_service.services.payments.click import ClickProvider
from fulfillment_service.services.payments.payme import PaymeProvider
from fulfillment_service.services.payments.uzcard import UzcardProvider


def build_providers(transport: Optional[httpx.AsyncBaseTransport] = None) -> dict[str, PaymentProvider]:
    timeout = settings.payment_http_timeout_seconds
    uzcard = UzcardProvider(
        settings.uzcard_merchant_id, settings.uzcard_secret_key, settings.uzcard_base_url,
        timeout=timeout, transport=transport, frontend_url=settings.frontend_url
    )
    return {
        "payme": PaymeProvider(
            settings.payme_merchant_id, settings.payme_secret_key, settings.payme_base_url,
            timeout=timeout, transport=transport
        ),
        "click": ClickProvider(
            settings.click_merchant_id, settings.click_secret_key, settings.click_base_url,
            timeout=timeout, transport=transport, frontend_url=settings.frontend_url
        ),
        "uzcard": uzcard,
        "humo": uzcard,
    }
