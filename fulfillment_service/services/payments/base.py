import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from fulfillment_service.core.exceptions import ExternalApiError
from fulfillment_service.schemas.payment import PaymentResult

logger = logging.getLogger(__name__)


def md5_signature(*parts: Any) -> str:
    return hashlib.md5("".join(str(p) for p in parts).encode()).hexdigest()


def sha256_signature(*parts: Any) -> str:
    return hashlib.sha256("".join(str(p) for p in parts).encode()).hexdigest()


class PaymentProvider(ABC):
    """Client for one payment gateway.

    Subclasses implement ``_create`` and ``_verify`` and may raise freely;
    the public methods turn every failure into ``success=False``.
    """

    name: str

    def __init__(self, merchant_id: str, secret_key: str, base_url: str, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.merchant_id = merchant_id
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def create_payment(self, order_id: str, amount: float) -> PaymentResult:
        try:
            return await self._create(order_id, amount)
        except (ExternalApiError, httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.error(f"{self.name} payment creation failed for order {order_id}: {e}")
            return PaymentResult(success=False, message=str(e) or "Payment creation failed")

    async def verify_payment(self, transaction_id: str) -> PaymentResult:
        try:
            return await self._verify(transaction_id)
        except (ExternalApiError, httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.error(f"{self.name} payment verification failed for transaction {transaction_id}: {e}")
            return PaymentResult(success=False, transaction_id=transaction_id,
                                 message=str(e) or "Payment verification failed")

    async def _post(self, path: str, payload: dict[str, Any], headers: Optional[dict[str, str]] = None) -> dict[str, Any]:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(path, json=payload, headers=headers)
            response.raise_for_status()
            try:
                return response.json()
            except ValueError as e:
                raise ExternalApiError(f"{self.name} returned a non-JSON response ({response.status_code})") from e

    @abstractmethod
    async def _create(self, order_id: str, amount: float) -> PaymentResult:
        ...

    @abstractmethod
    async def _verify(self, transaction_id: str) -> PaymentResult:
        ...
