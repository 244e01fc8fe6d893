import logging
import re
from typing import Any, Optional

import httpx

from fulfillment_service.core.config import settings
from fulfillment_service.core.exceptions import ExternalApiError

logger = logging.getLogger(__name__)


class SmsClient:
    def __init__(self, base_url: str, email: str, password: str, sender: str,
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.sender = sender
        self.timeout = timeout
        self.transport = transport

    async def send(self, phone: str, message: str) -> dict[str, Any]:
        if not self.email or not self.password:
            raise ExternalApiError("SMS credentials not configured")

        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            login = await client.post("/auth/login", json={"email": self.email, "password": self.password})
            login.raise_for_status()
            token = login.json()["data"]["token"]

            response = await client.post(
                "/message/sms/send",
                json={"mobile_phone": re.sub(r"\D", "", phone), "message": message, "from": self.sender},
                headers={"Authorization": f"Bearer {token}"}
            )
            response.raise_for_status()
            data = response.json()

        if data.get("status") != "success":
            raise ExternalApiError(f"SMS gateway rejected message: {data}")
        return data


def build_sms_client() -> SmsClient:
    return SmsClient(
        settings.sms_base_url,
        email=settings.sms_email,
        password=settings.sms_password,
        sender=settings.sms_sender
    )
