import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.automation.browser import BrowserPool, browser_pool
from fulfillment_service.automation.checkout import CaptchaRequired, CheckoutResult, MerchantCheckout
from fulfillment_service.automation.credentials import CredentialIssuer, ExternalCredentials
from fulfillment_service.core.clock import utcnow
from fulfillment_service.core.config import settings
from fulfillment_service.core.exceptions import CaptchaLimitExceededError, FulfillmentError
from fulfillment_service.models.customer import Customer
from fulfillment_service.models.order import Order
from fulfillment_service.repositories.captcha import CaptchaRepository
from fulfillment_service.repositories.customer import CustomerRepository

logger = logging.getLogger(__name__)


class AutomationDriver:
    def __init__(
        self,
        pool: BrowserPool,
        checkout: MerchantCheckout,
        issuer: Optional[CredentialIssuer] = None,
        captcha_ttl_seconds: int = 600,
        max_captcha_interrupts: int = 3,
        clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.pool = pool
        self.checkout = checkout
        self.issuer = issuer or CredentialIssuer()
        self.captcha_ttl = timedelta(seconds=captcha_ttl_seconds)
        self.max_captcha_interrupts = max_captcha_interrupts
        self.clock = clock

    async def run(self, session: AsyncSession, order: Order, captcha_solution: Optional[str] = None) -> CheckoutResult:
        credentials = await self.provision_credentials(session, order.customer)

        async with self.pool.page() as page:
            result = await self.checkout.run(page, order, credentials, captcha_solution)

        if isinstance(result, CaptchaRequired):
            if order.captcha_interrupts >= self.max_captcha_interrupts:
                raise CaptchaLimitExceededError(order.id, self.max_captcha_interrupts)

            now = self.clock()
            await CaptchaRepository(session).open(
                order.id,
                image_url=result.image_url,
                iframe_url=result.iframe_url,
                created_at=now,
                expires_at=now + self.captcha_ttl
            )
            logger.info(f"Captcha session opened for order {order.id}")

        return result

    async def provision_credentials(self, session: AsyncSession, customer: Optional[Customer]) -> ExternalCredentials:
        if customer is None:
            raise FulfillmentError("Order has no customer to log in as")

        if customer.has_external_credentials:
            return ExternalCredentials(
                external_id=customer.external_id,
                login=customer.external_login,
                password=customer.external_password
            )

        credentials = self.issuer.issue()
        await CustomerRepository(session).store_external_credentials(
            customer.id,
            external_id=credentials.external_id,
            login=credentials.login,
            password=credentials.password
        )
        logger.info(f"Issued merchant credentials for customer {customer.id}")
        return credentials


def build_driver() -> AutomationDriver:
    return AutomationDriver(
        pool=browser_pool,
        checkout=MerchantCheckout(
            settings.merchant_base_url,
            confirmation_timeout_ms=settings.confirmation_timeout_ms,
            settle_timeout_ms=settings.navigation_timeout_ms
        ),
        captcha_ttl_seconds=settings.captcha_ttl_seconds,
        max_captcha_interrupts=settings.max_captcha_interrupts
    )
