"""
Scripted checkout on the merchant site.

Flow:
1. Log in with the customer's merchant credentials
2. Empty the merchant cart, then add every mapped order item
3. Open checkout and fill the shipping form from the order
4. Type a previously solved captcha, if the run is a resumption
5. Probe for a captcha and stop if one is shown
6. Place the order and read back the receipt
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from fulfillment_service.automation.credentials import ExternalCredentials
from fulfillment_service.automation.page import AutomationPage
from fulfillment_service.core.exceptions import ExternalAutomationError
from fulfillment_service.models.order import Order, OrderItem

logger = logging.getLogger(__name__)

# Upper bound on remove clicks when emptying the merchant cart.
MAX_CART_ENTRIES = 100


@dataclass
class CheckoutCompleted:
    receipt_url: str
    external_order_id: str


@dataclass
class CaptchaRequired:
    image_url: Optional[str] = None
    iframe_url: Optional[str] = None


CheckoutResult = Union[CheckoutCompleted, CaptchaRequired]


class MerchantCheckout:
    SELECTORS = {
        "login": 'input[name="login"]',
        "password": 'input[name="password"]',
        "login_submit": 'button[type="submit"]',
        "add_to_cart": 'button[data-testid="add-to-cart"]',
        "quantity": 'input[data-testid="quantity"]',
        "remove_from_cart": 'button[data-testid="remove-from-cart"]',
        "checkout": 'button[data-testid="checkout"]',
        "address": 'input[name="address"]',
        "region": 'input[name="region"]',
        "district": 'input[name="district"]',
        "phone": 'input[name="phone"]',
        "name": 'input[name="name"]',
        "proceed_to_payment": 'button[data-testid="proceed-to-payment"]',
        "captcha": '[data-testid="captcha"]',
        "captcha_image": 'img[data-testid="captcha-image"]',
        "captcha_iframe": 'iframe[data-testid="captcha-iframe"]',
        "captcha_input": 'input[data-testid="captcha-input"]',
        "captcha_submit": 'button[data-testid="submit-captcha"]',
        "place_order": 'button[data-testid="place-order"]',
        "confirmation": '[data-testid="order-confirmation"]',
        "receipt_url": '[data-testid="receipt-url"]',
        "order_number": '[data-testid="order-number"]',
    }

    def __init__(self, base_url: str, confirmation_timeout_ms: int = 30000, settle_timeout_ms: int = 30000) -> None:
        self.base_url = base_url.rstrip("/")
        self.confirmation_timeout_ms = confirmation_timeout_ms
        self.settle_timeout_ms = settle_timeout_ms

    async def run(self, page: AutomationPage, order: Order, credentials: ExternalCredentials,
                  captcha_solution: Optional[str] = None) -> CheckoutResult:
        await self.login(page, credentials)
        await self.populate_cart(page, order.items)
        await self.start_checkout(page, order)

        if captcha_solution:
            await self.submit_captcha(page, captcha_solution)

        captcha = await self.detect_captcha(page)
        if captcha is not None:
            return captcha

        return await self.place_order(page)

    async def login(self, page: AutomationPage, credentials: ExternalCredentials) -> None:
        s = self.SELECTORS
        await page.navigate(f"{self.base_url}/login")
        await page.fill(s["login"], credentials.login)
        await page.fill(s["password"], credentials.password)
        await page.click(s["login_submit"])
        await page.wait_for_settled(self.settle_timeout_ms)

    async def populate_cart(self, page: AutomationPage, items: Iterable[OrderItem]) -> None:
        s = self.SELECTORS
        await self.empty_cart(page)

        for item in items:
            external_id = item.product.external_id if item.product else None
            if not external_id:
                logger.debug(f"Product {item.product_id} has no merchant mapping, skipping")
                continue

            await page.navigate(f"{self.base_url}/product/{external_id}")
            await page.click(s["add_to_cart"])
            if item.quantity > 1:
                await page.fill(s["quantity"], str(item.quantity))

    async def empty_cart(self, page: AutomationPage) -> None:
        """A restarted run must not stack items on top of a previous run's cart."""
        await page.navigate(f"{self.base_url}/cart")
        for _ in range(MAX_CART_ENTRIES):
            if not await page.exists(self.SELECTORS["remove_from_cart"]):
                return
            await page.click(self.SELECTORS["remove_from_cart"])
        raise ExternalAutomationError("Merchant cart could not be emptied")

    async def start_checkout(self, page: AutomationPage, order: Order) -> None:
        s = self.SELECTORS
        await page.navigate(f"{self.base_url}/cart")
        await page.click(s["checkout"])

        await page.fill(s["address"], order.customer_address)
        await page.fill(s["region"], order.customer_region)
        await page.fill(s["district"], order.customer_district)
        await page.fill(s["phone"], order.customer_phone)
        await page.fill(s["name"], order.customer_name)

        await page.click(s["proceed_to_payment"])

    async def submit_captcha(self, page: AutomationPage, solution: str) -> None:
        s = self.SELECTORS
        if not await page.exists(s["captcha_input"]):
            logger.info("No captcha shown on resumed run, solution not needed")
            return
        await page.fill(s["captcha_input"], solution)
        await page.click(s["captcha_submit"])
        await page.wait_for_settled(self.settle_timeout_ms)

    async def detect_captcha(self, page: AutomationPage) -> Optional[CaptchaRequired]:
        s = self.SELECTORS
        if not await page.exists(s["captcha"]):
            return None

        image_url = await page.read_attribute(s["captcha_image"], "src")
        iframe_url = await page.read_attribute(s["captcha_iframe"], "src")
        if not image_url and not iframe_url:
            raise ExternalAutomationError("Captcha shown without an image or iframe")

        return CaptchaRequired(image_url=image_url, iframe_url=iframe_url)

    async def place_order(self, page: AutomationPage) -> CheckoutCompleted:
        s = self.SELECTORS
        await page.click(s["place_order"])
        await page.wait_for(s["confirmation"], self.confirmation_timeout_ms)

        receipt_url = await page.read_text(s["receipt_url"])
        if not receipt_url:
            raise ExternalAutomationError("Order confirmed but no receipt was found")

        external_order_id = await page.read_text(s["order_number"]) or receipt_url
        return CheckoutCompleted(receipt_url=receipt_url, external_order_id=external_order_id)
