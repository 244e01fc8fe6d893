from fulfillment_service.core.database import Base
from fulfillment_service.models.captcha import CaptchaSession
from fulfillment_service.models.customer import CartItem, Customer, Product
from fulfillment_service.models.notification import NotificationLog
from fulfillment_service.models.order import Order, OrderItem
from fulfillment_service.models.outbox import OutboxMessage
from fulfillment_service.models.payment import PaymentLog

__all__ = [
    "Base",
    "CaptchaSession",
    "CartItem",
    "Customer",
    "NotificationLog",
    "Order",
    "OrderItem",
    "OutboxMessage",
    "PaymentLog",
    "Product",
]
