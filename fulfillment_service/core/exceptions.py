class FulfillmentError(Exception):
    """Base error of the fulfillment pipeline.

    ``retryable`` tells the job queue whether a failed job may be
    redelivered with backoff or must be dead-lettered straight away.
    """

    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class OrderNotFoundError(FulfillmentError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class EmptyCartError(FulfillmentError):
    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Cart of customer {customer_id} is empty")
        self.customer_id = customer_id


class CaptchaNotFoundError(FulfillmentError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Captcha session for order {order_id} not found")
        self.order_id = order_id


class CaptchaExpiredError(FulfillmentError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Captcha session for order {order_id} expired")
        self.order_id = order_id


class CaptchaAlreadySolvedError(FulfillmentError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Captcha for order {order_id} already solved")
        self.order_id = order_id


class CaptchaLimitExceededError(FulfillmentError):
    def __init__(self, order_id: str, limit: int) -> None:
        super().__init__(f"Order {order_id} hit a captcha {limit} times, giving up")
        self.order_id = order_id


class UnsupportedPaymentMethodError(FulfillmentError):
    def __init__(self, payment_method: str) -> None:
        super().__init__(f"Unsupported payment method: {payment_method}")
        self.payment_method = payment_method


class ExternalApiError(FulfillmentError):
    pass


class ExternalAutomationError(FulfillmentError):
    retryable = True


class AutomationTimeoutError(ExternalAutomationError):
    pass
