from fulfillment_service.core.exceptions import ExternalApiError
from fulfillment_service.schemas.payment import PaymentResult
from fulfillment_service.services.payments.base import PaymentProvider, sha256_signature


class UzcardProvider(PaymentProvider):
    """Serves both Uzcard and Humo cards."""

    name = "uzcard"

    def __init__(self, *args, frontend_url: str = "", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.frontend_url = frontend_url.rstrip("/")

    async def _create(self, order_id: str, amount: float) -> PaymentResult:
        params = {
            "merchant_id": self.merchant_id,
            "amount": amount,
            "order_id": order_id,
            "currency": "UZS",
            "description": f"Order payment for {order_id}",
            "return_url": f"{self.frontend_url}/payment/success",
            "cancel_url": f"{self.frontend_url}/payment/cancel",
        }
        signature = sha256_signature(params["merchant_id"], params["amount"], params["order_id"], self.secret_key)
        data = await self._post("/payment/create", {**params, "signature": signature})

        if not data.get("success"):
            raise ExternalApiError(data.get("message") or "Payment creation failed")

        return PaymentResult(
            success=True,
            payment_url=data.get("payment_url"),
            transaction_id=data.get("transaction_id"),
            message="Payment URL generated successfully"
        )

    async def _verify(self, transaction_id: str) -> PaymentResult:
        signature = sha256_signature(self.merchant_id, transaction_id, self.secret_key)
        data = await self._post("/payment/status", {
            "merchant_id": self.merchant_id,
            "transaction_id": transaction_id,
            "signature": signature,
        })

        if not data.get("success"):
            raise ExternalApiError(data.get("message") or "Payment verification failed")

        is_paid = data.get("status") == "completed"
        return PaymentResult(
            success=is_paid,
            transaction_id=transaction_id,
            amount=data.get("amount"),
            status=data.get("status"),
            message="Payment verified successfully" if is_paid else "Payment not completed"
        )
