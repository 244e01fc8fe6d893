from typing import Any

from fulfillment_service.core.exceptions import ExternalApiError
from fulfillment_service.schemas.payment import PaymentResult
from fulfillment_service.services.payments.base import PaymentProvider

CHECKOUT_URL = "https://checkout.paycom.uz"
RECEIPT_PAID = 2


class PaymeProvider(PaymentProvider):
    name = "payme"

    def _headers(self) -> dict[str, str]:
        return {"X-Auth": f"{self.merchant_id}:{self.secret_key}"}

    async def _create(self, order_id: str, amount: float) -> PaymentResult:
        data = await self._post("/receipts.create", {
            "method": "receipts.create",
            "params": {
                "amount": int(round(amount * 100)),  # tiyin
                "account": {"order_id": order_id},
            },
        }, headers=self._headers())

        receipt_id = self._result(data, "Payment creation failed")["receipt"]["_id"]
        return PaymentResult(
            success=True,
            payment_url=f"{CHECKOUT_URL}/{receipt_id}",
            transaction_id=receipt_id,
            message="Payment URL generated successfully"
        )

    async def _verify(self, transaction_id: str) -> PaymentResult:
        data = await self._post("/receipts.get", {
            "method": "receipts.get",
            "params": {"id": transaction_id},
        }, headers=self._headers())

        receipt = self._result(data, "Payment verification failed")["receipt"]
        state = receipt.get("state", receipt.get("status"))
        is_paid = state == RECEIPT_PAID
        return PaymentResult(
            success=is_paid,
            transaction_id=transaction_id,
            amount=receipt["amount"] / 100,
            status=state,
            message="Payment verified successfully" if is_paid else "Payment not completed"
        )

    @staticmethod
    def _result(data: dict[str, Any], fallback: str) -> dict[str, Any]:
        if not data.get("result"):
            raise ExternalApiError((data.get("error") or {}).get("message") or fallback)
        return data["result"]
