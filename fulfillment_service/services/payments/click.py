import time

from fulfillment_service.core.exceptions import ExternalApiError
from fulfillment_service.schemas.payment import PaymentResult
from fulfillment_service.services.payments.base import PaymentProvider, md5_signature

ACTION_CHECK = 1


class ClickProvider(PaymentProvider):
    name = "click"

    def __init__(self, *args, frontend_url: str = "", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.frontend_url = frontend_url.rstrip("/")

    async def _create(self, order_id: str, amount: float) -> PaymentResult:
        params = {
            "service_id": self.merchant_id,
            "merchant_id": self.merchant_id,
            "amount": amount,
            "transaction_param": order_id,
            "return_url": f"{self.frontend_url}/payment/success",
            "cancel_url": f"{self.frontend_url}/payment/cancel",
        }
        sign_string = md5_signature(
            params["service_id"], params["merchant_id"], params["amount"],
            params["transaction_param"], self.secret_key
        )
        data = await self._post("/invoice/create", {
            **params,
            "sign_time": int(time.time() * 1000),
            "sign_string": sign_string,
        })

        if data.get("error_code") != 0:
            raise ExternalApiError(data.get("error_note") or "Payment creation failed")

        return PaymentResult(
            success=True,
            payment_url=data.get("pay_url"),
            transaction_id=str(data.get("click_trans_id")),
            message="Payment URL generated successfully"
        )

    async def _verify(self, transaction_id: str) -> PaymentResult:
        params = {
            "service_id": self.merchant_id,
            "click_trans_id": transaction_id,
            "merchant_trans_id": transaction_id,
            "amount": 0,
            "action": ACTION_CHECK,
            "sign_time": int(time.time() * 1000),
        }
        sign_string = md5_signature(
            params["service_id"], params["click_trans_id"], params["merchant_trans_id"],
            params["amount"], params["action"], params["sign_time"], self.secret_key
        )
        data = await self._post("/invoice/status", {**params, "sign_string": sign_string})

        if data.get("error_code") != 0:
            raise ExternalApiError(data.get("error_note") or "Payment verification failed")

        is_paid = data.get("status") == "confirmed"
        return PaymentResult(
            success=is_paid,
            transaction_id=transaction_id,
            amount=data.get("amount"),
            status=data.get("status"),
            message="Payment verified successfully" if is_paid else "Payment not completed"
        )
