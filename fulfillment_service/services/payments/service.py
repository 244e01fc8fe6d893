import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.core.exceptions import OrderNotFoundError, UnsupportedPaymentMethodError
from fulfillment_service.models.order import OrderStatus, PaymentStatus
from fulfillment_service.models.payment import PaymentLog, PaymentLogStatus
from fulfillment_service.repositories.order import OrderRepository
from fulfillment_service.repositories.outbox import OutboxRepository
from fulfillment_service.repositories.payment import PaymentLogRepository
from fulfillment_service.schemas.jobs import FulfillmentJob
from fulfillment_service.schemas.order import Pagination
from fulfillment_service.schemas.payment import (
    PaymentCreateResponse,
    PaymentLogPage,
    PaymentLogResponse,
    PaymentResult,
)
from fulfillment_service.services.payments.base import PaymentProvider

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(self, session: AsyncSession, providers: dict[str, PaymentProvider]) -> None:
        self.session = session
        self.providers = providers
        self.order_repository = OrderRepository(session)
        self.log_repository = PaymentLogRepository(session)
        self.outbox_repository = OutboxRepository(session)

    def _provider(self, payment_method: str) -> Optional[PaymentProvider]:
        return self.providers.get(payment_method.lower())

    async def create_payment(self, order_id: str, payment_method: str, amount: float) -> PaymentCreateResponse:
        order = await self.order_repository.get_by_id(order_id)
        if not order:
            raise OrderNotFoundError(order_id)

        log = await self.log_repository.create(PaymentLog(
            order_id=order_id,
            payment_method=payment_method,
            amount=amount,
            status=PaymentLogStatus.PENDING.value
        ))

        provider = self._provider(payment_method)
        if provider is None:
            error = UnsupportedPaymentMethodError(payment_method)
            log.status = PaymentLogStatus.FAILED.value
            log.response = error.message
            await self.log_repository.update(log)
            logger.warning(f"Rejected payment for order {order_id}: {error.message}")
            raise error

        result = await provider.create_payment(order_id, amount)

        log.transaction_id = result.transaction_id
        log.response = result.model_dump_json()
        log.status = (PaymentLogStatus.COMPLETED if result.success else PaymentLogStatus.FAILED).value
        await self.order_repository.set_payment_status(
            order_id,
            (PaymentStatus.COMPLETED if result.success else PaymentStatus.FAILED).value
        )
        await self.log_repository.update(log)

        logger.info(f"Payment via {provider.name} for order {order_id}: success={result.success}")

        return PaymentCreateResponse(
            success=result.success,
            payment_url=result.payment_url,
            transaction_id=result.transaction_id,
            message=result.message
        )

    async def verify_payment(self, transaction_id: str, payment_method: str) -> PaymentResult:
        provider = self._provider(payment_method)
        if provider is None:
            raise UnsupportedPaymentMethodError(payment_method)

        result = await provider.verify_payment(transaction_id)

        log = await self.log_repository.get_by_transaction_id(transaction_id)
        if log is None:
            logger.warning(f"No payment log for transaction {transaction_id}")
            return result

        log.status = (PaymentLogStatus.COMPLETED if result.success else PaymentLogStatus.FAILED).value
        log.response = result.model_dump_json()

        if result.success:
            await self.order_repository.set_payment_status(log.order_id, PaymentStatus.COMPLETED.value)
            order = await self.order_repository.get_by_id(log.order_id, refresh=True)
            if order is not None and order.status == OrderStatus.PENDING.value:
                # The worker moves the order to PROCESSING when it claims this job.
                await self.outbox_repository.add_job(FulfillmentJob(order_id=order.id))

        await self.log_repository.update(log)
        logger.info(f"Verified transaction {transaction_id} via {provider.name}: success={result.success}")
        return result

    async def list_logs(self, page: int = 1, limit: int = 10, order_id: Optional[str] = None) -> PaymentLogPage:
        logs, total = await self.log_repository.list(page=page, limit=limit, order_id=order_id)
        return PaymentLogPage(
            logs=[PaymentLogResponse.model_validate(log) for log in logs],
            pagination=Pagination.build(page, limit, total)
        )
