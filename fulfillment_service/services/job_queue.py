import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from aio_pika import ExchangeType, IncomingMessage
from aio_pika.abc import AbstractRobustChannel
from pydantic import ValidationError

from fulfillment_service.core.broker import DEAD_LETTER_EXCHANGE, EXCHANGE, broker
from fulfillment_service.core.config import settings
from fulfillment_service.schemas.jobs import JOB_ROUTING_KEY, FulfillmentJob
from fulfillment_service.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

JOBS_QUEUE = "fulfillment.jobs"
RETRY_QUEUE = "fulfillment.jobs.retry"
DEAD_QUEUE = "fulfillment.jobs.dead"
RETRY_ROUTING_KEY = "fulfillment.job.retry"
DEAD_ROUTING_KEY = "fulfillment.job.dead"

JobHandler = Callable[[FulfillmentJob], Awaitable[None]]


class JobOutcome(str, Enum):
    ACKED = "acked"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


class JobQueue:
    """At-least-once queue of fulfillment jobs on top of RabbitMQ.

    Deliveries stay unacknowledged while the handler runs, so a consumer
    that dies mid-job gets its delivery redelivered once the channel drops
    or the lease (``x-consumer-timeout``) runs out. Retryable failures are
    re-published to a delay queue whose expired messages flow back into
    the jobs queue; fatal failures and exhausted jobs are rejected into the
    dead-letter queue.
    """

    def __init__(self, handler: Optional[JobHandler] = None, policy: Optional[RetryPolicy] = None,
                 concurrency: Optional[int] = None) -> None:
        self._handler = handler
        self.policy = policy or RetryPolicy.from_settings()
        self.concurrency = concurrency or settings.worker_concurrency
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._channel: Optional[AbstractRobustChannel] = None

    @property
    def handler(self) -> JobHandler:
        if self._handler is None:
            from fulfillment_service.services.worker import get_worker
            self._handler = get_worker().process
        return self._handler

    @property
    def is_consuming(self) -> bool:
        return self._channel is not None and not self._channel.is_closed

    async def enqueue(self, order_id: str, job: Optional[FulfillmentJob] = None, delay: Optional[float] = None) -> FulfillmentJob:
        job = job or FulfillmentJob(order_id=order_id)
        if delay:
            await broker.publish(RETRY_ROUTING_KEY, job.model_dump_json().encode(), expiration=delay)
        else:
            await broker.publish(JOB_ROUTING_KEY, job.model_dump_json().encode())
        return job

    async def start(self) -> None:
        if not broker.is_connected:
            raise RuntimeError("Broker is not connected")

        self._channel = await broker.connection.channel()
        await self._channel.set_qos(prefetch_count=self.concurrency)

        exchange = await self._channel.declare_exchange(EXCHANGE, ExchangeType.TOPIC, durable=True)
        dlx = await self._channel.declare_exchange(DEAD_LETTER_EXCHANGE, ExchangeType.TOPIC, durable=True)

        dlq = await self._channel.declare_queue(DEAD_QUEUE, durable=True)
        await dlq.bind(dlx, routing_key=DEAD_ROUTING_KEY)

        retry_queue = await self._channel.declare_queue(
            RETRY_QUEUE,
            durable=True,
            arguments={
                "x-dead-letter-exchange": EXCHANGE,
                "x-dead-letter-routing-key": JOB_ROUTING_KEY
            }
        )
        await retry_queue.bind(exchange, routing_key=RETRY_ROUTING_KEY)

        queue = await self._channel.declare_queue(
            JOBS_QUEUE,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE,
                "x-dead-letter-routing-key": DEAD_ROUTING_KEY,
                "x-consumer-timeout": settings.job_lease_timeout_seconds * 1000
            }
        )
        await queue.bind(exchange, routing_key=JOB_ROUTING_KEY)

        await queue.consume(self._process_message)
        logger.info(f"Started consuming fulfillment jobs (concurrency={self.concurrency})")

    async def stop(self) -> None:
        if self._channel:
            await self._channel.close()
            self._channel = None
            logger.info("Stopped fulfillment job consumer")

    async def _process_message(self, message: IncomingMessage) -> None:
        try:
            job = FulfillmentJob.model_validate_json(message.body)
        except ValidationError as e:
            logger.error(f"Malformed fulfillment job: {e}", exc_info=True)
            await message.reject(requeue=False)
            return

        if message.redelivered:
            logger.warning(f"Redelivered job for order {job.order_id} (attempt {job.attempt})")

        outcome = await self.dispatch(job)

        if outcome is JobOutcome.DEAD_LETTERED:
            await message.reject(requeue=False)
        else:
            await message.ack()

    async def dispatch(self, job: FulfillmentJob) -> JobOutcome:
        """Run the handler and decide the fate of the job."""
        async with self._semaphore:
            try:
                await self.handler(job)
                return JobOutcome.ACKED
            except Exception as e:
                if not self.policy.should_retry(e, job.attempt):
                    reason = "fatal error" if not self.policy.is_retryable(e) else "attempts exhausted"
                    logger.error(
                        f"Dead-lettering job for order {job.order_id} after attempt {job.attempt} "
                        f"({reason}): {type(e).__name__}: {e}"
                    )
                    return JobOutcome.DEAD_LETTERED

                delay = self.policy.delay_for(job.attempt)
                retry = job.next_attempt()
                await self.enqueue(job.order_id, job=retry, delay=delay)
                logger.warning(
                    f"Job for order {job.order_id} failed on attempt {job.attempt}, "
                    f"retrying as attempt {retry.attempt} in {delay:.1f}s: {type(e).__name__}: {e}"
                )
                return JobOutcome.RETRIED


job_queue = JobQueue()
