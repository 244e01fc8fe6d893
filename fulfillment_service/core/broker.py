import logging
from typing import Optional
import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractExchange, AbstractRobustChannel, AbstractRobustConnection

from fulfillment_service.core.clock import utcnow
from fulfillment_service.core.config import settings

logger = logging.getLogger(__name__)

EXCHANGE = "fulfillment"
DEAD_LETTER_EXCHANGE = "fulfillment.dlx"


class RabbitMQBroker:
    """Robust connection plus one publisher-confirm channel.

    Consumers open their own channels from ``connection`` so their prefetch
    does not apply to publishing.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self.connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractRobustChannel] = None
        self._exchange: Optional[AbstractExchange] = None

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    async def connect(self) -> None:
        self.connection = await aio_pika.connect_robust(self.url)
        self._channel = await self.connection.channel(publisher_confirms=True)

        self._exchange = await self._channel.declare_exchange(EXCHANGE, ExchangeType.TOPIC, durable=True)
        await self._channel.declare_exchange(DEAD_LETTER_EXCHANGE, ExchangeType.TOPIC, durable=True)

        logger.info(f"Connected to RabbitMQ, publishing to exchange '{EXCHANGE}'")

    async def close(self) -> None:
        if self.connection is not None:
            # Closing the connection closes every channel opened on it.
            await self.connection.close()
        self.connection = None
        self._channel = None
        self._exchange = None
        logger.info("Disconnected from RabbitMQ")

    async def publish(self, routing_key: str, message: bytes, expiration: Optional[float] = None) -> None:
        """Publish a persistent JSON message; ``expiration`` is in seconds."""
        if self._exchange is None:
            raise RuntimeError("Broker is not connected")

        await self._exchange.publish(
            aio_pika.Message(
                body=message,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                expiration=expiration,
                timestamp=utcnow()
            ),
            routing_key=routing_key
        )
        if expiration:
            logger.debug(f"Published to {routing_key}, held for {expiration:.1f}s")
        else:
            logger.debug(f"Published to {routing_key}")


broker = RabbitMQBroker(settings.rabbitmq_url)
