import json
import logging
from typing import Any

import aio_pika
from aio_pika.exceptions import AMQPError

EXCHANGE_NAME = "library.events"

logger = logging.getLogger(__name__)


def routing_key_from(event_type: str) -> str:
    return event_type.replace("_", ".")


def encode_event(event_type: str, payload: dict[str, Any]) -> bytes:
    return json.dumps({"type": event_type, "payload": payload}, default=str).encode("utf-8")


async def publish_event(
    amqp_url: str | None,
    event_type: str,
    payload: dict[str, Any],
    routing_key: str | None = None,
) -> bool:
    """Publish an event to the shared topic exchange.

    Returns False when no broker is configured or delivery failed. A failed
    delivery never reaches the caller: the state it describes is already
    committed.
    """
    if not amqp_url:
        return False
    try:
        connection = await aio_pika.connect_robust(amqp_url)
        async with connection:
            channel = await connection.channel()
            exchange = await channel.declare_exchange(
                EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
            )
            message = aio_pika.Message(
                body=encode_event(event_type, payload),
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await exchange.publish(message, routing_key or routing_key_from(event_type))
    except (AMQPError, OSError) as exc:
        logger.error("Event %s not delivered: %s", event_type, exc)
        return False
    return True
