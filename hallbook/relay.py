"""Mirror domain events onto a durable RabbitMQ queue.

Downstream consumers (reporting, the mailer) read ``hall_events``. The relay
is opt-in through ``EVENT_RELAY_ENABLED``; a broker outage is logged and the
event is dropped from the relay only, the in-process subscribers still run.
"""
from __future__ import annotations

import json
import logging
from typing import Callable, Optional

import pika
from pika.exceptions import AMQPError

from .config import get_settings
from .events import WILDCARD, DomainEvent, EventBus, event_bus

logger = logging.getLogger(__name__)


class RabbitMQRelay:
    def __init__(self, host: str, queue: str) -> None:
        self.host = host
        self.queue = queue

    def __call__(self, event: DomainEvent) -> None:
        try:
            connection = pika.BlockingConnection(pika.ConnectionParameters(host=self.host))
        except AMQPError as exc:
            logger.warning("[RabbitMQ] Could not connect to %s: %s", self.host, exc)
            return
        try:
            channel = connection.channel()
            channel.queue_declare(queue=self.queue, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                body=json.dumps(event.to_message(), default=str),
                properties=pika.BasicProperties(delivery_mode=2),
            )
            logger.info("[RabbitMQ] Relayed %s", event.name)
        except AMQPError as exc:
            logger.warning("[RabbitMQ] Failed to relay %s: %s", event.name, exc)
        finally:
            if connection.is_open:
                connection.close()


_unsubscribe: Optional[Callable[[], None]] = None


def register_relay(bus: EventBus = event_bus) -> bool:
    """Subscribe the relay to every event when enabled. Safe to call repeatedly."""

    global _unsubscribe
    settings = get_settings()
    if not settings.event_relay_enabled or _unsubscribe is not None:
        return _unsubscribe is not None
    _unsubscribe = bus.subscribe(WILDCARD, RabbitMQRelay(settings.rabbitmq_host, settings.rabbitmq_queue))
    return True
