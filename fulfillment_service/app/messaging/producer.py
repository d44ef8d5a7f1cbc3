import json
import logging

import pika
from pika.exceptions import AMQPError

logger = logging.getLogger(__name__)


class EventPublisher:
    """Interface for publishing order lifecycle events after a commit."""

    def publish(self, routing_key: str, message: dict) -> None:
        raise NotImplementedError


class NullPublisher(EventPublisher):
    """Used when no message bus is configured."""

    def publish(self, routing_key: str, message: dict) -> None:
        logger.debug("Event bus disabled, dropping '%s'", routing_key)


class RabbitMQPublisher(EventPublisher):
    """
    Publishes JSON events to a RabbitMQ topic exchange.
    Opens a short-lived connection per event; a failed publish is logged and dropped,
    since the database commit has already happened.
    """

    def __init__(self, host: str, exchange_name: str = "events", exchange_type: str = "topic",
                 username: str = "guest", password: str = "guest"):
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.parameters = pika.ConnectionParameters(
            host=host,
            credentials=pika.PlainCredentials(username, password),
            blocked_connection_timeout=30,
            connection_attempts=1,
        )

    def publish(self, routing_key: str, message: dict) -> None:
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.created', 'payment.succeeded').
            message (dict): The data payload to send.
        """
        connection = None
        try:
            connection = pika.BlockingConnection(self.parameters)
            channel = connection.channel()
            # Declare the exchange (durable ensures it survives restarts)
            channel.exchange_declare(
                exchange=self.exchange_name, exchange_type=self.exchange_type, durable=True
            )
            channel.basic_publish(
                exchange=self.exchange_name,
                routing_key=routing_key,
                body=json.dumps(message, default=str),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Make message persistent
                    content_type="application/json",
                ),
            )
            logger.info("Sent event '%s'", routing_key)
        except (AMQPError, OSError) as exc:
            logger.error("Failed to publish event '%s': %s", routing_key, exc)
        finally:
            if connection is not None and connection.is_open:
                connection.close()
