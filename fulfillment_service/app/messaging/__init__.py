from .producer import EventPublisher, NullPublisher, RabbitMQPublisher

__all__ = ["EventPublisher", "NullPublisher", "RabbitMQPublisher"]
