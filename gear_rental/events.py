"""Fire-and-forget delivery of booking events to the audit collaborator.

The core only ever calls ``emit_safely``: a sink that raises is logged and
ignored, so an unreachable broker can never fail or roll back a booking.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import pika
from circuitbreaker import CircuitBreaker

from .config import Settings, get_settings
from .models import BookingStatus, utcnow

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("gear_rental.audit")

RENTAL_CREATE = "RENTAL_CREATE"
RENTAL_AUTO_REJECTED = "RENTAL_AUTO_REJECTED"
RENTAL_AUTO_CANCELLED = "RENTAL_AUTO_CANCELLED"


def status_event_type(status: BookingStatus) -> str:
    return f"RENTAL_STATUS_{status.value}"


@dataclass(frozen=True)
class Actor:
    """Who is acting. ``label`` is copied onto every event as a snapshot."""

    id: str
    label: str

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system", label="System")


@dataclass(frozen=True)
class AuditEvent:
    actor_id: str
    actor_label: str
    event_type: str
    booking_id: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_message(self) -> Dict[str, Any]:
        message = asdict(self)
        message["occurred_at"] = self.occurred_at.isoformat()
        return message


class EventSink(Protocol):
    def record(
        self,
        actor_id: str,
        actor_label: str,
        event_type: str,
        booking_id: Optional[int],
        payload: Dict[str, Any],
    ) -> None:
        ...


class NullEventSink:
    def record(self, actor_id, actor_label, event_type, booking_id, payload) -> None:
        return None


class LoggingEventSink:
    """Writes each event as a single structured line on the audit logger."""

    def record(self, actor_id, actor_label, event_type, booking_id, payload) -> None:
        event = AuditEvent(actor_id, actor_label, event_type, booking_id, dict(payload))
        audit_logger.info("%s", json.dumps(event.to_message(), default=str, sort_keys=True))


class RabbitMQEventSink:
    """Publishes events as persistent JSON messages on a durable queue.

    A connection is opened per event; the surrounding circuit stops dialling
    the broker after ``failure_threshold`` consecutive failures until
    ``recovery_timeout`` has elapsed.
    """

    def __init__(
        self,
        host: str,
        queue: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
    ) -> None:
        self.host = host
        self.queue = queue
        breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            name=f"rabbitmq-events-{queue}",
        )
        self._publish = breaker(self._publish_once)

    def record(self, actor_id, actor_label, event_type, booking_id, payload) -> None:
        event = AuditEvent(actor_id, actor_label, event_type, booking_id, dict(payload))
        self._publish(event.to_message())

    def _publish_once(self, message: Dict[str, Any]) -> None:
        connection = pika.BlockingConnection(pika.ConnectionParameters(host=self.host))
        try:
            channel = connection.channel()
            channel.queue_declare(queue=self.queue, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                body=json.dumps(message, default=str),
                properties=pika.BasicProperties(delivery_mode=2),  # make message persistent
            )
            logger.debug("Published %s for booking %s", message["event_type"], message["booking_id"])
        finally:
            connection.close()


def build_event_sink(settings: Optional[Settings] = None) -> EventSink:
    settings = settings or get_settings()
    if settings.event_sink == "rabbitmq":
        return RabbitMQEventSink(
            host=settings.rabbitmq_host,
            queue=settings.rabbitmq_queue,
            failure_threshold=settings.event_sink_failure_threshold,
            recovery_timeout=settings.event_sink_recovery_timeout,
        )
    if settings.event_sink == "none":
        return NullEventSink()
    return LoggingEventSink()


def emit_safely(
    sink: EventSink,
    actor: Actor,
    event_type: str,
    booking_id: Optional[int],
    payload: Optional[Dict[str, Any]] = None,
) -> bool:
    """Deliver one event; return False instead of raising when the sink fails."""

    try:
        sink.record(actor.id, actor.label, event_type, booking_id, payload or {})
    except Exception as exc:
        logger.error("Event sink failed for %s (booking %s): %s", event_type, booking_id, exc)
        return False
    return True
