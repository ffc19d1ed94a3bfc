"""Publishes housing events (room assignment changes) to RabbitMQ."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict

import pika
from pika.exceptions import AMQPError

from .config import Settings
from .models import Room, Student

logger = logging.getLogger(__name__)


class Notifier:
    """Sends events to a durable queue; delivery problems are logged, never raised."""

    def __init__(self, settings: Settings) -> None:
        self.enabled = settings.notifications_enabled
        self.host = settings.rabbitmq_host
        self.queue = settings.notification_queue

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        message = {"event": event, "sent_at": datetime.utcnow().isoformat(), **payload}
        if not self.enabled:
            logger.debug("Notifications disabled, dropping %s", message)
            return
        try:
            connection = pika.BlockingConnection(pika.ConnectionParameters(host=self.host))
            try:
                channel = connection.channel()
                channel.queue_declare(queue=self.queue, durable=True)
                channel.basic_publish(
                    exchange="",
                    routing_key=self.queue,
                    body=json.dumps(message),
                    properties=pika.BasicProperties(delivery_mode=2),
                )
            finally:
                connection.close()
        except (AMQPError, OSError) as exc:
            logger.error("Could not publish %s for student %s: %s", event, payload.get("student_id"), exc)
            return
        logger.info("Published %s for student %s", event, payload.get("student_id"))

    def room_assigned(self, student: Student, room: Room) -> None:
        self.publish(
            "room_assigned",
            {
                "student_id": student.id,
                "student_email": student.email,
                "room_id": room.id,
                "room_number": room.room_number,
            },
        )

    def room_unassigned(self, student: Student, room: Room) -> None:
        self.publish(
            "room_unassigned",
            {
                "student_id": student.id,
                "student_email": student.email,
                "room_id": room.id,
                "room_number": room.room_number,
            },
        )
