"""
Notification Service — domain events fanned out to in-app notifications.

Events are produced inside a workflow transaction but delivered only after
it commits. Delivery is fire-and-forget: a failure is logged and rolled
back on its own, never undoing the mutation that produced the event.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from taskflow.models import db
from taskflow.models.notification import NOTIFICATION_EVENT_TYPES, Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    type: str
    actor_id: int | None
    task_id: int | None = None
    sprint_id: int | None = None
    payload: dict = field(default_factory=dict)
    recipients: tuple = ()
    title: str = ""

    def __post_init__(self):
        if self.type not in NOTIFICATION_EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.type}")

    @property
    def entity(self):
        if self.task_id is not None:
            return "task", self.task_id
        return "sprint", self.sprint_id


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Dispatch ──────────────────────────────────────────────────────────

    @staticmethod
    def dispatch(events):
        """Deliver each event in its own transaction. Returns notifications created."""
        created = 0
        for event in events:
            try:
                created += len(NotificationService.deliver(event))
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception(
                    "Notification delivery failed type=%s task=%s sprint=%s",
                    event.type, event.task_id, event.sprint_id,
                    extra={"task_id": event.task_id, "sprint_id": event.sprint_id},
                )
        return created

    @staticmethod
    def deliver(event):
        """Add one Notification per distinct recipient other than the actor."""
        entity_type, entity_id = event.entity
        notifications = []
        seen = set()
        for recipient_id in event.recipients:
            if recipient_id is None or recipient_id == event.actor_id or recipient_id in seen:
                continue
            seen.add(recipient_id)
            notif = Notification(
                recipient_id=recipient_id,
                event_type=event.type,
                title=event.title or event.type.replace("_", " ").capitalize(),
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=event.actor_id,
                payload_json=json.dumps(event.payload, default=str),
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.flush()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        return Notification.query.filter_by(recipient_id=recipient_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a single notification as read; only its recipient may do so."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.recipient_id != recipient_id:
            return None
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id):
        q = Notification.query.filter_by(recipient_id=recipient_id, is_read=False)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count
