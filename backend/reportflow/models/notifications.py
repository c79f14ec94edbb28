from __future__ import annotations

from ..extensions import db
from reportflow.time_utils import to_utc_z


NOTIFICATION_TYPES = ("info", "warning", "error", "success")
NOTIFICATION_PRIORITIES = ("low", "medium", "high", "urgent")


class Notification(db.Model):
    """
    One delivered notification for exactly one recipient.

    Bulk sends fan out to one row per recipient. Only the recipient mutates a
    row (mark read / delete); the retry path never rewrites a persisted row.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.CheckConstraint("type IN ('info', 'warning', 'error', 'success')", name="ck_notifications_type"),
        db.CheckConstraint("priority IN ('low', 'medium', 'high', 'urgent')", name="ck_notifications_priority"),
        db.Index("ix_notifications_recipient_read", "recipient_id", "is_read"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(16), nullable=False, default="info")
    priority = db.Column(db.String(16), nullable=False, default="medium")
    data = db.Column(db.JSON, nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "priority": self.priority,
            "data": self.data,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
        }


class NotificationRetry(db.Model):
    """
    Durable retry / dead-letter row for a notification that failed delivery.

    Keyed by (recipient_id, delivery_key). notification_id is filled once the
    notification row has been persisted, so later attempts only re-publish.

    status: PENDING (will be retried), IN_FLIGHT (claimed by a running sweep
    at claimed_at), DEAD (retry budget exhausted). Rows are deleted once delivered.
    """
    __tablename__ = "notification_retries"
    __table_args__ = (
        db.UniqueConstraint("recipient_id", "delivery_key", name="uq_notification_retries_recipient_key"),
        db.Index("ix_notification_retries_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, nullable=False, index=True)
    delivery_key = db.Column(db.String(64), nullable=False)
    notification_id = db.Column(db.Integer, nullable=True)

    payload = db.Column(db.JSON, nullable=False)
    attempts = db.Column(db.Integer, nullable=False, default=1)
    last_error = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="PENDING")
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "delivery_key": self.delivery_key,
            "notification_id": self.notification_id,
            "payload": self.payload,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "status": self.status,
            "claimed_at": to_utc_z(self.claimed_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
