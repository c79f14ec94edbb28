# Overview: Notification center operations and domain-event notification templates.

from __future__ import annotations

from flask import current_app

from ..errors import Forbidden, NotFound
from ..extensions import db
from ..models import Notification, ServiceReport, User
from .notification_dispatcher import (
    EVENT_DELETED,
    EVENT_UPDATED,
    NotificationDispatcher,
    NotificationPayload,
)

DISPATCHER_EXTENSION_KEY = "reportflow.dispatcher"
CHANNEL_EXTENSION_KEY = "reportflow.live_channel"


def get_dispatcher() -> NotificationDispatcher:
    return current_app.extensions[DISPATCHER_EXTENSION_KEY]


def get_live_channel():
    return current_app.extensions[CHANNEL_EXTENSION_KEY]


# =============================================================================
# NOTIFICATION CENTER (recipient-side)
# =============================================================================

def list_notifications(user_id: int, *, unread_only: bool = False, limit: int | None = None) -> list[Notification]:
    limit = limit or current_app.config.get("NOTIFICATION_LIST_LIMIT", 100)
    q = db.session.query(Notification).filter_by(recipient_id=user_id)
    if unread_only:
        q = q.filter_by(is_read=False)
    return q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(user_id: int) -> int:
    return db.session.query(Notification).filter_by(recipient_id=user_id, is_read=False).count()


def _get_own_notification(user_id: int, notification_id: int) -> Notification:
    notification = db.session.get(Notification, notification_id)
    if notification is None:
        raise NotFound(f"Notification {notification_id} not found")
    if notification.recipient_id != user_id:
        raise Forbidden("only the recipient may change a notification", rule="notification_recipient")
    return notification


def mark_read(user_id: int, notification_id: int, dispatcher: NotificationDispatcher | None = None) -> Notification:
    notification = _get_own_notification(user_id, notification_id)
    if not notification.is_read:
        notification.is_read = True
        db.session.commit()
        (dispatcher or get_dispatcher()).publish_event(
            user_id, EVENT_UPDATED, {"notification": notification.to_dict()}
        )
    return notification


def mark_all_read(user_id: int, dispatcher: NotificationDispatcher | None = None) -> int:
    updated = (
        db.session.query(Notification)
        .filter_by(recipient_id=user_id, is_read=False)
        .update({"is_read": True}, synchronize_session="fetch")
    )
    db.session.commit()
    if updated:
        (dispatcher or get_dispatcher()).publish_event(user_id, EVENT_UPDATED, {"all_read": True})
    return updated


def delete_notification(user_id: int, notification_id: int, dispatcher: NotificationDispatcher | None = None) -> None:
    notification = _get_own_notification(user_id, notification_id)
    db.session.delete(notification)
    db.session.commit()
    (dispatcher or get_dispatcher()).publish_event(
        user_id, EVENT_DELETED, {"notification_id": notification_id}
    )


# =============================================================================
# DOMAIN EVENT TEMPLATES
# =============================================================================

def _report_label(report: ServiceReport) -> str:
    complaint_no = (report.details or {}).get("complaint_no")
    if report.title:
        return report.title
    if complaint_no:
        return f"complaint {complaint_no}"
    return f"report #{report.id}"


def report_submitted_payload(report: ServiceReport, technician: User) -> NotificationPayload:
    return NotificationPayload(
        title="Report awaiting approval",
        message=f"{technician.full_name} submitted {_report_label(report)} for your approval.",
        type="info",
        priority="medium",
        data={"report_id": report.id, "technician_id": technician.id, "status": report.status},
    )


def report_decided_payload(report: ServiceReport, decider: User) -> NotificationPayload:
    if report.status == "approved":
        return NotificationPayload(
            title="Report approved",
            message=f"{decider.full_name} approved {_report_label(report)}.",
            type="success",
            priority="medium",
            data={"report_id": report.id, "status": report.status, "approved_by": decider.id,
                  "approval_notes": report.approval_notes},
        )
    return NotificationPayload(
        title="Report rejected",
        message=f"{decider.full_name} rejected {_report_label(report)}: {report.rejection_remarks}",
        type="warning",
        priority="high",
        data={"report_id": report.id, "status": report.status, "approved_by": decider.id,
              "rejection_remarks": report.rejection_remarks},
    )


def report_escalated_payload(report: ServiceReport, decider: User, technician: User) -> NotificationPayload:
    return NotificationPayload(
        title=f"Team report {report.status}",
        message=(
            f"{decider.full_name} ({decider.role}) {report.status} {_report_label(report)} "
            f"from {technician.full_name}."
        ),
        type="info",
        priority="medium",
        data={"report_id": report.id, "status": report.status, "decided_by": decider.id},
    )


def owner_changed_payloads(user: User, new_owner: User | None) -> dict[int, NotificationPayload]:
    """Assignment-change event: recipient id -> payload."""
    payloads = {}
    if new_owner is not None:
        payloads[user.id] = NotificationPayload(
            title="Reporting line changed",
            message=f"You now report to {new_owner.full_name}.",
            type="info",
            priority="low",
            data={"owner_id": new_owner.id},
        )
        payloads[new_owner.id] = NotificationPayload(
            title="Team member assigned",
            message=f"{user.full_name} ({user.role}) was assigned to you.",
            type="info",
            priority="low",
            data={"user_id": user.id},
        )
    else:
        payloads[user.id] = NotificationPayload(
            title="Reporting line removed",
            message="You are currently not assigned to a team.",
            type="warning",
            priority="medium",
            data={"owner_id": None},
        )
    return payloads
