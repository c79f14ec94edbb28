# Overview: Notification delivery with bounded retry; never fails the business transaction.

"""
Notification Dispatcher

================================================================================
DELIVERY ALGORITHM
1. Attempt: persist the notification row (first success only), then publish
   `notification.created` on the recipient's live channel, bounded by
   NOTIFY_PUBLISH_TIMEOUT_SECONDS. A timeout is a failure.
2. On failure: queue {recipient, payload, attempts, last_error} in the retry
   queue. Never raise to the caller.
3. retry_failed(): re-attempt every queued item. Success removes it; failure
   increments attempts; when attempts reaches NOTIFY_MAX_ATTEMPTS (first
   attempt included) the item becomes a dead letter: logged at ERROR,
   counted, kept in the dead-letter list and never attempted again.

Bulk sends fan out independently per recipient; a partial failure reports how
many of N failed and does not undo the successes.

RETRY QUEUE BACKENDS
- memory:   lock-guarded in-process list. Single-process deployments only;
            queued items are lost on restart.
- database: notification_retries table, survives restarts and is shared
            between worker processes. A sweep claims PENDING rows as
            IN_FLIGHT and deletes a row only once it is delivered; a claim
            older than the claim timeout (a crashed sweeper) is picked up
            again by the next sweep.
================================================================================
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterable, Mapping, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

from ..errors import NotificationFailure, ValidationError
from ..extensions import db
from ..models import Notification, NotificationRetry
from ..models.notifications import NOTIFICATION_TYPES, NOTIFICATION_PRIORITIES
from .realtime import ChannelUnavailable, LiveChannel
from reportflow.time_utils import utcnow

logger = logging.getLogger(__name__)


RETRY_STATUS_PENDING = "PENDING"
RETRY_STATUS_IN_FLIGHT = "IN_FLIGHT"
RETRY_STATUS_DEAD = "DEAD"

EVENT_CREATED = "notification.created"
EVENT_UPDATED = "notification.updated"
EVENT_DELETED = "notification.deleted"


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass(frozen=True)
class NotificationPayload:
    title: str
    message: str
    type: str = "info"
    priority: str = "medium"
    data: Optional[Mapping[str, Any]] = None

    def __post_init__(self):
        if not (self.title or "").strip():
            raise ValidationError("notification title is required", field="title")
        if not (self.message or "").strip():
            raise ValidationError("notification message is required", field="message")
        if self.type not in NOTIFICATION_TYPES:
            raise ValidationError(
                f"notification type must be one of: {', '.join(NOTIFICATION_TYPES)}", field="type"
            )
        if self.priority not in NOTIFICATION_PRIORITIES:
            raise ValidationError(
                f"notification priority must be one of: {', '.join(NOTIFICATION_PRIORITIES)}",
                field="priority",
            )

    @classmethod
    def coerce(cls, value: "NotificationPayload | Mapping[str, Any]") -> "NotificationPayload":
        if isinstance(value, cls):
            return value
        return cls(
            title=value.get("title", ""),
            message=value.get("message", ""),
            type=value.get("type", "info"),
            priority=value.get("priority", "medium"),
            data=value.get("data"),
        )

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "priority": self.priority,
            "data": dict(self.data) if self.data is not None else None,
        }


@dataclass
class RetryItem:
    recipient_id: int
    payload: NotificationPayload
    attempts: int = 1
    last_error: str | None = None
    delivery_key: str = field(default_factory=lambda: uuid.uuid4().hex)
    # Set once the notification row exists; later attempts only re-publish.
    notification_id: int | None = None
    record: dict | None = None

    @property
    def retry_count(self) -> int:
        return self.attempts - 1

    def to_dict(self) -> dict:
        return {
            "recipient_id": self.recipient_id,
            "notification": self.payload.to_dict(),
            "attempts": self.attempts,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "delivery_key": self.delivery_key,
            "notification_id": self.notification_id,
        }


@dataclass(frozen=True)
class DispatchOutcome:
    recipient_id: int
    delivered: bool
    notification_id: int | None = None
    error: str | None = None

    @property
    def queued(self) -> bool:
        return not self.delivered


@dataclass(frozen=True)
class BulkDispatchResult:
    outcomes: tuple[DispatchOutcome, ...]

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def delivered(self) -> int:
        return sum(1 for o in self.outcomes if o.delivered)

    @property
    def failed(self) -> int:
        return self.total - self.delivered

    def for_recipient(self, recipient_id: int) -> DispatchOutcome | None:
        for outcome in self.outcomes:
            if outcome.recipient_id == recipient_id:
                return outcome
        return None


@dataclass(frozen=True)
class SweepResult:
    attempted: int = 0
    delivered: int = 0
    requeued: int = 0
    dropped: int = 0

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "delivered": self.delivered,
            "requeued": self.requeued,
            "dropped": self.dropped,
        }


# =============================================================================
# PERSISTENCE
# =============================================================================

class SqlNotificationStore:
    """Persists notification rows through the Flask-SQLAlchemy session."""

    def save(self, recipient_id: int, payload: NotificationPayload) -> dict:
        try:
            notification = Notification(
                recipient_id=recipient_id,
                title=payload.title,
                message=payload.message,
                type=payload.type,
                priority=payload.priority,
                data=dict(payload.data) if payload.data is not None else None,
                is_read=False,
            )
            db.session.add(notification)
            db.session.commit()
            return notification.to_dict()
        except SQLAlchemyError:
            db.session.rollback()
            raise


class InMemoryRetryQueue:
    """
    Mutex-guarded retry set. Single-process only.

    drain() hands the pending items to exactly one sweeper, so concurrent
    sweeps never attempt the same item twice, and notify() calls may add new
    items while a sweep is running.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: list[RetryItem] = []
        self._dead: list[RetryItem] = []

    def add(self, item: RetryItem) -> None:
        with self._lock:
            self._pending.append(item)

    def drain(self) -> list[RetryItem]:
        with self._lock:
            items, self._pending = self._pending, []
        return items

    def dead_letter(self, item: RetryItem) -> None:
        with self._lock:
            self._dead.append(item)

    def ack(self, item: RetryItem) -> None:
        """Delivered; drain() already removed it."""

    def pending(self) -> list[RetryItem]:
        with self._lock:
            return list(self._pending)

    def dead_letters(self) -> list[RetryItem]:
        with self._lock:
            return list(self._dead)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class DatabaseRetryQueue:
    """
    Retry set backed by the notification_retries table.

    Row states: PENDING -> IN_FLIGHT (claimed by a sweep) -> deleted on
    delivery, or back to PENDING / DEAD on failure. An IN_FLIGHT claim older
    than claim_timeout is treated as PENDING again.
    """

    def __init__(self, claim_timeout: float = 300.0):
        self.claim_timeout = claim_timeout

    def _claimable(self):
        stale_before = utcnow() - timedelta(seconds=self.claim_timeout)
        return or_(
            NotificationRetry.status == RETRY_STATUS_PENDING,
            and_(
                NotificationRetry.status == RETRY_STATUS_IN_FLIGHT,
                NotificationRetry.claimed_at < stale_before,
            ),
        )

    @staticmethod
    def _to_row(item: RetryItem, status: str) -> NotificationRetry:
        return NotificationRetry(
            recipient_id=item.recipient_id,
            delivery_key=item.delivery_key,
            notification_id=item.notification_id,
            payload={"notification": item.payload.to_dict(), "record": item.record},
            attempts=item.attempts,
            last_error=item.last_error,
            status=status,
        )

    @staticmethod
    def _to_item(row: NotificationRetry) -> RetryItem:
        payload = row.payload or {}
        return RetryItem(
            recipient_id=row.recipient_id,
            payload=NotificationPayload.coerce(payload.get("notification") or {}),
            attempts=row.attempts,
            last_error=row.last_error,
            delivery_key=row.delivery_key,
            notification_id=row.notification_id,
            record=payload.get("record"),
        )

    def _upsert(self, item: RetryItem, status: str) -> None:
        try:
            row = (
                db.session.query(NotificationRetry)
                .filter_by(recipient_id=item.recipient_id, delivery_key=item.delivery_key)
                .first()
            )
            if row is None:
                db.session.add(self._to_row(item, status))
            else:
                row.attempts = item.attempts
                row.last_error = item.last_error
                row.notification_id = item.notification_id
                row.payload = {"notification": item.payload.to_dict(), "record": item.record}
                row.status = status
                row.claimed_at = None
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def add(self, item: RetryItem) -> None:
        self._upsert(item, RETRY_STATUS_PENDING)

    def drain(self) -> list[RetryItem]:
        """Claim every retryable row for this sweep; rows stay until ack()."""
        try:
            rows = (
                db.session.query(NotificationRetry)
                .filter(self._claimable())
                .order_by(NotificationRetry.id)
                .with_for_update(skip_locked=True)
                .all()
            )
            claimed_at = utcnow()
            for row in rows:
                row.status = RETRY_STATUS_IN_FLIGHT
                row.claimed_at = claimed_at
            items = [self._to_item(row) for row in rows]
            db.session.commit()
            return items
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def ack(self, item: RetryItem) -> None:
        try:
            (
                db.session.query(NotificationRetry)
                .filter_by(recipient_id=item.recipient_id, delivery_key=item.delivery_key)
                .delete()
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def dead_letter(self, item: RetryItem) -> None:
        self._upsert(item, RETRY_STATUS_DEAD)

    def _undelivered(self):
        return db.session.query(NotificationRetry).filter(
            NotificationRetry.status.in_((RETRY_STATUS_PENDING, RETRY_STATUS_IN_FLIGHT))
        )

    def pending(self) -> list[RetryItem]:
        rows = self._undelivered().order_by(NotificationRetry.id).all()
        return [self._to_item(row) for row in rows]

    def dead_letters(self) -> list[RetryItem]:
        rows = db.session.query(NotificationRetry).filter_by(status=RETRY_STATUS_DEAD).order_by(NotificationRetry.id).all()
        return [self._to_item(row) for row in rows]

    def __len__(self) -> int:
        return self._undelivered().count()


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    def __init__(
        self,
        channel: LiveChannel,
        *,
        store=None,
        retry_queue=None,
        max_attempts: int = 3,
        publish_timeout: float = 5.0,
        alert_hook: Optional[Callable[[dict], Any]] = None,
        on_permanent_failure: Optional[Callable[[RetryItem], Any]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.channel = channel
        self.store = store or SqlNotificationStore()
        self.retry_queue = retry_queue if retry_queue is not None else InMemoryRetryQueue()
        self.max_attempts = max_attempts
        self.publish_timeout = publish_timeout
        self.alert_hook = alert_hook
        self.on_permanent_failure = on_permanent_failure
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="notify-publish")
        self._stats_lock = threading.Lock()
        self._stats = {"delivered": 0, "failed_attempts": 0, "permanent_failures": 0}

    @classmethod
    def from_config(cls, config: Mapping[str, Any], channel: LiveChannel) -> "NotificationDispatcher":
        backend = (config.get("NOTIFY_RETRY_BACKEND") or "memory").lower()
        if backend == "database":
            retry_queue = DatabaseRetryQueue(
                claim_timeout=float(config.get("NOTIFY_RETRY_CLAIM_TIMEOUT_SECONDS", 300)),
            )
        elif backend == "memory":
            retry_queue = InMemoryRetryQueue()
        else:
            raise ValueError(f"Unknown NOTIFY_RETRY_BACKEND '{backend}' (expected memory or database)")
        return cls(
            channel,
            retry_queue=retry_queue,
            max_attempts=int(config.get("NOTIFY_MAX_ATTEMPTS", 3)),
            publish_timeout=float(config.get("NOTIFY_PUBLISH_TIMEOUT_SECONDS", 5)),
            alert_hook=_log_urgent_alert,
        )

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def stats(self) -> dict:
        with self._stats_lock:
            snapshot = dict(self._stats)
        snapshot["pending"] = len(self.retry_queue)
        return snapshot

    # -------------------------------------------------------------------------
    # Attempts
    # -------------------------------------------------------------------------

    def _publish(self, recipient_id: int, event: dict) -> None:
        future = self._executor.submit(self.channel.publish, recipient_id, event)
        try:
            future.result(timeout=self.publish_timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise NotificationFailure(
                f"live publish timed out after {self.publish_timeout}s"
            ) from exc
        except ChannelUnavailable as exc:
            raise NotificationFailure(f"live channel unavailable: {exc}") from exc

    def _attempt(self, item: RetryItem) -> dict:
        """One delivery attempt. Raises NotificationFailure on any failure."""
        if item.notification_id is None:
            try:
                record = self.store.save(item.recipient_id, item.payload)
            except Exception as exc:
                raise NotificationFailure(f"could not persist notification: {exc}") from exc
            item.notification_id = record.get("id")
            item.record = record
        record = item.record or {"id": item.notification_id, "recipient_id": item.recipient_id, **item.payload.to_dict()}

        try:
            self._publish(item.recipient_id, {"event": EVENT_CREATED, "notification": record})
        except NotificationFailure:
            raise
        except Exception as exc:
            raise NotificationFailure(f"live publish failed: {exc}") from exc
        return record

    def _delivered(self, item: RetryItem, record: dict) -> None:
        self._bump("delivered")
        if item.payload.priority == "urgent" and self.alert_hook is not None:
            try:
                self.alert_hook(record)
            except Exception:
                logger.exception("Urgent alert hook failed for notification %s", record.get("id"))

    def _give_up(self, item: RetryItem) -> None:
        self._bump("permanent_failures")
        logger.error(
            "Notification '%s' to user %s failed permanently after %d attempts: %s",
            item.payload.title, item.recipient_id, item.attempts, item.last_error,
        )
        try:
            self.retry_queue.dead_letter(item)
        except Exception:
            logger.exception("Could not record dead letter for user %s", item.recipient_id)
        if self.on_permanent_failure is not None:
            try:
                self.on_permanent_failure(item)
            except Exception:
                logger.exception("Permanent-failure hook failed for user %s", item.recipient_id)

    def _queue(self, item: RetryItem) -> None:
        try:
            self.retry_queue.add(item)
        except Exception:
            # The failure is still visible: logged with the full item.
            logger.exception("Could not queue notification for retry: %s", item.to_dict())

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    def notify(self, recipient_id: int, notification: NotificationPayload | Mapping[str, Any]) -> DispatchOutcome:
        """
        Deliver one notification. Never raises for delivery problems.

        Returns whether the first attempt delivered; a failed first attempt
        has been queued for retry (or dead-lettered when max_attempts is 1).
        """
        payload = NotificationPayload.coerce(notification)
        item = RetryItem(recipient_id=recipient_id, payload=payload)
        try:
            record = self._attempt(item)
        except NotificationFailure as exc:
            self._bump("failed_attempts")
            item.last_error = exc.detail
            logger.warning("Notification to user %s failed (attempt 1): %s", recipient_id, exc.detail)
            if item.attempts >= self.max_attempts:
                self._give_up(item)
            else:
                self._queue(item)
            return DispatchOutcome(recipient_id, delivered=False, notification_id=item.notification_id, error=exc.detail)

        self._delivered(item, record)
        return DispatchOutcome(recipient_id, delivered=True, notification_id=record.get("id"))

    def notify_many(
        self,
        recipient_ids: Iterable[int],
        notification: NotificationPayload | Mapping[str, Any],
    ) -> BulkDispatchResult:
        """Independent fan-out, one notification row per recipient."""
        payload = NotificationPayload.coerce(notification)
        outcomes = tuple(self.notify(recipient_id, payload) for recipient_id in dict.fromkeys(recipient_ids))
        result = BulkDispatchResult(outcomes)
        if result.failed:
            logger.warning("%d of %d notifications failed to send", result.failed, result.total)
        return result

    def retry_failed(self) -> SweepResult:
        """Re-attempt every queued item once."""
        items = self.retry_queue.drain()
        counts = {"delivered": 0, "requeued": 0, "dropped": 0}
        done = 0

        try:
            for item in items:
                counts[self._retry_one(item)] += 1
                done += 1
        finally:
            unreached = items[done:]
            if unreached:
                logger.error("Retry sweep aborted; returning %d unattempted item(s) to the queue", len(unreached))
                for item in unreached:
                    self._queue(item)

        return SweepResult(attempted=len(items), **counts)

    def _retry_one(self, item: RetryItem) -> str:
        if item.attempts >= self.max_attempts:
            self._give_up(item)
            return "dropped"

        item.attempts += 1
        try:
            record = self._attempt(item)
        except NotificationFailure as exc:
            self._bump("failed_attempts")
            item.last_error = exc.detail
            logger.warning(
                "Notification to user %s failed (attempt %d): %s",
                item.recipient_id, item.attempts, exc.detail,
            )
            if item.attempts >= self.max_attempts:
                self._give_up(item)
                return "dropped"
            self._queue(item)
            return "requeued"

        logger.info("Notification to user %s delivered on attempt %d", item.recipient_id, item.attempts)
        try:
            self.retry_queue.ack(item)
        except Exception:
            logger.exception("Could not clear delivered retry item for user %s", item.recipient_id)
        self._delivered(item, record)
        return "delivered"

    def publish_event(self, recipient_id: int, event: str, payload: dict) -> bool:
        """Best-effort live event (read/delete sync). Not retried."""
        try:
            self._publish(recipient_id, {"event": event, **payload})
            return True
        except NotificationFailure as exc:
            logger.warning("Live event %s for user %s not published: %s", event, recipient_id, exc.detail)
            return False

    def pending(self) -> list[RetryItem]:
        return self.retry_queue.pending()

    def dead_letters(self) -> list[RetryItem]:
        return self.retry_queue.dead_letters()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


def _log_urgent_alert(record: dict) -> None:
    logger.warning(
        "URGENT notification %s for user %s: %s",
        record.get("id"), record.get("recipient_id"), record.get("title"),
    )


class RetryWorker(threading.Thread):
    """Periodic retry sweep, independent of request threads."""

    def __init__(self, app, dispatcher: NotificationDispatcher, interval: float):
        super().__init__(name="notification-retry", daemon=True)
        self.app = app
        self.dispatcher = dispatcher
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            with self.app.app_context():
                try:
                    result = self.dispatcher.retry_failed()
                    if result.attempted:
                        logger.info("Notification retry sweep: %s", result.to_dict())
                except Exception:
                    logger.exception("Notification retry sweep failed")

    def stop(self) -> None:
        self._stop_event.set()
