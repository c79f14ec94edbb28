# Overview: Flask API routes for the notification center and its live event stream.

import json
import queue

from flask import Blueprint, Response, request, jsonify, g, current_app

from ..decorators import require_actor, require_role
from ..roles import ROLE_ADMIN
from ..services import notification_service
from ..services.realtime import ReconnectPolicy, Subscription

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")

SSE_HEARTBEAT_SECONDS = 15


@notifications_bp.get("")
@require_actor
def list_notifications():
    """
    Query params:
    - unread_only: bool (default false)
    - limit: int (default NOTIFICATION_LIST_LIMIT)
    """
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = request.args.get("limit", type=int)
    items = notification_service.list_notifications(g.actor.id, unread_only=unread_only, limit=limit)
    return jsonify({
        "notifications": [n.to_dict() for n in items],
        "unread_count": notification_service.unread_count(g.actor.id),
    })


@notifications_bp.post("/<int:notification_id>/read")
@require_actor
def mark_read(notification_id: int):
    notification = notification_service.mark_read(g.actor.id, notification_id)
    return jsonify({"notification": notification.to_dict()})


@notifications_bp.post("/read-all")
@require_actor
def mark_all_read():
    updated = notification_service.mark_all_read(g.actor.id)
    return jsonify({"updated": updated})


@notifications_bp.delete("/<int:notification_id>")
@require_actor
def delete_notification(notification_id: int):
    notification_service.delete_notification(g.actor.id, notification_id)
    return jsonify({"deleted": notification_id})


@notifications_bp.post("/retry")
@require_actor
@require_role(ROLE_ADMIN)
def retry_failed():
    """Run one retry sweep now instead of waiting for the background worker."""
    dispatcher = notification_service.get_dispatcher()
    try:
        result = dispatcher.retry_failed()
    except Exception:
        current_app.logger.exception("Failed to run notification retry sweep")
        return jsonify({"error": "Retry sweep failed"}), 500
    return jsonify({"result": result.to_dict(), "stats": dispatcher.stats()})


# =============================================================================
# LIVE STREAM (server-sent events)
# =============================================================================

def sse_events(subscription: Subscription, events: "queue.Queue", heartbeat: float = SSE_HEARTBEAT_SECONDS):
    """
    Yield SSE frames for events put on `events` by the subscription handler.

    A quiet period yields a comment frame so proxies keep the connection
    open. The subscription is closed when the client goes away.
    """
    try:
        yield ": connected\n\n"
        while True:
            try:
                event = events.get(timeout=heartbeat)
            except queue.Empty:
                yield ": keepalive\n\n"
                continue
            name = event.get("event", "message")
            yield f"event: {name}\ndata: {json.dumps(event, default=str)}\n\n"
    finally:
        subscription.close()


@notifications_bp.get("/stream")
@require_actor
def stream():
    config = current_app.config
    events: "queue.Queue" = queue.Queue()
    subscription = Subscription(
        notification_service.get_live_channel(),
        g.actor.id,
        events.put,
        policy=ReconnectPolicy(
            base_delay=float(config["LIVE_RESUBSCRIBE_BASE_DELAY_SECONDS"]),
            max_delay=float(config["LIVE_RESUBSCRIBE_MAX_DELAY_SECONDS"]),
        ),
    ).start()

    response = Response(sse_events(subscription, events), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response
