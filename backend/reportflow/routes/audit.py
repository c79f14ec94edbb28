# Overview: Flask API routes for browsing the audit log.

from flask import Blueprint, request, jsonify

from ..decorators import require_actor, require_role
from ..errors import ValidationError
from ..roles import ROLE_ADMIN, ROLE_MANAGER
from ..services import audit_service
from reportflow.time_utils import parse_iso_datetime

audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


def _parse_time_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError as e:
        raise ValidationError(f"{name}: {e}", field=name) from e


@audit_bp.get("")
@require_actor
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def list_audit_entries():
    """
    Query params:
    - actor_id, action, target_table, target_id
    - since, until: ISO 8601
    - limit (default 100, max 500), offset
    - diff: bool (default false) - include changed keys only
    """
    entries = audit_service.list_entries(
        actor_id=request.args.get("actor_id", type=int),
        action=request.args.get("action") or None,
        target_table=request.args.get("target_table") or None,
        target_id=request.args.get("target_id", type=int),
        since=_parse_time_arg("since"),
        until=_parse_time_arg("until"),
        limit=min(request.args.get("limit", 100, type=int), 500),
        offset=request.args.get("offset", 0, type=int),
    )
    include_diff = request.args.get("diff", "false").lower() == "true"

    result = []
    for entry in entries:
        item = entry.to_dict()
        item["verified"] = audit_service.verify_entry(entry)
        if include_diff:
            item["changes"] = audit_service.compute_diff(entry.before, entry.after)
        result.append(item)
    return jsonify({"entries": result, "count": len(result)})
