# Overview: Flask API routes for service reports; authoring, submission, decisions and listing.

# backend/reportflow/routes/reports.py
"""
Service report routes.

Lifecycle:
- POST   /api/reports                   create draft (technician)
- PATCH  /api/reports/<id>              edit draft (owning technician)
- POST   /api/reports/<id>/submit       draft -> submitted
- POST   /api/reports/<id>/decision     submitted -> approved | rejected
- DELETE /api/reports/<id>              remove draft

Reading:
- GET /api/reports?scope=mine|team|pending|all&status=...
- GET /api/reports/<id>
- GET /api/reports/summary

Domain errors (Forbidden, InvalidTransition, ValidationError, NotFound,
PersistenceFailure) are rendered by the app-level handler as
{"error": kind, "detail": ...} with their status code.
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_actor
from ..services import approval_service

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.post("")
@require_actor
def create_report():
    data = request.get_json() or {}
    report = approval_service.create_draft(
        g.actor.id,
        details=data.get("details") or {},
        title=data.get("title"),
        technician_signature=data.get("technician_signature"),
    )
    return jsonify({"report": report.to_dict()}), 201


@reports_bp.patch("/<int:report_id>")
@require_actor
def update_report(report_id: int):
    data = request.get_json() or {}
    report = approval_service.update_draft(g.actor.id, report_id, data)
    return jsonify({"report": report.to_dict()})


@reports_bp.post("/<int:report_id>/submit")
@require_actor
def submit_report(report_id: int):
    data = request.get_json(silent=True) or {}
    report = approval_service.submit(g.actor.id, report_id, data)
    return jsonify({"report": report.to_dict()})


@reports_bp.post("/<int:report_id>/decision")
@require_actor
def decide_report(report_id: int):
    """
    Approve or reject a submitted report.

    Body:
    {
        "decision": "approve" | "reject",
        "signature": "...",          required
        "remarks": "...",            required to reject
        "notes": "..."               optional on approve
    }

    Returns {"ok": report} or {"error": kind, "detail": ...}.
    """
    data = request.get_json() or {}
    decision = data.pop("decision", None)
    result = approval_service.decide_result(g.actor.id, report_id, decision, data)
    if result.ok:
        return jsonify(result.to_dict())
    return jsonify(result.to_dict()), result.status_code


@reports_bp.delete("/<int:report_id>")
@require_actor
def delete_report(report_id: int):
    approval_service.delete_draft(g.actor.id, report_id)
    return jsonify({"deleted": report_id})


@reports_bp.get("")
@require_actor
def list_reports():
    """
    Query params:
    - scope: mine | team | pending | all (default all)
    - status: draft | submitted | approved | rejected
    - limit (default 100), offset (default 0)
    """
    reports = approval_service.list_reports(
        g.actor.id,
        status=request.args.get("status") or None,
        scope=request.args.get("scope", approval_service.SCOPE_ALL),
        limit=min(request.args.get("limit", 100, type=int), 500),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"reports": [r.to_dict() for r in reports], "count": len(reports)})


@reports_bp.get("/summary")
@require_actor
def report_summary():
    return jsonify({"summary": approval_service.report_summary(g.actor.id)})


@reports_bp.get("/<int:report_id>")
@require_actor
def get_report(report_id: int):
    report = approval_service.get_report(g.actor.id, report_id)
    return jsonify({"report": report.to_dict()})
