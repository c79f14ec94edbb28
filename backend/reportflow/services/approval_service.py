# Overview: Approval orchestration; authorizes, transitions, persists, audits, then notifies.

"""
Service Report Approval Orchestrator

================================================================================
UNIT OF WORK (decide / submit / delete / edit):
1. Load the report under a row lock, plus its technician and the actor.
2. Authorize through the HierarchyResolver        -> Forbidden
3. Apply the state machine transition             -> InvalidTransition /
                                                     ValidationError
4. Persist the report and append one AuditEntry, then commit.

Steps 1-4 succeed or fail together; any error rolls the session back and the
report is left exactly as it was. Repository errors surface as
PersistenceFailure.

Only after the commit are notifications dispatched. Dispatch failures are
absorbed by the dispatcher's retry queue and never undo a committed decision.

CONCURRENCY:
- SELECT ... FOR UPDATE serializes decisions on one report where the
  database supports it.
- The mapper version counter catches the race everywhere else: the losing
  writer gets StaleDataError, run_with_retry re-reads, and the re-read sees a
  terminal report, so the loser observes InvalidTransition.
- Once started, a unit of work runs to completion; there is no cancellation
  point between the mutation and its audit row.
================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    PersistenceFailure,
    ReportFlowError,
    ValidationError,
)
from ..extensions import db
from ..models import ServiceReport, User
from ..roles import FIELD_ROLES
from . import audit_service
from . import notification_service
from .concurrency import lock_for_update, run_with_retry
from .hierarchy_service import HierarchyCache, HierarchyResolver
from .notification_dispatcher import NotificationDispatcher
from .report_state_machine import (
    DECISION_EVENTS,
    EVENT_DELETE,
    EVENT_SUBMIT,
    STATUS_DRAFT,
    STATUS_SUBMITTED,
    VALID_STATUSES,
    ReportSnapshot,
    TransitionContext,
    apply_event,
)
from reportflow.time_utils import utcnow

logger = logging.getLogger(__name__)


SCOPE_MINE = "mine"
SCOPE_TEAM = "team"
SCOPE_PENDING = "pending"
SCOPE_ALL = "all"
VALID_SCOPES = {SCOPE_MINE, SCOPE_TEAM, SCOPE_PENDING, SCOPE_ALL}

EDITABLE_FIELDS = {"title", "details", "technician_signature"}


@dataclass(frozen=True)
class DecisionResult:
    """Discriminated result: either report is set, or error/detail are."""

    report: ServiceReport | None = None
    error: str | None = None
    detail: str | None = None
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": self.report.to_dict()}
        return {"error": self.error, "detail": self.detail}


# =============================================================================
# HELPERS
# =============================================================================

def _required_fields() -> tuple[str, ...]:
    if not has_app_context():
        return ()
    return tuple(current_app.config.get("REPORT_REQUIRED_FIELDS", ()))


def _dispatcher(dispatcher: NotificationDispatcher | None) -> NotificationDispatcher | None:
    if dispatcher is not None:
        return dispatcher
    if has_app_context():
        return current_app.extensions.get(notification_service.DISPATCHER_EXTENSION_KEY)
    return None


def _get_user(user_id: int, label: str = "User") -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound(f"{label} {user_id} not found")
    return user


def _get_active_actor(actor_id: int) -> User:
    actor = _get_user(actor_id, "Actor")
    if not actor.is_active:
        raise Forbidden(f"user {actor_id} is inactive", rule="active_actor")
    return actor


def _lock_report(report_id: int) -> ServiceReport:
    report = lock_for_update(db.session.query(ServiceReport).filter_by(id=report_id)).first()
    if report is None:
        raise NotFound(f"Report {report_id} not found")
    return report


def _audit_view(report: ServiceReport, *, include_details: bool = False) -> dict:
    view = {
        "status": report.status,
        "approval_status": report.approval_status,
        "title": report.title,
        "technician_id": report.technician_id,
        "has_technician_signature": bool(report.technician_signature),
        "has_team_leader_signature": bool(report.team_leader_signature),
        "rejection_remarks": report.rejection_remarks,
        "approval_notes": report.approval_notes,
        "approved_by": report.approved_by_user_id,
        "approved_at": report.approved_at,
        "submitted_at": report.submitted_at,
    }
    if include_details:
        view["details"] = dict(report.details or {})
    return view


def _apply_snapshot(report: ServiceReport, snapshot: ReportSnapshot) -> None:
    for attr, value in snapshot.lifecycle_fields().items():
        setattr(report, attr, value)


def _unit_of_work(op):
    """Run op under retry; roll back and translate repository errors."""
    try:
        return run_with_retry(op)
    except ReportFlowError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Unit of work failed; rolled back")
        raise PersistenceFailure(f"could not persist change: {exc.__class__.__name__}") from exc


def _authority_rule(actor: User, technician: User) -> str:
    if actor.id == technician.id:
        return "technicians cannot decide their own reports"
    return (
        f"only {technician.full_name}'s team leader or that team leader's "
        f"manager chain may decide this report"
    )


def _safe_notify(dispatcher: NotificationDispatcher | None, recipient_id: int, payload) -> None:
    if dispatcher is None:
        logger.warning("No notification dispatcher configured; dropping '%s' for user %s", payload.title, recipient_id)
        return
    try:
        dispatcher.notify(recipient_id, payload)
    except Exception:
        # Notification problems never reach the caller of a committed operation.
        logger.exception("Notification dispatch for user %s failed", recipient_id)


# =============================================================================
# AUTHORING (technician side)
# =============================================================================

def create_draft(
    actor_id: int,
    details: Mapping[str, Any] | None = None,
    title: str | None = None,
    technician_signature: str | None = None,
) -> ServiceReport:
    """Create a draft report owned by the acting technician."""
    def _op():
        actor = _get_active_actor(actor_id)
        if actor.role not in FIELD_ROLES:
            raise Forbidden("only technicians and technical executives create service reports", rule="report_author")

        report = ServiceReport(
            technician_id=actor.id,
            title=title,
            status=STATUS_DRAFT,
            details=dict(details or {}),
            technician_signature=technician_signature,
        )
        db.session.add(report)
        db.session.flush()

        audit_service.record(
            actor.id, audit_service.ACTION_CREATE, audit_service.TABLE_SERVICE_REPORTS, report.id,
            None, _audit_view(report, include_details=True), actor_role=actor.role,
        )
        db.session.commit()
        return report

    return _unit_of_work(_op)


def update_draft(actor_id: int, report_id: int, patch: Mapping[str, Any]) -> ServiceReport:
    """Edit a draft; details are merged key by key."""
    unknown = set(patch or {}) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"fields not editable: {', '.join(sorted(unknown))}", field=sorted(unknown)[0], rule="editable_fields"
        )

    def _op():
        report = _lock_report(report_id)
        actor = _get_active_actor(actor_id)
        if actor.id != report.technician_id:
            raise Forbidden("only the technician who owns this report may edit it", rule="report_owner")
        if report.status != STATUS_DRAFT:
            raise InvalidTransition(report.status, "edit")

        before = _audit_view(report, include_details=True)
        if "title" in patch:
            report.title = patch["title"]
        if "details" in patch:
            merged = dict(report.details or {})
            merged.update(patch["details"] or {})
            report.details = merged
        if "technician_signature" in patch:
            report.technician_signature = patch["technician_signature"]

        audit_service.record(
            actor.id, audit_service.ACTION_UPDATE, audit_service.TABLE_SERVICE_REPORTS, report.id,
            before, _audit_view(report, include_details=True), actor_role=actor.role,
        )
        db.session.commit()
        return report

    return _unit_of_work(_op)


def submit(
    actor_id: int,
    report_id: int,
    payload: Mapping[str, Any] | None = None,
    *,
    dispatcher: NotificationDispatcher | None = None,
    cache: HierarchyCache | None = None,
) -> ServiceReport:
    """draft -> submitted, then notify the approver(s)."""
    resolver = HierarchyResolver(cache=cache)

    def _op():
        report = _lock_report(report_id)
        actor = _get_active_actor(actor_id)
        ctx = TransitionContext(
            actor_id=actor.id,
            actor_has_authority=False,
            now=utcnow(),
            required_fields=_required_fields(),
        )
        before = _audit_view(report)
        result = apply_event(ReportSnapshot.from_report(report), EVENT_SUBMIT, ctx, payload)
        _apply_snapshot(report, result.after)

        audit_service.record(
            actor.id, result.audit_action, audit_service.TABLE_SERVICE_REPORTS, report.id,
            before, _audit_view(report), actor_role=actor.role,
        )
        db.session.commit()
        return report

    report = _unit_of_work(_op)

    technician = db.session.get(User, report.technician_id)
    approver = resolver.direct_team_leader(report.technician_id)
    # An inactive team leader cannot act; admins pick the report up instead.
    recipients = [approver.id] if approver is not None and approver.is_active else [
        u.id for u in db.session.query(User).filter_by(role="admin", is_active=True).all()
    ]
    payload_out = notification_service.report_submitted_payload(report, technician)
    target = _dispatcher(dispatcher)
    for recipient_id in recipients:
        _safe_notify(target, recipient_id, payload_out)
    return report


def delete_draft(actor_id: int, report_id: int) -> None:
    """Remove a draft. Only its technician may do this."""
    def _op():
        report = _lock_report(report_id)
        actor = _get_active_actor(actor_id)
        ctx = TransitionContext(actor_id=actor.id, actor_has_authority=False, now=utcnow())
        result = apply_event(ReportSnapshot.from_report(report), EVENT_DELETE, ctx)

        audit_service.record(
            actor.id, result.audit_action, audit_service.TABLE_SERVICE_REPORTS, report.id,
            _audit_view(report, include_details=True), None, actor_role=actor.role,
        )
        db.session.delete(report)
        db.session.commit()

    _unit_of_work(_op)


# =============================================================================
# DECISION
# =============================================================================

def decide(
    actor_id: int,
    report_id: int,
    decision: str,
    payload: Mapping[str, Any] | None = None,
    *,
    dispatcher: NotificationDispatcher | None = None,
    cache: HierarchyCache | None = None,
) -> ServiceReport:
    """
    Approve or reject a submitted report.

    payload keys:
        signature: approver signature (required)
        remarks:   rejection remarks (required to reject)
        notes:     approval notes (optional)

    Raises NotFound, Forbidden, InvalidTransition, ValidationError or
    PersistenceFailure; on any of them the report is unchanged.
    """
    resolver = HierarchyResolver(cache=cache)
    event = (decision or "").strip().lower()

    def _op():
        report = _lock_report(report_id)
        technician = _get_user(report.technician_id, "Technician")
        actor = _get_active_actor(actor_id)

        has_authority = resolver.is_strict_ancestor_of(actor.id, technician.id)
        if not has_authority:
            raise Forbidden(_authority_rule(actor, technician), rule="hierarchy")

        if event not in DECISION_EVENTS:
            raise InvalidTransition(report.status, event or "<none>")

        ctx = TransitionContext(
            actor_id=actor.id,
            actor_has_authority=has_authority,
            now=utcnow(),
            authority_rule=_authority_rule(actor, technician),
        )
        before = _audit_view(report)
        result = apply_event(ReportSnapshot.from_report(report), event, ctx, payload)
        _apply_snapshot(report, result.after)

        audit_service.record(
            actor.id, result.audit_action, audit_service.TABLE_SERVICE_REPORTS, report.id,
            before, _audit_view(report), actor_role=actor.role,
            context={"technician_id": technician.id},
        )
        db.session.commit()
        return report

    report = _unit_of_work(_op)
    _notify_decision(report, actor_id, resolver, _dispatcher(dispatcher))
    return report


def _notify_decision(report: ServiceReport, actor_id: int, resolver: HierarchyResolver, dispatcher) -> None:
    try:
        decider = db.session.get(User, actor_id)
        technician = db.session.get(User, report.technician_id)
        _safe_notify(dispatcher, technician.id, notification_service.report_decided_payload(report, decider))

        team_leader = resolver.direct_team_leader(technician.id)
        if team_leader is not None and team_leader.id != decider.id:
            _safe_notify(
                dispatcher,
                team_leader.id,
                notification_service.report_escalated_payload(report, decider, technician),
            )
    except Exception:
        logger.exception("Could not build decision notifications for report %s", report.id)


def decide_result(
    actor_id: int,
    report_id: int,
    decision: str,
    payload: Mapping[str, Any] | None = None,
    **kwargs,
) -> DecisionResult:
    """decide() as a discriminated result instead of an exception."""
    try:
        report = decide(actor_id, report_id, decision, payload, **kwargs)
    except ReportFlowError as exc:
        return DecisionResult(error=exc.kind, detail=exc.detail, status_code=exc.status_code)
    return DecisionResult(report=report)


# =============================================================================
# VISIBILITY
# =============================================================================

def get_report(actor_id: int, report_id: int, *, cache: HierarchyCache | None = None) -> ServiceReport:
    report = db.session.get(ServiceReport, report_id)
    if report is None:
        raise NotFound(f"Report {report_id} not found")
    if report.technician_id == actor_id:
        return report

    actor = _get_active_actor(actor_id)
    if not HierarchyResolver(cache=cache).is_strict_ancestor_of(actor.id, report.technician_id):
        raise Forbidden("report belongs to someone outside your team", rule="hierarchy")
    if report.status == STATUS_DRAFT:
        raise Forbidden("drafts are visible only to their technician", rule="draft_private")
    return report


def _visible_query(actor_id: int, scope: str, resolver: HierarchyResolver):
    if scope not in VALID_SCOPES:
        raise ValidationError(f"scope must be one of: {', '.join(sorted(VALID_SCOPES))}", field="scope")

    own = ServiceReport.technician_id == actor_id
    team_ids = sorted(resolver.subordinates_of(actor_id))
    team = db.and_(ServiceReport.technician_id.in_(team_ids), ServiceReport.status != STATUS_DRAFT)

    q = db.session.query(ServiceReport)
    if scope == SCOPE_MINE:
        return q.filter(own)
    if scope == SCOPE_TEAM:
        return q.filter(team)
    if scope == SCOPE_PENDING:
        return q.filter(team, ServiceReport.status == STATUS_SUBMITTED)
    return q.filter(db.or_(own, team))


def list_reports(
    actor_id: int,
    *,
    status: str | None = None,
    scope: str = SCOPE_ALL,
    limit: int = 100,
    offset: int = 0,
    cache: HierarchyCache | None = None,
) -> list[ServiceReport]:
    """Reports visible to the actor, newest first."""
    _get_active_actor(actor_id)
    if status is not None and status not in VALID_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(sorted(VALID_STATUSES))}", field="status")

    q = _visible_query(actor_id, scope, HierarchyResolver(cache=cache))
    if status is not None:
        q = q.filter(ServiceReport.status == status)
    return q.order_by(ServiceReport.updated_at.desc(), ServiceReport.id.desc()).limit(limit).offset(offset).all()


def report_summary(actor_id: int, *, cache: HierarchyCache | None = None) -> dict:
    """Count of visible reports per status."""
    _get_active_actor(actor_id)
    q = _visible_query(actor_id, SCOPE_ALL, HierarchyResolver(cache=cache))
    rows = (
        q.with_entities(ServiceReport.status, db.func.count(ServiceReport.id))
        .group_by(ServiceReport.status)
        .all()
    )
    counts = {status: 0 for status in sorted(VALID_STATUSES)}
    for status, count in rows:
        counts[status] = count
    counts["total"] = sum(counts.values())
    return counts
