# Overview: Pure report lifecycle transitions; no database or network access.

"""
Service Report State Machine

================================================================================
STATE MACHINE:
    draft -> submitted -> approved
                       -> rejected

    draft:     Being written by the technician; editable and deletable
    submitted: Finalized by the technician, waiting for a decision
    approved:  TERMINAL
    rejected:  TERMINAL

TRANSITIONS (the only ones that exist):
    (draft,     submit)  actor is the owning technician, required fields and
                         technician signature present           -> submitted
    (submitted, approve) actor has authority over the technician,
                         approver signature present             -> approved
    (submitted, reject)  as approve, plus non-empty remarks     -> rejected
    (draft,     delete)  actor is the owning technician         -> (removed)

Any other (state, event) pair raises InvalidTransition naming both.
================================================================================

apply_event() is a pure function of (snapshot, event, context, payload). It
returns a new snapshot and never touches the session, so every rule here is
unit-testable without a database.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping

from ..errors import Forbidden, InvalidTransition, ValidationError


STATUS_DRAFT = "draft"
STATUS_SUBMITTED = "submitted"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

VALID_STATUSES = {STATUS_DRAFT, STATUS_SUBMITTED, STATUS_APPROVED, STATUS_REJECTED}

EVENT_SUBMIT = "submit"
EVENT_APPROVE = "approve"
EVENT_REJECT = "reject"
EVENT_DELETE = "delete"

VALID_EVENTS = {EVENT_SUBMIT, EVENT_APPROVE, EVENT_REJECT, EVENT_DELETE}
DECISION_EVENTS = {EVENT_APPROVE, EVENT_REJECT}

# (from_status, event) -> to_status; None means the report is removed
TRANSITIONS: dict[tuple[str, str], str | None] = {
    (STATUS_DRAFT, EVENT_SUBMIT): STATUS_SUBMITTED,
    (STATUS_SUBMITTED, EVENT_APPROVE): STATUS_APPROVED,
    (STATUS_SUBMITTED, EVENT_REJECT): STATUS_REJECTED,
    (STATUS_DRAFT, EVENT_DELETE): None,
}

# Audit action recorded for each event
AUDIT_ACTION_BY_EVENT = {
    EVENT_SUBMIT: "SUBMIT",
    EVENT_APPROVE: "APPROVE",
    EVENT_REJECT: "REJECT",
    EVENT_DELETE: "DELETE",
}


@dataclass(frozen=True)
class ReportSnapshot:
    """Immutable view of the lifecycle-relevant part of a report."""

    id: int | None
    technician_id: int
    status: str
    details: Mapping[str, Any] = field(default_factory=dict)
    technician_signature: str | None = None
    team_leader_signature: str | None = None
    rejection_remarks: str | None = None
    approval_notes: str | None = None
    submitted_at: datetime | None = None
    approved_by: int | None = None
    approved_at: datetime | None = None

    @classmethod
    def from_report(cls, report) -> "ReportSnapshot":
        return cls(
            id=report.id,
            technician_id=report.technician_id,
            status=report.status,
            details=dict(report.details or {}),
            technician_signature=report.technician_signature,
            team_leader_signature=report.team_leader_signature,
            rejection_remarks=report.rejection_remarks,
            approval_notes=report.approval_notes,
            submitted_at=report.submitted_at,
            approved_by=report.approved_by_user_id,
            approved_at=report.approved_at,
        )

    def lifecycle_fields(self) -> dict:
        """Columns a transition may change, keyed by model attribute name."""
        return {
            "status": self.status,
            "technician_signature": self.technician_signature,
            "team_leader_signature": self.team_leader_signature,
            "rejection_remarks": self.rejection_remarks,
            "approval_notes": self.approval_notes,
            "submitted_at": self.submitted_at,
            "approved_by_user_id": self.approved_by,
            "approved_at": self.approved_at,
        }


@dataclass(frozen=True)
class TransitionContext:
    """
    Who is acting and what the hierarchy says about them.

    actor_has_authority must come from HierarchyResolver.is_strict_ancestor_of
    (actor over the report's technician).
    """

    actor_id: int
    actor_has_authority: bool
    now: datetime
    required_fields: tuple[str, ...] = ()
    authority_rule: str = "only the technician's team leader or that team leader's manager chain may decide this report"


@dataclass(frozen=True)
class TransitionResult:
    event: str
    before: ReportSnapshot
    after: ReportSnapshot | None  # None when the report is removed

    @property
    def removed(self) -> bool:
        return self.after is None

    @property
    def audit_action(self) -> str:
        return AUDIT_ACTION_BY_EVENT[self.event]


def can_transition(from_status: str, event: str) -> bool:
    return (from_status, event) in TRANSITIONS


def allowed_events(status: str) -> set[str]:
    return {event for (from_status, event) in TRANSITIONS if from_status == status}


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def missing_required_fields(details: Mapping[str, Any], required: tuple[str, ...]) -> list[str]:
    return [name for name in required if _is_blank(details.get(name))]


def _require_owner(snapshot: ReportSnapshot, ctx: TransitionContext, event: str) -> None:
    if ctx.actor_id != snapshot.technician_id:
        raise Forbidden(
            f"only the technician who owns this report may {event} it",
            rule="report_owner",
        )


def _require_authority(ctx: TransitionContext) -> None:
    if not ctx.actor_has_authority:
        raise Forbidden(ctx.authority_rule, rule="hierarchy")


def _apply_submit(snapshot, ctx, payload) -> ReportSnapshot:
    _require_owner(snapshot, ctx, EVENT_SUBMIT)

    signature = _clean(payload.get("signature")) or _clean(snapshot.technician_signature)
    missing = missing_required_fields(snapshot.details, ctx.required_fields)
    if missing:
        raise ValidationError(
            f"submission requires: {', '.join(missing)}",
            field=missing[0],
            rule="required_fields",
        )
    if not signature:
        raise ValidationError(
            "submission requires the technician's signature",
            field="technician_signature",
            rule="technician_signature",
        )

    return replace(
        snapshot,
        status=STATUS_SUBMITTED,
        technician_signature=signature,
        # A fresh submission never carries an earlier approver's signature.
        team_leader_signature=None,
        submitted_at=ctx.now,
    )


def _apply_decision(snapshot, ctx, payload, event) -> ReportSnapshot:
    _require_authority(ctx)

    signature = _clean(payload.get("signature"))
    if event == EVENT_REJECT:
        remarks = _clean(payload.get("remarks", payload.get("rejection_remarks")))
        if not remarks:
            raise ValidationError(
                "rejection_remarks required: rejection requires remarks",
                field="rejection_remarks",
                rule="rejection_remarks",
            )
    if not signature:
        raise ValidationError(
            f"team_leader_signature required: the approver must sign before they {event}",
            field="team_leader_signature",
            rule="approver_signature",
        )

    if event == EVENT_APPROVE:
        return replace(
            snapshot,
            status=STATUS_APPROVED,
            team_leader_signature=signature,
            approval_notes=_clean(payload.get("notes", payload.get("approval_notes"))),
            rejection_remarks=None,
            approved_by=ctx.actor_id,
            approved_at=ctx.now,
        )

    return replace(
        snapshot,
        status=STATUS_REJECTED,
        team_leader_signature=signature,
        rejection_remarks=remarks,
        approval_notes=None,
        approved_by=ctx.actor_id,
        approved_at=ctx.now,
    )


def apply_event(
    snapshot: ReportSnapshot,
    event: str,
    ctx: TransitionContext,
    payload: Mapping[str, Any] | None = None,
) -> TransitionResult:
    """
    Compute the outcome of `event` on `snapshot`.

    Raises:
        InvalidTransition: (status, event) is not in TRANSITIONS
        Forbidden: the actor fails the transition's actor guard
        ValidationError: signature, remarks or required fields missing
    """
    payload = payload or {}
    event = (event or "").strip().lower()

    if not can_transition(snapshot.status, event):
        raise InvalidTransition(snapshot.status, event or "<none>")

    if event == EVENT_SUBMIT:
        after = _apply_submit(snapshot, ctx, payload)
    elif event in DECISION_EVENTS:
        after = _apply_decision(snapshot, ctx, payload, event)
    else:
        _require_owner(snapshot, ctx, EVENT_DELETE)
        after = None

    return TransitionResult(event=event, before=snapshot, after=after)
