from __future__ import annotations

from ..extensions import db
from reportflow.time_utils import to_utc_z


# Valid lifecycle states (must match services/report_state_machine.py)
REPORT_STATUSES = ("draft", "submitted", "approved", "rejected")

# Display-only decision flag derived from status
APPROVAL_STATUS_BY_STATUS = {
    "draft": "pending",
    "submitted": "pending",
    "approved": "approve",
    "rejected": "reject",
}


class ServiceReport(db.Model):
    """
    One unit of field work.

    LIFECYCLE: draft -> submitted -> approved | rejected (terminal).
    `status` is the only authoritative lifecycle column; `approval_status` is
    derived for display and never stored.

    CONCURRENCY: `version` is the mapper version counter. A stale UPDATE
    raises StaleDataError, so two approvers can never both move the same
    submitted report.

    `details` holds the opaque domain fields (location, checklist,
    measurements, remarks); the core only checks required keys on submit.
    """
    __tablename__ = "service_reports"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft', 'submitted', 'approved', 'rejected')",
            name="ck_service_reports_status",
        ),
        db.CheckConstraint(
            "status != 'rejected' OR rejection_remarks IS NOT NULL",
            name="ck_service_reports_rejection_remarks",
        ),
        db.Index("ix_service_reports_technician_status", "technician_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    technician_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="draft", index=True)
    details = db.Column(db.JSON, nullable=False, default=dict)

    technician_signature = db.Column(db.Text, nullable=True)
    team_leader_signature = db.Column(db.Text, nullable=True)
    rejection_remarks = db.Column(db.Text, nullable=True)
    approval_notes = db.Column(db.Text, nullable=True)

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    technician = db.relationship("User", foreign_keys=[technician_id], backref=db.backref("reports", lazy=True))
    approved_by = db.relationship("User", foreign_keys=[approved_by_user_id])

    __mapper_args__ = {"version_id_col": version}

    @property
    def approval_status(self) -> str:
        return APPROVAL_STATUS_BY_STATUS[self.status]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "technician_id": self.technician_id,
            "title": self.title,
            "status": self.status,
            "approval_status": self.approval_status,
            "details": dict(self.details or {}),
            "technician_signature": self.technician_signature,
            "team_leader_signature": self.team_leader_signature,
            "rejection_remarks": self.rejection_remarks,
            "approval_notes": self.approval_notes,
            "submitted_at": to_utc_z(self.submitted_at),
            "approved_by": self.approved_by_user_id,
            "approved_at": to_utc_z(self.approved_at),
            "version": self.version,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
