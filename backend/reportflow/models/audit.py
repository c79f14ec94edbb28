from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from reportflow.time_utils import to_utc_z


class AuditImmutableError(RuntimeError):
    """Raised when code attempts to update or delete an audit row."""
    pass


class AuditEntry(db.Model):
    """
    Audit trail of every state-changing operation.

    IMMUTABLE: Never update or delete. Append-only; ORM listeners below turn
    any attempt into an AuditImmutableError.

    actor_id is a plain integer (no foreign key) so history survives removal
    of the user profile it points to.
    """
    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("ix_audit_entries_target", "target_table", "target_id"),
        db.Index("ix_audit_entries_actor_occurred", "actor_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    actor_id = db.Column(db.Integer, nullable=True, index=True)  # None for system actions
    actor_role = db.Column(db.String(32), nullable=True)

    # CREATE, UPDATE, DELETE, SUBMIT, APPROVE, REJECT, ...
    action = db.Column(db.String(32), nullable=False, index=True)
    target_table = db.Column(db.String(64), nullable=False)
    target_id = db.Column(db.Integer, nullable=False)

    before = db.Column(db.JSON, nullable=True)
    after = db.Column(db.JSON, nullable=True)
    context = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    integrity_hash = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "action": self.action,
            "target_table": self.target_table,
            "target_id": self.target_id,
            "before": self.before,
            "after": self.after,
            "context": self.context,
            "timestamp": to_utc_z(self.occurred_at),
            "integrity_hash": self.integrity_hash,
        }


@event.listens_for(AuditEntry, "before_update")
def _block_audit_update(mapper, connection, target):
    raise AuditImmutableError(f"audit entry {target.id} is immutable")


@event.listens_for(AuditEntry, "before_delete")
def _block_audit_delete(mapper, connection, target):
    raise AuditImmutableError(f"audit entry {target.id} cannot be deleted")
