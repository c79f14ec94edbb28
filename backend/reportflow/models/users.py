from __future__ import annotations

from ..extensions import db
from ..roles import VALID_ROLES, owner_field_for
from reportflow.time_utils import to_utc_z


class User(db.Model):
    """
    Organization member.

    HIERARCHY: team_leader_id / manager_id are owner references. Which one is
    meaningful depends on role (see reportflow.roles). The owner must hold the
    role exactly one level above; services validate this on every write and
    the hierarchy resolver fails closed if stored data disagrees.

    is_active gates authorization, never audit history.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.CheckConstraint(
            "role IN ({})".format(", ".join(f"'{r}'" for r in sorted(VALID_ROLES))),
            name="ck_users_role",
        ),
        db.CheckConstraint("team_leader_id IS NULL OR team_leader_id != id", name="ck_users_tl_not_self"),
        db.CheckConstraint("manager_id IS NULL OR manager_id != id", name="ck_users_manager_not_self"),
        db.Index("ix_users_team_leader_active", "team_leader_id", "is_active"),
        db.Index("ix_users_manager_active", "manager_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    full_name = db.Column(db.String(255), nullable=False)
    employee_id = db.Column(db.String(64), nullable=True, unique=True)
    mobile = db.Column(db.String(32), nullable=True)

    role = db.Column(db.String(32), nullable=False, index=True)

    team_leader_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    team_leader = db.relationship("User", foreign_keys=[team_leader_id], remote_side=[id])
    manager = db.relationship("User", foreign_keys=[manager_id], remote_side=[id])

    @property
    def owner_id(self) -> int | None:
        field = owner_field_for(self.role)
        return getattr(self, field) if field else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "employee_id": self.employee_id,
            "mobile": self.mobile,
            "role": self.role,
            "team_leader_id": self.team_leader_id,
            "manager_id": self.manager_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

    def audit_snapshot(self) -> dict:
        return {
            "role": self.role,
            "team_leader_id": self.team_leader_id,
            "manager_id": self.manager_id,
            "is_active": self.is_active,
        }


