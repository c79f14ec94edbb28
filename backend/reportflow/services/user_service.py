# Overview: Organization administration; users, owner references and activation.

"""
Owner reference rules (authoritative)

- technician / technical_executive -> team_leader_id -> a team_leader
- team_leader -> manager_id -> a manager
- The owner is active and holds exactly the role one level above.
- No self reference and no cycle.
- Only admins leave an owned role unassigned (owner_id=None).

Who may change the organization:
- admin: anyone.
- manager: only inside their own subtree (their team leaders and those
  team leaders' field staff), and new owners must come from that subtree.

Every write appends one AuditEntry in the same commit and invalidates the
hierarchy cache handed in by the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import Forbidden, NotFound, PersistenceFailure, ValidationError
from ..extensions import db
from ..models import User
from ..roles import (
    OWNER_ROLE_BY_ROLE,
    ROLE_ADMIN,
    ROLE_MANAGER,
    VALID_ROLES,
    is_valid_owner,
    owner_field_for,
)
from . import audit_service
from . import notification_service
from .hierarchy_service import HierarchyCache, HierarchyResolver

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("username", "email", "full_name", "employee_id", "mobile")
REQUIRED_PROFILE_FIELDS = ("username", "email", "full_name")


def _get_user(user_id: int, label: str = "User") -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound(f"{label} {user_id} not found")
    return user


def _get_actor(actor_id: int | None) -> User | None:
    """None means the system itself (CLI bootstrap)."""
    if actor_id is None:
        return None
    actor = _get_user(actor_id, "Actor")
    if not actor.is_active:
        raise Forbidden(f"user {actor_id} is inactive", rule="active_actor")
    return actor


def _is_admin(actor: User | None) -> bool:
    return actor is None or actor.role == ROLE_ADMIN


def _require_org_authority(actor: User | None, resolver: HierarchyResolver, subject_id: int) -> None:
    if _is_admin(actor):
        return
    # Owner chain, not subordinates_of: inactive subjects stay administrable.
    in_chain = any(owner.id == actor.id for owner in resolver.owner_chain(subject_id))
    if actor.role != ROLE_MANAGER or not in_chain:
        raise Forbidden(
            "only an admin, or a manager over this user, may change their organization record",
            rule="org_admin",
        )


def _resolve_owner(
    actor: User | None,
    resolver: HierarchyResolver,
    role: str,
    owner_id: int | None,
    subject_id: int | None = None,
) -> User | None:
    """Validate a prospective owner for a user holding role."""
    if owner_field_for(role) is None:
        if owner_id is not None:
            raise ValidationError(f"role '{role}' has no owner reference", field="owner_id", rule="owner_role")
        return None

    if owner_id is None:
        if not _is_admin(actor):
            raise Forbidden("only an admin may leave a user unassigned", rule="owner_required")
        return None

    if subject_id is not None and owner_id == subject_id:
        raise ValidationError("a user cannot own themself", field="owner_id", rule="owner_not_self")

    owner = db.session.get(User, owner_id)
    if owner is None:
        raise NotFound(f"Owner {owner_id} not found")
    if not owner.is_active:
        raise ValidationError(f"owner {owner_id} is inactive", field="owner_id", rule="owner_active")
    if not is_valid_owner(owner.role, role):
        raise ValidationError(
            f"a {role} must be owned by a {OWNER_ROLE_BY_ROLE[role]}, not a {owner.role}",
            field="owner_id",
            rule="owner_role",
        )
    if subject_id is not None and any(u.id == subject_id for u in resolver.owner_chain(owner.id)):
        raise ValidationError("owner assignment would create a cycle", field="owner_id", rule="owner_cycle")

    if not _is_admin(actor) and not resolver.is_ancestor_of(actor.id, owner.id):
        raise Forbidden("managers may only assign owners from their own team", rule="org_admin")
    return owner


def _commit(op_name: str) -> None:
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ValidationError(f"{op_name} conflicts with an existing user", rule="unique_user") from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("%s failed; rolled back", op_name)
        raise PersistenceFailure(f"could not persist {op_name}") from exc


def _invalidate(cache: HierarchyCache | None) -> None:
    if cache is not None:
        cache.invalidate()


def _notify_owner_change(user: User, new_owner: User | None, dispatcher) -> None:
    if dispatcher is None and has_app_context():
        dispatcher = current_app.extensions.get(notification_service.DISPATCHER_EXTENSION_KEY)
    if dispatcher is None:
        return
    for recipient_id, payload in notification_service.owner_changed_payloads(user, new_owner).items():
        try:
            dispatcher.notify(recipient_id, payload)
        except Exception:
            logger.exception("Owner-change notification for user %s failed", recipient_id)


# =============================================================================
# OPERATIONS
# =============================================================================

def create_user(
    actor_id: int | None,
    data: Mapping[str, Any],
    *,
    cache: HierarchyCache | None = None,
) -> User:
    """
    Create an organization member.

    data: username, email, full_name, role, optional employee_id, mobile and
    owner_id (team leader for field staff, manager for team leaders).
    """
    actor = _get_actor(actor_id)
    resolver = HierarchyResolver(cache=cache)

    role = (data.get("role") or "").strip()
    if role not in VALID_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(sorted(VALID_ROLES))}", field="role")
    for field in REQUIRED_PROFILE_FIELDS:
        if not str(data.get(field) or "").strip():
            raise ValidationError(f"{field} required", field=field)

    if not _is_admin(actor):
        if actor.role != ROLE_MANAGER or role not in OWNER_ROLE_BY_ROLE:
            raise Forbidden("only admins, or managers creating team members, may create users", rule="org_admin")

    owner = _resolve_owner(actor, resolver, role, data.get("owner_id"))

    user = User(role=role, is_active=bool(data.get("is_active", True)))
    for field in PROFILE_FIELDS:
        value = data.get(field)
        setattr(user, field, value.strip() if isinstance(value, str) else value)
    if owner is not None:
        setattr(user, owner_field_for(role), owner.id)

    db.session.add(user)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ValidationError("username, email or employee_id already in use", rule="unique_user") from exc

    audit_service.record(
        actor.id if actor else None, audit_service.ACTION_CREATE, audit_service.TABLE_USERS, user.id,
        None, user.audit_snapshot(), actor_role=actor.role if actor else "system",
        context={"username": user.username},
    )
    _commit("create_user")
    _invalidate(cache)
    logger.info("Created user %s (%s) with owner %s", user.username, role, owner.id if owner else None)
    return user


def assign_owner(
    actor_id: int,
    user_id: int,
    owner_id: int | None,
    *,
    cache: HierarchyCache | None = None,
    dispatcher=None,
) -> User:
    """Re-point a user's team_leader_id / manager_id."""
    actor = _get_actor(actor_id)
    resolver = HierarchyResolver(cache=cache)
    user = _get_user(user_id)

    field = owner_field_for(user.role)
    if field is None:
        raise ValidationError(f"role '{user.role}' has no owner reference", field="owner_id", rule="owner_role")

    _require_org_authority(actor, resolver, user.id)
    owner = _resolve_owner(actor, resolver, user.role, owner_id, subject_id=user.id)

    before = user.audit_snapshot()
    setattr(user, field, owner.id if owner else None)
    audit_service.record(
        actor.id if actor else None, audit_service.ACTION_UPDATE, audit_service.TABLE_USERS, user.id,
        before, user.audit_snapshot(), actor_role=actor.role if actor else "system",
        context={"change": "owner"},
    )
    _commit("assign_owner")
    _invalidate(cache)

    _notify_owner_change(user, owner, dispatcher)
    return user


def set_active(
    actor_id: int,
    user_id: int,
    is_active: bool,
    *,
    cache: HierarchyCache | None = None,
) -> User:
    """Activate or deactivate a user. Audit history is kept either way."""
    actor = _get_actor(actor_id)
    resolver = HierarchyResolver(cache=cache)
    user = _get_user(user_id)

    if actor is not None and actor.id == user.id:
        raise ValidationError("users cannot change their own active flag", field="is_active", rule="not_self")
    _require_org_authority(actor, resolver, user.id)

    if user.is_active == bool(is_active):
        return user

    before = user.audit_snapshot()
    user.is_active = bool(is_active)
    audit_service.record(
        actor.id if actor else None, audit_service.ACTION_UPDATE, audit_service.TABLE_USERS, user.id,
        before, user.audit_snapshot(), actor_role=actor.role if actor else "system",
        context={"change": "activation"},
    )
    _commit("set_active")
    _invalidate(cache)
    return user


def list_users(*, role: str | None = None, include_inactive: bool = True) -> list[User]:
    q = db.session.query(User)
    if role:
        q = q.filter(User.role == role)
    if not include_inactive:
        q = q.filter(User.is_active.is_(True))
    return q.order_by(User.role, User.full_name).all()


def team_tree(actor_id: int, include_inactive: bool = False, *, cache: HierarchyCache | None = None) -> dict:
    _get_user(actor_id, "Actor")
    return HierarchyResolver(cache=cache).team_tree(actor_id, include_inactive=include_inactive)
