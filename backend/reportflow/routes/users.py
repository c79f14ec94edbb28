# Overview: Flask API routes for organization administration; users, owners and team views.

# backend/reportflow/routes/users.py
"""
Organization routes.

- POST /api/users                      create user (admin, or manager for own team)
- POST /api/users/<id>/owner           {"owner_id": int | null}
- POST /api/users/<id>/active          {"is_active": bool}
- GET  /api/users/<id>/subordinates    active subordinate ids
- GET  /api/users/tree                 nested team view of the caller
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_actor, require_role
from ..errors import Forbidden, ValidationError
from ..extensions import db
from ..models import User
from ..roles import ROLE_ADMIN, ROLE_MANAGER
from ..services import user_service
from ..services.hierarchy_service import HierarchyResolver

users_bp = Blueprint("users", __name__, url_prefix="/api/users")


@users_bp.post("")
@require_actor
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def create_user():
    data = request.get_json() or {}
    user = user_service.create_user(g.actor.id, data)
    return jsonify({"user": user.to_dict()}), 201


@users_bp.post("/<int:user_id>/owner")
@require_actor
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def assign_owner(user_id: int):
    data = request.get_json() or {}
    if "owner_id" not in data:
        raise ValidationError("owner_id required (null to unassign)", field="owner_id")
    user = user_service.assign_owner(g.actor.id, user_id, data["owner_id"])
    return jsonify({"user": user.to_dict()})


@users_bp.post("/<int:user_id>/active")
@require_actor
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def set_active(user_id: int):
    data = request.get_json() or {}
    if not isinstance(data.get("is_active"), bool):
        raise ValidationError("is_active must be true or false", field="is_active")
    user = user_service.set_active(g.actor.id, user_id, data["is_active"])
    return jsonify({"user": user.to_dict()})


@users_bp.get("/<int:user_id>/subordinates")
@require_actor
def subordinates(user_id: int):
    resolver = HierarchyResolver()
    if not resolver.is_ancestor_of(g.actor.id, user_id):
        raise Forbidden("you can only view your own organization", rule="hierarchy")

    ids = sorted(resolver.subordinates_of(user_id))
    users = db.session.query(User).filter(User.id.in_(ids)).order_by(User.full_name).all() if ids else []
    return jsonify({"user_id": user_id, "subordinates": [u.to_dict() for u in users], "count": len(users)})


@users_bp.get("/tree")
@require_actor
def team_tree():
    """Query params: include_inactive (default false)."""
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    return jsonify({"tree": user_service.team_tree(g.actor.id, include_inactive=include_inactive)})
