# Overview: Hierarchy resolution; answers who has authority over whose records.

"""
Hierarchy Resolver

RULES:
- team_leader: subordinates are the active technicians / technical
  executives whose team_leader_id is the team leader.
- manager: subordinates are the active team leaders whose manager_id is the
  manager, plus each such team leader's subordinates.
- admin: subordinates are all active users.
- technician / technical_executive: no subordinates.
- is_ancestor_of(A, B) is true iff A == B or B is in subordinates_of(A).

FAIL CLOSED:
- An inactive actor has no subordinates.
- Owner references are only followed between roles exactly one level apart;
  a team_leader_id pointing at a non-team-leader (or a manager_id pointing at
  a non-manager) is treated as no relation.

Every call reads through the session. A HierarchyCache may be injected for
the duration of one request/command; writers of owner references invalidate
it explicitly.
"""

from __future__ import annotations

import logging
import threading

from ..extensions import db
from ..models import User
from ..roles import (
    ROLE_ADMIN,
    ROLE_MANAGER,
    ROLE_TEAM_LEADER,
    FIELD_ROLES,
    OWNER_ROLE_BY_ROLE,
    owner_field_for,
)

logger = logging.getLogger(__name__)


class HierarchyCache:
    """
    Explicitly scoped memo of subordinate sets.

    Owned by whoever creates it (one request, one CLI command). Call
    invalidate() after any owner reference or active flag changes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subordinates: dict[int, frozenset[int]] = {}

    def get(self, user_id: int) -> frozenset[int] | None:
        with self._lock:
            return self._subordinates.get(user_id)

    def put(self, user_id: int, subordinates: frozenset[int]) -> None:
        with self._lock:
            self._subordinates[user_id] = subordinates

    def invalidate(self) -> None:
        # Any owner edit can change the subtree of every ancestor; drop everything.
        with self._lock:
            self._subordinates.clear()


class HierarchyResolver:
    def __init__(self, session=None, cache: HierarchyCache | None = None):
        self.session = session or db.session
        self.cache = cache

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _get_user(self, user_id: int | None) -> User | None:
        if user_id is None:
            return None
        return self.session.get(User, user_id)

    def _direct_field_reports(self, team_leader_id: int) -> set[int]:
        rows = (
            self.session.query(User.id)
            .filter(
                User.team_leader_id == team_leader_id,
                User.role.in_(sorted(FIELD_ROLES)),
                User.is_active.is_(True),
            )
            .all()
        )
        return {row[0] for row in rows}

    def _direct_team_leaders(self, manager_id: int) -> set[int]:
        rows = (
            self.session.query(User.id)
            .filter(
                User.manager_id == manager_id,
                User.role == ROLE_TEAM_LEADER,
                User.is_active.is_(True),
            )
            .all()
        )
        return {row[0] for row in rows}

    def _all_active_users(self, exclude_id: int) -> set[int]:
        rows = (
            self.session.query(User.id)
            .filter(User.is_active.is_(True), User.id != exclude_id)
            .all()
        )
        return {row[0] for row in rows}

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    def subordinates_of(self, actor_id: int) -> frozenset[int]:
        """Active user ids the actor has authority over (never includes the actor)."""
        if self.cache is not None:
            cached = self.cache.get(actor_id)
            if cached is not None:
                return cached

        actor = self._get_user(actor_id)
        result: set[int] = set()

        if actor is None or not actor.is_active:
            result = set()
        elif actor.role == ROLE_ADMIN:
            result = self._all_active_users(exclude_id=actor.id)
        elif actor.role == ROLE_MANAGER:
            for team_leader_id in self._direct_team_leaders(actor.id):
                result.add(team_leader_id)
                result |= self._direct_field_reports(team_leader_id)
        elif actor.role == ROLE_TEAM_LEADER:
            result = self._direct_field_reports(actor.id)

        result.discard(actor_id)
        frozen = frozenset(result)
        if self.cache is not None:
            self.cache.put(actor_id, frozen)
        return frozen

    def is_ancestor_of(self, actor_id: int, subject_id: int) -> bool:
        if actor_id == subject_id:
            return True
        return subject_id in self.subordinates_of(actor_id)

    def is_strict_ancestor_of(self, actor_id: int, subject_id: int) -> bool:
        """Authority over someone else's records; a user never approves their own."""
        return actor_id != subject_id and self.is_ancestor_of(actor_id, subject_id)

    # -------------------------------------------------------------------------
    # Owner chain
    # -------------------------------------------------------------------------

    def valid_owner_of(self, user: User) -> User | None:
        """
        The user's owner, or None when unassigned or inconsistent.

        An owner whose role is not exactly one level above is ignored.
        """
        field = owner_field_for(user.role)
        if not field:
            return None
        owner = self._get_user(getattr(user, field))
        if owner is None:
            return None
        if owner.role != OWNER_ROLE_BY_ROLE[user.role]:
            logger.warning(
                "Inconsistent hierarchy: user %s (%s) references %s (%s) via %s",
                user.id, user.role, owner.id, owner.role, field,
            )
            return None
        return owner

    def owner_chain(self, user_id: int, max_depth: int = 4) -> list[User]:
        """Owners from direct to top (e.g. [team leader, manager])."""
        chain: list[User] = []
        visited: set[int] = {user_id}
        current = self._get_user(user_id)
        while current is not None and len(chain) < max_depth:
            owner = self.valid_owner_of(current)
            if owner is None or owner.id in visited:
                break
            chain.append(owner)
            visited.add(owner.id)
            current = owner
        return chain

    def direct_team_leader(self, user_id: int) -> User | None:
        user = self._get_user(user_id)
        if user is None or user.role not in FIELD_ROLES:
            return None
        return self.valid_owner_of(user)

    # -------------------------------------------------------------------------
    # Display
    # -------------------------------------------------------------------------

    def team_tree(self, actor_id: int, include_inactive: bool = False) -> dict:
        """
        Nested view of the actor's organization.

        include_inactive=True keeps historical members for display; it never
        feeds authorization.
        """
        actor = self._get_user(actor_id)
        if actor is None:
            return {}

        def _children(user: User) -> list[User]:
            if user.role == ROLE_ADMIN:
                q = self.session.query(User).filter(User.role == ROLE_MANAGER)
            elif user.role == ROLE_MANAGER:
                q = self.session.query(User).filter(
                    User.manager_id == user.id, User.role == ROLE_TEAM_LEADER
                )
            elif user.role == ROLE_TEAM_LEADER:
                q = self.session.query(User).filter(
                    User.team_leader_id == user.id, User.role.in_(sorted(FIELD_ROLES))
                )
            else:
                return []
            if not include_inactive:
                q = q.filter(User.is_active.is_(True))
            return q.order_by(User.full_name).all()

        def _node(user: User) -> dict:
            return {
                "id": user.id,
                "full_name": user.full_name,
                "role": user.role,
                "is_active": user.is_active,
                "members": [_node(child) for child in _children(user)],
            }

        return _node(actor)

    def unassigned_users(self) -> list[User]:
        """Owned-role users with no valid owner; only admins can act on them."""
        candidates = (
            self.session.query(User)
            .filter(User.role.in_(sorted(OWNER_ROLE_BY_ROLE)), User.is_active.is_(True))
            .order_by(User.id)
            .all()
        )
        return [u for u in candidates if self.valid_owner_of(u) is None]
