# Overview: Role definitions and the owner chain between roles.

"""
Organization roles (authoritative)

    admin > manager > team_leader > {technician, technical_executive}

- A technician or technical executive is owned by a team leader
  (users.team_leader_id).
- A team leader is owned by a manager (users.manager_id).
- Managers and admins have no owner reference.
- An owner must sit exactly one level above the owned user.
"""

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_TEAM_LEADER = "team_leader"
ROLE_TECHNICAL_EXECUTIVE = "technical_executive"
ROLE_TECHNICIAN = "technician"

VALID_ROLES = {
    ROLE_ADMIN,
    ROLE_MANAGER,
    ROLE_TEAM_LEADER,
    ROLE_TECHNICAL_EXECUTIVE,
    ROLE_TECHNICIAN,
}

FIELD_ROLES = {ROLE_TECHNICIAN, ROLE_TECHNICAL_EXECUTIVE}

# Which column holds the owner reference for a given role
OWNER_FIELD_BY_ROLE = {
    ROLE_TECHNICIAN: "team_leader_id",
    ROLE_TECHNICAL_EXECUTIVE: "team_leader_id",
    ROLE_TEAM_LEADER: "manager_id",
}

# Role the owner must hold for a given owned role
OWNER_ROLE_BY_ROLE = {
    ROLE_TECHNICIAN: ROLE_TEAM_LEADER,
    ROLE_TECHNICAL_EXECUTIVE: ROLE_TEAM_LEADER,
    ROLE_TEAM_LEADER: ROLE_MANAGER,
}


def owner_field_for(role: str) -> str | None:
    return OWNER_FIELD_BY_ROLE.get(role)


def is_valid_owner(owner_role: str, owned_role: str) -> bool:
    """True iff owner_role is exactly the role one level above owned_role."""
    return OWNER_ROLE_BY_ROLE.get(owned_role) == owner_role
