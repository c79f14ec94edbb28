"""
Organization administration tests.

Verifies:
- Owner references always point exactly one role level up
- Managers act only inside their own subtree; only admins unassign
- Every change is audited, invalidates the cache and (for owners) notifies
"""

import pytest

from reportflow.errors import Forbidden, NotFound, ValidationError
from reportflow.extensions import db
from reportflow.models import AuditEntry, Notification
from reportflow.services import user_service
from reportflow.services.hierarchy_service import HierarchyCache, HierarchyResolver


def user_data(username, role, owner_id=None):
    return {
        "username": username,
        "email": f"{username}@reportflow.test",
        "full_name": username.title(),
        "role": role,
        "owner_id": owner_id,
    }


class TestCreateUser:
    def test_admin_creates_technician(self, org):
        user = user_service.create_user(org.admin.id, user_data("newtech", "technician", org.tl1.id))

        assert user.team_leader_id == org.tl1.id
        entry = db.session.query(AuditEntry).filter_by(target_table="users", target_id=user.id).one()
        assert entry.action == "CREATE"
        assert entry.after["team_leader_id"] == org.tl1.id

    def test_system_creates_admin(self, db_session):
        user = user_service.create_user(None, user_data("root", "admin"))
        assert user.role == "admin"
        assert db.session.query(AuditEntry).filter_by(target_id=user.id).one().actor_role == "system"

    def test_owner_must_be_one_level_up(self, org):
        with pytest.raises(ValidationError) as exc:
            user_service.create_user(org.admin.id, user_data("t", "technician", org.manager.id))
        assert exc.value.rule == "owner_role"

        with pytest.raises(ValidationError):
            user_service.create_user(org.admin.id, user_data("l", "team_leader", org.tl1.id))

    def test_roles_without_owner_reject_one(self, org):
        with pytest.raises(ValidationError):
            user_service.create_user(org.admin.id, user_data("m", "manager", org.admin.id))

    def test_inactive_owner(self, org, db_session):
        org.tl2.is_active = False
        db_session.commit()
        with pytest.raises(ValidationError):
            user_service.create_user(org.admin.id, user_data("t", "technician", org.tl2.id))

    def test_manager_creates_inside_own_team(self, org):
        leader = user_service.create_user(org.manager.id, user_data("tl9", "team_leader", org.manager.id))
        assert leader.manager_id == org.manager.id

        tech = user_service.create_user(org.manager.id, user_data("t9", "technician", org.tl1.id))
        assert tech.team_leader_id == org.tl1.id

    def test_manager_cannot_use_other_branch(self, org):
        with pytest.raises(Forbidden):
            user_service.create_user(org.manager.id, user_data("t", "technician", org.tl3.id))
        with pytest.raises(Forbidden):
            user_service.create_user(org.manager.id, user_data("m", "manager"))
        with pytest.raises(Forbidden):
            user_service.create_user(org.manager.id, user_data("t", "technician"))

    def test_team_leader_cannot_create_users(self, org):
        with pytest.raises(Forbidden):
            user_service.create_user(org.tl1.id, user_data("t", "technician", org.tl1.id))

    def test_validation(self, org):
        with pytest.raises(ValidationError):
            user_service.create_user(org.admin.id, user_data("x", "superuser"))
        with pytest.raises(ValidationError):
            user_service.create_user(org.admin.id, {**user_data("x", "admin"), "email": ""})

    def test_duplicate_username(self, org):
        with pytest.raises(ValidationError):
            user_service.create_user(org.admin.id, user_data("tech1", "admin"))


class TestAssignOwner:
    def test_reassign_technician(self, org):
        cache = HierarchyCache()
        resolver = HierarchyResolver(cache=cache)
        assert org.tech1.id in resolver.subordinates_of(org.tl1.id)

        user_service.assign_owner(org.manager.id, org.tech1.id, org.tl2.id, cache=cache)

        assert org.tech1.team_leader_id == org.tl2.id
        assert org.tech1.id not in resolver.subordinates_of(org.tl1.id)
        assert org.tech1.id in resolver.subordinates_of(org.tl2.id)

        entry = (
            db.session.query(AuditEntry)
            .filter_by(target_table="users", target_id=org.tech1.id, action="UPDATE")
            .one()
        )
        assert entry.before["team_leader_id"] == org.tl1.id
        assert entry.after["team_leader_id"] == org.tl2.id

    def test_notifies_user_and_new_owner(self, org):
        user_service.assign_owner(org.admin.id, org.tech1.id, org.tl2.id)

        recipients = {n.recipient_id for n in db.session.query(Notification).all()}
        assert recipients == {org.tech1.id, org.tl2.id}

    def test_only_admin_unassigns(self, org):
        with pytest.raises(Forbidden):
            user_service.assign_owner(org.manager.id, org.tech1.id, None)

        user_service.assign_owner(org.admin.id, org.tech1.id, None)
        assert org.tech1.team_leader_id is None
        [note] = db.session.query(Notification).filter_by(recipient_id=org.tech1.id).all()
        assert note.type == "warning"

    def test_manager_outside_subtree(self, org):
        with pytest.raises(Forbidden):
            user_service.assign_owner(org.manager2.id, org.tech1.id, org.tl3.id)
        with pytest.raises(Forbidden):
            user_service.assign_owner(org.manager.id, org.tech1.id, org.tl3.id)

    def test_self_and_wrong_role(self, org):
        with pytest.raises(ValidationError):
            user_service.assign_owner(org.admin.id, org.tl1.id, org.tl1.id)
        with pytest.raises(ValidationError):
            user_service.assign_owner(org.admin.id, org.tech1.id, org.tech2.id)
        with pytest.raises(ValidationError):
            user_service.assign_owner(org.admin.id, org.manager.id, org.admin.id)

    def test_missing_users(self, org):
        with pytest.raises(NotFound):
            user_service.assign_owner(org.admin.id, 999999, org.tl1.id)
        with pytest.raises(NotFound):
            user_service.assign_owner(org.admin.id, org.tech1.id, 999999)


class TestSetActive:
    def test_deactivate_keeps_history(self, org):
        user_service.set_active(org.manager.id, org.tech1.id, False)

        assert org.tech1.is_active is False
        assert org.tech1.id not in HierarchyResolver().subordinates_of(org.tl1.id)
        entry = db.session.query(AuditEntry).filter_by(target_table="users", target_id=org.tech1.id).one()
        assert entry.before["is_active"] is True and entry.after["is_active"] is False

    def test_manager_reactivates_and_reassigns_inactive_member(self, org):
        user_service.set_active(org.manager.id, org.tech1.id, False)
        user_service.assign_owner(org.manager.id, org.tech1.id, org.tl2.id)
        user_service.set_active(org.manager.id, org.tech1.id, True)

        assert org.tech1.is_active is True
        assert org.tech1.team_leader_id == org.tl2.id
        assert org.tech1.id in HierarchyResolver().subordinates_of(org.tl2.id)

    def test_inactive_member_stays_out_of_other_branches(self, org):
        user_service.set_active(org.manager.id, org.tech1.id, False)
        with pytest.raises(Forbidden):
            user_service.set_active(org.manager2.id, org.tech1.id, True)

    def test_no_op_is_not_audited(self, org):
        user_service.set_active(org.admin.id, org.tech1.id, True)
        assert db.session.query(AuditEntry).count() == 0

    def test_authority(self, org):
        with pytest.raises(Forbidden):
            user_service.set_active(org.tl1.id, org.tech1.id, False)
        with pytest.raises(Forbidden):
            user_service.set_active(org.manager2.id, org.tech1.id, False)
        with pytest.raises(ValidationError):
            user_service.set_active(org.admin.id, org.admin.id, False)


class TestTeamTree:
    def test_team_tree(self, org):
        tree = user_service.team_tree(org.tl1.id)
        assert {m["id"] for m in tree["members"]} == {org.tech1.id, org.tech2.id, org.exec1.id}

    def test_unknown_actor(self, db_session):
        with pytest.raises(NotFound):
            user_service.team_tree(1)
