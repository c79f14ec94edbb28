"""
Hierarchy resolver tests.

Verifies:
- Subordinate sets per role (team leader, manager, admin, field staff)
- Inactive users are excluded and inactive actors have no authority
- Inconsistent owner references fail closed
- Explicit cache scoping and invalidation
"""

from reportflow.extensions import db
from reportflow.models import User
from reportflow.services.hierarchy_service import HierarchyCache, HierarchyResolver


class TestSubordinates:
    def test_team_leader_sees_direct_field_staff(self, org):
        resolver = HierarchyResolver()
        assert resolver.subordinates_of(org.tl1.id) == {org.tech1.id, org.tech2.id, org.exec1.id}
        assert resolver.subordinates_of(org.tl2.id) == {org.tech3.id}

    def test_manager_sees_team_leaders_and_their_staff(self, org):
        resolver = HierarchyResolver()
        assert resolver.subordinates_of(org.manager.id) == {
            org.tl1.id, org.tl2.id, org.tech1.id, org.tech2.id, org.exec1.id, org.tech3.id,
        }
        assert org.tech4.id not in resolver.subordinates_of(org.manager.id)

    def test_admin_sees_everyone_else(self, org):
        subs = HierarchyResolver().subordinates_of(org.admin.id)
        assert org.admin.id not in subs
        assert {org.manager.id, org.manager2.id, org.tl3.id, org.tech4.id} <= subs

    def test_field_staff_have_no_subordinates(self, org):
        assert HierarchyResolver().subordinates_of(org.tech1.id) == frozenset()

    def test_unknown_actor(self, org):
        assert HierarchyResolver().subordinates_of(999999) == frozenset()


class TestAncestry:
    def test_self_is_ancestor_but_not_strict(self, org):
        resolver = HierarchyResolver()
        assert resolver.is_ancestor_of(org.tech1.id, org.tech1.id)
        assert not resolver.is_strict_ancestor_of(org.tech1.id, org.tech1.id)

    def test_peer_is_not_ancestor(self, org):
        resolver = HierarchyResolver()
        assert not resolver.is_ancestor_of(org.tech2.id, org.tech1.id)
        assert not resolver.is_ancestor_of(org.tl2.id, org.tech1.id)

    def test_chain(self, org):
        resolver = HierarchyResolver()
        assert resolver.is_strict_ancestor_of(org.tl1.id, org.tech1.id)
        assert resolver.is_strict_ancestor_of(org.manager.id, org.tech1.id)
        assert not resolver.is_strict_ancestor_of(org.manager2.id, org.tech1.id)
        assert [u.id for u in resolver.owner_chain(org.tech1.id)] == [org.tl1.id, org.manager.id]
        assert resolver.direct_team_leader(org.tech1.id).id == org.tl1.id


class TestFailClosed:
    def test_inactive_subordinate_excluded(self, org, db_session):
        org.tech2.is_active = False
        db_session.commit()
        assert org.tech2.id not in HierarchyResolver().subordinates_of(org.tl1.id)

    def test_inactive_actor_has_no_subordinates(self, org, db_session):
        org.tl1.is_active = False
        db_session.commit()
        resolver = HierarchyResolver()
        assert resolver.subordinates_of(org.tl1.id) == frozenset()
        # The manager loses the branch under the inactive team leader too
        assert org.tech1.id not in resolver.subordinates_of(org.manager.id)

    def test_owner_with_wrong_role_is_ignored(self, org, db_session):
        # Bypass service validation to simulate bad stored data
        stray = User(
            username="stray", email="stray@reportflow.test", full_name="Stray",
            role="technician", team_leader_id=org.manager.id,
        )
        db_session.add(stray)
        db_session.commit()

        resolver = HierarchyResolver()
        assert stray.id not in resolver.subordinates_of(org.manager.id)
        assert resolver.valid_owner_of(stray) is None
        assert stray.id in {u.id for u in resolver.unassigned_users()}


class TestCache:
    def test_cache_is_used_until_invalidated(self, org, db_session):
        cache = HierarchyCache()
        resolver = HierarchyResolver(cache=cache)
        assert org.tech1.id in resolver.subordinates_of(org.tl1.id)

        org.tech1.team_leader_id = org.tl2.id
        db_session.commit()
        assert org.tech1.id in resolver.subordinates_of(org.tl1.id)  # still cached

        cache.invalidate()
        assert org.tech1.id not in resolver.subordinates_of(org.tl1.id)
        assert org.tech1.id in resolver.subordinates_of(org.tl2.id)


class TestTeamTree:
    def test_tree_for_manager(self, org):
        tree = HierarchyResolver().team_tree(org.manager.id)
        assert tree["id"] == org.manager.id
        leaders = {node["id"]: node for node in tree["members"]}
        assert set(leaders) == {org.tl1.id, org.tl2.id}
        assert {m["id"] for m in leaders[org.tl1.id]["members"]} == {org.tech1.id, org.tech2.id, org.exec1.id}

    def test_inactive_members_only_on_request(self, org, db_session):
        org.tech2.is_active = False
        db_session.commit()
        resolver = HierarchyResolver()

        members = {m["id"] for m in resolver.team_tree(org.tl1.id)["members"]}
        assert org.tech2.id not in members

        members = {m["id"]: m for m in resolver.team_tree(org.tl1.id, include_inactive=True)["members"]}
        assert members[org.tech2.id]["is_active"] is False
