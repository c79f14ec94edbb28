"""
CLI command tests (flask system / users / notifications / audit).
"""

from reportflow.extensions import db
from reportflow.models import AuditEntry, User
from reportflow.services import user_service


def invoke(app, *args):
    return app.test_cli_runner().invoke(args=list(args))


class TestSystemCommands:
    def test_init_creates_admin_once(self, app, db_session):
        result = invoke(app, 'system', 'init', '--username', 'root', '--email', 'root@reportflow.test')
        assert result.exit_code == 0
        assert "PASS Created admin: root" in result.output

        admin = db.session.query(User).filter_by(username='root').one()
        assert admin.role == 'admin'
        assert db.session.query(AuditEntry).filter_by(target_id=admin.id).one().actor_role == 'system'

        result = invoke(app, 'system', 'init', '--username', 'root', '--email', 'root@reportflow.test')
        assert result.exit_code == 0
        assert "already exists" in result.output


class TestUserCommands:
    def test_create_user(self, app, org):
        result = invoke(
            app, 'users', 'create',
            '--username', 'tech9', '--email', 'tech9@reportflow.test', '--full-name', 'Tech Nine',
            '--role', 'technician', '--owner-id', str(org.tl1.id),
        )
        assert result.exit_code == 0, result.output
        assert "role 'technician'" in result.output

    def test_create_user_rejects_wrong_owner(self, app, org):
        result = invoke(
            app, 'users', 'create',
            '--username', 'tech9', '--email', 'tech9@reportflow.test', '--full-name', 'Tech Nine',
            '--role', 'technician', '--owner-id', str(org.manager.id),
        )
        assert result.exit_code != 0
        assert "ValidationError" in result.output

    def test_list_users(self, app, org, db_session):
        org.tech2.is_active = False
        db_session.commit()

        result = invoke(app, 'users', 'list', '--role', 'technician')
        assert "tech1" in result.output and "tech2" in result.output

        result = invoke(app, 'users', 'list', '--role', 'technician', '--active-only')
        assert "tech2" not in result.output

    def test_tree(self, app, org):
        result = invoke(app, 'users', 'tree', '--user-id', str(org.manager.id))
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].startswith(f"- [{org.manager.id}]")
        assert any(line.startswith(f"    - [{org.tech1.id}]") for line in lines)

    def test_unassigned(self, app, org, db_session):
        result = invoke(app, 'users', 'unassigned')
        assert "PASS Every team member has a valid owner." in result.output

        org.tech3.team_leader_id = None
        db_session.commit()

        result = invoke(app, 'users', 'unassigned')
        assert f"WARN  [{org.tech3.id}] tech3 (technician) has no valid owner" in result.output

    def test_tree_unknown_user(self, app, db_session):
        result = invoke(app, 'users', 'tree', '--user-id', '424242')
        assert result.exit_code != 0
        assert "NotFound" in result.output


class TestNotificationCommands:
    def test_pending_and_retry(self, app, org, dispatcher):
        result = invoke(app, 'notifications', 'pending')
        assert "No pending retries." in result.output

        dispatcher.channel.close()
        dispatcher.notify(org.tech1.id, {"title": "Report approved", "message": "ok"})
        dispatcher.channel.open()

        result = invoke(app, 'notifications', 'pending')
        assert f"user={org.tech1.id} attempts=1" in result.output

        result = invoke(app, 'notifications', 'retry')
        assert "delivered 1" in result.output
        assert dispatcher.pending() == []

    def test_dead_letters(self, app, db_session):
        result = invoke(app, 'notifications', 'pending', '--dead')
        assert "No dead letters." in result.output


class TestAuditCommands:
    def test_list_and_export(self, app, org, tmp_path):
        user_service.create_user(org.admin.id, {
            "username": "tech9",
            "email": "tech9@reportflow.test",
            "full_name": "Tech Nine",
            "role": "technician",
            "owner_id": org.tl1.id,
        })

        result = invoke(app, 'audit', 'list', '--action', 'CREATE')
        assert result.exit_code == 0
        assert "CREATE" in result.output and "users#" in result.output

        out = tmp_path / "audit.csv"
        result = invoke(app, 'audit', 'export', '--out', str(out))
        assert "Exported 1 audit entries" in result.output
        rows = out.read_text(encoding="utf-8").splitlines()
        assert rows[0].startswith("id,")
        assert len(rows) == 2

    def test_empty_log(self, app, db_session):
        result = invoke(app, 'audit', 'list')
        assert "No audit entries." in result.output
