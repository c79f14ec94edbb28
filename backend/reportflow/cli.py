# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/reportflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to reportflow (PowerShell: $env:FLASK_APP="reportflow").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--username admin --email admin@reportflow.local]
#   Idempotent bootstrap: creates tables and the first admin.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Organization:
# - python -m flask users create --username tl1 --email tl1@x --full-name "TL One" --role team_leader --owner-id 2
#   Create a user (owner is the team leader for field staff, the manager for team leaders).
# - python -m flask users list [--role technician] [--active-only]
#   List users with role, owner and active status.
# - python -m flask users tree --user-id 1 [--include-inactive]
#   Print the team tree under a user.
# - python -m flask users unassigned
#   List field staff and team leaders with no valid owner (admin follow-up).
#
# Notifications:
# - python -m flask notifications retry
#   Run one retry sweep over failed deliveries.
# - python -m flask notifications pending [--dead]
#   Show queued (or dead-lettered) deliveries.
#
# Audit:
# - python -m flask audit list [--action APPROVE] [--target-id 5] [--limit 50]
#   List recent audit entries.
# - python -m flask audit export --out audit.csv
#   Export audit entries as CSV.

import click
from flask.cli import with_appcontext

from .errors import ReportFlowError
from .extensions import db
from .models import User
from .roles import ROLE_ADMIN, VALID_ROLES
from .services import audit_service, notification_service, user_service
from .services.hierarchy_service import HierarchyResolver
from .time_utils import parse_iso_datetime, to_utc_z


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--username', default='admin', help='Admin username')
@click.option('--email', default='admin@reportflow.local', help='Admin email')
@click.option('--full-name', default='System Administrator', help='Admin display name')
@with_appcontext
def init_system(username, email, full_name):
    """
    Initialize reportflow: create tables and the first admin.

    Safe to run more than once.
    """
    click.echo("START Initializing reportflow...")

    db.create_all()
    click.echo("PASS Tables ready")

    existing = db.session.query(User).filter_by(username=username).first()
    if existing:
        click.echo(f"WARN  User '{username}' already exists, skipping...")
        return

    try:
        user = user_service.create_user(None, {
            "username": username,
            "email": email,
            "full_name": full_name,
            "role": ROLE_ADMIN,
        })
    except ReportFlowError as e:
        raise click.ClickException(f"{e.kind}: {e.detail}")

    click.echo(f"PASS Created admin: {user.username} (ID: {user.id})")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, audit history included!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


# =============================================================================
# USERS
# =============================================================================

@click.group('users')
def users_group():
    """Organization inspection and bootstrap."""


@users_group.command('create')
@click.option('--username', prompt=True)
@click.option('--email', prompt=True)
@click.option('--full-name', prompt=True)
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), prompt=True)
@click.option('--owner-id', type=int, default=None, help='Team leader (field staff) or manager (team leaders)')
@click.option('--employee-id', default=None)
@click.option('--mobile', default=None)
@with_appcontext
def create_user_cmd(username, email, full_name, role, owner_id, employee_id, mobile):
    """Create a user as the system (no acting user)."""
    try:
        user = user_service.create_user(None, {
            "username": username,
            "email": email,
            "full_name": full_name,
            "role": role,
            "owner_id": owner_id,
            "employee_id": employee_id,
            "mobile": mobile,
        })
    except ReportFlowError as e:
        raise click.ClickException(f"{e.kind}: {e.detail}")

    click.echo(f"PASS Created user: {user.username} (ID: {user.id}) with role '{user.role}'")


@users_group.command('list')
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), default=None)
@click.option('--active-only', is_flag=True, help='Hide deactivated users')
@with_appcontext
def list_users(role, active_only):
    """List users with role, owner and active status."""
    users = user_service.list_users(role=role, include_inactive=not active_only)

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Username':<20} {'Role':<22} {'Owner':<7} {'Active':<8} {'Name'}")
    click.echo("="*90)
    for user in users:
        owner = user.owner_id if user.owner_id is not None else "-"
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.role:<22} {str(owner):<7} {active_str:<8} {user.full_name}")
    click.echo("="*90 + "\n")


def _echo_tree(node: dict, depth: int = 0) -> None:
    marker = "" if node.get("is_active", True) else " (inactive)"
    click.echo(f"{'  ' * depth}- [{node['id']}] {node['full_name']} ({node['role']}){marker}")
    for child in node.get("members", []):
        _echo_tree(child, depth + 1)


@users_group.command('tree')
@click.option('--user-id', type=int, required=True)
@click.option('--include-inactive', is_flag=True)
@with_appcontext
def team_tree(user_id, include_inactive):
    """Print the organization under a user."""
    try:
        tree = user_service.team_tree(user_id, include_inactive=include_inactive)
    except ReportFlowError as e:
        raise click.ClickException(f"{e.kind}: {e.detail}")
    _echo_tree(tree)


@users_group.command('unassigned')
@with_appcontext
def unassigned_users():
    """List active users with no valid owner; only admins can act on them."""
    users = HierarchyResolver().unassigned_users()
    if not users:
        click.echo("PASS Every team member has a valid owner.")
        return
    for user in users:
        click.echo(f"WARN  [{user.id}] {user.username} ({user.role}) has no valid owner")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@click.group('notifications')
def notifications_group():
    """Notification delivery maintenance."""


@notifications_group.command('retry')
@with_appcontext
def retry_notifications():
    """Run one retry sweep over failed deliveries."""
    dispatcher = notification_service.get_dispatcher()
    result = dispatcher.retry_failed()
    click.echo(
        f"PASS Attempted {result.attempted}: delivered {result.delivered}, "
        f"requeued {result.requeued}, dead {result.dropped}"
    )


@notifications_group.command('pending')
@click.option('--dead', is_flag=True, help='Show dead letters instead of pending retries')
@with_appcontext
def pending_notifications(dead):
    """Show queued or dead-lettered deliveries."""
    dispatcher = notification_service.get_dispatcher()
    items = dispatcher.dead_letters() if dead else dispatcher.pending()
    if not items:
        click.echo("No dead letters." if dead else "No pending retries.")
        return
    for item in items:
        click.echo(
            f"user={item.recipient_id} attempts={item.attempts} "
            f"title={item.payload.title!r} error={item.last_error}"
        )


# =============================================================================
# AUDIT
# =============================================================================

@click.group('audit')
def audit_group():
    """Audit log inspection and export."""


def _audit_filters(actor_id, action, target_table, target_id, since, until):
    return {
        "actor_id": actor_id,
        "action": action,
        "target_table": target_table,
        "target_id": target_id,
        "since": parse_iso_datetime(since),
        "until": parse_iso_datetime(until),
    }


_audit_options = [
    click.option('--actor-id', type=int, default=None),
    click.option('--action', default=None, help='CREATE, UPDATE, DELETE, SUBMIT, APPROVE, REJECT'),
    click.option('--target-table', default=None),
    click.option('--target-id', type=int, default=None),
    click.option('--since', default=None, help='ISO 8601'),
    click.option('--until', default=None, help='ISO 8601'),
]


def audit_filter_options(f):
    for option in reversed(_audit_options):
        f = option(f)
    return f


@audit_group.command('list')
@audit_filter_options
@click.option('--limit', type=int, default=50)
@with_appcontext
def list_audit(actor_id, action, target_table, target_id, since, until, limit):
    """List recent audit entries, newest first."""
    entries = audit_service.list_entries(
        **_audit_filters(actor_id, action, target_table, target_id, since, until), limit=limit
    )
    if not entries:
        click.echo("No audit entries.")
        return
    for entry in entries:
        changes = audit_service.compute_diff(entry.before, entry.after)
        click.echo(
            f"{entry.id:<6} {to_utc_z(entry.occurred_at)} actor={entry.actor_id} "
            f"{entry.action:<8} {entry.target_table}#{entry.target_id} "
            f"changed={','.join(changes) or '-'}"
        )


@audit_group.command('export')
@audit_filter_options
@click.option('--out', 'out_path', type=click.Path(dir_okay=False, writable=True), required=True)
@click.option('--limit', type=int, default=10000)
@with_appcontext
def export_audit(actor_id, action, target_table, target_id, since, until, out_path, limit):
    """Export audit entries to CSV."""
    entries = audit_service.list_entries(
        **_audit_filters(actor_id, action, target_table, target_id, since, until), limit=limit
    )
    with open(out_path, "w", newline="", encoding="utf-8") as fh:
        count = audit_service.export_csv(entries, fh)
    click.echo(f"PASS Exported {count} audit entries to {out_path}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(notifications_group)
    app.cli.add_command(audit_group)
