# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/crm/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--store-name "Main Store"] [--store-code MAIN]
#   Idempotent bootstrap: creates the default store and an admin plus one user per staff role.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users list [--store-id 1]
# - python -m flask users create --name "Asha" --email asha@crm.local --phone 9876500000 --role sales --store-id 1
#
# Maintenance:
# - python -m flask maintenance sweep-reservations [--older-than 15]
#   Release (or commit, when linked to a sale) stale HELD reservations.
# - python -m flask maintenance cleanup-sessions [--older-than-days 30]
#
# Notifications:
# - python -m flask notifications dispatch [--include-failed] [--limit 100]
#   One delivery attempt for every PENDING (and optionally FAILED) outbox row.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Store, User
from .models.auth import ROLES
from .services.auth_service import register_user, PasswordValidationError
from .services import reservation_service, session_service, notification_service
from .validation import ValidationError, ConflictError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--store-name', default='Main Store', help='Default store name')
@click.option('--store-code', default='MAIN', help='Default store code')
@with_appcontext
def init_system(store_name, store_code):
    """
    Create the default store and one account per role.

    All passwords default to "Password123!". Change them in production.
    """
    click.echo("START Initializing CRM...")

    store = db.session.query(Store).filter_by(code=store_code.upper()).first()
    if not store:
        store = Store(name=store_name, code=store_code.upper(), is_active=True)
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created default store: {store.name} (ID: {store.id}, Code: {store.code})")
    else:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")

    default_password = "Password123!"
    default_users = [
        ("Admin", "admin@crm.local", "9000000001", "admin"),
        ("Store Manager", "manager@crm.local", "9000000002", "store manager"),
        ("Sales", "sales@crm.local", "9000000003", "sales"),
        ("Engineer", "engineer@crm.local", "9000000004", "engineer"),
    ]

    click.echo("\nUSERS Creating default users...")
    for name, email, phone, role in default_users:
        if db.session.query(User).filter_by(email=email).first():
            click.echo(f"WARN  User '{email}' already exists, skipping...")
            continue
        try:
            register_user(
                name=name,
                email=email,
                phone=phone,
                password=default_password,
                role=role,
                store_id=None if role == "admin" else store.id,
            )
            click.echo(f"PASS Created user: {email} with role '{role}'")
        except (PasswordValidationError, ValidationError, ConflictError) as e:
            db.session.rollback()
            click.echo(f"FAIL Failed to create user '{email}': {str(e)}")

    click.echo("\n" + "="*60)
    click.echo("DONE CRM Initialized Successfully!")
    click.echo("="*60)
    click.echo(f"\nStore: {store.name} (ID: {store.id})")
    click.echo("\nDefault Credentials (CHANGE IN PRODUCTION!):")
    for _, email, _, role in default_users:
        click.echo(f"   {role:<14} -> {email:<22} / {default_password}")
    click.echo("")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Full name')
@click.option('--email', prompt=True, help='Email address')
@click.option('--phone', prompt=True, help='Phone number')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(ROLES), prompt=True, help='Role')
@click.option('--store-id', type=int, default=None, help='Store ID (required for non-admin roles)')
@with_appcontext
def create_user_cli(name, email, phone, password, role, store_id):
    """
    Create a staff account.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = register_user(
            name=name,
            email=email,
            phone=phone,
            password=password,
            role=role,
            store_id=store_id,
        )
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
        return
    except (ValidationError, ConflictError) as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")
        return

    click.echo(f"PASS Created user: {user.email} (ID: {user.id}) with role '{user.role}'")


@users_group.command('list')
@click.option('--store-id', type=int, help='Filter by store ID')
@with_appcontext
def list_users(store_id):
    """List all users with their roles."""
    query = db.session.query(User)
    if store_id:
        query = query.filter_by(store_id=store_id)

    users = query.order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Store':<6} {'Name':<20} {'Email':<30} {'Active':<8} {'Role'}")
    click.echo("="*100)
    for user in users:
        store = str(user.store_id) if user.store_id else "-"
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {store:<6} {user.name:<20} {user.email:<30} {active_str:<8} {user.role}")
    click.echo("="*100 + "\n")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('sweep-reservations')
@click.option('--older-than', 'older_than', type=int, default=None, help='Minutes (defaults to RESERVATION_TTL_MINUTES)')
@with_appcontext
def sweep_reservations_cli(older_than):
    """Reconcile stale HELD reservations left by interrupted sales."""
    result = reservation_service.sweep_stale_reservations(older_than_minutes=older_than)
    click.echo(f"Committed {result['committed']} and released {result['released']} stale reservations.")


@maintenance_group.command('cleanup-sessions')
@click.option('--older-than-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_sessions_cli(older_than_days):
    """Delete expired or revoked sessions."""
    deleted = session_service.cleanup_expired_sessions(older_than_days=older_than_days)
    click.echo(f"Deleted {deleted} sessions older than {older_than_days} days.")


@click.group('notifications')
def notifications_group():
    """Notification outbox commands."""


@notifications_group.command('dispatch')
@click.option('--include-failed', is_flag=True, help='Also retry FAILED rows')
@click.option('--limit', type=int, default=None, help='Maximum rows to attempt')
@with_appcontext
def dispatch_notifications_cli(include_failed, limit):
    """Make one delivery attempt for every pending outbox row."""
    result = notification_service.dispatch_pending(include_failed=include_failed, limit=limit)
    click.echo(f"Sent {result['sent']}, failed {result['failed']}.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(maintenance_group)
    app.cli.add_command(notifications_group)
