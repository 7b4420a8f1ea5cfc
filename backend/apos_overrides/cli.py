# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/apos_overrides/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables, default threshold rules and default users.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list
#   List all users with roles and active status.
# - python -m flask users create --username lead2 --password "Password123!" --role shift_lead
#   Create a user (prompts if options are omitted).
# - python -m flask users set-role lead2 manager
#   Change a user's role (and therefore their direct approval authority). A demotion signs the user out.
#
# Override engine:
# - python -m flask overrides seed-rules
#   Create default threshold rules for override types that have none.
# - python -m flask overrides rules
#   List active threshold rules with their approval ladders.
# - python -m flask overrides set-pin manager --pin 4821 --level manager [--max-daily 25]
#   Issue or rotate a user's override PIN.
# - python -m flask overrides unlock manager
#   Clear a PIN lockout.
# - python -m flask overrides sweep
#   Close pending requests past their deadline now (the server also does this in the background).
# - python -m flask overrides pending
#   List open approval requests.

import click
from flask.cli import with_appcontext

from .enums import ApprovalLevel, OPEN_STATUSES, UserRole
from .extensions import db
from .models import ApprovalRequest, User
from .services import credential_service, rule_service
from .services.auth_service import create_user, set_role, PasswordValidationError
from .services.runtime import get_runtime
from .validation import OverrideError


def _user_by_username(username: str) -> User:
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        raise click.ClickException(f"User '{username}' not found")
    return user


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize the override engine: schema, default threshold rules and one
    user per role.

    Users: admin, area_manager, manager, shift_lead, salesperson
    All passwords default to: "Password123!"

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing APOS override engine...")

    db.create_all()

    click.echo("\nLIST Seeding threshold rules...")
    created = rule_service.seed_default_rules()
    click.echo(f"PASS Created {created} threshold rules")

    click.echo("\nUSERS Creating default users...")

    # Default password meets requirements:
    # - Minimum 8 characters
    # - Uppercase, lowercase, digit, special char
    default_password = "Password123!"

    default_users = [
        ("admin", "Store Admin", UserRole.ADMIN.value),
        ("area_manager", "Area Manager", UserRole.AREA_MANAGER.value),
        ("manager", "Store Manager", UserRole.MANAGER.value),
        ("shift_lead", "Shift Lead", UserRole.SHIFT_LEAD.value),
        ("salesperson", "Salesperson", UserRole.SALESPERSON.value),
    ]

    for username, display_name, role in default_users:
        try:
            existing = db.session.query(User).filter_by(username=username).first()
            if existing:
                click.echo(f"WARN  User '{username}' already exists, skipping...")
                continue

            create_user(username, default_password, display_name=display_name, role=role)
            click.echo(f"PASS Created user: {username} with role '{role}'")

        except PasswordValidationError as e:
            click.echo(f"FAIL Password validation failed for '{username}': {str(e)}")
        except OverrideError as e:
            click.echo(f"FAIL Failed to create user '{username}': {e.message}")

    click.echo("\n" + "="*60)
    click.echo("DONE APOS Override Engine Initialized Successfully!")
    click.echo("="*60)
    click.echo("\nDefault Credentials (CHANGE IN PRODUCTION!):")
    for username, _, _ in default_users:
        click.echo(f"   {username:<13} / Password123!")
    click.echo("\nNext: issue override PINs with 'python -m flask overrides set-pin'")
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


# =============================================================================
# USER MANAGEMENT COMMANDS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--display-name', default=None, help='Name shown to approvers')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice([r.value for r in UserRole]), prompt=True, help='Role')
@with_appcontext
def create_user_cli(username, display_name, password, role):
    """
    Create a new user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(username, password, display_name=display_name, role=role)
        click.echo(f"PASS Created user: {user.username} (ID: {user.id}) with role '{user.role}'")
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
    except OverrideError as e:
        click.echo(f"FAIL {e.message}")


@users_group.command('set-role')
@click.argument('username')
@click.argument('role', type=click.Choice([r.value for r in UserRole]))
@with_appcontext
def set_role_cli(username, role):
    """Change a user's role."""
    user = _user_by_username(username)
    set_role(user.id, role)
    click.echo(f"PASS {username} is now '{role}'")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Username':<20} {'Name':<25} {'Active':<8} {'Role'}")
    click.echo("="*80)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.display_name:<25} {active_str:<8} {user.role}")

    click.echo("="*80 + "\n")


# =============================================================================
# OVERRIDE ENGINE COMMANDS
# =============================================================================

@click.group('overrides')
def overrides_group():
    """Threshold rules, override PINs and request maintenance."""


@overrides_group.command('seed-rules')
@with_appcontext
def seed_rules_cli():
    """Create default threshold rules for override types that have none."""
    created = rule_service.seed_default_rules()
    click.echo(f"PASS Created {created} threshold rules")


@overrides_group.command('rules')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive rules')
@with_appcontext
def list_rules_cli(include_inactive):
    """List threshold rules with their approval ladders."""
    rules = rule_service.list_rules(include_inactive=include_inactive)
    if not rules:
        click.echo("No threshold rules found. Run: python -m flask overrides seed-rules")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Type':<20} {'Threshold':<12} {'Default':<14} {'Prio':<5} {'Ladder'}")
    click.echo("="*100)
    for rule in rules:
        ladder = ", ".join(
            f"{lvl.level}<={lvl.max_value if lvl.max_value is not None else 'any'}"
            for lvl in rule.levels
        ) or "-"
        threshold = str(rule.threshold_value) if rule.threshold_value is not None else "-"
        click.echo(
            f"{rule.id:<5} {rule.rule_type:<20} {threshold:<12} {rule.default_level:<14} {rule.priority:<5} {ladder}"
        )
    click.echo("="*100 + "\n")


@overrides_group.command('set-pin')
@click.argument('username')
@click.option('--pin', prompt=True, hide_input=True, confirmation_prompt=True, help='4-8 digit PIN')
@click.option('--level', type=click.Choice([lvl.value for lvl in ApprovalLevel]), required=True)
@click.option('--max-daily', type=int, default=None, help='Daily override quota (unlimited if omitted)')
@with_appcontext
def set_pin_cli(username, pin, level, max_daily):
    """Issue or rotate a user's override PIN."""
    user = _user_by_username(username)
    try:
        credential = credential_service.set_pin(user.id, pin, level, max_daily_overrides=max_daily)
    except OverrideError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS PIN set for {username} at level '{credential.approval_level}'")


@overrides_group.command('unlock')
@click.argument('username')
@with_appcontext
def unlock_cli(username):
    """Clear a PIN lockout."""
    user = _user_by_username(username)
    try:
        credential_service.unlock(user.id)
    except OverrideError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Unlocked override PIN for {username}")


@overrides_group.command('sweep')
@with_appcontext
def sweep_cli():
    """Close pending requests that are past their deadline."""
    counts = get_runtime().sweeper.sweep_once()
    click.echo(f"PASS Timed out: {counts['timed_out']}, expired: {counts['expired']}")


@overrides_group.command('pending')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def pending_cli(limit):
    """List open approval requests, oldest first."""
    rows = db.session.query(ApprovalRequest).filter(
        ApprovalRequest.status.in_(OPEN_STATUSES),
        ApprovalRequest.parent_request_id.is_(None),
    ).order_by(ApprovalRequest.created_at).limit(limit).all()

    if not rows:
        click.echo("No open approval requests.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'Code':<12} {'Type':<20} {'Status':<10} {'Level':<14} {'Requester':<20} {'Created'}")
    click.echo("="*100)
    for row in rows:
        requester = row.requester.username if row.requester else "-"
        click.echo(
            f"{row.request_code:<12} {row.override_type:<20} {row.status:<10} "
            f"{row.required_level:<14} {requester:<20} {row.created_at}"
        )
    click.echo("="*100 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(overrides_group)
