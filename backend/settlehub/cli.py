# Overview: Flask CLI command groups for bootstrap and settlement batch jobs.

# backend/settlehub/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use `flask db upgrade` for migrations).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system create-admin --email admin@settlehub.local --password "Password123!"
#   Create an ADMIN account (prompts if options are omitted).
#
# Settlements:
# - python -m flask settlements create-daily --date 2026-01-31
#   Create PENDING settlements for payments captured that day (default: yesterday, UTC).
#   Safe to re-run; already settled payments are skipped.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .models.auth import ROLE_ADMIN
from .services.auth_service import create_user, PasswordValidationError
from .services import settlement_service
from .services.settlement_service import SettlementError
from .validation import ConflictError, ValidationError
from .time_utils import utcnow


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    click.echo("BUILD  Creating tables...")
    db.create_all()
    click.echo("PASS Database initialized.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system create-admin' next.")


@system_group.command('create-admin')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--name', default=None, help='Display name')
@with_appcontext
def create_admin(email, password, name):
    """
    Create an ADMIN account.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(email=email, password=password, name=name, role=ROLE_ADMIN)
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        raise SystemExit(1)
    except (ValidationError, ConflictError) as e:
        click.echo(f"FAIL {str(e)}")
        raise SystemExit(1)

    click.echo(f"PASS Created admin: {user.email} (ID: {user.id})")


# =============================================================================
# SETTLEMENT COMMANDS
# =============================================================================

@click.group('settlements')
def settlements_group():
    """Settlement batch jobs."""


@settlements_group.command('create-daily')
@click.option('--date', 'target_date', type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help='Capture day to settle (YYYY-MM-DD). Defaults to yesterday (UTC).')
@with_appcontext
def create_daily(target_date):
    """Create PENDING settlements for one capture day."""
    day = target_date.date() if target_date else utcnow().date() - timedelta(days=1)

    click.echo(f"START Creating settlements for {day.isoformat()}...")
    try:
        result = settlement_service.create_daily_settlements(day)
    except SettlementError as e:
        click.echo(f"FAIL {str(e)}")
        raise SystemExit(1)
    click.echo(f"PASS Created {result['created']} settlement(s) for {result['settlement_date']}")


@settlements_group.command('confirm-adjustments')
@click.option('--date', 'target_date', type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help='Adjustment day to confirm (YYYY-MM-DD). Defaults to yesterday (UTC).')
@with_appcontext
def confirm_adjustments(target_date):
    """Confirm PENDING refund adjustments booked on one day."""
    day = target_date.date() if target_date else utcnow().date() - timedelta(days=1)

    result = settlement_service.confirm_daily_adjustments(day)
    click.echo(f"PASS Confirmed {result['confirmed']} adjustment(s) for {result['adjustment_date']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(settlements_group)
