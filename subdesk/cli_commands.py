"""
Flask CLI commands for database setup and slot maintenance.

Commands:
- flask init-db: Create all tables
- flask slots-audit [--repair]: Compare account slot counters with active sales
"""

import click
from subdesk.database import get_database
from subdesk.services.slot_audit_service import find_slot_drift, repair_slot_drift


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db():
        """Create every table that does not exist yet."""
        get_database(app).create_all()
        click.echo(click.style('Database tables created.', fg='green'))

    @app.cli.command('slots-audit')
    @click.option('--repair', is_flag=True, help='Rewrite drifted counters from the active sales')
    def slots_audit(repair):
        """Check that every account's current_users matches its active sales."""
        db_session = get_database(app).session

        drift = find_slot_drift(db_session)
        if not drift:
            click.echo(click.style('All account slot counters are consistent.', fg='green'))
            return

        for entry in drift:
            click.echo(
                f"Account #{entry['account_id']} ({entry['email'] or '-'}): "
                f"current_users={entry['current_users']} expected={entry['expected_users']} "
                f"available_slots={entry['available_slots']} max={entry['max_user_slots']}"
            )

        if not repair:
            click.echo(click.style(f'{len(drift)} account(s) drifted. Run with --repair to fix.', fg='yellow'))
            raise SystemExit(1)

        repaired = repair_slot_drift(db_session)
        click.echo(click.style(f'{len(repaired)} of {len(drift)} account(s) repaired.', fg='green', bold=True))
        if len(repaired) != len(drift):
            raise SystemExit(1)
