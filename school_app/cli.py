import click
from flask.cli import with_appcontext
from . import db
from .api_utils import parse_datetime
from .models import User
from .errors import AppError


@click.command("create-super-admin")
@click.option("--email", required=True)
@click.option("--password", required=True)
@click.option("--first-name", default="Super")
@click.option("--last-name", default="Admin")
@with_appcontext
def create_super_admin(email, password, first_name, last_name):
    """Create the platform Super Admin account."""
    from .auth.services import hash_password
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        click.echo(f"User '{email}' already exists.")
        return
    try:
        password_hash = hash_password(password)
    except AppError as e:
        raise click.BadParameter(e.message, param_hint="--password")
    db.session.add(User(email=email, password_hash=password_hash, first_name=first_name,
                        last_name=last_name, user_type="Super Admin"))
    db.session.commit()
    click.echo(f"Super Admin '{email}' created.")


@click.command("expire-quiz-sessions")
@with_appcontext
def expire_quiz_sessions():
    """Auto-submit every quiz session past its time limit."""
    from .quizzes.services import check_and_handle_expired_sessions
    count = check_and_handle_expired_sessions()
    click.echo(f"Expired {count} quiz sessions.")


@click.command("run-settlements")
@click.option("--date", "settlement_date", default=None, help="Settlement end (ISO-8601), defaults to now")
@with_appcontext
def run_settlements(settlement_date):
    """Process settlements for every active gateway of every active campus."""
    from .payments.settlement import run_scheduled_settlements
    try:
        end = parse_datetime(settlement_date, "date")
    except AppError as e:
        raise click.BadParameter(e.message, param_hint="--date")
    for r in run_scheduled_settlements(end):
        line = f"campus={r['campus_id']} gateway={r['gateway_provider']} status={r['status']}"
        if r.get("settlement_batch_id"):
            line += f" batch={r['settlement_batch_id']}"
        if r.get("error_code"):
            line += f" error={r['error_code']} ({r['message']})"
        click.echo(line)


@click.command("backup")
@click.option("--type", "backup_type", default="full",
              type=click.Choice(["full", "incremental", "payment_only"]))
@click.option("--cleanup/--no-cleanup", default=True, help="Apply the retention policy afterwards")
@with_appcontext
def backup(backup_type, cleanup):
    """Write a database snapshot to BACKUP_DIR."""
    from .super_admin import backup as backups
    try:
        record = backups.initiate_backup(backup_type)
    except AppError as e:
        raise click.ClickException(e.message)
    click.echo(f"Backup {record.backup_id} completed ({record.file_size} bytes, sha256 {record.checksum}).")
    if cleanup:
        result = backups.cleanup_old_backups()
        click.echo(f"Removed {len(result['deleted'])} old backups.")


@click.command("cleanup-security-logs")
@click.option("--days", default=30, show_default=True, type=int)
@with_appcontext
def cleanup_security_logs(days):
    """Drop payment monitor entries and resolved security events older than --days."""
    from .payments.settlement import cleanup_security_logs as cleanup
    result = cleanup(days)
    click.echo(f"Removed {result['monitor_entries_removed']} monitor entries and "
               f"{result['resolved_events_deleted']} resolved security events.")


def register_cli(app):
    for command in (create_super_admin, expire_quiz_sessions, run_settlements, backup, cleanup_security_logs):
        app.cli.add_command(command)
