"""
`flask backup ...` commands.

Commands:
- create / list / show / delete / validate: archive management
- restore: restore components from an archive
- cleanup: apply the configured retention policy now
- status: scheduler state and archive statistics
- scheduler: run scheduled backups in the foreground
"""

import json
import time

import click
from flask import current_app
from flask.cli import AppGroup

from nmp_backup import get_orchestrator, get_scheduler
from nmp_backup.backup.errors import BackupError
from nmp_backup.backup.models import format_size
from nmp_backup.backup.retention import policy_from_settings


backup_cli = AppGroup('backup', help='Create, list and restore platform backups.')


def _split_components(value):
    if not value:
        return None
    return [item.strip() for item in value.split(',') if item.strip()]


def _fail(error: BackupError):
    raise click.ClickException(str(error))


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


@backup_cli.command('create')
@click.option('--name', default=None, help='Archive base name (default: backup_<id>).')
@click.option('--description', default='', help='Description stored in the archive.')
@click.option('--components', default=None,
              help='Comma separated components (default: postgres,influxdb,config).')
@click.option('--timeout', type=float, default=None, help='Timeout in seconds.')
@click.option('--no-compress', is_flag=True, help='Store without gzip compression.')
def create_command(name, description, components, timeout, no_compress):
    """Create a backup archive now."""
    orchestrator = get_orchestrator()
    try:
        record = orchestrator.create_backup(
            name=name,
            description=description,
            components=_split_components(components),
            timeout=timeout,
            compress=False if no_compress else None
        )
    except BackupError as e:
        _fail(e)

    click.echo(f"Created {record.name} ({record.size_human}) components={','.join(record.components)}")
    click.echo(record.file_path)


@backup_cli.command('list')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON.')
def list_command(as_json):
    """List backup archives, newest first."""
    try:
        backups = get_orchestrator().list_backups()
    except BackupError as e:
        _fail(e)

    if as_json:
        _echo_json([backup.to_dict() for backup in backups])
        return

    if not backups:
        click.echo('No backups found.')
        return

    for backup in backups:
        click.echo(
            f"{backup.id}  {backup.name}  {backup.type}  {backup.size_human}  "
            f"{backup.created_at:%Y-%m-%d %H:%M:%S}  {','.join(backup.components)}"
        )


@backup_cli.command('show')
@click.argument('backup_id')
def show_command(backup_id):
    """Show one backup by id or name."""
    try:
        backup = get_orchestrator().get_backup(backup_id)
    except BackupError as e:
        _fail(e)

    _echo_json(backup.to_dict())


@backup_cli.command('delete')
@click.argument('backup_id')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation.')
def delete_command(backup_id, yes):
    """Delete a backup archive."""
    orchestrator = get_orchestrator()
    try:
        backup = orchestrator.get_backup(backup_id)
        if not yes:
            click.confirm(f"Delete {backup.file_path}?", abort=True)
        orchestrator.delete_backup(backup.id)
    except BackupError as e:
        _fail(e)

    click.echo(f"Deleted {backup.name}")


@backup_cli.command('validate')
@click.argument('backup_id')
def validate_command(backup_id):
    """Check that an archive decodes end to end."""
    try:
        backup = get_orchestrator().validate_backup(backup_id)
    except BackupError as e:
        _fail(e)

    click.echo(f"{backup.name} is valid ({backup.size_human})")


@backup_cli.command('restore')
@click.argument('backup_id')
@click.option('--components', default=None,
              help='Comma separated components (default: postgres,config).')
@click.option('--timeout', type=float, default=None, help='Timeout in seconds.')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation.')
def restore_command(backup_id, components, timeout, yes):
    """Restore components from a backup archive."""
    if not yes:
        click.confirm(f"Restore {backup_id}? Live data will be overwritten", abort=True)

    try:
        result = get_orchestrator().restore_backup(
            backup_id,
            components=_split_components(components),
            timeout=timeout
        )
    except BackupError as e:
        _fail(e)

    click.echo(f"Restored {','.join(result.components) or 'nothing'} from {result.backup_id} "
               f"in {result.duration:.1f}s")
    if result.skipped:
        click.echo(f"Skipped: {','.join(result.skipped)}")


@backup_cli.command('cleanup')
@click.option('--max-backups', type=int, default=None, help='Keep the N newest archives.')
@click.option('--retention-days', type=int, default=None, help='Delete archives older than N days.')
def cleanup_command(max_backups, retention_days):
    """Apply a retention policy (default: the configured one)."""
    policy = None
    if max_backups or retention_days:
        policy = policy_from_settings(max_backups, retention_days)

    try:
        summary = get_orchestrator().enforce_retention(policy)
    except (BackupError, ValueError) as e:
        raise click.ClickException(str(e))

    click.echo(
        f"Retention ({summary['policy']}): deleted {len(summary['deleted'])}, "
        f"kept {summary['kept']}"
    )
    for error in summary['errors']:
        click.echo(f"Error: {error}", err=True)


@backup_cli.command('status')
def status_command():
    """Show scheduler state and archive statistics."""
    try:
        status = get_scheduler().get_backup_status()
    except BackupError as e:
        _fail(e)

    data = status.to_dict()
    click.echo(f"Scheduler running: {'yes' if data['is_scheduler_running'] else 'no'}")
    click.echo(f"Next backup: {data['next_backup_time'] or '-'}")
    click.echo(f"Backups: {data['total_backups']} ({format_size(data['total_backup_size'])})")
    if data['last_backup_file']:
        click.echo(
            f"Last backup: {data['last_backup_file']} at {data['last_backup_time']} "
            f"({format_size(data['last_backup_size'])})"
        )


@backup_cli.command('scheduler')
def scheduler_command():
    """Run scheduled backups in the foreground until interrupted."""
    from nmp_backup.config import schedule_config_from_app

    scheduler = get_scheduler()
    try:
        scheduler.start(schedule_config_from_app(current_app.config))
    except BackupError as e:
        _fail(e)

    click.echo(f"Scheduler running, next backup at {scheduler.get_next_backup_time()}")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo('Stopping scheduler...')
    finally:
        scheduler.stop()
