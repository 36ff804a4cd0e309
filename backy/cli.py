"""
Command line entry points, mounted as ``flask backy ...``.
"""

import click
from flask import current_app
from flask.cli import AppGroup

from backy.commands import (
    BackupStartRequest,
    BackyCommands,
    ChunkFileRequest,
    CommandResult,
    SaveBlobLocalRequest,
    SftpBackupRequest
)


backy_cli = AppGroup('backy', help='Run backups from the command line.')


def _echo_result(result: CommandResult):
    if not result.ok:
        raise click.ClickException(f"{result.error_kind}: {result.error_message}")
    if isinstance(result.value, list):
        for item in result.value:
            click.echo(item)
    else:
        click.echo(result.value)


@backy_cli.command('chunk')
@click.argument('path')
def chunk_command(path):
    """Print how many chunks PATH splits into."""
    commands = BackyCommands.from_app(current_app)
    _echo_result(commands.chunk_file(ChunkFileRequest(path=path)))


@backy_cli.command('save-local')
@click.argument('path')
@click.argument('dest_dir')
@click.option('--exclude', 'exclude_patterns', multiple=True, help='Glob pattern to skip; repeatable.')
def save_local_command(path, dest_dir, exclude_patterns):
    """Back up PATH into the blob store at DEST_DIR."""
    commands = BackyCommands.from_app(current_app)
    request = SaveBlobLocalRequest(path=path, dest_dir=dest_dir, exclude_patterns=list(exclude_patterns))
    _echo_result(commands.save_blob_local(request))


@backy_cli.command('sftp')
@click.argument('local_path')
@click.argument('remote_path')
@click.option('--host', required=True)
@click.option('--port', default=22, show_default=True, type=int)
@click.option('--username', required=True)
@click.option('--password', envvar='BACKY_SFTP_PASSWORD', default=None,
              help='Password; read from BACKY_SFTP_PASSWORD when omitted.')
@click.option('--key-file', 'private_key', default=None, type=click.Path(), help='Private key file.')
@click.option('--exclude', 'exclude_patterns', multiple=True, help='Glob pattern to skip; repeatable.')
def sftp_command(local_path, remote_path, host, port, username, password, private_key, exclude_patterns):
    """Back up LOCAL_PATH to REMOTE_PATH on an SFTP server."""
    if not password and not private_key:
        password = click.prompt('Password', hide_input=True)

    commands = BackyCommands.from_app(current_app)
    request = SftpBackupRequest(
        host=host,
        port=port,
        username=username,
        password=password,
        private_key=private_key,
        local_path=local_path,
        remote_path=remote_path,
        exclude_patterns=list(exclude_patterns)
    )
    _echo_result(commands.sftp_backup(request))


@backy_cli.command('snapshot')
@click.argument('source')
def snapshot_command(source):
    """Snapshot SOURCE with the repository backend."""
    commands = BackyCommands.from_app(current_app)
    _echo_result(commands.backup_start(BackupStartRequest(source=source)))


@backy_cli.command('init-repo')
def init_repo_command():
    """Create the default blob repository."""
    _echo_result(BackyCommands.from_app(current_app).init_repo())


@backy_cli.command('list-blobs')
def list_blobs_command():
    """List content ids in the default blob repository."""
    _echo_result(BackyCommands.from_app(current_app).list_blobs())
