"""
Command routes - synchronous backup commands for UI callers.

Every endpoint waits for its command to finish and answers with
``{"ok": true, "result": ...}`` or ``{"ok": false, "error": {"kind", "message"}}``.
"""

from flask import Blueprint, current_app, jsonify, request

from backy.commands import (
    BackupStartRequest,
    BackyCommands,
    ChunkFileRequest,
    CommandResult,
    SaveBlobLocalRequest,
    SftpBackupRequest,
    ValidationError,
    build_request
)


bp = Blueprint('commands', __name__, url_prefix='/api/commands')

# HTTP status per error kind; anything else is a 500
ERROR_STATUS = {
    'ValidationError': 400,
    'AuthError': 401,
    'NotFoundError': 404,
    'NetworkError': 502,
    'TransferError': 502,
    'RepositoryError': 502,
    'StorageError': 507
}


def _respond(result: CommandResult):
    if result.ok:
        return jsonify(result.to_dict()), 200
    return jsonify(result.to_dict()), ERROR_STATUS.get(result.error_kind, 500)


def _commands() -> BackyCommands:
    return BackyCommands.from_app(current_app)


def _run(request_cls, command):
    try:
        command_request = build_request(request_cls, request.get_json(silent=True))
    except ValidationError as e:
        return _respond(CommandResult.failure(e))

    return _respond(command(_commands(), command_request))


@bp.route('/save_blob_local', methods=['POST'])
def save_blob_local():
    """
    Back up a local file or directory into a blob store.

    Request body:
        - path: Source file or directory (required)
        - dest_dir: Destination blob store directory (required)
        - exclude_patterns: Glob patterns to skip (optional)

    Returns:
        JSON with the manifest path (index path for directories)
    """
    return _run(SaveBlobLocalRequest, BackyCommands.save_blob_local)


@bp.route('/sftp_backup', methods=['POST'])
def sftp_backup():
    """
    Back up a local file or directory to an SFTP server.

    Request body:
        - host, username, local_path, remote_path (required)
        - port: SSH port (default: 22)
        - password or private_key (one required)
        - exclude_patterns (optional)

    Returns:
        JSON with the remote manifest path
    """
    return _run(SftpBackupRequest, BackyCommands.sftp_backup)


@bp.route('/chunk_file', methods=['POST'])
def chunk_file():
    """
    Count chunks for a file or directory without storing them.

    Request body:
        - path: Source file or directory (required)
    """
    return _run(ChunkFileRequest, BackyCommands.chunk_file)


@bp.route('/backup_start', methods=['POST'])
def backup_start():
    """
    Snapshot a source tree with the repository backend.

    Request body:
        - source: Source directory (required)
    """
    return _run(BackupStartRequest, BackyCommands.backup_start)


@bp.route('/init_repo', methods=['POST'])
def init_repo():
    """Create the default blob repository."""
    return _respond(_commands().init_repo())


@bp.route('/save_blob', methods=['POST'])
def save_blob():
    """Store the raw request body in the default repository."""
    data = request.get_data()
    if not data:
        return _respond(CommandResult.failure(ValidationError("Request body is empty")))
    return _respond(_commands().save_blob(data))


@bp.route('/list_blobs', methods=['GET', 'POST'])
def list_blobs():
    """List content ids in the default repository."""
    return _respond(_commands().list_blobs())
