"""
Command surface for UI callers.

Each command takes a validated request dataclass and returns a CommandResult:
either ``ok`` with a value, or an error kind (the exception class name, e.g.
``NotFoundError``) with a message. Commands never raise for backup failures.
"""

import logging
import os
from dataclasses import MISSING, dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional

from backy.backup.blob_store import LocalBlobStore
from backy.backup.chunker import FileChunker
from backy.backup.executor import BackupExecutor, BackupJob, BackupSettings, JobKind, JobState
from backy.backup.hashing import digest
from backy.backup.sftp import RemoteTarget
from backy.backup.sources import LocalSource


logger = logging.getLogger(__name__)

JobRunner = Callable[[BackupJob], BackupJob]


class ValidationError(ValueError):
    """Raised when a command request is incomplete or malformed."""
    pass


def _require(value, name):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{name} is required")
    return value


def build_request(request_cls, data: Optional[Dict[str, Any]]):
    """
    Build a request dataclass from a JSON-style mapping.

    Unknown keys are ignored. The result is validated.

    Raises:
        ValidationError: If a field is missing or has the wrong type
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    kwargs = {}
    for f in fields(request_cls):
        if f.name in data and data[f.name] is not None:
            kwargs[f.name] = data[f.name]

    if 'port' in kwargs:
        try:
            kwargs['port'] = int(kwargs['port'])
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid port: {kwargs['port']}")
    if 'exclude_patterns' in kwargs and not isinstance(kwargs['exclude_patterns'], list):
        raise ValidationError("exclude_patterns must be a list")

    try:
        request = request_cls(**kwargs)
    except TypeError:
        missing = [f.name for f in fields(request_cls)
                   if f.name not in kwargs and f.default is MISSING and f.default_factory is MISSING]
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

    request.validate()
    return request


@dataclass(frozen=True)
class SaveBlobLocalRequest:
    path: str
    dest_dir: str
    exclude_patterns: List[str] = field(default_factory=list)

    def validate(self):
        _require(self.path, 'path')
        _require(self.dest_dir, 'dest_dir')

    def to_job(self) -> BackupJob:
        return BackupJob(JobKind.LOCAL, self.path, destination=self.dest_dir, exclude_patterns=self.exclude_patterns)


@dataclass(frozen=True)
class SftpBackupRequest:
    host: str
    username: str
    local_path: str
    remote_path: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    exclude_patterns: List[str] = field(default_factory=list)

    def validate(self):
        _require(self.host, 'host')
        _require(self.username, 'username')
        _require(self.local_path, 'local_path')
        _require(self.remote_path, 'remote_path')
        if not isinstance(self.port, int) or isinstance(self.port, bool) or not 0 < self.port < 65536:
            raise ValidationError(f"Invalid port: {self.port}")
        if not self.password and not self.private_key:
            raise ValidationError("Either password or private_key is required")

    def target(self) -> RemoteTarget:
        return RemoteTarget(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            private_key=self.private_key,
            remote_path=self.remote_path
        )

    def to_job(self) -> BackupJob:
        return BackupJob(JobKind.SFTP, self.local_path, target=self.target(), exclude_patterns=self.exclude_patterns)


@dataclass(frozen=True)
class ChunkFileRequest:
    path: str

    def validate(self):
        _require(self.path, 'path')


@dataclass(frozen=True)
class BackupStartRequest:
    source: str

    def validate(self):
        _require(self.source, 'source')

    def to_job(self) -> BackupJob:
        return BackupJob(JobKind.REPOSITORY, self.source)


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    value: Any = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    job: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, value, job: Optional[Dict[str, Any]] = None) -> 'CommandResult':
        return cls(ok=True, value=value, job=job)

    @classmethod
    def failure(cls, error: BaseException, job: Optional[Dict[str, Any]] = None) -> 'CommandResult':
        return cls(ok=False, error_kind=type(error).__name__, error_message=str(error), job=job)

    @classmethod
    def from_job(cls, job: BackupJob) -> 'CommandResult':
        snapshot = job.snapshot()
        if job.state == JobState.COMPLETED:
            return cls(ok=True, value=job.result, job=snapshot)
        return cls(ok=False, error_kind=job.error_kind, error_message=job.error_message, job=snapshot)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            data = {'ok': True, 'result': self.value}
        else:
            data = {'ok': False, 'error': {'kind': self.error_kind, 'message': self.error_message}}
        if self.job is not None:
            data['job'] = self.job
        return data


class BackyCommands:
    """
    Typed entry points into the backup core.

    Args:
        settings: Chunking, worker and transport settings
        data_dir: Directory holding the default blob repository
        runner: Runs a BackupJob to completion; the scheduler-backed runner
            executes it on the background pool and waits
    """

    REPO_DIRNAME = 'repo'

    def __init__(self, settings: BackupSettings, data_dir: str, runner: JobRunner):
        self.settings = settings
        self.data_dir = data_dir
        self.runner = runner

    @classmethod
    def from_app(cls, app) -> 'BackyCommands':
        from backy import scheduler

        settings = BackupSettings.from_config(app.config)

        def runner(job: BackupJob) -> BackupJob:
            if scheduler.is_scheduler_running():
                return scheduler.run_job(job, settings)
            # No job runner in this process (START_SCHEDULER=False)
            return BackupExecutor(job, settings).execute()

        return cls(settings, app.config['DATA_DIR'], runner)

    def _run(self, job: BackupJob) -> CommandResult:
        job = self.runner(job)
        return CommandResult.from_job(job)

    def save_blob_local(self, request: SaveBlobLocalRequest) -> CommandResult:
        """Back up a file or directory into a local blob store; returns the manifest path."""
        try:
            request.validate()
        except ValidationError as e:
            return CommandResult.failure(e)

        return self._run(request.to_job())

    def sftp_backup(self, request: SftpBackupRequest) -> CommandResult:
        """Back up a file or directory to an SFTP server; returns the remote manifest path."""
        try:
            request.validate()
        except ValidationError as e:
            return CommandResult.failure(e)

        return self._run(request.to_job())

    def chunk_file(self, request: ChunkFileRequest) -> CommandResult:
        """Count the chunks a source would produce, without storing anything."""
        try:
            request.validate()
            files = LocalSource(request.path).list_files()
            count = 0
            for source_file in files:
                count += FileChunker(source_file.path, self.settings.chunker_params, self.settings.hash_method).count()
        except Exception as e:
            logger.info("chunk_file failed for %s: %s", request.path, e)
            return CommandResult.failure(e)
        return CommandResult.success(count)

    def backup_start(self, request: BackupStartRequest) -> CommandResult:
        """Snapshot a source tree with the repository backend; returns the snapshot id."""
        try:
            request.validate()
        except ValidationError as e:
            return CommandResult.failure(e)

        return self._run(request.to_job())

    def _repository_store(self) -> LocalBlobStore:
        return LocalBlobStore(os.path.join(self.data_dir, self.REPO_DIRNAME), hash_method=self.settings.hash_method)

    def init_repo(self) -> CommandResult:
        """Create the default blob repository; returns its path."""
        try:
            store = self._repository_store()
        except Exception as e:
            return CommandResult.failure(e)
        return CommandResult.success(str(store.base_path))

    def save_blob(self, data: bytes) -> CommandResult:
        """Store raw bytes in the default repository; returns their content id."""
        try:
            store = self._repository_store()
            content_id = digest(data, self.settings.hash_method)
            store.put(content_id, data)
        except Exception as e:
            return CommandResult.failure(e)
        return CommandResult.success(content_id)

    def list_blobs(self) -> CommandResult:
        try:
            ids = self._repository_store().list_ids()
        except Exception as e:
            return CommandResult.failure(e)
        return CommandResult.success(ids)
