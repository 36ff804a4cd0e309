"""
Backup executor - orchestrates one backup job through its state machine.

    Pending -> Chunking -> Persisting -> (Uploading) -> Verifying -> Completed
                                   any non-terminal state -> Failed

Job kinds:
1. local: chunk the source into a blob store at the destination directory
2. sftp: chunk into a staging blob store, then upload missing chunks and the
   manifest to the remote target
3. repository: hand the source tree to the snapshot backend (kopia)
"""

import enum
import logging
import os
import queue
import shutil
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .blob_store import LocalBlobStore
from .chunker import Chunk, ChunkerParams, FileChunker
from .hashing import HashMethod
from .manifest import Manifest, ManifestBuilder
from .repository import KopiaRepository
from .sftp import RemoteTarget, SFTPTransporter
from .sources import LocalSource, SourceFile


logger = logging.getLogger(__name__)


class VerificationError(Exception):
    """Raised when a finished backup does not reconstruct its source."""
    pass


class JobCancelledError(Exception):
    """Raised inside a job that was cancelled by its caller."""
    pass


class JobKind(str, enum.Enum):
    LOCAL = 'local'
    SFTP = 'sftp'
    REPOSITORY = 'repository'


class JobState(str, enum.Enum):
    PENDING = 'pending'
    CHUNKING = 'chunking'
    PERSISTING = 'persisting'
    UPLOADING = 'uploading'
    VERIFYING = 'verifying'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


@dataclass
class BackupSettings:
    """Tunables for executing jobs, usually built from the Flask config."""
    chunker_params: ChunkerParams = field(default_factory=ChunkerParams)
    hash_method: HashMethod = HashMethod.sha256
    max_workers: int = 4
    temp_dir: Optional[str] = None
    sftp_connect_timeout: float = 30.0
    sftp_operation_timeout: float = 60.0
    sftp_max_attempts: int = 5
    sftp_retry_base_delay: float = 1.0
    sftp_retry_max_delay: float = 30.0
    kopia_bin: str = 'kopia'
    kopia_timeout: Optional[float] = 3600.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'BackupSettings':
        return cls(
            chunker_params=ChunkerParams(
                min_size=config['CHUNK_MIN_SIZE'],
                avg_size=config['CHUNK_AVG_SIZE'],
                max_size=config['CHUNK_MAX_SIZE']
            ),
            hash_method=HashMethod.from_name(config['HASH_METHOD']),
            max_workers=config['MAX_WORKERS'],
            temp_dir=config.get('TEMP_DIR'),
            sftp_connect_timeout=config['SFTP_CONNECT_TIMEOUT'],
            sftp_operation_timeout=config['SFTP_OPERATION_TIMEOUT'],
            sftp_max_attempts=config['SFTP_MAX_ATTEMPTS'],
            sftp_retry_base_delay=config['SFTP_RETRY_BASE_DELAY'],
            sftp_retry_max_delay=config['SFTP_RETRY_MAX_DELAY'],
            kopia_bin=config['KOPIA_BIN'],
            kopia_timeout=config['KOPIA_TIMEOUT']
        )

    def transporter(self) -> SFTPTransporter:
        return SFTPTransporter(
            connect_timeout=self.sftp_connect_timeout,
            operation_timeout=self.sftp_operation_timeout,
            max_attempts=self.sftp_max_attempts,
            retry_base_delay=self.sftp_retry_base_delay,
            retry_max_delay=self.sftp_retry_max_delay
        )

    def repository(self) -> KopiaRepository:
        return KopiaRepository(binary=self.kopia_bin, timeout=self.kopia_timeout)


@dataclass(frozen=True)
class JobEvent:
    job_id: str
    type: str
    state: JobState
    processed: int = 0
    total: Optional[int] = None
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'type': self.type,
            'state': self.state.value,
            'processed': self.processed,
            'total': self.total,
            'message': self.message,
            'timestamp': self.timestamp.isoformat()
        }


class BackupJob:
    """
    One backup invocation.

    Only the executor running the job mutates it; everyone else reads
    ``snapshot()`` or consumes ``events``.
    """

    def __init__(
            self,
            kind: JobKind,
            source_path: str,
            destination: Optional[str] = None,
            target: Optional[RemoteTarget] = None,
            exclude_patterns: Optional[List[str]] = None,
    ):
        self.id = uuid.uuid4().hex
        self.kind = JobKind(kind)
        self.source_path = source_path
        self.destination = destination
        self.target = target
        self.exclude_patterns = exclude_patterns or []

        self.state = JobState.PENDING
        self.chunks_processed = 0
        self.chunks_total: Optional[int] = None
        self.bytes_processed = 0
        self.chunks_stored = 0
        self.chunks_uploaded = 0
        self.result: Optional[str] = None
        self.error_kind: Optional[str] = None
        self.error_message: Optional[str] = None
        self.created_at = datetime.now(timezone.utc)
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.logs: List[str] = []

        self.events: 'queue.Queue[JobEvent]' = queue.Queue()
        self.done = threading.Event()
        self._lock = threading.Lock()

    @property
    def destination_description(self) -> Optional[str]:
        if self.kind == JobKind.SFTP and self.target is not None:
            return self.target.describe()
        if self.kind == JobKind.REPOSITORY:
            return 'kopia'
        return self.destination

    def _update(self, **fields):
        with self._lock:
            for key, value in fields.items():
                setattr(self, key, value)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'id': self.id,
                'kind': self.kind.value,
                'source_path': self.source_path,
                'destination': self.destination_description,
                'state': self.state.value,
                'chunks_processed': self.chunks_processed,
                'chunks_total': self.chunks_total,
                'bytes_processed': self.bytes_processed,
                'chunks_stored': self.chunks_stored,
                'chunks_uploaded': self.chunks_uploaded,
                'result': self.result,
                'error': {'kind': self.error_kind, 'message': self.error_message} if self.error_kind else None,
                'created_at': self.created_at.isoformat(),
                'started_at': self.started_at.isoformat() if self.started_at else None,
                'completed_at': self.completed_at.isoformat() if self.completed_at else None,
                'logs': list(self.logs)
            }

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done.wait(timeout)

    def __repr__(self):
        return f'<BackupJob {self.id} kind={self.kind.value} state={self.state.value}>'


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a job.
    """

    def __init__(self, job: BackupJob, settings: Optional[BackupSettings] = None):
        """
        Initialize backup executor.

        Args:
            job: BackupJob to execute
            settings: Chunking, worker and transport settings
        """
        self.job = job
        self.settings = settings or BackupSettings()
        self.temp_dir = None
        self._cancelled = threading.Event()
        self._listeners: List[Callable[[JobEvent], None]] = []

    def add_listener(self, listener: Callable[[JobEvent], None]):
        self._listeners.append(listener)

    def cancel(self):
        """Request cooperative cancellation; honored at the next chunk boundary."""
        self._cancelled.set()
        self._log("Cancellation requested")

    def execute(self) -> BackupJob:
        """
        Execute the backup job.

        Returns:
            The job, in state completed or failed
        """
        self.job._update(started_at=datetime.now(timezone.utc))
        self._log(f"Starting {self.job.kind.value} backup of {self.job.source_path}")

        try:
            result = self._execute_workflow()

            self.job._update(result=result)
            self._transition(JobState.COMPLETED)
            self._log(f"Backup completed successfully: {result}")

        except Exception as e:
            self.job._update(error_kind=type(e).__name__, error_message=str(e))
            self._log(f"Backup failed: {type(e).__name__}: {e}")
            self._transition(JobState.FAILED, message=str(e))

        finally:
            self.job._update(completed_at=datetime.now(timezone.utc))
            self._release_credentials()
            self._cleanup()
            self.job.done.set()

        return self.job

    def _execute_workflow(self) -> str:
        self._check_cancelled()

        if self.job.kind == JobKind.REPOSITORY:
            return self._run_repository()

        source = LocalSource(self.job.source_path, self.job.exclude_patterns)
        files = source.list_files()
        self._log(f"Found {len(files)} file(s) to back up")

        if self.job.kind == JobKind.LOCAL:
            return self._run_local(source, files)
        return self._run_sftp(source, files)

    def _run_local(self, source: LocalSource, files: List[SourceFile]) -> str:
        self._transition(JobState.CHUNKING)
        store = LocalBlobStore(self.job.destination, hash_method=self.settings.hash_method)

        manifests = self._chunk_and_persist(files, store)

        self._transition(JobState.VERIFYING)
        self._verify_reconstruction(files, manifests)

        return self._finalize(store, source, files, manifests)[-1]

    def _run_sftp(self, source: LocalSource, files: List[SourceFile]) -> str:
        self._transition(JobState.CHUNKING)

        staging_root = self.settings.temp_dir
        if staging_root:
            os.makedirs(staging_root, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix='backy_sftp_', dir=staging_root)
        self._log(f"Staging directory: {self.temp_dir}")
        staging = LocalBlobStore(self.temp_dir, hash_method=self.settings.hash_method)

        manifests = self._chunk_and_persist(files, staging)
        entries = [entry for manifest in manifests for entry in manifest.entries]

        self._transition(JobState.UPLOADING)
        transporter = self.settings.transporter()
        with transporter.open(self.job.target) as link:
            report = link.upload_chunks(
                entries,
                staging.get,
                on_chunk=self._upload_progress,
                cancellation_check=self._check_cancelled
            )
            self.job._update(chunks_uploaded=report.uploaded)
            self._log(
                f"Uploaded {report.uploaded} chunk(s), {report.skipped} already on remote, "
                f"{report.bytes_transferred} bytes sent in {report.attempts} session(s)"
            )

            self._transition(JobState.VERIFYING)
            self._verify_reconstruction(files, manifests)
            missing = link.missing_chunks(entries)
            if missing:
                raise VerificationError(f"{len(missing)} chunk(s) missing on remote after upload")

            # The index (directory sources) goes last so it only lands once every manifest it names is there
            remote_paths = [link.upload_manifest(path) for path in self._finalize(staging, source, files, manifests)]
            return remote_paths[-1]

    def _run_repository(self) -> str:
        self._transition(JobState.UPLOADING)
        result = self.settings.repository().snapshot(self.job.source_path)

        self._transition(JobState.VERIFYING)
        if not result:
            raise VerificationError("Snapshot backend returned no snapshot id")
        return result

    def _chunk_and_persist(self, files: List[SourceFile], store: LocalBlobStore) -> List[Manifest]:
        """
        Chunk every file and write the chunks to ``store``.

        Chunking runs on this thread; writes go to a bounded worker pool and
        their results are retired into the manifest by chunk position.
        """
        manifests = []
        max_workers = max(1, self.settings.max_workers)
        inflight = threading.BoundedSemaphore(max_workers * 2)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f'backy-{self.job.id[:8]}') as pool:
            for source_file in files:
                builder = ManifestBuilder(self.settings.hash_method)
                pending = []
                bytes_read = 0

                try:
                    for chunk in FileChunker(source_file.path, self.settings.chunker_params, self.settings.hash_method):
                        self._check_cancelled()
                        if self.job.state == JobState.CHUNKING:
                            self._transition(JobState.PERSISTING)

                        bytes_read += chunk.length
                        inflight.acquire()
                        future = pool.submit(self._store_chunk, store, chunk)
                        future.add_done_callback(lambda _f: inflight.release())
                        pending.append(future)

                        pending = self._retire(pending, builder, block=False)

                    pending = self._retire(pending, builder, block=True)
                except BaseException:
                    # In-flight writes finish (or roll back) before errors propagate
                    wait(pending)
                    raise

                manifests.append(builder.seal(bytes_read, str(source_file.path)))
                self._log(f"Chunked {source_file.relative_path}: {len(builder)} chunk(s), {bytes_read} bytes")

        # Empty sources still pass through Persisting
        if self.job.state == JobState.CHUNKING:
            self._transition(JobState.PERSISTING)

        return manifests

    @staticmethod
    def _store_chunk(store: LocalBlobStore, chunk: Chunk) -> Tuple[int, str, int, bool]:
        stored = store.put(chunk.content_id, chunk.data)
        chunk.data = None
        return chunk.index, chunk.content_id, chunk.length, stored

    def _retire(self, pending, builder: ManifestBuilder, block: bool):
        """Record finished writes in the manifest; return the still-running ones."""
        remaining = []
        for future in pending:
            if not block and not future.done():
                remaining.append(future)
                continue
            index, content_id, length, stored = future.result()
            builder.add(index, content_id, length)
            with self.job._lock:
                self.job.chunks_processed += 1
                self.job.bytes_processed += length
                if stored:
                    self.job.chunks_stored += 1
                processed = self.job.chunks_processed
            self._emit('progress', processed=processed, total=self.job.chunks_total)
        return remaining

    def _upload_progress(self, confirmed: int, total: int):
        self.job._update(chunks_processed=confirmed, chunks_total=total)
        self._emit('progress', processed=confirmed, total=total)

    def _verify_reconstruction(self, files: List[SourceFile], manifests: List[Manifest]):
        for source_file, manifest in zip(files, manifests):
            summed = sum(entry.length for entry in manifest.entries)
            try:
                current_size = os.path.getsize(source_file.path)
            except OSError as e:
                raise VerificationError(f"Source vanished during backup: {source_file.path}") from e
            if summed != manifest.total_size or summed != current_size:
                raise VerificationError(
                    f"{source_file.relative_path}: chunks add up to {summed} bytes, "
                    f"source is {current_size} bytes"
                )
        self._log(f"Verified {len(manifests)} manifest(s)")

    def _finalize(self, store: LocalBlobStore, source: LocalSource,
                  files: List[SourceFile], manifests: List[Manifest]) -> List[str]:
        """
        Write manifests to ``store``.

        Returns:
            Paths written; the last one identifies the backup (the manifest for a
            file source, the index for a directory source)
        """
        if not source.is_directory:
            return [store.finalize(manifests[0])]

        written = []
        index_entries = []
        for source_file, manifest in zip(files, manifests):
            manifest_path = store.finalize(manifest)
            written.append(manifest_path)
            index_entries.append({
                'path': source_file.relative_path,
                'size': manifest.total_size,
                'manifest': os.path.relpath(manifest_path, store.base_path)
            })
        written.append(store.finalize_index(self.job.source_path, index_entries))
        return written

    def _check_cancelled(self):
        if self._cancelled.is_set():
            raise JobCancelledError("Job was cancelled")

    def _transition(self, state: JobState, message: Optional[str] = None):
        if self.job.state.is_terminal:
            raise RuntimeError(f"Job {self.job.id} already {self.job.state.value}")
        self.job._update(state=state)
        logger.debug("Job %s -> %s", self.job.id, state.value)
        self._emit('state', message=message)

    def _emit(self, event_type: str, processed: Optional[int] = None,
              total: Optional[int] = None, message: Optional[str] = None):
        event = JobEvent(
            job_id=self.job.id,
            type=event_type,
            state=self.job.state,
            processed=self.job.chunks_processed if processed is None else processed,
            total=self.job.chunks_total if total is None else total,
            message=message
        )
        self.job.events.put(event)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning("Job event listener failed: %s", e)

    def _release_credentials(self):
        target = self.job.target
        if target is not None:
            target.password = None
            target.private_key = None

    def _cleanup(self):
        """Remove the staging directory."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up staging directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup staging directory: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        with self.job._lock:
            self.job.logs.append(f"[{timestamp}] {message}")
        logger.info("[job %s] %s", self.job.id[:8], message)
