"""
SFTP transport for chunked backups.

The remote side uses the same content-addressed layout as the local blob
store:
    {remote_path}/chunks/{id[:2]}/{id}
    {remote_path}/manifests/{manifest file}

Chunks already present remotely are not uploaded again. Uploads are staged to
a temporary remote name and renamed into place, so an interrupted transfer
never leaves a truncated chunk under its final name.
"""

import io
import logging
import posixpath
import stat as stat_module
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .blob_store import chunk_relative_path, MANIFESTS_DIR
from .hashing import ContentID
from .manifest import ManifestEntry
from .sources import NotFoundError


logger = logging.getLogger(__name__)

# Errors raised by paramiko/socket when a session dies mid-operation
_TRANSPORT_ERRORS = (OSError, EOFError, paramiko.SSHException)


class AuthError(Exception):
    """Raised when the remote host rejects the credentials."""
    pass


class NetworkError(Exception):
    """Raised when a connection to the remote host cannot be established."""
    pass


class TransferError(Exception):
    """Raised when a transfer is interrupted or a remote operation fails."""
    pass


@dataclass
class RemoteTarget:
    """
    SFTP destination. Credentials are excluded from repr and never logged.
    """
    host: str
    username: str
    remote_path: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.port}{self.remote_path}"


@dataclass
class TransferReport:
    total: int = 0
    uploaded: int = 0
    skipped: int = 0
    bytes_transferred: int = 0
    attempts: int = 0

    @property
    def confirmed(self) -> int:
        return self.uploaded + self.skipped


class SFTPSession:
    """An authenticated SSH connection with an open SFTP channel."""

    def __init__(self, ssh_client, sftp_client, target: RemoteTarget):
        self.ssh_client = ssh_client
        self.sftp = sftp_client
        self.target = target
        self._known_dirs = set()

    def close(self):
        """Close SSH/SFTP connections."""
        for closable in (self.sftp, self.ssh_client):
            if closable is None:
                continue
            try:
                closable.close()
            except _TRANSPORT_ERRORS as e:
                logger.debug("Ignoring error while closing SFTP session: %s", e)
        self.sftp = None
        self.ssh_client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class SFTPTransporter:
    """
    Uploads chunk sets and manifests over SFTP with bounded retries.
    """

    def __init__(
            self,
            connect_timeout: float = 30.0,
            operation_timeout: float = 60.0,
            max_attempts: int = 5,
            retry_base_delay: float = 1.0,
            retry_max_delay: float = 30.0,
            sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.sleep = sleep

    def backoff_delay(self, failures: int) -> float:
        """Delay before the retry following the ``failures``-th failure (1-based)."""
        return min(self.retry_base_delay * (2 ** (failures - 1)), self.retry_max_delay)

    def connect(self, target: RemoteTarget) -> SFTPSession:
        """
        Establish an SFTP session.

        Raises:
            AuthError: If the credentials are rejected
            NetworkError: If the host cannot be reached
        """
        connect_kwargs = {
            'hostname': target.host,
            'port': target.port,
            'username': target.username,
            'timeout': self.connect_timeout,
            'banner_timeout': self.connect_timeout,
            'auth_timeout': self.connect_timeout,
        }

        # Use password or private key
        if target.password:
            connect_kwargs['password'] = target.password
            connect_kwargs['allow_agent'] = False
            connect_kwargs['look_for_keys'] = False
        elif target.private_key:
            key_path = Path(target.private_key).expanduser()
            if not key_path.exists():
                raise AuthError(f"Private key not found: {target.private_key}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise AuthError("Either password or private_key must be provided")

        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            ssh_client.connect(**connect_kwargs)
            sftp_client = ssh_client.open_sftp()
            sftp_client.get_channel().settimeout(self.operation_timeout)
        except (paramiko.AuthenticationException, paramiko.BadHostKeyException) as e:
            ssh_client.close()
            raise AuthError(f"SSH authentication failed for {target.describe()}: {e}") from e
        except _TRANSPORT_ERRORS as e:
            ssh_client.close()
            raise NetworkError(f"Failed to connect to {target.host}:{target.port}: {e}") from e

        logger.info("Connected to %s", target.describe())
        return SFTPSession(ssh_client, sftp_client, target)

    def mkdirs(self, session: SFTPSession, remote_dir: str):
        """Create ``remote_dir`` and any missing parents."""
        remote_dir = posixpath.normpath(remote_dir)
        if remote_dir in session._known_dirs:
            return

        is_abs = remote_dir.startswith('/')
        current = '/' if is_abs else ''
        for part in [p for p in remote_dir.split('/') if p and p != '.']:
            current = posixpath.join(current, part) if current else part
            if current in session._known_dirs:
                continue
            try:
                attrs = session.sftp.stat(current)
                if not stat_module.S_ISDIR(attrs.st_mode or 0):
                    raise TransferError(f"Remote path is not a directory: {current}")
            except FileNotFoundError:
                try:
                    session.sftp.mkdir(current)
                except _TRANSPORT_ERRORS as mk_exc:
                    # Lost a race with another writer; re-check before failing
                    try:
                        session.sftp.stat(current)
                    except _TRANSPORT_ERRORS:
                        raise TransferError(f"SFTP mkdir failed for '{current}': {mk_exc}") from mk_exc
            except _TRANSPORT_ERRORS as e:
                raise TransferError(f"Failed to stat remote directory {current}: {e}") from e
            session._known_dirs.add(current)

    def remote_chunk_path(self, session: SFTPSession, content_id: ContentID) -> str:
        return posixpath.join(session.target.remote_path, chunk_relative_path(content_id))

    def has_chunk(self, session: SFTPSession, content_id: ContentID, length: Optional[int] = None) -> bool:
        """
        Check whether the remote already holds a chunk.

        A chunk whose remote size differs from ``length`` counts as missing.
        """
        try:
            attrs = session.sftp.stat(self.remote_chunk_path(session, content_id))
        except FileNotFoundError:
            return False
        except _TRANSPORT_ERRORS as e:
            raise TransferError(f"Failed to check remote chunk {content_id}: {e}") from e
        return length is None or attrs.st_size == length

    def _commit(self, session: SFTPSession, tmp_path: str, remote_path: str):
        try:
            session.sftp.posix_rename(tmp_path, remote_path)
        except _TRANSPORT_ERRORS as e:
            self._discard(session, tmp_path)
            raise TransferError(f"Failed to rename {tmp_path} to {remote_path}: {e}") from e

    def _discard(self, session: SFTPSession, tmp_path: str):
        if session.sftp is None:
            return
        try:
            session.sftp.remove(tmp_path)
        except _TRANSPORT_ERRORS as e:
            logger.debug("Could not remove remote temp file %s: %s", tmp_path, e)

    def upload_chunk(self, session: SFTPSession, content_id: ContentID, data: bytes):
        """
        Upload one chunk body.

        Raises:
            TransferError: If the upload is interrupted
        """
        remote_path = self.remote_chunk_path(session, content_id)
        self.mkdirs(session, posixpath.dirname(remote_path))
        tmp_path = f"{remote_path}.{uuid.uuid4().hex[:8]}.tmp"

        try:
            session.sftp.putfo(io.BytesIO(data), tmp_path, file_size=len(data), confirm=True)
        except _TRANSPORT_ERRORS as e:
            self._discard(session, tmp_path)
            raise TransferError(f"Failed to upload chunk {content_id}: {e}") from e

        self._commit(session, tmp_path, remote_path)

    def upload(self, session: SFTPSession, local_path: str, remote_path: str):
        """
        Upload a local file, creating intermediate remote directories.

        Raises:
            NotFoundError: If the local file does not exist
            TransferError: If the upload is interrupted
        """
        if not Path(local_path).is_file():
            raise NotFoundError(f"Local file not found: {local_path}")

        self.mkdirs(session, posixpath.dirname(remote_path))
        tmp_path = f"{remote_path}.{uuid.uuid4().hex[:8]}.tmp"

        try:
            session.sftp.put(str(local_path), tmp_path, confirm=True)
        except _TRANSPORT_ERRORS as e:
            self._discard(session, tmp_path)
            raise TransferError(f"Failed to upload {local_path}: {e}") from e

        self._commit(session, tmp_path, remote_path)
        logger.info("Uploaded %s to %s", local_path, remote_path)

    def open(self, target: RemoteTarget) -> 'ResumableTransfer':
        return ResumableTransfer(self, target)


class ResumableTransfer:
    """
    One job's link to a remote target.

    Reconnects with exponential backoff after transient failures and keeps the
    set of chunks the remote has confirmed, so a retry only sends the
    remainder. Not meant to be shared between jobs.
    """

    def __init__(self, transporter: SFTPTransporter, target: RemoteTarget):
        self.transporter = transporter
        self.target = target
        self.session: Optional[SFTPSession] = None
        self.attempts = 0
        self.confirmed = set()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self.session is not None:
            self.session.close()
            self.session = None

    def _ensure_session(self) -> SFTPSession:
        if self.session is None:
            self.attempts += 1
            self.session = self.transporter.connect(self.target)
        return self.session

    def _retry(self, operation, description: str):
        failures = 0
        while True:
            try:
                return operation(self._ensure_session())
            except (NetworkError, TransferError) as e:
                failures += 1
                self.close()
                if failures >= self.transporter.max_attempts:
                    logger.error("%s failed after %d attempts: %s", description, failures, e)
                    raise
                delay = self.transporter.backoff_delay(failures)
                logger.warning(
                    "%s interrupted (%s); retrying in %.1fs (attempt %d/%d, %d chunks confirmed)",
                    description, e, delay, failures + 1, self.transporter.max_attempts, len(self.confirmed)
                )
                self.transporter.sleep(delay)

    def upload_chunks(
            self,
            entries: Iterable[ManifestEntry],
            read_chunk: Callable[[ContentID], bytes],
            on_chunk: Optional[Callable[[int, int], None]] = None,
            cancellation_check: Optional[Callable[[], None]] = None,
    ) -> TransferReport:
        """
        Upload every chunk the remote does not already hold.

        Args:
            entries: Manifest entries, in any order; duplicates are sent once
            read_chunk: Returns the bytes for a content id
            on_chunk: Called with (confirmed, total) after each chunk
            cancellation_check: Called between chunks; raises to abort

        Returns:
            TransferReport with upload/skip counts
        """
        unique: List[ManifestEntry] = []
        seen = set()
        for entry in entries:
            if entry.content_id not in seen:
                seen.add(entry.content_id)
                unique.append(entry)

        report = TransferReport(total=len(unique))

        def work(session: SFTPSession):
            for entry in unique:
                if entry.content_id in self.confirmed:
                    continue
                if cancellation_check:
                    cancellation_check()

                if self.transporter.has_chunk(session, entry.content_id, entry.length):
                    report.skipped += 1
                else:
                    data = read_chunk(entry.content_id)
                    self.transporter.upload_chunk(session, entry.content_id, data)
                    report.uploaded += 1
                    report.bytes_transferred += len(data)

                self.confirmed.add(entry.content_id)
                if on_chunk:
                    on_chunk(len(self.confirmed), report.total)

        self._retry(work, f"Chunk upload to {self.target.describe()}")
        report.attempts = self.attempts
        logger.info(
            "Chunk upload finished: %d uploaded, %d already present, %d bytes sent",
            report.uploaded, report.skipped, report.bytes_transferred
        )
        return report

    def upload_manifest(self, local_path: str) -> str:
        """Upload a manifest file into the remote manifests directory."""
        remote_path = posixpath.join(self.target.remote_path, MANIFESTS_DIR, Path(local_path).name)
        self._retry(
            lambda session: self.transporter.upload(session, local_path, remote_path),
            f"Manifest upload to {self.target.describe()}"
        )
        return remote_path

    def missing_chunks(self, entries: Iterable[ManifestEntry]) -> List[ContentID]:
        """Return content ids the remote does not hold with the expected size."""
        entries = list(entries)

        def work(session: SFTPSession):
            return [
                e.content_id for e in entries
                if not self.transporter.has_chunk(session, e.content_id, e.length)
            ]

        return self._retry(work, f"Remote verification on {self.target.describe()}")
