"""
Backup core for Backy.

This module handles the core backup functionality including:
- Content-defined chunking and content addressing
- Deduplicating local blob storage and manifests
- SFTP transport with resumable uploads
- Snapshot repository backend (kopia)
- Execution orchestration
"""

from .blob_store import LocalBlobStore, StorageError
from .chunker import ChunkerParams, FileChunker
from .executor import BackupExecutor, BackupJob, BackupSettings, JobKind, JobState
from .hashing import HashMethod
from .manifest import Manifest, ManifestBuilder, ManifestError
from .repository import KopiaRepository, RepositoryError
from .sftp import AuthError, NetworkError, RemoteTarget, SFTPTransporter, TransferError
from .sources import LocalSource, NotFoundError

__all__ = [
    'AuthError',
    'BackupExecutor',
    'BackupJob',
    'BackupSettings',
    'ChunkerParams',
    'FileChunker',
    'HashMethod',
    'JobKind',
    'JobState',
    'KopiaRepository',
    'LocalBlobStore',
    'LocalSource',
    'Manifest',
    'ManifestBuilder',
    'ManifestError',
    'NetworkError',
    'NotFoundError',
    'RemoteTarget',
    'RepositoryError',
    'SFTPTransporter',
    'StorageError',
    'TransferError'
]
