"""
Shared pytest fixtures for Backy tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Backup settings with small chunk sizes
- An in-memory SFTP server standing in for paramiko
- Temporary file fixtures
"""

import errno
import posixpath
import random
import stat
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from backy import create_app
from backy import scheduler as job_scheduler
from backy.backup.chunker import ChunkerParams
from backy.backup.executor import BackupSettings


SMALL_CHUNKS = ChunkerParams(min_size=256, avg_size=1024, max_size=4096)


def random_bytes(size, seed=0):
    """Deterministic pseudo-random payload."""
    return random.Random(seed).randbytes(size)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Data, temp and log directories live under tmp_path. The job runner is
    started and torn down with each app.
    """
    data_dir = tmp_path / 'data'

    app = create_app('testing', config_overrides={
        'DATA_DIR': str(data_dir),
        'TEMP_DIR': str(data_dir / 'temp'),
        'LOG_DIR': str(data_dir / 'logs'),
    })

    yield app

    job_scheduler.stop_scheduler()
    with job_scheduler._registry_lock:
        job_scheduler._registry.clear()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def settings(tmp_path):
    """BackupSettings with small chunks and no retry delays."""
    return BackupSettings(
        chunker_params=SMALL_CHUNKS,
        max_workers=2,
        temp_dir=str(tmp_path / 'staging'),
        sftp_connect_timeout=1.0,
        sftp_operation_timeout=1.0,
        sftp_max_attempts=3,
        sftp_retry_base_delay=0.0,
        sftp_retry_max_delay=0.0
    )


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - src/test_file1.bin (random, several chunks)
    - src/test_file2.log
    - src/nested/test_file3.bin (copy of test_file1.bin)
    - src/test_file.pyc (should be excluded in tests)
    """
    src = tmp_path / 'src'
    src.mkdir()

    payload = random_bytes(20000, seed=1)
    (src / 'test_file1.bin').write_bytes(payload)
    (src / 'test_file2.log').write_text('Test log content')

    nested_dir = src / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.bin').write_bytes(payload)

    (src / 'test_file.pyc').write_bytes(b'compiled python')

    return src


@pytest.fixture
def sample_file(tmp_path):
    """A single 50 KB source file."""
    path = tmp_path / 'sample.bin'
    path.write_bytes(random_bytes(50000, seed=2))
    return path


class FakeSFTPServer:
    """
    In-memory SFTP server.

    Files and directories live in dicts keyed by absolute remote path. Set
    ``fail_after_puts`` to drop the connection once that many uploads have
    completed, or queue exceptions in ``connect_errors`` to fail connects.
    """

    def __init__(self):
        self.files = {}
        self.dirs = {'/'}
        self.put_count = 0
        self.bytes_received = 0
        self.fail_after_puts = None
        self.connect_errors = []
        self.connections = 0
        self.connect_kwargs = []

    def connect(self, **kwargs):
        self.connect_kwargs.append(kwargs)
        if self.connect_errors:
            raise self.connect_errors.pop(0)

    def open_sftp(self):
        self.connections += 1
        return FakeSFTPClient(self)

    def chunk_files(self):
        return {path: data for path, data in self.files.items() if '/chunks/' in path}

    def temp_files(self):
        return [path for path in self.files if path.endswith('.tmp')]


class FakeSFTPClient:
    """Just enough of paramiko.SFTPClient for the transporter."""

    def __init__(self, server):
        self.server = server
        self.closed = False
        self.channel = MagicMock()

    def _check(self):
        if self.closed:
            raise EOFError('Connection closed')

    def get_channel(self):
        return self.channel

    def stat(self, path):
        self._check()
        if path in self.server.files:
            return SimpleNamespace(st_size=len(self.server.files[path]), st_mode=stat.S_IFREG | 0o644)
        if path in self.server.dirs:
            return SimpleNamespace(st_size=0, st_mode=stat.S_IFDIR | 0o755)
        raise FileNotFoundError(errno.ENOENT, 'No such file', path)

    def mkdir(self, path):
        self._check()
        if posixpath.dirname(path) not in self.server.dirs:
            raise FileNotFoundError(errno.ENOENT, 'No such file', path)
        self.server.dirs.add(path)

    def putfo(self, fl, remotepath, file_size=0, callback=None, confirm=True):
        self._check()
        if self.server.fail_after_puts is not None and self.server.put_count >= self.server.fail_after_puts:
            # One drop per arm; the reconnect succeeds
            self.server.fail_after_puts = None
            self.closed = True
            raise EOFError('Connection dropped')
        data = fl.read()
        self.server.files[remotepath] = data
        self.server.put_count += 1
        self.server.bytes_received += len(data)

    def put(self, localpath, remotepath, callback=None, confirm=True):
        with open(localpath, 'rb') as f:
            self.putfo(f, remotepath, confirm=confirm)

    def posix_rename(self, oldpath, newpath):
        self._check()
        self.server.files[newpath] = self.server.files.pop(oldpath)

    def remove(self, path):
        self._check()
        if path not in self.server.files:
            raise FileNotFoundError(errno.ENOENT, 'No such file', path)
        del self.server.files[path]

    def close(self):
        self.closed = True


@pytest.fixture
def fake_sftp():
    """
    Patch paramiko's SSHClient so every connection lands on one FakeSFTPServer.
    """
    server = FakeSFTPServer()

    def make_client():
        client = MagicMock()
        client.connect.side_effect = server.connect
        client.open_sftp.side_effect = server.open_sftp
        return client

    with patch('backy.backup.sftp.SSHClient', side_effect=make_client):
        yield server


@pytest.fixture
def remote_target():
    from backy.backup.sftp import RemoteTarget
    return RemoteTarget(
        host='backup.example.com',
        port=2222,
        username='backup',
        password='s3cret-password',
        remote_path='/backups'
    )
