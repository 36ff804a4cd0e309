"""
Unit tests for the SFTP transporter (backy/backup/sftp.py).

paramiko's SSHClient is replaced by the in-memory server from conftest.
"""

import socket

import paramiko
import pytest

from backy.backup.hashing import digest
from backy.backup.manifest import ManifestEntry
from backy.backup.sftp import (
    AuthError,
    NetworkError,
    RemoteTarget,
    SFTPTransporter,
    TransferError
)
from backy.backup.sources import NotFoundError


def make_chunks(count, size=100):
    blobs = {}
    entries = []
    for i in range(count):
        data = bytes([i % 256]) * size + str(i).encode()
        cid = digest(data)
        blobs[cid] = data
        entries.append(ManifestEntry(cid, len(data)))
    return entries, blobs


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def transporter(sleeps):
    return SFTPTransporter(
        connect_timeout=1.0,
        operation_timeout=1.0,
        max_attempts=3,
        retry_base_delay=1.0,
        retry_max_delay=30.0,
        sleep=sleeps.append
    )


class TestRemoteTarget:

    def test_repr_hides_credentials(self, remote_target):
        assert 's3cret-password' not in repr(remote_target)

    def test_describe(self, remote_target):
        assert remote_target.describe() == 'backup@backup.example.com:2222/backups'


class TestBackoff:

    def test_delays_double_and_cap(self):
        transporter = SFTPTransporter(retry_base_delay=1.0, retry_max_delay=5.0)
        assert [transporter.backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            SFTPTransporter(max_attempts=0)


class TestConnect:

    def test_password_login(self, fake_sftp, transporter, remote_target):
        session = transporter.connect(remote_target)

        kwargs = fake_sftp.connect_kwargs[0]
        assert kwargs['hostname'] == 'backup.example.com'
        assert kwargs['port'] == 2222
        assert kwargs['username'] == 'backup'
        assert kwargs['password'] == 's3cret-password'
        assert kwargs['look_for_keys'] is False
        session.sftp.channel.settimeout.assert_called_once_with(1.0)
        session.close()

    def test_key_file_login(self, fake_sftp, transporter, tmp_path):
        key = tmp_path / 'id_ed25519'
        key.write_text('key')
        target = RemoteTarget(host='h', username='u', remote_path='/r', private_key=str(key))

        transporter.connect(target).close()

        assert fake_sftp.connect_kwargs[0]['key_filename'] == str(key)

    def test_missing_key_file(self, fake_sftp, transporter, tmp_path):
        target = RemoteTarget(host='h', username='u', remote_path='/r', private_key=str(tmp_path / 'nope'))

        with pytest.raises(AuthError, match='Private key not found'):
            transporter.connect(target)

    def test_no_credentials(self, fake_sftp, transporter):
        with pytest.raises(AuthError):
            transporter.connect(RemoteTarget(host='h', username='u', remote_path='/r'))

    def test_rejected_credentials(self, fake_sftp, transporter, remote_target):
        fake_sftp.connect_errors.append(paramiko.AuthenticationException('Authentication failed.'))

        with pytest.raises(AuthError, match='authentication failed'):
            transporter.connect(remote_target)

    def test_unreachable_host(self, fake_sftp, transporter, remote_target):
        fake_sftp.connect_errors.append(socket.timeout('timed out'))

        with pytest.raises(NetworkError, match='backup.example.com:2222'):
            transporter.connect(remote_target)

    def test_ssh_protocol_error(self, fake_sftp, transporter, remote_target):
        fake_sftp.connect_errors.append(paramiko.SSHException('Error reading SSH protocol banner'))

        with pytest.raises(NetworkError):
            transporter.connect(remote_target)


class TestSessionOperations:

    def test_mkdirs_creates_parents(self, fake_sftp, transporter, remote_target):
        with transporter.connect(remote_target) as session:
            transporter.mkdirs(session, '/backups/chunks/ab')

        assert {'/backups', '/backups/chunks', '/backups/chunks/ab'} <= fake_sftp.dirs

    def test_mkdirs_rejects_file(self, fake_sftp, transporter, remote_target):
        fake_sftp.files['/backups'] = b'x'

        with transporter.connect(remote_target) as session:
            with pytest.raises(TransferError, match='not a directory'):
                transporter.mkdirs(session, '/backups/chunks')

    def test_upload_chunk_lands_under_content_id(self, fake_sftp, transporter, remote_target):
        data = b'chunk body'
        cid = digest(data)

        with transporter.connect(remote_target) as session:
            transporter.upload_chunk(session, cid, data)
            assert transporter.has_chunk(session, cid, len(data))

        assert fake_sftp.files[f'/backups/chunks/{cid[:2]}/{cid}'] == data
        assert fake_sftp.temp_files() == []

    def test_has_chunk_checks_size(self, fake_sftp, transporter, remote_target):
        cid = digest(b'full body')
        fake_sftp.files[f'/backups/chunks/{cid[:2]}/{cid}'] = b'trunc'

        with transporter.connect(remote_target) as session:
            assert not transporter.has_chunk(session, cid, len(b'full body'))
            assert transporter.has_chunk(session, cid)

    def test_upload_missing_local_file(self, fake_sftp, transporter, remote_target, tmp_path):
        with transporter.connect(remote_target) as session:
            with pytest.raises(NotFoundError):
                transporter.upload(session, str(tmp_path / 'nope.json'), '/backups/manifests/nope.json')

    def test_interrupted_upload_leaves_no_temp_file(self, fake_sftp, transporter, remote_target):
        fake_sftp.fail_after_puts = 0
        cid = digest(b'data')

        with transporter.connect(remote_target) as session:
            with pytest.raises(TransferError):
                transporter.upload_chunk(session, cid, b'data')

        assert fake_sftp.files == {}


class TestResumableTransfer:

    def test_uploads_every_chunk(self, fake_sftp, transporter, remote_target):
        entries, blobs = make_chunks(10)

        with transporter.open(remote_target) as link:
            report = link.upload_chunks(entries, blobs.__getitem__)

        assert report.total == 10
        assert report.uploaded == 10
        assert report.skipped == 0
        assert report.bytes_transferred == sum(len(b) for b in blobs.values())
        assert len(fake_sftp.chunk_files()) == 10

    def test_second_upload_transfers_nothing(self, fake_sftp, transporter, remote_target):
        entries, blobs = make_chunks(10)
        with transporter.open(remote_target) as link:
            link.upload_chunks(entries, blobs.__getitem__)
        received = fake_sftp.bytes_received

        with transporter.open(remote_target) as link:
            report = link.upload_chunks(entries, blobs.__getitem__)

        assert report.uploaded == 0
        assert report.skipped == 10
        assert report.bytes_transferred == 0
        assert fake_sftp.bytes_received == received

    def test_duplicate_entries_sent_once(self, fake_sftp, transporter, remote_target):
        entries, blobs = make_chunks(3)

        with transporter.open(remote_target) as link:
            report = link.upload_chunks(entries + entries, blobs.__getitem__)

        assert report.total == 3
        assert fake_sftp.put_count == 3

    def test_resumes_after_dropped_connection(self, fake_sftp, transporter, remote_target, sleeps):
        entries, blobs = make_chunks(10)
        fake_sftp.fail_after_puts = 3

        with transporter.open(remote_target) as link:
            report = link.upload_chunks(entries, blobs.__getitem__)

        # Three chunks were confirmed before the drop; only the other seven go again
        assert fake_sftp.put_count == 10
        assert report.uploaded == 10
        assert report.attempts == 2
        assert fake_sftp.connections == 2
        assert sleeps == [1.0]
        assert len(fake_sftp.chunk_files()) == 10
        assert fake_sftp.temp_files() == []

    def test_progress_callback(self, fake_sftp, transporter, remote_target):
        entries, blobs = make_chunks(4)
        progress = []

        with transporter.open(remote_target) as link:
            link.upload_chunks(entries, blobs.__getitem__, on_chunk=lambda done, total: progress.append((done, total)))

        assert progress == [(1, 4), (2, 4), (3, 4), (4, 4)]

    def test_gives_up_after_max_attempts(self, fake_sftp, transporter, remote_target, sleeps):
        entries, blobs = make_chunks(2)
        fake_sftp.connect_errors.extend([socket.timeout('timed out')] * 3)

        with transporter.open(remote_target) as link:
            with pytest.raises(NetworkError):
                link.upload_chunks(entries, blobs.__getitem__)

        assert sleeps == [1.0, 2.0]
        assert fake_sftp.put_count == 0

    def test_auth_error_is_not_retried(self, fake_sftp, transporter, remote_target, sleeps):
        entries, blobs = make_chunks(2)
        fake_sftp.connect_errors.append(paramiko.AuthenticationException('denied'))

        with transporter.open(remote_target) as link:
            with pytest.raises(AuthError):
                link.upload_chunks(entries, blobs.__getitem__)

        assert len(fake_sftp.connect_kwargs) == 1
        assert sleeps == []

    def test_cancellation_check_aborts(self, fake_sftp, transporter, remote_target):
        entries, blobs = make_chunks(5)
        calls = []

        def check():
            calls.append(1)
            if len(calls) > 2:
                raise KeyboardInterrupt

        with transporter.open(remote_target) as link:
            with pytest.raises(KeyboardInterrupt):
                link.upload_chunks(entries, blobs.__getitem__, cancellation_check=check)

        assert fake_sftp.put_count == 2

    def test_upload_manifest(self, fake_sftp, transporter, remote_target, tmp_path):
        manifest = tmp_path / 'file-20260101_000000-abcd1234.json'
        manifest.write_text('{}')

        with transporter.open(remote_target) as link:
            remote_path = link.upload_manifest(str(manifest))

        assert remote_path == '/backups/manifests/file-20260101_000000-abcd1234.json'
        assert fake_sftp.files[remote_path] == b'{}'

    def test_missing_chunks(self, fake_sftp, transporter, remote_target):
        entries, blobs = make_chunks(4)
        with transporter.open(remote_target) as link:
            link.upload_chunks(entries[:2], blobs.__getitem__)
            missing = link.missing_chunks(entries)

        assert missing == [entries[2].content_id, entries[3].content_id]
