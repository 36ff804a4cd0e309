"""
Unit tests for the kopia snapshot client (backy/backup/repository.py).
"""

import json
import subprocess
from unittest.mock import patch

import pytest

from backy.backup.repository import KopiaRepository, RepositoryError


def completed(returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess(args=['kopia'], returncode=returncode, stdout=stdout, stderr=stderr)


class TestKopiaRepository:

    @patch('backy.backup.repository.subprocess.run')
    def test_snapshot_returns_id(self, mock_run):
        mock_run.return_value = completed(stdout=json.dumps({'id': 'k1a2b3', 'source': {'path': '/data'}}))

        assert KopiaRepository().snapshot('/data') == 'k1a2b3'

        args, kwargs = mock_run.call_args
        assert args[0] == ['kopia', 'snapshot', 'create', '/data', '--json']
        assert kwargs['capture_output'] is True
        assert kwargs['timeout'] == 3600.0

    @patch('backy.backup.repository.subprocess.run')
    def test_snapshot_falls_back_to_root_object(self, mock_run):
        mock_run.return_value = completed(stdout=json.dumps({'rootEntry': {'obj': 'kroot'}}))

        assert KopiaRepository().snapshot('/data') == 'kroot'

    @patch('backy.backup.repository.subprocess.run')
    def test_snapshot_returns_raw_output_without_json(self, mock_run):
        mock_run.return_value = completed(stdout='Created snapshot with root k99\n')

        assert KopiaRepository().snapshot('/data') == 'Created snapshot with root k99'

    @patch('backy.backup.repository.subprocess.run')
    def test_custom_binary_and_timeout(self, mock_run):
        mock_run.return_value = completed(stdout='{"id": "x"}')

        KopiaRepository(binary='/opt/kopia', timeout=5).snapshot('/data')

        args, kwargs = mock_run.call_args
        assert args[0][0] == '/opt/kopia'
        assert kwargs['timeout'] == 5

    @patch('backy.backup.repository.subprocess.run')
    def test_nonzero_exit(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr='ERROR repository not connected\n')

        with pytest.raises(RepositoryError) as exc_info:
            KopiaRepository().snapshot('/data')

        assert str(exc_info.value) == 'kopia failed with exit code: 1: ERROR repository not connected'

    @patch('backy.backup.repository.subprocess.run')
    def test_nonzero_exit_without_output(self, mock_run):
        mock_run.return_value = completed(returncode=2)

        with pytest.raises(RepositoryError, match='exit code: 2$'):
            KopiaRepository().snapshot('/data')

    @patch('backy.backup.repository.subprocess.run', side_effect=FileNotFoundError('kopia'))
    def test_binary_missing(self, mock_run):
        with pytest.raises(RepositoryError, match='not found'):
            KopiaRepository().snapshot('/data')

    @patch('backy.backup.repository.subprocess.run',
           side_effect=subprocess.TimeoutExpired(cmd='kopia', timeout=1))
    def test_timeout(self, mock_run):
        with pytest.raises(RepositoryError, match='timed out'):
            KopiaRepository(timeout=1).snapshot('/data')

    @patch('backy.backup.repository.subprocess.run')
    def test_list_snapshots(self, mock_run):
        mock_run.return_value = completed(stdout=json.dumps([{'id': 'a'}, {'id': 'b'}]))

        snapshots = KopiaRepository().list_snapshots('/data')

        assert [s['id'] for s in snapshots] == ['a', 'b']
        assert mock_run.call_args[0][0] == ['kopia', 'snapshot', 'list', '/data', '--json']

    @patch('backy.backup.repository.subprocess.run')
    def test_list_snapshots_bad_output(self, mock_run):
        mock_run.return_value = completed(stdout='not json')

        with pytest.raises(RepositoryError, match='Unexpected output'):
            KopiaRepository().list_snapshots('/data')
