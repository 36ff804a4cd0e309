"""
Snapshot repository client.

Delegates whole-tree incremental backups to the kopia CLI. Kopia does its own
chunking and deduplication; this module only invokes it and reports what it
returns.
"""

import json
import logging
import subprocess
from typing import List, Optional


logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Raised when the snapshot backend fails."""
    pass


class KopiaRepository:
    """
    Thin wrapper around ``kopia snapshot`` commands.

    The repository itself (location, password, encryption) is whatever kopia is
    currently connected to.
    """

    def __init__(self, binary: str = 'kopia', timeout: Optional[float] = 3600.0):
        self.binary = binary
        self.timeout = timeout

    def _run(self, args: List[str]) -> str:
        cmd = [self.binary] + args
        logger.info("Running %s", ' '.join(cmd))

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise RepositoryError(f"Snapshot backend not found: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise RepositoryError(f"{self.binary} timed out after {self.timeout}s") from e
        except OSError as e:
            raise RepositoryError(f"Failed to run {self.binary}: {e}") from e

        if result.returncode != 0:
            detail = (result.stderr or '').strip() or (result.stdout or '').strip()
            message = f"{self.binary} failed with exit code: {result.returncode}"
            if detail:
                message = f"{message}: {detail}"
            raise RepositoryError(message)

        return result.stdout

    @staticmethod
    def _snapshot_id(output: str) -> Optional[str]:
        try:
            data = json.loads(output)
        except (json.JSONDecodeError, TypeError):
            return None

        if isinstance(data, list):
            data = data[-1] if data else None
        if not isinstance(data, dict):
            return None

        if isinstance(data.get('id'), str) and data['id']:
            return data['id']
        root = data.get('rootEntry')
        if isinstance(root, dict) and isinstance(root.get('obj'), str):
            return root['obj']
        return None

    def snapshot(self, source: str) -> str:
        """
        Create a snapshot of ``source``.

        Returns:
            Snapshot id if kopia reported one, otherwise kopia's raw output

        Raises:
            RepositoryError: If kopia fails or cannot be run
        """
        output = self._run(['snapshot', 'create', source, '--json'])
        snapshot_id = self._snapshot_id(output)
        if snapshot_id:
            logger.info("Created snapshot %s of %s", snapshot_id, source)
            return snapshot_id
        return output.strip()

    def list_snapshots(self, source: str) -> list:
        """
        List snapshots of ``source``.

        Returns:
            List of dicts as reported by ``kopia snapshot list --json``
        """
        output = self._run(['snapshot', 'list', source, '--json'])
        try:
            data = json.loads(output or '[]')
        except json.JSONDecodeError as e:
            raise RepositoryError(f"Unexpected output from {self.binary}: {e}") from e
        return data if isinstance(data, list) else [data]
