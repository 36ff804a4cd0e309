"""
Source resolution for backup jobs.

Turns a user-supplied source path into the ordered list of regular files to
chunk. A file source yields itself; a directory source is walked recursively
in sorted order so two runs over the same tree visit files identically.
"""

import os
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import List


class NotFoundError(Exception):
    """Raised when a source path is missing or unreadable."""
    pass


@dataclass(frozen=True)
class SourceFile:
    path: Path
    relative_path: str
    size: int


class LocalSource:
    """
    Handler for local filesystem sources.

    Lists the regular files under a file or directory path, skipping anything
    that matches an exclude pattern.
    """

    def __init__(self, path: str, exclude_patterns: List[str] = None):
        """
        Initialize local source handler.

        Args:
            path: File or directory path to backup
            exclude_patterns: List of glob patterns to exclude (e.g., *.pyc, __pycache__, .venv)
        """
        self.path = path
        self.exclude_patterns = exclude_patterns or []

    def _should_exclude(self, path: Path) -> bool:
        """
        Check if a path should be excluded based on exclude patterns.

        Args:
            path: Path to check

        Returns:
            True if path matches any exclude pattern, False otherwise
        """
        if not self.exclude_patterns:
            return False

        path_str = str(path)
        path_name = path.name

        for pattern in self.exclude_patterns:
            # Match against full path or just the name
            if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
                return True

        return False

    def resolve(self) -> Path:
        """
        Resolve and validate the source path.

        Raises:
            NotFoundError: If the path does not exist or cannot be read
        """
        source_path = Path(self.path).expanduser()

        if not source_path.exists():
            raise NotFoundError(f"Path does not exist: {self.path}")

        if not os.access(source_path, os.R_OK):
            raise NotFoundError(f"Permission denied accessing {self.path}")

        if not (source_path.is_file() or source_path.is_dir()):
            raise NotFoundError(f"Unsupported path type: {self.path}")

        return source_path.resolve()

    @property
    def is_directory(self) -> bool:
        return self.resolve().is_dir()

    def list_files(self) -> List[SourceFile]:
        """
        List the files to back up.

        Returns:
            SourceFile entries in deterministic (sorted) order

        Raises:
            NotFoundError: If the source or a file inside it cannot be read
        """
        source_path = self.resolve()

        if source_path.is_file():
            return [SourceFile(source_path, source_path.name, self._size(source_path))]

        files = []
        try:
            for root, dirs, names in os.walk(source_path, onerror=self._walk_error):
                root_path = Path(root)
                dirs[:] = sorted(d for d in dirs if not self._should_exclude(root_path / d))

                for name in sorted(names):
                    file_path = root_path / name
                    if self._should_exclude(file_path) or not file_path.is_file():
                        continue
                    if not os.access(file_path, os.R_OK):
                        raise NotFoundError(f"Permission denied accessing {file_path}")
                    files.append(SourceFile(
                        file_path,
                        file_path.relative_to(source_path).as_posix(),
                        self._size(file_path)
                    ))
        except PermissionError as e:
            raise NotFoundError(f"Permission denied accessing {self.path}: {e}") from e

        return files

    @staticmethod
    def _walk_error(error: OSError):
        # os.walk skips unreadable directories unless told otherwise
        raise NotFoundError(f"Permission denied accessing {error.filename}: {error}") from error

    @staticmethod
    def _size(path: Path) -> int:
        try:
            return path.stat().st_size
        except FileNotFoundError as e:
            raise NotFoundError(f"Path vanished during backup: {path}") from e
