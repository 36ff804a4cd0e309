"""
Content-addressed chunk storage in a local directory.

Layout:
    {base_path}/chunks/{id[:2]}/{id}
    {base_path}/manifests/{name}-{YYYYMMDD_HHMMSS}-{suffix}.json
"""

import errno
import json
import logging
import os
import tempfile
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Dict, Any

from .hashing import ContentID, DEFAULT_HASH_METHOD, HashMethod, digest, is_content_id
from .manifest import Manifest


logger = logging.getLogger(__name__)

CHUNKS_DIR = 'chunks'
MANIFESTS_DIR = 'manifests'
TEMP_SUFFIX = '.tmp'


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def chunk_relative_path(content_id: ContentID) -> str:
    if len(content_id) <= 2:
        raise ValueError(f'content id {content_id!r} too short')
    return f"{CHUNKS_DIR}/{content_id[:2]}/{content_id}"


def generate_manifest_filename(source_path: str) -> str:
    """
    Generate a standardized manifest filename.

    Format: {name}-{YYYYMMDD_HHMMSS}-{8 hex}.json
    """
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')

    name = os.path.basename(str(source_path).rstrip('/\\')) or 'backup'
    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_', '.') else '_'
        for c in name
    )

    return f"{safe_name}-{timestamp}-{uuid.uuid4().hex[:8]}.json"


class LocalBlobStore:
    """
    Deduplicating chunk store rooted at a destination directory.

    Chunks are written to a temporary name and atomically linked into place,
    so a chunk is either fully present under its final name or absent.
    """

    def __init__(self, base_path: str, hash_method: HashMethod = DEFAULT_HASH_METHOD, create: bool = True):
        """
        Initialize blob store.

        Args:
            base_path: Destination directory
            hash_method: Hash method used to derive content ids
            create: Create the directory layout if missing
        """
        self.base_path = Path(base_path)
        self.hash_method = hash_method

        if create:
            try:
                (self.base_path / CHUNKS_DIR).mkdir(parents=True, exist_ok=True)
                (self.base_path / MANIFESTS_DIR).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to create blob store at {self.base_path}: {e}") from e

    def chunk_path(self, content_id: ContentID) -> Path:
        return self.base_path / chunk_relative_path(content_id)

    def has(self, content_id: ContentID) -> bool:
        """
        Check whether a chunk is stored.

        Raises:
            StorageError: If the chunk directory cannot be inspected
        """
        chunk_path = self.chunk_path(content_id)
        try:
            return chunk_path.is_file()
        except OSError as e:
            raise StorageError(f"Failed to check chunk {content_id}: {e}") from e

    def put(self, content_id: ContentID, data: bytes) -> bool:
        """
        Store a chunk unless one with the same content id already exists.

        The temp file is hard-linked to its final name, which fails if the name
        is taken. Concurrent writers of the same chunk, in this process or
        another one sharing the directory, therefore see exactly one
        successful write.

        Args:
            content_id: Content id of ``data``
            data: Chunk bytes

        Returns:
            True if a new file was written, False on a dedup hit

        Raises:
            StorageError: If the destination is unwritable or the disk fills up
        """
        if self.has(content_id):
            return False

        final_path = self.chunk_path(content_id)
        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Permission denied writing to {final_path.parent}: {e}") from e

        tmp_path = self._write_temp(final_path, data)
        try:
            os.link(tmp_path, final_path)
        except FileExistsError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to commit chunk {content_id}: {e}") from e
        finally:
            self._discard(tmp_path)

        logger.debug("Stored chunk %s (%d bytes)", content_id, len(data))
        return True

    def _write_temp(self, final_path: Path, data: bytes) -> Path:
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{final_path.name}.",
                suffix=TEMP_SUFFIX,
                dir=final_path.parent
            )
        except OSError as e:
            raise StorageError(f"Permission denied writing to {final_path.parent}: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except BaseException as e:
            self._discard(tmp_path)
            if isinstance(e, OSError):
                if e.errno == errno.ENOSPC:
                    raise StorageError(f"Disk full while writing {final_path.name}") from e
                raise StorageError(f"Failed to write chunk {final_path.name}: {e}") from e
            raise
        return tmp_path

    @staticmethod
    def _discard(tmp_path: Path):
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove temporary file %s: %s", tmp_path, e)

    def get(self, content_id: ContentID) -> bytes:
        """
        Read a chunk body.

        Raises:
            StorageError: If the chunk is missing or unreadable
        """
        try:
            return self.chunk_path(content_id).read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"Chunk not found: {content_id}") from e
        except OSError as e:
            raise StorageError(f"Failed to read chunk {content_id}: {e}") from e

    def list_ids(self) -> List[ContentID]:
        """List stored content ids, sorted."""
        chunks_root = self.base_path / CHUNKS_DIR
        if not chunks_root.exists():
            return []

        try:
            return sorted(
                p.name for p in chunks_root.glob('*/*')
                if p.is_file() and is_content_id(p.name, self.hash_method)
            )
        except OSError as e:
            raise StorageError(f"Failed to list chunks: {e}") from e

    def iter_temp_files(self) -> Iterator[Path]:
        """Yield orphaned temporary files left behind by interrupted writes."""
        chunks_root = self.base_path / CHUNKS_DIR
        if chunks_root.exists():
            yield from chunks_root.glob(f'*/.*{TEMP_SUFFIX}')

    def _write_json_atomic(self, dest_path: Path, payload: str) -> str:
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Permission denied writing to {dest_path.parent}: {e}") from e

        tmp_path = self._write_temp(dest_path, payload.encode('utf-8'))
        try:
            os.replace(tmp_path, dest_path)
        except OSError as e:
            self._discard(tmp_path)
            raise StorageError(f"Failed to write {dest_path}: {e}") from e
        return str(dest_path)

    def finalize(self, manifest: Manifest) -> str:
        """
        Write a sealed manifest next to the chunk set.

        Returns:
            Full path of the manifest file
        """
        dest_path = self.base_path / MANIFESTS_DIR / generate_manifest_filename(manifest.source_path)
        path = self._write_json_atomic(dest_path, manifest.to_json())
        logger.info("Wrote manifest %s (%d chunks, %d bytes)", path, manifest.chunk_count, manifest.total_size)
        return path

    def finalize_index(self, source_path: str, entries: List[Dict[str, Any]]) -> str:
        """
        Write a backup index for a directory source.

        Args:
            source_path: Backed-up directory
            entries: Dicts with 'path', 'size' and 'manifest' keys

        Returns:
            Full path of the index file
        """
        name = generate_manifest_filename(source_path)
        dest_path = self.base_path / MANIFESTS_DIR / f"{name[:-len('.json')]}.index.json"
        payload = json.dumps({
            'version': 1,
            'source_path': str(source_path),
            'total_size': sum(e['size'] for e in entries),
            'created_at': datetime.now().isoformat(),
            'files': entries
        }, indent=2)
        return self._write_json_atomic(dest_path, payload)

    def load_manifest(self, path: str) -> Manifest:
        try:
            text = Path(path).read_text(encoding='utf-8')
        except OSError as e:
            raise StorageError(f"Failed to read manifest {path}: {e}") from e
        return Manifest.from_json(text)

    def restore(self, manifest: Manifest, out_path: str) -> str:
        """
        Reassemble a file from its manifest.

        Each chunk is re-hashed before it is written out. The file is built
        under a temporary name and only appears at ``out_path`` once complete.

        Raises:
            StorageError: If a chunk is missing or fails its digest check
        """
        hash_method = HashMethod.from_name(manifest.hash_method)
        out = Path(out_path)
        try:
            out.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{out.name}.", suffix=TEMP_SUFFIX, dir=out.parent)
        except OSError as e:
            raise StorageError(f"Failed to restore to {out}: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, 'wb') as f:
                for entry in manifest.entries:
                    data = self.get(entry.content_id)
                    if len(data) != entry.length or digest(data, hash_method) != entry.content_id:
                        raise StorageError(f"Chunk {entry.content_id} is corrupt")
                    f.write(data)
            os.replace(tmp_path, out)
        except OSError as e:
            self._discard(tmp_path)
            raise StorageError(f"Failed to restore to {out}: {e}") from e
        except BaseException:
            self._discard(tmp_path)
            raise
        return str(out)

    def get_full_path(self, relative_path: str) -> str:
        """
        Get full filesystem path from relative path.

        Args:
            relative_path: Relative path from base_path

        Returns:
            Full filesystem path
        """
        return str(self.base_path / relative_path)
