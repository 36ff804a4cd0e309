"""
Manifests: the ordered chunk list that reconstructs one source file.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Tuple

from .hashing import ContentID, DEFAULT_HASH_METHOD, HashMethod


MANIFEST_VERSION = 1


class ManifestError(Exception):
    """Raised when a manifest is incomplete, inconsistent or already sealed."""
    pass


@dataclass(frozen=True)
class ManifestEntry:
    content_id: ContentID
    length: int


@dataclass(frozen=True)
class Manifest:
    """A sealed, immutable manifest."""
    source_path: str
    total_size: int
    entries: Tuple[ManifestEntry, ...]
    hash_method: str = DEFAULT_HASH_METHOD.name
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def chunk_count(self) -> int:
        return len(self.entries)

    def to_dict(self) -> dict:
        return {
            'version': MANIFEST_VERSION,
            'source_path': self.source_path,
            'total_size': self.total_size,
            'hash_method': self.hash_method,
            'created_at': self.created_at.isoformat(),
            'chunks': [{'id': e.content_id, 'length': e.length} for e in self.entries]
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict) -> 'Manifest':
        try:
            if data.get('version') != MANIFEST_VERSION:
                raise ManifestError(f"Unsupported manifest version: {data.get('version')}")
            entries = tuple(ManifestEntry(c['id'], int(c['length'])) for c in data['chunks'])
            manifest = cls(
                source_path=data['source_path'],
                total_size=int(data['total_size']),
                entries=entries,
                hash_method=data.get('hash_method', DEFAULT_HASH_METHOD.name),
                created_at=datetime.fromisoformat(data['created_at'])
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ManifestError(f"Malformed manifest: {e}") from e

        if sum(e.length for e in manifest.entries) != manifest.total_size:
            raise ManifestError("Manifest chunk lengths do not add up to total_size")
        return manifest

    @classmethod
    def from_json(cls, text: str) -> 'Manifest':
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Malformed manifest: {e}") from e
        return cls.from_dict(data)


class ManifestBuilder:
    """
    Accumulates chunk entries for one source file.

    Entries are indexed by chunk position, so workers may report completions
    out of order; ``seal`` emits them in stream order.
    """

    def __init__(self, hash_method: HashMethod = DEFAULT_HASH_METHOD):
        self.hash_method = hash_method
        self._entries: Dict[int, ManifestEntry] = {}
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def __len__(self):
        return len(self._entries)

    def add(self, index: int, content_id: ContentID, length: int):
        if self._sealed:
            raise ManifestError("Cannot append to a sealed manifest")
        if index < 0:
            raise ManifestError(f"Invalid chunk index: {index}")
        if index in self._entries:
            raise ManifestError(f"Duplicate chunk index: {index}")
        self._entries[index] = ManifestEntry(content_id, length)

    def seal(self, total_size: int, source_path: str) -> Manifest:
        """
        Seal the manifest.

        Raises:
            ManifestError: If already sealed, if chunk positions have gaps, or if
                the chunk lengths do not add up to total_size
        """
        if self._sealed:
            raise ManifestError("Manifest already sealed")

        count = len(self._entries)
        missing = [i for i in range(count) if i not in self._entries]
        if missing:
            raise ManifestError(f"Missing chunk positions: {missing[:10]}")

        entries = tuple(self._entries[i] for i in range(count))
        summed = sum(e.length for e in entries)
        if summed != total_size:
            raise ManifestError(
                f"Chunk lengths add up to {summed} bytes but the source is {total_size} bytes"
            )

        self._sealed = True
        return Manifest(
            source_path=str(source_path),
            total_size=total_size,
            entries=entries,
            hash_method=self.hash_method.name
        )
