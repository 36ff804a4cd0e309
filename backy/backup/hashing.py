"""
Content addressing for chunks.

A ContentID is the lowercase hex digest of a chunk's bytes. The hash method is
pluggable so the algorithm can be upgraded without touching the chunker or the
blob store.
"""

import enum
import hashlib
from dataclasses import dataclass
from typing import Callable, Protocol


ContentID = str


class Hasher(Protocol):
    def update(self, b: bytes):
        ...

    def hexdigest(self) -> str:
        ...


@dataclass(frozen=True)
class _HashMethodItem:
    factory: Callable[[], Hasher]
    hex_length: int

    def create_hasher(self) -> Hasher:
        return self.factory()


class HashMethod(enum.Enum):
    sha256 = _HashMethodItem(hashlib.sha256, 64)
    blake2b = _HashMethodItem(lambda: hashlib.blake2b(digest_size=32), 64)
    sha3_256 = _HashMethodItem(hashlib.sha3_256, 64)

    @classmethod
    def from_name(cls, name: str) -> 'HashMethod':
        try:
            return cls[name]
        except KeyError:
            raise ValueError(f"Unknown hash method: {name}. Valid options: {[m.name for m in cls]}")


DEFAULT_HASH_METHOD = HashMethod.sha256


def create_hasher(hash_method: HashMethod = DEFAULT_HASH_METHOD) -> Hasher:
    return hash_method.value.create_hasher()


def digest(data: bytes, hash_method: HashMethod = DEFAULT_HASH_METHOD) -> ContentID:
    """Return the ContentID of ``data``."""
    hasher = create_hasher(hash_method)
    hasher.update(data)
    return hasher.hexdigest()


def is_content_id(value: str, hash_method: HashMethod = DEFAULT_HASH_METHOD) -> bool:
    if not isinstance(value, str) or len(value) != hash_method.value.hex_length:
        return False
    return all(c in '0123456789abcdef' for c in value)


def __verify_hex_length():
    for hash_method in HashMethod:
        s = digest(b'foo', hash_method)
        if len(s) != hash_method.value.hex_length:
            raise AssertionError('{} declares hex_length={}, but the actual hex length is {}'.format(
                hash_method.name, hash_method.value.hex_length, len(s)))


__verify_hex_length()
