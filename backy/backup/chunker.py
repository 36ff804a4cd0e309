"""
Content-defined chunking.

Splits a byte stream into variable-size chunks with a FastCDC gear hash. The
hash state is shifted one bit per byte, so each boundary decision depends only
on the last 64 bytes; boundaries therefore survive edits elsewhere in the file.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, Optional

from .hashing import ContentID, DEFAULT_HASH_METHOD, HashMethod, digest
from .sources import NotFoundError


READ_BLOCK_SIZE = 64 * 1024
MIN_CHUNK_SIZE_FLOOR = 64

_MASK64 = 0xFFFFFFFFFFFFFFFF


def _build_gear_table():
    table = []
    for i in range(256):
        seed = hashlib.sha256(b'backy-gear-' + bytes([i])).digest()
        table.append(int.from_bytes(seed[:8], 'big'))
    return tuple(table)


GEAR = _build_gear_table()


def _high_bit_mask(bits: int) -> int:
    # High bits mix the whole 64-byte window; low bits only see the last few bytes
    return ((1 << bits) - 1) << (64 - bits)


@dataclass(frozen=True)
class ChunkerParams:
    """Chunk size bounds for content-defined chunking."""
    min_size: int = 1 << 21
    avg_size: int = 1 << 22
    max_size: int = 1 << 23

    def __post_init__(self):
        if self.min_size < MIN_CHUNK_SIZE_FLOOR:
            raise ValueError(f"min_size must be at least {MIN_CHUNK_SIZE_FLOOR}, got {self.min_size}")
        if not self.min_size <= self.avg_size <= self.max_size:
            raise ValueError(
                f"Chunk sizes must satisfy min <= avg <= max, got "
                f"{self.min_size}/{self.avg_size}/{self.max_size}"
            )
        if self.avg_size & (self.avg_size - 1):
            raise ValueError(f"avg_size must be a power of two, got {self.avg_size}")

    @property
    def mask_small(self) -> int:
        return _high_bit_mask(self.avg_size.bit_length())

    @property
    def mask_large(self) -> int:
        return _high_bit_mask(self.avg_size.bit_length() - 2)


@dataclass
class Chunk:
    """A byte range of a source stream. ``data`` is dropped once persisted."""
    index: int
    offset: int
    length: int
    content_id: ContentID
    data: Optional[bytes] = None


def find_boundary(buf, params: ChunkerParams) -> int:
    """
    Return the length of the next chunk at the start of ``buf``.

    ``buf`` must hold at least ``params.max_size`` bytes unless the stream is
    exhausted, otherwise boundaries would depend on the read block size.
    """
    n = len(buf)
    if n <= params.min_size:
        return n
    if n > params.max_size:
        n = params.max_size
    normal = min(params.avg_size, n)

    mask_s = params.mask_small
    mask_l = params.mask_large
    gear = GEAR
    h = 0
    i = params.min_size
    while i < normal:
        h = ((h << 1) + gear[buf[i]]) & _MASK64
        if not h & mask_s:
            return i + 1
        i += 1
    while i < n:
        h = ((h << 1) + gear[buf[i]]) & _MASK64
        if not h & mask_l:
            return i + 1
        i += 1
    return n


def iter_chunks(
        stream: IO[bytes],
        params: ChunkerParams = ChunkerParams(),
        hash_method: HashMethod = DEFAULT_HASH_METHOD,
        read_size: int = READ_BLOCK_SIZE,
) -> Iterator[Chunk]:
    """
    Yield the chunks of ``stream`` in order.

    Memory use is bounded by one chunk buffer plus one read block.
    """
    buf = bytearray()
    offset = 0
    index = 0
    eof = False

    while True:
        while not eof and len(buf) < params.max_size:
            block = stream.read(read_size)
            if not block:
                eof = True
                break
            buf += block

        if not buf:
            return

        cut = find_boundary(buf, params)
        data = bytes(buf[:cut])
        del buf[:cut]

        yield Chunk(
            index=index,
            offset=offset,
            length=cut,
            content_id=digest(data, hash_method),
            data=data
        )
        offset += cut
        index += 1


class FileChunker:
    """
    Restartable chunk sequence over a file.

    Each iteration reopens the file, so the same instance can be walked more
    than once (e.g. a dry-run count followed by the real backup).
    """

    def __init__(self, path, params: ChunkerParams = ChunkerParams(),
                 hash_method: HashMethod = DEFAULT_HASH_METHOD):
        self.path = Path(path)
        self.params = params
        self.hash_method = hash_method

    def __iter__(self) -> Iterator[Chunk]:
        try:
            with open(self.path, 'rb') as f:
                yield from iter_chunks(f, self.params, self.hash_method)
        except OSError as e:
            raise NotFoundError(f"Failed to read {self.path}: {e}") from e

    def count(self) -> int:
        return sum(1 for _ in self)
