"""Content hashing for change detection.

Hashes are fast non-cryptographic fingerprints, not integrity proofs.
xxHash is the preferred algorithm; FNV-1a 64-bit is the fallback when the
requested xxHash variant is unavailable. The two never agree, so a stored
hash is only comparable with one computed by the same algorithm.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Iterable
from pathlib import Path
from typing import Any

import xxhash

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "xxh64"
FALLBACK_ALGORITHM = "fnv1a64"

FNV64_OFFSET_BASIS = 14695981039346656037
FNV64_PRIME = 1099511628211
_MASK64 = 0xFFFFFFFFFFFFFFFF


def fnv1a_64(data: bytes) -> str:
    """FNV-1a 64-bit digest as 16 lowercase hex characters."""
    h = FNV64_OFFSET_BASIS
    for byte in data:
        h ^= byte
        h = (h * FNV64_PRIME) & _MASK64
    return f"{h:016x}"


class ContentHasher:
    """Computes deterministic content fingerprints.

    *algorithm* names an xxHash variant (``xxh32``, ``xxh64``, ``xxh3_64``,
    ``xxh3_128``). Unknown names fall back to FNV-1a with a warning; check
    :attr:`algorithm` to see which one is in effect.
    """

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM) -> None:
        self._factory: Any = None
        if algorithm in xxhash.algorithms_available:
            self._factory = getattr(xxhash, algorithm)
            self.algorithm = algorithm
        else:
            logger.warning(
                "Hash algorithm %r unavailable, falling back to %s",
                algorithm,
                FALLBACK_ALGORITHM,
            )
            self.algorithm = FALLBACK_ALGORITHM

    @property
    def is_fallback(self) -> bool:
        return self._factory is None

    def hash_bytes(self, data: bytes) -> str:
        if self._factory is None:
            return fnv1a_64(data)
        return self._factory(data).hexdigest()

    async def hash_stream(self, stream: AsyncIterable[bytes] | Iterable[bytes]) -> str:
        """Hash a chunked stream.

        The whole stream is buffered before hashing, so this is not suitable
        for unbounded streams.
        """
        if isinstance(stream, AsyncIterable):
            chunks = [bytes(chunk) async for chunk in stream]
        else:
            chunks = [bytes(chunk) for chunk in stream]
        return self.hash_bytes(b"".join(chunks))

    async def hash_file(self, path: str | Path) -> str:
        data = await asyncio.to_thread(Path(path).read_bytes)
        return self.hash_bytes(data)

    def compute_file_info(self, data: bytes) -> tuple[str, int]:
        """Return ``(file_hash, file_size)`` for *data*."""
        return self.hash_bytes(data), len(data)

    def has_changed(self, stored_hash: str | None, new_data: bytes) -> bool:
        """True unless *stored_hash* matches the hash of *new_data*.

        A missing stored hash always counts as changed.
        """
        if not stored_hash:
            return True
        return not hashes_equal(stored_hash, self.hash_bytes(new_data))


_default_hasher: ContentHasher | None = None


def get_default_hasher() -> ContentHasher:
    global _default_hasher
    if _default_hasher is None:
        _default_hasher = ContentHasher()
    return _default_hasher


def compute_file_hash(data: bytes) -> str:
    """Hash *data* with the default hasher."""
    return get_default_hasher().hash_bytes(data)


def compute_file_info(data: bytes) -> tuple[str, int]:
    return get_default_hasher().compute_file_info(data)


def hashes_equal(hash1: str | None, hash2: str | None) -> bool:
    """Case-insensitive comparison; a missing hash never equals anything."""
    if not hash1 or not hash2:
        return False
    return hash1.lower() == hash2.lower()


def has_content_changed(stored_hash: str | None, new_data: bytes) -> bool:
    return get_default_hasher().has_changed(stored_hash, new_data)
