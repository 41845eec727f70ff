"""SHA-256 helpers shared by the snapshot extractor and the publisher."""

from __future__ import annotations

import hashlib
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional, Union

HASH_LENGTH = 32

# Below this many items a thread pool costs more than it saves.
_PARALLEL_THRESHOLD = 256


def sha256(data: Union[bytes, str]) -> bytes:
    """Return the raw 32-byte SHA-256 digest of ``data``.

    Args:
        data: Bytes, or a string which is UTF-8 encoded first.

    Returns:
        bytes: The digest.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).digest()


def salted_hash(salt: int, value: str) -> bytes:
    """Hash ``value`` prefixed with the decimal rendering of ``salt``."""
    return sha256(f"{salt}{value}")


def hash_many(
    salt: int,
    values: Iterable[str],
    workers: Optional[int] = None,
) -> list[bytes]:
    """Salt-hash every value, keeping the input order.

    Large inputs are spread over a thread pool; ``Executor.map`` yields
    results in submission order so the output stays index-aligned.

    Args:
        salt: Per-cycle salt.
        values: Strings to hash.
        workers: Pool size. ``None`` lets the executor decide.

    Returns:
        list[bytes]: One digest per value.
    """
    items = list(values)
    if len(items) < _PARALLEL_THRESHOLD:
        return [salted_hash(salt, v) for v in items]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rolepass-hash") as pool:
        return list(pool.map(lambda v: salted_hash(salt, v), items))
