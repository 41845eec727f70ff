"""
Binary artifact codec.

Layout (all integers little-endian, unsigned):

    offset            field                     width
    0                 random salt               4
    4                 role count  (R)           1
    5                 member count (M)          2
    7                 role hashes               32 * R
    7 + 32R           member hashes             32 * M
    7 + 32(R + M)     member role bitmask       M

The publishable payload is ``base64(artifact) + "&" + token``.
"""

from __future__ import annotations

import base64
import binascii
import secrets
import struct

from .hashing import HASH_LENGTH
from .models import Snapshot

_HEADER = struct.Struct("<IBH")
HEADER_SIZE = _HEADER.size  # 7

MAX_ROLE_COUNT = 0xFF
MAX_MEMBER_COUNT = 0xFFFF
FILLER_SIZE = 8
DELIMITER = "&"


class PayloadEncodingError(Exception):
    """Raised when a snapshot cannot be laid out in the artifact format."""


class PayloadDecodingError(Exception):
    """Raised when bytes or a payload string are not a well-formed artifact."""


def artifact_size(role_count: int, member_count: int) -> int:
    """Exact byte length of an artifact with the given counts."""
    return HEADER_SIZE + HASH_LENGTH * (role_count + member_count) + member_count


def encode_snapshot(snapshot: Snapshot) -> bytes:
    """Lay out a valid snapshot as an artifact.

    Args:
        snapshot: Snapshot with ``valid=True``.

    Returns:
        bytes: The artifact.

    Raises:
        PayloadEncodingError: The snapshot breaks the layout's invariants.
            Callers never pass such snapshots; this guards against defects.
    """
    if not snapshot.valid:
        raise PayloadEncodingError("Refusing to encode an invalid snapshot")

    role_count = snapshot.role_count
    member_count = snapshot.member_count
    if role_count > MAX_ROLE_COUNT:
        raise PayloadEncodingError(f"Role count {role_count} exceeds {MAX_ROLE_COUNT}")
    if member_count > MAX_MEMBER_COUNT:
        raise PayloadEncodingError(f"Member count {member_count} exceeds {MAX_MEMBER_COUNT}")
    if len(snapshot.member_role_bitmask) != member_count:
        raise PayloadEncodingError("Member hashes and bitmasks are not index-aligned")

    out = bytearray(_HEADER.pack(snapshot.random_salt, role_count, member_count))
    for digest in (*snapshot.role_hashes, *snapshot.member_hashes):
        if len(digest) != HASH_LENGTH:
            raise PayloadEncodingError(f"Hash length {len(digest)} != {HASH_LENGTH}")
        out += digest
    try:
        out += bytes(snapshot.member_role_bitmask)
    except ValueError as exc:
        raise PayloadEncodingError(f"Bitmask does not fit in one byte: {exc}") from exc

    return bytes(out)


def decode_artifact(blob: bytes) -> Snapshot:
    """Parse an artifact back into a snapshot.

    Raises:
        PayloadDecodingError: If the blob is shorter or longer than its
            header says.
    """
    if len(blob) < HEADER_SIZE:
        raise PayloadDecodingError(f"Artifact too short: {len(blob)} bytes")

    salt, role_count, member_count = _HEADER.unpack_from(blob, 0)
    expected = artifact_size(role_count, member_count)
    if len(blob) != expected:
        raise PayloadDecodingError(
            f"Artifact length {len(blob)} does not match header ({expected} bytes expected)"
        )

    offset = HEADER_SIZE
    role_hashes = []
    for _ in range(role_count):
        role_hashes.append(blob[offset:offset + HASH_LENGTH])
        offset += HASH_LENGTH
    member_hashes = []
    for _ in range(member_count):
        member_hashes.append(blob[offset:offset + HASH_LENGTH])
        offset += HASH_LENGTH
    bitmask = list(blob[offset:offset + member_count])

    return Snapshot(
        valid=True,
        random_salt=salt,
        role_hashes=role_hashes,
        member_hashes=member_hashes,
        member_role_bitmask=bitmask,
    )


def filler_bytes(size: int = FILLER_SIZE) -> bytes:
    """Random stand-in artifact for guilds with nothing to publish."""
    return secrets.token_bytes(size)


def build_publishable(artifact: bytes, token: str) -> str:
    """Join an artifact and its token into the uploaded text."""
    return base64.b64encode(artifact).decode("ascii") + DELIMITER + token


def split_publishable(payload: str) -> tuple[bytes, str]:
    """Split uploaded text back into artifact bytes and token.

    Raises:
        PayloadDecodingError: Missing delimiter or bad base64.
    """
    encoded, sep, token = payload.strip().partition(DELIMITER)
    if not sep or not token:
        raise PayloadDecodingError("Payload has no token section")
    try:
        artifact = base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise PayloadDecodingError(f"Artifact is not valid base64: {exc}") from exc
    return artifact, token
