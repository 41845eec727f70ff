"""
Artifact token signing and verification.

Every published artifact is paired with a compact RS256 JWT. The token
asserts the hex SHA-256 of the artifact bytes (``dataHash``), when it was
issued (``iat``) and when it stops being valid (``exp``). A consumer
holding only the public key can check that the artifact it downloaded is
the one the publisher signed, and that it is still fresh.

Key files live in ``<home>/keys``:
    private_key.pem   PKCS#8 RSA private key (never leaves the host)
    public_key.pem    SubjectPublicKeyInfo, handed out to consumers
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel, Field

logger = logging.getLogger("rolepass.signer")

ALGORITHM = "RS256"
PRIVATE_KEY_FILE = "private_key.pem"
PUBLIC_KEY_FILE = "public_key.pem"


class SigningKeyError(Exception):
    """Raised when the signing key pair cannot be loaded."""


class TokenVerificationError(Exception):
    """Raised when a token fails signature or expiry checks."""


class TokenClaims(BaseModel):
    """Decoded claims of an artifact token."""

    data_hash: str = Field(description="Hex SHA-256 of the artifact bytes")
    issued_at: datetime
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        """Check if the token has expired."""
        return datetime.now(timezone.utc) > self.expires_at


class TokenSigner:
    """Issues artifact tokens with a key pair loaded once at startup.

    Args:
        private_key: RSA private key used for signing.
        public_key_pem: Matching public key, PEM text.
        clock: Returns the current unix time. Injectable for tests.
    """

    def __init__(
        self,
        private_key: rsa.RSAPrivateKey,
        public_key_pem: str,
        clock: Callable[[], float] = time.time,
    ):
        self._private_key = private_key
        self._public_key_pem = public_key_pem
        self._clock = clock

    @classmethod
    def from_key_dir(cls, key_dir: Path, clock: Callable[[], float] = time.time) -> "TokenSigner":
        """Load the key pair from ``key_dir``.

        Args:
            key_dir: Directory holding private_key.pem and public_key.pem.
            clock: Unix time source.

        Returns:
            TokenSigner: Ready to sign.

        Raises:
            SigningKeyError: If either key is missing, unreadable, not RSA,
                or the two keys do not belong together.
        """
        key_dir = Path(key_dir).expanduser()
        private_path = key_dir / PRIVATE_KEY_FILE
        public_path = key_dir / PUBLIC_KEY_FILE

        try:
            private_bytes = private_path.read_bytes()
            public_pem = public_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SigningKeyError(f"Cannot read signing keys in {key_dir}: {exc}") from exc

        try:
            private_key = serialization.load_pem_private_key(private_bytes, password=None)
            public_key = serialization.load_pem_public_key(public_pem.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            raise SigningKeyError(f"Invalid PEM key in {key_dir}: {exc}") from exc

        if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(public_key, rsa.RSAPublicKey):
            raise SigningKeyError("RS256 signing requires an RSA key pair")
        if private_key.public_key().public_numbers() != public_key.public_numbers():
            raise SigningKeyError("public_key.pem does not match private_key.pem")

        logger.info("Signing keys loaded from %s (%d bits)", key_dir, private_key.key_size)
        return cls(private_key, public_pem, clock=clock)

    def sign(self, data_hash_hex: str, expires_in: int) -> str:
        """Issue a token over an artifact hash.

        Args:
            data_hash_hex: Hex SHA-256 of the artifact.
            expires_in: Seconds from issuance until the token expires.

        Returns:
            str: Compact JWT.
        """
        now = int(self._clock())
        claims = {
            "dataHash": data_hash_hex,
            "iat": now,
            "exp": now + int(expires_in),
        }
        return jwt.encode(claims, self._private_key, algorithm=ALGORITHM)

    def public_key_pem(self) -> str:
        """Return the verification key handed out to consumers."""
        return self._public_key_pem


def verify_token(token: str, public_key_pem: str, leeway: int = 0) -> TokenClaims:
    """Verify an artifact token the way a consumer would.

    Args:
        token: Compact JWT from a publishable payload.
        public_key_pem: Publisher's verification key.
        leeway: Clock skew tolerance in seconds.

    Returns:
        TokenClaims: The decoded claims.

    Raises:
        TokenVerificationError: Bad signature, expired, or missing claims.
    """
    try:
        data = jwt.decode(
            token,
            public_key_pem,
            algorithms=[ALGORITHM],
            leeway=leeway,
            options={"require": ["exp", "iat", "dataHash"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenVerificationError("Token has expired") from exc
    except jwt.PyJWTError as exc:
        raise TokenVerificationError(f"Invalid token: {exc}") from exc

    return TokenClaims(
        data_hash=data["dataHash"],
        issued_at=datetime.fromtimestamp(data["iat"], tz=timezone.utc),
        expires_at=datetime.fromtimestamp(data["exp"], tz=timezone.utc),
    )


def generate_keypair(key_dir: Path, bits: int = 2048, overwrite: bool = False) -> Optional[Path]:
    """Write a fresh RSA key pair into ``key_dir``.

    Args:
        key_dir: Target directory, created if needed.
        bits: RSA modulus size.
        overwrite: Replace an existing pair.

    Returns:
        Path to the private key, or None if a pair already existed.
    """
    key_dir = Path(key_dir).expanduser()
    private_path = key_dir / PRIVATE_KEY_FILE
    public_path = key_dir / PUBLIC_KEY_FILE
    if private_path.exists() and not overwrite:
        return None

    key_dir.mkdir(parents=True, exist_ok=True)
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    os.chmod(private_path, 0o600)
    public_path.write_bytes(
        private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    logger.info("Generated %d-bit signing key pair in %s", bits, key_dir)
    return private_path
