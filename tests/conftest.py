"""Shared test fixtures for rolepass."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from rolepass.signer import TokenSigner, generate_keypair


@pytest.fixture(scope="session")
def key_dir(tmp_path_factory) -> Path:
    """One RSA key pair for the whole session (key generation is slow)."""
    path = tmp_path_factory.mktemp("keys")
    generate_keypair(path, bits=2048)
    return path


@pytest.fixture(scope="session")
def other_key_dir(tmp_path_factory) -> Path:
    """A second, unrelated key pair."""
    path = tmp_path_factory.mktemp("other-keys")
    generate_keypair(path, bits=2048)
    return path


@pytest.fixture
def signer(key_dir: Path) -> TokenSigner:
    return TokenSigner.from_key_dir(key_dir)


@pytest.fixture
def public_pem(key_dir: Path) -> str:
    return (key_dir / "public_key.pem").read_text(encoding="utf-8")


@pytest.fixture
def tmp_rolepass_home(tmp_path: Path, key_dir: Path) -> Path:
    """A RolePass home with the session key pair installed."""
    home = tmp_path / ".rolepass"
    for subdir in ("config", "logs", "registry"):
        (home / subdir).mkdir(parents=True)
    shutil.copytree(key_dir, home / "keys")
    return home
