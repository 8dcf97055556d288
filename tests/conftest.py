"""Shared key fixtures, generated once per session with ``cryptography``."""

from __future__ import annotations

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa


def _openssh_public(key) -> str:
    return key.public_key().public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH,
    ).decode("ascii")


@pytest.fixture(scope="session")
def rsa_private():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_pub(rsa_private) -> str:
    return _openssh_public(rsa_private) + " alice@laptop"


@pytest.fixture(scope="session")
def ed25519_pub() -> str:
    return _openssh_public(ed25519.Ed25519PrivateKey.generate()) + " bob@desk"


@pytest.fixture(scope="session")
def ecdsa_pub() -> str:
    return _openssh_public(ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture(scope="session")
def rsa1024_pub() -> str:
    return _openssh_public(rsa.generate_private_key(public_exponent=65537, key_size=1024))


@pytest.fixture(scope="session")
def private_openssh(rsa_private) -> str:
    return rsa_private.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.OpenSSH,
        serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(autouse=True)
def _isolated_config_home(tmp_path, monkeypatch):
    """Keep reports and state out of the real ~/.config."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
