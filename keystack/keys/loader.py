"""OpenSSH public key loading and validation.

Only the **public** half of a key pair is ever read.  Anything that looks
like private key material is rejected before it can reach a template, a
log line or an API call.

Accepted input is a single ``authorized_keys``-style line::

    ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAA... user@host

Blank lines and ``#`` comment lines are ignored.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, List, Optional, TextIO

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Key algorithms the loader understands.
SUPPORTED_ALGORITHMS: FrozenSet[str] = frozenset(
    {
        "ssh-rsa",
        "ssh-ed25519",
        "ecdsa-sha2-nistp256",
        "ecdsa-sha2-nistp384",
        "ecdsa-sha2-nistp521",
    },
)

#: Subset that EC2 accepts as imported key material.
EC2_ALGORITHMS: FrozenSet[str] = frozenset({"ssh-rsa", "ssh-ed25519"})

MIN_RSA_BITS = 2048

_PRIVATE_KEY_MARKERS = ("PRIVATE KEY-----", "PuTTY-User-Key-File")


class PrivateKeyMaterialError(ValueError):
    """Raised when private key material is offered where a public key belongs."""


# ---------------------------------------------------------------------------
# PublicKey
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PublicKey:
    """A validated OpenSSH public key.

    Attributes:
        algorithm: Algorithm tag, e.g. ``ssh-rsa``.
        key_data: Base64-encoded key blob exactly as it appeared in the input.
        comment: Trailing comment (often ``user@host``); may be empty.
        bits: Key size in bits.
        fingerprint: ``SHA256:...`` fingerprint, same format as ``ssh-keygen -l``.
    """

    algorithm: str
    key_data: str
    comment: str = ""
    bits: int = 0
    fingerprint: str = ""

    @property
    def openssh(self) -> str:
        """Return the single-line ``authorized_keys`` representation."""
        line = f"{self.algorithm} {self.key_data}"
        if self.comment:
            line = f"{line} {self.comment}"
        return line

    @property
    def ec2_compatible(self) -> bool:
        """True when EC2 will accept this key for import."""
        return self.algorithm in EC2_ALGORITHMS

    def __str__(self) -> str:
        return self.openssh


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def looks_like_private_key(text: str) -> bool:
    """Return True if *text* contains private key markers."""
    return any(marker in text for marker in _PRIVATE_KEY_MARKERS)


def fingerprint_sha256(blob: bytes) -> str:
    """Return the OpenSSH ``SHA256:`` fingerprint of a raw key blob."""
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def _blob_algorithm(blob: bytes) -> str:
    """Read the length-prefixed algorithm name at the start of *blob*."""
    if len(blob) < 4:
        raise ValueError("Public key blob is truncated")
    (length,) = struct.unpack(">I", blob[:4])
    if length == 0 or len(blob) < 4 + length:
        raise ValueError("Public key blob is truncated")
    try:
        return blob[4 : 4 + length].decode("ascii")
    except UnicodeDecodeError as exc:
        raise ValueError("Public key blob has a non-ASCII algorithm name") from exc


def _key_bits(key: object) -> int:
    if isinstance(key, rsa.RSAPublicKey):
        return key.key_size
    if isinstance(key, ec.EllipticCurvePublicKey):
        return key.curve.key_size
    # Ed25519 keys have a fixed size
    return 256


def _key_lines(text: str) -> List[str]:
    lines = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        lines.append(line)
    return lines


def parse_public_key(text: str) -> PublicKey:
    """Parse and validate a single OpenSSH public key line.

    Raises:
        PrivateKeyMaterialError: If *text* contains private key material.
        ValueError: On any format violation (unknown algorithm, bad base64,
            algorithm/blob mismatch, undersized RSA key, multiple keys).
    """
    if looks_like_private_key(text):
        raise PrivateKeyMaterialError(
            "Input contains private key material; supply the public (.pub) key instead"
        )

    lines = _key_lines(text)
    if not lines:
        raise ValueError("No public key found in input")
    if len(lines) > 1:
        raise ValueError(
            f"Expected exactly one public key, found {len(lines)} key lines"
        )

    parts = lines[0].split(None, 2)
    if len(parts) < 2:
        raise ValueError(
            "Public key must be '<algorithm> <base64-key> [comment]'"
        )
    algorithm, key_data = parts[0], parts[1]
    comment = parts[2].strip() if len(parts) > 2 else ""

    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(
            f"Unsupported key algorithm '{algorithm}'; expected one of: "
            f"{', '.join(sorted(SUPPORTED_ALGORITHMS))}"
        )

    try:
        blob = base64.b64decode(key_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Public key data is not valid base64") from exc

    embedded = _blob_algorithm(blob)
    if embedded != algorithm:
        raise ValueError(
            f"Key algorithm prefix '{algorithm}' does not match key data ('{embedded}')"
        )

    if any(ord(ch) < 32 or ord(ch) == 127 for ch in comment):
        raise ValueError("Public key comment contains control characters")

    try:
        key = serialization.load_ssh_public_key(f"{algorithm} {key_data}".encode("ascii"))
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ValueError(f"Public key data could not be parsed: {exc}") from exc

    bits = _key_bits(key)
    if algorithm == "ssh-rsa" and bits < MIN_RSA_BITS:
        raise ValueError(
            f"RSA key is {bits} bits; at least {MIN_RSA_BITS} bits are required"
        )

    return PublicKey(
        algorithm=algorithm,
        key_data=key_data,
        comment=comment,
        bits=bits,
        fingerprint=fingerprint_sha256(blob),
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def read_public_key(stream: TextIO) -> PublicKey:
    """Read and validate a public key from an open text stream."""
    return parse_public_key(stream.read())


def load_public_key(path: str | Path) -> PublicKey:
    """Load and validate the public key stored at *path*.

    ``~`` is expanded.  If *path* is a private key and ``<path>.pub``
    exists, the error message points at it.

    Raises:
        FileNotFoundError: If *path* does not exist.
        PrivateKeyMaterialError: If *path* holds a private key.
        ValueError: If the content is not a valid public key.
    """
    p = Path(path).expanduser()
    if not p.is_file():
        raise FileNotFoundError(f"Public key file not found: {p}")

    text = p.read_text(encoding="utf-8", errors="replace")
    if looks_like_private_key(text):
        hint = _pub_sibling(p)
        msg = f"{p} is a private key; it must never leave this machine"
        if hint is not None:
            msg += f". Use {hint} instead"
        raise PrivateKeyMaterialError(msg)

    key = parse_public_key(text)
    logger.debug("Loaded %s key %s from %s", key.algorithm, key.fingerprint, p)
    return key


def _pub_sibling(path: Path) -> Optional[Path]:
    candidate = path.with_name(path.name + ".pub")
    return candidate if candidate.is_file() else None
