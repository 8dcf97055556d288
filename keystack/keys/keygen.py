"""``ssh-keygen`` wrapper.

Key generation is delegated entirely to the platform's ``ssh-keygen`` so
no cryptography is reimplemented here.  The wrapper only guards against
overwriting an existing key (a lost private key cannot be regenerated)
and verifies the pair that ``ssh-keygen`` produced.
"""

from __future__ import annotations

import logging
import os
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from keystack.keys.loader import MIN_RSA_BITS, PublicKey, load_public_key

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: ``ssh-keygen -t`` value → algorithm tag expected in the ``.pub`` file.
KEY_TYPE_ALGORITHMS: Dict[str, str] = {
    "rsa": "ssh-rsa",
    "ed25519": "ssh-ed25519",
    "ecdsa": "ecdsa-sha2-nistp",
}

DEFAULT_KEY_TYPE = "rsa"
DEFAULT_RSA_BITS = 4096

#: ``-b`` used when no size is given.  Types missing here take no ``-b``.
DEFAULT_BITS: Dict[str, int] = {
    "rsa": DEFAULT_RSA_BITS,
    "ecdsa": 256,
}

#: Curve sizes ``ssh-keygen -t ecdsa`` accepts.
ECDSA_BITS = (256, 384, 521)


@dataclass
class KeyPairFiles:
    """Paths of a generated key pair plus the parsed public key."""

    private_path: Path
    public_path: Path
    public_key: PublicKey


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def public_path_for(private_path: str | Path) -> Path:
    """Return ``<private_path>.pub``."""
    p = Path(private_path)
    return p.with_name(p.name + ".pub")


def build_keygen_command(
    private_path: Path,
    *,
    key_type: str = DEFAULT_KEY_TYPE,
    bits: Optional[int] = None,
    comment: str = "",
) -> List[str]:
    """Return the ``ssh-keygen`` argv for a passphrase-less key.

    *bits* defaults per type (see :data:`DEFAULT_BITS`) and is dropped for
    ed25519, which has a fixed size.

    Raises:
        ValueError: Unknown *key_type* or a size the type does not support.
    """
    if key_type not in KEY_TYPE_ALGORITHMS:
        raise ValueError(
            f"Unsupported key type '{key_type}'; expected one of: "
            f"{', '.join(sorted(KEY_TYPE_ALGORITHMS))}"
        )
    cmd = ["ssh-keygen", "-q", "-t", key_type]
    if key_type in DEFAULT_BITS:
        size = bits or DEFAULT_BITS[key_type]
        if key_type == "ecdsa" and size not in ECDSA_BITS:
            raise ValueError(
                f"ECDSA key size must be one of {', '.join(map(str, ECDSA_BITS))}, got {size}"
            )
        if key_type == "rsa" and size < MIN_RSA_BITS:
            raise ValueError(f"RSA key size must be at least {MIN_RSA_BITS}, got {size}")
        cmd += ["-b", str(size)]
    cmd += ["-N", "", "-C", comment, "-f", str(private_path)]
    return cmd


def check_private_key_permissions(private_path: str | Path) -> List[str]:
    """Return problems with the private key file's presence and mode.

    The file content is never read.
    """
    p = Path(private_path).expanduser()
    if not p.is_file():
        return [f"Private key {p} does not exist"]
    problems = []
    mode = stat.S_IMODE(p.stat().st_mode)
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        problems.append(
            f"Private key {p} is accessible by group/others (mode {mode:o}); run chmod 600"
        )
    return problems


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def generate_key_pair(
    private_path: str | Path,
    *,
    key_type: str = DEFAULT_KEY_TYPE,
    bits: Optional[int] = None,
    comment: str = "",
    overwrite: bool = False,
) -> KeyPairFiles:
    """Generate a key pair at *private_path* using ``ssh-keygen``.

    Afterwards exactly two files exist: *private_path* and
    ``<private_path>.pub``, the latter holding a key whose algorithm tag
    matches *key_type*.

    Raises:
        ValueError: Unknown *key_type* or unsupported *bits*.
        FileExistsError: Either file already exists and *overwrite* is False.
        FileNotFoundError: ``ssh-keygen`` is not on PATH.
        RuntimeError: ``ssh-keygen`` failed or produced an unexpected pair.
    """
    private = Path(private_path).expanduser()
    public = public_path_for(private)
    cmd = build_keygen_command(private, key_type=key_type, bits=bits, comment=comment)

    existing = [p for p in (private, public) if p.exists()]
    if existing and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing key file(s): "
            f"{', '.join(str(p) for p in existing)}"
        )
    for p in existing:
        logger.warning("Overwriting existing key file %s", p)
        p.unlink()

    private.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Running: %s", " ".join(cmd))

    try:
        proc = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise FileNotFoundError("ssh-keygen not found on PATH") from exc

    if proc.returncode != 0:
        raise RuntimeError(
            f"ssh-keygen failed (rc={proc.returncode}): "
            f"{proc.stderr.strip() or proc.stdout.strip()}"
        )

    missing = [str(p) for p in (private, public) if not p.is_file()]
    if missing:
        raise RuntimeError(f"ssh-keygen did not produce: {', '.join(missing)}")

    os.chmod(private, 0o600)

    try:
        key = load_public_key(public)
    except ValueError as exc:
        raise RuntimeError(f"ssh-keygen produced an unreadable public key: {exc}") from exc

    expected = KEY_TYPE_ALGORITHMS[key_type]
    if not key.algorithm.startswith(expected):
        raise RuntimeError(
            f"{public} holds a '{key.algorithm}' key, expected '{expected}'"
        )

    logger.info("Generated %s key pair %s (%s)", key.algorithm, private, key.fingerprint)
    return KeyPairFiles(private_path=private, public_path=public, public_key=key)
