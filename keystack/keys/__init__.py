"""SSH key pair generation (via ssh-keygen) and public key loading."""

from keystack.keys.keygen import (
    KEY_TYPE_ALGORITHMS,
    KeyPairFiles,
    check_private_key_permissions,
    generate_key_pair,
    public_path_for,
)
from keystack.keys.loader import (
    EC2_ALGORITHMS,
    MIN_RSA_BITS,
    SUPPORTED_ALGORITHMS,
    PrivateKeyMaterialError,
    PublicKey,
    load_public_key,
    parse_public_key,
    read_public_key,
)

__all__ = [
    "EC2_ALGORITHMS",
    "KEY_TYPE_ALGORITHMS",
    "KeyPairFiles",
    "MIN_RSA_BITS",
    "PrivateKeyMaterialError",
    "PublicKey",
    "SUPPORTED_ALGORITHMS",
    "check_private_key_permissions",
    "generate_key_pair",
    "load_public_key",
    "parse_public_key",
    "public_path_for",
    "read_public_key",
]
