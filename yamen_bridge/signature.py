"""
Yamen signature codec.

A signature is 16 bytes: the ASCII magic "YAME" followed by the first 12
bytes of HMAC-SHA256(secret, UID). The UID is upper-cased before signing so
"04a1b2c3" and "04A1B2C3" produce the same signature.
"""

import hashlib
import hmac

from . import config
from .errors import ConfigurationError

MAGIC = b"YAME"
DIGEST_BYTES = 12


class SignatureCodec:
    """Generate and verify card signatures for one shared secret."""

    def __init__(self, secret: str, min_length: int = config.MIN_SECRET_LENGTH):
        if not secret:
            raise ConfigurationError(f"{config.SECRET_ENV} is required")
        if len(secret) < min_length:
            raise ConfigurationError(
                f"{config.SECRET_ENV} must be at least {min_length} characters"
            )
        self._key = secret.encode()

    def generate(self, uid: str) -> bytes:
        if not uid:
            raise ValueError("UID is required for signature generation")
        digest = hmac.new(self._key, uid.upper().encode(), hashlib.sha256).digest()
        return MAGIC + digest[:DIGEST_BYTES]

    def generate_hex(self, uid: str) -> str:
        return self.generate(uid).hex().upper()

    def verify(self, uid: str, candidate) -> bool:
        """Check a raw block read against the expected signature for `uid`."""
        if not uid or candidate is None:
            return False
        candidate = bytes(candidate)
        if len(candidate) < len(MAGIC) + DIGEST_BYTES:
            return False
        if candidate[:len(MAGIC)] != MAGIC:
            return False
        return hmac.compare_digest(candidate[:16], self.generate(uid))


def parse_signature_hex(value) -> bytes | None:
    """Decode a 32-char hex signature from an action payload, or None."""
    if not isinstance(value, str):
        return None
    try:
        data = bytes.fromhex(value.strip())
    except ValueError:
        return None
    if len(data) != len(MAGIC) + DIGEST_BYTES:
        return None
    return data
