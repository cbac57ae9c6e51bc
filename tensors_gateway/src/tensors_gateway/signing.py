# src/tensors_gateway/signing.py

import hashlib
import hmac
from typing import Optional

FULL_SIGNATURE_LENGTH = hashlib.sha256().digest_size * 2
LEGACY_SIGNATURE_LENGTH = 32


def sign(message: bytes, secret: bytes, length: Optional[int] = None) -> str:
    """
    Returns the hex HMAC-SHA256 tag of `message` under `secret`.
    `length` truncates the hex tag; None keeps all 64 characters.
    """
    tag = hmac.new(secret, message, hashlib.sha256).hexdigest()
    if length is not None:
        return tag[:length]
    return tag


class Signer:
    def __init__(self, secret: bytes, length: Optional[int] = None):
        if not secret:
            raise ValueError("Signing secret must not be empty.")
        if length is not None and not LEGACY_SIGNATURE_LENGTH <= length <= FULL_SIGNATURE_LENGTH:
            raise ValueError(
                f"Signature length must be between {LEGACY_SIGNATURE_LENGTH} and {FULL_SIGNATURE_LENGTH}."
            )
        self._secret = secret
        self.length = length

    def sign(self, message: bytes) -> str:
        return sign(message, self._secret, self.length)

    def verify(self, message: bytes, tag: str) -> bool:
        # Both sides are compared as bytes so non-ASCII input cannot raise.
        expected = self.sign(message).encode("ascii")
        return hmac.compare_digest(expected, tag.encode("utf-8"))

    def __repr__(self) -> str:
        return f"Signer(length={self.length or FULL_SIGNATURE_LENGTH})"
