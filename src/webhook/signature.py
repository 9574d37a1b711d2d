"""HMAC-SHA256 verification of inbound webhook bodies.

The platform signs the raw request body with the shared webhook secret and
sends the lowercase hex digest in a single header. Verification never raises:
a missing, garbled, or wrong-length signature is an ordinary rejection, and
so is an empty secret (a misconfigured deployment must not accept traffic).
"""

from __future__ import annotations

import hashlib
import hmac
import re
from collections.abc import Callable, Mapping

DEFAULT_SIGNATURE_HEADER = "x-avito-signature"
_PREFIX = "sha256="
_HEX_DIGEST = re.compile(r"[0-9a-fA-F]{64}")


def compute_signature(raw_body: bytes, secret: str | bytes) -> str:
    """Lowercase hex HMAC-SHA256 of ``raw_body``."""
    key = secret.encode() if isinstance(secret, str) else secret
    return hmac.new(key, raw_body, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    provided_signature: str | None,
    secret: str | bytes,
) -> bool:
    """Constant-time check of ``provided_signature`` against the body's MAC."""
    if not secret or not provided_signature:
        return False

    candidate = provided_signature.strip()
    if candidate.lower().startswith(_PREFIX):
        candidate = candidate[len(_PREFIX):]
    if not _HEX_DIGEST.fullmatch(candidate):
        return False
    provided = bytes.fromhex(candidate)

    key = secret.encode() if isinstance(secret, str) else secret
    expected = hmac.new(key, raw_body, hashlib.sha256).digest()
    if len(provided) != len(expected):
        return False
    return hmac.compare_digest(provided, expected)


def extract_signature(
    headers: Mapping[str, str],
    header_name: str = DEFAULT_SIGNATURE_HEADER,
) -> str | None:
    """Case-insensitive lookup of the one authoritative signature header."""
    wanted = header_name.lower()
    for name, value in headers.items():
        if name.lower() == wanted:
            return value
    return None


class SignatureVerifier:
    """Verifies request bodies against the secret current at call time."""

    def __init__(
        self,
        secret_provider: Callable[[], str],
        header_name: str = DEFAULT_SIGNATURE_HEADER,
    ) -> None:
        self._secret_provider = secret_provider
        self.header_name = header_name

    def is_configured(self) -> bool:
        return bool(self._secret_provider())

    def verify(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        provided = extract_signature(headers, self.header_name)
        return verify_signature(raw_body, provided, self._secret_provider())
