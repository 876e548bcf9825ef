"""
Opaque identifiers and PKCE (S256) helpers.
"""

import base64
import hashlib
import secrets
from typing import Tuple


def _b64url_no_pad(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def new_opaque_id() -> str:
    return _b64url_no_pad(secrets.token_bytes(32))


def s256_challenge(verifier: str) -> str:
    return _b64url_no_pad(hashlib.sha256(verifier.encode("ascii")).digest())


def make_pkce() -> Tuple[str, str]:
    """Return (verifier, challenge)."""
    verifier = new_opaque_id()
    return verifier, s256_challenge(verifier)
