"""One-way hashing and random material for OAuth2 secrets.

Client secrets, authorization codes, access and refresh tokens are all
server-generated with high entropy, so a plain SHA-256 digest is enough to
store and compare them. No salt or key material is involved: equal inputs
always produce equal digests, which is what lookup-by-hash relies on.
"""

import hashlib
import secrets


def hash_secret(secret: str) -> str:
    """Return the SHA-256 hex digest of an opaque secret."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_opaque_id(byte_length: int) -> str:
    """Random hex identifier with ``byte_length`` bytes of entropy."""
    return secrets.token_hex(byte_length)


def generate_token(byte_length: int = 48) -> str:
    """Random URL-safe token (refresh tokens)."""
    return secrets.token_urlsafe(byte_length)
