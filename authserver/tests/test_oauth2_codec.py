"""Secret hashing, random material and signed access tokens."""

import hashlib
import re
from datetime import datetime, timedelta, timezone

from jose import jwt

from authserver.config import settings
from authserver.core.auth import (
    create_access_token,
    decode_access_token,
    extract_bearer_token,
)
from authserver.core.hashing import generate_opaque_id, generate_token, hash_secret


class TestHashing:
    def test_hash_secret_deterministic(self):
        assert hash_secret("my_secret") == hash_secret("my_secret")

    def test_hash_secret_is_sha256(self):
        secret = "test_secret_value"
        assert hash_secret(secret) == hashlib.sha256(secret.encode("utf-8")).hexdigest()

    def test_hash_secret_different_inputs_different_outputs(self):
        assert hash_secret("secret_a") != hash_secret("secret_b")

    def test_hash_secret_returns_hex_string(self):
        result = hash_secret("any_secret")
        assert len(result) == 64
        assert re.fullmatch(r"[0-9a-f]{64}", result)

    def test_opaque_id_length_matches_entropy(self):
        assert len(generate_opaque_id(16)) == 32
        assert len(generate_opaque_id(32)) == 64

    def test_generate_token_is_unique(self):
        tokens = {generate_token() for _ in range(100)}
        assert len(tokens) == 100

    def test_generate_token_url_safe(self):
        assert re.match(r"^[A-Za-z0-9_-]+$", generate_token())


class TestAccessTokenCodec:
    def _issue(self, **overrides):
        now = datetime.now(timezone.utc)
        args = dict(
            user_id="u1",
            client_id="c1",
            scope="feed openid",
            expires_at=now + timedelta(hours=1),
            issued_at=now,
        )
        args.update(overrides)
        return create_access_token(**args)

    def test_decode_returns_claims(self):
        claims = decode_access_token(self._issue())
        assert claims["sub"] == "u1"
        assert claims["client_id"] == "c1"
        assert claims["scope"] == "feed openid"
        assert claims["jti"]

    def test_tokens_for_same_inputs_differ(self):
        now = datetime.now(timezone.utc)
        a = self._issue(issued_at=now, expires_at=now + timedelta(hours=1))
        b = self._issue(issued_at=now, expires_at=now + timedelta(hours=1))
        assert a != b

    def test_expired_signature_still_decodes(self):
        """Expiry is enforced against the stored row, not the JWT claim."""
        past = datetime.now(timezone.utc) - timedelta(days=2)
        token = self._issue(issued_at=past, expires_at=past + timedelta(hours=1))
        assert decode_access_token(token) is not None

    def test_forged_signature_rejected(self):
        forged = jwt.encode({"sub": "u1", "client_id": "c1"}, "not-the-key", algorithm="HS256")
        assert decode_access_token(forged) is None

    def test_missing_client_claim_rejected(self):
        token = jwt.encode({"sub": "u1"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
        assert decode_access_token(token) is None

    def test_garbage_rejected(self):
        assert decode_access_token("not-a-jwt") is None


class TestBearerExtraction:
    def test_bearer_header(self):
        assert extract_bearer_token("Bearer abc") == "abc"

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer_token("bearer abc") == "abc"

    def test_missing_or_malformed(self):
        assert extract_bearer_token(None) is None
        assert extract_bearer_token("") is None
        assert extract_bearer_token("Basic abc") is None
        assert extract_bearer_token("Bearer") is None
        assert extract_bearer_token("Bearer a b") is None
