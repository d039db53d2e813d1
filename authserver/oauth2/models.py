"""SQLAlchemy models for the OAuth2 credential store.

Secrets never appear in these tables: clients, codes and tokens are keyed
by the SHA-256 digest of the value handed to the client.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from authserver.database import Base

DEFAULT_GRANTS = "authorization_code refresh_token"


def utcnow():
    return datetime.now(timezone.utc)


class OAuthClient(Base):
    """Registered third-party client application."""

    __tablename__ = "oauth_clients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String(64), unique=True, nullable=False)
    client_secret_hash = Column(String(64), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, default="")
    logo_url = Column(String(500), default="")
    initial_authorization_url = Column(String(500), default="")
    redirect_uris = Column(Text, default="[]")  # JSON array of URI patterns
    grants = Column(Text, default=DEFAULT_GRANTS)  # Space-separated grant types
    user_id = Column(String(36), nullable=False)  # owner
    is_public = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_oauth_client_owner", "user_id"),
    )

    @property
    def redirect_uri_list(self) -> list[str]:
        return json.loads(self.redirect_uris) if self.redirect_uris else []

    @property
    def grant_list(self) -> list[str]:
        return (self.grants or "").split()


class AuthorizationCode(Base):
    """Single-use authorization code; expiry in the past means consumed or dead."""

    __tablename__ = "oauth_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code_hash = Column(String(64), unique=True, nullable=False)
    client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), nullable=False)
    redirect_uri = Column(String(500), nullable=False)
    scope = Column(Text, default="")  # Space-separated scopes
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_oauth_code_client_user", "client_id", "user_id"),
    )


class OAuthToken(Base):
    """Access + refresh token pair; revocation flips ``revoked`` for both."""

    __tablename__ = "oauth_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    access_token_hash = Column(String(64), unique=True, nullable=False)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=False)
    refresh_token_hash = Column(String(64), unique=True, nullable=False)
    client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), nullable=False)
    scope = Column(Text, default="")
    revoked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_oauth_token_client_user", "client_id", "user_id"),
        Index("idx_oauth_token_revoked", "revoked"),
    )


class OAuthConsent(Base):
    """A user's approval of a client for a scope set; one row per pair."""

    __tablename__ = "oauth_consents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)
    client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    scope = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="uq_oauth_consent_user_client"),
    )
