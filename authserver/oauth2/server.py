"""OAuth2 authorization engine.

Implements the authorization code grant and the refresh token grant,
access token resolution, scope checks and revocation.

Authorization code lifecycle::

    issued --exchange--> consumed        (terminal)
    issued --TTL / newer code--> expired (terminal)
    issued --unauthorize--> invalidated  (terminal)

A code is consumed by moving its expiry into the past with a conditional
update, so of two racing exchanges exactly one wins. Refresh tokens are
rotated: every refresh revokes the pair it came from.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import ClassVar

from authserver.config import Settings, settings as default_settings
from authserver.core.auth import create_access_token, decode_access_token
from authserver.core.exceptions import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    OAuth2Error,
    UnsupportedGrantTypeError,
)
from authserver.core.hashing import generate_opaque_id, generate_token, hash_secret
from authserver.oauth2.models import OAuthClient
from authserver.oauth2.repository import OAuth2Repository
from authserver.oauth2.revocation import RevocationCache
from authserver.oauth2.scopes import (
    format_scope,
    parse_scope,
    scopes_intersect,
    unknown_scopes,
)

logger = logging.getLogger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def redirect_uri_matches(pattern: str, redirect_uri: str) -> bool:
    """Exact match, or prefix match for patterns ending in ``/*``.

    ``https://app.example/cb/*`` accepts ``https://app.example/cb`` and
    anything below ``https://app.example/cb/``.
    """
    if pattern.endswith("/*"):
        base = pattern[:-2]
        return redirect_uri == base or redirect_uri.startswith(base + "/")
    return redirect_uri == pattern


def redirect_uri_allowed(client: OAuthClient, redirect_uri: str) -> bool:
    return any(redirect_uri_matches(p, redirect_uri) for p in client.redirect_uri_list)


@dataclass(frozen=True)
class Principal:
    """Identity resolved from a valid access token."""

    user_id: str
    client_id: str
    scope: frozenset[str]
    expires_at: datetime


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime
    redirect_uri: str
    scope: frozenset[str]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: frozenset[str]
    user_id: str
    token_type: str = "Bearer"

    def as_response(self, now: datetime | None = None) -> dict:
        now = now or _utcnow()
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": max(0, int((self.expires_at - now).total_seconds())),
            "expires_at": self.expires_at.isoformat(),
            "refresh_token": self.refresh_token,
            "scope": format_scope(self.scope),
        }


@dataclass
class GrantRequest:
    """Grant-specific fields of a token request."""

    code: str | None = None
    redirect_uri: str | None = None
    refresh_token: str | None = None
    scope: str | None = None


class GrantHandler:
    """Strategy for one ``grant_type`` of the token endpoint."""

    grant_type: ClassVar[str]

    async def handle(
        self, server: AuthorizationServer, client: OAuthClient, request: GrantRequest
    ) -> TokenPair:
        raise NotImplementedError


class AuthorizationCodeGrant(GrantHandler):
    grant_type = GRANT_AUTHORIZATION_CODE

    async def handle(self, server, client, request):
        if not request.code:
            raise InvalidRequestError("Missing parameter: code")
        if not request.redirect_uri:
            raise InvalidRequestError("Missing parameter: redirect_uri")
        return await server.exchange_authorization_code(
            request.code, client, request.redirect_uri
        )


class RefreshTokenGrant(GrantHandler):
    grant_type = GRANT_REFRESH_TOKEN

    async def handle(self, server, client, request):
        if not request.refresh_token:
            raise InvalidRequestError("Missing parameter: refresh_token")
        return await server.refresh_token(client, request.refresh_token, scope=request.scope)


GRANT_HANDLERS: dict[str, GrantHandler] = {
    handler.grant_type: handler
    for handler in (AuthorizationCodeGrant(), RefreshTokenGrant())
}


class AuthorizationServer:
    """Grant flows over a credential store and the shared revocation cache."""

    def __init__(
        self,
        repository: OAuth2Repository,
        revocation_cache: RevocationCache,
        config: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.revocation_cache = revocation_cache
        self.config = config or default_settings
        self._clock = clock

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(seconds=self.config.access_token_ttl_seconds)

    @property
    def authorization_code_ttl(self) -> timedelta:
        return timedelta(seconds=self.config.authorization_code_ttl_seconds)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def authorize_client(
        self, client_id: str | None, client_secret: str | None = None
    ) -> OAuthClient:
        """Resolve the client of a request.

        With a secret the client is confidential and the secret hash must
        match; without one the public identifier alone is enough.
        """
        if not client_id:
            raise InvalidClientError("Missing client_id")
        async with self.repository.transaction("authorize_client", client_id=client_id) as repo:
            if client_secret:
                client = await repo.find_client_by_public_id_and_secret_hash(
                    client_id, hash_secret(client_secret)
                )
            else:
                client = await repo.find_client_by_public_id(client_id)
        if client is None:
            logger.debug("Client authentication failed for %s", client_id)
            raise InvalidClientError()
        return client

    # ------------------------------------------------------------------
    # Authorization codes
    # ------------------------------------------------------------------

    async def issue_authorization_code(
        self,
        client: OAuthClient,
        user_id: str,
        scope: str | Iterable[str] | None,
        redirect_uri: str | None,
    ) -> IssuedCode:
        """Issue a code for (client, user), replacing any live one, and record consent."""
        if GRANT_AUTHORIZATION_CODE not in client.grant_list:
            raise InvalidClientError("Client is not allowed to use the authorization_code grant")

        if not redirect_uri:
            exact = [p for p in client.redirect_uri_list if not p.endswith("/*")]
            if not exact:
                raise InvalidRequestError("Missing parameter: redirect_uri")
            redirect_uri = exact[0]
        if not redirect_uri_allowed(client, redirect_uri):
            raise InvalidClientError("redirect_uri does not match any registered redirect URI")

        requested = parse_scope(scope)
        if not requested:
            raise InvalidScopeError("Missing parameter: scope")
        unknown = unknown_scopes(requested)
        if unknown:
            raise InvalidScopeError(f"Unknown scope: {format_scope(unknown)}")

        code = generate_opaque_id(self.config.authorization_code_bytes)
        expires_at = self._clock() + self.authorization_code_ttl
        scope_str = format_scope(requested)

        async with self.repository.transaction(
            "issue_authorization_code", client_id=client.client_id, user_id=user_id
        ) as repo:
            await repo.upsert_consent(user_id, client.id, scope_str)
            await repo.replace_live_authorization_code(
                client.id, user_id, hash_secret(code), expires_at, redirect_uri, scope_str
            )

        return IssuedCode(
            code=code,
            expires_at=expires_at,
            redirect_uri=redirect_uri,
            scope=requested,
        )

    async def exchange_authorization_code(
        self, code: str, client: OAuthClient, redirect_uri: str
    ) -> TokenPair:
        """Consume a code and issue a token pair in one transaction.

        Scope, user and redirect URI come from the code record. A live code
        is consumed even when the exchange then fails validation.
        """
        code_hash = hash_secret(code)
        now = self._clock()
        failure: str | None = None
        pair: TokenPair | None = None

        async with self.repository.transaction(
            "exchange_authorization_code", client_id=client.client_id
        ) as repo:
            record = await repo.find_authorization_code_by_hash(code_hash, now=now)
            if record is None:
                failure = "Invalid or expired authorization code"
            elif not await repo.invalidate_authorization_code(code_hash, now=now, only_live=True):
                failure = "Authorization code has already been used"
            elif record.client_id != client.id:
                failure = "Authorization code was not issued to this client"
            elif record.redirect_uri != redirect_uri:
                failure = "redirect_uri does not match the authorization request"
            else:
                pair = await self._issue_token_pair(
                    repo, client, record.user_id, parse_scope(record.scope), now
                )

        if failure is not None:
            logger.debug("Authorization code exchange rejected for %s: %s", client.client_id, failure)
            raise InvalidGrantError(failure)
        return pair

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def _issue_token_pair(
        self,
        repo: OAuth2Repository,
        client: OAuthClient,
        user_id: str,
        scope: frozenset[str],
        now: datetime,
    ) -> TokenPair:
        expires_at = now + self.access_token_ttl
        scope_str = format_scope(scope)
        access_token = create_access_token(user_id, client.client_id, scope_str, expires_at, now)
        refresh_token = generate_token(self.config.refresh_token_bytes)
        await repo.insert_token_pair(
            client.id,
            user_id,
            hash_secret(access_token),
            expires_at,
            hash_secret(refresh_token),
            scope_str,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=scope,
            user_id=user_id,
        )

    async def issue_or_refresh_token(
        self,
        grant_type: str,
        client: OAuthClient,
        *,
        code: str | None = None,
        redirect_uri: str | None = None,
        refresh_token: str | None = None,
        scope: str | None = None,
    ) -> TokenPair:
        """Token endpoint entry point: dispatch on ``grant_type``."""
        handler = GRANT_HANDLERS.get(grant_type)
        if handler is None:
            raise UnsupportedGrantTypeError(grant_type)
        if grant_type not in client.grant_list:
            raise InvalidClientError(f"Client is not allowed to use the {grant_type} grant")
        request = GrantRequest(
            code=code,
            redirect_uri=redirect_uri,
            refresh_token=refresh_token,
            scope=scope,
        )
        return await handler.handle(self, client, request)

    async def refresh_token(
        self, client: OAuthClient, refresh_token: str, scope: str | None = None
    ) -> TokenPair:
        """Rotate a token pair: issue a new one and revoke the old one."""
        refresh_hash = hash_secret(refresh_token)
        if self.revocation_cache.is_revoked(refresh_hash):
            raise InvalidGrantError("Refresh token has been revoked")

        now = self._clock()
        error: OAuth2Error | None = None
        pair: TokenPair | None = None
        old_hashes: tuple[str, ...] = ()

        async with self.repository.transaction(
            "refresh_token", client_id=client.client_id
        ) as repo:
            old = await repo.find_token_by_refresh_hash(refresh_hash)
            if old is None or old.client_id != client.id:
                error = InvalidGrantError("Invalid refresh token")
            else:
                granted = parse_scope(old.scope)
                requested = parse_scope(scope) if scope else granted
                if not requested <= granted:
                    error = InvalidScopeError("Requested scope exceeds the originally granted scope")
                elif not await repo.revoke_token_pair(old.id):
                    error = InvalidGrantError("Refresh token has already been used")
                else:
                    old_hashes = (old.access_token_hash, old.refresh_token_hash)
                    pair = await self._issue_token_pair(repo, client, old.user_id, requested, now)

        if error is not None:
            logger.debug("Refresh rejected for %s: %s", client.client_id, error.description)
            raise error
        self.revocation_cache.revoke_many(old_hashes)
        return pair

    async def resolve_access_token(self, token: str | None) -> Principal | None:
        """Return the principal behind a valid access token, else None.

        Checks, cheapest first: signature, revocation cache, store row
        (unrevoked), stored expiry.
        """
        if not token:
            return None
        claims = decode_access_token(token)
        if claims is None:
            return None
        access_hash = hash_secret(token)
        if self.revocation_cache.is_revoked(access_hash):
            return None

        async with self.repository.transaction("resolve_access_token") as repo:
            record = await repo.find_token_by_access_hash(access_hash)
        if record is None:
            return None

        expires_at = _as_utc(record.access_token_expires_at)
        if expires_at <= self._clock():
            return None
        return Principal(
            user_id=record.user_id,
            client_id=claims["client_id"],
            scope=parse_scope(record.scope),
            expires_at=expires_at,
        )

    def verify_scope(self, principal: Principal, required_scopes: Iterable[str]) -> bool:
        """True if the token grants at least one required scope (``openid`` is implicit)."""
        return scopes_intersect(principal.scope, required_scopes)

    async def revoke_token(self, token: str, client: OAuthClient) -> bool:
        """Revoke the pair that an access or refresh token of ``client`` belongs to."""
        token_hash = hash_secret(token)
        revoked_hashes: tuple[str, ...] = ()
        async with self.repository.transaction(
            "revoke_token", client_id=client.client_id
        ) as repo:
            record = await repo.find_token_by_access_hash(token_hash)
            if record is None:
                record = await repo.find_token_by_refresh_hash(token_hash)
            if record is not None and record.client_id == client.id:
                if await repo.revoke_token_pair(record.id):
                    revoked_hashes = (record.access_token_hash, record.refresh_token_hash)
        self.revocation_cache.revoke_many(revoked_hashes)
        return bool(revoked_hashes)

    async def revoke_client_tokens(self, client_pk: int, user_id: str | None = None) -> list[str]:
        """Revoke every pair of a client, or of one user of it. Returns the revoked hashes."""
        async with self.repository.transaction(
            "revoke_client_tokens", client_id=client_pk, user_id=user_id
        ) as repo:
            rows = await repo.revoke_tokens_for_client(client_pk, user_id)
        hashes = [h for row in rows for h in (row.access_token_hash, row.refresh_token_hash)]
        self.revocation_cache.revoke_many(hashes)
        logger.info("Revoked %d token pairs of client %s", len(rows), client_pk)
        return hashes

    async def revoke_client_for_user(self, client_pk: int, user_id: str) -> bool:
        """Withdraw a user's authorization of a client.

        Tokens are revoked, live codes invalidated and the consent row
        deleted in one transaction; the cache is updated after commit.
        Returns False when there was nothing to withdraw.
        """
        async with self.repository.transaction(
            "revoke_client_for_user", client_id=client_pk, user_id=user_id
        ) as repo:
            rows = await repo.revoke_tokens_for_client(client_pk, user_id)
            await repo.invalidate_authorization_codes_for(client_pk, user_id, now=self._clock())
            had_consent = await repo.delete_consent(user_id, client_pk)
        self.revocation_cache.revoke_many(
            h for row in rows for h in (row.access_token_hash, row.refresh_token_hash)
        )
        logger.info(
            "User %s unauthorized client %s (%d token pairs revoked)", user_id, client_pk, len(rows)
        )
        return had_consent or bool(rows)

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    async def get_consent(self, client: OAuthClient, user_id: str) -> frozenset[str] | None:
        """Scope set the user last approved for the client, or None."""
        async with self.repository.transaction(
            "get_consent", client_id=client.client_id, user_id=user_id
        ) as repo:
            consent = await repo.get_consent(user_id, client.id)
        return parse_scope(consent.scope) if consent is not None else None

    async def consent_covers(
        self, client: OAuthClient, user_id: str, scope: str | Iterable[str]
    ) -> bool:
        """True if a stored consent already includes every requested scope."""
        granted = await self.get_consent(client, user_id)
        requested = parse_scope(scope)
        return granted is not None and bool(requested) and requested <= granted

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_expired(self) -> dict[str, int]:
        """Delete expired token rows and dead codes. Not needed for correctness."""
        now = self._clock()
        async with self.repository.transaction("purge_expired") as repo:
            tokens = await repo.purge_expired_tokens(now)
            codes = await repo.purge_expired_authorization_codes(now)
        if tokens or codes:
            logger.info("Purged %d expired token pairs and %d dead codes", tokens, codes)
        return {"tokens": tokens, "codes": codes}

    async def load_revoked_token_hashes(self) -> list[str]:
        """Warm-up loader for the revocation cache: purge, then list revoked hashes."""
        await self.purge_expired()
        async with self.repository.transaction("list_revoked_token_hashes") as repo:
            return await repo.list_revoked_token_hashes()
