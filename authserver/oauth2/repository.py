"""OAuth2 credential store.

Every query the authorization engine depends on lives here. Write methods
only flush; callers group them with :meth:`OAuth2Repository.transaction`,
which commits once and turns storage failures into ``server_error``.
"""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authserver.core.exceptions import ServerError
from authserver.oauth2.models import (
    AuthorizationCode,
    OAuthClient,
    OAuthConsent,
    OAuthToken,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VisibleClient(NamedTuple):
    client: OAuthClient
    is_mine: bool
    is_authorized: bool


class OAuth2Repository:
    """Credential store bound to one database session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def transaction(self, operation: str, **context):
        """Commit the enclosed writes as one unit.

        Any exception rolls everything back. SQLAlchemy errors are logged
        with ``operation`` and ``context`` (identifiers only) and re-raised
        as :class:`ServerError`.
        """
        try:
            yield self
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("OAuth2 store failure during %s %s", operation, context)
            raise ServerError(f"Storage failure during {operation}") from exc
        except Exception:
            await self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def find_client_by_public_id(self, client_id: str) -> OAuthClient | None:
        result = await self.db.execute(
            select(OAuthClient).where(OAuthClient.client_id == client_id)
        )
        return result.scalar_one_or_none()

    async def find_client_by_public_id_and_secret_hash(
        self, client_id: str, secret_hash: str
    ) -> OAuthClient | None:
        client = await self.find_client_by_public_id(client_id)
        # Compare even when the client is missing so both failures look alike
        stored = client.client_secret_hash if client is not None else "0" * 64
        if not hmac.compare_digest(stored, secret_hash) or client is None:
            return None
        return client

    async def get_client(self, client_pk: int) -> OAuthClient | None:
        result = await self.db.execute(
            select(OAuthClient).where(OAuthClient.id == client_pk)
        )
        return result.scalar_one_or_none()

    async def insert_client(self, **fields) -> OAuthClient:
        client = OAuthClient(**fields)
        self.db.add(client)
        await self.db.flush()
        return client

    async def _update_owned_client(self, client_pk: int, owner_id: str, **values) -> bool:
        result = await self.db.execute(
            update(OAuthClient)
            .where(OAuthClient.id == client_pk, OAuthClient.user_id == owner_id)
            .values(updated_at=_utcnow(), **values)
        )
        return result.rowcount > 0

    async def rotate_client_secret(self, client_pk: int, new_hash: str, owner_id: str) -> bool:
        """Replace the secret hash. False means not found or not the owner."""
        return await self._update_owned_client(client_pk, owner_id, client_secret_hash=new_hash)

    async def set_client_visibility(self, client_pk: int, owner_id: str, is_public: bool) -> bool:
        return await self._update_owned_client(client_pk, owner_id, is_public=is_public)

    async def set_client_logo(self, client_pk: int, owner_id: str, logo_url: str) -> bool:
        return await self._update_owned_client(client_pk, owner_id, logo_url=logo_url)

    async def delete_client(self, client_pk: int, owner_id: str) -> bool:
        """Delete an owned client together with its codes, consents and tokens."""
        owned = await self.db.execute(
            select(OAuthClient.id).where(
                OAuthClient.id == client_pk, OAuthClient.user_id == owner_id
            )
        )
        if owned.scalar_one_or_none() is None:
            return False
        for model in (AuthorizationCode, OAuthConsent, OAuthToken):
            await self.db.execute(delete(model).where(model.client_id == client_pk))
        result = await self.db.execute(delete(OAuthClient).where(OAuthClient.id == client_pk))
        return result.rowcount > 0

    async def list_clients_visible_to(self, user_id: str) -> list[VisibleClient]:
        """Public clients, the user's own clients and clients the user consented to."""
        stmt = (
            select(OAuthClient, OAuthConsent.id)
            .outerjoin(
                OAuthConsent,
                and_(
                    OAuthConsent.client_id == OAuthClient.id,
                    OAuthConsent.user_id == user_id,
                ),
            )
            .where(
                or_(
                    OAuthClient.is_public.is_(True),
                    OAuthClient.user_id == user_id,
                    OAuthConsent.id.is_not(None),
                )
            )
            .order_by(OAuthClient.id)
        )
        rows = (await self.db.execute(stmt)).all()
        return [
            VisibleClient(client, client.user_id == user_id, consent_id is not None)
            for client, consent_id in rows
        ]

    # ------------------------------------------------------------------
    # Consents
    # ------------------------------------------------------------------

    async def get_consent(self, user_id: str, client_pk: int) -> OAuthConsent | None:
        result = await self.db.execute(
            select(OAuthConsent).where(
                OAuthConsent.user_id == user_id, OAuthConsent.client_id == client_pk
            )
        )
        return result.scalar_one_or_none()

    async def upsert_consent(self, user_id: str, client_pk: int, scope: str) -> OAuthConsent:
        """Create the consent row or overwrite its scope set."""
        consent = await self.get_consent(user_id, client_pk)
        if consent is None:
            consent = OAuthConsent(user_id=user_id, client_id=client_pk, scope=scope)
            self.db.add(consent)
        else:
            consent.scope = scope
            consent.updated_at = _utcnow()
        await self.db.flush()
        return consent

    async def delete_consent(self, user_id: str, client_pk: int) -> bool:
        result = await self.db.execute(
            delete(OAuthConsent).where(
                OAuthConsent.user_id == user_id, OAuthConsent.client_id == client_pk
            )
        )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Authorization codes
    # ------------------------------------------------------------------

    async def replace_live_authorization_code(
        self,
        client_pk: int,
        user_id: str,
        code_hash: str,
        expires_at: datetime,
        redirect_uri: str,
        scope: str,
    ) -> AuthorizationCode:
        """Drop every code of the (client, user) pair and store the new one."""
        await self.db.execute(
            delete(AuthorizationCode).where(
                AuthorizationCode.client_id == client_pk,
                AuthorizationCode.user_id == user_id,
            )
        )
        code = AuthorizationCode(
            client_id=client_pk,
            user_id=user_id,
            code_hash=code_hash,
            expires_at=expires_at,
            redirect_uri=redirect_uri,
            scope=scope,
        )
        self.db.add(code)
        await self.db.flush()
        return code

    async def find_authorization_code_by_hash(
        self,
        code_hash: str,
        include_expired: bool = False,
        now: datetime | None = None,
    ) -> AuthorizationCode | None:
        stmt = select(AuthorizationCode).where(AuthorizationCode.code_hash == code_hash)
        if not include_expired:
            stmt = stmt.where(AuthorizationCode.expires_at > (now or _utcnow()))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def invalidate_authorization_code(
        self,
        code_hash: str,
        now: datetime | None = None,
        only_live: bool = False,
    ) -> bool:
        """Move the code's expiry into the past.

        With ``only_live`` the update is conditional on the code still being
        live, so of two racing consumers exactly one sees ``True``.
        """
        now = now or _utcnow()
        stmt = update(AuthorizationCode).where(AuthorizationCode.code_hash == code_hash)
        if only_live:
            stmt = stmt.where(AuthorizationCode.expires_at > now)
        result = await self.db.execute(
            stmt.values(expires_at=now - timedelta(seconds=1)).execution_options(
                synchronize_session=False
            )
        )
        return result.rowcount > 0

    async def invalidate_authorization_codes_for(
        self, client_pk: int, user_id: str, now: datetime | None = None
    ) -> int:
        now = now or _utcnow()
        result = await self.db.execute(
            update(AuthorizationCode)
            .where(
                AuthorizationCode.client_id == client_pk,
                AuthorizationCode.user_id == user_id,
                AuthorizationCode.expires_at > now,
            )
            .values(expires_at=now - timedelta(seconds=1))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def purge_expired_authorization_codes(self, now: datetime | None = None) -> int:
        result = await self.db.execute(
            delete(AuthorizationCode).where(AuthorizationCode.expires_at < (now or _utcnow()))
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def insert_token_pair(
        self,
        client_pk: int,
        user_id: str,
        access_hash: str,
        access_expires_at: datetime,
        refresh_hash: str,
        scope: str,
    ) -> OAuthToken:
        token = OAuthToken(
            client_id=client_pk,
            user_id=user_id,
            access_token_hash=access_hash,
            access_token_expires_at=access_expires_at,
            refresh_token_hash=refresh_hash,
            scope=scope,
            revoked=False,
        )
        self.db.add(token)
        await self.db.flush()
        return token

    async def find_token_by_access_hash(self, access_hash: str) -> OAuthToken | None:
        result = await self.db.execute(
            select(OAuthToken).where(
                OAuthToken.access_token_hash == access_hash,
                OAuthToken.revoked.is_(False),
            )
        )
        return result.scalar_one_or_none()

    async def find_token_by_refresh_hash(self, refresh_hash: str) -> OAuthToken | None:
        result = await self.db.execute(
            select(OAuthToken).where(
                OAuthToken.refresh_token_hash == refresh_hash,
                OAuthToken.revoked.is_(False),
            )
        )
        return result.scalar_one_or_none()

    async def revoke_token_pair(self, token_pk: int) -> bool:
        result = await self.db.execute(
            update(OAuthToken)
            .where(OAuthToken.id == token_pk, OAuthToken.revoked.is_(False))
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def revoke_tokens_for_client(
        self, client_pk: int, user_id: str | None = None
    ) -> list[OAuthToken]:
        """Revoke every pair of a client (optionally only for one user).

        Returns all matching rows, including ones revoked earlier, so the
        caller can mirror every hash into the revocation cache.
        """
        conditions = [OAuthToken.client_id == client_pk]
        if user_id is not None:
            conditions.append(OAuthToken.user_id == user_id)
        rows = (await self.db.execute(select(OAuthToken).where(*conditions))).scalars().all()
        await self.db.execute(
            update(OAuthToken)
            .where(*conditions, OAuthToken.revoked.is_(False))
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        return list(rows)

    async def purge_expired_tokens(self, now: datetime | None = None) -> int:
        """Physically delete pairs whose access token has expired."""
        result = await self.db.execute(
            delete(OAuthToken).where(OAuthToken.access_token_expires_at < (now or _utcnow()))
        )
        return result.rowcount

    async def list_revoked_token_hashes(self) -> list[str]:
        result = await self.db.execute(
            select(OAuthToken.access_token_hash, OAuthToken.refresh_token_hash).where(
                OAuthToken.revoked.is_(True)
            )
        )
        hashes: list[str] = []
        for access_hash, refresh_hash in result.all():
            hashes.extend((access_hash, refresh_hash))
        return hashes
