"""OAuth2 client registry: registration, listing and owner-only mutations.

Mutating operations answer "not found" and "not yours" identically with
``access_denied`` so that non-owners learn nothing about other clients.
Plaintext secrets are returned exactly once, at registration or rotation.
"""

from __future__ import annotations

import json
import logging

from authserver.core.exceptions import (
    AccessDeniedError,
    InvalidClientError,
    InvalidRequestError,
    ServerError,
)
from authserver.core.hashing import generate_opaque_id, hash_secret
from authserver.oauth2.models import DEFAULT_GRANTS, OAuthClient
from authserver.oauth2.server import AuthorizationServer

logger = logging.getLogger(__name__)


def validate_redirect_uris(redirect_uris: list[str]) -> list[str]:
    """Normalize redirect URI patterns: exact URIs or a single trailing ``/*``."""
    cleaned = [uri.strip() for uri in redirect_uris if uri and uri.strip()]
    if not cleaned:
        raise InvalidRequestError("At least one redirect URI is required")
    for uri in cleaned:
        if "*" in uri[:-2] or (uri.endswith("*") and not uri.endswith("/*")):
            raise InvalidRequestError(f"Unsupported redirect URI pattern: {uri}")
        if "://" not in uri:
            raise InvalidRequestError(f"Redirect URI must be absolute: {uri}")
    return cleaned


def client_view(
    client: OAuthClient,
    viewer_id: str | None = None,
    is_authorized: bool | None = None,
) -> dict:
    """Public representation of a client. Never includes the secret hash."""
    view = {
        "id": client.id,
        "client_id": client.client_id,
        "name": client.name,
        "description": client.description or "",
        "logo_url": client.logo_url or "",
        "initial_authorization_url": client.initial_authorization_url or "",
        "redirect_uris": client.redirect_uri_list,
        "grants": client.grant_list,
        "user_id": client.user_id,
        "is_public": bool(client.is_public),
        "created_at": client.created_at.isoformat() if client.created_at else "",
    }
    if viewer_id is not None:
        view["is_my"] = client.user_id == viewer_id
    if is_authorized is not None:
        view["is_authorized"] = is_authorized
    return view


class ClientRegistry:
    """CRUD for OAuth2 clients on top of the authorization engine's store."""

    def __init__(self, server: AuthorizationServer):
        self.server = server
        self.repository = server.repository
        self.config = server.config

    async def register_client(
        self,
        user_id: str,
        name: str,
        redirect_uris: list[str],
        description: str = "",
        logo_url: str = "",
        initial_authorization_url: str = "",
        is_public: bool = False,
    ) -> dict:
        """Register a client owned by ``user_id``.

        Returns the client view plus ``client_secret`` in plain text; only
        its hash is stored.
        """
        if not name or not name.strip():
            raise InvalidRequestError("Client name is required")
        uris = validate_redirect_uris(redirect_uris)

        client_secret = generate_opaque_id(self.config.client_secret_bytes)
        async with self.repository.transaction("register_client", user_id=user_id) as repo:
            client = await repo.insert_client(
                client_id=generate_opaque_id(self.config.client_id_bytes),
                client_secret_hash=hash_secret(client_secret),
                name=name.strip(),
                description=description,
                logo_url=logo_url,
                initial_authorization_url=initial_authorization_url,
                redirect_uris=json.dumps(uris),
                grants=DEFAULT_GRANTS,
                user_id=user_id,
                is_public=is_public,
            )
        logger.info("Registered OAuth client %s for user %s", client.client_id, user_id)
        return {**client_view(client, viewer_id=user_id), "client_secret": client_secret}

    async def list_clients(self, user_id: str) -> list[dict]:
        async with self.repository.transaction("list_clients", user_id=user_id) as repo:
            visible = await repo.list_clients_visible_to(user_id)
        return [
            client_view(entry.client, viewer_id=user_id, is_authorized=entry.is_authorized)
            for entry in visible
        ]

    async def get_client(self, client_id: str) -> dict | None:
        """Client details for the consent page, or None."""
        async with self.repository.transaction("get_client", client_id=client_id) as repo:
            client = await repo.find_client_by_public_id(client_id)
        return client_view(client) if client is not None else None

    async def _find_owned(self, client_id: str, user_id: str, operation: str) -> OAuthClient:
        async with self.repository.transaction(operation, client_id=client_id) as repo:
            client = await repo.find_client_by_public_id(client_id)
        if client is None or client.user_id != user_id:
            logger.warning(
                "Refused %s of OAuth client %s by user %s: not found or not owner",
                operation, client_id, user_id,
            )
            raise AccessDeniedError()
        return client

    async def rotate_client_secret(self, client_id: str, user_id: str) -> str:
        """Replace the client secret; the new plaintext is returned only here."""
        client = await self._find_owned(client_id, user_id, "rotate_client_secret")
        client_secret = generate_opaque_id(self.config.client_secret_bytes)
        async with self.repository.transaction(
            "rotate_client_secret", client_id=client_id, user_id=user_id
        ) as repo:
            rotated = await repo.rotate_client_secret(client.id, hash_secret(client_secret), user_id)
        if not rotated:
            raise AccessDeniedError()
        logger.info("Rotated secret of OAuth client %s", client_id)
        return client_secret

    async def set_logo(self, client_id: str, user_id: str, logo_url: str) -> bool:
        client = await self._find_owned(client_id, user_id, "set_client_logo")
        async with self.repository.transaction(
            "set_client_logo", client_id=client_id, user_id=user_id
        ) as repo:
            updated = await repo.set_client_logo(client.id, user_id, logo_url)
        if not updated:
            raise AccessDeniedError()
        return True

    async def set_visibility(self, client_id: str, user_id: str, is_public: bool) -> bool:
        client = await self._find_owned(client_id, user_id, "set_client_visibility")
        async with self.repository.transaction(
            "set_client_visibility", client_id=client_id, user_id=user_id
        ) as repo:
            updated = await repo.set_client_visibility(client.id, user_id, is_public)
        if not updated:
            raise AccessDeniedError()
        return True

    async def delete_client(self, client_id: str, user_id: str) -> bool:
        """Revoke every token of the client, then delete it.

        Revocation is best effort: if it fails the deletion still goes
        ahead, and the degraded outcome is logged.
        """
        client = await self._find_owned(client_id, user_id, "delete_client")
        try:
            await self.server.revoke_client_tokens(client.id)
        except ServerError:
            logger.error(
                "Failed to revoke some tokens while deleting OAuth client %s; deleting anyway",
                client_id,
            )

        async with self.repository.transaction(
            "delete_client", client_id=client_id, user_id=user_id
        ) as repo:
            deleted = await repo.delete_client(client.id, user_id)
        if not deleted:
            raise AccessDeniedError()
        logger.info("Deleted OAuth client %s", client_id)
        return True

    async def unauthorize_client(self, client_id: str, user_id: str) -> bool:
        """Withdraw the user's consent for a client and revoke its tokens for that user."""
        async with self.repository.transaction("unauthorize_client", client_id=client_id) as repo:
            client = await repo.find_client_by_public_id(client_id)
        if client is None:
            raise InvalidClientError("Unknown client")
        return await self.server.revoke_client_for_user(client.id, user_id)
