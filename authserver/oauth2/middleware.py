"""Bearer-token authentication gate.

Requests without an ``Authorization: Bearer`` header pass through untouched
to the host application's session authentication. A bearer token that
resolves attaches the principal to ``request.state``; one that does not is
logged and the request continues unauthenticated. The gate never fails a
request by itself.
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from authserver.config import settings
from authserver.core.auth import PRINCIPAL_STATE_KEY, extract_bearer_token
from authserver.core.exceptions import OAuth2Error
from authserver.oauth2.repository import OAuth2Repository
from authserver.oauth2.server import AuthorizationServer, Principal

logger = logging.getLogger(__name__)


class OAuth2AuthenticationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        token = extract_bearer_token(request.headers.get("authorization"))
        if token is None:
            return await call_next(request)

        principal = await self._resolve(request, token)
        if principal is not None:
            setattr(request.state, PRINCIPAL_STATE_KEY, principal)
        return await call_next(request)

    async def _resolve(self, request: Request, token: str) -> Principal | None:
        state = request.app.state
        try:
            async with state.session_factory() as db:
                server = AuthorizationServer(OAuth2Repository(db), state.revocation_cache)
                principal = await server.resolve_access_token(token)
        except OAuth2Error as exc:
            logger.error("Failed OAuth access attempt: %s", exc.description)
            return None
        except Exception:
            logger.exception("Failed OAuth access attempt")
            return None

        if principal is None:
            logger.warning("Failed OAuth access attempt: bearer token rejected")
            return None
        if principal.user_id in settings.blocked_user_id_set:
            logger.warning("Refused bearer token of blocked user %s", principal.user_id)
            return None
        return principal
