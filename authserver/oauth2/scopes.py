"""Scope catalog and scope checks.

Scopes are flat strings with ``:``-delimited hierarchy (``feed``,
``feed:all``). Verification is plain set intersection: no wildcards.
"""

from collections.abc import Iterable

from fastapi import Depends, Request, status

from authserver.core.auth import (
    PRINCIPAL_STATE_KEY,
    get_current_principal,
    get_session_user_id,
)
from authserver.core.exceptions import OAuth2Error, UnauthorizedError

# Always granted: basic identity of the authorizing user
BASELINE_SCOPE = "openid"

# Required scopes per API endpoint; any one of them grants access.
OAUTH2_SCOPE_ENDPOINTS: dict[str, list[str]] = {
    "/feed/all": ["feed", "feed:all"],
    "/feed/subscriptions": ["feed", "feed:subscriptions"],
    "/feed/posts": ["feed", "feed:posts"],
    "/feed/watch": ["feed", "feed:watch"],
    "/feed/sorting": ["feed", "feed:sorting"],
    "/invite/check": ["invite", "invite:check"],
    "/invite/use": ["invite", "invite:use"],
    "/invite/list": ["invite", "invite:list"],
    "/invite/regenerate": ["invite", "invite:regenerate"],
    "/invite/create": ["invite", "invite:create"],
    "/invite/delete": ["invite:delete"],
    "/notifications/list": ["notifications", "notifications:list"],
    "/notifications/read": ["notifications", "notifications:read"],
    "/notifications/hide": ["notifications", "notifications:hide"],
    "/notifications/read/all": ["notifications", "notifications:read", "notifications:read:all"],
    "/notifications/hide/all": ["notifications", "notifications:hide", "notifications:hide:all"],
    "/notifications/subscribe": ["notifications", "notifications:subscribe"],
    "/oauth2/clients": ["oauth2", "oauth2:clients"],
    "/oauth2/client": ["oauth2", "oauth2:client"],
    "/oauth2/client/register": ["oauth2", "oauth2:client", "oauth2:client:register"],
    "/oauth2/client/regenerate-secret": ["oauth2", "oauth2:client", "oauth2:client:regenerate-secret"],
    "/oauth2/client/update-logo": ["oauth2", "oauth2:client", "oauth2:client:update-logo"],
    "/oauth2/client/delete": ["oauth2", "oauth2:client", "oauth2:client:delete"],
    "/oauth2/client/change-visibility": ["oauth2", "oauth2:client", "oauth2:client:change-visibility"],
    "/oauth2/authorize": ["oauth2", "oauth2:authorize"],
    "/oauth2/unauthorize": ["oauth2", "oauth2:unauthorize"],
    "/oauth2/token": ["oauth2", "oauth2:token"],
    "/post/get": ["post", "post:get"],
    "/post/create": ["post", "post:create"],
    "/post/edit": ["post", "post:edit"],
    "/post/comment": ["post", "post:comment"],
    "/post/preview": ["post", "post:preview"],
    "/post/read": ["post", "post:read"],
    "/post/bookmark": ["post", "post:bookmark"],
    "/post/watch": ["post", "post:watch"],
    "/post/translate": ["post", "post:translate"],
    "/post/get-comment": ["post", "post:get-comment"],
    "/post/edit-comment": ["post", "post:edit-comment"],
    "/post/history": ["post", "post:history"],
    "/post/get-public-key": ["post", "post:get-public-key"],
    "/search": ["search"],
    "/site": ["site"],
    "/site/subscribe": ["site:subscribe"],
    "/site/subscriptions": ["site:subscriptions"],
    "/site/list": ["site:list"],
    "/site/create": ["site", "site:create"],
    "/status": ["status", "openid"],
    "/user/profile": ["user", "user:profile"],
    "/user/posts": ["user", "user:posts"],
    "/user/comments": ["user", "user:comments"],
    "/user/karma": ["user", "user:karma"],
    "/user/clearCache": ["user", "user:clearCache"],
    "/user/restrictions": ["user", "user:restrictions"],
    "/user/savebio": ["user", "user:savebio"],
    "/user/savename": ["user", "user:savename"],
    "/user/savegender": ["user", "user:savegender"],
    "/user/suggest-username": ["user", "user:suggest-username"],
    "/user/save-public-key": ["user", "user:save-public-key"],
    "/vote/set": ["vote", "vote:set"],
    "/vote/list": ["vote", "vote:list"],
}

KNOWN_SCOPES: frozenset[str] = frozenset(
    {BASELINE_SCOPE, *(s for scopes in OAUTH2_SCOPE_ENDPOINTS.values() for s in scopes)}
)


class InsufficientScopeError(OAuth2Error):
    error = "insufficient_scope"
    status_code_default = status.HTTP_403_FORBIDDEN


def parse_scope(scope: str | Iterable[str] | None) -> frozenset[str]:
    """Normalize a space-delimited string or an iterable into a scope set."""
    if scope is None:
        return frozenset()
    if isinstance(scope, str):
        return frozenset(scope.split())
    return frozenset(s for s in scope if s)


def format_scope(scope: Iterable[str]) -> str:
    """Canonical space-separated form used in storage and responses."""
    return " ".join(sorted(set(scope)))


def unknown_scopes(scope: Iterable[str]) -> set[str]:
    return set(scope) - KNOWN_SCOPES


def scopes_intersect(granted: Iterable[str], required: Iterable[str]) -> bool:
    """True if the granted set (plus the baseline scope) meets any required scope."""
    return bool((set(granted) | {BASELINE_SCOPE}) & set(required))


def required_scopes_for(path: str) -> list[str] | None:
    """Required scope set for an API path, or None when the path is not exposed."""
    return OAUTH2_SCOPE_ENDPOINTS.get(path.rstrip("/") or "/")


def require_scopes(*required: str):
    """FastAPI dependency factory enforcing that the bearer principal holds one of ``required``."""

    def _dependency(principal=Depends(get_current_principal)):
        if not scopes_intersect(principal.scope, required):
            raise InsufficientScopeError(
                f"Token scope does not grant any of: {format_scope(required)}"
            )
        return principal

    return _dependency


def acting_user_id(*required: str):
    """FastAPI dependency factory resolving the user a route acts for.

    A bearer principal acts for its user only when its token holds one of
    ``required``. Without a bearer principal the host session's user is
    used.
    """

    def _dependency(
        request: Request, session_user_id: str | None = Depends(get_session_user_id)
    ) -> str:
        principal = getattr(request.state, PRINCIPAL_STATE_KEY, None)
        if principal is not None:
            if not scopes_intersect(principal.scope, required):
                raise InsufficientScopeError(
                    f"Token scope does not grant any of: {format_scope(required)}"
                )
            return principal.user_id
        if session_user_id is None:
            raise UnauthorizedError("Authentication required")
        return session_user_id

    return _dependency


def acting_user_for(path: str):
    """``acting_user_id`` with the required scopes of a catalogued endpoint."""
    return acting_user_id(*OAUTH2_SCOPE_ENDPOINTS[path])
