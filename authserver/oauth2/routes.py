"""FastAPI routes for the OAuth2 authorization server."""

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from authserver.core.auth import PRINCIPAL_STATE_KEY
from authserver.core.exceptions import InvalidRequestError
from authserver.database import get_db
from authserver.oauth2.clients import ClientRegistry, client_view
from authserver.oauth2.repository import OAuth2Repository
from authserver.oauth2.scopes import (
    BASELINE_SCOPE,
    InsufficientScopeError,
    acting_user_for,
    format_scope,
    parse_scope,
    require_scopes,
)
from authserver.oauth2.server import AuthorizationServer, Principal

router = APIRouter(prefix="/oauth2", tags=["oauth2"])


def get_authorization_server(
    request: Request, db: AsyncSession = Depends(get_db)
) -> AuthorizationServer:
    return AuthorizationServer(OAuth2Repository(db), request.app.state.revocation_cache)


def get_client_registry(
    server: AuthorizationServer = Depends(get_authorization_server),
) -> ClientRegistry:
    return ClientRegistry(server)


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class ClientCreateRequest(BaseModel):
    name: str
    redirect_uris: list[str]
    description: str = ""
    logo_url: str = ""
    initial_authorization_url: str = ""
    is_public: bool = False


class AuthorizeRequest(BaseModel):
    client_id: str
    scope: str
    redirect_uri: Optional[str] = None
    state: Optional[str] = None
    response_type: str = "code"


class TokenRequest(BaseModel):
    grant_type: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    expires_at: str
    refresh_token: str
    scope: str


class RevokeRequest(BaseModel):
    token: str
    client_id: str
    client_secret: Optional[str] = None


class LogoRequest(BaseModel):
    logo_url: str


class VisibilityRequest(BaseModel):
    is_public: bool


# ---------------------------------------------------------------------------
# Grant flow
# ---------------------------------------------------------------------------

@router.get("/consent")
async def consent_endpoint(
    client_id: str,
    scope: str,
    user_id: str = Depends(acting_user_for("/oauth2/authorize")),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Client details for the consent page and whether approval can be skipped."""
    client = await server.authorize_client(client_id)
    return {
        "client": client_view(client),
        "already_approved": await server.consent_covers(client, user_id, scope),
    }


@router.post("/authorize")
async def authorize_endpoint(
    request: AuthorizeRequest,
    http_request: Request,
    user_id: str = Depends(acting_user_for("/oauth2/authorize")),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Record the user's approval and issue an authorization code."""
    if request.response_type != "code":
        raise InvalidRequestError(f"Unsupported response_type: {request.response_type}")

    # A bearer caller may only hand out scopes its own token already holds
    principal = getattr(http_request.state, PRINCIPAL_STATE_KEY, None)
    if principal is not None:
        beyond = parse_scope(request.scope) - principal.scope - {BASELINE_SCOPE}
        if beyond:
            raise InsufficientScopeError(f"Token scope does not cover: {format_scope(beyond)}")

    client = await server.authorize_client(request.client_id)
    issued = await server.issue_authorization_code(
        client, user_id, request.scope, request.redirect_uri
    )

    params = {"code": issued.code}
    if request.state:
        params["state"] = request.state
    separator = "&" if "?" in issued.redirect_uri else "?"
    location = f"{issued.redirect_uri}{separator}{urlencode(params)}"

    return {
        "redirect_uri": location,
        "code": issued.code,
        "state": request.state,
        "expires_at": issued.expires_at.isoformat(),
    }


@router.post("/token", response_model=TokenResponse)
async def token_endpoint(
    request: TokenRequest,
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Token endpoint - exchanges an authorization code or a refresh token."""
    client = await server.authorize_client(request.client_id, request.client_secret)
    pair = await server.issue_or_refresh_token(
        request.grant_type,
        client,
        code=request.code,
        redirect_uri=request.redirect_uri,
        refresh_token=request.refresh_token,
        scope=request.scope,
    )
    return TokenResponse(**pair.as_response())


@router.post("/revoke")
async def revoke_endpoint(
    request: RevokeRequest,
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Token revocation endpoint."""
    client = await server.authorize_client(request.client_id, request.client_secret)
    return {"revoked": await server.revoke_token(request.token, client)}


@router.get("/userinfo")
async def userinfo_endpoint(principal: Principal = Depends(require_scopes(BASELINE_SCOPE))):
    """Identity behind the presented bearer token."""
    return {
        "sub": principal.user_id,
        "client_id": principal.client_id,
        "scope": format_scope(principal.scope),
        "expires_at": principal.expires_at.isoformat(),
    }


@router.post("/unauthorize/{client_id}")
async def unauthorize_endpoint(
    client_id: str,
    user_id: str = Depends(acting_user_for("/oauth2/unauthorize")),
    registry: ClientRegistry = Depends(get_client_registry),
):
    """Withdraw the current user's authorization of a client."""
    return {"unauthorized": await registry.unauthorize_client(client_id, user_id)}


# ---------------------------------------------------------------------------
# Client registry
# ---------------------------------------------------------------------------

@router.get("/clients")
async def list_clients(
    user_id: str = Depends(acting_user_for("/oauth2/clients")),
    registry: ClientRegistry = Depends(get_client_registry),
):
    return {"clients": await registry.list_clients(user_id)}


@router.post("/clients")
async def register_client(
    request: ClientCreateRequest,
    user_id: str = Depends(acting_user_for("/oauth2/client/register")),
    registry: ClientRegistry = Depends(get_client_registry),
):
    """Register a new OAuth2 client application."""
    return await registry.register_client(
        user_id=user_id,
        name=request.name,
        redirect_uris=request.redirect_uris,
        description=request.description,
        logo_url=request.logo_url,
        initial_authorization_url=request.initial_authorization_url,
        is_public=request.is_public,
    )


@router.get("/clients/{client_id}")
async def get_client(
    client_id: str,
    registry: ClientRegistry = Depends(get_client_registry),
):
    client = await registry.get_client(client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return client


@router.post("/clients/{client_id}/secret")
async def rotate_client_secret(
    client_id: str,
    user_id: str = Depends(acting_user_for("/oauth2/client/regenerate-secret")),
    registry: ClientRegistry = Depends(get_client_registry),
):
    secret = await registry.rotate_client_secret(client_id, user_id)
    return {"client_id": client_id, "client_secret": secret}


@router.put("/clients/{client_id}/logo")
async def update_client_logo(
    client_id: str,
    request: LogoRequest,
    user_id: str = Depends(acting_user_for("/oauth2/client/update-logo")),
    registry: ClientRegistry = Depends(get_client_registry),
):
    return {"updated": await registry.set_logo(client_id, user_id, request.logo_url)}


@router.put("/clients/{client_id}/visibility")
async def change_client_visibility(
    client_id: str,
    request: VisibilityRequest,
    user_id: str = Depends(acting_user_for("/oauth2/client/change-visibility")),
    registry: ClientRegistry = Depends(get_client_registry),
):
    return {"updated": await registry.set_visibility(client_id, user_id, request.is_public)}


@router.delete("/clients/{client_id}")
async def delete_client(
    client_id: str,
    user_id: str = Depends(acting_user_for("/oauth2/client/delete")),
    registry: ClientRegistry = Depends(get_client_registry),
):
    return {"deleted": await registry.delete_client(client_id, user_id)}
