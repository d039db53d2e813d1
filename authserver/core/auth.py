import uuid
from datetime import datetime

from fastapi import Request
from jose import JWTError, jwt

from authserver.config import settings
from authserver.core.exceptions import UnauthorizedError

# Attribute on request.state holding the principal resolved from a bearer token
PRINCIPAL_STATE_KEY = "oauth_principal"


def create_access_token(
    user_id: str,
    client_id: str,
    scope: str,
    expires_at: datetime,
    issued_at: datetime,
) -> str:
    """Create a signed access token for a client acting on behalf of a user."""
    payload = {
        "sub": user_id,
        "client_id": client_id,
        "scope": scope,
        "exp": expires_at,
        "iat": issued_at,
        "nbf": issued_at,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Verify the signature of an access token and return its claims.

    Expiry is not checked here: the stored expiry of the token row is
    authoritative. Returns None for forged or malformed tokens.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": False, "verify_nbf": False},
        )
    except JWTError:
        return None
    if payload.get("sub") is None or payload.get("client_id") is None:
        return None
    return payload


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the credential of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def get_current_principal(request: Request):
    """FastAPI dependency returning the principal attached by the bearer gate."""
    principal = getattr(request.state, PRINCIPAL_STATE_KEY, None)
    if principal is None:
        raise UnauthorizedError("Missing or invalid bearer token")
    return principal


def get_session_user_id(request: Request) -> str | None:
    """FastAPI dependency returning the user of the host application's session.

    The session layer is expected to have placed ``user_id`` on
    ``request.state``; None when it did not.
    """
    user_id = getattr(request.state, "user_id", None)
    return str(user_id) if user_id else None
