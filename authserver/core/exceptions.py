from fastapi import HTTPException, status


class OAuth2Error(HTTPException):
    """Base for the OAuth2 error taxonomy.

    ``error`` is the machine-readable code returned to clients; the detail
    payload follows the RFC 6749 error response shape.
    """

    error = "server_error"
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, description: str):
        self.description = description
        super().__init__(
            status_code=self.status_code_default,
            detail={"error": self.error, "error_description": description},
        )


class InvalidRequestError(OAuth2Error):
    error = "invalid_request"
    status_code_default = status.HTTP_400_BAD_REQUEST


class InvalidClientError(OAuth2Error):
    error = "invalid_client"
    status_code_default = status.HTTP_401_UNAUTHORIZED

    def __init__(self, description: str = "Invalid client credentials"):
        super().__init__(description)


class InvalidGrantError(OAuth2Error):
    error = "invalid_grant"
    status_code_default = status.HTTP_400_BAD_REQUEST


class InvalidScopeError(OAuth2Error):
    error = "invalid_scope"
    status_code_default = status.HTTP_400_BAD_REQUEST


class UnsupportedGrantTypeError(OAuth2Error):
    error = "unsupported_grant_type"
    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, grant_type: str):
        super().__init__(f"Unsupported grant_type: {grant_type}")


class AccessDeniedError(OAuth2Error):
    error = "access_denied"
    status_code_default = status.HTTP_403_FORBIDDEN

    def __init__(self, description: str = "Client not found or not owned by you"):
        super().__init__(description)


class ServerError(OAuth2Error):
    error = "server_error"
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, description: str = "Something went wrong"):
        super().__init__(description)


class UnauthorizedError(HTTPException):
    def __init__(self, detail: str = "Invalid or missing authentication"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)
