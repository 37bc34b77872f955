from __future__ import annotations

from typing import Optional


class OAuthError(Exception):
    """Base class for protocol errors mapped to ``{error, error_description}``.

    Each subclass fixes the HTTP status and the OAuth2 ``error`` code that is
    written on the wire; ``message`` becomes ``error_description``.
    """

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_body(self) -> dict:
        return {"error": self.error_code, "error_description": self.message}


class InvalidRequestError(OAuthError):
    """Request is missing a parameter or carries an unsupported value (400)."""
    status_code = 400
    error_code = "invalid_request"


class InvalidRedirectUriError(InvalidRequestError):
    """redirect_uri does not exactly match the registered value (400)."""
    pass


class UnsupportedResponseTypeError(InvalidRequestError):
    """response_type other than ``code`` (400)."""
    pass


class InvalidClientError(OAuthError):
    """Unknown or inactive client, or bad client credentials (400)."""
    status_code = 400
    error_code = "invalid_client"


class InvalidGrantError(OAuthError):
    """Code or refresh token unknown, used, expired or bound elsewhere (400)."""
    status_code = 400
    error_code = "invalid_grant"


class UnsupportedGrantTypeError(OAuthError):
    status_code = 400
    error_code = "unsupported_grant_type"


class InvalidTokenError(OAuthError):
    """Bearer token missing from the store, revoked or expired (401)."""
    status_code = 401
    error_code = "invalid_token"


class AccessDeniedError(OAuthError):
    """Login credentials rejected (401)."""
    status_code = 401
    error_code = "access_denied"


class UserNotFoundError(OAuthError):
    status_code = 404
    error_code = "user_not_found"


class ServerError(OAuthError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "OAuthError",
    "InvalidRequestError",
    "InvalidRedirectUriError",
    "UnsupportedResponseTypeError",
    "InvalidClientError",
    "InvalidGrantError",
    "UnsupportedGrantTypeError",
    "InvalidTokenError",
    "AccessDeniedError",
    "UserNotFoundError",
    "ServerError",
]
