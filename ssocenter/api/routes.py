from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Form, Header, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from ssocenter.api.schemas import (
    LoginRequiredResponse,
    LoginResponse,
    LogoutResponse,
    RevokeResponse,
    SessionResponse,
    TokenResponse,
    UserInfoResponse,
)
from ssocenter.config import Settings
from ssocenter.logging import get_logger
from ssocenter.service.errors import (
    AccessDeniedError,
    InvalidRequestError,
    InvalidTokenError,
    UnsupportedGrantTypeError,
    UserNotFoundError,
)
from ssocenter.service.runtime import get_runtime
from ssocenter.service.tickets import IssuedTicket
from ssocenter.storage.models import Principal, TokenPair

logger = get_logger(__name__)

router = APIRouter()


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def _require_params(**params: Optional[str]) -> None:
    missing = [name for name, value in params.items() if not value]
    if missing:
        raise InvalidRequestError(
            f"Missing required parameter(s): {', '.join(missing)}"
        )


def _with_query(url: str, **params: Optional[str]) -> str:
    """Append non-empty params to ``url``, keeping any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment)
    )


def _local_return_url(return_url: Optional[str]) -> Optional[str]:
    """Accept only same-origin absolute paths as post-login targets."""
    if not return_url:
        return None
    if not return_url.startswith("/") or return_url.startswith(("//", "/\\")):
        return None
    parts = urlsplit(return_url)
    if parts.scheme or parts.netloc:
        return None
    return return_url


def _apply_session_cookie(
    response: Response, ticket: IssuedTicket, settings: Settings
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        ticket.value,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        expires=ticket.expires_at,
        path="/",
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        scope=pair.scope,
    )


async def get_principal(request: Request) -> Optional[Principal]:
    """Session-ticket principal, already checked against the blacklist."""
    runtime = get_runtime()
    ticket = request.cookies.get(runtime.settings.session_cookie_name)
    if not ticket:
        return None
    return await runtime.sessions.authenticate(ticket)


async def require_principal(
    principal: Optional[Principal] = Depends(get_principal),
) -> Principal:
    if principal is None:
        raise AccessDeniedError("Login required")
    return principal


@router.get("/authorize", tags=["oauth"])
def authorize(
    request: Request,
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    response_type: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    principal: Optional[Principal] = Depends(get_principal),
):
    """Start the authorization-code flow.

    The request is validated before anything else so a bad client or
    redirect_uri never reaches the login page. Unauthenticated callers are
    sent to the login path with the original request as ``return_url``;
    authenticated callers are redirected back to the client with a fresh
    code and the untouched ``state``.
    """
    runtime = get_runtime()
    runtime.oauth.validate_authorization_request(client_id, redirect_uri, response_type)
    if principal is None:
        original = request.url.path
        if request.url.query:
            original = f"{original}?{request.url.query}"
        login_url = _with_query(runtime.settings.login_path, return_url=original)
        return RedirectResponse(login_url, status_code=302)
    code = runtime.oauth.authorize(
        client_id, redirect_uri, response_type, scope, principal.user_id
    )
    return RedirectResponse(_with_query(redirect_uri, code=code, state=state), status_code=302)


@router.post("/token", response_model=TokenResponse, tags=["oauth"])
def token(
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
):
    """Exchange an authorization code or rotate a refresh token.

    Raises:
        400 invalid_request: missing parameters
        400 invalid_client: unknown/inactive client or wrong secret
        400 invalid_grant: code or refresh token unusable
        400 unsupported_grant_type: any other grant_type
    """
    runtime = get_runtime()
    _require_params(grant_type=grant_type)
    if grant_type == "authorization_code":
        _require_params(
            code=code,
            redirect_uri=redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
        )
        pair = runtime.oauth.exchange_code(code, client_id, client_secret, redirect_uri)
    elif grant_type == "refresh_token":
        _require_params(
            refresh_token=refresh_token,
            client_id=client_id,
            client_secret=client_secret,
        )
        pair = runtime.oauth.refresh_tokens(refresh_token, client_id, client_secret)
    else:
        raise UnsupportedGrantTypeError(f"Unsupported grant_type '{grant_type}'")
    return _token_response(pair)


@router.get("/userinfo", response_model=UserInfoResponse, tags=["oauth"])
def userinfo(authorization: Optional[str] = Header(None)):
    """Describe the user owning a valid bearer access token."""
    runtime = get_runtime()
    access_token = _extract_bearer(authorization)
    if not access_token:
        raise InvalidRequestError("Missing or malformed bearer token", status_code=401)
    valid, user_id = runtime.oauth.validate_access_token(access_token)
    if not valid:
        raise InvalidTokenError("Invalid or expired access token")
    user = runtime.users.get_user_by_id(user_id)
    if not user:
        raise UserNotFoundError("User not found")
    return UserInfoResponse(
        sub=user.id,
        username=user.username,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        roles=runtime.users.get_user_roles(user.id),
        created_at=user.created_at,
    )


@router.post("/revoke", response_model=RevokeResponse, tags=["oauth"])
def revoke(
    token: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
):
    runtime = get_runtime()
    _require_params(token=token, client_id=client_id, client_secret=client_secret)
    revoked = runtime.oauth.revoke_client_token(token, client_id, client_secret)
    return RevokeResponse(revoked=revoked)


@router.get("/login", response_model=LoginRequiredResponse, tags=["session"])
def login_page(return_url: Optional[str] = Query(None)):
    return LoginRequiredResponse(return_url=_local_return_url(return_url))


@router.post("/login", tags=["session"])
def login(
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    return_url: Optional[str] = Form(None),
):
    """Authenticate with username and password and open a browser session.

    Redirects (303) to ``return_url`` only when it is a local path; any other
    target is dropped and the session details are returned as JSON.
    """
    runtime = get_runtime()
    _require_params(username=username, password=password)
    user = runtime.users.validate_user(username, password)
    if not user:
        raise AccessDeniedError("Invalid username or password")
    ticket = runtime.tickets.issue(user.id, username=user.username)
    target = _local_return_url(return_url)
    if target:
        response: Response = RedirectResponse(target, status_code=303)
    else:
        body = LoginResponse(
            user_id=user.id,
            session_id=ticket.session_id,
            expires_at=ticket.expires_at,
        )
        response = JSONResponse(body.model_dump(mode="json"))
    _apply_session_cookie(response, ticket, runtime.settings)
    logger.info("login_succeeded", user_id=user.id)
    return response


@router.post("/logout", response_model=LogoutResponse, tags=["session"])
async def logout(request: Request, response: Response):
    """Blacklist the caller's session until its ticket expires and drop the cookie."""
    runtime = get_runtime()
    cookie_name = runtime.settings.session_cookie_name
    claims = runtime.tickets.decode(request.cookies.get(cookie_name))
    if claims and claims.get("uid") and claims.get("sid"):
        await runtime.revocations.revoke_session(
            str(claims["uid"]),
            str(claims["sid"]),
            datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
        logger.info("session_logged_out", user_id=str(claims["uid"]))
    response.delete_cookie(cookie_name, path="/")
    return LogoutResponse()


@router.get("/session", response_model=SessionResponse, tags=["session"])
async def current_session(principal: Principal = Depends(require_principal)):
    """Return the live browser session; rejected once it has been revoked."""
    return SessionResponse(
        user_id=principal.user_id,
        session_id=principal.session_id,
        username=principal.username,
        expires_at=principal.expires_at,
    )
