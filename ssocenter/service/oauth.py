from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Protocol, Tuple

from ssocenter.config import Settings
from ssocenter.logging import get_logger
from ssocenter.service.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRedirectUriError,
    ServerError,
    UnsupportedResponseTypeError,
)
from ssocenter.storage.errors import ConstraintViolation
from ssocenter.storage.models import ClientApplication, Token, TokenKind, TokenPair

logger = get_logger(__name__)

TOKEN_BYTES = 32


class TokenStore(Protocol):
    def insert_token(self, token: Token) -> Token: ...

    def get_token(self, value: str) -> Optional[Token]: ...

    def consume_token(
        self,
        value: str,
        kind: TokenKind,
        *,
        client_id: str,
        now: datetime,
        issue=None,
    ) -> Optional[Token]: ...

    def revoke_token(self, value: str, *, now: datetime) -> bool: ...

    def get_client(self, client_id: str) -> Optional[ClientApplication]: ...


class OAuth2Engine:
    """Authorization-code grant with rotating refresh tokens.

    Codes and refresh tokens are single use: the store flips ``revoked`` with
    one conditional write, so a replayed or raced credential loses with
    ``invalid_grant`` instead of minting a second token pair.
    """

    def __init__(self, store: TokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.code_ttl = timedelta(seconds=settings.authorization_code_ttl_seconds)
        self.access_ttl = timedelta(seconds=settings.access_token_ttl_seconds)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _new_token_value(self) -> str:
        try:
            return secrets.token_urlsafe(TOKEN_BYTES)
        except (OSError, NotImplementedError) as exc:
            logger.error("secure_random_unavailable", error=str(exc))
            raise ServerError("unable to generate token") from exc

    # clients
    def get_client(self, client_id: Optional[str]) -> Optional[ClientApplication]:
        """Return the client only while it is active."""
        if not client_id:
            return None
        client = self.store.get_client(client_id)
        if not client or not client.active:
            return None
        return client

    def is_valid_redirect_uri(self, client_id: str, redirect_uri: Optional[str]) -> bool:
        client = self.get_client(client_id)
        return bool(client and redirect_uri and client.redirect_uri == redirect_uri)

    def _authenticate_client(
        self, client_id: Optional[str], client_secret: Optional[str]
    ) -> ClientApplication:
        client = self.get_client(client_id)
        if not client or not client_secret:
            raise InvalidClientError("Invalid client credentials")
        if not hmac.compare_digest(
            client.client_secret.encode(), client_secret.encode()
        ):
            logger.warning("client_secret_mismatch", client_id=client_id)
            raise InvalidClientError("Invalid client credentials")
        return client

    # authorization codes
    def validate_authorization_request(
        self,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        response_type: Optional[str],
    ) -> ClientApplication:
        """Check an authorize request without issuing anything."""
        if response_type != "code":
            raise UnsupportedResponseTypeError("Only 'code' response_type is supported")
        client = self.get_client(client_id)
        if not client:
            raise InvalidClientError("Invalid client_id")
        if not redirect_uri or client.redirect_uri != redirect_uri:
            raise InvalidRedirectUriError("Invalid redirect_uri")
        return client

    def authorize(
        self,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        response_type: Optional[str],
        scope: Optional[str],
        user_id: str,
    ) -> str:
        client = self.validate_authorization_request(client_id, redirect_uri, response_type)
        code = Token.new(
            self._new_token_value(),
            user_id=user_id,
            kind=TokenKind.AUTHORIZATION_CODE,
            client_id=client.client_id,
            scope=scope or self.settings.default_scope,
            ttl=self.code_ttl,
            now=self._now(),
        )
        try:
            self.store.insert_token(code)
        except ConstraintViolation as exc:
            raise ServerError("unable to issue authorization code") from exc
        logger.info(
            "authorization_code_issued",
            client_id=client.client_id,
            user_id=user_id,
            scope=code.scope,
        )
        return code.value

    def _mint_pair(self, parent: Token, now: datetime) -> List[Token]:
        access = Token.new(
            self._new_token_value(),
            user_id=parent.user_id,
            kind=TokenKind.ACCESS_TOKEN,
            client_id=parent.client_id,
            scope=parent.scope,
            ttl=self.access_ttl,
            now=now,
        )
        refresh = Token.new(
            self._new_token_value(),
            user_id=parent.user_id,
            kind=TokenKind.REFRESH_TOKEN,
            client_id=parent.client_id,
            scope=parent.scope,
            ttl=self.refresh_ttl,
            now=now,
        )
        return [access, refresh]

    def _redeem(
        self, value: str, kind: TokenKind, client_id: str
    ) -> Tuple[Optional[Token], List[Token]]:
        now = self._now()
        minted: List[Token] = []

        def issue(parent: Token) -> Iterable[Token]:
            minted.extend(self._mint_pair(parent, now))
            return minted

        try:
            consumed = self.store.consume_token(
                value, kind, client_id=client_id, now=now, issue=issue
            )
        except ConstraintViolation as exc:
            raise ServerError("unable to issue tokens") from exc
        return consumed, minted

    def _as_pair(self, minted: List[Token]) -> TokenPair:
        access, refresh = minted
        return TokenPair(
            access_token=access.value,
            refresh_token=refresh.value,
            expires_in=int(self.access_ttl.total_seconds()),
            scope=access.scope,
        )

    def exchange_code(
        self,
        code: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
    ) -> TokenPair:
        client = self._authenticate_client(client_id, client_secret)
        if not redirect_uri or client.redirect_uri != redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the authorization request")
        if not code:
            raise InvalidGrantError("Invalid or expired authorization code")
        consumed, minted = self._redeem(code, TokenKind.AUTHORIZATION_CODE, client.client_id)
        if not consumed:
            logger.warning("authorization_code_rejected", client_id=client.client_id)
            raise InvalidGrantError("Invalid or expired authorization code")
        logger.info(
            "authorization_code_exchanged",
            client_id=client.client_id,
            user_id=consumed.user_id,
        )
        return self._as_pair(minted)

    def refresh_tokens(
        self,
        refresh_token: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
    ) -> TokenPair:
        client = self._authenticate_client(client_id, client_secret)
        if not refresh_token:
            raise InvalidGrantError("Invalid or expired refresh token")
        consumed, minted = self._redeem(
            refresh_token, TokenKind.REFRESH_TOKEN, client.client_id
        )
        if not consumed:
            logger.warning("refresh_token_rejected", client_id=client.client_id)
            raise InvalidGrantError("Invalid or expired refresh token")
        logger.info(
            "refresh_token_rotated",
            client_id=client.client_id,
            user_id=consumed.user_id,
        )
        return self._as_pair(minted)

    # access tokens
    def validate_access_token(self, token: Optional[str]) -> Tuple[bool, Optional[str]]:
        """Return ``(valid, user_id)``; valid only strictly before expiry."""
        if not token:
            return False, None
        record = self.store.get_token(token)
        if not record or not record.is_usable(TokenKind.ACCESS_TOKEN, self._now()):
            return False, None
        return True, record.user_id

    def revoke_token(self, token: Optional[str]) -> bool:
        """Mark any kind of token revoked. False when the token is unknown."""
        if not token:
            return False
        revoked = self.store.revoke_token(token, now=self._now())
        if revoked:
            logger.info("token_revoked")
        return revoked

    def revoke_client_token(
        self,
        token: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
    ) -> bool:
        """Revoke a token on behalf of the client it was issued to."""
        client = self._authenticate_client(client_id, client_secret)
        record = self.store.get_token(token) if token else None
        if not record:
            return False
        if record.client_id != client.client_id:
            logger.warning(
                "token_revocation_client_mismatch", client_id=client.client_id
            )
            return False
        return self.revoke_token(token)
