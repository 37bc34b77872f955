from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    """Kinds of opaque credentials tracked by the token store."""

    AUTHORIZATION_CODE = "AuthorizationCode"
    ACCESS_TOKEN = "AccessToken"
    REFRESH_TOKEN = "RefreshToken"


@dataclass
class Token:
    value: str
    user_id: str
    kind: TokenKind
    client_id: str
    scope: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        value: str,
        *,
        user_id: str,
        kind: TokenKind,
        client_id: str,
        scope: str,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> "Token":
        issued = now or _utcnow()
        return cls(
            value=value,
            user_id=user_id,
            kind=kind,
            client_id=client_id,
            scope=scope,
            issued_at=issued,
            expires_at=issued + ttl,
        )

    def is_usable(self, kind: TokenKind, now: datetime) -> bool:
        """Unrevoked, of the expected kind and strictly before expiry."""
        return self.kind == kind and not self.revoked and self.expires_at > now


@dataclass
class ClientApplication:
    client_id: str
    client_secret: str
    redirect_uri: str
    name: str = ""
    logout_redirect_uri: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class User:
    id: str
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Role:
    id: str
    name: str
    is_active: bool = True

    @classmethod
    def new(cls, name: str) -> "Role":
        return cls(id=str(uuid.uuid4()), name=name)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    scope: Optional[str] = None


@dataclass(frozen=True)
class Principal:
    user_id: str
    session_id: str
    username: Optional[str] = None
    expires_at: Optional[datetime] = None
