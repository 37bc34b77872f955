from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ssocenter.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedTicket:
    value: str
    user_id: str
    session_id: str
    expires_at: datetime


class SessionTicketCodec:
    """Signed browser-session tickets: ``<claims>.<hmac-sha256>``, both base64url."""

    def __init__(self, secret: str, *, ttl: timedelta) -> None:
        self._key = secret.encode()
        self.ttl = ttl

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, payload_b64: str) -> str:
        digest = hmac.new(self._key, payload_b64.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, user_id: str, *, username: Optional[str] = None) -> IssuedTicket:
        now = self._now()
        expires_at = now + self.ttl
        session_id = uuid.uuid4().hex
        claims = {
            "uid": user_id,
            "sid": session_id,
            "name": username,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        payload_b64 = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        return IssuedTicket(
            value=f"{payload_b64}.{self._sign(payload_b64)}",
            user_id=user_id,
            session_id=session_id,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )

    def decode(self, ticket: Optional[str]) -> Optional[dict[str, Any]]:
        """Return the claims of an authentic, unexpired ticket, else ``None``."""
        if not ticket:
            return None
        try:
            payload_b64, sig_b64 = ticket.split(".")
        except ValueError:
            return None
        if not hmac.compare_digest(self._sign(payload_b64).encode(), sig_b64.encode()):
            logger.warning("session_ticket_bad_signature")
            return None
        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("session_ticket_decode_failed", error=str(exc))
            return None
        if not isinstance(claims, dict):
            return None
        exp = claims.get("exp")
        if not isinstance(exp, int) or exp <= int(self._now().timestamp()):
            return None
        return claims
