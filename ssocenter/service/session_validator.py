from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from ssocenter.logging import get_logger
from ssocenter.service.revocation import RevocationCache, session_token_id
from ssocenter.service.tickets import SessionTicketCodec
from ssocenter.storage.models import Principal

logger = get_logger(__name__)


class SessionValidator:
    """Re-validates the cookie principal against the session blacklist."""

    def __init__(self, revocations: RevocationCache, codec: SessionTicketCodec) -> None:
        self.revocations = revocations
        self.codec = codec

    async def authenticate(self, ticket: Optional[str]) -> Optional[Principal]:
        return await self.validate(self.codec.decode(ticket))

    async def validate(self, claims: Optional[Mapping[str, Any]]) -> Optional[Principal]:
        """Return the principal, or ``None`` when it must be rejected.

        A principal without both a user id and a session id is rejected, as
        is one whose ``user_id:session_id`` pair has been blacklisted.
        """
        if not claims:
            return None
        user_id = claims.get("uid")
        session_id = claims.get("sid")
        if not user_id or not session_id:
            logger.info("session_rejected", reason="missing_claims")
            return None
        if await self.revocations.is_revoked(session_token_id(str(user_id), str(session_id))):
            logger.info("session_rejected", reason="revoked", user_id=str(user_id))
            return None
        exp = claims.get("exp")
        return Principal(
            user_id=str(user_id),
            session_id=str(session_id),
            username=claims.get("name"),
            expires_at=(
                datetime.fromtimestamp(exp, tz=timezone.utc)
                if isinstance(exp, (int, float))
                else None
            ),
        )
