from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from ssocenter.logging import get_logger
from ssocenter.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class UserStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        is_active: bool = True,
        user_id: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def assign_role(self, user_id: str, role_name: str) -> None: ...

    def get_user_roles(self, user_id: str) -> List[str]: ...


class UserDirectory:
    """Password login and the user/role read paths used by /userinfo."""

    def __init__(self, store: UserStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
        roles: Optional[List[str]] = None,
        user_id: Optional[str] = None,
    ) -> User:
        user = self.store.create_user(
            username,
            email,
            first_name=first_name,
            last_name=last_name,
            user_id=user_id,
        )
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        for role in roles or []:
            self.store.assign_role(user.id, role)
        logger.info("user_created", user_id=user.id, roles=roles or [])
        return user

    def validate_user(self, username: Optional[str], password: Optional[str]) -> Optional[User]:
        """Return the active user owning these credentials, else ``None``."""
        if not username or not password:
            return None
        user = self.store.get_user_by_username(username)
        if not user or not user.is_active:
            logger.warning("login_unknown_or_inactive_user")
            return None
        record = self.store.get_password_record(user.id)
        if not record:
            logger.warning("password_record_missing", user_id=user.id)
            return None
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return None
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            return None
        return user

    def get_user_by_id(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            return None
        return user

    def get_user_roles(self, user_id: str) -> List[str]:
        return self.store.get_user_roles(user_id)
