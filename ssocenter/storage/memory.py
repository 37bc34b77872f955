from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from ssocenter.logging import get_logger
from ssocenter.storage.errors import ConstraintViolation
from ssocenter.storage.models import ClientApplication, Role, Token, TokenKind, User

TokenIssuer = Callable[[Token], Iterable[Token]]


class MemoryStore:
    """In-process store for tokens, clients and users.

    Every read-modify-write runs under a single RLock acquisition, so a
    conditional consume is observed by concurrent callers as one step.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tokens: Dict[str, Token] = {}
        self.clients: Dict[str, ClientApplication] = {}
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, Set[str]] = {}
        self._data_lock = threading.RLock()

    # tokens
    def insert_token(self, token: Token) -> Token:
        with self._data_lock:
            if token.value in self.tokens:
                self.logger.warning("token_value_collision", token_kind=token.kind.value)
                raise ConstraintViolation(
                    "token value already exists", {"kind": token.kind.value}
                )
            self.tokens[token.value] = replace(token)
            return token

    def get_token(self, value: str) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(value)
            return replace(token) if token else None

    def consume_token(
        self,
        value: str,
        kind: TokenKind,
        *,
        client_id: str,
        now: datetime,
        issue: Optional[TokenIssuer] = None,
    ) -> Optional[Token]:
        """Mark a usable token revoked and insert its successors in one step.

        Returns the consumed token, or ``None`` when the token is unknown,
        already revoked, expired, of another kind or bound to another client.
        """
        with self._data_lock:
            current = self.tokens.get(value)
            if (
                current is None
                or current.client_id != client_id
                or not current.is_usable(kind, now)
            ):
                return None
            successors = list(issue(replace(current))) if issue else []
            for successor in successors:
                if successor.value in self.tokens:
                    self.logger.warning(
                        "token_value_collision", token_kind=successor.kind.value
                    )
                    raise ConstraintViolation(
                        "token value already exists", {"kind": successor.kind.value}
                    )
            current.revoked = True
            current.revoked_at = now
            for successor in successors:
                self.tokens[successor.value] = replace(successor)
            return replace(current)

    def revoke_token(self, value: str, *, now: datetime) -> bool:
        with self._data_lock:
            current = self.tokens.get(value)
            if current is None:
                return False
            if not current.revoked:
                current.revoked = True
                current.revoked_at = now
            return True

    # clients
    def register_client(self, client: ClientApplication) -> ClientApplication:
        with self._data_lock:
            if client.client_id in self.clients:
                raise ConstraintViolation(
                    "client_id already exists", {"client_id": client.client_id}
                )
            self.clients[client.client_id] = client
            return client

    def get_client(self, client_id: str) -> Optional[ClientApplication]:
        with self._data_lock:
            return self.clients.get(client_id)

    def set_client_active(self, client_id: str, active: bool) -> bool:
        with self._data_lock:
            client = self.clients.get(client_id)
            if not client:
                return False
            client.active = active
            return True

    # users
    def create_user(
        self,
        username: str,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        is_active: bool = True,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            lowered = username.lower()
            if any(u.username.lower() == lowered for u in self.users.values()):
                self.logger.warning("username_conflict")
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = User(
                id=user_id or str(uuid.uuid4()),
                username=username,
                email=email,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
            )
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username.lower() == lowered),
                None,
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # roles
    def assign_role(self, user_id: str, role_name: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for role", {"user_id": user_id})
            role = next((r for r in self.roles.values() if r.name == role_name), None)
            if role is None:
                role = Role.new(role_name)
                self.roles[role.id] = role
            self.user_roles.setdefault(user_id, set()).add(role.id)

    def set_role_active(self, role_name: str, active: bool) -> bool:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == role_name), None)
            if role is None:
                return False
            role.is_active = active
            return True

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._data_lock:
            role_ids = self.user_roles.get(user_id, set())
            return sorted(
                self.roles[rid].name
                for rid in role_ids
                if rid in self.roles and self.roles[rid].is_active
            )
